from __future__ import annotations

from fastapi import APIRouter, Depends

from ...domain.models import (
    AnalyzeImageRequest,
    AnalyzeImageResponse,
    EditImageRequest,
    GenerateImageRequest,
    ImageResponse,
    InfographicResponse,
    ResearchRequest,
    ResearchResponse,
    UserRecord,
)
from ...security.auth import get_current_user
from ...services.orchestrator import Orchestrator
from ..deps import get_orchestrator
from ..errors import HANDLED, http_error

router = APIRouter(prefix="/studio", tags=["studio"])


@router.post("/research", response_model=ResearchResponse)
async def research(
    req: ResearchRequest,
    user: UserRecord = Depends(get_current_user),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> ResearchResponse:
    try:
        return await orchestrator.research(user, req)
    except HANDLED as exc:
        raise http_error(exc) from exc


@router.post("/generate-image", response_model=ImageResponse)
async def generate_image(
    req: GenerateImageRequest,
    user: UserRecord = Depends(get_current_user),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> ImageResponse:
    try:
        return await orchestrator.generate_image(user, req)
    except HANDLED as exc:
        raise http_error(exc) from exc


@router.post("/edit-image", response_model=ImageResponse)
async def edit_image(
    req: EditImageRequest,
    user: UserRecord = Depends(get_current_user),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> ImageResponse:
    try:
        return await orchestrator.edit_image(user, req)
    except HANDLED as exc:
        raise http_error(exc) from exc


@router.post("/analyze-image", response_model=AnalyzeImageResponse)
async def analyze_image(
    req: AnalyzeImageRequest,
    user: UserRecord = Depends(get_current_user),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> AnalyzeImageResponse:
    try:
        return await orchestrator.analyze_image(user, req)
    except HANDLED as exc:
        raise http_error(exc) from exc


@router.post("/infographic", response_model=InfographicResponse)
async def infographic(
    req: ResearchRequest,
    user: UserRecord = Depends(get_current_user),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> InfographicResponse:
    try:
        return await orchestrator.infographic(user, req)
    except HANDLED as exc:
        raise http_error(exc) from exc
