from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, HTTPException, Response, status

from ...domain.errors import PersistenceError
from ...domain.models import AssistantRecord, AssistantRequest, UserRecord
from ...infrastructure.storage import Storage, new_id, utcnow
from ...security.auth import get_current_user
from ..deps import get_storage
from ..errors import http_error

router = APIRouter(prefix="/assistants", tags=["assistants"])


@router.get("", response_model=List[AssistantRecord])
async def list_assistants(
    user: UserRecord = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
) -> List[AssistantRecord]:
    try:
        return await storage.list_assistants(user.user_id)
    except PersistenceError as exc:
        raise http_error(exc) from exc


@router.post("", response_model=AssistantRecord, status_code=status.HTTP_201_CREATED)
async def create_assistant(
    req: AssistantRequest,
    user: UserRecord = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
) -> AssistantRecord:
    now = utcnow()
    record = AssistantRecord(
        assistant_id=f"sa_{new_id()}",
        user_id=user.user_id,
        created_at=now,
        updated_at=now,
        **req.model_dump(),
    )
    try:
        return await storage.create_assistant(record)
    except PersistenceError as exc:
        raise http_error(exc) from exc


@router.put("/{assistant_id}", response_model=AssistantRecord)
async def update_assistant(
    assistant_id: str,
    req: AssistantRequest,
    user: UserRecord = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
) -> AssistantRecord:
    try:
        return await storage.update_assistant(user.user_id, assistant_id, req.model_dump())
    except (KeyError, PersistenceError) as exc:
        raise http_error(exc) from exc


@router.delete("/{assistant_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_assistant(
    assistant_id: str,
    user: UserRecord = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
) -> Response:
    try:
        deleted = await storage.delete_assistant(user.user_id, assistant_id)
    except PersistenceError as exc:
        raise http_error(exc) from exc
    if not deleted:
        raise HTTPException(status_code=404, detail="Assistant not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)
