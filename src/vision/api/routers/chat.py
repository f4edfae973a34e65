from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, HTTPException, Response, status
from fastapi.responses import StreamingResponse

from ...domain.errors import PersistenceError
from ...domain.models import (
    ChatMessageRecord,
    ChatSessionCreate,
    ChatSessionRecord,
    ChatSessionUpdate,
    ChatStreamRequest,
    TitleRequest,
    TitleResponse,
    UserRecord,
)
from ...infrastructure.storage import Storage, new_id, utcnow
from ...security.auth import get_current_user
from ...services.orchestrator import Orchestrator
from ...services.streaming import sse_response
from ..deps import get_orchestrator, get_storage
from ..errors import HANDLED, http_error

router = APIRouter(prefix="/chat", tags=["chat"])

DEFAULT_SESSION_TITLE = "New Chat"


@router.post("/stream")
async def stream_chat(
    req: ChatStreamRequest,
    user: UserRecord = Depends(get_current_user),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> StreamingResponse:
    # Failures before the first byte are plain HTTP errors; later ones are events
    try:
        session = await orchestrator.chat_stream(user, req)
    except HANDLED as exc:
        raise http_error(exc) from exc
    return sse_response(session)


@router.post("/title", response_model=TitleResponse)
async def generate_title(
    req: TitleRequest,
    user: UserRecord = Depends(get_current_user),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> TitleResponse:
    try:
        return await orchestrator.generate_title(user, req.text)
    except HANDLED as exc:
        raise http_error(exc) from exc


@router.post("/sessions", response_model=ChatSessionRecord, status_code=status.HTTP_201_CREATED)
async def create_session(
    req: ChatSessionCreate,
    user: UserRecord = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
) -> ChatSessionRecord:
    now = utcnow()
    record = ChatSessionRecord(
        session_id=new_id(),
        user_id=user.user_id,
        title=(req.title or "").strip() or DEFAULT_SESSION_TITLE,
        created_at=now,
        updated_at=now,
    )
    try:
        return await storage.create_chat_session(record)
    except PersistenceError as exc:
        raise http_error(exc) from exc


@router.get("/sessions", response_model=List[ChatSessionRecord])
async def list_sessions(
    user: UserRecord = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
) -> List[ChatSessionRecord]:
    try:
        return await storage.list_chat_sessions(user.user_id)
    except PersistenceError as exc:
        raise http_error(exc) from exc


@router.patch("/sessions/{session_id}", response_model=ChatSessionRecord)
async def rename_session(
    session_id: str,
    req: ChatSessionUpdate,
    user: UserRecord = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
) -> ChatSessionRecord:
    try:
        return await storage.rename_chat_session(user.user_id, session_id, req.title.strip())
    except (KeyError, PersistenceError) as exc:
        raise http_error(exc) from exc


@router.delete("/sessions/{session_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_session(
    session_id: str,
    user: UserRecord = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
) -> Response:
    try:
        deleted = await storage.delete_chat_session(user.user_id, session_id)
    except PersistenceError as exc:
        raise http_error(exc) from exc
    if not deleted:
        raise HTTPException(status_code=404, detail="Session not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/sessions/{session_id}/messages", response_model=List[ChatMessageRecord])
async def list_messages(
    session_id: str,
    user: UserRecord = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
) -> List[ChatMessageRecord]:
    try:
        if await storage.get_chat_session(user.user_id, session_id) is None:
            raise HTTPException(status_code=404, detail="Session not found")
        return await storage.list_chat_messages(session_id)
    except PersistenceError as exc:
        raise http_error(exc) from exc
