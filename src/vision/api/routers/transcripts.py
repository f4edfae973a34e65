from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, File, HTTPException, Response, UploadFile, status
from fastapi.responses import StreamingResponse

from ...config import Settings
from ...domain.errors import PersistenceError
from ...domain.models import RefineRequest, RefineResponse, TranscriptRecord, UserRecord
from ...infrastructure.storage import Storage
from ...security.auth import get_current_user
from ...services.orchestrator import Orchestrator
from ...services.streaming import sse_response
from ...services.uploads import AudioPayload
from ..deps import get_orchestrator, get_settings, get_storage
from ..errors import HANDLED, http_error

router = APIRouter(prefix="/transcripts", tags=["transcripts"])

_READ_CHUNK = 1024 * 1024
_ACCEPTED_PREFIXES = ("audio/", "video/")


async def _read_audio(file: UploadFile, max_bytes: int) -> AudioPayload:
    mime = (file.content_type or "").lower()
    if not mime.startswith(_ACCEPTED_PREFIXES):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Unsupported file type: {mime or 'unknown'}")
    buf = bytearray()
    try:
        while True:
            chunk = await file.read(_READ_CHUNK)
            if not chunk:
                break
            buf.extend(chunk)
            if len(buf) > max_bytes:
                raise HTTPException(
                    status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                    detail=f"{file.filename or 'file'} exceeds {max_bytes // (1024 * 1024)} MB",
                )
    finally:
        await file.close()
    if not buf:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"{file.filename or 'file'} is empty")
    return AudioPayload(filename=file.filename or "audio", mime_type=mime, data=bytes(buf))


@router.post("/stream")
async def stream_transcript(
    files: List[UploadFile] = File(...),
    user: UserRecord = Depends(get_current_user),
    settings: Settings = Depends(get_settings),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> StreamingResponse:
    if not files:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No audio files uploaded")
    if len(files) > settings.max_audio_files:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"At most {settings.max_audio_files} audio files per request",
        )
    payloads = [await _read_audio(f, settings.max_upload_bytes) for f in files]
    try:
        session = await orchestrator.open_transcription(user, payloads)
    except HANDLED as exc:
        raise http_error(exc) from exc
    return sse_response(session)


@router.post("/{transcript_id}/refine", response_model=RefineResponse)
async def refine_transcript(
    transcript_id: str,
    req: RefineRequest,
    user: UserRecord = Depends(get_current_user),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> RefineResponse:
    try:
        return await orchestrator.refine_transcript(user, transcript_id, req.kind)
    except HANDLED as exc:
        raise http_error(exc) from exc


@router.get("", response_model=List[TranscriptRecord])
async def list_transcripts(
    user: UserRecord = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
) -> List[TranscriptRecord]:
    try:
        return await storage.list_transcripts(user.user_id)
    except PersistenceError as exc:
        raise http_error(exc) from exc


@router.get("/{transcript_id}", response_model=TranscriptRecord)
async def get_transcript(
    transcript_id: str,
    user: UserRecord = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
) -> TranscriptRecord:
    try:
        record = await storage.get_transcript(user.user_id, transcript_id)
    except PersistenceError as exc:
        raise http_error(exc) from exc
    if record is None:
        raise HTTPException(status_code=404, detail="Transcript not found")
    return record


@router.delete("/{transcript_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_transcript(
    transcript_id: str,
    user: UserRecord = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
) -> Response:
    try:
        deleted = await storage.delete_transcript(user.user_id, transcript_id)
    except PersistenceError as exc:
        raise http_error(exc) from exc
    if not deleted:
        raise HTTPException(status_code=404, detail="Transcript not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)
