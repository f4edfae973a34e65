from __future__ import annotations

"""Persistence capability shared by the ledger, the pipelines and the routers.

``Storage`` is implemented by ``InMemoryStorage`` (degraded mode and tests) and
``MongoStorage`` (durable). The backend is chosen once by ``select_storage``
when the application starts and is then passed around by reference.
"""

from datetime import UTC, datetime
from itertools import count
from threading import RLock
from typing import Any, Dict, List, Optional, Protocol, Tuple
import logging
import uuid

from ..config import Settings
from ..domain.errors import DuplicateUserError, UserNotFoundError
from ..domain.models import (
    AssistantRecord,
    ChatMessageRecord,
    ChatSessionRecord,
    ImageArtifact,
    TranscriptRecord,
    UsageRecord,
    UserRecord,
)
from .migrations import MIGRATIONS

logger = logging.getLogger("vision.storage")

LATEST_SCHEMA_VERSION = MIGRATIONS[-1].version
_USER_MUTABLE_FIELDS = {
    "display_name",
    "role",
    "is_approved",
    "expires_at",
    "contact_email",
    "mobile",
    "password_hash",
}
_TRANSCRIPT_MUTABLE_FIELDS = {"title", "content", "refinement", "cost"}
_ASSISTANT_MUTABLE_FIELDS = {"name", "role", "personality", "tone", "task", "steps", "format"}


def utcnow() -> datetime:
    return datetime.now(UTC)


def new_id() -> str:
    return uuid.uuid4().hex


def check_user_changes(changes: Dict[str, Any]) -> Dict[str, Any]:
    """Reject balance edits; the balance only moves through ``apply_usage``."""
    unknown = set(changes) - _USER_MUTABLE_FIELDS
    if unknown:
        raise ValueError(f"Fields cannot be updated directly: {', '.join(sorted(unknown))}")
    return dict(changes)


def check_transcript_changes(changes: Dict[str, Any]) -> Dict[str, Any]:
    unknown = set(changes) - _TRANSCRIPT_MUTABLE_FIELDS
    if unknown:
        raise ValueError(f"Fields cannot be updated directly: {', '.join(sorted(unknown))}")
    return dict(changes)


def check_assistant_changes(changes: Dict[str, Any]) -> Dict[str, Any]:
    unknown = set(changes) - _ASSISTANT_MUTABLE_FIELDS
    if unknown:
        raise ValueError(f"Fields cannot be updated directly: {', '.join(sorted(unknown))}")
    return dict(changes)


class Storage(Protocol):
    name: str

    async def ping(self) -> bool: ...

    async def migrate(self) -> int: ...

    async def schema_version(self) -> int: ...

    async def close(self) -> None: ...

    # users
    async def create_user(self, record: UserRecord) -> UserRecord: ...

    async def get_user(self, user_id: str) -> Optional[UserRecord]: ...

    async def get_user_by_username(self, username: str) -> Optional[UserRecord]: ...

    async def list_users(self) -> List[UserRecord]: ...

    async def update_user(self, user_id: str, changes: Dict[str, Any]) -> UserRecord: ...

    async def delete_user(self, user_id: str) -> bool: ...

    # ledger
    async def apply_usage(self, user_id: str, feature: str, delta: int) -> Tuple[int, UsageRecord]: ...

    async def list_usage(
        self,
        user_id: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[UsageRecord]: ...

    # artifacts
    async def save_image(self, artifact: ImageArtifact) -> ImageArtifact: ...

    async def list_images(
        self,
        user_id: str,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[ImageArtifact]: ...

    async def save_transcript(self, record: TranscriptRecord) -> TranscriptRecord: ...

    async def get_transcript(self, user_id: str, transcript_id: str) -> Optional[TranscriptRecord]: ...

    async def update_transcript(self, user_id: str, transcript_id: str, changes: Dict[str, Any]) -> TranscriptRecord: ...

    async def list_transcripts(self, user_id: str) -> List[TranscriptRecord]: ...

    async def delete_transcript(self, user_id: str, transcript_id: str) -> bool: ...

    # chat
    async def create_chat_session(self, record: ChatSessionRecord) -> ChatSessionRecord: ...

    async def get_chat_session(self, user_id: str, session_id: str) -> Optional[ChatSessionRecord]: ...

    async def list_chat_sessions(self, user_id: str) -> List[ChatSessionRecord]: ...

    async def rename_chat_session(self, user_id: str, session_id: str, title: str) -> ChatSessionRecord: ...

    async def delete_chat_session(self, user_id: str, session_id: str) -> bool: ...

    async def add_chat_message(self, record: ChatMessageRecord) -> ChatMessageRecord: ...

    async def list_chat_messages(self, session_id: str) -> List[ChatMessageRecord]: ...

    # assistants
    async def create_assistant(self, record: AssistantRecord) -> AssistantRecord: ...

    async def get_assistant(self, user_id: str, assistant_id: str) -> Optional[AssistantRecord]: ...

    async def list_assistants(self, user_id: str) -> List[AssistantRecord]: ...

    async def update_assistant(self, user_id: str, assistant_id: str, changes: Dict[str, Any]) -> AssistantRecord: ...

    async def delete_assistant(self, user_id: str, assistant_id: str) -> bool: ...


def _page(items: List[Any], limit: Optional[int], offset: int) -> List[Any]:
    start = max(0, offset)
    if limit is None:
        return items[start:]
    return items[start:start + max(0, limit)]


class InMemoryStorage:
    """Process-local storage; every mutation happens under one re-entrant lock."""

    name = "in-memory"

    def __init__(self) -> None:
        self._lock = RLock()
        self._seq = count(1)
        self._users: Dict[str, UserRecord] = {}
        self._usage: List[Tuple[int, UsageRecord]] = []
        self._images: Dict[str, ImageArtifact] = {}
        self._transcripts: Dict[str, TranscriptRecord] = {}
        self._sessions: Dict[str, ChatSessionRecord] = {}
        self._messages: Dict[str, List[ChatMessageRecord]] = {}
        self._assistants: Dict[str, AssistantRecord] = {}

    async def ping(self) -> bool:
        return True

    async def migrate(self) -> int:
        return LATEST_SCHEMA_VERSION

    async def schema_version(self) -> int:
        return LATEST_SCHEMA_VERSION

    async def close(self) -> None:
        return None

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------
    async def create_user(self, record: UserRecord) -> UserRecord:
        with self._lock:
            wanted = record.username.lower()
            if any(u.username.lower() == wanted for u in self._users.values()):
                raise DuplicateUserError("Username already exists")
            self._users[record.user_id] = record.model_copy()
            return record.model_copy()

    async def get_user(self, user_id: str) -> Optional[UserRecord]:
        with self._lock:
            user = self._users.get(user_id)
            return user.model_copy() if user else None

    async def get_user_by_username(self, username: str) -> Optional[UserRecord]:
        wanted = username.lower()
        with self._lock:
            for user in self._users.values():
                if user.username.lower() == wanted:
                    return user.model_copy()
            return None

    async def list_users(self) -> List[UserRecord]:
        with self._lock:
            users = [u.model_copy() for u in self._users.values()]
        users.sort(key=lambda u: u.created_at, reverse=True)
        return users

    async def update_user(self, user_id: str, changes: Dict[str, Any]) -> UserRecord:
        changes = check_user_changes(changes)
        with self._lock:
            user = self._users.get(user_id)
            if user is None:
                raise UserNotFoundError(user_id)
            updated = user.model_copy(update=changes)
            self._users[user_id] = updated
            return updated.model_copy()

    async def delete_user(self, user_id: str) -> bool:
        with self._lock:
            if self._users.pop(user_id, None) is None:
                return False
            self._usage = [(seq, rec) for seq, rec in self._usage if rec.user_id != user_id]
            self._images = {k: v for k, v in self._images.items() if v.user_id != user_id}
            self._transcripts = {k: v for k, v in self._transcripts.items() if v.user_id != user_id}
            self._assistants = {k: v for k, v in self._assistants.items() if v.user_id != user_id}
            for sid in [sid for sid, s in self._sessions.items() if s.user_id == user_id]:
                self._sessions.pop(sid, None)
                self._messages.pop(sid, None)
            return True

    # ------------------------------------------------------------------
    # Ledger
    # ------------------------------------------------------------------
    async def apply_usage(self, user_id: str, feature: str, delta: int) -> Tuple[int, UsageRecord]:
        with self._lock:
            user = self._users.get(user_id)
            if user is None:
                raise UserNotFoundError(user_id)
            record = UsageRecord(
                record_id=new_id(),
                user_id=user_id,
                feature=feature,
                delta=delta,
                created_at=utcnow(),
            )
            balance = user.tokens + delta
            self._users[user_id] = user.model_copy(update={"tokens": balance})
            self._usage.append((next(self._seq), record))
            return balance, record

    async def list_usage(
        self,
        user_id: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[UsageRecord]:
        with self._lock:
            rows = [
                (seq, rec)
                for seq, rec in self._usage
                if (user_id is None or rec.user_id == user_id)
                and (since is None or rec.created_at >= since)
            ]
            names = {uid: u.username for uid, u in self._users.items()}
        rows.sort(key=lambda row: (row[1].created_at, row[0]), reverse=True)
        out = [rec.model_copy(update={"username": names.get(rec.user_id)}) for _, rec in rows]
        return _page(out, limit, offset)

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------
    async def save_image(self, artifact: ImageArtifact) -> ImageArtifact:
        with self._lock:
            self._images[artifact.image_id] = artifact.model_copy()
            return artifact

    async def list_images(
        self,
        user_id: str,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[ImageArtifact]:
        with self._lock:
            images = [
                img.model_copy()
                for img in self._images.values()
                if img.user_id == user_id and (since is None or img.created_at >= since)
            ]
        images.sort(key=lambda img: img.created_at, reverse=True)
        return _page(images, limit, offset)

    # ------------------------------------------------------------------
    # Transcripts
    # ------------------------------------------------------------------
    async def save_transcript(self, record: TranscriptRecord) -> TranscriptRecord:
        with self._lock:
            self._transcripts[record.transcript_id] = record.model_copy()
            return record

    async def get_transcript(self, user_id: str, transcript_id: str) -> Optional[TranscriptRecord]:
        with self._lock:
            rec = self._transcripts.get(transcript_id)
            if rec is None or rec.user_id != user_id:
                return None
            return rec.model_copy()

    async def update_transcript(self, user_id: str, transcript_id: str, changes: Dict[str, Any]) -> TranscriptRecord:
        changes = check_transcript_changes(changes)
        with self._lock:
            rec = self._transcripts.get(transcript_id)
            if rec is None or rec.user_id != user_id:
                raise KeyError("Transcript not found")
            updated = rec.model_copy(update={**changes, "updated_at": utcnow()})
            self._transcripts[transcript_id] = updated
            return updated.model_copy()

    async def list_transcripts(self, user_id: str) -> List[TranscriptRecord]:
        with self._lock:
            out = [t.model_copy() for t in self._transcripts.values() if t.user_id == user_id]
        out.sort(key=lambda t: t.created_at, reverse=True)
        return out

    async def delete_transcript(self, user_id: str, transcript_id: str) -> bool:
        with self._lock:
            rec = self._transcripts.get(transcript_id)
            if rec is None or rec.user_id != user_id:
                return False
            del self._transcripts[transcript_id]
            return True

    # ------------------------------------------------------------------
    # Chat
    # ------------------------------------------------------------------
    async def create_chat_session(self, record: ChatSessionRecord) -> ChatSessionRecord:
        with self._lock:
            self._sessions[record.session_id] = record.model_copy()
            self._messages.setdefault(record.session_id, [])
            return record

    async def get_chat_session(self, user_id: str, session_id: str) -> Optional[ChatSessionRecord]:
        with self._lock:
            sess = self._sessions.get(session_id)
            if sess is None or sess.user_id != user_id:
                return None
            return sess.model_copy()

    async def list_chat_sessions(self, user_id: str) -> List[ChatSessionRecord]:
        with self._lock:
            out = [s.model_copy() for s in self._sessions.values() if s.user_id == user_id]
        # Newest first
        out.sort(key=lambda s: s.updated_at, reverse=True)
        return out

    async def rename_chat_session(self, user_id: str, session_id: str, title: str) -> ChatSessionRecord:
        with self._lock:
            sess = self._sessions.get(session_id)
            if sess is None or sess.user_id != user_id:
                raise KeyError("Session not found")
            updated = sess.model_copy(update={"title": title})
            self._sessions[session_id] = updated
            return updated.model_copy()

    async def delete_chat_session(self, user_id: str, session_id: str) -> bool:
        with self._lock:
            sess = self._sessions.get(session_id)
            if sess is None or sess.user_id != user_id:
                return False
            del self._sessions[session_id]
            self._messages.pop(session_id, None)
            return True

    async def add_chat_message(self, record: ChatMessageRecord) -> ChatMessageRecord:
        with self._lock:
            sess = self._sessions.get(record.session_id)
            if sess is None:
                raise KeyError("Session not found")
            self._messages.setdefault(record.session_id, []).append(record.model_copy())
            # bump session updated_at
            self._sessions[record.session_id] = sess.model_copy(update={"updated_at": record.created_at})
            return record

    async def list_chat_messages(self, session_id: str) -> List[ChatMessageRecord]:
        with self._lock:
            return [m.model_copy() for m in self._messages.get(session_id, [])]

    # ------------------------------------------------------------------
    # Assistants
    # ------------------------------------------------------------------
    async def create_assistant(self, record: AssistantRecord) -> AssistantRecord:
        with self._lock:
            self._assistants[record.assistant_id] = record.model_copy()
            return record

    async def get_assistant(self, user_id: str, assistant_id: str) -> Optional[AssistantRecord]:
        with self._lock:
            rec = self._assistants.get(assistant_id)
            if rec is None or rec.user_id != user_id:
                return None
            return rec.model_copy()

    async def list_assistants(self, user_id: str) -> List[AssistantRecord]:
        with self._lock:
            out = [a.model_copy() for a in self._assistants.values() if a.user_id == user_id]
        out.sort(key=lambda a: a.created_at, reverse=True)
        return out

    async def update_assistant(self, user_id: str, assistant_id: str, changes: Dict[str, Any]) -> AssistantRecord:
        changes = check_assistant_changes(changes)
        with self._lock:
            rec = self._assistants.get(assistant_id)
            if rec is None or rec.user_id != user_id:
                raise KeyError("Assistant not found")
            updated = rec.model_copy(update={**changes, "updated_at": utcnow()})
            self._assistants[assistant_id] = updated
            return updated.model_copy()

    async def delete_assistant(self, user_id: str, assistant_id: str) -> bool:
        with self._lock:
            rec = self._assistants.get(assistant_id)
            if rec is None or rec.user_id != user_id:
                return False
            del self._assistants[assistant_id]
            return True


async def select_storage(settings: Settings) -> Storage:
    """Pick the storage backend once, at startup."""
    if settings.db_mode == "mongo":
        from .storage_mongo import MongoStorage  # local import keeps motor optional for memory mode

        storage = MongoStorage(settings.mongo_url, settings.mongo_db)
        if await storage.ping():
            logger.info("storage_selected", extra={"backend": storage.name, "db": settings.mongo_db})
            return storage
        await storage.close()
        logger.warning(
            "storage_degraded_to_memory",
            extra={"reason": "mongo unreachable", "url": settings.mongo_url},
        )
    return InMemoryStorage()
