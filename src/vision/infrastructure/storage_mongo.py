from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple
import logging

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from ..domain.errors import DuplicateUserError, PersistenceError, UserNotFoundError
from ..domain.models import (
    AssistantRecord,
    ChatMessageRecord,
    ChatSessionRecord,
    ImageArtifact,
    TranscriptRecord,
    UsageRecord,
    UserRecord,
)
from .migrations import apply_migrations, current_version
from .storage import check_assistant_changes, check_transcript_changes, check_user_changes, new_id, utcnow

logger = logging.getLogger("vision.storage")

_NO_ID = {"_id": 0}


@asynccontextmanager
async def _guard(op: str) -> AsyncIterator[None]:
    try:
        yield
    except DuplicateKeyError as exc:
        if op == "create_user":
            raise DuplicateUserError("Username already exists") from exc
        raise PersistenceError(f"{op} failed: duplicate key") from exc
    except PyMongoError as exc:
        logger.error("mongo_op_failed", extra={"op": op, "error": str(exc)})
        raise PersistenceError(f"{op} failed: {exc}") from exc


class MongoStorage:
    """Durable storage backed by MongoDB through motor.

    Ledger writes use a multi-document transaction, so the server must run
    as a replica set (a single-node replica set is enough).
    """

    name = "mongo"

    def __init__(self, url: str, db_name: str, *, client: Optional[AsyncIOMotorClient] = None) -> None:
        self._client = client or AsyncIOMotorClient(url, serverSelectionTimeoutMS=500, tz_aware=True)
        self._db = self._client[db_name]
        self._users = self._db["users"]
        self._usage = self._db["usage_logs"]
        self._images = self._db["images"]
        self._transcripts = self._db["transcripts"]
        self._sessions = self._db["chat_sessions"]
        self._messages = self._db["chat_messages"]
        self._assistants = self._db["assistants"]

    async def ping(self) -> bool:
        try:
            await self._client.admin.command("ping")
            return True
        except PyMongoError as exc:
            logger.warning("mongo_ping_failed", extra={"error": str(exc)})
            return False

    async def migrate(self) -> int:
        async with _guard("migrate"):
            return await apply_migrations(self._db)

    async def schema_version(self) -> int:
        async with _guard("schema_version"):
            return await current_version(self._db)

    async def close(self) -> None:
        self._client.close()

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------
    async def create_user(self, record: UserRecord) -> UserRecord:
        doc = record.model_dump()
        doc["username_lower"] = record.username.lower()
        async with _guard("create_user"):
            await self._users.insert_one(doc)
        return record

    async def get_user(self, user_id: str) -> Optional[UserRecord]:
        async with _guard("get_user"):
            doc = await self._users.find_one({"user_id": user_id}, _NO_ID)
        return _to_user(doc)

    async def get_user_by_username(self, username: str) -> Optional[UserRecord]:
        async with _guard("get_user_by_username"):
            doc = await self._users.find_one({"username_lower": username.lower()}, _NO_ID)
        return _to_user(doc)

    async def list_users(self) -> List[UserRecord]:
        async with _guard("list_users"):
            docs = await self._users.find({}, _NO_ID).sort("created_at", -1).to_list(length=None)
        return [UserRecord(**_strip(d)) for d in docs]

    async def update_user(self, user_id: str, changes: Dict[str, Any]) -> UserRecord:
        changes = check_user_changes(changes)
        async with _guard("update_user"):
            doc = await self._users.find_one_and_update(
                {"user_id": user_id},
                {"$set": changes},
                projection=_NO_ID,
                return_document=ReturnDocument.AFTER,
            )
        if doc is None:
            raise UserNotFoundError(user_id)
        return UserRecord(**_strip(doc))

    async def delete_user(self, user_id: str) -> bool:
        async with _guard("delete_user"):
            res = await self._users.delete_one({"user_id": user_id})
            if not res.deleted_count:
                return False
            await self._usage.delete_many({"user_id": user_id})
            await self._images.delete_many({"user_id": user_id})
            await self._transcripts.delete_many({"user_id": user_id})
            await self._assistants.delete_many({"user_id": user_id})
            session_ids = await self._sessions.distinct("session_id", {"user_id": user_id})
            await self._sessions.delete_many({"user_id": user_id})
            if session_ids:
                await self._messages.delete_many({"session_id": {"$in": session_ids}})
        return True

    # ------------------------------------------------------------------
    # Ledger
    # ------------------------------------------------------------------
    async def apply_usage(self, user_id: str, feature: str, delta: int) -> Tuple[int, UsageRecord]:
        record = UsageRecord(
            record_id=new_id(),
            user_id=user_id,
            feature=feature,
            delta=delta,
            created_at=utcnow(),
        )

        async def txn(session: Any) -> int:
            doc = await self._users.find_one_and_update(
                {"user_id": user_id},
                {"$inc": {"tokens": delta}},
                projection={"_id": 0, "tokens": 1},
                return_document=ReturnDocument.AFTER,
                session=session,
            )
            if doc is None:
                # raising aborts the transaction
                raise UserNotFoundError(user_id)
            await self._usage.insert_one(record.model_dump(exclude={"username"}), session=session)
            return int(doc["tokens"])

        # with_transaction retries write conflicts and unknown commit results
        async with _guard("apply_usage"):
            async with await self._client.start_session() as session:
                balance = await session.with_transaction(txn)
        return balance, record

    async def list_usage(
        self,
        user_id: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[UsageRecord]:
        query: Dict[str, Any] = {}
        if user_id is not None:
            query["user_id"] = user_id
        if since is not None:
            query["created_at"] = {"$gte": since}
        async with _guard("list_usage"):
            cursor = self._usage.find(query, _NO_ID).sort([("created_at", -1), ("_id", -1)]).skip(max(0, offset))
            if limit is not None:
                cursor = cursor.limit(limit)
            docs = await cursor.to_list(length=None)
            ids = list({d["user_id"] for d in docs})
            names: Dict[str, str] = {}
            if ids:
                async for u in self._users.find({"user_id": {"$in": ids}}, {"_id": 0, "user_id": 1, "username": 1}):
                    names[u["user_id"]] = u["username"]
        return [UsageRecord(**d, username=names.get(d["user_id"])) for d in docs]

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------
    async def save_image(self, artifact: ImageArtifact) -> ImageArtifact:
        async with _guard("save_image"):
            await self._images.insert_one(artifact.model_dump())
        return artifact

    async def list_images(
        self,
        user_id: str,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[ImageArtifact]:
        query: Dict[str, Any] = {"user_id": user_id}
        if since is not None:
            query["created_at"] = {"$gte": since}
        async with _guard("list_images"):
            cursor = self._images.find(query, _NO_ID).sort("created_at", -1).skip(max(0, offset))
            if limit is not None:
                cursor = cursor.limit(limit)
            docs = await cursor.to_list(length=None)
        return [ImageArtifact(**d) for d in docs]

    # ------------------------------------------------------------------
    # Transcripts
    # ------------------------------------------------------------------
    async def save_transcript(self, record: TranscriptRecord) -> TranscriptRecord:
        async with _guard("save_transcript"):
            await self._transcripts.insert_one(record.model_dump())
        return record

    async def get_transcript(self, user_id: str, transcript_id: str) -> Optional[TranscriptRecord]:
        async with _guard("get_transcript"):
            doc = await self._transcripts.find_one({"transcript_id": transcript_id, "user_id": user_id}, _NO_ID)
        return TranscriptRecord(**doc) if doc else None

    async def update_transcript(self, user_id: str, transcript_id: str, changes: Dict[str, Any]) -> TranscriptRecord:
        changes = check_transcript_changes(changes)
        changes["updated_at"] = utcnow()
        async with _guard("update_transcript"):
            doc = await self._transcripts.find_one_and_update(
                {"transcript_id": transcript_id, "user_id": user_id},
                {"$set": changes},
                projection=_NO_ID,
                return_document=ReturnDocument.AFTER,
            )
        if doc is None:
            raise KeyError("Transcript not found")
        return TranscriptRecord(**doc)

    async def list_transcripts(self, user_id: str) -> List[TranscriptRecord]:
        async with _guard("list_transcripts"):
            docs = await self._transcripts.find({"user_id": user_id}, _NO_ID).sort("created_at", -1).to_list(length=None)
        return [TranscriptRecord(**d) for d in docs]

    async def delete_transcript(self, user_id: str, transcript_id: str) -> bool:
        async with _guard("delete_transcript"):
            res = await self._transcripts.delete_one({"transcript_id": transcript_id, "user_id": user_id})
        return bool(res.deleted_count)

    # ------------------------------------------------------------------
    # Chat
    # ------------------------------------------------------------------
    async def create_chat_session(self, record: ChatSessionRecord) -> ChatSessionRecord:
        async with _guard("create_chat_session"):
            await self._sessions.insert_one(record.model_dump())
        return record

    async def get_chat_session(self, user_id: str, session_id: str) -> Optional[ChatSessionRecord]:
        async with _guard("get_chat_session"):
            doc = await self._sessions.find_one({"session_id": session_id, "user_id": user_id}, _NO_ID)
        return ChatSessionRecord(**doc) if doc else None

    async def list_chat_sessions(self, user_id: str) -> List[ChatSessionRecord]:
        async with _guard("list_chat_sessions"):
            docs = await self._sessions.find({"user_id": user_id}, _NO_ID).sort("updated_at", -1).to_list(length=None)
        return [ChatSessionRecord(**d) for d in docs]

    async def rename_chat_session(self, user_id: str, session_id: str, title: str) -> ChatSessionRecord:
        async with _guard("rename_chat_session"):
            doc = await self._sessions.find_one_and_update(
                {"session_id": session_id, "user_id": user_id},
                {"$set": {"title": title}},
                projection=_NO_ID,
                return_document=ReturnDocument.AFTER,
            )
        if doc is None:
            raise KeyError("Session not found")
        return ChatSessionRecord(**doc)

    async def delete_chat_session(self, user_id: str, session_id: str) -> bool:
        async with _guard("delete_chat_session"):
            res = await self._sessions.delete_one({"session_id": session_id, "user_id": user_id})
            if not res.deleted_count:
                return False
            await self._messages.delete_many({"session_id": session_id})
        return True

    async def add_chat_message(self, record: ChatMessageRecord) -> ChatMessageRecord:
        async with _guard("add_chat_message"):
            res = await self._sessions.update_one(
                {"session_id": record.session_id},
                {"$set": {"updated_at": record.created_at}},
            )
            if not res.matched_count:
                raise KeyError("Session not found")
            await self._messages.insert_one(record.model_dump())
        return record

    async def list_chat_messages(self, session_id: str) -> List[ChatMessageRecord]:
        async with _guard("list_chat_messages"):
            cursor = self._messages.find({"session_id": session_id}, _NO_ID).sort([("created_at", 1), ("_id", 1)])
            docs = await cursor.to_list(length=None)
        return [ChatMessageRecord(**d) for d in docs]

    # ------------------------------------------------------------------
    # Assistants
    # ------------------------------------------------------------------
    async def create_assistant(self, record: AssistantRecord) -> AssistantRecord:
        async with _guard("create_assistant"):
            await self._assistants.insert_one(record.model_dump())
        return record

    async def get_assistant(self, user_id: str, assistant_id: str) -> Optional[AssistantRecord]:
        async with _guard("get_assistant"):
            doc = await self._assistants.find_one({"assistant_id": assistant_id, "user_id": user_id}, _NO_ID)
        return AssistantRecord(**doc) if doc else None

    async def list_assistants(self, user_id: str) -> List[AssistantRecord]:
        async with _guard("list_assistants"):
            docs = await self._assistants.find({"user_id": user_id}, _NO_ID).sort("created_at", -1).to_list(length=None)
        return [AssistantRecord(**d) for d in docs]

    async def update_assistant(self, user_id: str, assistant_id: str, changes: Dict[str, Any]) -> AssistantRecord:
        changes = check_assistant_changes(changes)
        changes["updated_at"] = utcnow()
        async with _guard("update_assistant"):
            doc = await self._assistants.find_one_and_update(
                {"assistant_id": assistant_id, "user_id": user_id},
                {"$set": changes},
                projection=_NO_ID,
                return_document=ReturnDocument.AFTER,
            )
        if doc is None:
            raise KeyError("Assistant not found")
        return AssistantRecord(**doc)

    async def delete_assistant(self, user_id: str, assistant_id: str) -> bool:
        async with _guard("delete_assistant"):
            res = await self._assistants.delete_one({"assistant_id": assistant_id, "user_id": user_id})
        return bool(res.deleted_count)


def _strip(doc: Dict[str, Any]) -> Dict[str, Any]:
    doc = dict(doc)
    doc.pop("username_lower", None)
    return doc


def _to_user(doc: Optional[Dict[str, Any]]) -> Optional[UserRecord]:
    if not doc:
        return None
    return UserRecord(**_strip(doc))
