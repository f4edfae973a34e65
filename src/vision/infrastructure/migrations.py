from __future__ import annotations

"""Versioned, idempotent schema migrations for the Mongo backend.

Applied versions are tracked by a single ``schema_meta`` document; each
pending migration runs once, in order, and bumps the marker after it succeeds.
"""

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Awaitable, Callable, List
import logging

from pymongo import ASCENDING, DESCENDING

logger = logging.getLogger("vision.migrations")

META_COLLECTION = "schema_meta"
META_ID = "schema"


@dataclass(frozen=True)
class Migration:
    version: int
    description: str
    apply: Callable[[Any], Awaitable[None]]


async def _user_indexes(db: Any) -> None:
    await db["users"].create_index("user_id", unique=True)
    await db["users"].create_index("username_lower", unique=True)


async def _usage_indexes(db: Any) -> None:
    await db["usage_logs"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    await db["usage_logs"].create_index([("created_at", DESCENDING)])


async def _artifact_indexes(db: Any) -> None:
    await db["images"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    await db["transcripts"].create_index("transcript_id", unique=True)
    await db["transcripts"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    await db["chat_sessions"].create_index("session_id", unique=True)
    await db["chat_sessions"].create_index([("user_id", ASCENDING), ("updated_at", DESCENDING)])
    await db["chat_messages"].create_index([("session_id", ASCENDING), ("created_at", ASCENDING)])


async def _backfill_original_content(db: Any) -> None:
    # Transcripts written before refinement existed only carry ``content``.
    await db["transcripts"].update_many(
        {"original_content": {"$exists": False}},
        [{"$set": {"original_content": "$content"}}],
    )


async def _assistant_indexes(db: Any) -> None:
    await db["assistants"].create_index("assistant_id", unique=True)
    await db["assistants"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])


MIGRATIONS: List[Migration] = [
    Migration(1, "user indexes", _user_indexes),
    Migration(2, "usage log indexes", _usage_indexes),
    Migration(3, "artifact and chat indexes", _artifact_indexes),
    Migration(4, "backfill transcripts.original_content", _backfill_original_content),
    Migration(5, "assistant indexes", _assistant_indexes),
]


async def current_version(db: Any) -> int:
    doc = await db[META_COLLECTION].find_one({"_id": META_ID})
    return int(doc.get("version", 0)) if doc else 0


async def apply_migrations(db: Any, migrations: List[Migration] = MIGRATIONS) -> int:
    """Run every migration newer than the stored marker; return the final version."""
    version = await current_version(db)
    for migration in sorted(migrations, key=lambda m: m.version):
        if migration.version <= version:
            continue
        logger.info(
            "migration_apply",
            extra={"version": migration.version, "description": migration.description},
        )
        await migration.apply(db)
        await db[META_COLLECTION].update_one(
            {"_id": META_ID},
            {"$set": {"version": migration.version, "applied_at": datetime.now(UTC)}},
            upsert=True,
        )
        version = migration.version
    return version
