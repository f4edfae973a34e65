from __future__ import annotations

"""Runtime settings resolved from the environment.

Values are read once (``Settings.from_env()``) when the app is created and then
passed by reference to the components that need them.

Env vars:
- JWT_SECRET, VISION_JWT_EXPIRES_MIN (default 7 days)
- GEMINI_API_KEY (AI features are unavailable without it)
- VISION_DB_MODE = memory | mongo, MONGO_URL, MONGO_DB
- VISION_DEFAULT_TOKENS (grant for newly registered accounts)
- VISION_FILE_POLL_INTERVAL_SEC / VISION_FILE_POLL_TIMEOUT_SEC
- VISION_ADMIN_USERNAME / VISION_ADMIN_PASSWORD (bootstrap admin)
"""

import os
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_list(name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    raw = os.getenv(name)
    if not raw:
        return default
    return tuple(part.strip() for part in raw.split(",") if part.strip())


@dataclass
class Settings:
    jwt_secret: str = "vision-secret-key-change-in-prod"
    jwt_algorithm: str = "HS256"
    jwt_expires_min: int = 7 * 24 * 60
    gemini_api_key: Optional[str] = None
    db_mode: str = "memory"
    mongo_url: str = "mongodb://localhost:27017"
    mongo_db: str = "vision"
    default_tokens: int = 100000
    file_poll_interval: float = 5.0
    file_poll_timeout: float = 300.0
    max_upload_bytes: int = 200 * 1024 * 1024
    max_audio_files: int = 5
    chat_attachment_limits: Dict[str, int] = field(
        default_factory=lambda: {"standard": 1, "elevated": 3, "admin": 3}
    )
    cors_origins: Tuple[str, ...] = ("http://localhost:3000", "http://127.0.0.1:3000")
    admin_username: Optional[str] = None
    admin_password: Optional[str] = None
    bcrypt_rounds: int = 12

    @property
    def file_poll_attempts(self) -> int:
        if self.file_poll_interval <= 0:
            return 1
        return max(1, int(self.file_poll_timeout // self.file_poll_interval))

    @staticmethod
    def from_env() -> "Settings":
        return Settings(
            jwt_secret=os.getenv("JWT_SECRET", "vision-secret-key-change-in-prod"),
            jwt_expires_min=_env_int("VISION_JWT_EXPIRES_MIN", 7 * 24 * 60),
            gemini_api_key=os.getenv("GEMINI_API_KEY") or None,
            db_mode=(os.getenv("VISION_DB_MODE") or "memory").strip().lower(),
            mongo_url=os.getenv("MONGO_URL", "mongodb://localhost:27017"),
            mongo_db=os.getenv("MONGO_DB", "vision"),
            default_tokens=_env_int("VISION_DEFAULT_TOKENS", 100000),
            file_poll_interval=_env_float("VISION_FILE_POLL_INTERVAL_SEC", 5.0),
            file_poll_timeout=_env_float("VISION_FILE_POLL_TIMEOUT_SEC", 300.0),
            max_upload_bytes=_env_int("VISION_MAX_UPLOAD_MB", 200) * 1024 * 1024,
            max_audio_files=_env_int("VISION_MAX_AUDIO_FILES", 5),
            chat_attachment_limits={
                "standard": _env_int("VISION_CHAT_ATTACHMENTS_STANDARD", 1),
                "elevated": _env_int("VISION_CHAT_ATTACHMENTS_ELEVATED", 3),
                "admin": _env_int("VISION_CHAT_ATTACHMENTS_ADMIN", 3),
            },
            cors_origins=_env_list(
                "VISION_CORS_ORIGINS", ("http://localhost:3000", "http://127.0.0.1:3000")
            ),
            admin_username=os.getenv("VISION_ADMIN_USERNAME") or None,
            admin_password=os.getenv("VISION_ADMIN_PASSWORD") or None,
            bcrypt_rounds=_env_int("VISION_BCRYPT_ROUNDS", 12),
        )
