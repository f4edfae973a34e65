from __future__ import annotations

"""Authentication utilities: password hashing, JWT handling and the
``get_current_user`` dependency.

Accounts live in the configured ``Storage``. A caller is admitted when the
bearer token is valid, the account exists, and (for non-admins) the account is
approved and not expired. Every rejection happens before any provider call.
"""

import asyncio
from datetime import UTC, datetime, timedelta
from typing import Any, Dict, Optional
import logging

import bcrypt
import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ..api.deps import get_settings, get_storage
from ..config import Settings
from ..domain.errors import DuplicateUserError
from ..domain.models import RegisterRequest, Role, UserRecord
from ..infrastructure.storage import Storage, new_id, utcnow

logger = logging.getLogger("vision.auth")
bearer_scheme = HTTPBearer(auto_error=False)

ADMIN_EXPIRY = datetime(2100, 1, 1, tzinfo=UTC)


# bcrypt is CPU-bound; both calls run off the event loop
async def hash_password(password: str, rounds: int = 12) -> str:
    hashed = await asyncio.to_thread(bcrypt.hashpw, password.encode("utf-8"), bcrypt.gensalt(rounds=rounds))
    return hashed.decode("utf-8")


async def verify_password(password: str, hashed: str) -> bool:
    try:
        return await asyncio.to_thread(bcrypt.checkpw, password.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # malformed stored hash
        return False


def default_expiry(role: Role, now: Optional[datetime] = None) -> datetime:
    now = now or utcnow()
    if role == "admin":
        return ADMIN_EXPIRY
    if role == "elevated":
        return now + timedelta(days=30)
    return now + timedelta(days=7)


def create_access_token(user: UserRecord, settings: Settings) -> str:
    now = datetime.now(UTC)
    exp = now + timedelta(minutes=settings.jwt_expires_min)
    payload = {
        "sub": user.user_id,
        "username": user.username,
        "role": user.role,
        "iat": int(now.timestamp()),
        "exp": int(exp.timestamp()),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_token(token: str, settings: Settings) -> Dict[str, Any]:
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")


def check_account(user: UserRecord, now: Optional[datetime] = None) -> None:
    """Raise 403 for unapproved or expired accounts; admins are always admitted."""
    if user.role == "admin":
        return
    if not user.is_approved:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Account pending approval")
    expires = user.expires_at
    if expires is not None:
        if expires.tzinfo is None:
            expires = expires.replace(tzinfo=UTC)
        if expires <= (now or utcnow()):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Account expired")


async def authenticate(storage: Storage, username: str, password: str) -> Optional[UserRecord]:
    user = await storage.get_user_by_username(username)
    if user is None or not await verify_password(password, user.password_hash):
        return None
    return user


async def new_user(
    username: str,
    password: str,
    settings: Settings,
    *,
    display_name: Optional[str] = None,
    role: Role = "standard",
    is_approved: bool = False,
    expires_at: Optional[datetime] = None,
    contact_email: Optional[str] = None,
    mobile: Optional[str] = None,
) -> UserRecord:
    return UserRecord(
        user_id=new_id(),
        username=username,
        password_hash=await hash_password(password, settings.bcrypt_rounds),
        display_name=display_name or username,
        role=role,
        is_approved=is_approved,
        expires_at=expires_at,
        tokens=settings.default_tokens,
        created_at=utcnow(),
        contact_email=contact_email,
        mobile=mobile,
    )


async def register_user(storage: Storage, settings: Settings, req: RegisterRequest) -> UserRecord:
    """Open registration: always an unapproved standard account."""
    record = await new_user(
        req.username,
        req.password,
        settings,
        display_name=req.display_name,
        contact_email=req.contact_email,
        mobile=req.mobile,
    )
    return await storage.create_user(record)


async def change_password(
    storage: Storage, settings: Settings, user: UserRecord, current_password: str, new_password: str
) -> UserRecord:
    if not await verify_password(current_password, user.password_hash):
        raise ValueError("Invalid current password")
    hashed = await hash_password(new_password, settings.bcrypt_rounds)
    updated = await storage.update_user(user.user_id, {"password_hash": hashed})
    logger.info("password_changed", extra={"user_id": user.user_id})
    return updated


async def ensure_admin(storage: Storage, settings: Settings) -> Optional[UserRecord]:
    """Create the bootstrap admin once, when credentials are configured."""
    if not settings.admin_username or not settings.admin_password:
        return None
    existing = await storage.get_user_by_username(settings.admin_username)
    if existing is not None:
        return existing
    record = await new_user(
        settings.admin_username,
        settings.admin_password,
        settings,
        display_name="Administrator",
        role="admin",
        is_approved=True,
        expires_at=ADMIN_EXPIRY,
    )
    try:
        created = await storage.create_user(record)
    except DuplicateUserError:
        return await storage.get_user_by_username(settings.admin_username)
    logger.info("bootstrap_admin_created", extra={"username": created.username})
    return created


async def get_current_user(
    creds: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    settings: Settings = Depends(get_settings),
    storage: Storage = Depends(get_storage),
) -> UserRecord:
    """Resolve the calling account from the bearer token."""
    if creds is None or not creds.scheme or creds.scheme.lower() != "bearer":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing bearer token")
    claims = decode_token(creds.credentials, settings)
    user_id = claims.get("sub")
    user = await storage.get_user(user_id) if user_id else None
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unknown user")
    check_account(user)
    return user
