from __future__ import annotations

"""RBAC helpers for the three account roles."""
from typing import Callable, Dict

from fastapi import Depends, HTTPException, status

from ..domain.models import UserRecord
from .auth import get_current_user

ROLE_RANK: Dict[str, int] = {
    "standard": 0,
    "elevated": 1,
    "admin": 2,
}


def has_role(user: UserRecord, minimum: str) -> bool:
    return ROLE_RANK.get(user.role, -1) >= ROLE_RANK[minimum]


def require_role(minimum: str) -> Callable[[UserRecord], UserRecord]:
    """FastAPI dependency admitting ``minimum`` and every higher role."""

    def dependency(user: UserRecord = Depends(get_current_user)) -> UserRecord:
        if not has_role(user, minimum):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient permissions")
        return user

    return dependency


require_admin = require_role("admin")
