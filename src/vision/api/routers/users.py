from __future__ import annotations

from fastapi import APIRouter, Depends, Response, status

from ...config import Settings
from ...domain.errors import PersistenceError, UserNotFoundError
from ...domain.models import PasswordChange, ProfileUpdate, UserProfile, UserRecord
from ...infrastructure.storage import Storage
from ...security.auth import change_password, get_current_user
from ..deps import get_settings, get_storage
from ..errors import http_error

router = APIRouter(prefix="/users", tags=["users"])


@router.put("/me", response_model=UserProfile)
async def update_profile(
    req: ProfileUpdate,
    user: UserRecord = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
) -> UserProfile:
    """Self-service edit of contact details; role, approval and balance stay admin-only."""
    changes = req.model_dump(exclude_unset=True)
    # contact fields may be cleared; the display name may not
    if changes.get("display_name") is None:
        changes.pop("display_name", None)
    if not changes:
        return UserProfile.from_record(user)
    try:
        updated = await storage.update_user(user.user_id, changes)
    except (UserNotFoundError, PersistenceError) as exc:
        raise http_error(exc) from exc
    return UserProfile.from_record(updated)


@router.put("/me/password", status_code=status.HTTP_204_NO_CONTENT)
async def update_password(
    req: PasswordChange,
    user: UserRecord = Depends(get_current_user),
    settings: Settings = Depends(get_settings),
    storage: Storage = Depends(get_storage),
) -> Response:
    try:
        await change_password(storage, settings, user, req.current_password, req.new_password)
    except (ValueError, UserNotFoundError, PersistenceError) as exc:
        raise http_error(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)
