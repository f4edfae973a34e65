from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status

from ...config import Settings
from ...domain.errors import DuplicateUserError, PersistenceError, UserNotFoundError
from ...domain.models import (
    AdminUserCreate,
    AdminUserUpdate,
    BalanceResponse,
    TokenAdjustment,
    UsageRecord,
    UserProfile,
    UserRecord,
)
from ...infrastructure.storage import Storage
from ...security.auth import default_expiry, new_user
from ...security.rbac import require_admin
from ...services.ledger import UsageLedger
from ..deps import get_ledger, get_settings, get_storage
from ..errors import http_error

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/users", response_model=List[UserProfile])
async def list_users(
    admin: UserRecord = Depends(require_admin),
    storage: Storage = Depends(get_storage),
) -> List[UserProfile]:
    try:
        users = await storage.list_users()
    except PersistenceError as exc:
        raise http_error(exc) from exc
    return [UserProfile.from_record(u) for u in users]


@router.post("/users", response_model=UserProfile, status_code=status.HTTP_201_CREATED)
async def create_user(
    req: AdminUserCreate,
    admin: UserRecord = Depends(require_admin),
    settings: Settings = Depends(get_settings),
    storage: Storage = Depends(get_storage),
) -> UserProfile:
    """Admin-created accounts are approved and get a role-based expiry."""
    record = await new_user(
        req.username,
        req.password,
        settings,
        display_name=req.display_name,
        role=req.role,
        is_approved=True,
        expires_at=default_expiry(req.role),
    )
    try:
        created = await storage.create_user(record)
    except (DuplicateUserError, PersistenceError) as exc:
        raise http_error(exc) from exc
    return UserProfile.from_record(created)


@router.patch("/users/{user_id}", response_model=UserProfile)
async def update_user(
    user_id: str,
    req: AdminUserUpdate,
    admin: UserRecord = Depends(require_admin),
    storage: Storage = Depends(get_storage),
) -> UserProfile:
    changes = req.model_dump(exclude_unset=True)
    try:
        if not changes:
            current = await storage.get_user(user_id)
            if current is None:
                raise UserNotFoundError(user_id)
            return UserProfile.from_record(current)
        updated = await storage.update_user(user_id, changes)
    except (UserNotFoundError, PersistenceError, ValueError) as exc:
        raise http_error(exc) from exc
    return UserProfile.from_record(updated)


@router.delete("/users/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_user(
    user_id: str,
    admin: UserRecord = Depends(require_admin),
    storage: Storage = Depends(get_storage),
) -> Response:
    if user_id == admin.user_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Admins cannot delete themselves")
    try:
        deleted = await storage.delete_user(user_id)
    except PersistenceError as exc:
        raise http_error(exc) from exc
    if not deleted:
        raise HTTPException(status_code=404, detail="User not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/users/{user_id}/tokens", response_model=BalanceResponse)
async def adjust_tokens(
    user_id: str,
    req: TokenAdjustment,
    admin: UserRecord = Depends(require_admin),
    ledger: UsageLedger = Depends(get_ledger),
) -> BalanceResponse:
    """Grant (positive) or remove (negative) tokens through the ledger."""
    try:
        balance = await ledger.adjust(user_id, req.feature, req.amount)
    except (UserNotFoundError, PersistenceError) as exc:
        raise http_error(exc) from exc
    return BalanceResponse(new_balance=balance)


@router.get("/usage", response_model=List[UsageRecord])
async def all_usage(
    period: str = Query("all", pattern="^(week|all)$"),
    page: Optional[int] = Query(None, ge=1),
    user_id: Optional[str] = Query(None),
    admin: UserRecord = Depends(require_admin),
    ledger: UsageLedger = Depends(get_ledger),
) -> List[UsageRecord]:
    try:
        return await ledger.get_history(user_id, period=period, page=page)
    except PersistenceError as exc:
        raise http_error(exc) from exc
