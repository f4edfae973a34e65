from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from ...config import Settings
from ...domain.errors import DuplicateUserError, PersistenceError
from ...domain.models import LoginRequest, RegisterRequest, TokenResponse, UserProfile, UserRecord
from ...infrastructure.storage import Storage
from ...security.auth import (
    authenticate,
    check_account,
    create_access_token,
    get_current_user,
    register_user,
)
from ..deps import get_settings, get_storage
from ..errors import http_error

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/register", response_model=UserProfile, status_code=status.HTTP_201_CREATED)
async def register(
    req: RegisterRequest,
    settings: Settings = Depends(get_settings),
    storage: Storage = Depends(get_storage),
) -> UserProfile:
    try:
        user = await register_user(storage, settings, req)
    except (DuplicateUserError, PersistenceError) as exc:
        raise http_error(exc) from exc
    return UserProfile.from_record(user)


@router.post("/login", response_model=TokenResponse)
async def login(
    req: LoginRequest,
    settings: Settings = Depends(get_settings),
    storage: Storage = Depends(get_storage),
) -> TokenResponse:
    try:
        user = await authenticate(storage, req.username, req.password)
    except PersistenceError as exc:
        raise http_error(exc) from exc
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid username or password")
    check_account(user)
    token = create_access_token(user, settings)
    return TokenResponse(access_token=token, expires_in=settings.jwt_expires_min * 60, user=UserProfile.from_record(user))


@router.get("/me", response_model=UserProfile)
def me(user: UserRecord = Depends(get_current_user)) -> UserProfile:
    return UserProfile.from_record(user)
