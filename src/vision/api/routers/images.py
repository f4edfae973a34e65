from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from ...domain.errors import PersistenceError
from ...domain.models import ImageArtifact, UserRecord
from ...infrastructure.storage import Storage
from ...security.auth import get_current_user
from ...services.ledger import PAGE_SIZE, period_start
from ..deps import get_storage
from ..errors import http_error

router = APIRouter(prefix="/images", tags=["images"])


@router.get("", response_model=List[ImageArtifact])
async def list_images(
    period: str = Query("all", pattern="^(week|all)$"),
    page: Optional[int] = Query(None, ge=1),
    user: UserRecord = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
) -> List[ImageArtifact]:
    since = period_start(period)
    offset = (page - 1) * PAGE_SIZE if page else 0
    try:
        return await storage.list_images(user.user_id, since=since, limit=PAGE_SIZE if page else None, offset=offset)
    except PersistenceError as exc:
        raise http_error(exc) from exc
