from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from ...domain.errors import PersistenceError
from ...domain.models import UsageLogRequest, UsageLogResponse, UsageRecord, UserRecord
from ...security.auth import get_current_user
from ...services.ledger import UsageLedger
from ..deps import get_ledger
from ..errors import http_error

router = APIRouter(prefix="/usage", tags=["usage"])


@router.post("", response_model=UsageLogResponse)
async def log_usage(
    req: UsageLogRequest,
    user: UserRecord = Depends(get_current_user),
    ledger: UsageLedger = Depends(get_ledger),
) -> UsageLogResponse:
    """Record client-reported usage; ``tokenCount`` 0 logs an access without cost."""
    try:
        balance = await ledger.debit(user.user_id, req.feature, req.token_count)
    except PersistenceError as exc:
        raise http_error(exc) from exc
    return UsageLogResponse(new_balance=balance)


@router.get("/me", response_model=List[UsageRecord])
async def my_usage(
    period: str = Query("all", pattern="^(week|all)$"),
    page: Optional[int] = Query(None, ge=1),
    user: UserRecord = Depends(get_current_user),
    ledger: UsageLedger = Depends(get_ledger),
) -> List[UsageRecord]:
    try:
        return await ledger.get_history(user.user_id, period=period, page=page)
    except PersistenceError as exc:
        raise http_error(exc) from exc
