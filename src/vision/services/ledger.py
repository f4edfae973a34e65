from __future__ import annotations

"""Usage ledger: signed token movements paired with immutable usage records.

Every balance change goes through ``UsageLedger``; callers never read, modify
and write the balance themselves. No floor is enforced here.
"""

from datetime import datetime, timedelta
from typing import List, Optional
import logging

from ..domain.errors import BillingError, PersistenceError, UserNotFoundError
from ..domain.models import UsageRecord
from ..infrastructure.storage import Storage, utcnow
from ..observability.metrics import record_ledger

logger = logging.getLogger("vision.ledger")

PAGE_SIZE = 50
PERIODS = ("week", "all")


def period_start(period: Optional[str], now: Optional[datetime] = None) -> Optional[datetime]:
    """Lower time bound for a history filter; ``None`` means no bound."""
    if period in (None, "", "all"):
        return None
    if period == "week":
        return (now or utcnow()) - timedelta(days=7)
    raise ValueError(f"Unknown period: {period} (expected one of {PERIODS})")


class UsageLedger:
    def __init__(self, storage: Storage) -> None:
        self._storage = storage

    async def _apply(self, user_id: str, feature: str, delta: int) -> int:
        try:
            balance, record = await self._storage.apply_usage(user_id, feature, delta)
        except UserNotFoundError:
            raise
        except PersistenceError as exc:
            logger.error(
                "ledger_apply_failed",
                extra={"user_id": user_id, "feature": feature, "delta": delta, "error": str(exc)},
            )
            raise BillingError(
                f"Could not record {feature} usage", user_id=user_id, feature=feature, amount=delta
            ) from exc
        record_ledger(feature, delta)
        logger.info(
            "ledger_applied",
            extra={"user_id": user_id, "feature": feature, "delta": delta, "balance": balance, "record_id": record.record_id},
        )
        return balance

    async def debit(self, user_id: str, feature: str, amount: int) -> int:
        """Charge ``amount`` tokens; zero is legal and still leaves a record."""
        if amount < 0:
            raise ValueError("Debit amount must be >= 0")
        return await self._apply(user_id, feature, -int(amount))

    async def adjust(self, user_id: str, feature: str, delta: int) -> int:
        """Signed movement, used for admin grants and corrections."""
        return await self._apply(user_id, feature, int(delta))

    async def get_history(
        self,
        user_id: Optional[str],
        period: Optional[str] = None,
        page: Optional[int] = None,
        page_size: int = PAGE_SIZE,
    ) -> List[UsageRecord]:
        """Newest first. ``user_id=None`` lists every user (admin view)."""
        since = period_start(period)
        if page is None:
            return await self._storage.list_usage(user_id, since=since)
        page = max(1, page)
        return await self._storage.list_usage(user_id, since=since, limit=page_size, offset=(page - 1) * page_size)
