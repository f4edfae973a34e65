import asyncio
import random

import pytest

from src.vision.domain.errors import BillingError, UserNotFoundError
from src.vision.services.ledger import UsageLedger, period_start
from tests.fakes import FailingUsageStorage


def test_zero_cost_log_appends_one_record(storage, user):
    ledger = UsageLedger(storage)

    async def run():
        before = await storage.list_usage(user.user_id)
        balance = await ledger.debit(user.user_id, "access-log", 0)
        after = await storage.list_usage(user.user_id)
        return before, balance, after

    before, balance, after = asyncio.run(run())
    assert balance == user.tokens
    assert len(after) == len(before) + 1
    assert after[0].delta == 0
    assert after[0].feature == "access-log"


def test_concurrent_debits_conserve_balance(storage, user):
    ledger = UsageLedger(storage)
    rng = random.Random(42)
    amounts = [rng.randint(0, 50) for _ in range(200)]

    async def debit(amount: int) -> int:
        await asyncio.sleep(rng.random() / 1000)
        return await ledger.debit(user.user_id, "chat", amount)

    async def run():
        await asyncio.gather(*(debit(a) for a in amounts))
        return await storage.get_user(user.user_id), await storage.list_usage(user.user_id)

    final, records = asyncio.run(run())
    assert final.tokens == user.tokens - sum(amounts)
    assert len(records) == len(amounts)
    assert sum(r.delta for r in records) == -sum(amounts)


def test_balance_may_go_negative(storage, user):
    ledger = UsageLedger(storage)
    balance = asyncio.run(ledger.debit(user.user_id, "image-generation", user.tokens + 5))
    assert balance == -5


def test_history_is_newest_first_across_users(storage, make_user):
    ledger = UsageLedger(storage)
    alice = make_user("alice")
    bob = make_user("bob")

    async def run():
        for i in range(5):
            await ledger.debit(alice.user_id, f"a{i}", 1)
            await ledger.debit(bob.user_id, f"b{i}", 1)
        return await ledger.get_history(None), await ledger.get_history(alice.user_id)

    everyone, mine = asyncio.run(run())
    stamps = [r.created_at for r in everyone]
    assert stamps == sorted(stamps, reverse=True)
    assert [r.feature for r in everyone][:2] == ["b4", "a4"]
    assert [r.feature for r in mine] == ["a4", "a3", "a2", "a1", "a0"]
    assert everyone[0].username == "bob"


def test_history_pages(storage, user):
    ledger = UsageLedger(storage)

    async def run():
        for i in range(7):
            await ledger.debit(user.user_id, f"f{i}", 1)
        return (
            await ledger.get_history(user.user_id, page=1, page_size=3),
            await ledger.get_history(user.user_id, page=3, page_size=3),
        )

    first, last = asyncio.run(run())
    assert [r.feature for r in first] == ["f6", "f5", "f4"]
    assert [r.feature for r in last] == ["f0"]


def test_adjust_credits_and_negative_debit_rejected(storage, user):
    ledger = UsageLedger(storage)
    assert asyncio.run(ledger.adjust(user.user_id, "admin-adjustment", 250)) == user.tokens + 250
    with pytest.raises(ValueError):
        asyncio.run(ledger.debit(user.user_id, "chat", -1))


def test_unknown_user_is_reported(storage):
    with pytest.raises(UserNotFoundError):
        asyncio.run(UsageLedger(storage).debit("nobody", "chat", 1))


def test_storage_failure_becomes_billing_error(settings):
    from src.vision.security.auth import new_user

    failing = FailingUsageStorage()
    record = asyncio.run(new_user("carol", "secret123", settings))
    user = asyncio.run(failing.create_user(record))
    with pytest.raises(BillingError) as info:
        asyncio.run(UsageLedger(failing).debit(user.user_id, "chat", 3))
    assert info.value.amount == -3
    assert info.value.feature == "chat"


def test_period_filter():
    assert period_start("all") is None
    assert period_start(None) is None
    assert period_start("week") is not None
    with pytest.raises(ValueError):
        period_start("year")
