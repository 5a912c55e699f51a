from __future__ import annotations

import json
from decimal import Decimal

import pytest

from panel_billing.cache.memory import InMemoryAsyncCache
from panel_billing.db.memory import InMemoryDBManager
from panel_billing.errors import UserNotFoundError
from panel_billing.logging.ledger_logger import LedgerLogger
from panel_billing.models.transaction import TransactionType
from panel_billing.models.user import UserAccount
from panel_billing.services.credit_service import CreditService


async def _service_with_user(tmp_path, cache=None):
    db = InMemoryDBManager()
    ledger = LedgerLogger(db=db, file_path=tmp_path / "ledger.log")
    service = CreditService(db=db, ledger=ledger, cache=cache)
    user = await db.add_user(UserAccount(email="user@example.com"))
    return db, service, user.id


@pytest.mark.asyncio
async def test_credit_and_debit_write_history(tmp_path):
    db, service, user_id = await _service_with_user(tmp_path)

    tx_add = await service.apply_delta(user_id, Decimal("20.50"), TransactionType.REDEEM)
    assert tx_add.current_credits == Decimal("20.50")
    assert tx_add.credits_added == Decimal("20.50")

    tx_debit = await service.apply_delta(user_id, Decimal("-5.25"), TransactionType.PURCHASE)
    assert tx_debit.current_credits == Decimal("15.25")
    assert tx_debit.credits_deducted == Decimal("5.25")

    assert await service.get_balance(user_id) == Decimal("15.25")
    history = list(await service.get_credit_history(user_id))
    assert [t.transaction_type for t in history] == [
        TransactionType.REDEEM,
        TransactionType.PURCHASE,
    ]


@pytest.mark.asyncio
async def test_debit_below_zero_is_refused_without_writes(tmp_path):
    db, service, user_id = await _service_with_user(tmp_path)
    await service.apply_delta(user_id, Decimal("3"), TransactionType.ADJUST)

    tx = await service.apply_delta(user_id, Decimal("-3.01"), TransactionType.PURCHASE)

    assert tx is None
    assert await service.get_balance(user_id) == Decimal("3")
    assert len(list(await service.get_credit_history(user_id))) == 1


@pytest.mark.asyncio
async def test_adjust_credits_raises_on_overdraw(tmp_path):
    db, service, user_id = await _service_with_user(tmp_path)

    with pytest.raises(ValueError, match="insufficient credits"):
        await service.adjust_credits(user_id, Decimal("-1"))

    tx = await service.adjust_credits(user_id, Decimal("4"), description="goodwill")
    assert tx.transaction_type == TransactionType.ADJUST
    assert tx.description == "goodwill"


@pytest.mark.asyncio
async def test_zero_delta_rejected(tmp_path):
    db, service, user_id = await _service_with_user(tmp_path)
    with pytest.raises(ValueError):
        await service.apply_delta(user_id, Decimal("0"), TransactionType.ADJUST)


@pytest.mark.asyncio
async def test_unknown_user(tmp_path):
    db, service, _ = await _service_with_user(tmp_path)
    with pytest.raises(UserNotFoundError):
        await service.get_balance("missing")
    with pytest.raises(LookupError):
        await service.apply_delta("missing", Decimal("1"), TransactionType.ADJUST)


@pytest.mark.asyncio
async def test_credit_info_cache_is_invalidated(tmp_path):
    cache = InMemoryAsyncCache()
    db, service, user_id = await _service_with_user(tmp_path, cache=cache)

    info = await service.get_user_credits_info(user_id)
    assert info.balance == Decimal("0")
    assert info.panel_linked is False

    await service.apply_delta(user_id, Decimal("7"), TransactionType.ADJUST)
    # Still the cached summary until the owner of the unit of work invalidates it.
    assert (await service.get_user_credits_info(user_id)).balance == Decimal("0")

    await service.invalidate_cache(user_id)
    assert (await service.get_user_credits_info(user_id)).balance == Decimal("7")


@pytest.mark.asyncio
async def test_ledger_file_lines(tmp_path):
    db, service, user_id = await _service_with_user(tmp_path)
    await service.apply_delta(user_id, Decimal("2"), TransactionType.BONUS)

    lines = (tmp_path / "ledger.log").read_text().splitlines()
    entry = json.loads(lines[-1])
    assert entry["event_type"] == "transaction"
    assert entry["user_id"] == user_id
    assert entry["details"]["new_balance"] == "2"
    assert entry["details"]["transaction_type"] == "bonus"
