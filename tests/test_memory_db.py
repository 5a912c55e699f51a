from __future__ import annotations

from decimal import Decimal

import pytest

from factories import make_plan
from panel_billing.db.memory import InMemoryDBManager
from panel_billing.errors import DuplicateEmailError
from panel_billing.models.gift_card import GiftCard
from panel_billing.models.user import UserAccount


@pytest.mark.asyncio
async def test_transaction_rolls_back_every_write():
    db = InMemoryDBManager()
    user = await db.add_user(UserAccount(email="a@example.com"))

    with pytest.raises(RuntimeError):
        async with db.transaction():
            await db.adjust_user_credits(user.id, Decimal("5"))
            await db.add_gift_card(GiftCard(code="TEMP", credits=Decimal("1")))
            raise RuntimeError("boom")

    assert (await db.get_user(user.id)).credits == Decimal("0")
    assert await db.get_gift_card_by_code("TEMP") is None


@pytest.mark.asyncio
async def test_nested_transaction_joins_outer():
    db = InMemoryDBManager()
    user = await db.add_user(UserAccount(email="a@example.com"))

    with pytest.raises(ValueError):
        async with db.transaction():
            async with db.transaction():
                await db.adjust_user_credits(user.id, Decimal("5"))
            raise ValueError("outer fails")

    assert (await db.get_user(user.id)).credits == Decimal("0")


@pytest.mark.asyncio
async def test_guarded_credit_update():
    db = InMemoryDBManager()
    user = await db.add_user(UserAccount(email="a@example.com"))

    assert await db.adjust_user_credits(user.id, Decimal("2")) == Decimal("2")
    assert await db.adjust_user_credits(user.id, Decimal("-2.01")) is None
    assert await db.adjust_user_credits(user.id, Decimal("-2")) == Decimal("0")


@pytest.mark.asyncio
async def test_guarded_gift_card_uses():
    db = InMemoryDBManager()
    card = await db.add_gift_card(GiftCard(code="TWICE", credits=Decimal("1"), max_uses=2))

    assert await db.increment_gift_card_uses(card.id) is True
    assert await db.increment_gift_card_uses(card.id) is True
    assert await db.increment_gift_card_uses(card.id) is False
    assert (await db.get_gift_card(card.id)).uses == 2


@pytest.mark.asyncio
async def test_disabled_card_cannot_be_used():
    db = InMemoryDBManager()
    card = await db.add_gift_card(GiftCard(code="OFF", credits=Decimal("1"), enabled=False))
    assert await db.increment_gift_card_uses(card.id) is False


@pytest.mark.asyncio
async def test_update_gift_card_never_rewrites_uses():
    db = InMemoryDBManager()
    card = await db.add_gift_card(GiftCard(code="KEEP", credits=Decimal("1"), max_uses=3))
    await db.increment_gift_card_uses(card.id)

    card.uses = 0
    card.credits = Decimal("2")
    updated = await db.update_gift_card(card)

    assert updated.uses == 1
    assert (await db.get_gift_card(card.id)).credits == Decimal("2")


@pytest.mark.asyncio
async def test_plan_stock_counter():
    db = InMemoryDBManager()
    plan = await db.add_plan(make_plan(stock_limit=1))

    assert await db.decrement_plan_stock(plan.id) is False
    assert await db.increment_plan_stock(plan.id) is True
    assert await db.increment_plan_stock(plan.id) is False
    assert await db.increment_plan_stock("missing") is False


@pytest.mark.asyncio
async def test_returned_records_are_copies():
    db = InMemoryDBManager()
    user = await db.add_user(UserAccount(email="a@example.com"))

    fetched = await db.get_user(user.id)
    fetched.credits = Decimal("100")

    assert (await db.get_user(user.id)).credits == Decimal("0")


@pytest.mark.asyncio
async def test_email_is_unique_case_insensitively():
    db = InMemoryDBManager()
    await db.add_user(UserAccount(email="a@example.com"))
    with pytest.raises(DuplicateEmailError):
        await db.add_user(UserAccount(email="A@Example.com"))


@pytest.mark.asyncio
async def test_update_gift_card_refuses_max_uses_below_uses():
    db = InMemoryDBManager()
    card = await db.add_gift_card(GiftCard(code="SHRINK", credits=Decimal("1"), max_uses=3))
    await db.increment_gift_card_uses(card.id)
    await db.increment_gift_card_uses(card.id)

    card.max_uses = 1
    with pytest.raises(ValueError):
        await db.update_gift_card(card)

    assert (await db.get_gift_card(card.id)).max_uses == 3

    card.max_uses = 2
    assert (await db.update_gift_card(card)).max_uses == 2


@pytest.mark.asyncio
async def test_update_plan_refuses_stock_limit_below_sold():
    db = InMemoryDBManager()
    plan = await db.add_plan(make_plan(stock_limit=5))
    await db.increment_plan_stock(plan.id)
    await db.increment_plan_stock(plan.id)

    plan.stock_limit = 1
    with pytest.raises(ValueError):
        await db.update_plan(plan)
    assert (await db.get_plan(plan.id)).stock_limit == 5

    # Zero lifts the limit altogether.
    plan.stock_limit = 0
    assert (await db.update_plan(plan)).stock_used == 2


@pytest.mark.asyncio
async def test_first_panel_link_wins():
    db = InMemoryDBManager()
    user = await db.add_user(UserAccount(email="a@example.com"))

    assert await db.link_panel_account(user.id, 7) == 7
    assert await db.link_panel_account(user.id, 8) == 7
    assert (await db.get_user(user.id)).panel_user_id == 7


@pytest.mark.asyncio
async def test_update_user_email_checks_uniqueness():
    db = InMemoryDBManager()
    first = await db.add_user(UserAccount(email="a@example.com"))
    await db.add_user(UserAccount(email="b@example.com"))

    with pytest.raises(DuplicateEmailError):
        await db.update_user_email(first.id, "b@example.com")

    updated = await db.update_user_email(first.id, "c@example.com")
    assert updated.email == "c@example.com"
    assert await db.get_user_by_email("a@example.com") is None


@pytest.mark.asyncio
async def test_commit_hooks_run_only_after_commit():
    db = InMemoryDBManager()
    calls = []

    async with db.transaction():
        db.on_commit(lambda: calls.append("committed"))
        async with db.transaction():
            db.on_commit(lambda: calls.append("nested"))
        assert calls == []
    assert calls == ["committed", "nested"]

    with pytest.raises(RuntimeError):
        async with db.transaction():
            db.on_commit(lambda: calls.append("rolled back"))
            raise RuntimeError("boom")
    assert "rolled back" not in calls

    db.on_commit(lambda: calls.append("immediate"))
    assert calls[-1] == "immediate"


@pytest.mark.asyncio
async def test_run_in_transaction_returns_result_and_rolls_back():
    db = InMemoryDBManager()
    user = await db.add_user(UserAccount(email="a@example.com"))

    async def credit():
        return await db.adjust_user_credits(user.id, Decimal("3"))

    assert await db.run_in_transaction(credit) == Decimal("3")

    async def failing():
        await db.adjust_user_credits(user.id, Decimal("3"))
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        await db.run_in_transaction(failing)
    assert (await db.get_user(user.id)).credits == Decimal("3")
