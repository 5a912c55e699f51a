from __future__ import annotations

from decimal import Decimal

import pytest
from bson.decimal128 import Decimal128
from pymongo.errors import OperationFailure

from factories import make_plan
from panel_billing.db.mongo import MongoDBManager, _from_bson, _to_bson
from panel_billing.models.gift_card import GiftCard
from panel_billing.models.transaction import TransactionType


class FakeCollection:
    """Records conditional updates; `matched` is what the update returns."""

    def __init__(self, matched=None, stored=None):
        self.matched = matched
        self.stored = stored
        self.filters = []

    async def find_one_and_update(self, query, update, **kwargs):
        self.filters.append(query)
        return self.matched

    async def find_one(self, query, **kwargs):
        return self.stored

    async def count_documents(self, query, **kwargs):
        return 1 if self.stored is not None else 0


class FakeDatabase:
    def __init__(self, collection):
        self.collection = collection

    def __getitem__(self, name):
        return self.collection


class FakeSession:
    """Retries the callback on transient errors like the driver does."""

    def __init__(self, max_attempts=3):
        self.max_attempts = max_attempts
        self.attempts = 0

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    async def with_transaction(self, callback):
        while True:
            self.attempts += 1
            try:
                return await callback(self)
            except OperationFailure as exc:
                if (
                    exc.has_error_label("TransientTransactionError")
                    and self.attempts < self.max_attempts
                ):
                    continue
                raise


class FakeClient:
    def __init__(self):
        self.session = FakeSession()

    async def start_session(self):
        return self.session


def _write_conflict():
    return OperationFailure(
        "WriteConflict", code=112, details={"errorLabels": ["TransientTransactionError"]}
    )


def test_decimals_and_enums_are_stored_natively():
    doc = _to_bson(
        {
            "credits": Decimal("10.50"),
            "type": TransactionType.REDEEM,
            "metadata": {"amounts": [Decimal("1"), 2]},
        }
    )

    assert doc["credits"] == Decimal128("10.50")
    assert doc["type"] == "redeem"
    assert doc["metadata"]["amounts"] == [Decimal128("1"), 2]
    assert _from_bson(doc)["credits"] == Decimal("10.50")


def test_insert_assigns_id_and_decode_restores_model():
    card = GiftCard(code="save10", credits=Decimal("10"))

    doc = MongoDBManager._prepare_insert(card)
    restored = MongoDBManager._decode(GiftCard, doc)

    assert doc["_id"] == card.id
    assert restored.id == card.id
    assert restored.code == "SAVE10"
    assert restored.credits == Decimal("10")
    assert "expires_at" not in doc


def test_prepare_set_leaves_out_protected_fields():
    card = GiftCard(id="c1", code="X", credits=Decimal("1"), uses=3, max_uses=5)

    update = MongoDBManager._prepare_set(card, protected=("uses",))

    assert "uses" not in update
    assert "id" not in update
    assert update["max_uses"] == 5


@pytest.mark.asyncio
async def test_run_in_transaction_retries_write_conflicts():
    client = FakeClient()
    db = MongoDBManager(FakeDatabase(FakeCollection()), client=client)
    sessions = []
    committed = []

    async def work():
        sessions.append(db._session())
        attempt = len(sessions)
        db.on_commit(lambda: committed.append(attempt))
        if attempt == 1:
            raise _write_conflict()
        return "done"

    assert await db.run_in_transaction(work) == "done"

    assert sessions == [client.session, client.session]
    assert committed == [2]
    assert db._session() is None


@pytest.mark.asyncio
async def test_run_in_transaction_gives_up_after_driver_retries():
    client = FakeClient()
    db = MongoDBManager(FakeDatabase(FakeCollection()), client=client)
    committed = []

    async def work():
        db.on_commit(lambda: committed.append("hook"))
        raise _write_conflict()

    with pytest.raises(OperationFailure):
        await db.run_in_transaction(work)

    assert client.session.attempts == 3
    assert committed == []


@pytest.mark.asyncio
async def test_update_gift_card_filter_guards_uses():
    collection = FakeCollection(matched=None, stored={"_id": "c1"})
    db = MongoDBManager(FakeDatabase(collection))
    card = GiftCard(id="c1", code="X", credits=Decimal("1"), max_uses=2)

    with pytest.raises(ValueError, match="max_uses"):
        await db.update_gift_card(card)

    assert collection.filters[-1] == {"_id": "c1", "uses": {"$lte": 2}}


@pytest.mark.asyncio
async def test_update_gift_card_missing_card():
    db = MongoDBManager(FakeDatabase(FakeCollection()))
    card = GiftCard(id="gone", code="X", credits=Decimal("1"))

    with pytest.raises(ValueError, match="must exist"):
        await db.update_gift_card(card)


@pytest.mark.asyncio
async def test_update_plan_filter_guards_stock_used():
    collection = FakeCollection(matched=None, stored={"_id": "p1"})
    db = MongoDBManager(FakeDatabase(collection))

    with pytest.raises(ValueError, match="stock_limit"):
        await db.update_plan(make_plan(id="p1", stock_limit=3))
    assert collection.filters[-1] == {"_id": "p1", "stock_used": {"$lte": 3}}

    # An unlimited plan has nothing to undercut.
    unlimited = make_plan(id="p1", stock_limit=0)
    collection.matched = MongoDBManager._prepare_insert(unlimited)
    assert (await db.update_plan(unlimited)).stock_limit == 0
    assert collection.filters[-1] == {"_id": "p1"}


@pytest.mark.asyncio
async def test_link_panel_account_keeps_existing_link():
    collection = FakeCollection(matched=None, stored={"_id": "u1", "panel_user_id": 7})
    db = MongoDBManager(FakeDatabase(collection))

    assert await db.link_panel_account("u1", 8) == 7
    assert collection.filters[-1] == {"_id": "u1", "panel_user_id": None}
