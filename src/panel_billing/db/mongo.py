from __future__ import annotations

from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Type,
    TypeVar,
)
from uuid import uuid4

from bson.decimal128 import Decimal128
from motor.motor_asyncio import (
    AsyncIOMotorClient,
    AsyncIOMotorClientSession,
    AsyncIOMotorDatabase,
)
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from .base import BaseDBManager, CommitHook, T
from ..errors import DuplicateEmailError, DuplicateGiftCardError, UserNotFoundError
from ..models.base import DBSerializableModel
from ..models.gift_card import GiftCard, GiftCardRedemption, normalize_code
from ..models.instance import InstanceStatus, UserServerInstance
from ..models.ledger import LedgerEntry
from ..models.notification import NotificationEvent
from ..models.plan import ServerPlan
from ..models.setting import Setting
from ..models.transaction import Transaction
from ..models.user import UserAccount


TModel = TypeVar("TModel", bound=DBSerializableModel)

_current_session: ContextVar[Optional[AsyncIOMotorClientSession]] = ContextVar(
    "mongo_current_session", default=None
)


def _to_bson(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return Decimal128(str(value))
    if isinstance(value, dict):
        return {k: _to_bson(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_to_bson(v) for v in value]
    return value


def _from_bson(value: Any) -> Any:
    if isinstance(value, Decimal128):
        return value.to_decimal()
    if isinstance(value, dict):
        return {k: _from_bson(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_from_bson(v) for v in value]
    return value


class MongoDBManager(BaseDBManager):
    """
    MongoDB implementation of BaseDBManager using motor (async driver).

    IDs are stored as string-based `_id` fields and mirrored in the `id`
    attribute of each Pydantic model, which keeps the rest of the system
    agnostic of MongoDB specifics. Decimals are stored as Decimal128.

    `transaction()` opens a client session with a multi-document transaction
    (requires a replica set). The active session lives in a ContextVar so
    every call made inside the block joins it without threading the session
    through the service layer. `run_in_transaction()` adds the driver's retry
    loop for write conflicts. Guarded counters and admin updates that must
    not undercut a counter use a single conditional update whose filter
    encodes the limit.
    """

    def __init__(
        self,
        database: AsyncIOMotorDatabase,
        client: Optional[AsyncIOMotorClient] = None,
    ) -> None:
        self._db = database
        self._client = client

    @classmethod
    def from_client_uri(cls, uri: str, db_name: str) -> "MongoDBManager":
        client = AsyncIOMotorClient(uri, tz_aware=False)
        return cls(client[db_name], client=client)

    async def ensure_indexes(self) -> None:
        await self._db[UserAccount.collection_name].create_index("email", unique=True)
        await self._db[GiftCard.collection_name].create_index("code", unique=True)
        await self._db[GiftCardRedemption.collection_name].create_index(
            [("user_id", ASCENDING), ("gift_card_id", ASCENDING)]
        )
        await self._db[ServerPlan.collection_name].create_index(
            [("enabled", ASCENDING), ("sort_order", ASCENDING)]
        )
        await self._db[UserServerInstance.collection_name].create_index(
            [("user_id", ASCENDING), ("plan_id", ASCENDING), ("status", ASCENDING)]
        )
        await self._db[Transaction.collection_name].create_index(
            [("user_id", ASCENDING), ("timestamp", ASCENDING)]
        )

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        if _current_session.get() is not None:
            yield
            return
        if self._client is None:
            # Without a client handle only single-document atomicity applies.
            yield
            return

        async with await self._client.start_session() as session:
            async with session.start_transaction():
                token = _current_session.set(session)
                try:
                    with self._commit_scope() as hooks:
                        yield
                finally:
                    _current_session.reset(token)
        self._run_commit_hooks(hooks)

    async def run_in_transaction(self, work: Callable[[], Awaitable[T]]) -> T:
        """
        Run `work` through `with_transaction`, which aborts and runs it again
        on TransientTransactionError (a write conflict with a concurrent
        transaction) and retries an unknown commit result. Only the hooks of
        the attempt that committed are run.
        """
        if _current_session.get() is not None or self._client is None:
            return await super().run_in_transaction(work)

        committed_hooks: List[CommitHook] = []

        async def attempt(session: AsyncIOMotorClientSession) -> T:
            nonlocal committed_hooks
            token = _current_session.set(session)
            try:
                with self._commit_scope() as hooks:
                    committed_hooks = hooks
                    return await work()
            finally:
                _current_session.reset(token)

        async with await self._client.start_session() as session:
            result = await session.with_transaction(attempt)
        self._run_commit_hooks(committed_hooks)
        return result

    # Helper utilities
    @staticmethod
    def _session() -> Optional[AsyncIOMotorClientSession]:
        return _current_session.get()

    @staticmethod
    def _prepare_insert(model: TModel) -> Dict[str, Any]:
        data = model.serialize_for_db()
        model_id = getattr(model, "id", None)
        if not model_id:
            model_id = uuid4().hex
            setattr(model, "id", model_id)
            data["id"] = model_id
        data["_id"] = model_id
        return _to_bson(data)

    @staticmethod
    def _prepare_set(model: TModel, protected: Iterable[str]) -> Dict[str, Any]:
        data = model.model_dump(exclude={"id", *protected})
        return _to_bson(data)

    @staticmethod
    def _decode(model_cls: Type[TModel], doc: Optional[Mapping[str, Any]]) -> Optional[TModel]:
        if doc is None:
            return None
        data = _from_bson(dict(doc))
        if "_id" in data and "id" not in data:
            data["id"] = str(data["_id"])
        data.pop("_id", None)
        return model_cls.model_validate(data)

    async def _exists(self, model_cls: Type[DBSerializableModel], doc_id: Optional[str]) -> bool:
        col = self._db[model_cls.collection_name]
        return bool(await col.count_documents({"_id": doc_id}, limit=1, session=self._session()))

    async def _find_many(
        self,
        model_cls: Type[TModel],
        query: Dict[str, Any],
        sort: Optional[list[tuple[str, int]]] = None,
    ) -> list[TModel]:
        cursor = self._db[model_cls.collection_name].find(query, session=self._session())
        if sort:
            cursor = cursor.sort(sort)
        docs = await cursor.to_list(length=None)
        return [self._decode(model_cls, d) for d in docs if d is not None]  # type: ignore[misc]

    # User operations
    async def add_user(self, user: UserAccount) -> UserAccount:
        col = self._db[UserAccount.collection_name]
        data = self._prepare_insert(user)
        try:
            await col.insert_one(data, session=self._session())
        except DuplicateKeyError as exc:
            raise DuplicateEmailError(f"user with email {user.email} already exists") from exc
        return user

    async def get_user(self, user_id: str) -> Optional[UserAccount]:
        col = self._db[UserAccount.collection_name]
        doc = await col.find_one({"_id": user_id}, session=self._session())
        return self._decode(UserAccount, doc)

    async def get_user_by_email(self, email: str) -> Optional[UserAccount]:
        col = self._db[UserAccount.collection_name]
        doc = await col.find_one({"email": email.strip().lower()}, session=self._session())
        return self._decode(UserAccount, doc)

    async def list_users(self) -> Iterable[UserAccount]:
        return await self._find_many(UserAccount, {}, sort=[("created_at", ASCENDING)])

    async def update_user_email(self, user_id: str, email: str) -> UserAccount:
        col = self._db[UserAccount.collection_name]
        try:
            doc = await col.find_one_and_update(
                {"_id": user_id},
                {"$set": {"email": email, "updated_at": datetime.utcnow()}},
                return_document=ReturnDocument.AFTER,
                session=self._session(),
            )
        except DuplicateKeyError as exc:
            raise DuplicateEmailError(f"user with email {email} already exists") from exc
        if doc is None:
            raise UserNotFoundError(user_id)
        return self._decode(UserAccount, doc)  # type: ignore[return-value]

    async def link_panel_account(self, user_id: str, panel_user_id: int) -> int:
        col = self._db[UserAccount.collection_name]
        # Matches a missing or null link only.
        doc = await col.find_one_and_update(
            {"_id": user_id, "panel_user_id": None},
            {"$set": {"panel_user_id": panel_user_id, "updated_at": datetime.utcnow()}},
            return_document=ReturnDocument.AFTER,
            session=self._session(),
        )
        if doc is None:
            doc = await col.find_one({"_id": user_id}, session=self._session())
        if doc is None:
            raise UserNotFoundError(user_id)
        return doc["panel_user_id"]

    async def adjust_user_credits(self, user_id: str, delta: Decimal) -> Optional[Decimal]:
        col = self._db[UserAccount.collection_name]
        query: Dict[str, Any] = {"_id": user_id}
        if delta < 0:
            query["credits"] = {"$gte": Decimal128(str(-delta))}
        doc = await col.find_one_and_update(
            query,
            {
                "$inc": {"credits": Decimal128(str(delta))},
                "$set": {"updated_at": datetime.utcnow()},
            },
            return_document=ReturnDocument.AFTER,
            session=self._session(),
        )
        if doc is None:
            exists = await col.count_documents({"_id": user_id}, limit=1, session=self._session())
            if not exists:
                raise UserNotFoundError(user_id)
            return None
        return _from_bson(doc["credits"])

    # Credit history
    async def add_transaction(self, tx: Transaction) -> Transaction:
        col = self._db[Transaction.collection_name]
        await col.insert_one(self._prepare_insert(tx), session=self._session())
        return tx

    async def get_transactions(self, user_id: str) -> Iterable[Transaction]:
        return await self._find_many(
            Transaction, {"user_id": user_id}, sort=[("timestamp", ASCENDING)]
        )

    # Settings
    async def get_setting(self, key: str) -> Optional[str]:
        col = self._db[Setting.collection_name]
        doc = await col.find_one({"_id": key}, session=self._session())
        return doc["value"] if doc else None

    async def set_setting(self, key: str, value: str) -> None:
        col = self._db[Setting.collection_name]
        await col.replace_one(
            {"_id": key}, {"_id": key, "key": key, "value": value},
            upsert=True,
            session=self._session(),
        )

    # Gift cards
    async def add_gift_card(self, card: GiftCard) -> GiftCard:
        col = self._db[GiftCard.collection_name]
        data = self._prepare_insert(card)
        try:
            await col.insert_one(data, session=self._session())
        except DuplicateKeyError as exc:
            raise DuplicateGiftCardError(f"gift card {card.code} already exists") from exc
        return card

    async def get_gift_card(self, card_id: str) -> Optional[GiftCard]:
        col = self._db[GiftCard.collection_name]
        doc = await col.find_one({"_id": card_id}, session=self._session())
        return self._decode(GiftCard, doc)

    async def get_gift_card_by_code(self, code: str) -> Optional[GiftCard]:
        col = self._db[GiftCard.collection_name]
        doc = await col.find_one({"code": normalize_code(code)}, session=self._session())
        return self._decode(GiftCard, doc)

    async def list_gift_cards(self) -> Iterable[GiftCard]:
        return await self._find_many(GiftCard, {}, sort=[("created_at", DESCENDING)])

    async def update_gift_card(self, card: GiftCard) -> GiftCard:
        col = self._db[GiftCard.collection_name]
        fields = self._prepare_set(card, protected=("uses", "created_at"))
        try:
            doc = await col.find_one_and_update(
                {"_id": card.id, "uses": {"$lte": card.max_uses}},
                {"$set": fields},
                return_document=ReturnDocument.AFTER,
                session=self._session(),
            )
        except DuplicateKeyError as exc:
            raise DuplicateGiftCardError(f"gift card {card.code} already exists") from exc
        if doc is None:
            if not await self._exists(GiftCard, card.id):
                raise ValueError("Gift card must exist to be updated")
            raise ValueError("max_uses cannot be lower than the uses already made")
        return self._decode(GiftCard, doc)  # type: ignore[return-value]

    async def delete_gift_card(self, card_id: str) -> bool:
        col = self._db[GiftCard.collection_name]
        result = await col.delete_one({"_id": card_id}, session=self._session())
        return result.deleted_count == 1

    async def increment_gift_card_uses(self, card_id: str) -> bool:
        col = self._db[GiftCard.collection_name]
        result = await col.update_one(
            {"_id": card_id, "enabled": True, "$expr": {"$lt": ["$uses", "$max_uses"]}},
            {"$inc": {"uses": 1}},
            session=self._session(),
        )
        return result.modified_count == 1

    async def add_redemption(self, redemption: GiftCardRedemption) -> GiftCardRedemption:
        col = self._db[GiftCardRedemption.collection_name]
        await col.insert_one(self._prepare_insert(redemption), session=self._session())
        return redemption

    async def count_user_redemptions(self, user_id: str, card_id: str) -> int:
        col = self._db[GiftCardRedemption.collection_name]
        return await col.count_documents(
            {"user_id": user_id, "gift_card_id": card_id}, session=self._session()
        )

    # Server plans
    async def add_plan(self, plan: ServerPlan) -> ServerPlan:
        col = self._db[ServerPlan.collection_name]
        await col.insert_one(self._prepare_insert(plan), session=self._session())
        return plan

    async def get_plan(self, plan_id: str) -> Optional[ServerPlan]:
        col = self._db[ServerPlan.collection_name]
        doc = await col.find_one({"_id": plan_id}, session=self._session())
        return self._decode(ServerPlan, doc)

    async def list_plans(self, enabled_only: bool = False) -> Iterable[ServerPlan]:
        query = {"enabled": True} if enabled_only else {}
        return await self._find_many(
            ServerPlan, query, sort=[("sort_order", ASCENDING), ("created_at", DESCENDING)]
        )

    async def update_plan(self, plan: ServerPlan) -> ServerPlan:
        col = self._db[ServerPlan.collection_name]
        fields = self._prepare_set(plan, protected=("stock_used", "created_at"))
        query: Dict[str, Any] = {"_id": plan.id}
        if plan.stock_limit > 0:
            query["stock_used"] = {"$lte": plan.stock_limit}
        doc = await col.find_one_and_update(
            query,
            {"$set": fields},
            return_document=ReturnDocument.AFTER,
            session=self._session(),
        )
        if doc is None:
            if not await self._exists(ServerPlan, plan.id):
                raise ValueError("Plan must exist to be updated")
            raise ValueError("stock_limit cannot be lower than the stock already sold")
        return self._decode(ServerPlan, doc)  # type: ignore[return-value]

    async def delete_plan(self, plan_id: str) -> bool:
        col = self._db[ServerPlan.collection_name]
        result = await col.delete_one({"_id": plan_id}, session=self._session())
        return result.deleted_count == 1

    async def increment_plan_stock(self, plan_id: str) -> bool:
        col = self._db[ServerPlan.collection_name]
        result = await col.update_one(
            {
                "_id": plan_id,
                "$or": [
                    {"stock_limit": {"$lte": 0}},
                    {"$expr": {"$lt": ["$stock_used", "$stock_limit"]}},
                ],
            },
            {"$inc": {"stock_used": 1}},
            session=self._session(),
        )
        return result.modified_count == 1

    async def decrement_plan_stock(self, plan_id: str) -> bool:
        col = self._db[ServerPlan.collection_name]
        result = await col.update_one(
            {"_id": plan_id, "stock_used": {"$gt": 0}},
            {"$inc": {"stock_used": -1}},
            session=self._session(),
        )
        return result.modified_count == 1

    # User server instances
    async def add_server_instance(self, instance: UserServerInstance) -> UserServerInstance:
        col = self._db[UserServerInstance.collection_name]
        await col.insert_one(self._prepare_insert(instance), session=self._session())
        return instance

    async def get_server_instance(self, instance_id: str) -> Optional[UserServerInstance]:
        col = self._db[UserServerInstance.collection_name]
        doc = await col.find_one({"_id": instance_id}, session=self._session())
        return self._decode(UserServerInstance, doc)

    async def list_server_instances(
        self, user_id: Optional[str] = None
    ) -> Iterable[UserServerInstance]:
        query = {"user_id": user_id} if user_id is not None else {}
        return await self._find_many(
            UserServerInstance, query, sort=[("created_at", DESCENDING)]
        )

    async def count_active_instances(self, user_id: str, plan_id: str) -> int:
        col = self._db[UserServerInstance.collection_name]
        return await col.count_documents(
            {"user_id": user_id, "plan_id": plan_id, "status": InstanceStatus.ACTIVE.value},
            session=self._session(),
        )

    async def set_instance_status(self, instance_id: str, status: InstanceStatus) -> bool:
        col = self._db[UserServerInstance.collection_name]
        result = await col.update_one(
            {"_id": instance_id}, {"$set": {"status": status.value}}, session=self._session()
        )
        return result.matched_count == 1

    # Notifications
    async def add_notification_event(
        self, notification: NotificationEvent
    ) -> NotificationEvent:
        col = self._db[NotificationEvent.collection_name]
        await col.insert_one(self._prepare_insert(notification), session=self._session())
        return notification

    # Ledger
    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        col = self._db[LedgerEntry.collection_name]
        await col.insert_one(self._prepare_insert(entry), session=self._session())
        return entry
