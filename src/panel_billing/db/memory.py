from __future__ import annotations

import asyncio
import copy
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime
from decimal import Decimal
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional

from .base import BaseDBManager
from ..errors import DuplicateEmailError, DuplicateGiftCardError, UserNotFoundError
from ..models.gift_card import GiftCard, GiftCardRedemption, normalize_code
from ..models.instance import InstanceStatus, UserServerInstance
from ..models.ledger import LedgerEntry
from ..models.notification import NotificationEvent
from ..models.plan import ServerPlan
from ..models.transaction import Transaction
from ..models.user import UserAccount


_in_transaction: ContextVar[bool] = ContextVar("memory_db_in_transaction", default=False)


class InMemoryDBManager(BaseDBManager):
    """
    Simple in-memory implementation used for tests and local development.
    NOT suitable for production, but exercises the abstraction and services.

    Transactions are serialized with an asyncio lock and roll back by
    restoring a snapshot of the whole store. Records are copied on the way in
    and out so callers never hold references into the store.
    """

    def __init__(self) -> None:
        self._users: Dict[str, UserAccount] = {}
        self._transactions: Dict[str, Transaction] = {}
        self._settings: Dict[str, str] = {}
        self._gift_cards: Dict[str, GiftCard] = {}
        self._redemptions: List[GiftCardRedemption] = []
        self._plans: Dict[str, ServerPlan] = {}
        self._instances: Dict[str, UserServerInstance] = {}
        self._notifications: List[NotificationEvent] = []
        self._ledger: List[LedgerEntry] = []
        self._id_counter: int = 0
        self._lock = asyncio.Lock()

    def _next_id(self) -> str:
        self._id_counter += 1
        return str(self._id_counter)

    def _snapshot(self) -> Dict[str, Any]:
        return copy.deepcopy(
            {
                "_users": self._users,
                "_transactions": self._transactions,
                "_settings": self._settings,
                "_gift_cards": self._gift_cards,
                "_redemptions": self._redemptions,
                "_plans": self._plans,
                "_instances": self._instances,
                "_notifications": self._notifications,
                "_ledger": self._ledger,
            }
        )

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        if _in_transaction.get():
            # Nested use joins the outer unit of work.
            yield
            return

        async with self._lock:
            snapshot = self._snapshot()
            token = _in_transaction.set(True)
            try:
                with self._commit_scope() as hooks:
                    yield
            except BaseException:
                for name, value in snapshot.items():
                    setattr(self, name, value)
                raise
            finally:
                _in_transaction.reset(token)
        self._run_commit_hooks(hooks)

    # User operations
    async def add_user(self, user: UserAccount) -> UserAccount:
        if await self.get_user_by_email(user.email) is not None:
            raise DuplicateEmailError(f"user with email {user.email} already exists")
        if user.id is None:
            user.id = self._next_id()
        self._users[user.id] = user.model_copy(deep=True)
        return user

    async def get_user(self, user_id: str) -> Optional[UserAccount]:
        user = self._users.get(user_id)
        return user.model_copy(deep=True) if user else None

    async def get_user_by_email(self, email: str) -> Optional[UserAccount]:
        wanted = email.strip().lower()
        for user in self._users.values():
            if user.email.lower() == wanted:
                return user.model_copy(deep=True)
        return None

    async def list_users(self) -> Iterable[UserAccount]:
        return [u.model_copy(deep=True) for u in self._users.values()]

    async def update_user_email(self, user_id: str, email: str) -> UserAccount:
        user = self._users.get(user_id)
        if user is None:
            raise UserNotFoundError(user_id)
        existing = await self.get_user_by_email(email)
        if existing is not None and existing.id != user_id:
            raise DuplicateEmailError(f"user with email {email} already exists")
        user.email = email
        user.updated_at = datetime.utcnow()
        return user.model_copy(deep=True)

    async def link_panel_account(self, user_id: str, panel_user_id: int) -> int:
        user = self._users.get(user_id)
        if user is None:
            raise UserNotFoundError(user_id)
        if user.panel_user_id is None:
            user.panel_user_id = panel_user_id
            user.updated_at = datetime.utcnow()
        return user.panel_user_id

    async def adjust_user_credits(self, user_id: str, delta: Decimal) -> Optional[Decimal]:
        user = self._users.get(user_id)
        if user is None:
            raise UserNotFoundError(user_id)
        new_balance = user.credits + delta
        if new_balance < 0:
            return None
        user.credits = new_balance
        user.updated_at = datetime.utcnow()
        return new_balance

    # Credit history
    async def add_transaction(self, tx: Transaction) -> Transaction:
        if tx.id is None:
            tx.id = self._next_id()
        self._transactions[tx.id] = tx.model_copy(deep=True)
        return tx

    async def get_transactions(self, user_id: str) -> Iterable[Transaction]:
        txs = [t.model_copy(deep=True) for t in self._transactions.values() if t.user_id == user_id]
        txs.sort(key=lambda t: t.timestamp)
        return txs

    # Settings
    async def get_setting(self, key: str) -> Optional[str]:
        return self._settings.get(key)

    async def set_setting(self, key: str, value: str) -> None:
        self._settings[key] = value

    # Gift cards
    async def add_gift_card(self, card: GiftCard) -> GiftCard:
        if any(c.code == card.code for c in self._gift_cards.values()):
            raise DuplicateGiftCardError(f"gift card {card.code} already exists")
        if card.id is None:
            card.id = self._next_id()
        self._gift_cards[card.id] = card.model_copy(deep=True)
        return card

    async def get_gift_card(self, card_id: str) -> Optional[GiftCard]:
        card = self._gift_cards.get(card_id)
        return card.model_copy(deep=True) if card else None

    async def get_gift_card_by_code(self, code: str) -> Optional[GiftCard]:
        code = normalize_code(code)
        for card in self._gift_cards.values():
            if card.code == code:
                return card.model_copy(deep=True)
        return None

    async def list_gift_cards(self) -> Iterable[GiftCard]:
        cards = [c.model_copy(deep=True) for c in self._gift_cards.values()]
        cards.sort(key=lambda c: c.created_at, reverse=True)
        return cards

    async def update_gift_card(self, card: GiftCard) -> GiftCard:
        if card.id is None or card.id not in self._gift_cards:
            raise ValueError("Gift card must exist to be updated")
        stored = self._gift_cards[card.id]
        if card.max_uses < stored.uses:
            raise ValueError("max_uses cannot be lower than the uses already made")
        card.uses = stored.uses
        self._gift_cards[card.id] = card.model_copy(deep=True)
        return card

    async def delete_gift_card(self, card_id: str) -> bool:
        return self._gift_cards.pop(card_id, None) is not None

    async def increment_gift_card_uses(self, card_id: str) -> bool:
        card = self._gift_cards.get(card_id)
        if card is None or not card.enabled or card.uses >= card.max_uses:
            return False
        card.uses += 1
        return True

    async def add_redemption(self, redemption: GiftCardRedemption) -> GiftCardRedemption:
        if redemption.id is None:
            redemption.id = self._next_id()
        self._redemptions.append(redemption.model_copy(deep=True))
        return redemption

    async def count_user_redemptions(self, user_id: str, card_id: str) -> int:
        return sum(
            1 for r in self._redemptions if r.user_id == user_id and r.gift_card_id == card_id
        )

    # Server plans
    async def add_plan(self, plan: ServerPlan) -> ServerPlan:
        if plan.id is None:
            plan.id = self._next_id()
        self._plans[plan.id] = plan.model_copy(deep=True)
        return plan

    async def get_plan(self, plan_id: str) -> Optional[ServerPlan]:
        plan = self._plans.get(plan_id)
        return plan.model_copy(deep=True) if plan else None

    async def list_plans(self, enabled_only: bool = False) -> Iterable[ServerPlan]:
        plans = [
            p.model_copy(deep=True)
            for p in self._plans.values()
            if p.enabled or not enabled_only
        ]
        # Two stable passes: newest first, then by sort_order.
        plans.sort(key=lambda p: p.created_at, reverse=True)
        plans.sort(key=lambda p: p.sort_order)
        return plans

    async def update_plan(self, plan: ServerPlan) -> ServerPlan:
        if plan.id is None or plan.id not in self._plans:
            raise ValueError("Plan must exist to be updated")
        stored = self._plans[plan.id]
        if 0 < plan.stock_limit < stored.stock_used:
            raise ValueError("stock_limit cannot be lower than the stock already sold")
        plan.stock_used = stored.stock_used
        plan.created_at = stored.created_at
        self._plans[plan.id] = plan.model_copy(deep=True)
        return plan

    async def delete_plan(self, plan_id: str) -> bool:
        return self._plans.pop(plan_id, None) is not None

    async def increment_plan_stock(self, plan_id: str) -> bool:
        plan = self._plans.get(plan_id)
        if plan is None or not plan.in_stock:
            return False
        plan.stock_used += 1
        return True

    async def decrement_plan_stock(self, plan_id: str) -> bool:
        plan = self._plans.get(plan_id)
        if plan is None or plan.stock_used <= 0:
            return False
        plan.stock_used -= 1
        return True

    # User server instances
    async def add_server_instance(self, instance: UserServerInstance) -> UserServerInstance:
        if instance.id is None:
            instance.id = self._next_id()
        self._instances[instance.id] = instance.model_copy(deep=True)
        return instance

    async def get_server_instance(self, instance_id: str) -> Optional[UserServerInstance]:
        instance = self._instances.get(instance_id)
        return instance.model_copy(deep=True) if instance else None

    async def list_server_instances(
        self, user_id: Optional[str] = None
    ) -> Iterable[UserServerInstance]:
        instances = [
            i.model_copy(deep=True)
            for i in self._instances.values()
            if user_id is None or i.user_id == user_id
        ]
        instances.sort(key=lambda i: i.created_at, reverse=True)
        return instances

    async def count_active_instances(self, user_id: str, plan_id: str) -> int:
        return sum(
            1
            for i in self._instances.values()
            if i.user_id == user_id
            and i.plan_id == plan_id
            and i.status == InstanceStatus.ACTIVE
        )

    async def set_instance_status(self, instance_id: str, status: InstanceStatus) -> bool:
        instance = self._instances.get(instance_id)
        if instance is None:
            return False
        instance.status = status
        return True

    # Notifications
    async def add_notification_event(
        self, notification: NotificationEvent
    ) -> NotificationEvent:
        if notification.id is None:
            notification.id = self._next_id()
        self._notifications.append(notification.model_copy(deep=True))
        return notification

    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        if entry.id is None:
            entry.id = self._next_id()
        self._ledger.append(entry.model_copy(deep=True))
        return entry
