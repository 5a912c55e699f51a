from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import asynccontextmanager, contextmanager
from contextvars import ContextVar
from decimal import Decimal
from typing import (
    AsyncIterator,
    Awaitable,
    Callable,
    Iterable,
    Iterator,
    List,
    Optional,
    TypeVar,
)

from ..models.gift_card import GiftCard, GiftCardRedemption
from ..models.instance import InstanceStatus, UserServerInstance
from ..models.ledger import LedgerEntry
from ..models.notification import NotificationEvent
from ..models.plan import ServerPlan
from ..models.transaction import Transaction
from ..models.user import UserAccount


T = TypeVar("T")

CommitHook = Callable[[], None]

_commit_hooks: ContextVar[Optional[List[CommitHook]]] = ContextVar(
    "db_commit_hooks", default=None
)


class BaseDBManager(ABC):
    """
    DB-agnostic async manager interface.

    Concrete implementations (MongoDB, in-memory, etc.) implement these
    methods. Multi-write operations are grouped with the `transaction()`
    context manager, which is the unit of work: every write issued inside it
    commits together or not at all.

    Counters that gate eligibility (user credits, gift card uses, plan stock)
    are only changed through the guarded methods below. Each one is a single
    conditional update in the store and reports whether it applied, so two
    concurrent requests can never both pass the same limit.
    """

    @abstractmethod
    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        """
        Provide an atomic transaction context.
        Should rollback on exception and commit on success.
        """
        yield

    async def run_in_transaction(self, work: Callable[[], Awaitable[T]]) -> T:
        """
        Run `work` as one unit of work and return its result.

        Backends that abort a transaction on a write conflict run `work`
        again from the start, so it must only touch the store. Contended
        commits (redemptions, purchases, balance changes) go through here.
        """
        async with self.transaction():
            return await work()

    def on_commit(self, hook: CommitHook) -> None:
        """
        Call `hook` once the current unit of work has committed. Hooks of a
        rolled back unit are dropped; outside a unit of work `hook` runs now.
        """
        hooks = _commit_hooks.get()
        if hooks is None:
            hook()
        else:
            hooks.append(hook)

    @staticmethod
    @contextmanager
    def _commit_scope() -> Iterator[List[CommitHook]]:
        hooks: List[CommitHook] = []
        token = _commit_hooks.set(hooks)
        try:
            yield hooks
        finally:
            _commit_hooks.reset(token)

    @staticmethod
    def _run_commit_hooks(hooks: List[CommitHook]) -> None:
        for hook in hooks:
            hook()

    # User operations
    @abstractmethod
    async def add_user(self, user: UserAccount) -> UserAccount:
        """Insert a user; raises DuplicateEmailError if the email is taken."""

    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[UserAccount]: ...

    @abstractmethod
    async def get_user_by_email(self, email: str) -> Optional[UserAccount]: ...

    @abstractmethod
    async def list_users(self) -> Iterable[UserAccount]: ...

    @abstractmethod
    async def update_user_email(self, user_id: str, email: str) -> UserAccount:
        """Raises DuplicateEmailError if another user has `email`."""

    @abstractmethod
    async def link_panel_account(self, user_id: str, panel_user_id: int) -> int:
        """
        Link the user to a panel account unless a link already exists.

        Returns the stored link, which is the earlier one when two requests
        race to link the same user.
        """

    @abstractmethod
    async def adjust_user_credits(self, user_id: str, delta: Decimal) -> Optional[Decimal]:
        """
        Apply a signed delta to the user's balance.

        Returns the new balance, or None when the delta would take the balance
        below zero (nothing is written in that case). Raises
        UserNotFoundError when the user does not exist.
        """

    # Credit history
    @abstractmethod
    async def add_transaction(self, tx: Transaction) -> Transaction: ...

    @abstractmethod
    async def get_transactions(self, user_id: str) -> Iterable[Transaction]: ...

    # Settings
    @abstractmethod
    async def get_setting(self, key: str) -> Optional[str]: ...

    @abstractmethod
    async def set_setting(self, key: str, value: str) -> None: ...

    # Gift cards
    @abstractmethod
    async def add_gift_card(self, card: GiftCard) -> GiftCard:
        """Insert a gift card; raises DuplicateGiftCardError if the code exists."""

    @abstractmethod
    async def get_gift_card(self, card_id: str) -> Optional[GiftCard]: ...

    @abstractmethod
    async def get_gift_card_by_code(self, code: str) -> Optional[GiftCard]: ...

    @abstractmethod
    async def list_gift_cards(self) -> Iterable[GiftCard]:
        """All gift cards, newest first."""

    @abstractmethod
    async def update_gift_card(self, card: GiftCard) -> GiftCard:
        """
        Persist the mutable fields of a card. `uses` is never overwritten;
        raises ValueError when `max_uses` is below the stored `uses`.
        """

    @abstractmethod
    async def delete_gift_card(self, card_id: str) -> bool: ...

    @abstractmethod
    async def increment_gift_card_uses(self, card_id: str) -> bool:
        """`uses += 1` where the card is enabled and `uses < max_uses`."""

    @abstractmethod
    async def add_redemption(self, redemption: GiftCardRedemption) -> GiftCardRedemption: ...

    @abstractmethod
    async def count_user_redemptions(self, user_id: str, card_id: str) -> int: ...

    # Server plans
    @abstractmethod
    async def add_plan(self, plan: ServerPlan) -> ServerPlan: ...

    @abstractmethod
    async def get_plan(self, plan_id: str) -> Optional[ServerPlan]: ...

    @abstractmethod
    async def list_plans(self, enabled_only: bool = False) -> Iterable[ServerPlan]:
        """Plans ordered by sort_order ascending, then newest first."""

    @abstractmethod
    async def update_plan(self, plan: ServerPlan) -> ServerPlan:
        """
        Persist the configurable fields of a plan. `stock_used` is never
        overwritten; raises ValueError when a positive `stock_limit` is below
        the stored `stock_used`.
        """

    @abstractmethod
    async def delete_plan(self, plan_id: str) -> bool: ...

    @abstractmethod
    async def increment_plan_stock(self, plan_id: str) -> bool:
        """`stock_used += 1` where the plan is unlimited or below its stock limit."""

    @abstractmethod
    async def decrement_plan_stock(self, plan_id: str) -> bool:
        """`stock_used -= 1` where `stock_used > 0`."""

    # User server instances
    @abstractmethod
    async def add_server_instance(self, instance: UserServerInstance) -> UserServerInstance: ...

    @abstractmethod
    async def get_server_instance(self, instance_id: str) -> Optional[UserServerInstance]: ...

    @abstractmethod
    async def list_server_instances(
        self, user_id: Optional[str] = None
    ) -> Iterable[UserServerInstance]:
        """Instances (optionally for one user), newest first."""

    @abstractmethod
    async def count_active_instances(self, user_id: str, plan_id: str) -> int: ...

    @abstractmethod
    async def set_instance_status(self, instance_id: str, status: InstanceStatus) -> bool: ...

    # Notifications
    @abstractmethod
    async def add_notification_event(self, notification: NotificationEvent) -> NotificationEvent: ...

    # Ledger
    @abstractmethod
    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry: ...
