from __future__ import annotations

from decimal import Decimal
from typing import Any, Iterable, Optional

from ..cache.base import AsyncCacheBackend
from ..db.base import BaseDBManager
from ..errors import UserNotFoundError
from ..logging.ledger_logger import LedgerLogger
from ..models.transaction import Transaction, TransactionType
from ..models.user import UserCreditInfo


class CreditService:
    """
    High-level credit account service.

    Every balance change goes through `apply_delta`, which writes the guarded
    balance update, the credit history row and the ledger entry in one unit
    of work. Callers that already hold a transaction simply join it.
    """

    def __init__(
        self,
        db: BaseDBManager,
        ledger: LedgerLogger,
        cache: Optional[AsyncCacheBackend] = None,
    ) -> None:
        self._db = db
        self._ledger = ledger
        self._cache = cache

    async def get_balance(self, user_id: str) -> Decimal:
        """Current balance read straight from storage."""
        user = await self._db.get_user(user_id)
        if user is None:
            raise UserNotFoundError(user_id)
        return user.credits

    async def get_user_credits_info(self, user_id: str) -> UserCreditInfo:
        """
        Balance summary for display.

        Primary source: cache. Fallback: DB, which repopulates the cache.
        Anything that needs an exact balance for a decision should use
        `get_balance` instead.
        """
        cache_key = self._user_credits_info_cache_key(user_id)
        if self._cache:
            cached = await self._cache.get(cache_key)
            if isinstance(cached, dict):
                try:
                    return UserCreditInfo.model_validate(cached)
                except ValueError:
                    # Cache corrupted, delete it and fetch from DB
                    await self._cache.delete(cache_key)

        user = await self._db.get_user(user_id)
        if user is None:
            raise UserNotFoundError(user_id)
        info = UserCreditInfo(
            user_id=user_id,
            balance=user.credits,
            panel_linked=user.panel_user_id is not None,
        )
        if self._cache:
            await self._cache.set(cache_key, info.model_dump(), ttl_seconds=300)
        return info

    async def get_credit_history(self, user_id: str) -> Iterable[Transaction]:
        return await self._db.get_transactions(user_id)

    async def apply_delta(
        self,
        user_id: str,
        delta: Decimal,
        transaction_type: TransactionType,
        description: Optional[str] = None,
        reference_type: Optional[str] = None,
        reference_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Optional[Transaction]:
        """
        Apply a signed change to the user's balance.

        Returns the history row, or None when the change would take the
        balance below zero (nothing is written in that case).
        """
        if delta == 0:
            raise ValueError("delta must be non-zero")

        async def work() -> Optional[Transaction]:
            new_balance = await self._db.adjust_user_credits(user_id, delta)
            if new_balance is None:
                return None

            tx = Transaction(
                user_id=user_id,
                credits_added=delta if delta > 0 else Decimal("0"),
                credits_deducted=-delta if delta < 0 else Decimal("0"),
                current_credits=new_balance,
                transaction_type=transaction_type,
                reference_type=reference_type,
                reference_id=reference_id,
                description=description,
                metadata=metadata or {},
            )
            tx = await self._db.add_transaction(tx)

            await self._ledger.log_transaction(
                user_id=user_id,
                message="Credits added" if delta > 0 else "Credits deducted",
                details={
                    "amount": str(abs(delta)),
                    "new_balance": str(new_balance),
                    "transaction_type": transaction_type.value,
                    "reference_type": reference_type,
                    "reference_id": reference_id,
                    "description": description or "",
                },
                correlation_id=correlation_id,
            )
            return tx

        return await self._db.run_in_transaction(work)

    async def adjust_credits(
        self,
        user_id: str,
        delta: Decimal,
        description: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> Transaction:
        """
        Manual balance correction. Raises ValueError if it would overdraw.
        """
        tx = await self.apply_delta(
            user_id,
            delta,
            TransactionType.ADJUST,
            description=description,
            correlation_id=correlation_id,
        )
        await self.invalidate_cache(user_id)
        if tx is None:
            await self._ledger.log_error(
                message="Insufficient credits for adjustment",
                details={"requested": str(delta)},
                user_id=user_id,
                correlation_id=correlation_id,
            )
            raise ValueError("insufficient credits")
        return tx

    async def invalidate_cache(self, user_id: str) -> None:
        """Drop the cached summary; call after the owning unit of work ends."""
        if self._cache:
            await self._cache.delete(self._user_credits_info_cache_key(user_id))

    @staticmethod
    def _user_credits_info_cache_key(user_id: str) -> str:
        return f"credit:user:{user_id}:info"
