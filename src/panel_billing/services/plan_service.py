from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Iterable, List, Optional

from ..cache.base import AsyncCacheBackend
from ..db.base import BaseDBManager
from ..errors import PlanNotFoundError
from ..logging.ledger_logger import LedgerLogger
from ..models.plan import BillingCycle, ServerPlan


_CYCLE_LENGTH = {
    BillingCycle.DAILY: timedelta(days=1),
    BillingCycle.WEEKLY: timedelta(days=7),
    BillingCycle.MONTHLY: timedelta(days=30),
    BillingCycle.QUARTERLY: timedelta(days=90),
    BillingCycle.YEARLY: timedelta(days=365),
}


class PlanService:
    """
    Plan catalog: plans CRUD and the guarded stock counter.

    Only the public list of enabled plans is cached. Single-plan reads go to
    storage so purchase checks see current stock.
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

    async def get_plan(self, plan_id: str) -> Optional[ServerPlan]:
        return await self._db.get_plan(plan_id)

    async def require_plan(self, plan_id: str) -> ServerPlan:
        plan = await self._db.get_plan(plan_id)
        if plan is None:
            raise PlanNotFoundError(plan_id)
        return plan

    async def list_enabled_plans(self) -> List[ServerPlan]:
        """Enabled plans by sort_order, newest first within the same order."""
        cache_key = self._enabled_plans_cache_key()
        if self._cache:
            cached = await self._cache.get(cache_key)
            if isinstance(cached, list):
                return [ServerPlan.model_validate(p) for p in cached]

        plans = list(await self._db.list_plans(enabled_only=True))
        if self._cache:
            await self._cache.set(
                cache_key, [p.model_dump() for p in plans], ttl_seconds=60
            )
        return plans

    async def list_plans(self) -> Iterable[ServerPlan]:
        return await self._db.list_plans()

    async def create_plan(self, plan: ServerPlan) -> ServerPlan:
        plan.stock_used = 0
        plan = await self._db.add_plan(plan)
        await self.invalidate_cache()
        await self._ledger.log_system(
            message="Server plan created",
            details={"plan_id": plan.id, "name": plan.name, "price": str(plan.price)},
        )
        return plan

    async def update_plan(self, plan_id: str, **changes: Any) -> ServerPlan:
        """
        Apply field changes to a plan. `stock_used` is owned by purchases
        and removals and is never taken from here.
        """
        changes.pop("stock_used", None)
        changes.pop("id", None)
        current = await self.require_plan(plan_id)
        updated = ServerPlan.model_validate(
            {**current.model_dump(), **changes, "updated_at": datetime.utcnow()}
        )
        if 0 < updated.stock_limit < current.stock_used:
            raise ValueError("stock_limit cannot be lower than the stock already sold")
        # The store repeats the check against its own stock_used.
        updated = await self._db.update_plan(updated)
        await self.invalidate_cache()
        await self._ledger.log_system(
            message="Server plan updated",
            details={"plan_id": plan_id, "fields": sorted(changes)},
        )
        return updated

    async def delete_plan(self, plan_id: str) -> None:
        if not await self._db.delete_plan(plan_id):
            raise PlanNotFoundError(plan_id)
        await self.invalidate_cache()
        await self._ledger.log_system(
            message="Server plan deleted", details={"plan_id": plan_id}
        )

    async def increment_stock(self, plan_id: str) -> bool:
        """Take one unit of stock; False when the plan is at its limit."""
        applied = await self._db.increment_plan_stock(plan_id)
        if applied:
            await self.invalidate_cache()
        return applied

    async def decrement_stock(self, plan_id: str) -> bool:
        """Return one unit of stock; never goes below zero."""
        applied = await self._db.decrement_plan_stock(plan_id)
        if applied:
            await self.invalidate_cache()
        return applied

    @staticmethod
    def compute_next_billing_date(cycle: BillingCycle, now: Optional[datetime] = None) -> datetime:
        now = now or datetime.utcnow()
        return now + _CYCLE_LENGTH[cycle]

    @staticmethod
    def _enabled_plans_cache_key() -> str:
        return "billing:plans:enabled"

    async def invalidate_cache(self) -> None:
        if self._cache:
            await self._cache.delete(self._enabled_plans_cache_key())
