from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional, Tuple

from ..db.base import BaseDBManager
from ..errors import ReconciliationError, UserNotFoundError
from ..logging.ledger_logger import LedgerLogger
from ..models.instance import InstanceStatus, UserServerInstance
from ..models.outcomes import OutcomeReason, PurchaseOutcome
from ..models.plan import ServerPlan
from ..models.provisioning import GatewayResult, InstanceRequest, PanelInstance
from ..models.transaction import TransactionType
from ..models.user import AuthenticatedVerifiedUser, UserAccount
from ..provisioning.base import ProvisioningGateway
from .credit_service import CreditService
from .notification_service import NotificationService
from .plan_service import PlanService


logger = logging.getLogger(__name__)


class _CommitRefused(Exception):
    """A guard refused the purchase commit after the server was created."""


class PurchaseService:
    """
    Sells plans for credits and provisions the server on the panel.

    Order of work: eligibility checks, panel account link, server creation,
    then one local commit (debit, stock, instance record). Nothing is charged
    unless the server exists. If the commit fails after the server was
    created, the server is left on the panel and operators are alerted; the
    request fails with ReconciliationError.
    """

    def __init__(
        self,
        db: BaseDBManager,
        ledger: LedgerLogger,
        plan_service: PlanService,
        credit_service: CreditService,
        gateway: ProvisioningGateway,
        notifications: NotificationService,
        default_docker_image: str,
        provisioning_timeout: Optional[float] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        self._db = db
        self._ledger = ledger
        self._plans = plan_service
        self._credit_service = credit_service
        self._gateway = gateway
        self._notifications = notifications
        self._default_docker_image = default_docker_image
        self._provisioning_timeout = provisioning_timeout
        self._clock = clock

    async def purchase(
        self,
        user: AuthenticatedVerifiedUser,
        plan_id: str,
        instance_name: str,
        correlation_id: Optional[str] = None,
    ) -> PurchaseOutcome:
        name = (instance_name or "").strip()
        if not name:
            return self._reject(user, plan_id, OutcomeReason.INVALID_NAME)

        plan = await self._plans.get_plan(plan_id)
        account = await self._db.get_user(user.user_id)
        if account is None:
            raise UserNotFoundError(user.user_id)

        reason = await self._check_eligibility(account, plan)
        if reason is not None:
            return self._reject(user, plan_id, reason)

        linked = await self._link_account(account)
        if not linked.success:
            await self._record_failure(
                user, plan, "Panel account linking failed", linked.error, correlation_id
            )
            return self._reject(
                user, plan_id, OutcomeReason.PROVISIONING_ACCOUNT_FAILED, linked.error
            )

        request = InstanceRequest.from_plan(
            plan, linked.data, name, self._default_docker_image
        )
        created = await self._create_instance(request)
        if not created.success:
            await self._record_failure(
                user, plan, "Server creation failed", created.error, correlation_id
            )
            return self._reject(
                user, plan_id, OutcomeReason.PROVISIONING_INSTANCE_FAILED, created.error
            )

        instance: PanelInstance = created.data
        try:
            record, new_balance = await self._commit(user, plan, instance, name, correlation_id)
        except Exception as exc:
            await self._reconcile(user, plan, instance, name, exc, correlation_id)
            raise ReconciliationError(
                "Server was created but the purchase could not be recorded",
                user_id=user.user_id,
                plan_id=plan.id,
                panel_server_id=instance.id,
                details={"error": str(exc)},
            ) from exc
        finally:
            await self._credit_service.invalidate_cache(user.user_id)
            await self._plans.invalidate_cache()

        logger.info(
            "Purchased plan %s as panel server %s",
            plan.id,
            instance.id,
            extra={"user_id": user.user_id},
        )
        await self._check_low_credits(user.user_id)
        return PurchaseOutcome(
            success=True,
            message=f'Server "{name}" created successfully!',
            plan_id=plan.id,
            instance=record,
            new_balance=new_balance,
        )

    async def _check_eligibility(
        self, account: UserAccount, plan: Optional[ServerPlan]
    ) -> Optional[OutcomeReason]:
        if plan is None or not plan.enabled:
            return OutcomeReason.PLAN_UNAVAILABLE
        if account.credits < plan.price:
            return OutcomeReason.INSUFFICIENT_CREDITS
        if plan.user_limit > 0:
            owned = await self._db.count_active_instances(account.id, plan.id)
            if owned >= plan.user_limit:
                return OutcomeReason.USER_LIMIT_REACHED
        if not plan.in_stock:
            return OutcomeReason.OUT_OF_STOCK
        return None

    async def _link_account(self, account: UserAccount) -> GatewayResult:
        """
        Resolve the user's panel account id, creating and linking one on
        first purchase. The link is stored straight away and survives any
        later failure of the purchase; when two requests race, the first
        stored link wins.
        """
        if account.panel_user_id is not None:
            return GatewayResult.ok(account.panel_user_id)

        result = await self._gateway.ensure_account(account.email)
        if not result.success:
            return result

        linked_id = await self._db.link_panel_account(account.id, result.data.id)
        if linked_id != result.data.id:
            logger.warning(
                "Panel account %s left unlinked; a concurrent request linked %s first",
                result.data.id,
                linked_id,
                extra={"user_id": account.id},
            )
        else:
            logger.info("Linked panel account %s", linked_id, extra={"user_id": account.id})
        return GatewayResult.ok(linked_id)

    async def _create_instance(self, request: InstanceRequest) -> GatewayResult:
        if not self._provisioning_timeout:
            return await self._gateway.create_instance(request)
        try:
            return await asyncio.wait_for(
                self._gateway.create_instance(request), timeout=self._provisioning_timeout
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Server creation for panel account %s timed out after %ss; "
                "the panel may still finish creating it",
                request.user,
                self._provisioning_timeout,
            )
            return GatewayResult.fail(
                f"Panel did not respond within {self._provisioning_timeout:g} seconds"
            )

    async def _commit(
        self,
        user: AuthenticatedVerifiedUser,
        plan: ServerPlan,
        instance: PanelInstance,
        name: str,
        correlation_id: Optional[str],
    ) -> Tuple[UserServerInstance, Decimal]:
        now = self._clock()

        async def work() -> Tuple[UserServerInstance, Decimal]:
            if plan.user_limit > 0:
                # Concurrent commits for one user both write the user
                # document below, so the store serialises them.
                owned = await self._db.count_active_instances(user.user_id, plan.id)
                if owned >= plan.user_limit:
                    raise _CommitRefused("user limit reached at commit")

            tx = await self._credit_service.apply_delta(
                user.user_id,
                -plan.price,
                TransactionType.PURCHASE,
                description=f"Purchased {plan.name}: {name}",
                reference_type="server_plan",
                reference_id=plan.id,
                correlation_id=correlation_id,
                metadata={"panel_server_id": instance.id},
            )
            if tx is None:
                raise _CommitRefused("insufficient credits at commit")
            if not await self._db.increment_plan_stock(plan.id):
                raise _CommitRefused("plan stock exhausted at commit")

            record = await self._db.add_server_instance(
                UserServerInstance(
                    user_id=user.user_id,
                    plan_id=plan.id,
                    panel_server_id=instance.id,
                    server_name=name,
                    server_identifier=instance.identifier,
                    status=InstanceStatus.ACTIVE,
                    created_at=now,
                    next_billing_date=PlanService.compute_next_billing_date(
                        plan.billing_cycle, now
                    ),
                )
            )
            await self._ledger.log_transaction(
                user_id=user.user_id,
                message="Server purchased",
                details={
                    "plan_id": plan.id,
                    "price": str(plan.price),
                    "instance_id": record.id,
                    "panel_server_id": instance.id,
                    "server_identifier": instance.identifier,
                },
                correlation_id=correlation_id,
            )
            return record, tx.current_credits

        return await self._db.run_in_transaction(work)

    async def _reconcile(
        self,
        user: AuthenticatedVerifiedUser,
        plan: ServerPlan,
        instance: PanelInstance,
        name: str,
        exc: Exception,
        correlation_id: Optional[str],
    ) -> None:
        details = {
            "plan_id": plan.id,
            "price": str(plan.price),
            "panel_server_id": instance.id,
            "server_identifier": instance.identifier,
            "server_name": name,
            "error": str(exc) or exc.__class__.__name__,
        }
        logger.error(
            "Purchase commit failed after panel server %s was created; "
            "manual reconciliation required",
            instance.id,
            exc_info=exc,
            extra={"user_id": user.user_id},
        )
        # Both alerts are attempted even if storage is what failed.
        try:
            await self._ledger.log_reconciliation(
                message="Orphaned panel server after failed purchase commit",
                details=details,
                user_id=user.user_id,
                correlation_id=correlation_id,
            )
        except Exception:
            logger.exception("Could not write reconciliation ledger entry")
        try:
            await self._notifications.notify_reconciliation_required(user.user_id, details)
            await self._notifications.notify_transaction_error(
                user.user_id,
                f'Server "{name}" could not be completed; support will follow up',
                {"plan_id": plan.id, "panel_server_id": instance.id},
            )
        except Exception:
            logger.exception("Could not queue reconciliation notifications")

    async def _record_failure(
        self,
        user: AuthenticatedVerifiedUser,
        plan: ServerPlan,
        message: str,
        error: Optional[str],
        correlation_id: Optional[str],
    ) -> None:
        logger.error("%s for plan %s: %s", message, plan.id, error, extra={"user_id": user.user_id})
        await self._ledger.log_error(
            message=message,
            details={"plan_id": plan.id, "error": error},
            user_id=user.user_id,
            correlation_id=correlation_id,
        )

    async def _check_low_credits(self, user_id: str) -> None:
        try:
            await self._notifications.notify_low_credits(user_id)
        except Exception:
            logger.exception("Low credit check failed", extra={"user_id": user_id})

    @staticmethod
    def _reject(
        user: AuthenticatedVerifiedUser,
        plan_id: str,
        reason: OutcomeReason,
        provisioning_error: Optional[str] = None,
    ) -> PurchaseOutcome:
        logger.info(
            "Purchase of plan %s rejected: %s",
            plan_id,
            reason.value,
            extra={"user_id": user.user_id},
        )
        return PurchaseOutcome.rejected(plan_id, reason, provisioning_error)
