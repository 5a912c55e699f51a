from __future__ import annotations

from typing import List, NoReturn

from fastapi import APIRouter, Depends, HTTPException, status

from ..container import BillingServices
from ..errors import DuplicateEmailError, DuplicateGiftCardError
from ..models.api_models import (
    BalanceResponse,
    BonusSettingsRequest,
    EmailUpdateRequest,
    ErrorDetail,
    GiftCardRequest,
    PlanRequest,
    PlanSummary,
    PlanUpdateRequest,
    PurchaseRequest,
    RedeemRequest,
)
from ..models.gift_card import GiftCard
from ..models.instance import UserServerInstance
from ..models.outcomes import OutcomeReason, PurchaseOutcome, RedemptionOutcome
from ..models.plan import ServerPlan
from ..models.setting import BonusSettings
from ..models.stats import InstanceSyncResult, LiveStats, UsageStats
from ..models.transaction import Transaction
from ..models.user import AuthenticatedVerifiedUser, UserAccount
from .deps import admin_user, current_user, get_services


router = APIRouter(prefix="/billing", tags=["billing"])


_STATUS_BY_REASON = {
    OutcomeReason.INVALID_CODE: status.HTTP_404_NOT_FOUND,
    OutcomeReason.CARD_DISABLED: status.HTTP_400_BAD_REQUEST,
    OutcomeReason.CARD_EXPIRED: status.HTTP_400_BAD_REQUEST,
    OutcomeReason.USAGE_LIMIT_REACHED: status.HTTP_409_CONFLICT,
    OutcomeReason.PER_USER_LIMIT_REACHED: status.HTTP_409_CONFLICT,
    OutcomeReason.INVALID_NAME: status.HTTP_400_BAD_REQUEST,
    OutcomeReason.PLAN_UNAVAILABLE: status.HTTP_404_NOT_FOUND,
    OutcomeReason.INSUFFICIENT_CREDITS: status.HTTP_402_PAYMENT_REQUIRED,
    OutcomeReason.USER_LIMIT_REACHED: status.HTTP_409_CONFLICT,
    OutcomeReason.OUT_OF_STOCK: status.HTTP_409_CONFLICT,
    OutcomeReason.PROVISIONING_ACCOUNT_FAILED: status.HTTP_502_BAD_GATEWAY,
    OutcomeReason.PROVISIONING_INSTANCE_FAILED: status.HTTP_502_BAD_GATEWAY,
}


def _raise_for(reason: OutcomeReason, message: str) -> NoReturn:
    raise HTTPException(
        status_code=_STATUS_BY_REASON[reason],
        detail=ErrorDetail(reason=reason.value, message=message).model_dump(),
    )


def _plan_summary(plan: ServerPlan) -> PlanSummary:
    return PlanSummary(
        id=plan.id or "",
        name=plan.name,
        description=plan.description,
        price=plan.price,
        billing_cycle=plan.billing_cycle,
        cpu=plan.cpu,
        ram=plan.ram,
        disk=plan.disk,
        databases=plan.databases,
        backups=plan.backups,
        allocations=plan.allocations,
        category=plan.category,
        in_stock=plan.in_stock,
        remaining_stock=(plan.stock_limit - plan.stock_used) if plan.has_stock_limit else None,
    )


# User routes


@router.get("/balance", response_model=BalanceResponse)
async def get_balance(
    user: AuthenticatedVerifiedUser = Depends(current_user),
    services: BillingServices = Depends(get_services),
) -> BalanceResponse:
    info = await services.credits.get_user_credits_info(user.user_id)
    return BalanceResponse(
        user_id=user.user_id, credits=info.balance, panel_linked=info.panel_linked
    )


@router.get("/plans", response_model=List[PlanSummary])
async def list_plans(
    user: AuthenticatedVerifiedUser = Depends(current_user),
    services: BillingServices = Depends(get_services),
) -> List[PlanSummary]:
    return [_plan_summary(plan) for plan in await services.plans.list_enabled_plans()]


@router.get("/history", response_model=List[Transaction])
async def get_history(
    user: AuthenticatedVerifiedUser = Depends(current_user),
    services: BillingServices = Depends(get_services),
) -> List[Transaction]:
    return list(await services.credits.get_credit_history(user.user_id))


@router.put("/account/email", response_model=UserAccount)
async def update_email(
    payload: EmailUpdateRequest,
    user: AuthenticatedVerifiedUser = Depends(current_user),
    services: BillingServices = Depends(get_services),
) -> UserAccount:
    try:
        return await services.accounts.update_email(user.user_id, payload.email)
    except DuplicateEmailError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc


@router.post("/redeem", response_model=RedemptionOutcome)
async def redeem(
    payload: RedeemRequest,
    user: AuthenticatedVerifiedUser = Depends(current_user),
    services: BillingServices = Depends(get_services),
) -> RedemptionOutcome:
    outcome = await services.redemptions.redeem(user, payload.code)
    if not outcome.success:
        _raise_for(outcome.reason, outcome.message)
    return outcome


@router.get("/instances", response_model=List[UserServerInstance])
async def list_instances(
    user: AuthenticatedVerifiedUser = Depends(current_user),
    services: BillingServices = Depends(get_services),
) -> List[UserServerInstance]:
    return await services.instances.list_user_instances(user)


@router.post(
    "/instances/purchase",
    response_model=PurchaseOutcome,
    status_code=status.HTTP_201_CREATED,
)
async def purchase_instance(
    payload: PurchaseRequest,
    user: AuthenticatedVerifiedUser = Depends(current_user),
    services: BillingServices = Depends(get_services),
) -> PurchaseOutcome:
    outcome = await services.purchases.purchase(user, payload.plan_id, payload.server_name)
    if not outcome.success:
        _raise_for(outcome.reason, outcome.message)
    return outcome


@router.post("/instances/sync", response_model=InstanceSyncResult)
async def sync_instances(
    bypass_cache: bool = True,
    user: AuthenticatedVerifiedUser = Depends(current_user),
    services: BillingServices = Depends(get_services),
) -> InstanceSyncResult:
    return await services.instances.sync_instances(user, bypass_cache=bypass_cache)


@router.get("/instances/stats", response_model=LiveStats)
async def instance_stats(
    user: AuthenticatedVerifiedUser = Depends(current_user),
    services: BillingServices = Depends(get_services),
) -> LiveStats:
    return await services.instances.live_stats(user)


# Admin routes


@router.get("/admin/stats", response_model=UsageStats)
async def admin_stats(
    admin: AuthenticatedVerifiedUser = Depends(admin_user),
    services: BillingServices = Depends(get_services),
) -> UsageStats:
    return await services.instances.usage_stats()


@router.get("/admin/plans", response_model=List[ServerPlan])
async def admin_list_plans(
    admin: AuthenticatedVerifiedUser = Depends(admin_user),
    services: BillingServices = Depends(get_services),
) -> List[ServerPlan]:
    return list(await services.plans.list_plans())


@router.post("/admin/plans", response_model=ServerPlan, status_code=status.HTTP_201_CREATED)
async def create_plan(
    payload: PlanRequest,
    admin: AuthenticatedVerifiedUser = Depends(admin_user),
    services: BillingServices = Depends(get_services),
) -> ServerPlan:
    return await services.plans.create_plan(ServerPlan(**payload.model_dump()))


@router.put("/admin/plans/{plan_id}", response_model=ServerPlan)
async def update_plan(
    plan_id: str,
    payload: PlanUpdateRequest,
    admin: AuthenticatedVerifiedUser = Depends(admin_user),
    services: BillingServices = Depends(get_services),
) -> ServerPlan:
    try:
        return await services.plans.update_plan(plan_id, **payload.model_dump(exclude_unset=True))
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc


@router.delete("/admin/plans/{plan_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_plan(
    plan_id: str,
    admin: AuthenticatedVerifiedUser = Depends(admin_user),
    services: BillingServices = Depends(get_services),
) -> None:
    await services.plans.delete_plan(plan_id)


@router.get("/admin/gift-cards", response_model=List[GiftCard])
async def list_gift_cards(
    admin: AuthenticatedVerifiedUser = Depends(admin_user),
    services: BillingServices = Depends(get_services),
) -> List[GiftCard]:
    return list(await services.gift_cards.list_gift_cards())


@router.post("/admin/gift-cards", response_model=GiftCard, status_code=status.HTTP_201_CREATED)
async def create_gift_card(
    payload: GiftCardRequest,
    admin: AuthenticatedVerifiedUser = Depends(admin_user),
    services: BillingServices = Depends(get_services),
) -> GiftCard:
    try:
        return await services.gift_cards.create_gift_card(
            code=payload.code,
            credits=payload.credits,
            max_uses=payload.max_uses,
            per_user_limit=payload.per_user_limit,
            expires_at=payload.expires_at,
        )
    except DuplicateGiftCardError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc


@router.post("/admin/gift-cards/{card_id}/toggle", response_model=GiftCard)
async def toggle_gift_card(
    card_id: str,
    admin: AuthenticatedVerifiedUser = Depends(admin_user),
    services: BillingServices = Depends(get_services),
) -> GiftCard:
    return await services.gift_cards.set_enabled(card_id)


@router.delete("/admin/gift-cards/{card_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_gift_card(
    card_id: str,
    admin: AuthenticatedVerifiedUser = Depends(admin_user),
    services: BillingServices = Depends(get_services),
) -> None:
    await services.gift_cards.delete_gift_card(card_id)


@router.get("/admin/settings/bonus", response_model=BonusSettings)
async def get_bonus_settings(
    admin: AuthenticatedVerifiedUser = Depends(admin_user),
    services: BillingServices = Depends(get_services),
) -> BonusSettings:
    return await services.settings_service.get_bonus_settings()


@router.put("/admin/settings/bonus", response_model=BonusSettings)
async def update_bonus_settings(
    payload: BonusSettingsRequest,
    admin: AuthenticatedVerifiedUser = Depends(admin_user),
    services: BillingServices = Depends(get_services),
) -> BonusSettings:
    return await services.settings_service.update_bonus_settings(
        payload.enabled, payload.amount
    )


@router.delete("/admin/instances/{instance_id}", response_model=UserServerInstance)
async def remove_instance(
    instance_id: str,
    admin: AuthenticatedVerifiedUser = Depends(admin_user),
    services: BillingServices = Depends(get_services),
) -> UserServerInstance:
    return await services.instances.remove_instance(instance_id)
