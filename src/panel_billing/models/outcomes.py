from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel

from .instance import UserServerInstance


class OutcomeReason(str, Enum):
    # Redemption
    INVALID_CODE = "invalid_code"
    CARD_DISABLED = "card_disabled"
    CARD_EXPIRED = "card_expired"
    USAGE_LIMIT_REACHED = "usage_limit_reached"
    PER_USER_LIMIT_REACHED = "per_user_limit_reached"
    # Purchase
    INVALID_NAME = "invalid_name"
    PLAN_UNAVAILABLE = "plan_unavailable"
    INSUFFICIENT_CREDITS = "insufficient_credits"
    USER_LIMIT_REACHED = "user_limit_reached"
    OUT_OF_STOCK = "out_of_stock"
    PROVISIONING_ACCOUNT_FAILED = "provisioning_account_failed"
    PROVISIONING_INSTANCE_FAILED = "provisioning_instance_failed"

    @property
    def message(self) -> str:
        return _MESSAGES[self]


_MESSAGES = {
    OutcomeReason.INVALID_CODE: "Invalid gift card code",
    OutcomeReason.CARD_DISABLED: "This gift card is no longer active",
    OutcomeReason.CARD_EXPIRED: "This gift card has expired",
    OutcomeReason.USAGE_LIMIT_REACHED: "This gift card has reached its usage limit",
    OutcomeReason.PER_USER_LIMIT_REACHED: (
        "You have already redeemed this gift card the maximum number of times"
    ),
    OutcomeReason.INVALID_NAME: "A server name is required",
    OutcomeReason.PLAN_UNAVAILABLE: "This plan is not available",
    OutcomeReason.INSUFFICIENT_CREDITS: "Insufficient credits",
    OutcomeReason.USER_LIMIT_REACHED: "You have reached the maximum limit for this plan",
    OutcomeReason.OUT_OF_STOCK: "This plan is out of stock",
    OutcomeReason.PROVISIONING_ACCOUNT_FAILED: "Failed to create panel account",
    OutcomeReason.PROVISIONING_INSTANCE_FAILED: "Server creation failed",
}


class RedemptionOutcome(BaseModel):
    success: bool
    reason: Optional[OutcomeReason] = None
    message: str
    code: str
    credits_added: Decimal = Decimal("0")
    new_balance: Optional[Decimal] = None
    redemption_id: Optional[str] = None

    @classmethod
    def rejected(cls, code: str, reason: OutcomeReason) -> "RedemptionOutcome":
        return cls(success=False, reason=reason, message=reason.message, code=code)


class PurchaseOutcome(BaseModel):
    success: bool
    reason: Optional[OutcomeReason] = None
    message: str
    plan_id: str
    instance: Optional[UserServerInstance] = None
    new_balance: Optional[Decimal] = None
    provisioning_error: Optional[str] = None

    @classmethod
    def rejected(
        cls,
        plan_id: str,
        reason: OutcomeReason,
        provisioning_error: Optional[str] = None,
    ) -> "PurchaseOutcome":
        message = reason.message
        if provisioning_error:
            message = f"{message}: {provisioning_error}"
        return cls(
            success=False,
            reason=reason,
            message=message,
            plan_id=plan_id,
            provisioning_error=provisioning_error,
        )
