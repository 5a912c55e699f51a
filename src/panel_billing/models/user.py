from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import ClassVar, Optional

from pydantic import BaseModel, ConfigDict, Field

from .base import DBSerializableModel


class UserRole(str, Enum):
    USER = "user"
    ADMIN = "admin"


class UserAccount(DBSerializableModel):
    """
    Billing-side user record: owns the credit balance and the link to the
    user's account on the game panel.
    """

    collection_name: ClassVar[str] = "billing_users"
    unique_fields: ClassVar[tuple[str, ...]] = ("email",)

    id: Optional[str] = Field(default=None)
    email: str
    role: UserRole = UserRole.USER
    credits: Decimal = Field(default=Decimal("0"), ge=0)
    panel_user_id: Optional[int] = Field(
        default=None,
        description="Account id on the game panel; null until first linked.",
    )
    two_factor_enabled: bool = False
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class UserCreditInfo(BaseModel):
    user_id: str
    balance: Decimal
    panel_linked: bool = False


class AuthenticatedVerifiedUser(BaseModel):
    """
    Capability handed to the orchestrators by the web layer.

    Only `from_account` should build one, and only after the caller's
    second factor has been checked.
    """

    model_config = ConfigDict(frozen=True)

    user_id: str
    email: str
    role: UserRole = UserRole.USER

    @classmethod
    def from_account(
        cls, account: UserAccount, second_factor_verified: bool
    ) -> "AuthenticatedVerifiedUser":
        if account.id is None:
            raise ValueError("account must be persisted before it can authenticate")
        if not second_factor_verified:
            raise PermissionError("second factor not verified")
        return cls(user_id=account.id, email=account.email, role=account.role)

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN
