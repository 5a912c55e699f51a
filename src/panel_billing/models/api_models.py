from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from .plan import BillingCycle


class RedeemRequest(BaseModel):
    code: str


class PurchaseRequest(BaseModel):
    plan_id: str
    server_name: str


class BalanceResponse(BaseModel):
    user_id: str
    credits: Decimal
    panel_linked: bool


class PlanSummary(BaseModel):
    """Public view of a plan; the provisioning template stays server-side."""

    id: str
    name: str
    description: str | None = None
    price: Decimal
    billing_cycle: BillingCycle
    cpu: int
    ram: int
    disk: int
    databases: int
    backups: int
    allocations: int
    category: str
    in_stock: bool
    remaining_stock: int | None = None


class PlanRequest(BaseModel):
    name: str
    description: str | None = None
    price: Decimal = Field(ge=0)
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    cpu: int = Field(ge=0)
    ram: int = Field(ge=0)
    disk: int = Field(ge=0)
    swap: int = 0
    io: int = 500
    databases: int = 0
    backups: int = 0
    allocations: int = 1
    egg_id: int
    location_ids: str
    docker_image: str | None = None
    startup_command: str | None = None
    environment_variables: str | None = None
    user_limit: int = Field(default=0, ge=0)
    stock_limit: int = Field(default=0, ge=0)
    enabled: bool = True
    category: str = "general"
    sort_order: int = 0


class PlanUpdateRequest(BaseModel):
    name: str | None = None
    description: str | None = None
    price: Decimal | None = Field(default=None, ge=0)
    billing_cycle: BillingCycle | None = None
    cpu: int | None = Field(default=None, ge=0)
    ram: int | None = Field(default=None, ge=0)
    disk: int | None = Field(default=None, ge=0)
    swap: int | None = None
    io: int | None = None
    databases: int | None = None
    backups: int | None = None
    allocations: int | None = None
    egg_id: int | None = None
    location_ids: str | None = None
    docker_image: str | None = None
    startup_command: str | None = None
    environment_variables: str | None = None
    user_limit: int | None = Field(default=None, ge=0)
    stock_limit: int | None = Field(default=None, ge=0)
    enabled: bool | None = None
    category: str | None = None
    sort_order: int | None = None


class GiftCardRequest(BaseModel):
    code: str
    credits: Decimal = Field(gt=0)
    max_uses: int = Field(default=1, ge=1)
    per_user_limit: int = Field(default=1, ge=1)
    expires_at: datetime | None = None


class BonusSettingsRequest(BaseModel):
    enabled: bool
    amount: Decimal = Field(ge=0)


class ErrorDetail(BaseModel):
    reason: str
    message: str


class EmailUpdateRequest(BaseModel):
    email: str
