from __future__ import annotations

from decimal import Decimal
from typing import ClassVar

from pydantic import BaseModel, Field

from .base import DBSerializableModel


BONUS_ENABLED_KEY = "bonus_enabled"
BONUS_AMOUNT_KEY = "bonus_amount"


class Setting(DBSerializableModel):
    """Free-form key/value setting."""

    collection_name: ClassVar[str] = "billing_settings"
    primary_key: ClassVar[str] = "key"

    key: str
    value: str


class BonusSettings(BaseModel):
    enabled: bool = False
    amount: Decimal = Field(default=Decimal("0"), ge=0)

    @property
    def starting_credits(self) -> Decimal:
        return self.amount if self.enabled else Decimal("0")
