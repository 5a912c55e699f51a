from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import ClassVar, Optional

from pydantic import Field, field_validator

from .base import DBSerializableModel


def normalize_code(code: str) -> str:
    """Canonical form of a gift card code: trimmed and upper-cased."""
    return (code or "").strip().upper()


class GiftCard(DBSerializableModel):
    """
    Issued gift card code. `uses` only ever grows through a redemption.
    """

    collection_name: ClassVar[str] = "billing_gift_cards"
    unique_fields: ClassVar[tuple[str, ...]] = ("code",)

    id: Optional[str] = Field(default=None)
    code: str
    credits: Decimal = Field(gt=0)
    max_uses: int = Field(default=1, ge=1)
    uses: int = Field(default=0, ge=0)
    per_user_limit: int = Field(default=1, ge=1)
    enabled: bool = True
    created_at: datetime = Field(default_factory=datetime.utcnow)
    expires_at: Optional[datetime] = None

    @field_validator("code")
    @classmethod
    def _canonical_code(cls, value: str) -> str:
        value = normalize_code(value)
        if not value:
            raise ValueError("gift card code must not be empty")
        return value

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at < now


class GiftCardRedemption(DBSerializableModel):
    """
    Append-only record of one user redeeming one gift card.
    """

    collection_name: ClassVar[str] = "billing_gift_card_redemptions"

    id: Optional[str] = Field(default=None)
    user_id: str
    gift_card_id: str
    credits_received: Decimal
    redeemed_at: datetime = Field(default_factory=datetime.utcnow)
