from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, ClassVar, Dict, Optional

from pydantic import Field

from .base import DBSerializableModel


class TransactionType(str, Enum):
    BONUS = "bonus"
    REDEEM = "redeem"
    PURCHASE = "purchase"
    ADJUST = "adjust"


class Transaction(DBSerializableModel):
    """
    Credit history row written alongside every balance change.
    """

    collection_name: ClassVar[str] = "billing_transactions"

    id: Optional[str] = Field(default=None)
    user_id: str
    credits_added: Decimal = Decimal("0")
    credits_deducted: Decimal = Decimal("0")
    current_credits: Decimal
    transaction_type: TransactionType
    reference_type: Optional[str] = None
    reference_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    description: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
