from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import ClassVar, Optional

from pydantic import Field

from .base import DBSerializableModel


class InstanceStatus(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"
    DELETED = "deleted"


class UserServerInstance(DBSerializableModel):
    """
    A server bought through the dashboard. Created once per successful purchase.
    """

    collection_name: ClassVar[str] = "billing_user_servers"

    id: Optional[str] = Field(default=None)
    user_id: str
    plan_id: str
    panel_server_id: int = Field(description="Numeric server id on the panel.")
    server_name: str
    server_identifier: str = Field(description="Short panel identifier used by the client API.")
    status: InstanceStatus = InstanceStatus.ACTIVE
    created_at: datetime = Field(default_factory=datetime.utcnow)
    expires_at: Optional[datetime] = None
    next_billing_date: Optional[datetime] = None
