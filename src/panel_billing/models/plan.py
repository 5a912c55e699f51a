from __future__ import annotations

import json
import logging
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional

from pydantic import Field

from .base import DBSerializableModel


logger = logging.getLogger(__name__)


class BillingCycle(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"


class ServerPlan(DBSerializableModel):
    """
    Purchasable server configuration: resource limits, the panel template
    used to provision it, and stock / per-user caps.
    """

    collection_name: ClassVar[str] = "billing_server_plans"

    id: Optional[str] = Field(default=None)
    name: str
    description: Optional[str] = None
    price: Decimal = Field(ge=0)
    billing_cycle: BillingCycle = BillingCycle.MONTHLY

    cpu: int = Field(ge=0, description="CPU limit in percent of one core.")
    ram: int = Field(ge=0, description="Memory limit in MB.")
    disk: int = Field(ge=0, description="Disk limit in MB.")
    swap: int = 0
    io: int = 500
    databases: int = 0
    backups: int = 0
    allocations: int = 1

    egg_id: int
    location_ids: str = Field(description="Comma-separated panel location ids.")
    docker_image: Optional[str] = None
    startup_command: Optional[str] = None
    environment_variables: Optional[str] = Field(
        default=None, description="JSON object of egg environment variables."
    )

    user_limit: int = Field(default=0, ge=0, description="0 means unlimited.")
    stock_limit: int = Field(default=0, ge=0, description="0 means unlimited.")
    stock_used: int = Field(default=0, ge=0)
    enabled: bool = True
    category: str = "general"
    sort_order: int = 0
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def has_stock_limit(self) -> bool:
        return self.stock_limit > 0

    @property
    def in_stock(self) -> bool:
        return not self.has_stock_limit or self.stock_used < self.stock_limit

    def parsed_environment(self) -> Dict[str, Any]:
        if not self.environment_variables:
            return {}
        try:
            environment = json.loads(self.environment_variables)
        except ValueError:
            logger.warning(
                "Plan %s has invalid environment_variables JSON; using empty map",
                self.id,
            )
            return {}
        if not isinstance(environment, dict):
            logger.warning(
                "Plan %s environment_variables is not a JSON object; using empty map",
                self.id,
            )
            return {}
        return environment

    def parsed_location_ids(self) -> List[int]:
        locations: List[int] = []
        for raw in (self.location_ids or "").split(","):
            raw = raw.strip()
            try:
                locations.append(int(raw))
            except ValueError:
                continue
        return locations
