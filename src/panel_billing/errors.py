from __future__ import annotations

from typing import Any, Optional


class BillingError(Exception):
    """Base class for faults raised by the billing services."""


class UserNotFoundError(BillingError, LookupError):
    pass


class PlanNotFoundError(BillingError, LookupError):
    pass


class GiftCardNotFoundError(BillingError, LookupError):
    pass


class InstanceNotFoundError(BillingError, LookupError):
    pass


class DuplicateGiftCardError(BillingError, ValueError):
    pass


class DuplicateEmailError(BillingError, ValueError):
    pass


class ReconciliationError(BillingError):
    """
    A server was created on the panel but the local commit that pays for it
    failed. The panel server is left in place and needs manual follow-up.
    """

    def __init__(
        self,
        message: str,
        *,
        user_id: str,
        plan_id: str,
        panel_server_id: Optional[int] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.user_id = user_id
        self.plan_id = plan_id
        self.panel_server_id = panel_server_id
        self.details = details or {}


class ProvisioningError(BillingError):
    """The panel refused or failed an administrative request."""
