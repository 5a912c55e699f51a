from __future__ import annotations

import logging
import secrets
from abc import ABC, abstractmethod
from typing import Optional

from ..models.provisioning import GatewayResult, InstanceRequest
from .cache import InstanceListCache


logger = logging.getLogger(__name__)


class ProvisioningGateway(ABC):
    """
    Narrow contract the billing core has with the game panel.

    Every call returns a `GatewayResult` and never raises for ordinary remote
    errors. Calls are not retried: a repeated create could provision twice.

    Server lists go through an `InstanceListCache`; calls that change a
    known account's servers drop that account's entry.
    """

    def __init__(self, instance_cache: Optional[InstanceListCache] = None) -> None:
        self._instance_cache = instance_cache or InstanceListCache()

    # Accounts
    async def ensure_account(self, email: str) -> GatewayResult:
        """
        Return the panel account for `email`, creating one when none exists.

        New accounts get a random password; users only sign in through the
        dashboard, never to the panel directly.
        """
        lookup = await self.get_account_by_email(email)
        if not lookup.success:
            return lookup
        if lookup.data is not None:
            return lookup
        return await self.create_account(email, secrets.token_urlsafe(24))

    @abstractmethod
    async def get_account_by_email(self, email: str) -> GatewayResult:
        """`data` is a PanelAccount, or None when no account matches."""

    @abstractmethod
    async def create_account(
        self,
        email: str,
        password: str,
        first_name: str = "User",
        last_name: str = "Account",
    ) -> GatewayResult: ...

    @abstractmethod
    async def update_account(
        self,
        account_id: int,
        email: Optional[str] = None,
        password: Optional[str] = None,
    ) -> GatewayResult: ...

    # Servers
    async def create_instance(self, request: InstanceRequest) -> GatewayResult:
        result = await self._create_instance(request)
        if result.success:
            await self._instance_cache.invalidate(request.user)
        return result

    async def get_user_instances(self, account_id: int, bypass_cache: bool = False) -> GatewayResult:
        return await self._instance_cache.get_or_fetch(
            account_id,
            lambda: self._fetch_user_instances(account_id),
            bypass=bypass_cache,
        )

    async def suspend_instance(
        self, instance_id: int, account_id: Optional[int] = None
    ) -> GatewayResult:
        return await self._after_change(await self._suspend_instance(instance_id), account_id)

    async def unsuspend_instance(
        self, instance_id: int, account_id: Optional[int] = None
    ) -> GatewayResult:
        return await self._after_change(await self._unsuspend_instance(instance_id), account_id)

    async def delete_instance(
        self, instance_id: int, account_id: Optional[int] = None
    ) -> GatewayResult:
        return await self._after_change(await self._delete_instance(instance_id), account_id)

    async def _after_change(
        self, result: GatewayResult, account_id: Optional[int]
    ) -> GatewayResult:
        if result.success and account_id is not None:
            await self._instance_cache.invalidate(account_id)
        return result

    @abstractmethod
    async def get_instance(self, instance_id: int) -> GatewayResult: ...

    @abstractmethod
    async def get_instance_resources(self, identifier: str) -> GatewayResult: ...

    @abstractmethod
    async def test_connection(self) -> GatewayResult: ...

    @abstractmethod
    async def _create_instance(self, request: InstanceRequest) -> GatewayResult: ...

    @abstractmethod
    async def _fetch_user_instances(self, account_id: int) -> GatewayResult: ...

    @abstractmethod
    async def _suspend_instance(self, instance_id: int) -> GatewayResult: ...

    @abstractmethod
    async def _unsuspend_instance(self, instance_id: int) -> GatewayResult: ...

    @abstractmethod
    async def _delete_instance(self, instance_id: int) -> GatewayResult: ...

    async def aclose(self) -> None:
        return None
