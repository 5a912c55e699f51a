from __future__ import annotations

import asyncio
import itertools
import secrets
from typing import Dict, List, Optional, Tuple

from ..models.provisioning import (
    GatewayResult,
    InstanceRequest,
    InstanceResources,
    PanelAccount,
    PanelInstance,
)
from .base import ProvisioningGateway
from .cache import InstanceListCache


class InMemoryProvisioningGateway(ProvisioningGateway):
    """
    In-memory panel used for tests and local development.

    Failure switches let callers simulate an unreachable or refusing panel:
    set `account_error` / `instance_error` / `delete_error` / `list_error` to
    a message and the matching calls fail with it. `delay` makes every call
    yield to the event loop first, which forces interleaving in tests.
    """

    def __init__(
        self,
        instance_cache: Optional[InstanceListCache] = None,
        delay: float = 0.0,
    ) -> None:
        super().__init__(instance_cache)
        self.accounts: Dict[int, PanelAccount] = {}
        self.instances: Dict[int, PanelInstance] = {}
        self.resources: Dict[str, InstanceResources] = {}
        self.calls: List[Tuple[str, object]] = []
        self.account_error: Optional[str] = None
        self.instance_error: Optional[str] = None
        self.delete_error: Optional[str] = None
        self.list_error: Optional[str] = None
        self.delay = delay
        self._ids = itertools.count(1)

    async def _tick(self, call: str, arg: object) -> None:
        self.calls.append((call, arg))
        await asyncio.sleep(self.delay)

    def calls_to(self, call: str) -> List[object]:
        return [arg for name, arg in self.calls if name == call]

    async def get_account_by_email(self, email: str) -> GatewayResult:
        await self._tick("get_account_by_email", email)
        if self.account_error:
            return GatewayResult.fail(self.account_error)
        for account in self.accounts.values():
            if account.email.lower() == email.lower():
                return GatewayResult.ok(account.model_copy())
        return GatewayResult.ok(None)

    async def create_account(
        self,
        email: str,
        password: str,
        first_name: str = "User",
        last_name: str = "Account",
    ) -> GatewayResult:
        await self._tick("create_account", email)
        if self.account_error:
            return GatewayResult.fail(self.account_error)
        account = PanelAccount(
            id=next(self._ids),
            email=email,
            username=f"{email.split('@', 1)[0]}{secrets.randbelow(1000)}",
            first_name=first_name,
            last_name=last_name,
        )
        self.accounts[account.id] = account
        return GatewayResult.ok(account.model_copy())

    async def update_account(
        self,
        account_id: int,
        email: Optional[str] = None,
        password: Optional[str] = None,
    ) -> GatewayResult:
        await self._tick("update_account", account_id)
        if self.account_error:
            return GatewayResult.fail(self.account_error)
        account = self.accounts.get(account_id)
        if account is None:
            return GatewayResult.fail("The requested resource does not exist on this server.")
        if email:
            account.email = email
        return GatewayResult.ok(account.model_copy())

    async def _create_instance(self, request: InstanceRequest) -> GatewayResult:
        await self._tick("create_instance", request)
        if self.instance_error:
            return GatewayResult.fail(self.instance_error)
        if request.user not in self.accounts:
            return GatewayResult.fail("The requested user does not exist.")
        instance_id = next(self._ids)
        instance = PanelInstance(
            id=instance_id,
            uuid=secrets.token_hex(16),
            identifier=secrets.token_hex(4),
            name=request.name,
            status="running",
            user=request.user,
            limits=request.limits.model_dump(),
            feature_limits=request.feature_limits.model_dump(),
        )
        self.instances[instance_id] = instance
        return GatewayResult.ok(instance.model_copy())

    async def get_instance(self, instance_id: int) -> GatewayResult:
        await self._tick("get_instance", instance_id)
        instance = self.instances.get(instance_id)
        if instance is None:
            return GatewayResult.fail("The requested resource does not exist on this server.")
        return GatewayResult.ok(instance.model_copy())

    async def _fetch_user_instances(self, account_id: int) -> GatewayResult:
        await self._tick("get_user_instances", account_id)
        if self.list_error:
            return GatewayResult.fail(self.list_error)
        return GatewayResult.ok(
            [i.model_copy() for i in self.instances.values() if i.user == account_id]
        )

    async def _set_suspended(self, instance_id: int, suspended: bool) -> GatewayResult:
        instance = self.instances.get(instance_id)
        if instance is None:
            return GatewayResult.fail("The requested resource does not exist on this server.")
        instance.suspended = suspended
        instance.status = "suspended" if suspended else "running"
        return GatewayResult.ok(None)

    async def _suspend_instance(self, instance_id: int) -> GatewayResult:
        await self._tick("suspend_instance", instance_id)
        return await self._set_suspended(instance_id, True)

    async def _unsuspend_instance(self, instance_id: int) -> GatewayResult:
        await self._tick("unsuspend_instance", instance_id)
        return await self._set_suspended(instance_id, False)

    async def _delete_instance(self, instance_id: int) -> GatewayResult:
        await self._tick("delete_instance", instance_id)
        if self.delete_error:
            return GatewayResult.fail(self.delete_error)
        if self.instances.pop(instance_id, None) is None:
            return GatewayResult.fail("The requested resource does not exist on this server.")
        return GatewayResult.ok(None)

    async def get_instance_resources(self, identifier: str) -> GatewayResult:
        await self._tick("get_instance_resources", identifier)
        for instance in self.instances.values():
            if instance.identifier == identifier:
                return GatewayResult.ok(
                    self.resources.get(identifier, InstanceResources(state="running"))
                )
        return GatewayResult.fail("The requested resource does not exist on this server.")

    async def test_connection(self) -> GatewayResult:
        return GatewayResult.ok({"connected": True})
