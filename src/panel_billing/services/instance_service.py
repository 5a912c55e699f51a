from __future__ import annotations

import asyncio
import logging
from typing import List

from ..db.base import BaseDBManager
from ..errors import InstanceNotFoundError, ProvisioningError
from ..logging.ledger_logger import LedgerLogger
from ..models.instance import InstanceStatus, UserServerInstance
from ..models.provisioning import InstanceResources, PanelInstance
from ..models.stats import (
    AllocatedResources,
    InstanceSyncResult,
    LiveStats,
    ServerState,
    UsageStats,
)
from ..models.user import AuthenticatedVerifiedUser
from ..provisioning.base import ProvisioningGateway
from .account_service import AccountService
from .plan_service import PlanService


logger = logging.getLogger(__name__)


class InstanceService:
    """
    Read and housekeeping paths around purchased servers: syncing a user's
    panel servers, live usage, admin removal and platform usage stats.
    """

    def __init__(
        self,
        db: BaseDBManager,
        ledger: LedgerLogger,
        gateway: ProvisioningGateway,
        accounts: AccountService,
        plan_service: PlanService,
        chunk_size: int = 3,
        chunk_delay: float = 0.1,
    ) -> None:
        self._db = db
        self._ledger = ledger
        self._gateway = gateway
        self._accounts = accounts
        self._plans = plan_service
        self._chunk_size = chunk_size
        self._chunk_delay = chunk_delay

    async def list_user_instances(
        self, user: AuthenticatedVerifiedUser
    ) -> List[UserServerInstance]:
        return list(await self._db.list_server_instances(user.user_id))

    async def sync_instances(
        self, user: AuthenticatedVerifiedUser, bypass_cache: bool = True
    ) -> InstanceSyncResult:
        account = await self._accounts.get_user(user.user_id)
        if account.panel_user_id is None:
            return InstanceSyncResult(success=False, error="No panel account linked")

        result = await self._gateway.get_user_instances(
            account.panel_user_id, bypass_cache=bypass_cache
        )
        if not result.success:
            return InstanceSyncResult(
                success=False, error=result.error or "Failed to fetch servers"
            )

        servers: List[PanelInstance] = result.data or []
        resources = AllocatedResources()
        for server in servers:
            resources.cpu += server.limits.get("cpu", 0)
            resources.memory += server.limits.get("memory", 0)
            resources.disk += server.limits.get("disk", 0)
        return InstanceSyncResult(success=True, servers=servers, resources=resources)

    async def live_stats(self, user: AuthenticatedVerifiedUser) -> LiveStats:
        account = await self._accounts.get_user(user.user_id)
        stats = LiveStats()
        if account.panel_user_id is None:
            return stats

        result = await self._gateway.get_user_instances(account.panel_user_id)
        if not result.success:
            logger.warning(
                "Could not list panel servers for live stats: %s",
                result.error,
                extra={"user_id": user.user_id},
            )
            return stats

        servers: List[PanelInstance] = result.data or []
        stats.servers = len(servers)
        for server in servers:
            usage = await self._gateway.get_instance_resources(server.identifier)
            if not usage.success:
                logger.debug("No resources for %s: %s", server.identifier, usage.error)
                continue
            resources: InstanceResources = usage.data
            stats.cpu_absolute += resources.cpu_absolute
            stats.memory_bytes += resources.memory_bytes
            stats.disk_bytes += resources.disk_bytes
            stats.statuses.append(
                ServerState(identifier=server.identifier, state=resources.state)
            )
        return stats

    async def remove_instance(self, instance_id: str) -> UserServerInstance:
        """
        Delete a purchased server on the panel and retire its local record.

        When the panel refuses, nothing changes locally and ProvisioningError
        is raised with the panel's message.
        """
        record = await self._db.get_server_instance(instance_id)
        if record is None or record.status == InstanceStatus.DELETED:
            raise InstanceNotFoundError(instance_id)

        owner = await self._db.get_user(record.user_id)
        result = await self._gateway.delete_instance(
            record.panel_server_id,
            account_id=owner.panel_user_id if owner else None,
        )
        if not result.success:
            logger.error(
                "Panel refused to delete server %s: %s",
                record.panel_server_id,
                result.error,
            )
            raise ProvisioningError(result.error or "Panel refused to delete the server")

        async def retire() -> None:
            await self._db.set_instance_status(instance_id, InstanceStatus.DELETED)
            await self._db.decrement_plan_stock(record.plan_id)
            await self._ledger.log_system(
                message="Server instance removed",
                details={
                    "instance_id": instance_id,
                    "user_id": record.user_id,
                    "plan_id": record.plan_id,
                    "panel_server_id": record.panel_server_id,
                },
            )

        await self._db.run_in_transaction(retire)
        await self._plans.invalidate_cache()

        record.status = InstanceStatus.DELETED
        return record

    async def usage_stats(self) -> UsageStats:
        users = list(await self._db.list_users())
        linked = [u for u in users if u.panel_user_id is not None]
        instances = await self._db.list_server_instances()
        active = sum(1 for i in instances if i.status == InstanceStatus.ACTIVE)

        # Limit concurrent panel calls to stay under its rate limit.
        panel_servers = 0
        unreachable = 0
        for start in range(0, len(linked), self._chunk_size):
            chunk = linked[start : start + self._chunk_size]
            results = await asyncio.gather(
                *(self._gateway.get_user_instances(u.panel_user_id) for u in chunk),
                return_exceptions=True,
            )
            for result in results:
                if isinstance(result, BaseException) or not result.success:
                    unreachable += 1
                    continue
                panel_servers += len(result.data or [])
            if start + self._chunk_size < len(linked):
                await asyncio.sleep(self._chunk_delay)

        return UsageStats(
            total_users=len(users),
            linked_users=len(linked),
            active_instances=active,
            panel_servers=panel_servers,
            unreachable_accounts=unreachable,
        )
