from __future__ import annotations

import logging
import time
from typing import Awaitable, Callable, List, Optional

from ..cache.base import AsyncCacheBackend
from ..cache.memory import InMemoryAsyncCache
from ..models.provisioning import GatewayResult, PanelInstance


logger = logging.getLogger(__name__)


class InstanceListCache:
    """
    Time-bounded cache of panel server lists, keyed by panel account id.

    Only successful fetches are cached. `bypass=True` always goes to the
    panel and refreshes the entry with whatever it returns.
    """

    def __init__(
        self,
        backend: Optional[AsyncCacheBackend] = None,
        ttl_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._backend = backend or InMemoryAsyncCache(clock=clock)
        self._ttl_seconds = ttl_seconds

    @staticmethod
    def _key(account_id: int) -> str:
        return f"panel:account:{account_id}:servers"

    async def get(self, account_id: int) -> Optional[List[PanelInstance]]:
        cached = await self._backend.get(self._key(account_id))
        if not isinstance(cached, list):
            return None
        return [PanelInstance.model_validate(item) for item in cached]

    async def put(self, account_id: int, instances: List[PanelInstance]) -> None:
        await self._backend.set(
            self._key(account_id),
            [instance.model_dump() for instance in instances],
            ttl_seconds=self._ttl_seconds,
        )

    async def invalidate(self, account_id: int) -> None:
        await self._backend.delete(self._key(account_id))

    async def get_or_fetch(
        self,
        account_id: int,
        fetch: Callable[[], Awaitable[GatewayResult]],
        bypass: bool = False,
    ) -> GatewayResult:
        if not bypass:
            cached = await self.get(account_id)
            if cached is not None:
                return GatewayResult.ok(cached)

        result = await fetch()
        if result.success:
            await self.put(account_id, result.data or [])
        else:
            logger.debug("Not caching failed server list for account %s", account_id)
        return result
