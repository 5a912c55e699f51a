from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from .cache.base import AsyncCacheBackend
from .cache.memory import InMemoryAsyncCache
from .config import Settings
from .db.base import BaseDBManager
from .db.memory import InMemoryDBManager
from .db.mongo import MongoDBManager
from .logging.ledger_logger import LedgerLogger
from .notifications.queue import AsyncNotificationQueue, InMemoryNotificationQueue
from .provisioning.base import ProvisioningGateway
from .provisioning.cache import InstanceListCache
from .provisioning.memory import InMemoryProvisioningGateway
from .provisioning.pterodactyl import PterodactylGateway
from .services.account_service import AccountService
from .services.credit_service import CreditService
from .services.gift_card_service import GiftCardService
from .services.instance_service import InstanceService
from .services.notification_service import NotificationService
from .services.plan_service import PlanService
from .services.purchase_service import PurchaseService
from .services.redemption_service import RedemptionService
from .services.settings_service import SettingsService


logger = logging.getLogger(__name__)


def _create_db_manager(settings: Settings) -> BaseDBManager:
    if settings.MONGO_URI:
        return MongoDBManager.from_client_uri(settings.MONGO_URI, settings.MONGO_DB)
    logger.warning("MONGO_URI not set; using the in-memory store")
    return InMemoryDBManager()


def _create_gateway(settings: Settings, cache: AsyncCacheBackend) -> ProvisioningGateway:
    instance_cache = InstanceListCache(cache, ttl_seconds=settings.INSTANCE_CACHE_TTL_SECONDS)
    if settings.panel_configured:
        return PterodactylGateway(
            settings.PANEL_URL,
            settings.PANEL_API_KEY,
            settings.PANEL_CLIENT_KEY,
            timeout=settings.PANEL_TIMEOUT_SECONDS,
            instance_cache=instance_cache,
        )
    logger.warning("PANEL_URL / PANEL_API_KEY not set; using the in-memory panel")
    return InMemoryProvisioningGateway(instance_cache)


class BillingServices:
    """
    Wires storage, cache, ledger, panel gateway and the services on top.
    One instance is shared by the whole application.
    """

    def __init__(
        self,
        db: BaseDBManager,
        gateway: ProvisioningGateway,
        ledger: LedgerLogger,
        settings: Settings,
        cache: Optional[AsyncCacheBackend] = None,
        queue: Optional[AsyncNotificationQueue] = None,
    ) -> None:
        self.db = db
        self.gateway = gateway
        self.ledger = ledger
        self.cache = cache or InMemoryAsyncCache()
        self.queue = queue or InMemoryNotificationQueue()

        self.credits = CreditService(db=db, ledger=ledger, cache=self.cache)
        self.settings_service = SettingsService(db=db, ledger=ledger)
        self.accounts = AccountService(
            db=db,
            ledger=ledger,
            credit_service=self.credits,
            settings_service=self.settings_service,
            gateway=gateway,
        )
        self.notifications = NotificationService(
            db=db,
            queue=self.queue,
            credit_service=self.credits,
            low_credit_threshold=settings.LOW_CREDIT_THRESHOLD,
        )
        self.plans = PlanService(db=db, ledger=ledger, cache=self.cache)
        self.gift_cards = GiftCardService(db=db, ledger=ledger)
        self.redemptions = RedemptionService(
            db=db, ledger=ledger, gift_cards=self.gift_cards, credit_service=self.credits
        )
        self.purchases = PurchaseService(
            db=db,
            ledger=ledger,
            plan_service=self.plans,
            credit_service=self.credits,
            gateway=gateway,
            notifications=self.notifications,
            default_docker_image=settings.DEFAULT_DOCKER_IMAGE,
            provisioning_timeout=settings.PROVISIONING_TIMEOUT_SECONDS,
        )
        self.instances = InstanceService(
            db=db,
            ledger=ledger,
            gateway=gateway,
            accounts=self.accounts,
            plan_service=self.plans,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "BillingServices":
        db = _create_db_manager(settings)
        cache = InMemoryAsyncCache()
        return cls(
            db=db,
            gateway=_create_gateway(settings, cache),
            ledger=LedgerLogger(db=db, file_path=Path(settings.LEDGER_LOG_PATH)),
            settings=settings,
            cache=cache,
        )

    async def startup(self) -> None:
        if isinstance(self.db, MongoDBManager):
            await self.db.ensure_indexes()
        connection = await self.gateway.test_connection()
        if not connection.success:
            logger.warning("Panel connection check failed: %s", connection.error)

    async def aclose(self) -> None:
        await self.gateway.aclose()
