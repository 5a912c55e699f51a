from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Optional

from ..db.base import BaseDBManager
from ..models.notification import (
    NotificationEvent,
    NotificationStatus,
    NotificationType,
)
from ..notifications.queue import AsyncNotificationQueue
from .credit_service import CreditService


logger = logging.getLogger(__name__)


class NotificationService:
    """
    Orchestrates notification creation and dispatch via a message queue.
    """

    def __init__(
        self,
        db: BaseDBManager,
        queue: AsyncNotificationQueue,
        credit_service: CreditService,
        low_credit_threshold: Decimal,
    ) -> None:
        self._db = db
        self._queue = queue
        self._credit_service = credit_service
        self._low_credit_threshold = low_credit_threshold

    async def notify_low_credits(self, user_id: str) -> bool:
        balance = await self._credit_service.get_balance(user_id)
        if balance > self._low_credit_threshold:
            return False

        await self._dispatch(
            NotificationEvent(
                user_id=user_id,
                notification_type=NotificationType.LOW_CREDITS,
                payload={
                    "current_credits": str(balance),
                    "threshold": str(self._low_credit_threshold),
                },
            )
        )
        return True

    async def notify_reconciliation_required(
        self, user_id: Optional[str], details: dict[str, Any]
    ) -> None:
        """Operator alert: a panel server exists that billing has no record of."""
        await self._dispatch(
            NotificationEvent(
                user_id=user_id,
                notification_type=NotificationType.RECONCILIATION_REQUIRED,
                payload=details,
            )
        )

    async def notify_transaction_error(
        self, user_id: str, message: str, details: dict
    ) -> None:
        await self._dispatch(
            NotificationEvent(
                user_id=user_id,
                notification_type=NotificationType.TRANSACTION_ERROR,
                payload={"message": message, "details": details},
            )
        )

    async def _dispatch(self, event: NotificationEvent) -> None:
        event.status = NotificationStatus.PENDING
        event = await self._db.add_notification_event(event)

        await self._queue.enqueue(
            {
                "notification_id": event.id,
                "type": event.notification_type.value,
                "user_id": event.user_id,
                "payload": event.payload,
            }
        )
        logger.info(
            "Queued %s notification %s",
            event.notification_type.value,
            event.id,
            extra={"user_id": event.user_id},
        )
