from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation

from ..db.base import BaseDBManager
from ..logging.ledger_logger import LedgerLogger
from ..models.setting import BONUS_AMOUNT_KEY, BONUS_ENABLED_KEY, BonusSettings


logger = logging.getLogger(__name__)


class SettingsService:
    """Registration bonus settings stored as key/value strings."""

    def __init__(self, db: BaseDBManager, ledger: LedgerLogger) -> None:
        self._db = db
        self._ledger = ledger

    async def get_bonus_settings(self) -> BonusSettings:
        enabled = await self._db.get_setting(BONUS_ENABLED_KEY)
        raw_amount = await self._db.get_setting(BONUS_AMOUNT_KEY)

        amount = Decimal("0")
        if raw_amount:
            try:
                amount = Decimal(raw_amount)
            except InvalidOperation:
                logger.warning("Ignoring invalid %s setting %r", BONUS_AMOUNT_KEY, raw_amount)
        if not amount.is_finite() or amount < 0:
            logger.warning("Ignoring out-of-range %s setting %r", BONUS_AMOUNT_KEY, raw_amount)
            amount = Decimal("0")

        return BonusSettings(enabled=enabled == "true", amount=amount)

    async def update_bonus_settings(self, enabled: bool, amount: Decimal) -> BonusSettings:
        bonus = BonusSettings(enabled=enabled, amount=amount)

        async with self._db.transaction():
            await self._db.set_setting(BONUS_ENABLED_KEY, "true" if bonus.enabled else "false")
            await self._db.set_setting(BONUS_AMOUNT_KEY, str(bonus.amount))
            await self._ledger.log_system(
                message="Bonus settings updated",
                details={"enabled": bonus.enabled, "amount": str(bonus.amount)},
            )
        return bonus
