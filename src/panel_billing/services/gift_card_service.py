from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Iterable, Optional

from ..db.base import BaseDBManager
from ..errors import GiftCardNotFoundError
from ..logging.ledger_logger import LedgerLogger
from ..models.gift_card import GiftCard, normalize_code


_UPDATABLE_FIELDS = ("credits", "max_uses", "per_user_limit", "enabled", "expires_at")


class GiftCardService:
    """
    Gift card ledger: issuing and administering codes.

    Redemption itself lives in `RedemptionService`; `uses` is never written
    from here.
    """

    def __init__(self, db: BaseDBManager, ledger: LedgerLogger) -> None:
        self._db = db
        self._ledger = ledger

    async def get_by_code(self, code: str) -> Optional[GiftCard]:
        code = normalize_code(code)
        if not code:
            return None
        return await self._db.get_gift_card_by_code(code)

    async def get_gift_card(self, card_id: str) -> GiftCard:
        card = await self._db.get_gift_card(card_id)
        if card is None:
            raise GiftCardNotFoundError(card_id)
        return card

    async def count_redemptions(self, user_id: str, card_id: str) -> int:
        return await self._db.count_user_redemptions(user_id, card_id)

    async def create_gift_card(
        self,
        code: str,
        credits: Decimal,
        max_uses: int = 1,
        per_user_limit: int = 1,
        expires_at: Optional[datetime] = None,
        enabled: bool = True,
    ) -> GiftCard:
        """
        Issue a new code. Raises DuplicateGiftCardError if the normalised
        code already exists and ValueError for invalid amounts or caps.
        """
        card = GiftCard(
            code=code,
            credits=credits,
            max_uses=max_uses,
            per_user_limit=per_user_limit,
            expires_at=expires_at,
            enabled=enabled,
        )
        card = await self._db.add_gift_card(card)

        await self._ledger.log_system(
            message="Gift card created",
            details={
                "gift_card_id": card.id,
                "code": card.code,
                "credits": str(card.credits),
                "max_uses": card.max_uses,
                "per_user_limit": card.per_user_limit,
            },
        )
        return card

    async def update_gift_card(self, card_id: str, **changes: Any) -> GiftCard:
        unknown = set(changes) - set(_UPDATABLE_FIELDS)
        if unknown:
            raise ValueError(f"cannot update gift card fields: {sorted(unknown)}")

        card = await self.get_gift_card(card_id)
        updated = GiftCard.model_validate({**card.model_dump(), **changes})
        if updated.max_uses < card.uses:
            raise ValueError("max_uses cannot be lower than the uses already made")

        updated = await self._db.update_gift_card(updated)
        await self._ledger.log_system(
            message="Gift card updated",
            details={"gift_card_id": card_id, "changes": {k: str(v) for k, v in changes.items()}},
        )
        return updated

    async def set_enabled(self, card_id: str, enabled: Optional[bool] = None) -> GiftCard:
        """Set the enabled flag; with no value, toggle it."""
        card = await self.get_gift_card(card_id)
        return await self.update_gift_card(
            card_id, enabled=(not card.enabled) if enabled is None else enabled
        )

    async def delete_gift_card(self, card_id: str) -> None:
        if not await self._db.delete_gift_card(card_id):
            raise GiftCardNotFoundError(card_id)
        await self._ledger.log_system(
            message="Gift card deleted", details={"gift_card_id": card_id}
        )

    async def list_gift_cards(self) -> Iterable[GiftCard]:
        return await self._db.list_gift_cards()
