from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional, Tuple

from ..db.base import BaseDBManager
from ..logging.ledger_logger import LedgerLogger
from ..models.gift_card import GiftCard, GiftCardRedemption, normalize_code
from ..models.outcomes import OutcomeReason, RedemptionOutcome
from ..models.transaction import Transaction, TransactionType
from ..models.user import AuthenticatedVerifiedUser
from .credit_service import CreditService
from .gift_card_service import GiftCardService


logger = logging.getLogger(__name__)


class _Rejected(Exception):
    """Rolls back the redemption commit when a guard loses a race."""

    def __init__(self, reason: OutcomeReason) -> None:
        super().__init__(reason.value)
        self.reason = reason


class RedemptionService:
    """
    Turns a gift card code into credits.

    Eligibility is checked in a fixed order and the first failure wins. The
    commit re-checks the two counters with guarded writes, so concurrent
    attempts on the last use or the per-user cap produce exactly one winner.
    """

    def __init__(
        self,
        db: BaseDBManager,
        ledger: LedgerLogger,
        gift_cards: GiftCardService,
        credit_service: CreditService,
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        self._db = db
        self._ledger = ledger
        self._gift_cards = gift_cards
        self._credit_service = credit_service
        self._clock = clock

    async def redeem(
        self,
        user: AuthenticatedVerifiedUser,
        code: str,
        correlation_id: Optional[str] = None,
    ) -> RedemptionOutcome:
        code = normalize_code(code)
        card = await self._gift_cards.get_by_code(code)

        reason = await self._check_eligibility(user, card)
        if reason is not None:
            return self._reject(user, code, reason)

        async def commit() -> Tuple[GiftCardRedemption, Transaction]:
            if not await self._db.increment_gift_card_uses(card.id):
                raise _Rejected(OutcomeReason.USAGE_LIMIT_REACHED)
            # Counted again under the unit of work; the pre-check may be stale.
            prior = await self._db.count_user_redemptions(user.user_id, card.id)
            if prior >= card.per_user_limit:
                raise _Rejected(OutcomeReason.PER_USER_LIMIT_REACHED)

            redemption = await self._db.add_redemption(
                GiftCardRedemption(
                    user_id=user.user_id,
                    gift_card_id=card.id,
                    credits_received=card.credits,
                    redeemed_at=self._clock(),
                )
            )
            tx = await self._credit_service.apply_delta(
                user.user_id,
                card.credits,
                TransactionType.REDEEM,
                description=f"Redeemed gift card {card.code}",
                reference_type="gift_card_redemption",
                reference_id=redemption.id,
                correlation_id=correlation_id,
            )
            return redemption, tx

        try:
            redemption, tx = await self._db.run_in_transaction(commit)
        except _Rejected as rejected:
            logger.warning(
                "Gift card %s lost a concurrent redemption race: %s",
                card.code,
                rejected.reason.value,
                extra={"user_id": user.user_id},
            )
            return self._reject(user, code, rejected.reason)
        finally:
            await self._credit_service.invalidate_cache(user.user_id)

        logger.info(
            "Redeemed gift card %s for %s credits",
            card.code,
            card.credits,
            extra={"user_id": user.user_id},
        )
        return RedemptionOutcome(
            success=True,
            message=f"Successfully redeemed ${card.credits:.2f} in credits!",
            code=code,
            credits_added=card.credits,
            new_balance=tx.current_credits,
            redemption_id=redemption.id,
        )

    async def _check_eligibility(
        self, user: AuthenticatedVerifiedUser, card: Optional[GiftCard]
    ) -> Optional[OutcomeReason]:
        if card is None:
            return OutcomeReason.INVALID_CODE
        if not card.enabled:
            return OutcomeReason.CARD_DISABLED
        if card.is_expired(self._clock()):
            return OutcomeReason.CARD_EXPIRED
        prior = await self._gift_cards.count_redemptions(user.user_id, card.id)
        if card.uses >= card.max_uses:
            # A user who used up their own allowance is told so even when the
            # card is exhausted overall.
            if prior >= card.per_user_limit:
                return OutcomeReason.PER_USER_LIMIT_REACHED
            return OutcomeReason.USAGE_LIMIT_REACHED
        if prior >= card.per_user_limit:
            return OutcomeReason.PER_USER_LIMIT_REACHED
        return None

    @staticmethod
    def _reject(
        user: AuthenticatedVerifiedUser, code: str, reason: OutcomeReason
    ) -> RedemptionOutcome:
        logger.info(
            "Gift card redemption rejected: %s",
            reason.value,
            extra={"user_id": user.user_id},
        )
        return RedemptionOutcome.rejected(code, reason)
