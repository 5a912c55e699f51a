from __future__ import annotations

import logging

from ..db.base import BaseDBManager
from ..errors import DuplicateEmailError, ProvisioningError, UserNotFoundError
from ..logging.ledger_logger import LedgerLogger
from ..models.transaction import TransactionType
from ..models.user import AuthenticatedVerifiedUser, UserAccount, UserRole
from ..provisioning.base import ProvisioningGateway
from .credit_service import CreditService
from .settings_service import SettingsService


logger = logging.getLogger(__name__)


class AccountService:
    """
    Billing accounts: registration with the starting bonus, email changes kept
    in step with the panel, and issuing the verified-user capability the
    orchestrators require.
    """

    def __init__(
        self,
        db: BaseDBManager,
        ledger: LedgerLogger,
        credit_service: CreditService,
        settings_service: SettingsService,
        gateway: ProvisioningGateway,
    ) -> None:
        self._db = db
        self._ledger = ledger
        self._credit_service = credit_service
        self._settings_service = settings_service
        self._gateway = gateway

    async def register_user(
        self,
        email: str,
        role: UserRole = UserRole.USER,
        two_factor_enabled: bool = False,
    ) -> UserAccount:
        email = (email or "").strip().lower()
        if "@" not in email:
            raise ValueError("a valid email address is required")

        bonus = await self._settings_service.get_bonus_settings()

        async with self._db.transaction():
            user = await self._db.add_user(
                UserAccount(email=email, role=role, two_factor_enabled=two_factor_enabled)
            )
            if bonus.starting_credits > 0:
                await self._credit_service.apply_delta(
                    user.id,
                    bonus.starting_credits,
                    TransactionType.BONUS,
                    description="Registration bonus",
                )
                user.credits = bonus.starting_credits

        logger.info("Registered billing account %s", user.id, extra={"user_id": user.id})
        return user

    async def get_user(self, user_id: str) -> UserAccount:
        user = await self._db.get_user(user_id)
        if user is None:
            raise UserNotFoundError(user_id)
        return user

    async def update_email(self, user_id: str, email: str) -> UserAccount:
        """
        Change a user's email here and on the linked panel account.

        The panel is updated first; when it refuses, ProvisioningError is
        raised and the local record is left as it was. DuplicateEmailError
        is raised when another billing account already uses the address.
        """
        email = (email or "").strip().lower()
        if "@" not in email:
            raise ValueError("a valid email address is required")

        user = await self.get_user(user_id)
        if user.email == email:
            return user
        existing = await self._db.get_user_by_email(email)
        if existing is not None and existing.id != user_id:
            raise DuplicateEmailError(f"user with email {email} already exists")

        if user.panel_user_id is not None:
            result = await self._gateway.update_account(user.panel_user_id, email=email)
            if not result.success:
                logger.error(
                    "Panel refused email change for account %s: %s",
                    user.panel_user_id,
                    result.error,
                    extra={"user_id": user_id},
                )
                raise ProvisioningError(result.error or "Panel refused the email change")

        updated = await self._db.update_user_email(user_id, email)
        await self._ledger.log_system(
            message="Account email changed",
            details={
                "user_id": user_id,
                "panel_user_id": user.panel_user_id,
            },
        )
        logger.info("Changed account email", extra={"user_id": user_id})
        return updated

    async def authenticate(
        self, user_id: str, second_factor_verified: bool
    ) -> AuthenticatedVerifiedUser:
        """
        Build the capability for a signed-in user.

        Raises UserNotFoundError for unknown ids and PermissionError when the
        second factor has not been verified for this session.
        """
        user = await self.get_user(user_id)
        return AuthenticatedVerifiedUser.from_account(user, second_factor_verified)
