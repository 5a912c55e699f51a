from __future__ import annotations

import logging

from fastapi import Depends, Header, HTTPException, Request, status

from ..container import BillingServices
from ..errors import UserNotFoundError
from ..models.user import AuthenticatedVerifiedUser


logger = logging.getLogger(__name__)

SECOND_FACTOR_VERIFIED = "verified"


def get_services(request: Request) -> BillingServices:
    return request.app.state.services


async def current_user(
    x_user_id: str | None = Header(default=None),
    x_second_factor: str | None = Header(default=None),
    services: BillingServices = Depends(get_services),
) -> AuthenticatedVerifiedUser:
    """
    Identity comes from the upstream auth layer. Only a user whose second
    factor is verified for this session gets the capability.
    """
    if not x_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not signed in")
    try:
        return await services.accounts.authenticate(
            x_user_id, x_second_factor == SECOND_FACTOR_VERIFIED
        )
    except UserNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Not signed in"
        ) from exc
    except PermissionError as exc:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Two-factor verification required",
        ) from exc


async def admin_user(
    user: AuthenticatedVerifiedUser = Depends(current_user),
) -> AuthenticatedVerifiedUser:
    if not user.is_admin:
        logger.warning("Non-admin user %s denied admin route", user.user_id)
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return user
