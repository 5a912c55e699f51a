"""
Billing API application factory.

Run:
  uvicorn panel_billing.app:create_app --factory --reload
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from .api.router import router
from .config import Settings, settings as default_settings
from .container import BillingServices
from .errors import (
    DuplicateEmailError,
    DuplicateGiftCardError,
    GiftCardNotFoundError,
    InstanceNotFoundError,
    PlanNotFoundError,
    ProvisioningError,
    ReconciliationError,
    UserNotFoundError,
)


logger = logging.getLogger(__name__)

GENERIC_ERROR_MESSAGE = "An error occurred while processing your request"


def _register_error_handlers(app: FastAPI) -> None:
    async def not_found(request: Request, exc: Exception) -> JSONResponse:
        return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": "Not found"})

    async def conflict(request: Request, exc: Exception) -> JSONResponse:
        return JSONResponse(status_code=status.HTTP_409_CONFLICT, content={"detail": str(exc)})

    async def panel_error(request: Request, exc: Exception) -> JSONResponse:
        return JSONResponse(status_code=status.HTTP_502_BAD_GATEWAY, content={"detail": str(exc)})

    async def reconciliation(request: Request, exc: Exception) -> JSONResponse:
        # Already logged and alerted by the purchase service.
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": GENERIC_ERROR_MESSAGE},
        )

    async def unexpected(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": GENERIC_ERROR_MESSAGE},
        )

    for exc_class in (
        UserNotFoundError,
        PlanNotFoundError,
        GiftCardNotFoundError,
        InstanceNotFoundError,
    ):
        app.add_exception_handler(exc_class, not_found)
    app.add_exception_handler(DuplicateGiftCardError, conflict)
    app.add_exception_handler(DuplicateEmailError, conflict)
    app.add_exception_handler(ProvisioningError, panel_error)
    app.add_exception_handler(ReconciliationError, reconciliation)
    app.add_exception_handler(Exception, unexpected)


def create_app(
    app_settings: Optional[Settings] = None,
    services: Optional[BillingServices] = None,
) -> FastAPI:
    app_settings = app_settings or default_settings
    logging.basicConfig(
        level=app_settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    services = services or BillingServices.from_settings(app_settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting billing API")
        await services.startup()
        yield
        await services.aclose()
        logger.info("Billing API stopped")

    app = FastAPI(title="Panel Billing API", version="0.1.0", lifespan=lifespan)
    app.state.services = services
    app.include_router(router)
    _register_error_handlers(app)

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("panel_billing.app:create_app", factory=True, host="0.0.0.0", port=8000)
