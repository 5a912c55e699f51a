"""
Application configuration using Pydantic Settings.
"""

from decimal import Decimal
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Billing settings loaded from environment variables."""

    # Storage; in-memory when no URI is configured
    MONGO_URI: Optional[str] = None
    MONGO_DB: str = "panel_billing"

    # Game panel
    PANEL_URL: Optional[str] = None
    PANEL_API_KEY: Optional[str] = None
    PANEL_CLIENT_KEY: Optional[str] = None
    PANEL_TIMEOUT_SECONDS: float = 15.0
    PROVISIONING_TIMEOUT_SECONDS: float = 60.0
    INSTANCE_CACHE_TTL_SECONDS: float = 60.0
    DEFAULT_DOCKER_IMAGE: str = "ghcr.io/pterodactyl/yolks:java_17"

    # Ledger / notifications
    LEDGER_LOG_PATH: str = "logs/billing_ledger.log"
    LOW_CREDIT_THRESHOLD: Decimal = Decimal("1")

    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")

    @property
    def panel_configured(self) -> bool:
        return bool(self.PANEL_URL and self.PANEL_API_KEY)


settings = Settings()
