"""Application configuration via pydantic-settings.

Reads from .env file or environment variables. All settings are validated
at startup — if a required setting is missing, the app fails fast with a
clear error message.

Usage:
    from service_clearinghouse.config import get_settings
    settings = get_settings()
    print(settings.database_url)
"""

from __future__ import annotations

from decimal import Decimal
from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Central configuration for the Service Clearinghouse."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Application ---
    app_env: Literal["development", "staging", "production"] = "development"
    app_debug: bool = True
    app_log_level: str = "DEBUG"
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    app_public_url: str = "http://localhost:3000"

    # --- Database (PostgreSQL) ---
    database_url: str = (
        "postgresql+asyncpg://clearinghouse:clearinghouse_dev"
        "@localhost:5432/service_clearinghouse"
    )
    db_pool_size: int = 10
    db_max_overflow: int = 20
    db_pool_timeout: int = 30
    db_echo_sql: bool = False

    # --- Redis ---
    redis_url: str = "redis://localhost:6379/0"

    # --- Notifications ---
    # "memory" keeps per-recipient queues in-process (development, tests);
    # "redis" publishes every event on notifications:<recipient_id>.
    notification_channel: Literal["memory", "redis"] = "memory"

    # --- Commission ---
    commission_rate: Decimal = Field(default=Decimal("0.10"), ge=0, lt=1)

    # --- Payment Gateway (PayMongo) ---
    # Leave the secret key empty to fund escrow immediately without a gateway.
    paymongo_secret_key: str = ""
    paymongo_webhook_secret: str = ""
    paymongo_base_url: str = "https://api.paymongo.com/v1"
    payment_gateway_timeout_seconds: float = 10.0

    # --- Scheduled sweeps ---
    cron_secret: str = ""
    job_expiry_days: int = 30
    quote_expiry_days: int = 7
    escrow_auto_release_days: int = 7
    payout_pending_expiry_days: int = 14

    @property
    def is_development(self) -> bool:
        return self.app_env == "development"

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    @property
    def payment_gateway_enabled(self) -> bool:
        return bool(self.paymongo_secret_key)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached singleton of the application settings."""
    return Settings()
