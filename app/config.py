"""Application configuration settings."""
from __future__ import annotations

import os
from decimal import Decimal
from functools import lru_cache

from pydantic import AliasChoices, BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# --- Runtime toggles -----------------------------------------------------
# Execution environment: "dev" | "test" | "staging" | "prod"
ENV = os.getenv("APP_ENV", "dev").lower()

# Identity roles understood by the API
API_ROLES = {"buyer", "seller", "admin"}

CHAPA_DEFAULT_BASE_URL = "https://api.chapa.co/v1"


class Settings(BaseSettings):
    """Environment configuration for the AfriConnect payments backend."""

    app_env: str = Field(default=ENV, validation_alias=AliasChoices("APP_ENV", "app_env"))
    database_url: str = Field(
        default="sqlite:///africonnect.db",
        validation_alias=AliasChoices("DATABASE_URL", "database_url"),
    )
    SECRET_KEY: str = "change-me"
    APP_URL: str | None = None
    LOG_LEVEL: str = "INFO"

    # --- Feature flags ---------------------------------------------------
    COMMERCE_ENABLED: bool = False
    SCHEDULER_ENABLED: bool = False
    ALLOW_DB_CREATE_ALL: bool = False

    # --- Chapa gateway ---------------------------------------------------
    CHAPA_BASE_URL: str = CHAPA_DEFAULT_BASE_URL
    CHAPA_SECRET_KEY: str | None = None
    CHAPA_TEST_SECRET_KEY: str | None = None
    CHAPA_TIMEOUT_SECONDS: float = 15.0
    CHAPA_ENCRYPTION_KEY: str | None = None
    CHAPA_WEBHOOK_SECRET: str | None = None
    CHAPA_TRANSFER_APPROVAL_SECRET: str | None = None
    CHAPA_TRANSFER_WEBHOOK_SECRET: str | None = None
    CHAPA_WEBHOOK_IPS: str | None = None
    WEBHOOK_MAX_AGE_SECONDS: int = 300

    # --- Pricing ---------------------------------------------------------
    USD_TO_ETB_RATE: Decimal = Decimal("155")
    PLATFORM_FEE_RATE: Decimal = Decimal("0.01")

    # --- Payout retry policy ---------------------------------------------
    PAYOUT_MAX_ATTEMPTS: int = 5
    PAYOUT_RETRY_INTERVAL_MINUTES: int = 15
    PAYOUT_RETRY_MAX_AGE_HOURS: int = 168
    PAYOUT_RETRY_BATCH_SIZE: int = 50

    # --- Observability ---------------------------------------------------
    CORS_ALLOW_ORIGINS: list[str] = [
        "https://africonnect.et",
        "https://app.africonnect.et",
        "http://localhost:3000",
    ]
    SENTRY_DSN: str | None = None
    PROMETHEUS_ENABLED: bool = True
    LOG_SHIPPER_URL: str | None = None
    LOG_SHIPPER_TOKEN: str | None = None
    LOG_FLUSH_INTERVAL_SECONDS: int = 5

    model_config = SettingsConfigDict(
        env_file=".env", env_prefix="", env_file_encoding="utf-8", extra="ignore"
    )

    @field_validator(
        "CHAPA_SECRET_KEY",
        "CHAPA_TEST_SECRET_KEY",
        "CHAPA_ENCRYPTION_KEY",
        "CHAPA_WEBHOOK_SECRET",
        "CHAPA_TRANSFER_APPROVAL_SECRET",
        "CHAPA_TRANSFER_WEBHOOK_SECRET",
        "LOG_SHIPPER_TOKEN",
        "APP_URL",
    )
    @classmethod
    def _strip_empty_secret(cls, value: str | None) -> str | None:
        """Normalise empty secrets to ``None`` for easier validation."""

        if value is None:
            return None
        cleaned = value.strip()
        return cleaned or None

    @property
    def is_production(self) -> bool:
        return self.app_env.lower() in {"prod", "production"}

    @property
    def chapa_secret(self) -> str | None:
        """Return the gateway secret, preferring the test key outside production."""

        if not self.is_production and self.CHAPA_TEST_SECRET_KEY:
            return self.CHAPA_TEST_SECRET_KEY
        return self.CHAPA_SECRET_KEY

    @property
    def webhook_ip_allowlist(self) -> set[str]:
        """Return the comma separated CHAPA_WEBHOOK_IPS value as a set."""

        if not self.CHAPA_WEBHOOK_IPS:
            return set()
        return {ip.strip() for ip in self.CHAPA_WEBHOOK_IPS.split(",") if ip.strip()}


class AppInfo(BaseModel):
    name: str = "africonnect-payments"
    version: str = "0.1.0"


settings = Settings()


@lru_cache
def get_settings() -> Settings:
    """Return cached application settings."""

    return settings


__all__ = [
    "ENV",
    "API_ROLES",
    "CHAPA_DEFAULT_BASE_URL",
    "Settings",
    "AppInfo",
    "settings",
    "get_settings",
]
