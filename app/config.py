"""Application configuration settings."""
from __future__ import annotations

import os
from decimal import Decimal
from functools import lru_cache

from pydantic import AliasChoices, BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# --- Runtime toggles -----------------------------------------------------
# Execution environment: "dev" | "staging" | "prod"
ENV = os.getenv("APP_ENV", "dev").lower()

# Legacy key (tolerated in DEV only)
DEV_API_KEY = os.getenv("DEV_API_KEY") or os.getenv("API_KEY") or "dev-secret-key"
DEV_API_KEY_ALLOWED = ENV in {"dev", "local", "dev_local"}


class Settings(BaseSettings):
    """Environment configuration for the resort payments backend."""

    app_env: str = ENV
    database_url: str = "sqlite:///resort_payments.db"
    LOG_LEVEL: str = "INFO"
    SECRET_KEY: str = "change-me"
    DEV_API_KEY: str | None = Field(
        default=DEV_API_KEY,
        validation_alias=AliasChoices("DEV_API_KEY", "API_KEY"),
    )
    DEV_ADMIN_EMAIL: str = "admin@sathvilla.com"
    CORS_ALLOW_ORIGINS: list[str] = [
        "http://localhost:5173",
        "http://localhost:3000",
    ]
    SENTRY_DSN: str | None = None
    PROMETHEUS_ENABLED: bool = True
    ALLOW_DB_CREATE_ALL: bool = False

    # --- Stripe ------------------------------------------------------------
    STRIPE_ENABLED: bool = True
    STRIPE_SECRET_KEY: str | None = None
    STRIPE_WEBHOOK_SECRET: str | None = None
    STRIPE_TIMEOUT_SECONDS: int = 20
    STRIPE_MAX_NETWORK_RETRIES: int = 0

    # --- Money -------------------------------------------------------------
    SETTLEMENT_CURRENCY: str = "USD"
    LKR_TO_USD: Decimal = Decimal("0.0033")
    REFUND_POLICY_WINDOW_DAYS: int = 30

    # --- Front-ends & booking system ---------------------------------------
    FRONTEND_URL: str = "http://localhost:3000"
    PAYMENTS_FRONTEND_URL: str = "http://localhost:5173"
    BOOKING_SERVICE_URL: str = "http://localhost:5000"
    BOOKING_SERVICE_TIMEOUT_SECONDS: float = 10.0

    model_config = SettingsConfigDict(
        env_file=".env", env_prefix="", env_file_encoding="utf-8", extra="ignore"
    )

    @field_validator("STRIPE_SECRET_KEY", "STRIPE_WEBHOOK_SECRET")
    @classmethod
    def _strip_empty_secret(cls, value: str | None) -> str | None:
        """Normalise empty Stripe secrets to ``None`` for easier validation."""

        if value is None:
            return None
        cleaned = value.strip()
        return cleaned or None

    @field_validator("SETTLEMENT_CURRENCY")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()


class AppInfo(BaseModel):
    name: str = "resort-payments-backend"
    version: str = "0.1.0"


settings = Settings()


@lru_cache
def get_settings() -> Settings:
    """Return cached application settings."""

    return settings


__all__ = [
    "ENV",
    "DEV_API_KEY",
    "DEV_API_KEY_ALLOWED",
    "Settings",
    "AppInfo",
    "settings",
    "get_settings",
]
