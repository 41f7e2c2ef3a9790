from functools import lru_cache
from threading import Lock
from typing import Optional

import structlog
from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Environment Constants
ENV_PRODUCTION = "production"
ENV_STAGING = "staging"
ENV_DEVELOPMENT = "development"
ENV_LOCAL = "local"

_WEAK_SECRET_VALUES = {
    "change_me",
    "changeme",
    "default",
    "encryption_key",
    "dev_encryption_key_change_me_in_prod",
}


@lru_cache
def get_settings() -> "Settings":
    """Returns a singleton instance of the application settings."""
    return Settings()


_settings_reload_lock = Lock()


def reload_settings_from_environment() -> "Settings":
    """
    Atomically rebuild and replace cached settings from environment values.

    This avoids mutating the cached singleton instance in-place.
    """
    logger = structlog.get_logger()
    with _settings_reload_lock:
        logger.info("settings_reload_started")
        get_settings.cache_clear()
        refreshed = get_settings()
        logger.info("settings_reload_completed")
        return refreshed


class Settings(BaseSettings):
    """
    Main configuration for the shop billing core.
    Uses Pydantic-Settings for environment variable parsing from .env.
    """

    APP_NAME: str = "ShopBilling"
    VERSION: str = "0.1.0"
    DEBUG: bool = False
    # ENVIRONMENT options: local, development, staging, production
    ENVIRONMENT: str = ENV_DEVELOPMENT
    TESTING: bool = False

    # Database
    DATABASE_URL: str = ""
    DB_ECHO: bool = False
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20

    # Encryption for PII columns (audit actor email)
    ENCRYPTION_KEY: Optional[str] = None

    # SMTP Email (payment confirmations)
    SMTP_HOST: Optional[str] = None
    SMTP_PORT: int = 587
    SMTP_USER: Optional[str] = None
    SMTP_PASSWORD: Optional[str] = None
    SMTP_FROM: str = "billing@shopbilling.local"
    SMTP_TIMEOUT_SECONDS: float = 10.0
    FRONTEND_URL: str = "http://localhost:3000"
    SUPPORT_EMAIL: str = "support@shopbilling.local"

    # Payment verification guardrails
    PAYMENT_OPERATION_TIMEOUT_SECONDS: float = 10.0
    SIDE_EFFECT_TIMEOUT_SECONDS: float = 5.0
    REJECTION_REASON_MIN_LENGTH: int = 10
    FORCE_ACTIVATION_REASON_MIN_LENGTH: int = 20
    RECONCILE_BATCH_SIZE: int = 100

    # Real-time event fan-out
    EVENT_SUBSCRIBER_QUEUE_SIZE: int = 100

    model_config = SettingsConfigDict(env_file=".env", env_ignore_empty=True)

    @model_validator(mode="after")
    def validate_all_config(self) -> "Settings":
        """Centralized validation orchestrator, grouped by concern."""
        if self.TESTING and self.ENVIRONMENT in {ENV_PRODUCTION, ENV_STAGING}:
            raise ValueError(
                "TESTING must be false in staging/production runtime environments."
            )

        self._validate_guardrails()
        if self.TESTING:
            return self

        self._validate_core_secrets()
        self._validate_database_config()
        self._validate_email_config()
        return self

    def _validate_guardrails(self) -> None:
        if self.REJECTION_REASON_MIN_LENGTH < 1:
            raise ValueError("REJECTION_REASON_MIN_LENGTH must be >= 1.")
        if self.FORCE_ACTIVATION_REASON_MIN_LENGTH < self.REJECTION_REASON_MIN_LENGTH:
            raise ValueError(
                "FORCE_ACTIVATION_REASON_MIN_LENGTH must not be weaker than "
                "REJECTION_REASON_MIN_LENGTH."
            )
        if self.SIDE_EFFECT_TIMEOUT_SECONDS <= 0:
            raise ValueError("SIDE_EFFECT_TIMEOUT_SECONDS must be positive.")
        if self.PAYMENT_OPERATION_TIMEOUT_SECONDS <= 0:
            raise ValueError("PAYMENT_OPERATION_TIMEOUT_SECONDS must be positive.")

    def _validate_core_secrets(self) -> None:
        value = self.ENCRYPTION_KEY or ""
        if len(value) < 32:
            raise ValueError("ENCRYPTION_KEY must be set to a secure value (>= 32 chars).")
        if value.strip().lower() in _WEAK_SECRET_VALUES:
            raise ValueError("ENCRYPTION_KEY must not use a placeholder value.")

    def _validate_database_config(self) -> None:
        if self.is_production and not self.DATABASE_URL:
            raise ValueError("DATABASE_URL is required in production.")
        if self.is_production and "sqlite" in self.DATABASE_URL.lower():
            raise ValueError("SQLite is not supported as a production database.")

    def _validate_email_config(self) -> None:
        if self.is_production and not self.SMTP_HOST:
            # Confirmation emails are best effort, but silently dropping all of
            # them in production is a misconfiguration.
            structlog.get_logger().warning(
                "smtp_not_configured_in_production",
                msg="Payment confirmation emails will be skipped",
            )

    @property
    def is_production(self) -> bool:
        """True only when ENVIRONMENT is explicitly set to 'production'."""
        return self.ENVIRONMENT == ENV_PRODUCTION
