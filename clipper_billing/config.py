"""
Configuration management for the clipper billing service.

Uses Pydantic Settings for type-safe configuration with multiple sources:
- Environment variables (highest priority)
- .env file
- Defaults (lowest priority)
"""

import logging
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_PLACEHOLDER_PATTERNS = (
    "your-api-key-here",
    "your-key-here",
    "sk_test_xxx",
    "sk_live_xxx",
    "whsec_xxx",
    "example",
    "dummy",
    "changeme",
)


def _is_placeholder(value: str) -> bool:
    value_lower = value.lower()
    return any(pattern in value_lower for pattern in _PLACEHOLDER_PATTERNS)


class DatabaseConfig(BaseSettings):
    """Billing store configuration (SQLite)."""

    model_config = SettingsConfigDict(
        env_prefix="DATABASE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    path: str = Field(default="./data/billing.db", description="Path to SQLite database file")
    busy_timeout_seconds: float = Field(
        default=5.0,
        gt=0.0,
        le=60.0,
        description="How long a writer waits for the database lock before failing",
    )


class QuotaConfig(BaseSettings):
    """
    Reference limits for the FREE tier.

    GRACE_PERIOD shares these numbers. PREMIUM is always unlimited and is not
    configurable here.
    """

    model_config = SettingsConfigDict(
        env_prefix="QUOTA_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    free_clips: int = Field(default=100, ge=0, description="Clips per month")
    free_files: int = Field(default=10, ge=0, description="File uploads per month")
    free_words_per_clip: int = Field(default=1000, ge=0, description="Maximum words in one clip")
    free_focus_mode_minutes: int = Field(default=60, ge=0)
    free_compact_mode_minutes: int = Field(default=60, ge=0)

    grace_period_days: int = Field(
        default=7,
        ge=1,
        le=60,
        description="Days a failed payment keeps the user in GRACE_PERIOD before lapsing to FREE",
    )

    events_page_max: int = Field(
        default=200, ge=1, le=1000, description="Maximum page size for usage event queries"
    )


class StripeConfig(BaseSettings):
    """
    Stripe configuration.

    Security: API keys and webhook secrets are never logged or exposed in errors.
    """

    model_config = SettingsConfigDict(
        env_prefix="STRIPE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    api_key: str = Field(default="", description="Stripe secret key (sk_...)")
    webhook_secret: str = Field(default="", description="Webhook signing secret (whsec_...)")

    price_id_monthly: str = Field(default="", description="Price ID for premium_monthly")
    price_id_annual: str = Field(default="", description="Price ID for premium_annual")
    trial_period_days: int = Field(
        default=14, ge=0, le=90, description="Trial offered to users who never subscribed"
    )

    success_url: str = Field(default="http://localhost:5173/subscription/success")
    cancel_url: str = Field(default="http://localhost:5173/pricing")
    portal_return_url: str = Field(default="http://localhost:5173/settings")
    upgrade_url: str = Field(
        default="http://localhost:5173/pricing", description="Sent to clients on quota denial"
    )

    # Webhook reconciliation retry budget
    webhook_max_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts before a webhook event is recorded as failed",
    )
    webhook_retry_backoff_seconds: float = Field(
        default=0.5,
        ge=0.0,
        le=30.0,
        description="Initial backoff between webhook reconciliation attempts",
    )

    @field_validator("api_key", "webhook_secret")
    @classmethod
    def validate_secret(cls, v: str, info) -> str:
        """Reject placeholder values so billing is disabled instead of half-configured."""
        if not v:
            return ""

        if _is_placeholder(v):
            logging.warning(
                f"stripe {info.field_name} appears to be a placeholder - billing calls disabled"
            )
            return ""

        return v

    @property
    def is_configured(self) -> bool:
        """Check if outbound Stripe calls can be made."""
        return bool(self.api_key)

    def price_id_for_plan(self, plan: str) -> str | None:
        """Map a checkout plan name to its configured price ID."""
        mapping = {
            "premium_monthly": self.price_id_monthly,
            "premium_annual": self.price_id_annual,
        }
        return mapping.get(plan) or None


class ServiceConfig(BaseSettings):
    """FastAPI service configuration."""

    model_config = SettingsConfigDict(env_prefix="SERVICE_", extra="ignore")

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000, ge=1, le=65535)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")

    api_key: str | None = Field(
        default=None,
        description="Shared secret expected in X-API-Key from the upstream gateway",
    )


class LoggingConfig(BaseSettings):
    """Structured logging configuration."""

    model_config = SettingsConfigDict(env_prefix="LOGGING_", extra="ignore")

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Minimum log level"
    )
    json_output: bool = Field(
        default=True, description="Use JSON output (True for production, False for development)"
    )
    colorized: bool = Field(
        default=False, description="Colorize console output (only for development)"
    )

    service_name: str = Field(default="clipper-billing")
    service_version: str = Field(default="0.1.0")
    environment: Literal["development", "staging", "production"] = Field(default="development")


class Settings(BaseSettings):
    """Root configuration for the billing service."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    quota: QuotaConfig = Field(default_factory=QuotaConfig)
    stripe: StripeConfig = Field(default_factory=StripeConfig)
    service: ServiceConfig = Field(default_factory=ServiceConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    # Set ADMIN_API_KEY to enable the admin endpoints
    admin_api_key: str | None = Field(
        default=None,
        description="API key for admin endpoints (required for admin access)",
    )

    @field_validator("admin_api_key")
    @classmethod
    def validate_admin_api_key_security(cls, v: str | None) -> str | None:
        """Reject placeholder admin keys; warn about short ones."""
        if not v:
            return None

        if _is_placeholder(v) or v.lower() in {"admin", "test", "secret"}:
            logging.warning(
                "admin_api_key appears to be a placeholder - admin endpoints will be BLOCKED"
            )
            return None

        if len(v) < 32:
            logging.warning(
                "admin_api_key seems too short to be secure - use at least 32 characters"
            )

        return v

    def validate_configuration(self) -> None:
        """
        Validate cross-field constraints and log warnings.
        Called at application startup.
        """
        if not self.stripe.is_configured:
            logging.warning("Stripe API key not configured - checkout and sync are disabled")

        if not self.stripe.webhook_secret:
            logging.warning("Stripe webhook secret not configured - webhooks will be rejected")

        if not self.service.api_key:
            logging.warning(
                "SERVICE_API_KEY not configured - X-User-ID is trusted without authentication"
            )

        if self.stripe.is_configured and not (
            self.stripe.price_id_monthly or self.stripe.price_id_annual
        ):
            logging.warning("No Stripe price IDs configured - checkout will fail")


# Global settings instance (lazy-loaded)
_settings: Settings | None = None


def get_settings() -> Settings:
    """
    Get global settings instance (singleton pattern).

    Returns:
        Settings: Application configuration
    """
    global _settings
    if _settings is None:
        _settings = Settings()
        _settings.validate_configuration()
    return _settings
