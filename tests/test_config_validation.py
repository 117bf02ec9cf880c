"""
Unit tests for configuration loading and validation.

Covers environment overrides, placeholder rejection for secrets and the
startup warnings emitted by validate_configuration.
"""

import logging

import pytest
from pydantic import ValidationError

from clipper_billing import config
from clipper_billing.config import (
    QuotaConfig,
    ServiceConfig,
    Settings,
    StripeConfig,
)


@pytest.fixture
def configured_settings() -> Settings:
    """Settings with every integration configured."""
    return Settings(
        stripe=StripeConfig(
            api_key="sk_test_51unitTestKey0123456789",
            webhook_secret="whsec_unit_test_secret_0123456789",
            price_id_monthly="price_monthly_123",
        ),
        service=ServiceConfig(api_key="gateway-secret-0123456789"),
        admin_api_key="admin-key-for-tests-0123456789abcdef",
    )


def test_quota_defaults():
    quota = QuotaConfig()

    assert quota.free_clips == 100
    assert quota.free_files == 10
    assert quota.free_words_per_clip == 1000
    assert quota.grace_period_days == 7


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("QUOTA_FREE_CLIPS", "5")
    monkeypatch.setenv("STRIPE_PRICE_ID_ANNUAL", "price_env_annual")

    settings = Settings()

    assert settings.quota.free_clips == 5
    assert settings.stripe.price_id_annual == "price_env_annual"


def test_grace_period_must_be_positive():
    with pytest.raises(ValidationError):
        QuotaConfig(grace_period_days=0)


@pytest.mark.parametrize("value", ["sk_test_xxx", "your-api-key-here", "changeme"])
def test_placeholder_stripe_key_disables_billing(value):
    stripe_config = StripeConfig(api_key=value)

    assert stripe_config.api_key == ""
    assert not stripe_config.is_configured


def test_price_id_for_plan():
    stripe_config = StripeConfig(price_id_monthly="price_m", price_id_annual="")

    assert stripe_config.price_id_for_plan("premium_monthly") == "price_m"
    assert stripe_config.price_id_for_plan("premium_annual") is None
    assert stripe_config.price_id_for_plan("lifetime") is None


@pytest.mark.parametrize("value", ["admin", "test", "changeme-please", ""])
def test_placeholder_admin_key_blocks_admin(value):
    assert Settings(admin_api_key=value).admin_api_key is None


def test_short_admin_key_kept_with_warning(caplog):
    with caplog.at_level(logging.WARNING):
        settings = Settings(admin_api_key="short-but-real-key")

    assert settings.admin_api_key == "short-but-real-key"
    assert "too short" in caplog.text


def test_validate_configuration_warns_when_unconfigured(caplog):
    settings = Settings(stripe=StripeConfig(), service=ServiceConfig())

    with caplog.at_level(logging.WARNING):
        settings.validate_configuration()

    assert "Stripe API key not configured" in caplog.text
    assert "webhook secret not configured" in caplog.text
    assert "SERVICE_API_KEY not configured" in caplog.text


def test_validate_configuration_warns_without_prices(caplog):
    settings = Settings(stripe=StripeConfig(api_key="sk_test_51unitTestKey0123456789"))

    with caplog.at_level(logging.WARNING):
        settings.validate_configuration()

    assert "No Stripe price IDs configured" in caplog.text


def test_validate_configuration_quiet_when_configured(configured_settings, caplog):
    with caplog.at_level(logging.WARNING):
        configured_settings.validate_configuration()

    assert caplog.records == []


def test_get_settings_is_cached(monkeypatch):
    monkeypatch.setattr(config, "_settings", None)

    first = config.get_settings()
    second = config.get_settings()

    assert first is second
