"""
Pytest configuration and fixtures for the billing service.

Provides shared fixtures for:
- Temporary SQLite billing store per test
- Fixed clocks
- Settings built in code (no environment)
- Wired billing components
"""

from datetime import UTC, datetime, timedelta

import pytest

from clipper_billing.billing.quota_gate import QuotaGate
from clipper_billing.billing.quota_policy import QuotaPolicy
from clipper_billing.billing.reconciler import BillingEventReconciler
from clipper_billing.billing.subscription_state import SubscriptionState
from clipper_billing.billing.usage_events import UsageEventLog
from clipper_billing.billing.usage_tracking import UsageCounter
from clipper_billing.config import (
    DatabaseConfig,
    LoggingConfig,
    QuotaConfig,
    ServiceConfig,
    Settings,
    StripeConfig,
)
from clipper_billing.models.subscription import SubscriptionTier, SubscriptionUpdate
from clipper_billing.resilience.circuit_breakers import reset_all_breakers
from clipper_billing.storage.database import BillingDatabase

FIXED_NOW = datetime(2025, 3, 15, 12, 0, 0, tzinfo=UTC)


class FakeClock:
    """Settable clock shared by every component under test."""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def quota_config() -> QuotaConfig:
    return QuotaConfig(
        free_clips=100,
        free_files=10,
        free_words_per_clip=1000,
        free_focus_mode_minutes=60,
        free_compact_mode_minutes=60,
        grace_period_days=7,
    )


@pytest.fixture
def stripe_config() -> StripeConfig:
    """Stripe disabled, no retry backoff."""
    return StripeConfig(
        api_key="",
        webhook_secret="whsec_unit_test_secret_0123456789",
        price_id_monthly="price_monthly_123",
        price_id_annual="price_annual_456",
        webhook_max_attempts=2,
        webhook_retry_backoff_seconds=0,
    )


@pytest.fixture
def test_settings(tmp_path, quota_config, stripe_config) -> Settings:
    return Settings(
        database=DatabaseConfig(path=str(tmp_path / "billing.db")),
        quota=quota_config,
        stripe=stripe_config,
        service=ServiceConfig(api_key=None),
        logging=LoggingConfig(json_output=False),
        admin_api_key="admin-key-for-tests-0123456789abcdef",
    )


@pytest.fixture
async def db(tmp_path):
    database = BillingDatabase(db_path=str(tmp_path / "billing.db"))
    await database.initialize()
    yield database
    database.close()


@pytest.fixture
def subscriptions(db, clock) -> SubscriptionState:
    return SubscriptionState(db, clock=clock)


@pytest.fixture
def counter(db) -> UsageCounter:
    return UsageCounter(db)


@pytest.fixture
def policy(quota_config) -> QuotaPolicy:
    return QuotaPolicy(quota_config)


@pytest.fixture
def gate(subscriptions, policy, counter, clock) -> QuotaGate:
    return QuotaGate(subscriptions, policy, counter, clock=clock)


@pytest.fixture
def reconciler(db, quota_config, stripe_config, clock) -> BillingEventReconciler:
    return BillingEventReconciler(
        db, quota_config=quota_config, stripe_config=stripe_config, clock=clock
    )


@pytest.fixture
def event_log(db) -> UsageEventLog:
    return UsageEventLog(db, max_page_size=200)


@pytest.fixture
def make_premium(subscriptions):
    """Store a PREMIUM/active subscription for a user."""

    async def _make(user_id: str, subscription_id: str = "sub_123", customer_id: str = "cus_123"):
        return await subscriptions.upsert(
            user_id,
            SubscriptionUpdate(
                tier=SubscriptionTier.PREMIUM,
                status="active",
                stripe_subscription_id=subscription_id,
                stripe_customer_id=customer_id,
            ),
        )

    return _make


@pytest.fixture(autouse=True)
def _reset_breakers():
    reset_all_breakers()
    yield
    reset_all_breakers()
