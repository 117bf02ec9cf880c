"""
Tests for the authoritative subscription record.
"""

from datetime import timedelta

import pytest

from clipper_billing.errors import InvalidStateTransition
from clipper_billing.models.subscription import (
    SubscriptionStatus,
    SubscriptionTier,
    SubscriptionUpdate,
    normalize_status,
    normalize_tier,
)


@pytest.mark.asyncio
async def test_get_returns_free_default_without_row(subscriptions, db):
    subscription = await subscriptions.get("user-1")

    assert subscription.tier == SubscriptionTier.FREE
    assert subscription.status == SubscriptionStatus.ACTIVE
    assert subscription.id is None
    assert not subscription.is_persisted
    assert await db.get_subscription("user-1") is None


@pytest.mark.asyncio
async def test_create_default_is_idempotent(subscriptions):
    first = await subscriptions.create_default("user-1")
    second = await subscriptions.create_default("user-1")

    assert first.is_persisted
    assert first.id == second.id
    assert second.tier == SubscriptionTier.FREE


@pytest.mark.asyncio
async def test_upsert_normalizes_tier_casing(subscriptions):
    saved = await subscriptions.upsert(
        "user-1",
        {"tier": "premium", "status": "Active", "stripe_subscription_id": "sub_1"},
    )

    assert saved.tier == SubscriptionTier.PREMIUM
    assert saved.status == SubscriptionStatus.ACTIVE

    reloaded = await subscriptions.get("user-1")
    assert reloaded.tier == SubscriptionTier.PREMIUM


@pytest.mark.asyncio
async def test_upsert_leaves_omitted_fields_untouched(subscriptions, make_premium):
    await make_premium("user-1", customer_id="cus_keep")

    saved = await subscriptions.upsert("user-1", {"cancel_at_period_end": True})

    assert saved.stripe_customer_id == "cus_keep"
    assert saved.tier == SubscriptionTier.PREMIUM
    assert saved.cancel_at_period_end is True


@pytest.mark.asyncio
async def test_upsert_sets_updated_at(subscriptions, clock):
    first = await subscriptions.upsert("user-1", {"stripe_customer_id": "cus_1"})
    clock.advance(minutes=5)
    second = await subscriptions.upsert("user-1", {"stripe_customer_id": "cus_2"})

    assert second.updated_at - first.updated_at == timedelta(minutes=5)
    assert second.created_at == first.created_at


@pytest.mark.asyncio
async def test_premium_requires_provider_subscription(subscriptions, db):
    with pytest.raises(InvalidStateTransition):
        await subscriptions.upsert("user-1", {"tier": "PREMIUM"})

    assert await db.get_subscription("user-1") is None


@pytest.mark.asyncio
async def test_grace_period_requires_future_end(subscriptions, clock):
    with pytest.raises(InvalidStateTransition):
        await subscriptions.upsert(
            "user-1", {"tier": "GRACE_PERIOD", "stripe_subscription_id": "sub_1"}
        )

    with pytest.raises(InvalidStateTransition):
        await subscriptions.upsert(
            "user-1",
            {
                "tier": "GRACE_PERIOD",
                "stripe_subscription_id": "sub_1",
                "grace_period_ends_at": clock.now - timedelta(hours=1),
            },
        )


@pytest.mark.asyncio
async def test_leaving_grace_period_clears_grace_fields(subscriptions, clock):
    await subscriptions.upsert(
        "user-1",
        SubscriptionUpdate(
            tier=SubscriptionTier.GRACE_PERIOD,
            status=SubscriptionStatus.PAST_DUE,
            stripe_subscription_id="sub_1",
            grace_period_ends_at=clock.now + timedelta(days=3),
        ),
    )
    grace = await subscriptions.get("user-1")
    assert grace.is_grace_period

    recovered = await subscriptions.upsert(
        "user-1", {"tier": "PREMIUM", "status": "active"}
    )

    assert recovered.tier == SubscriptionTier.PREMIUM
    assert recovered.is_grace_period is False
    assert recovered.grace_period_ends_at is None


@pytest.mark.asyncio
async def test_unknown_tier_rejected(subscriptions):
    with pytest.raises(ValueError):
        await subscriptions.upsert("user-1", {"tier": "platinum"})


@pytest.mark.asyncio
async def test_cancel_at_period_end_keeps_tier(subscriptions, make_premium):
    await make_premium("user-1")

    canceled = await subscriptions.set_cancel_at_period_end("user-1", True)
    assert canceled.cancel_at_period_end is True
    assert canceled.tier == SubscriptionTier.PREMIUM
    assert canceled.status == SubscriptionStatus.ACTIVE

    reactivated = await subscriptions.set_cancel_at_period_end("user-1", False)
    assert reactivated.cancel_at_period_end is False


@pytest.mark.asyncio
async def test_cancel_without_subscription_rejected(subscriptions):
    with pytest.raises(InvalidStateTransition):
        await subscriptions.set_cancel_at_period_end("nobody", True)


@pytest.mark.asyncio
async def test_effective_tier(subscriptions, clock):
    await subscriptions.upsert(
        "user-1",
        {
            "tier": "GRACE_PERIOD",
            "stripe_subscription_id": "sub_1",
            "grace_period_ends_at": clock.now + timedelta(days=1),
        },
    )
    subscription = await subscriptions.get("user-1")

    assert subscriptions.effective_tier(subscription) == SubscriptionTier.GRACE_PERIOD
    assert (
        subscriptions.effective_tier(subscription, clock.now + timedelta(days=1))
        == SubscriptionTier.FREE
    )


@pytest.mark.parametrize(
    "value,expected",
    [
        ("premium", SubscriptionTier.PREMIUM),
        ("Premium", SubscriptionTier.PREMIUM),
        ("grace-period", SubscriptionTier.GRACE_PERIOD),
        ("GracePeriod", SubscriptionTier.GRACE_PERIOD),
        ("free", SubscriptionTier.FREE),
    ],
)
def test_normalize_tier(value, expected):
    assert normalize_tier(value) == expected


@pytest.mark.parametrize(
    "value,expected",
    [
        ("active", SubscriptionStatus.ACTIVE),
        ("cancelled", SubscriptionStatus.CANCELED),
        ("incomplete", SubscriptionStatus.UNPAID),
        ("incomplete_expired", SubscriptionStatus.UNPAID),
        ("paused", SubscriptionStatus.UNPAID),
    ],
)
def test_normalize_status(value, expected):
    assert normalize_status(value) == expected


def test_normalize_status_rejects_unknown():
    with pytest.raises(ValueError):
        normalize_status("on_fire")


@pytest.mark.asyncio
async def test_find_subscription_by_provider_references(db, make_premium):
    await make_premium("user-1", subscription_id="sub_abc", customer_id="cus_abc")

    by_subscription = await db.find_subscription(stripe_subscription_id="sub_abc")
    by_customer = await db.find_subscription(stripe_customer_id="cus_abc")

    assert by_subscription.user_id == "user-1"
    assert by_customer.user_id == "user-1"
    assert await db.find_subscription(stripe_customer_id="cus_other") is None
