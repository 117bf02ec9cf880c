"""
Tests for billing event reconciliation.

Covers:
- Checkout and subscription snapshots
- Dedup on event ID and last-write-wins ordering
- Payment failure, grace period, recovery and expiry
- Unknown references and invalid transitions recorded for replay
"""

from datetime import timedelta
from unittest.mock import patch

import pytest

from clipper_billing.errors import StorageUnavailableError
from clipper_billing.models.billing_event import BillingEventPayload, ReconcileOutcome
from clipper_billing.models.subscription import SubscriptionStatus, SubscriptionTier
from clipper_billing.models.usage import UsageEventType


def checkout_payload(user_id="user-1", subscription_id="sub_123", customer_id="cus_123", **extra):
    return BillingEventPayload(
        user_id=user_id, subscription_id=subscription_id, customer_id=customer_id, **extra
    )


async def start_grace_period(reconciler, make_premium, clock):
    await make_premium("user-1")
    result = await reconciler.apply(
        "evt_fail",
        "invoice.payment_failed",
        {"customer_id": "cus_123", "subscription_id": "sub_123"},
        occurred_at=clock.now,
    )
    assert result.outcome == ReconcileOutcome.APPLIED
    return result


@pytest.mark.asyncio
async def test_checkout_completed_upgrades_to_premium(reconciler, subscriptions, event_log, clock):
    result = await reconciler.apply(
        "evt_1", "checkout.session.completed", checkout_payload(), occurred_at=clock.now
    )

    assert result.outcome == ReconcileOutcome.APPLIED
    assert result.previous_tier == "FREE"
    assert result.tier == "PREMIUM"

    subscription = await subscriptions.get("user-1")
    assert subscription.tier == SubscriptionTier.PREMIUM
    assert subscription.status == SubscriptionStatus.ACTIVE
    assert subscription.stripe_subscription_id == "sub_123"
    assert subscription.stripe_customer_id == "cus_123"
    assert subscription.last_billing_event_at is None

    page = await event_log.query("user-1")
    assert [e.event_type for e in page.events] == [UsageEventType.SUBSCRIPTION_UPGRADED]
    assert page.events[0].metadata["billing_event_id"] == "evt_1"
    assert page.events[0].subscription_id == subscription.id


@pytest.mark.asyncio
async def test_checkout_with_future_trial_is_trialing(reconciler, subscriptions, clock):
    await reconciler.apply(
        "evt_1",
        "checkout.session.completed",
        checkout_payload(trial_end=clock.now + timedelta(days=14)),
        occurred_at=clock.now,
    )

    subscription = await subscriptions.get("user-1")
    assert subscription.status == SubscriptionStatus.TRIALING
    assert subscription.trial_end == clock.now + timedelta(days=14)


@pytest.mark.asyncio
async def test_duplicate_event_applied_once(reconciler, event_log, clock):
    first = await reconciler.apply(
        "evt_1", "checkout.session.completed", checkout_payload(), occurred_at=clock.now
    )
    second = await reconciler.apply(
        "evt_1", "checkout.session.completed", checkout_payload(), occurred_at=clock.now
    )

    assert first.outcome == ReconcileOutcome.APPLIED
    assert second.outcome == ReconcileOutcome.DUPLICATE

    page = await event_log.query("user-1", event_type=UsageEventType.SUBSCRIPTION_UPGRADED)
    assert page.total == 1


@pytest.mark.asyncio
async def test_out_of_order_event_is_stale(reconciler, subscriptions, clock):
    await reconciler.apply(
        "evt_new",
        "customer.subscription.updated",
        checkout_payload(status="active"),
        occurred_at=clock.now,
    )

    result = await reconciler.apply(
        "evt_old",
        "customer.subscription.updated",
        checkout_payload(status="canceled"),
        occurred_at=clock.now - timedelta(minutes=1),
    )

    assert result.outcome == ReconcileOutcome.STALE
    subscription = await subscriptions.get("user-1")
    assert subscription.tier == SubscriptionTier.PREMIUM
    assert subscription.status == SubscriptionStatus.ACTIVE


@pytest.mark.asyncio
async def test_subscription_updated_before_checkout_converges(reconciler, subscriptions, clock):
    """Provider retries can deliver the snapshot before checkout.completed."""
    await reconciler.apply(
        "evt_sub",
        "customer.subscription.created",
        checkout_payload(status="trialing", trial_end=clock.now + timedelta(days=14)),
        occurred_at=clock.now,
    )
    await reconciler.apply(
        "evt_checkout",
        "checkout.session.completed",
        checkout_payload(),
        occurred_at=clock.now + timedelta(seconds=1),
    )

    subscription = await subscriptions.get("user-1")
    assert subscription.tier == SubscriptionTier.PREMIUM
    assert subscription.status == SubscriptionStatus.TRIALING
    assert subscription.trial_end == clock.now + timedelta(days=14)


@pytest.mark.asyncio
async def test_snapshot_after_later_checkout_is_applied(reconciler, subscriptions, clock):
    """Checkout carries no status, so it does not make an earlier snapshot stale."""
    await reconciler.apply(
        "evt_checkout",
        "checkout.session.completed",
        checkout_payload(),
        occurred_at=clock.now + timedelta(seconds=1),
    )
    result = await reconciler.apply(
        "evt_sub",
        "customer.subscription.created",
        checkout_payload(
            status="trialing",
            trial_end=clock.now + timedelta(days=14),
            current_period_start=clock.now,
            current_period_end=clock.now + timedelta(days=14),
        ),
        occurred_at=clock.now,
    )

    assert result.outcome == ReconcileOutcome.APPLIED
    subscription = await subscriptions.get("user-1")
    assert subscription.tier == SubscriptionTier.PREMIUM
    assert subscription.status == SubscriptionStatus.TRIALING
    assert subscription.trial_end == clock.now + timedelta(days=14)
    assert subscription.current_period_end == clock.now + timedelta(days=14)
    assert subscription.last_billing_event_at == clock.now


@pytest.mark.asyncio
async def test_checkout_older_than_snapshot_is_stale(
    reconciler, subscriptions, make_premium, clock
):
    await make_premium("user-1")
    await reconciler.apply(
        "evt_del",
        "customer.subscription.deleted",
        {"subscription_id": "sub_123", "status": "canceled"},
        occurred_at=clock.now,
    )

    result = await reconciler.apply(
        "evt_checkout",
        "checkout.session.completed",
        checkout_payload(),
        occurred_at=clock.now - timedelta(minutes=5),
    )

    assert result.outcome == ReconcileOutcome.STALE
    assert (await subscriptions.get("user-1")).tier == SubscriptionTier.FREE


@pytest.mark.asyncio
async def test_events_for_replaced_subscription_are_ignored(
    reconciler, subscriptions, make_premium, event_log, clock
):
    """A user in grace who checks out again keeps the new subscription."""
    await make_premium("user-1", subscription_id="sub_old")
    await reconciler.apply(
        "evt_fail",
        "invoice.payment_failed",
        {"user_id": "user-1", "subscription_id": "sub_old", "customer_id": "cus_123"},
        occurred_at=clock.now,
    )
    await reconciler.apply(
        "evt_checkout",
        "checkout.session.completed",
        checkout_payload(subscription_id="sub_new"),
        occurred_at=clock.now + timedelta(seconds=10),
    )

    deleted = await reconciler.apply(
        "evt_del_old",
        "customer.subscription.deleted",
        {
            "user_id": "user-1",
            "subscription_id": "sub_old",
            "customer_id": "cus_123",
            "status": "canceled",
        },
        occurred_at=clock.now + timedelta(seconds=20),
    )
    failed = await reconciler.apply(
        "evt_fail_old",
        "invoice.payment_failed",
        {"customer_id": "cus_123", "subscription_id": "sub_old"},
        occurred_at=clock.now + timedelta(seconds=30),
    )

    assert deleted.outcome == ReconcileOutcome.IGNORED
    assert failed.outcome == ReconcileOutcome.IGNORED

    subscription = await subscriptions.get("user-1")
    assert subscription.tier == SubscriptionTier.PREMIUM
    assert subscription.status == SubscriptionStatus.ACTIVE
    assert subscription.stripe_subscription_id == "sub_new"
    assert not subscription.is_grace_period

    downgrades = await event_log.query(
        "user-1", event_type=UsageEventType.SUBSCRIPTION_DOWNGRADED
    )
    assert downgrades.total == 1

    again = await reconciler.apply(
        "evt_del_old",
        "customer.subscription.deleted",
        {"user_id": "user-1", "subscription_id": "sub_old", "status": "canceled"},
        occurred_at=clock.now + timedelta(seconds=20),
    )
    assert again.outcome == ReconcileOutcome.DUPLICATE


@pytest.mark.asyncio
async def test_new_subscription_replaces_lapsed_one(reconciler, subscriptions, make_premium, clock):
    await make_premium("user-1", subscription_id="sub_old")
    await reconciler.apply(
        "evt_del",
        "customer.subscription.deleted",
        {"subscription_id": "sub_old", "status": "canceled"},
        occurred_at=clock.now,
    )

    result = await reconciler.apply(
        "evt_created",
        "customer.subscription.created",
        checkout_payload(subscription_id="sub_new", status="active"),
        occurred_at=clock.now + timedelta(minutes=1),
    )

    assert result.outcome == ReconcileOutcome.APPLIED
    subscription = await subscriptions.get("user-1")
    assert subscription.tier == SubscriptionTier.PREMIUM
    assert subscription.stripe_subscription_id == "sub_new"


@pytest.mark.asyncio
async def test_trial_start_invoice_keeps_trialing(reconciler, subscriptions, clock):
    await reconciler.apply(
        "evt_sub",
        "customer.subscription.created",
        checkout_payload(status="trialing", trial_end=clock.now + timedelta(days=14)),
        occurred_at=clock.now,
    )

    result = await reconciler.apply(
        "evt_invoice",
        "invoice.paid",
        {
            "subscription_id": "sub_123",
            "customer_id": "cus_123",
            "billing_reason": "subscription_create",
            "amount_paid": 0,
        },
        occurred_at=clock.now,
    )

    assert result.outcome == ReconcileOutcome.APPLIED
    subscription = await subscriptions.get("user-1")
    assert subscription.tier == SubscriptionTier.PREMIUM
    assert subscription.status == SubscriptionStatus.TRIALING
    assert subscription.trial_end == clock.now + timedelta(days=14)


@pytest.mark.asyncio
async def test_first_paid_invoice_after_trial_activates(reconciler, subscriptions, clock):
    await reconciler.apply(
        "evt_sub",
        "customer.subscription.created",
        checkout_payload(status="trialing", trial_end=clock.now + timedelta(days=14)),
        occurred_at=clock.now,
    )
    clock.advance(days=14)

    await reconciler.apply(
        "evt_invoice",
        "invoice.paid",
        {
            "subscription_id": "sub_123",
            "billing_reason": "subscription_cycle",
            "amount_paid": 999,
        },
        occurred_at=clock.now,
    )

    subscription = await subscriptions.get("user-1")
    assert subscription.tier == SubscriptionTier.PREMIUM
    assert subscription.status == SubscriptionStatus.ACTIVE


@pytest.mark.asyncio
async def test_resolves_by_customer_id_without_user_metadata(
    reconciler, subscriptions, make_premium, clock
):
    await make_premium("user-1", subscription_id="sub_123", customer_id="cus_123")

    result = await reconciler.apply(
        "evt_1",
        "customer.subscription.updated",
        {"customer_id": "cus_123", "status": "active", "cancel_at_period_end": True},
        occurred_at=clock.now,
    )

    assert result.outcome == ReconcileOutcome.APPLIED
    assert result.user_id == "user-1"
    assert (await subscriptions.get("user-1")).cancel_at_period_end is True


@pytest.mark.asyncio
async def test_cancel_at_period_end_keeps_premium(reconciler, subscriptions, make_premium, clock):
    await make_premium("user-1")

    await reconciler.apply(
        "evt_1",
        "customer.subscription.updated",
        {
            "subscription_id": "sub_123",
            "status": "active",
            "cancel_at_period_end": True,
            "cancel_at": clock.now + timedelta(days=20),
        },
        occurred_at=clock.now,
    )

    subscription = await subscriptions.get("user-1")
    assert subscription.tier == SubscriptionTier.PREMIUM
    assert subscription.cancel_at_period_end is True
    assert subscription.cancel_at == clock.now + timedelta(days=20)


@pytest.mark.asyncio
async def test_subscription_deleted_downgrades(
    reconciler, subscriptions, make_premium, event_log, clock
):
    await make_premium("user-1")

    result = await reconciler.apply(
        "evt_del",
        "customer.subscription.deleted",
        {"subscription_id": "sub_123", "customer_id": "cus_123", "status": "canceled"},
        occurred_at=clock.now,
    )

    assert result.previous_tier == "PREMIUM"
    assert result.tier == "FREE"
    subscription = await subscriptions.get("user-1")
    assert subscription.tier == SubscriptionTier.FREE
    assert subscription.status == SubscriptionStatus.CANCELED
    assert subscription.canceled_at == clock.now
    assert subscription.cancel_at_period_end is False

    page = await event_log.query("user-1", event_type=UsageEventType.SUBSCRIPTION_DOWNGRADED)
    assert page.total == 1
    assert page.events[0].metadata["from_tier"] == "PREMIUM"


@pytest.mark.asyncio
async def test_payment_failed_opens_grace_period(
    reconciler, subscriptions, make_premium, event_log, clock
):
    await start_grace_period(reconciler, make_premium, clock)

    subscription = await subscriptions.get("user-1")
    assert subscription.tier == SubscriptionTier.GRACE_PERIOD
    assert subscription.status == SubscriptionStatus.PAST_DUE
    assert subscription.is_grace_period
    assert subscription.grace_period_ends_at == clock.now + timedelta(days=7)

    page = await event_log.query("user-1", event_type=UsageEventType.SUBSCRIPTION_DOWNGRADED)
    assert page.total == 1


@pytest.mark.asyncio
async def test_repeated_payment_failure_keeps_grace_window(
    reconciler, subscriptions, make_premium, clock
):
    await start_grace_period(reconciler, make_premium, clock)
    clock.advance(days=2)

    await reconciler.apply(
        "evt_fail_2",
        "invoice.payment_failed",
        {"subscription_id": "sub_123"},
        occurred_at=clock.now,
    )

    subscription = await subscriptions.get("user-1")
    assert subscription.tier == SubscriptionTier.GRACE_PERIOD
    assert subscription.grace_period_ends_at == clock.now - timedelta(days=2) + timedelta(days=7)


@pytest.mark.asyncio
async def test_payment_failed_on_free_records_status_only(reconciler, subscriptions, clock):
    await subscriptions.upsert("user-1", {"stripe_customer_id": "cus_free"})

    await reconciler.apply(
        "evt_fail", "invoice.payment_failed", {"customer_id": "cus_free"}, occurred_at=clock.now
    )

    subscription = await subscriptions.get("user-1")
    assert subscription.tier == SubscriptionTier.FREE
    assert subscription.status == SubscriptionStatus.PAST_DUE


@pytest.mark.asyncio
async def test_grace_period_recovery(reconciler, subscriptions, make_premium, event_log, clock):
    await start_grace_period(reconciler, make_premium, clock)
    clock.advance(days=4)

    result = await reconciler.apply(
        "evt_paid",
        "invoice.payment_succeeded",
        {"subscription_id": "sub_123", "customer_id": "cus_123"},
        occurred_at=clock.now,
    )

    assert result.previous_tier == "GRACE_PERIOD"
    assert result.tier == "PREMIUM"
    subscription = await subscriptions.get("user-1")
    assert subscription.status == SubscriptionStatus.ACTIVE
    assert subscription.is_grace_period is False
    assert subscription.grace_period_ends_at is None

    page = await event_log.query("user-1", event_type=UsageEventType.SUBSCRIPTION_UPGRADED)
    assert page.total == 1


@pytest.mark.asyncio
async def test_past_due_snapshot_on_premium_opens_grace(
    reconciler, subscriptions, make_premium, clock
):
    await make_premium("user-1")

    await reconciler.apply(
        "evt_1",
        "customer.subscription.updated",
        {"subscription_id": "sub_123", "status": "past_due"},
        occurred_at=clock.now,
    )

    subscription = await subscriptions.get("user-1")
    assert subscription.tier == SubscriptionTier.GRACE_PERIOD
    assert subscription.grace_period_ends_at == clock.now + timedelta(days=7)


@pytest.mark.asyncio
async def test_incomplete_status_maps_to_unpaid_free(reconciler, subscriptions, clock):
    await reconciler.apply(
        "evt_1",
        "customer.subscription.created",
        checkout_payload(status="incomplete"),
        occurred_at=clock.now,
    )

    subscription = await subscriptions.get("user-1")
    assert subscription.tier == SubscriptionTier.FREE
    assert subscription.status == SubscriptionStatus.UNPAID


@pytest.mark.asyncio
async def test_expire_grace_periods(reconciler, subscriptions, make_premium, event_log, clock):
    await start_grace_period(reconciler, make_premium, clock)

    assert await reconciler.expire_grace_periods() == 0

    clock.advance(days=8)
    assert await reconciler.expire_grace_periods() == 1
    assert await reconciler.expire_grace_periods() == 0

    subscription = await subscriptions.get("user-1")
    assert subscription.tier == SubscriptionTier.FREE
    assert subscription.is_grace_period is False
    # Local expiry does not move the provider ordering watermark
    assert subscription.last_billing_event_at == clock.now - timedelta(days=8)

    page = await event_log.query("user-1", event_type=UsageEventType.SUBSCRIPTION_DOWNGRADED)
    assert page.total == 2


@pytest.mark.asyncio
async def test_unknown_reference_recorded_as_failure(reconciler, db, clock):
    result = await reconciler.apply(
        "evt_orphan",
        "customer.subscription.updated",
        {"customer_id": "cus_nobody", "subscription_id": "sub_nobody", "status": "active"},
        occurred_at=clock.now,
    )

    assert result.outcome == ReconcileOutcome.FAILED
    assert not await db.is_billing_event_processed("evt_orphan")

    failures = await reconciler.list_failures()
    assert len(failures) == 1
    assert failures[0].event_id == "evt_orphan"
    assert failures[0].error_type == "UnknownSubscriptionReference"
    assert failures[0].customer_id == "cus_nobody"


@pytest.mark.asyncio
async def test_redelivered_failure_increments_attempts(reconciler, clock):
    payload = {"customer_id": "cus_nobody", "status": "active"}
    await reconciler.apply("evt_orphan", "customer.subscription.updated", payload, clock.now)
    await reconciler.apply("evt_orphan", "customer.subscription.updated", payload, clock.now)

    failures = await reconciler.list_failures()
    assert failures[0].attempt_count == 2


@pytest.mark.asyncio
async def test_failure_resolved_by_later_success(reconciler, make_premium, clock):
    payload = {"customer_id": "cus_123", "status": "active"}
    await reconciler.apply("evt_early", "customer.subscription.updated", payload, clock.now)
    assert len(await reconciler.list_failures()) == 1

    await make_premium("user-1")
    result = await reconciler.apply(
        "evt_early", "customer.subscription.updated", payload, clock.now
    )

    assert result.outcome == ReconcileOutcome.APPLIED
    assert await reconciler.list_failures() == []
    assert len(await reconciler.list_failures(include_resolved=True)) == 1


@pytest.mark.asyncio
async def test_checkout_without_subscription_is_invalid(reconciler, subscriptions, clock):
    result = await reconciler.apply(
        "evt_1",
        "checkout.session.completed",
        checkout_payload(subscription_id=None),
        occurred_at=clock.now,
    )

    assert result.outcome == ReconcileOutcome.FAILED
    assert "InvalidStateTransition" in result.message
    assert (await subscriptions.get("user-1")).tier == SubscriptionTier.FREE


@pytest.mark.asyncio
async def test_unknown_provider_status_is_invalid(reconciler, make_premium, clock):
    await make_premium("user-1")

    result = await reconciler.apply(
        "evt_1",
        "customer.subscription.updated",
        {"subscription_id": "sub_123", "status": "on_fire"},
        occurred_at=clock.now,
    )

    assert result.outcome == ReconcileOutcome.FAILED


@pytest.mark.asyncio
async def test_unhandled_event_type_ignored(reconciler, db, clock):
    result = await reconciler.apply("evt_x", "customer.created", {}, occurred_at=clock.now)
    again = await reconciler.apply("evt_x", "customer.created", {}, occurred_at=clock.now)

    assert result.outcome == ReconcileOutcome.IGNORED
    assert again.outcome == ReconcileOutcome.DUPLICATE
    assert await db.is_billing_event_processed("evt_x")


@pytest.mark.asyncio
async def test_trial_will_end_changes_nothing(reconciler, subscriptions, make_premium, clock):
    await make_premium("user-1")

    result = await reconciler.apply(
        "evt_trial",
        "customer.subscription.trial_will_end",
        {"subscription_id": "sub_123", "trial_end": clock.now + timedelta(days=3)},
        occurred_at=clock.now,
    )

    assert result.outcome == ReconcileOutcome.IGNORED
    assert (await subscriptions.get("user-1")).tier == SubscriptionTier.PREMIUM


@pytest.mark.asyncio
async def test_transient_storage_error_is_retried(reconciler, db, subscriptions, clock):
    original = db.apply_billing_event
    calls = []

    async def flaky(*args, **kwargs):
        calls.append(1)
        if len(calls) == 1:
            raise StorageUnavailableError("database is locked")
        return await original(*args, **kwargs)

    with patch.object(db, "apply_billing_event", side_effect=flaky):
        result = await reconciler.apply(
            "evt_1", "checkout.session.completed", checkout_payload(), occurred_at=clock.now
        )

    assert len(calls) == 2
    assert result.outcome == ReconcileOutcome.APPLIED
    assert (await subscriptions.get("user-1")).tier == SubscriptionTier.PREMIUM


@pytest.mark.asyncio
async def test_failure_record_write_error_propagates(reconciler, db, clock):
    with (
        patch.object(
            db, "apply_billing_event", side_effect=StorageUnavailableError("disk full")
        ),
        patch.object(
            db, "record_billing_event_failure", side_effect=StorageUnavailableError("disk full")
        ),
    ):
        with pytest.raises(StorageUnavailableError):
            await reconciler.apply(
                "evt_1", "checkout.session.completed", checkout_payload(), occurred_at=clock.now
            )
