"""
Billing event reconciler.

Applies billing provider events to SubscriptionState:
- checkout.session.completed
- customer.subscription.created / updated / deleted
- customer.subscription.trial_will_end (logged only)
- invoice.payment_failed
- invoice.payment_succeeded / invoice.paid

Each event is applied at most once (dedup on the provider event ID) and
events older than the last applied provider timestamp are recorded as stale.
Events that cannot be applied after the retry budget are stored in
billing_event_failures for manual replay and are not marked processed, so a
provider redelivery is attempted again.
"""

import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from clipper_billing.billing.subscription_state import enforce_invariants
from clipper_billing.config import QuotaConfig, StripeConfig
from clipper_billing.errors import (
    InvalidStateTransition,
    ServiceUnavailable,
    UnknownSubscriptionReference,
)
from clipper_billing.models.billing_event import (
    BillingEventFailure,
    BillingEventPayload,
    BillingEventType,
    ReconcileOutcome,
    ReconcileResult,
)
from clipper_billing.models.subscription import (
    Subscription,
    SubscriptionStatus,
    SubscriptionTier,
    SubscriptionUpdate,
    normalize_status,
)
from clipper_billing.models.usage import UsageEventCreate, UsageEventType
from clipper_billing.observability.metrics import (
    track_billing_event,
    track_billing_event_failure,
    track_tier_transition,
)
from clipper_billing.resilience.circuit_breakers import with_retry
from clipper_billing.storage.database import BillingDatabase, BillingEventApplication

logger = logging.getLogger(__name__)

# Locally generated event type for persisted grace expiry
GRACE_EXPIRY_EVENT = "grace_period.expired"

_PREMIUM_STATUSES = {SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING}


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _trial_running(subscription: Subscription, now: datetime) -> bool:
    return (
        subscription.status == SubscriptionStatus.TRIALING
        and subscription.trial_end is not None
        and subscription.trial_end > now
    )


def _is_zero_amount_first_invoice(payload: BillingEventPayload) -> bool:
    """The $0 invoice issued when a subscription starts with a trial."""
    return payload.billing_reason == "subscription_create" and payload.amount_paid == 0


def tier_change_event(
    previous: Subscription, current: Subscription, metadata: dict | None = None
) -> UsageEventCreate | None:
    """subscription_upgraded/downgraded audit event, or None if the tier is unchanged."""
    if previous.tier == current.tier:
        return None

    event_type = (
        UsageEventType.SUBSCRIPTION_UPGRADED
        if current.tier.rank > previous.tier.rank
        else UsageEventType.SUBSCRIPTION_DOWNGRADED
    )
    return UsageEventCreate(
        user_id=current.user_id,
        event_type=event_type,
        subscription_id=current.id,
        metadata={
            "from_tier": previous.tier.value,
            "to_tier": current.tier.value,
            "status": current.status.value,
            **(metadata or {}),
        },
    )


class BillingEventReconciler:
    """
    Apply provider events to subscriptions idempotently.

    Responsibilities:
    - Resolve the subscription by user_id, provider subscription ID or customer ID
    - Translate the event snapshot into a validated state transition
    - Record tier changes in the usage event log
    - Retry transient failures, then durably record what could not be applied
    """

    def __init__(
        self,
        db: BillingDatabase,
        quota_config: QuotaConfig | None = None,
        stripe_config: StripeConfig | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        """
        Initialize reconciler.

        Args:
            db: Billing store
            quota_config: Source of grace_period_days
            stripe_config: Source of the webhook retry budget
            clock: Source of "now" (injectable for tests)
        """
        quota_config = quota_config or QuotaConfig()
        stripe_config = stripe_config or StripeConfig()

        self.db = db
        self.clock = clock
        self.grace_period = timedelta(days=quota_config.grace_period_days)

        backoff = stripe_config.webhook_retry_backoff_seconds
        self._apply_with_retry = with_retry(
            max_attempts=stripe_config.webhook_max_attempts,
            min_wait=0,
            max_wait=backoff * 8,
            multiplier=backoff,
            exceptions=(UnknownSubscriptionReference, ServiceUnavailable),
        )(self._apply_once)

    async def apply(
        self,
        event_id: str,
        event_type: str,
        payload: BillingEventPayload | dict,
        occurred_at: datetime | None = None,
    ) -> ReconcileResult:
        """
        Apply one provider event.

        Args:
            event_id: Provider-assigned unique event ID (dedup key)
            event_type: Provider event type
            payload: Parsed event snapshot
            occurred_at: Provider creation timestamp (ordering); defaults to now

        Returns:
            ReconcileResult: applied, duplicate, stale, ignored or failed

        Raises:
            ServiceUnavailable: The failure record itself could not be written
        """
        if not isinstance(payload, BillingEventPayload):
            payload = BillingEventPayload(**payload)

        now = self.clock()
        occurred_at = occurred_at or now

        try:
            known_type = BillingEventType(event_type)
        except ValueError:
            known_type = None

        if known_type is None or known_type == BillingEventType.TRIAL_WILL_END:
            return await self._record_without_change(event_id, event_type, payload, known_type, now)

        try:
            application = await self._apply_with_retry(
                event_id, known_type, payload, occurred_at, now
            )
        except (UnknownSubscriptionReference, InvalidStateTransition, ServiceUnavailable) as e:
            return await self._record_failure(event_id, event_type, payload, e, now)

        return self._result(event_id, event_type, application)

    async def _apply_once(
        self,
        event_id: str,
        event_type: BillingEventType,
        payload: BillingEventPayload,
        occurred_at: datetime,
        now: datetime,
    ) -> BillingEventApplication:
        def transition(current: Subscription):
            return self._transition(event_id, event_type, current, payload, occurred_at, now)

        # Checkout carries references only; the snapshot events own the ordering
        return await self.db.apply_billing_event(
            event_id,
            event_type.value,
            occurred_at,
            transition,
            user_id=payload.user_id,
            stripe_subscription_id=payload.subscription_id,
            stripe_customer_id=payload.customer_id,
            advance_watermark=event_type != BillingEventType.CHECKOUT_COMPLETED,
            now=now,
        )

    @staticmethod
    def _supersedes_stored(event_type: BillingEventType, current: Subscription) -> bool:
        """Whether an event may replace the stored provider subscription ID."""
        if event_type == BillingEventType.CHECKOUT_COMPLETED:
            return True
        # A FREE user's stored subscription no longer bills
        return (
            event_type == BillingEventType.SUBSCRIPTION_CREATED
            and current.tier == SubscriptionTier.FREE
        )

    def _transition(
        self,
        event_id: str,
        event_type: BillingEventType,
        current: Subscription,
        payload: BillingEventPayload,
        occurred_at: datetime,
        now: datetime,
    ) -> tuple[Subscription, UsageEventCreate | None] | None:
        """
        Compute the new state for an event. Runs inside the store transaction.

        Returns None for events about a provider subscription other than the
        stored one, unless the event may replace it.
        """
        if (
            payload.subscription_id
            and current.stripe_subscription_id
            and payload.subscription_id != current.stripe_subscription_id
            and not self._supersedes_stored(event_type, current)
        ):
            logger.info(
                "Billing event for a superseded subscription",
                extra={
                    "event_id": event_id,
                    "event_type": event_type.value,
                    "user_id": current.user_id,
                    "subscription_id": payload.subscription_id,
                    "stored_subscription_id": current.stripe_subscription_id,
                },
            )
            return None

        if event_type == BillingEventType.CHECKOUT_COMPLETED:
            update = self._checkout_completed(current, payload, now)
        elif event_type in (
            BillingEventType.SUBSCRIPTION_CREATED,
            BillingEventType.SUBSCRIPTION_UPDATED,
        ):
            update = self._subscription_snapshot(current, payload, now)
        elif event_type == BillingEventType.SUBSCRIPTION_DELETED:
            update = self._subscription_deleted(payload, occurred_at)
        elif event_type == BillingEventType.INVOICE_PAYMENT_FAILED:
            update = self._payment_failed(current, now)
        else:
            update = self._payment_succeeded(current, payload, now)

        candidate = enforce_invariants(current, update.merged_into(current), now)
        usage_event = tier_change_event(
            current,
            candidate,
            {"billing_event_id": event_id, "billing_event_type": event_type.value},
        )
        return candidate, usage_event

    @staticmethod
    def _references(payload: BillingEventPayload) -> dict:
        """Provider references carried by the payload (only those present)."""
        fields = {}
        if payload.customer_id:
            fields["stripe_customer_id"] = payload.customer_id
        if payload.subscription_id:
            fields["stripe_subscription_id"] = payload.subscription_id
        if payload.price_id:
            fields["stripe_price_id"] = payload.price_id
        if payload.current_period_start:
            fields["current_period_start"] = payload.current_period_start
        if payload.current_period_end:
            fields["current_period_end"] = payload.current_period_end
        return fields

    @staticmethod
    def _status(payload: BillingEventPayload) -> SubscriptionStatus:
        if not payload.status:
            raise InvalidStateTransition("Subscription event without a status")
        try:
            return normalize_status(payload.status)
        except ValueError as e:
            raise InvalidStateTransition(str(e), status=payload.status) from e

    def _checkout_completed(
        self, current: Subscription, payload: BillingEventPayload, now: datetime
    ) -> SubscriptionUpdate:
        if not payload.subscription_id:
            raise InvalidStateTransition(
                "Checkout completed without a subscription",
                tier=SubscriptionTier.PREMIUM.value,
            )

        trialing = payload.trial_end is not None and payload.trial_end > now
        status = SubscriptionStatus.TRIALING if trialing else SubscriptionStatus.ACTIVE
        if (
            current.tier == SubscriptionTier.PREMIUM
            and current.stripe_subscription_id == payload.subscription_id
        ):
            # subscription.created already delivered the richer status
            status = current.status

        return SubscriptionUpdate(
            tier=SubscriptionTier.PREMIUM,
            status=status,
            cancel_at_period_end=False,
            cancel_at=None,
            canceled_at=None,
            **self._references(payload),
            **({"trial_end": payload.trial_end} if payload.trial_end else {}),
        )

    def _subscription_snapshot(
        self, current: Subscription, payload: BillingEventPayload, now: datetime
    ) -> SubscriptionUpdate:
        status = self._status(payload)
        fields = self._references(payload)

        if status in _PREMIUM_STATUSES:
            tier = SubscriptionTier.PREMIUM
        elif status == SubscriptionStatus.PAST_DUE:
            if current.tier == SubscriptionTier.GRACE_PERIOD:
                tier = SubscriptionTier.GRACE_PERIOD
            elif current.tier == SubscriptionTier.PREMIUM:
                tier = SubscriptionTier.GRACE_PERIOD
                fields["is_grace_period"] = True
                fields["grace_period_ends_at"] = now + self.grace_period
            else:
                tier = SubscriptionTier.FREE
        else:
            tier = SubscriptionTier.FREE

        return SubscriptionUpdate(
            tier=tier,
            status=status,
            trial_end=payload.trial_end,
            cancel_at=payload.cancel_at,
            canceled_at=payload.canceled_at,
            cancel_at_period_end=bool(payload.cancel_at_period_end),
            **fields,
        )

    @staticmethod
    def _subscription_deleted(
        payload: BillingEventPayload, occurred_at: datetime
    ) -> SubscriptionUpdate:
        return SubscriptionUpdate(
            tier=SubscriptionTier.FREE,
            status=SubscriptionStatus.CANCELED,
            cancel_at_period_end=False,
            canceled_at=payload.canceled_at or occurred_at,
        )

    def _payment_failed(self, current: Subscription, now: datetime) -> SubscriptionUpdate:
        if current.tier == SubscriptionTier.PREMIUM:
            return SubscriptionUpdate(
                tier=SubscriptionTier.GRACE_PERIOD,
                status=SubscriptionStatus.PAST_DUE,
                is_grace_period=True,
                grace_period_ends_at=now + self.grace_period,
            )
        # GRACE_PERIOD keeps its window; FREE only records the status
        return SubscriptionUpdate(status=SubscriptionStatus.PAST_DUE)

    def _payment_succeeded(
        self, current: Subscription, payload: BillingEventPayload, now: datetime
    ) -> SubscriptionUpdate:
        if not (payload.subscription_id or current.stripe_subscription_id):
            raise InvalidStateTransition(
                "Payment succeeded without a subscription",
                tier=SubscriptionTier.PREMIUM.value,
            )

        status = SubscriptionStatus.ACTIVE
        if current.tier == SubscriptionTier.PREMIUM and (
            _trial_running(current, now) or _is_zero_amount_first_invoice(payload)
        ):
            status = current.status

        return SubscriptionUpdate(
            tier=SubscriptionTier.PREMIUM,
            status=status,
            **self._references(payload),
        )

    async def _record_without_change(
        self,
        event_id: str,
        event_type: str,
        payload: BillingEventPayload,
        known_type: BillingEventType | None,
        now: datetime,
    ) -> ReconcileResult:
        """Mark an event with no state effect as processed."""
        if known_type == BillingEventType.TRIAL_WILL_END:
            logger.info(
                "Trial ending soon",
                extra={
                    "event_id": event_id,
                    "customer_id": payload.customer_id,
                    "subscription_id": payload.subscription_id,
                    "trial_end": payload.trial_end.isoformat() if payload.trial_end else None,
                },
            )
        else:
            logger.warning(
                "Unhandled billing event type",
                extra={"event_id": event_id, "event_type": event_type},
            )

        recorded = await self.db.record_billing_event_outcome(
            event_id, event_type, ReconcileOutcome.IGNORED, payload.user_id, now=now
        )
        outcome = ReconcileOutcome.IGNORED if recorded else ReconcileOutcome.DUPLICATE
        track_billing_event(event_type, outcome.value)

        return ReconcileResult(
            event_id=event_id,
            event_type=event_type,
            outcome=outcome,
            user_id=payload.user_id,
            message=f"No state change for {event_type}",
        )

    async def _record_failure(
        self,
        event_id: str,
        event_type: str,
        payload: BillingEventPayload,
        error: Exception,
        now: datetime,
    ) -> ReconcileResult:
        """Durably store an event that could not be applied."""
        error_type = type(error).__name__
        failure = await self.db.record_billing_event_failure(
            BillingEventFailure(
                event_id=event_id,
                event_type=event_type,
                error_type=error_type,
                error_message=str(error),
                user_id=payload.user_id,
                customer_id=payload.customer_id,
                subscription_id=payload.subscription_id,
                payload=payload.model_dump(mode="json"),
                first_seen_at=now,
                last_seen_at=now,
            )
        )

        track_billing_event(event_type, ReconcileOutcome.FAILED.value)
        track_billing_event_failure(event_type, error_type)
        logger.error(
            "Billing event could not be applied",
            extra={
                "event_id": event_id,
                "event_type": event_type,
                "error_type": error_type,
                "error": str(error),
                "user_id": payload.user_id,
                "customer_id": payload.customer_id,
                "subscription_id": payload.subscription_id,
                "attempt_count": failure.attempt_count,
            },
        )

        return ReconcileResult(
            event_id=event_id,
            event_type=event_type,
            outcome=ReconcileOutcome.FAILED,
            user_id=payload.user_id,
            message=f"{error_type}: {error}",
        )

    def _result(
        self, event_id: str, event_type: str, application: BillingEventApplication
    ) -> ReconcileResult:
        outcome = application.outcome
        track_billing_event(event_type, outcome.value)

        previous_tier = application.previous.tier.value if application.previous else None
        tier = application.current.tier.value if application.current else None
        user_id = application.current.user_id if application.current else None

        if outcome == ReconcileOutcome.APPLIED:
            track_tier_transition(previous_tier, tier)
            logger.info(
                "Billing event applied",
                extra={
                    "event_id": event_id,
                    "event_type": event_type,
                    "user_id": user_id,
                    "previous_tier": previous_tier,
                    "tier": tier,
                    "status": application.current.status.value,
                },
            )
        else:
            logger.info(
                "Billing event skipped",
                extra={"event_id": event_id, "event_type": event_type, "outcome": outcome.value},
            )

        return ReconcileResult(
            event_id=event_id,
            event_type=event_type,
            outcome=outcome,
            user_id=user_id,
            previous_tier=previous_tier,
            tier=tier,
        )

    async def expire_grace_periods(self, now: datetime | None = None) -> int:
        """
        Persist GRACE_PERIOD -> FREE for every elapsed grace window.

        Enforcement already treats an elapsed window as FREE; this makes the
        stored record agree. Invoked periodically by an external scheduler.

        Returns:
            int: Number of subscriptions downgraded
        """
        now = now or self.clock()
        expired = await self.db.list_expired_grace_periods(now)
        downgraded = 0

        for subscription in expired:
            event_id = (
                f"grace_expiry:{subscription.user_id}:"
                f"{subscription.grace_period_ends_at.isoformat()}"
            )

            def transition(current: Subscription, event_id=event_id):
                if not current.is_grace_period_expired(now):
                    # Recovered since it was listed
                    return current, None
                candidate = enforce_invariants(
                    current, current.model_copy(update={"tier": SubscriptionTier.FREE}), now
                )
                return candidate, tier_change_event(
                    current,
                    candidate,
                    {"billing_event_id": event_id, "reason": "grace_period_expired"},
                )

            application = await self.db.apply_billing_event(
                event_id,
                GRACE_EXPIRY_EVENT,
                None,
                transition,
                user_id=subscription.user_id,
                now=now,
            )

            if (
                application.outcome == ReconcileOutcome.APPLIED
                and application.previous.tier != application.current.tier
            ):
                downgraded += 1
                track_tier_transition(
                    application.previous.tier.value, application.current.tier.value
                )
                logger.warning(
                    "Grace period expired, downgraded to FREE",
                    extra={
                        "user_id": subscription.user_id,
                        "grace_period_ends_at": subscription.grace_period_ends_at.isoformat(),
                    },
                )

        return downgraded

    async def list_failures(
        self, limit: int = 50, offset: int = 0, include_resolved: bool = False
    ) -> list[BillingEventFailure]:
        """Events awaiting manual replay, most recent first."""
        return await self.db.list_billing_event_failures(
            limit=limit, offset=offset, include_resolved=include_resolved
        )
