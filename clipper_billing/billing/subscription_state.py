"""
Authoritative subscription record per user.

Reads always go to the store (no cache): feature unlocking must never lag a
successful payment. Every write passes through enforce_invariants so a row
can never hold PREMIUM without a provider subscription or GRACE_PERIOD
without a grace window.
"""

import logging
from collections.abc import Callable
from datetime import UTC, datetime

from clipper_billing.errors import InvalidStateTransition
from clipper_billing.models.subscription import (
    Subscription,
    SubscriptionTier,
    SubscriptionUpdate,
)
from clipper_billing.storage.database import BillingDatabase

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def enforce_invariants(
    previous: Subscription, candidate: Subscription, now: datetime
) -> Subscription:
    """
    Validate a proposed subscription state and normalize grace fields.

    - Grace fields are cleared whenever the tier is not GRACE_PERIOD
    - PREMIUM requires stripe_subscription_id
    - GRACE_PERIOD requires grace_period_ends_at, in the future when the
      grace window is being opened

    Raises:
        InvalidStateTransition: Candidate violates an invariant
    """
    if candidate.tier != SubscriptionTier.GRACE_PERIOD:
        if candidate.is_grace_period or candidate.grace_period_ends_at is not None:
            candidate = candidate.model_copy(
                update={"is_grace_period": False, "grace_period_ends_at": None}
            )

    if candidate.tier == SubscriptionTier.PREMIUM and not candidate.stripe_subscription_id:
        raise InvalidStateTransition(
            "PREMIUM requires a provider subscription id",
            tier=candidate.tier.value,
            status=candidate.status.value,
        )

    if candidate.tier == SubscriptionTier.GRACE_PERIOD:
        if candidate.grace_period_ends_at is None:
            raise InvalidStateTransition(
                "GRACE_PERIOD requires grace_period_ends_at",
                tier=candidate.tier.value,
                status=candidate.status.value,
            )
        opening = previous.tier != SubscriptionTier.GRACE_PERIOD
        if opening and candidate.grace_period_ends_at <= now:
            raise InvalidStateTransition(
                "Grace period must end in the future when it starts",
                tier=candidate.tier.value,
                status=candidate.status.value,
            )
        if not candidate.is_grace_period:
            candidate = candidate.model_copy(update={"is_grace_period": True})

    return candidate


class SubscriptionState:
    """
    Read and write the subscription record.

    Writers are BillingEventReconciler (through the store's event
    transaction) and the user-initiated cancel/reactivate action.
    """

    def __init__(self, db: BillingDatabase, clock: Callable[[], datetime] = _utcnow):
        """
        Initialize subscription state.

        Args:
            db: Billing store
            clock: Source of "now" (injectable for tests)
        """
        self.db = db
        self.clock = clock

    async def get(self, user_id: str) -> Subscription:
        """
        Get a user's subscription.

        Returns:
            Subscription: Stored row, or the FREE default (id=None) when absent
        """
        subscription = await self.db.get_subscription(user_id)
        if subscription is None:
            return Subscription.free_default(user_id)
        return subscription

    async def create_default(self, user_id: str) -> Subscription:
        """Store a FREE row at account creation. No-op if a row exists."""
        subscription = await self.db.insert_default_subscription(user_id, now=self.clock())
        logger.info(
            "Default subscription ensured",
            extra={"user_id": user_id, "tier": subscription.tier.value},
        )
        return subscription

    async def upsert(self, user_id: str, update: SubscriptionUpdate | dict) -> Subscription:
        """
        Apply field changes to a user's subscription (creating it if absent).

        Tier and status values are normalized to the canonical enums whatever
        casing the caller used. updated_at is always set.

        Args:
            user_id: Subscription owner
            update: Fields to change; omitted fields are left untouched

        Returns:
            Subscription: Stored state after the write

        Raises:
            ValueError: Unknown tier/status value
            InvalidStateTransition: Result would violate a subscription invariant
            StorageUnavailableError: Nothing was written
        """
        if not isinstance(update, SubscriptionUpdate):
            update = SubscriptionUpdate(**update)

        now = self.clock()

        def mutate(current: Subscription) -> Subscription:
            return enforce_invariants(current, update.merged_into(current), now)

        subscription = await self.db.update_subscription(user_id, mutate, now=now)

        logger.info(
            "Subscription updated",
            extra={
                "user_id": user_id,
                "tier": subscription.tier.value,
                "status": subscription.status.value,
                "fields": sorted(update.changes()),
            },
        )
        return subscription

    async def set_cancel_at_period_end(self, user_id: str, cancel_at_period_end: bool) -> Subscription:
        """
        Set or clear cancel_at_period_end.

        Tier and status are untouched: a PREMIUM user who cancels keeps PREMIUM
        limits until the provider reports the period end.

        Raises:
            InvalidStateTransition: User has no stored subscription
        """
        subscription = await self.db.set_cancel_at_period_end(
            user_id, cancel_at_period_end, now=self.clock()
        )
        if subscription is None:
            raise InvalidStateTransition(
                "No subscription to update", tier=SubscriptionTier.FREE.value
            )

        logger.info(
            "Cancel at period end updated",
            extra={
                "user_id": user_id,
                "cancel_at_period_end": cancel_at_period_end,
                "tier": subscription.tier.value,
            },
        )
        return subscription

    def effective_tier(
        self, subscription: Subscription, now: datetime | None = None
    ) -> SubscriptionTier:
        """
        Tier used for enforcement.

        A GRACE_PERIOD whose window has elapsed counts as FREE even before
        expire_grace_periods persists the change.
        """
        if subscription.is_grace_period_expired(now or self.clock()):
            return SubscriptionTier.FREE
        return subscription.tier
