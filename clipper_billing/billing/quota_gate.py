"""
Quota enforcement gate.

Composes SubscriptionState, QuotaPolicy and UsageCounter:

1. Load the subscription (FREE when absent) and resolve its effective tier
2. Resolve the feature limit for that tier (None = unlimited)
3. Charge the counter with the ceiling enforced in the same atomic statement
4. Record the decision in the usage event log (same transaction)

A denial is returned as QuotaExceeded, never raised. Storage failures
propagate as ServiceUnavailable and are never reported as a denial.
"""

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from clipper_billing.billing.quota_policy import QuotaPolicy
from clipper_billing.billing.subscription_state import SubscriptionState
from clipper_billing.billing.usage_tracking import UsageCounter
from clipper_billing.models.usage import (
    ChargeResult,
    QuotaExceeded,
    QuotaStatus,
    UsageCharged,
    UsageFeature,
    period_bounds,
    period_for,
)
from clipper_billing.observability.metrics import track_quota_decision

logger = logging.getLogger(__name__)

WORDS_PER_CLIP = "words_per_clip"


def _utcnow() -> datetime:
    return datetime.now(UTC)


class QuotaGate:
    """
    Decide whether a metered action is allowed and charge it.

    Responsibilities:
    - Advisory checks for UI display (no mutation)
    - Authoritative charge with no over-limit drift under concurrency
    - Idempotent charges when the caller supplies a key
    """

    def __init__(
        self,
        subscriptions: SubscriptionState,
        policy: QuotaPolicy,
        counter: UsageCounter,
        clock: Callable[[], datetime] = _utcnow,
    ):
        """
        Initialize quota gate.

        Args:
            subscriptions: Source of the caller's tier
            policy: Tier to limits mapping
            counter: Atomic usage counter store
            clock: Source of "now", decides the usage period
        """
        self.subscriptions = subscriptions
        self.policy = policy
        self.counter = counter
        self.clock = clock

    async def check_only(self, user_id: str, feature: UsageFeature | str) -> QuotaStatus:
        """
        Report usage against the limit without charging.

        allowed is True when one more unit would fit. Never creates rows.
        """
        feature = UsageFeature(feature)
        now = self.clock()
        year, month = period_for(now)

        subscription = await self.subscriptions.get(user_id)
        tier = self.subscriptions.effective_tier(subscription, now)
        limit = self.policy.limits_for(tier).limit_for(feature)

        record = await self.counter.get(user_id, year, month)
        current = record.count_for(feature) if record else 0

        return QuotaStatus(
            feature=feature.value,
            tier=tier,
            allowed=limit is None or current < limit,
            current_usage=current,
            limit=limit,
            remaining=None if limit is None else max(0, limit - current),
            year=year,
            month=month,
        )

    async def check_and_charge(
        self,
        user_id: str,
        feature: UsageFeature | str,
        amount: int = 1,
        idempotency_key: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> ChargeResult:
        """
        Charge usage if it stays within the tier limit.

        Args:
            user_id: Caller
            feature: Metered feature
            amount: Units to charge (>= 1)
            idempotency_key: Client key; a retry with the same key returns the
                original result instead of charging again
            metadata: Opaque context stored on the audit event

        Returns:
            UsageCharged, or QuotaExceeded when the charge would pass the limit
            (nothing is charged on denial)

        Raises:
            ValueError: amount < 1
            IdempotencyConflict: Key reused with a different feature or amount
            ServiceUnavailable: Store failed; the outcome is not a denial
        """
        feature = UsageFeature(feature)
        now = self.clock()
        year, month = period_for(now)

        subscription = await self.subscriptions.get(user_id)
        tier = self.subscriptions.effective_tier(subscription, now)
        limit = self.policy.limits_for(tier).limit_for(feature)

        application = await self.counter.charge_within_limit(
            user_id,
            feature,
            amount,
            year,
            month,
            limit,
            tier=tier,
            subscription_id=subscription.id,
            metadata=metadata,
            idempotency_key=idempotency_key,
            now=now,
        )

        if application.replayed:
            result = UsageCharged(**application.stored_result, replayed=True)
            track_quota_decision(feature.value, result.tier.value, "replayed")
            logger.info(
                "Charge replayed from idempotency key",
                extra={"user_id": user_id, "feature": feature.value, "amount": amount},
            )
            return result

        current = application.record.count_for(feature)

        if not application.allowed:
            track_quota_decision(feature.value, tier.value, "quota_exceeded")
            logger.warning(
                "Quota exceeded",
                extra={
                    "user_id": user_id,
                    "feature": feature.value,
                    "tier": tier.value,
                    "amount": amount,
                    "current_usage": current,
                    "limit": limit,
                },
            )
            return QuotaExceeded(
                feature=feature,
                tier=tier,
                amount=amount,
                current_usage=current,
                limit=limit,
                year=year,
                month=month,
            )

        track_quota_decision(feature.value, tier.value, "charged", amount)
        logger.info(
            "Usage charged",
            extra={
                "user_id": user_id,
                "feature": feature.value,
                "tier": tier.value,
                "amount": amount,
                "current_usage": current,
                "limit": limit,
            },
        )
        return UsageCharged(
            feature=feature,
            tier=tier,
            amount=amount,
            current_usage=current,
            limit=limit,
            year=year,
            month=month,
            usage_record_id=application.record.id,
        )

    async def check_words_per_clip(self, user_id: str, word_count: int) -> QuotaStatus:
        """Check one clip's length against the per-clip word limit (no counter)."""
        if word_count < 0:
            raise ValueError("word_count must be non-negative")

        now = self.clock()
        year, month = period_for(now)
        subscription = await self.subscriptions.get(user_id)
        tier = self.subscriptions.effective_tier(subscription, now)
        limit = self.policy.limits_for(tier).words_per_clip

        return QuotaStatus(
            feature=WORDS_PER_CLIP,
            tier=tier,
            allowed=limit is None or word_count <= limit,
            current_usage=word_count,
            limit=limit,
            remaining=None if limit is None else max(0, limit - word_count),
            year=year,
            month=month,
        )

    async def usage_summary(self, user_id: str) -> dict[str, Any]:
        """
        Current period counters and limits for every feature.

        Returns zero counters when nothing was used yet (no row is created).
        """
        now = self.clock()
        year, month = period_for(now)
        period_start, period_end = period_bounds(year, month)

        subscription = await self.subscriptions.get(user_id)
        tier = self.subscriptions.effective_tier(subscription, now)
        limits = self.policy.limits_for(tier)
        record = await self.counter.get(user_id, year, month)

        features = {}
        for feature in UsageFeature:
            used = record.count_for(feature) if record else 0
            limit = limits.limit_for(feature)
            features[feature.value] = {
                "used": used,
                "limit": limit,
                "remaining": None if limit is None else max(0, limit - used),
                "unlimited": limit is None,
            }

        return {
            "user_id": user_id,
            "tier": tier.value,
            "year": year,
            "month": month,
            "period_start": period_start.isoformat(),
            "period_end": period_end.isoformat(),
            "features": features,
            WORDS_PER_CLIP: limits.words_per_clip,
        }
