"""
Usage counter service.

Tracks per-user, per-calendar-month counters for metered features:
- clips sent
- files uploaded
- focus mode minutes
- compact mode minutes

A period row is created lazily the first time a feature is used in a new
(year, month); that lazy creation is the monthly reset. Counters only grow.
"""

import logging
from datetime import datetime

from clipper_billing.models.subscription import SubscriptionTier
from clipper_billing.models.usage import UsageFeature, UsageRecord
from clipper_billing.storage.database import BillingDatabase, ChargeApplication

logger = logging.getLogger(__name__)


class UsageCounter:
    """
    Atomic per-user, per-period counter store.

    Responsibilities:
    - Increment counters without lost updates (single SQL statement)
    - Charge within a ceiling in the same statement (used by QuotaGate)
    - Read counters without creating rows
    """

    def __init__(self, db: BillingDatabase):
        """
        Initialize usage counter.

        Args:
            db: Billing store holding the usage_records table
        """
        self.db = db

    async def increment(
        self,
        user_id: str,
        feature: UsageFeature,
        amount: int,
        period_year: int,
        period_month: int,
        now: datetime | None = None,
    ) -> int:
        """
        Add amount to a feature counter.

        Args:
            user_id: Counter owner
            feature: Metered feature
            amount: Units to add (>= 0)
            period_year: Usage period year
            period_month: Usage period month (1-12)

        Returns:
            int: Counter value after the increment

        Raises:
            ValueError: Negative amount (counters never decrease)
            StorageUnavailableError: Write not acknowledged
        """
        feature = UsageFeature(feature)
        if amount < 0:
            raise ValueError("Usage amount must be non-negative")

        record = await self.db.increment_usage(
            user_id, feature, amount, period_year, period_month, now=now
        )
        new_count = record.count_for(feature)

        logger.debug(
            "Usage incremented",
            extra={
                "user_id": user_id,
                "feature": feature.value,
                "amount": amount,
                "period": f"{period_year}-{period_month:02d}",
                "new_count": new_count,
            },
        )
        return new_count

    async def get(self, user_id: str, period_year: int, period_month: int) -> UsageRecord | None:
        """Counters for a period, or None if nothing was used (no row is created)."""
        return await self.db.get_usage_record(user_id, period_year, period_month)

    async def charge_within_limit(
        self,
        user_id: str,
        feature: UsageFeature,
        amount: int,
        period_year: int,
        period_month: int,
        limit: int | None,
        *,
        tier: SubscriptionTier,
        subscription_id: str | None = None,
        metadata: dict | None = None,
        idempotency_key: str | None = None,
        now: datetime | None = None,
    ) -> ChargeApplication:
        """
        Increment only if the result stays within limit (None = unlimited).

        Check, increment, audit event and idempotency key commit in one
        transaction, so concurrent callers can never push the counter past
        the limit.

        Raises:
            ValueError: Amount < 1
            IdempotencyConflict: Key reused with different parameters
            StorageUnavailableError: Nothing was charged
        """
        if amount < 1:
            raise ValueError("Charge amount must be at least 1")

        return await self.db.charge_usage(
            user_id,
            UsageFeature(feature),
            amount,
            period_year,
            period_month,
            limit,
            tier=tier,
            subscription_id=subscription_id,
            metadata=metadata,
            idempotency_key=idempotency_key,
            now=now,
        )
