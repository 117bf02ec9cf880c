"""
Subscription data models.

One Subscription row exists per user. Tier and status are closed enums; every
representation coming from outside (billing provider payloads, legacy rows
written as 'premium' or 'Premium') goes through normalize_tier/normalize_status
before it is compared or stored.
"""

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field, field_validator


class SubscriptionTier(str, Enum):
    """Billing plan level that determines feature limits."""

    FREE = "FREE"
    PREMIUM = "PREMIUM"
    GRACE_PERIOD = "GRACE_PERIOD"  # Degraded state after a failed payment, not purchasable

    @property
    def rank(self) -> int:
        """Ordering used to classify a tier change as upgrade or downgrade."""
        return _TIER_RANK[self]


_TIER_RANK = {
    SubscriptionTier.FREE: 0,
    SubscriptionTier.GRACE_PERIOD: 1,
    SubscriptionTier.PREMIUM: 2,
}


class SubscriptionStatus(str, Enum):
    """Billing status as reported by the provider, reduced to a closed set."""

    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"


# Provider statuses outside the closed set and what they are stored as
_STATUS_ALIASES = {
    "cancelled": SubscriptionStatus.CANCELED,
    "incomplete": SubscriptionStatus.UNPAID,
    "incomplete_expired": SubscriptionStatus.UNPAID,
    "paused": SubscriptionStatus.UNPAID,
}


def normalize_tier(value: "str | SubscriptionTier") -> SubscriptionTier:
    """
    Convert any accepted tier representation to the canonical enum.

    Accepts 'premium', 'Premium', 'PREMIUM', ' grace-period ', 'GracePeriod'.

    Raises:
        ValueError: If the value does not name a known tier
    """
    if isinstance(value, SubscriptionTier):
        return value
    if not isinstance(value, str):
        raise ValueError(f"Unknown subscription tier: {value!r}")

    candidate = value.strip().replace("-", "_").replace(" ", "_")
    if candidate.lower() == "graceperiod":
        candidate = "grace_period"

    try:
        return SubscriptionTier(candidate.upper())
    except ValueError:
        raise ValueError(f"Unknown subscription tier: {value!r}") from None


def normalize_status(value: "str | SubscriptionStatus") -> SubscriptionStatus:
    """
    Convert a provider status string to the canonical enum.

    Raises:
        ValueError: If the value is not a known provider status
    """
    if isinstance(value, SubscriptionStatus):
        return value
    if not isinstance(value, str):
        raise ValueError(f"Unknown subscription status: {value!r}")

    candidate = value.strip().lower().replace("-", "_")
    if candidate in _STATUS_ALIASES:
        return _STATUS_ALIASES[candidate]

    try:
        return SubscriptionStatus(candidate)
    except ValueError:
        raise ValueError(f"Unknown subscription status: {value!r}") from None


class Subscription(BaseModel):
    """
    Authoritative billing record for one user.

    Invariants (enforced by SubscriptionState on write):
    - PREMIUM implies stripe_subscription_id is set
    - GRACE_PERIOD implies is_grace_period and grace_period_ends_at are set
    """

    id: str | None = Field(default=None, description="Row ID, None for the implicit FREE default")
    user_id: str = Field(..., min_length=1, max_length=128)

    tier: SubscriptionTier = Field(default=SubscriptionTier.FREE)
    status: SubscriptionStatus = Field(default=SubscriptionStatus.ACTIVE)

    # Provider references (nullable until first checkout)
    stripe_customer_id: str | None = None
    stripe_subscription_id: str | None = None
    stripe_price_id: str | None = None

    # Billing cycle
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    trial_end: datetime | None = None

    # Cancellation
    cancel_at_period_end: bool = False
    cancel_at: datetime | None = None
    canceled_at: datetime | None = None

    # Grace period
    is_grace_period: bool = False
    grace_period_ends_at: datetime | None = None

    # Provider timestamp of the last applied billing event (last write wins)
    last_billing_event_at: datetime | None = None

    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @field_validator("tier", mode="before")
    @classmethod
    def _normalize_tier(cls, v):
        return normalize_tier(v)

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, v):
        return normalize_status(v)

    @classmethod
    def free_default(cls, user_id: str) -> "Subscription":
        """Implicit subscription for a user with no stored row."""
        return cls(user_id=user_id)

    @property
    def is_persisted(self) -> bool:
        return self.id is not None

    def is_grace_period_expired(self, now: datetime) -> bool:
        """True when the user is in GRACE_PERIOD and the window has elapsed."""
        return (
            self.tier == SubscriptionTier.GRACE_PERIOD
            and self.grace_period_ends_at is not None
            and self.grace_period_ends_at <= now
        )


class SubscriptionUpdate(BaseModel):
    """
    Fields to change on a subscription.

    Only explicitly set fields are written (model_fields_set), so passing
    None clears a nullable column while omitting a field leaves it untouched.
    """

    tier: SubscriptionTier | None = None
    status: SubscriptionStatus | None = None

    stripe_customer_id: str | None = None
    stripe_subscription_id: str | None = None
    stripe_price_id: str | None = None

    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    trial_end: datetime | None = None

    cancel_at_period_end: bool | None = None
    cancel_at: datetime | None = None
    canceled_at: datetime | None = None

    is_grace_period: bool | None = None
    grace_period_ends_at: datetime | None = None

    last_billing_event_at: datetime | None = None

    @field_validator("tier", mode="before")
    @classmethod
    def _normalize_tier(cls, v):
        if v is None:
            return None
        return normalize_tier(v)

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, v):
        if v is None:
            return None
        return normalize_status(v)

    def changes(self) -> dict:
        """Explicitly set fields only. None is dropped for non-nullable columns."""
        changes = self.model_dump(include=self.model_fields_set)
        for name in _NON_NULLABLE:
            if changes.get(name, True) is None:
                del changes[name]
        return changes

    def merged_into(self, subscription: Subscription) -> Subscription:
        """Return a copy of subscription with these changes applied (not persisted)."""
        return subscription.model_copy(update=self.changes())


_NON_NULLABLE = ("tier", "status", "cancel_at_period_end", "is_grace_period")
