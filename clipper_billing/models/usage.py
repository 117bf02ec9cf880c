"""
Usage metering data models.

Usage is counted per user per calendar month (year, month). Limits come from
QuotaPolicy; None is the distinguished "unlimited" value everywhere a limit
appears, so no arithmetic is ever done against a fake large number.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field

from clipper_billing.models.subscription import SubscriptionTier


class UsageFeature(str, Enum):
    """Metered features with a monthly counter."""

    CLIPS = "clips"
    FILES = "files"
    FOCUS_MODE_MINUTES = "focus_mode_minutes"
    COMPACT_MODE_MINUTES = "compact_mode_minutes"

    @property
    def counter_column(self) -> str:
        """Column holding this feature's counter in usage_records."""
        return _COUNTER_COLUMNS[self]


_COUNTER_COLUMNS = {
    UsageFeature.CLIPS: "clips_count",
    UsageFeature.FILES: "files_count",
    UsageFeature.FOCUS_MODE_MINUTES: "focus_mode_minutes",
    UsageFeature.COMPACT_MODE_MINUTES: "compact_mode_minutes",
}


class UsageEventType(str, Enum):
    """Audit trail event types."""

    CLIP_SENT = "clip_sent"
    FILE_UPLOADED = "file_uploaded"
    FOCUS_MODE_STARTED = "focus_mode_started"
    FOCUS_MODE_ENDED = "focus_mode_ended"
    COMPACT_MODE_STARTED = "compact_mode_started"
    COMPACT_MODE_ENDED = "compact_mode_ended"
    QUOTA_EXCEEDED = "quota_exceeded"
    SUBSCRIPTION_UPGRADED = "subscription_upgraded"
    SUBSCRIPTION_DOWNGRADED = "subscription_downgraded"


# Event written when a charge for the feature is accepted. Minute counters are
# charged when a session ends, so they record the *_ENDED event.
CHARGE_EVENT_TYPES = {
    UsageFeature.CLIPS: UsageEventType.CLIP_SENT,
    UsageFeature.FILES: UsageEventType.FILE_UPLOADED,
    UsageFeature.FOCUS_MODE_MINUTES: UsageEventType.FOCUS_MODE_ENDED,
    UsageFeature.COMPACT_MODE_MINUTES: UsageEventType.COMPACT_MODE_ENDED,
}


def period_for(moment: datetime) -> tuple[int, int]:
    """Calendar (year, month) usage period containing moment, in UTC."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    moment = moment.astimezone(UTC)
    return moment.year, moment.month


def period_bounds(year: int, month: int) -> tuple[datetime, datetime]:
    """[start, end) of a calendar usage period."""
    start = datetime(year, month, 1, tzinfo=UTC)
    if month == 12:
        end = datetime(year + 1, 1, 1, tzinfo=UTC)
    else:
        end = datetime(year, month + 1, 1, tzinfo=UTC)
    return start, end


class FeatureLimits(BaseModel):
    """Numeric limits for one tier. None means unlimited."""

    clips: int | None = Field(default=None, ge=0)
    files: int | None = Field(default=None, ge=0)
    words_per_clip: int | None = Field(default=None, ge=0)
    focus_mode_minutes: int | None = Field(default=None, ge=0)
    compact_mode_minutes: int | None = Field(default=None, ge=0)

    model_config = {"frozen": True}

    def limit_for(self, feature: UsageFeature) -> int | None:
        """Limit for a metered feature (None = unlimited)."""
        return getattr(self, UsageFeature(feature).value)

    def is_unlimited(self, feature: UsageFeature) -> bool:
        return self.limit_for(feature) is None


class UsageRecord(BaseModel):
    """Counters for one user in one calendar month."""

    id: str
    user_id: str
    year: int = Field(..., ge=1970, le=9999)
    month: int = Field(..., ge=1, le=12)

    clips_count: int = Field(default=0, ge=0)
    files_count: int = Field(default=0, ge=0)
    focus_mode_minutes: int = Field(default=0, ge=0)
    compact_mode_minutes: int = Field(default=0, ge=0)

    period_start: datetime
    period_end: datetime
    created_at: datetime
    updated_at: datetime

    def count_for(self, feature: UsageFeature) -> int:
        return getattr(self, UsageFeature(feature).counter_column)


class UsageEventCreate(BaseModel):
    """Data for a new audit trail entry."""

    user_id: str = Field(..., min_length=1)
    event_type: UsageEventType
    feature: UsageFeature | None = None
    usage_record_id: str | None = None
    subscription_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class UsageEvent(UsageEventCreate):
    """Immutable audit trail entry."""

    id: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    model_config = {"frozen": True}


class UsageEventPage(BaseModel):
    """One page of usage events, newest first."""

    events: list[UsageEvent]
    total: int
    limit: int
    offset: int


class QuotaStatus(BaseModel):
    """Advisory quota view ("X of Y used"). Never mutates anything."""

    feature: str
    tier: SubscriptionTier
    allowed: bool
    current_usage: int
    limit: int | None
    remaining: int | None
    year: int
    month: int


class UsageCharged(BaseModel):
    """Charge accepted and durably applied."""

    outcome: Literal["charged"] = "charged"
    feature: UsageFeature
    tier: SubscriptionTier
    amount: int
    current_usage: int
    limit: int | None
    year: int
    month: int
    usage_record_id: str
    replayed: bool = Field(
        default=False, description="True when returned from a stored idempotency key"
    )

    @property
    def remaining(self) -> int | None:
        if self.limit is None:
            return None
        return max(0, self.limit - self.current_usage)


class QuotaExceeded(BaseModel):
    """
    Charge denied because it would exceed the tier limit.

    An expected business outcome, not an error. Nothing was charged.
    """

    outcome: Literal["quota_exceeded"] = "quota_exceeded"
    feature: UsageFeature
    tier: SubscriptionTier
    amount: int
    current_usage: int
    limit: int
    year: int
    month: int

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.current_usage)


ChargeResult = UsageCharged | QuotaExceeded
