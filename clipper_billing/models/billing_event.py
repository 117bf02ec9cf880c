"""
Billing provider event models.

A BillingEventPayload is the parsed, signature-verified snapshot of one
provider event. The reconciler treats it as the full state to apply, never as
a delta.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class BillingEventType(str, Enum):
    """Provider event types the reconciler understands."""

    CHECKOUT_COMPLETED = "checkout.session.completed"
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    TRIAL_WILL_END = "customer.subscription.trial_will_end"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    INVOICE_PAID = "invoice.paid"


class BillingEventPayload(BaseModel):
    """Fields the reconciler needs from a provider event."""

    user_id: str | None = Field(default=None, description="From provider metadata, if present")
    customer_id: str | None = None
    subscription_id: str | None = None
    price_id: str | None = None
    status: str | None = Field(default=None, description="Raw provider status, normalized later")

    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    trial_end: datetime | None = None

    cancel_at_period_end: bool | None = None
    cancel_at: datetime | None = None
    canceled_at: datetime | None = None

    # Invoices only
    billing_reason: str | None = None
    amount_paid: int | None = Field(default=None, description="Smallest currency unit")

    raw: dict[str, Any] = Field(default_factory=dict, description="Original object, kept for replay")


class ReconcileOutcome(str, Enum):
    """What the reconciler did with an event."""

    APPLIED = "applied"
    DUPLICATE = "duplicate"  # Event ID already processed
    STALE = "stale"  # Older than the last applied provider timestamp
    IGNORED = "ignored"  # No state effect (unhandled type or superseded subscription)
    FAILED = "failed"  # Recorded in billing_event_failures for manual replay


class ReconcileResult(BaseModel):
    """Result of BillingEventReconciler.apply."""

    event_id: str
    event_type: str
    outcome: ReconcileOutcome
    user_id: str | None = None
    previous_tier: str | None = None
    tier: str | None = None
    message: str = ""


class BillingEventFailure(BaseModel):
    """Durable record of an event that could not be applied."""

    event_id: str
    event_type: str
    error_type: str
    error_message: str
    user_id: str | None = None
    customer_id: str | None = None
    subscription_id: str | None = None
    attempt_count: int = Field(default=1, ge=1)
    payload: dict[str, Any] = Field(default_factory=dict)
    first_seen_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    last_seen_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
