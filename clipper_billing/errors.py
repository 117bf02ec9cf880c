"""
Billing error taxonomy.

QuotaExceeded is deliberately absent: a denied charge is a normal result
(clipper_billing.models.usage.QuotaExceeded), not an exception.
"""


class BillingError(Exception):
    """Base exception for billing errors."""

    pass


class ServiceUnavailable(BillingError):
    """A backing service could not complete the operation. Safe to retry."""

    pass


class StorageUnavailableError(ServiceUnavailable):
    """The billing store failed or timed out."""

    pass


class PaymentProviderUnavailable(ServiceUnavailable):
    """Stripe call failed or its circuit breaker is open."""

    pass


class UnknownSubscriptionReference(BillingError):
    """A billing event references no known local subscription."""

    def __init__(
        self,
        message: str,
        *,
        user_id: str | None = None,
        customer_id: str | None = None,
        subscription_id: str | None = None,
    ):
        super().__init__(message)
        self.user_id = user_id
        self.customer_id = customer_id
        self.subscription_id = subscription_id


class InvalidStateTransition(BillingError):
    """A requested change would violate subscription invariants."""

    def __init__(self, message: str, *, tier: str | None = None, status: str | None = None):
        super().__init__(message)
        self.tier = tier
        self.status = status


class WebhookSignatureError(BillingError):
    """Webhook payload or signature could not be verified."""

    pass


class IdempotencyConflict(BillingError):
    """An idempotency key was reused for a different charge."""

    pass
