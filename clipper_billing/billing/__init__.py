"""
Subscription tiers and usage quotas.

- QuotaPolicy: tier -> feature limits
- UsageCounter: atomic per-user, per-month counters
- QuotaGate: check and charge metered usage
- SubscriptionState: authoritative subscription record
- BillingEventReconciler: apply Stripe events idempotently
- UsageEventLog: append-only audit trail
"""

from clipper_billing.billing.quota_gate import QuotaGate
from clipper_billing.billing.quota_policy import QuotaPolicy, limits_for
from clipper_billing.billing.reconciler import BillingEventReconciler
from clipper_billing.billing.stripe_service import StripeService
from clipper_billing.billing.subscription_state import SubscriptionState
from clipper_billing.billing.usage_events import UsageEventLog
from clipper_billing.billing.usage_tracking import UsageCounter
from clipper_billing.billing.webhooks import StripeWebhookHandler, extract_customer_id

__all__ = [
    "BillingEventReconciler",
    "QuotaGate",
    "QuotaPolicy",
    "StripeService",
    "StripeWebhookHandler",
    "SubscriptionState",
    "UsageCounter",
    "UsageEventLog",
    "extract_customer_id",
    "limits_for",
]
