"""
Stripe webhook intake.

Verifies the Stripe-Signature header, converts the event object into a
BillingEventPayload snapshot and hands it to the reconciler. Handles:
- checkout.session.completed
- customer.subscription.created / updated / deleted / trial_will_end
- invoice.payment_failed
- invoice.payment_succeeded / invoice.paid
"""

import json
import logging
from datetime import UTC, datetime
from typing import Any

import stripe

from clipper_billing.billing.reconciler import BillingEventReconciler
from clipper_billing.config import StripeConfig
from clipper_billing.errors import WebhookSignatureError
from clipper_billing.models.billing_event import BillingEventPayload, ReconcileResult

logger = logging.getLogger(__name__)


def extract_customer_id(value: Any) -> str | None:
    """
    Extract a Stripe customer ID from any stored or delivered representation.

    Handles a plain ID, an expanded customer object, and IDs stored
    corrupted as the JSON text of a customer object.

    Examples:
        "cus_123" -> "cus_123"
        {"id": "cus_123", ...} -> "cus_123"
        '{"id": "cus_123", ...}' -> "cus_123"
    """
    if value is None:
        return None

    if isinstance(value, dict):
        customer_id = value.get("id")
        return customer_id if isinstance(customer_id, str) and customer_id else None

    if isinstance(value, str):
        value = value.strip()
        if value.startswith("{"):
            try:
                return extract_customer_id(json.loads(value))
            except json.JSONDecodeError:
                return None
        return value or None

    return None


def _reference_id(value: Any) -> str | None:
    """ID of a possibly-expanded Stripe reference (subscription, price)."""
    if isinstance(value, dict):
        return value.get("id")
    return value or None


def _timestamp(value: Any) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), UTC)


def _first_item(obj: dict) -> dict:
    items = (obj.get("items") or {}).get("data") or []
    return items[0] if items else {}


def payload_from_subscription(subscription: dict, user_id: str | None = None) -> BillingEventPayload:
    """Snapshot of a Stripe Subscription object."""
    item = _first_item(subscription)
    metadata = subscription.get("metadata") or {}

    # Period boundaries moved from the subscription to its items in newer API versions
    period_start = subscription.get("current_period_start") or item.get("current_period_start")
    period_end = subscription.get("current_period_end") or item.get("current_period_end")

    return BillingEventPayload(
        user_id=user_id or metadata.get("user_id"),
        customer_id=extract_customer_id(subscription.get("customer")),
        subscription_id=subscription.get("id"),
        price_id=_reference_id(item.get("price")),
        status=subscription.get("status"),
        current_period_start=_timestamp(period_start),
        current_period_end=_timestamp(period_end),
        trial_end=_timestamp(subscription.get("trial_end")),
        cancel_at_period_end=subscription.get("cancel_at_period_end"),
        cancel_at=_timestamp(subscription.get("cancel_at")),
        canceled_at=_timestamp(subscription.get("canceled_at")),
        raw=subscription,
    )


def payload_from_checkout_session(session: dict) -> BillingEventPayload:
    """Snapshot of a completed Checkout Session."""
    metadata = session.get("metadata") or {}
    return BillingEventPayload(
        user_id=metadata.get("user_id") or session.get("client_reference_id"),
        customer_id=extract_customer_id(session.get("customer")),
        subscription_id=_reference_id(session.get("subscription")),
        raw=session,
    )


def payload_from_invoice(invoice: dict) -> BillingEventPayload:
    """Snapshot of an Invoice (payment succeeded or failed)."""
    parent = invoice.get("parent") or {}
    details = parent.get("subscription_details") or invoice.get("subscription_details") or {}
    subscription_id = _reference_id(invoice.get("subscription")) or _reference_id(
        details.get("subscription")
    )
    metadata = details.get("metadata") or {}

    lines = (invoice.get("lines") or {}).get("data") or []
    period = lines[0].get("period", {}) if lines else {}

    return BillingEventPayload(
        user_id=metadata.get("user_id"),
        customer_id=extract_customer_id(invoice.get("customer")),
        subscription_id=subscription_id,
        current_period_start=_timestamp(period.get("start")),
        current_period_end=_timestamp(period.get("end")),
        billing_reason=invoice.get("billing_reason"),
        amount_paid=invoice.get("amount_paid"),
        raw=invoice,
    )


def payload_from_event(event_type: str, obj: dict) -> BillingEventPayload:
    """Dispatch on the event type's object kind."""
    if event_type.startswith("checkout.session."):
        return payload_from_checkout_session(obj)
    if event_type.startswith("customer.subscription."):
        return payload_from_subscription(obj)
    if event_type.startswith("invoice."):
        return payload_from_invoice(obj)

    return BillingEventPayload(
        customer_id=extract_customer_id(obj.get("customer")),
        raw=obj,
    )


class StripeWebhookHandler:
    """
    Handle Stripe webhook deliveries.

    Verification failures raise WebhookSignatureError (HTTP 400). Processing
    failures are recorded by the reconciler and acknowledged.
    """

    def __init__(self, config: StripeConfig, reconciler: BillingEventReconciler):
        """
        Initialize webhook handler.

        Args:
            config: Stripe configuration (for webhook secret)
            reconciler: Applies parsed events to subscriptions
        """
        self.config = config
        self.reconciler = reconciler

    def verify(self, payload: bytes, signature: str) -> dict[str, Any]:
        """
        Verify the signature and return the event as a plain dict.

        Raises:
            WebhookSignatureError: Secret missing, payload malformed or signature invalid
        """
        if not self.config.webhook_secret:
            raise WebhookSignatureError("Webhook secret not configured")

        if not signature:
            raise WebhookSignatureError("Missing Stripe-Signature header")

        try:
            stripe.Webhook.construct_event(payload, signature, self.config.webhook_secret)
        except ValueError as e:
            raise WebhookSignatureError("Invalid payload") from e
        except stripe.SignatureVerificationError as e:
            raise WebhookSignatureError("Invalid signature") from e

        try:
            event = json.loads(payload)
        except (TypeError, ValueError) as e:
            raise WebhookSignatureError("Invalid payload") from e

        if not isinstance(event, dict) or "id" not in event or "type" not in event:
            raise WebhookSignatureError("Invalid payload")

        return event

    async def handle_event(self, payload: bytes, signature: str) -> ReconcileResult:
        """
        Process one Stripe webhook delivery.

        Args:
            payload: Raw request body
            signature: Stripe-Signature header

        Returns:
            ReconcileResult from the reconciler

        Raises:
            WebhookSignatureError: Delivery could not be verified
            ServiceUnavailable: Neither the event nor its failure record was stored
        """
        event = self.verify(payload, signature)

        event_id = event["id"]
        event_type = event["type"]
        obj = (event.get("data") or {}).get("object") or {}

        logger.info(
            "Processing Stripe webhook event",
            extra={"event_type": event_type, "event_id": event_id},
        )

        billing_payload = payload_from_event(event_type, obj)
        occurred_at = _timestamp(event.get("created"))

        return await self.reconciler.apply(
            event_id, event_type, billing_payload, occurred_at=occurred_at
        )
