"""
Outbound Stripe calls for subscription management.

Features:
- Checkout sessions for premium_monthly / premium_annual (trial for first-time subscribers)
- Customer portal sessions
- Cancel / reactivate at period end on the provider side
- Manual sync of the latest provider subscription through the reconciler

Every SDK call goes through the Stripe circuit breaker. Provider errors
surface as PaymentProviderUnavailable; local subscription state is only ever
changed by the reconciler or SubscriptionState.
"""

import logging
from typing import Any

import stripe

from clipper_billing.billing.reconciler import BillingEventReconciler
from clipper_billing.billing.subscription_state import SubscriptionState
from clipper_billing.billing.webhooks import extract_customer_id, payload_from_subscription
from clipper_billing.config import StripeConfig
from clipper_billing.errors import InvalidStateTransition, PaymentProviderUnavailable
from clipper_billing.models.billing_event import (
    BillingEventPayload,
    BillingEventType,
    ReconcileResult,
)
from clipper_billing.models.subscription import (
    Subscription,
    SubscriptionStatus,
    SubscriptionTier,
)
from clipper_billing.resilience.circuit_breakers import with_stripe_circuit_breaker

logger = logging.getLogger(__name__)


def _to_dict(obj: Any) -> dict[str, Any]:
    """Plain dict view of a Stripe SDK object."""
    if isinstance(obj, dict):
        return obj
    return obj.to_dict()


@with_stripe_circuit_breaker
def _create_customer(email: str | None, user_id: str):
    return stripe.Customer.create(email=email, metadata={"user_id": user_id})


@with_stripe_circuit_breaker
def _create_checkout_session(**params):
    return stripe.checkout.Session.create(**params)


@with_stripe_circuit_breaker
def _create_portal_session(customer_id: str, return_url: str):
    return stripe.billing_portal.Session.create(customer=customer_id, return_url=return_url)


@with_stripe_circuit_breaker
def _modify_subscription(subscription_id: str, **params):
    return stripe.Subscription.modify(subscription_id, **params)


@with_stripe_circuit_breaker
def _retrieve_subscription(subscription_id: str):
    return stripe.Subscription.retrieve(subscription_id)


@with_stripe_circuit_breaker
def _latest_subscription_for_customer(customer_id: str):
    subscriptions = stripe.Subscription.list(customer=customer_id, status="all", limit=1)
    data = _to_dict(subscriptions).get("data") or []
    return data[0] if data else None


class StripeService:
    """
    Stripe integration service.

    Handles:
    - Checkout and customer portal sessions
    - Provider side of cancel / reactivate
    - Pulling the latest provider state for manual sync
    """

    def __init__(self, config: StripeConfig, subscriptions: SubscriptionState):
        """
        Initialize Stripe service.

        Args:
            config: Stripe configuration
            subscriptions: Subscription records (customer ID bookkeeping)
        """
        self.config = config
        self.subscriptions = subscriptions

        if config.api_key:
            stripe.api_key = config.api_key
            logger.info("Stripe service initialized")
        else:
            logger.warning("Stripe API key not configured - billing disabled")

    @property
    def is_enabled(self) -> bool:
        """Check if Stripe is properly configured."""
        return self.config.is_configured

    def _require_enabled(self) -> None:
        if not self.is_enabled:
            raise PaymentProviderUnavailable("Stripe not configured")

    def _call(self, operation: str, func, *args, **kwargs):
        """Run an SDK call, translating provider errors."""
        try:
            return func(*args, **kwargs)
        except stripe.StripeError as e:
            logger.error(
                f"Stripe {operation} failed",
                extra={"operation": operation, "error": str(e)},
            )
            raise PaymentProviderUnavailable(f"Stripe {operation} failed") from e

    async def _ensure_customer(self, subscription: Subscription, email: str | None) -> str:
        """Stripe customer ID for the user, repairing or creating it as needed."""
        stored = subscription.stripe_customer_id
        customer_id = extract_customer_id(stored)

        if customer_id and customer_id != stored:
            logger.warning(
                "Repaired malformed Stripe customer ID",
                extra={"user_id": subscription.user_id, "customer_id": customer_id},
            )
            await self.subscriptions.upsert(
                subscription.user_id, {"stripe_customer_id": customer_id}
            )

        if customer_id:
            return customer_id

        customer = self._call("customer creation", _create_customer, email, subscription.user_id)
        customer_id = customer["id"]
        await self.subscriptions.upsert(subscription.user_id, {"stripe_customer_id": customer_id})

        logger.info(
            "Created Stripe customer",
            extra={"user_id": subscription.user_id, "customer_id": customer_id},
        )
        return customer_id

    async def create_checkout_session(
        self, user_id: str, email: str | None, plan: str
    ) -> dict[str, str]:
        """
        Create a subscription checkout session.

        Args:
            user_id: Subscribing user (stored in session and subscription metadata)
            email: Prefill for a newly created Stripe customer
            plan: premium_monthly or premium_annual

        Returns:
            dict with session_id and url

        Raises:
            ValueError: Unknown or unconfigured plan
            InvalidStateTransition: User already has an active premium subscription
            PaymentProviderUnavailable: Stripe not configured or unavailable
        """
        self._require_enabled()

        price_id = self.config.price_id_for_plan(plan)
        if not price_id:
            raise ValueError(f"Unknown or unconfigured plan: {plan}")

        subscription = await self.subscriptions.get(user_id)
        if subscription.tier == SubscriptionTier.PREMIUM and subscription.status in (
            SubscriptionStatus.ACTIVE,
            SubscriptionStatus.TRIALING,
        ):
            raise InvalidStateTransition(
                "User already has an active premium subscription",
                tier=subscription.tier.value,
                status=subscription.status.value,
            )

        customer_id = await self._ensure_customer(subscription, email)

        subscription_data: dict[str, Any] = {"metadata": {"user_id": user_id}}
        # Trial only for users who never had a subscription
        first_subscription = subscription.stripe_subscription_id is None
        if first_subscription and self.config.trial_period_days > 0:
            subscription_data["trial_period_days"] = self.config.trial_period_days

        session = self._call(
            "checkout session creation",
            _create_checkout_session,
            mode="subscription",
            customer=customer_id,
            client_reference_id=user_id,
            line_items=[{"price": price_id, "quantity": 1}],
            success_url=f"{self.config.success_url}?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=self.config.cancel_url,
            metadata={"user_id": user_id, "plan": plan},
            subscription_data=subscription_data,
            allow_promotion_codes=True,
        )

        logger.info(
            "Created checkout session",
            extra={
                "user_id": user_id,
                "plan": plan,
                "session_id": session["id"],
                "trial": "trial_period_days" in subscription_data,
            },
        )
        return {"session_id": session["id"], "url": session["url"]}

    async def create_portal_session(self, user_id: str) -> dict[str, str]:
        """
        Create a customer portal session.

        Raises:
            InvalidStateTransition: User has no Stripe customer yet
            PaymentProviderUnavailable: Stripe not configured or unavailable
        """
        self._require_enabled()

        subscription = await self.subscriptions.get(user_id)
        customer_id = extract_customer_id(subscription.stripe_customer_id)
        if not customer_id:
            raise InvalidStateTransition("No billing account for user", tier=subscription.tier.value)

        session = self._call(
            "portal session creation",
            _create_portal_session,
            customer_id,
            self.config.portal_return_url,
        )
        return {"url": session["url"]}

    async def set_cancel_at_period_end(self, subscription: Subscription, cancel: bool) -> None:
        """
        Set cancel_at_period_end on the provider subscription.

        Raises:
            InvalidStateTransition: No provider subscription to change
            PaymentProviderUnavailable: Stripe unavailable
        """
        self._require_enabled()

        if not subscription.stripe_subscription_id:
            raise InvalidStateTransition(
                "No provider subscription to update", tier=subscription.tier.value
            )

        self._call(
            "subscription update",
            _modify_subscription,
            subscription.stripe_subscription_id,
            cancel_at_period_end=cancel,
        )

        logger.info(
            "Updated provider cancel_at_period_end",
            extra={
                "user_id": subscription.user_id,
                "subscription_id": subscription.stripe_subscription_id,
                "cancel_at_period_end": cancel,
            },
        )

    async def fetch_subscription_snapshot(
        self, subscription: Subscription
    ) -> BillingEventPayload | None:
        """
        Latest provider subscription as a reconciler snapshot.

        Looks up by subscription ID, falling back to the customer's most recent
        subscription. Returns None when the provider has nothing for the user.
        """
        self._require_enabled()

        if subscription.stripe_subscription_id:
            provider = self._call(
                "subscription retrieval",
                _retrieve_subscription,
                subscription.stripe_subscription_id,
            )
        else:
            customer_id = extract_customer_id(subscription.stripe_customer_id)
            if not customer_id:
                return None
            provider = self._call(
                "subscription lookup", _latest_subscription_for_customer, customer_id
            )

        if provider is None:
            return None

        return payload_from_subscription(_to_dict(provider), user_id=subscription.user_id)

    async def sync_subscription(
        self, user_id: str, reconciler: BillingEventReconciler
    ) -> ReconcileResult | None:
        """
        Pull the provider's current subscription and apply it.

        Applied like a subscription.updated event with a synthetic event ID,
        so tier changes are validated and audited the same way.
        """
        subscription = await self.subscriptions.get(user_id)
        snapshot = await self.fetch_subscription_snapshot(subscription)
        if snapshot is None:
            logger.info("No provider subscription to sync", extra={"user_id": user_id})
            return None

        now = reconciler.clock()
        event_id = f"sync:{snapshot.subscription_id}:{int(now.timestamp() * 1000)}"
        return await reconciler.apply(
            event_id,
            BillingEventType.SUBSCRIPTION_UPDATED.value,
            snapshot,
            occurred_at=now,
        )
