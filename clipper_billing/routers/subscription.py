"""
Subscription management API endpoints.

Provides:
- Current subscription (FREE default for users without a row)
- Cancel / reactivate at period end
- Stripe checkout and customer portal sessions
- Manual sync from Stripe
"""

import logging
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from clipper_billing.auth.dependencies import (
    get_authenticated_user,
    get_reconciler,
    get_stripe_service,
    get_subscription_state,
)
from clipper_billing.billing.reconciler import BillingEventReconciler
from clipper_billing.billing.stripe_service import StripeService
from clipper_billing.billing.subscription_state import SubscriptionState
from clipper_billing.models.billing_event import ReconcileResult
from clipper_billing.models.subscription import Subscription

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/subscription", tags=["Subscription"])


class SubscriptionResponse(BaseModel):
    """Subscription as shown to its owner (no provider IDs)."""

    user_id: str
    tier: str
    effective_tier: str
    status: str
    current_period_start: str | None
    current_period_end: str | None
    trial_end: str | None
    cancel_at_period_end: bool
    is_grace_period: bool
    grace_period_ends_at: str | None
    has_billing_account: bool


class CheckoutRequest(BaseModel):
    plan: Literal["premium_monthly", "premium_annual"]
    email: str | None = Field(default=None, max_length=254)


class CheckoutResponse(BaseModel):
    session_id: str
    url: str


class PortalResponse(BaseModel):
    url: str


class SyncResponse(BaseModel):
    synced: bool
    result: ReconcileResult | None = None
    subscription: SubscriptionResponse


def _iso(value) -> str | None:
    return value.isoformat() if value else None


def _to_response(
    subscription: Subscription, subscriptions: SubscriptionState
) -> SubscriptionResponse:
    return SubscriptionResponse(
        user_id=subscription.user_id,
        tier=subscription.tier.value,
        effective_tier=subscriptions.effective_tier(subscription).value,
        status=subscription.status.value,
        current_period_start=_iso(subscription.current_period_start),
        current_period_end=_iso(subscription.current_period_end),
        trial_end=_iso(subscription.trial_end),
        cancel_at_period_end=subscription.cancel_at_period_end,
        is_grace_period=subscription.is_grace_period,
        grace_period_ends_at=_iso(subscription.grace_period_ends_at),
        has_billing_account=subscription.stripe_customer_id is not None,
    )


def _require_stripe(stripe_service: StripeService) -> None:
    if not stripe_service.is_enabled:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Billing is not configured",
        )


@router.get("", response_model=SubscriptionResponse)
async def get_subscription(
    user_id: str = Depends(get_authenticated_user),
    subscriptions: SubscriptionState = Depends(get_subscription_state),
) -> SubscriptionResponse:
    subscription = await subscriptions.get(user_id)
    return _to_response(subscription, subscriptions)


async def _set_cancel_at_period_end(
    user_id: str,
    cancel: bool,
    subscriptions: SubscriptionState,
    stripe_service: StripeService,
) -> SubscriptionResponse:
    subscription = await subscriptions.get(user_id)

    # Provider first; local state only changes once Stripe accepted it
    if stripe_service.is_enabled and subscription.stripe_subscription_id:
        await stripe_service.set_cancel_at_period_end(subscription, cancel)

    updated = await subscriptions.set_cancel_at_period_end(user_id, cancel)
    return _to_response(updated, subscriptions)


@router.post("/cancel", response_model=SubscriptionResponse)
async def cancel_subscription(
    user_id: str = Depends(get_authenticated_user),
    subscriptions: SubscriptionState = Depends(get_subscription_state),
    stripe_service: StripeService = Depends(get_stripe_service),
) -> SubscriptionResponse:
    """
    Cancel at the end of the current period.

    The tier is unchanged until the provider reports the period end.

    Raises:
        409: No subscription to cancel
    """
    return await _set_cancel_at_period_end(user_id, True, subscriptions, stripe_service)


@router.post("/reactivate", response_model=SubscriptionResponse)
async def reactivate_subscription(
    user_id: str = Depends(get_authenticated_user),
    subscriptions: SubscriptionState = Depends(get_subscription_state),
    stripe_service: StripeService = Depends(get_stripe_service),
) -> SubscriptionResponse:
    """Undo a pending cancellation."""
    return await _set_cancel_at_period_end(user_id, False, subscriptions, stripe_service)


@router.post("/checkout", response_model=CheckoutResponse)
async def create_checkout(
    body: CheckoutRequest,
    user_id: str = Depends(get_authenticated_user),
    stripe_service: StripeService = Depends(get_stripe_service),
) -> CheckoutResponse:
    """
    Start a Stripe checkout for a premium plan.

    Raises:
        409: Already subscribed
        503: Billing not configured or Stripe unavailable
    """
    _require_stripe(stripe_service)
    session = await stripe_service.create_checkout_session(user_id, body.email, body.plan)
    return CheckoutResponse(**session)


@router.post("/portal", response_model=PortalResponse)
async def create_portal(
    user_id: str = Depends(get_authenticated_user),
    stripe_service: StripeService = Depends(get_stripe_service),
) -> PortalResponse:
    """Stripe customer portal for payment methods and invoices."""
    _require_stripe(stripe_service)
    session = await stripe_service.create_portal_session(user_id)
    return PortalResponse(**session)


@router.post("/sync", response_model=SyncResponse)
async def sync_subscription(
    user_id: str = Depends(get_authenticated_user),
    subscriptions: SubscriptionState = Depends(get_subscription_state),
    stripe_service: StripeService = Depends(get_stripe_service),
    reconciler: BillingEventReconciler = Depends(get_reconciler),
) -> SyncResponse:
    """Pull the latest subscription from Stripe (after checkout redirect, or on support request)."""
    _require_stripe(stripe_service)
    result = await stripe_service.sync_subscription(user_id, reconciler)

    subscription = await subscriptions.get(user_id)
    return SyncResponse(
        synced=result is not None,
        result=result,
        subscription=_to_response(subscription, subscriptions),
    )
