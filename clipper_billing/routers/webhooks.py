"""
Stripe webhook endpoint.

Events are acknowledged (200) once either the applied state or a failure
record is durable. Bad signatures get 400; a store outage gets 503 so Stripe
redelivers.
"""

import logging

from fastapi import APIRouter, Depends, Header, Request

from clipper_billing.auth.dependencies import get_webhook_handler
from clipper_billing.billing.webhooks import StripeWebhookHandler
from clipper_billing.models.billing_event import ReconcileResult

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


@router.post("/stripe", response_model=ReconcileResult)
async def stripe_webhook(
    request: Request,
    handler: StripeWebhookHandler = Depends(get_webhook_handler),
    stripe_signature: str | None = Header(None, alias="Stripe-Signature"),
) -> ReconcileResult:
    payload = await request.body()
    return await handler.handle_event(payload, stripe_signature or "")
