"""
FastAPI dependencies for caller identity and service access.

Security:
- The upstream gateway authenticates end users and forwards X-User-ID
- X-API-Key carries the shared gateway secret (constant-time comparison)
- Admin endpoints require X-Admin-Key matching ADMIN_API_KEY
- user_id is only ever taken from the authenticated header, never from a body

Services are built once in the app lifespan and read from app.state.
"""

import hmac
import logging

from fastapi import Header, HTTPException, Request, status

from clipper_billing.billing.quota_gate import QuotaGate
from clipper_billing.billing.reconciler import BillingEventReconciler
from clipper_billing.billing.stripe_service import StripeService
from clipper_billing.billing.subscription_state import SubscriptionState
from clipper_billing.billing.usage_events import UsageEventLog
from clipper_billing.billing.webhooks import StripeWebhookHandler
from clipper_billing.config import Settings
from clipper_billing.observability.logging import set_user_id

logger = logging.getLogger(__name__)

MAX_USER_ID_LENGTH = 128


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


async def get_authenticated_user(
    request: Request,
    x_user_id: str | None = Header(None, alias="X-User-ID"),
    x_api_key: str | None = Header(None, alias="X-API-Key"),
) -> str:
    """
    Validate the gateway secret and return the calling user's ID.

    Returns:
        str: Caller user ID

    Raises:
        HTTPException 401: Missing/invalid X-API-Key or missing X-User-ID
        HTTPException 400: Malformed X-User-ID
    """
    settings = get_app_settings(request)
    expected_key = settings.service.api_key

    if expected_key:
        if not x_api_key or not hmac.compare_digest(
            x_api_key.encode("utf-8"), expected_key.encode("utf-8")
        ):
            logger.warning("Rejected request with invalid gateway API key")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid API key",
            )

    user_id = (x_user_id or "").strip()
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authentication. Provide X-User-ID header.",
        )

    if len(user_id) > MAX_USER_ID_LENGTH:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"X-User-ID exceeds {MAX_USER_ID_LENGTH} characters",
        )

    request.state.user_id = user_id
    set_user_id(user_id)
    return user_id


async def verify_admin_key(
    request: Request,
    x_admin_key: str | None = Header(None, alias="X-Admin-Key"),
) -> bool:
    """
    Verify admin API key.

    Raises:
        HTTPException 503: Admin access not configured
        HTTPException 403: Key missing or wrong
    """
    admin_key = get_app_settings(request).admin_api_key
    if not admin_key:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin access is not configured",
        )

    if not x_admin_key or not hmac.compare_digest(
        x_admin_key.encode("utf-8"), admin_key.encode("utf-8")
    ):
        logger.warning("Rejected admin request with invalid key")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid admin API key",
        )
    return True


def get_quota_gate(request: Request) -> QuotaGate:
    return request.app.state.quota_gate


def get_subscription_state(request: Request) -> SubscriptionState:
    return request.app.state.subscriptions


def get_reconciler(request: Request) -> BillingEventReconciler:
    return request.app.state.reconciler


def get_usage_event_log(request: Request) -> UsageEventLog:
    return request.app.state.usage_events


def get_stripe_service(request: Request) -> StripeService:
    return request.app.state.stripe_service


def get_webhook_handler(request: Request) -> StripeWebhookHandler:
    return request.app.state.webhook_handler
