"""API routers for the billing service."""

from clipper_billing.routers.admin import router as admin_router
from clipper_billing.routers.subscription import router as subscription_router
from clipper_billing.routers.usage import router as usage_router
from clipper_billing.routers.webhooks import router as webhooks_router

__all__ = ["admin_router", "subscription_router", "usage_router", "webhooks_router"]
