"""
FastAPI application for the clipper billing service.

Provides REST API for:
- Usage metering and quota checks
- Subscription management (Stripe checkout, portal, cancel, sync)
- Stripe webhook intake
- Health monitoring and Prometheus metrics
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response, status
from fastapi.responses import JSONResponse

from clipper_billing.billing.quota_gate import QuotaGate
from clipper_billing.billing.quota_policy import QuotaPolicy
from clipper_billing.billing.reconciler import BillingEventReconciler
from clipper_billing.billing.stripe_service import StripeService
from clipper_billing.billing.subscription_state import SubscriptionState
from clipper_billing.billing.usage_events import UsageEventLog
from clipper_billing.billing.usage_tracking import UsageCounter
from clipper_billing.billing.webhooks import StripeWebhookHandler
from clipper_billing.config import Settings, get_settings
from clipper_billing.errors import (
    IdempotencyConflict,
    InvalidStateTransition,
    PaymentProviderUnavailable,
    ServiceUnavailable,
    WebhookSignatureError,
)
from clipper_billing.observability.logging import configure_logging, get_logger
from clipper_billing.observability.logging_middleware import StructuredLoggingMiddleware
from clipper_billing.observability.metrics import generate_metrics, track_error
from clipper_billing.observability.middleware import PrometheusMiddleware, normalize_endpoint
from clipper_billing.routers import (
    admin_router,
    subscription_router,
    usage_router,
    webhooks_router,
)
from clipper_billing.storage.database import BillingDatabase

logger = get_logger(__name__)

RETRY_AFTER_SECONDS = 30


def build_services(app: FastAPI, settings: Settings, database: BillingDatabase) -> None:
    """Wire every billing component onto app.state around one store handle."""
    subscriptions = SubscriptionState(database)
    counter = UsageCounter(database)
    reconciler = BillingEventReconciler(
        database, quota_config=settings.quota, stripe_config=settings.stripe
    )

    app.state.database = database
    app.state.subscriptions = subscriptions
    app.state.quota_gate = QuotaGate(subscriptions, QuotaPolicy(settings.quota), counter)
    app.state.usage_events = UsageEventLog(database, max_page_size=settings.quota.events_page_max)
    app.state.reconciler = reconciler
    app.state.stripe_service = StripeService(settings.stripe, subscriptions)
    app.state.webhook_handler = StripeWebhookHandler(settings.stripe, reconciler)


def create_app(
    settings: Settings | None = None, database: BillingDatabase | None = None
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Configuration (defaults to get_settings())
        database: Store handle to use instead of opening settings.database.path

    Returns:
        FastAPI: Configured application
    """
    if settings is None:
        settings = get_settings()
    else:
        settings.validate_configuration()

    configure_logging(
        log_level=settings.logging.level,
        json_output=settings.logging.json_output,
        colorized=settings.logging.colorized,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Application lifespan manager.

        Opens the billing store, builds the services and closes the store on
        shutdown.
        """
        logger.info("=== Clipper Billing Service Starting ===")

        db = database or BillingDatabase(
            db_path=settings.database.path,
            busy_timeout_seconds=settings.database.busy_timeout_seconds,
        )

        try:
            await db.initialize()
            build_services(app, settings, db)
            logger.info(
                "=== Service Ready ===",
                stripe_enabled=settings.stripe.is_configured,
                grace_period_days=settings.quota.grace_period_days,
            )

            yield  # Application runs here

        finally:
            logger.info("=== Shutting down ===")
            if database is None:
                db.close()
                logger.info("Billing database connections closed")
            logger.info("=== Shutdown complete ===")

    app = FastAPI(
        title="Clipper Billing API",
        description="Subscription tiers and usage quotas for Clipper",
        version=settings.logging.service_version,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.settings = settings

    # Processed in reverse order of registration:
    # PrometheusMiddleware (inner) tracks metrics, StructuredLoggingMiddleware
    # (outer) sets request context
    app.add_middleware(PrometheusMiddleware)
    app.add_middleware(StructuredLoggingMiddleware)

    app.include_router(usage_router)
    app.include_router(subscription_router)
    app.include_router(webhooks_router)
    app.include_router(admin_router)

    register_exception_handlers(app)
    register_system_routes(app)
    return app


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(ServiceUnavailable)
    async def service_unavailable_handler(request: Request, exc: ServiceUnavailable):
        """Store or Stripe outage. Internal error text is never returned."""
        error_type = "stripe" if isinstance(exc, PaymentProviderUnavailable) else "storage"
        track_error(error_type=error_type, endpoint=normalize_endpoint(request.url.path))
        logger.error(
            "Backing service unavailable",
            path=request.url.path,
            method=request.method,
            error=str(exc),
            exc_info=True,
        )
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "error": "service_unavailable",
                "message": "The service is temporarily unavailable, please try again later",
            },
            headers={"Retry-After": str(RETRY_AFTER_SECONDS)},
        )

    @app.exception_handler(InvalidStateTransition)
    async def invalid_transition_handler(request: Request, exc: InvalidStateTransition):
        logger.warning(
            "Invalid subscription transition",
            path=request.url.path,
            error=str(exc),
            tier=exc.tier,
            status=exc.status,
        )
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content={"error": "invalid_state_transition", "message": str(exc)},
        )

    @app.exception_handler(IdempotencyConflict)
    async def idempotency_conflict_handler(request: Request, exc: IdempotencyConflict):
        logger.warning("Idempotency key conflict", path=request.url.path, error=str(exc))
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content={"error": "idempotency_conflict", "message": str(exc)},
        )

    @app.exception_handler(WebhookSignatureError)
    async def webhook_signature_handler(request: Request, exc: WebhookSignatureError):
        logger.warning("Webhook rejected", path=request.url.path, error=str(exc))
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": "invalid_webhook", "message": str(exc)},
        )

    @app.exception_handler(ValueError)
    async def validation_error_handler(request: Request, exc: ValueError):
        logger.warning(f"Validation error on {request.url.path}: {exc}")
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={"detail": "Validation failed", "error": str(exc)},
        )


def register_system_routes(app: FastAPI) -> None:
    @app.get("/health", tags=["System"])
    async def health(request: Request):
        """Liveness plus store reachability."""
        database: BillingDatabase | None = getattr(request.app.state, "database", None)
        try:
            store_ok = database is not None and await database.ping()
        except ServiceUnavailable:
            store_ok = False

        body = {
            "status": "healthy" if store_ok else "unhealthy",
            "database": "ok" if store_ok else "unavailable",
            "stripe_configured": request.app.state.settings.stripe.is_configured,
        }
        code = status.HTTP_200_OK if store_ok else status.HTTP_503_SERVICE_UNAVAILABLE
        return JSONResponse(status_code=code, content=body)

    @app.get("/metrics", tags=["System"])
    async def metrics():
        """Prometheus metrics in exposition format."""
        metrics_data, content_type = generate_metrics()
        return Response(content=metrics_data, media_type=content_type)


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "clipper_billing.main:app",
        host=settings.service.host,
        port=settings.service.port,
        log_level=settings.service.log_level.lower(),
    )
