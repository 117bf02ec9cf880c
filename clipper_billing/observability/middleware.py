"""
Observability middleware for automatic metric tracking.

Components:
- PrometheusMiddleware: Tracks all HTTP requests (latency, count, active)
  and classifies unhandled errors
"""

import logging
import re
import time
from collections.abc import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from clipper_billing.errors import PaymentProviderUnavailable, StorageUnavailableError
from clipper_billing.observability.metrics import (
    http_requests_active,
    track_error,
    track_request,
)

logger = logging.getLogger(__name__)

_QUOTA_FEATURE_PATH = re.compile(r"/usage/quota/[^/]+")


def normalize_endpoint(path: str) -> str:
    """
    Normalize endpoint path for metric cardinality.

    Examples:
        /api/v1/usage/quota/clips -> /api/v1/usage/quota/{feature}
        /api/v1/usage/current -> /api/v1/usage/current (unchanged)
    """
    return _QUOTA_FEATURE_PATH.sub("/usage/quota/{feature}", path)


def classify_error(exc: Exception) -> str:
    """Classify an unhandled exception into an error category."""
    if isinstance(exc, PaymentProviderUnavailable):
        return "stripe"

    if isinstance(exc, StorageUnavailableError):
        return "storage"

    exc_name = type(exc).__name__

    if "ValidationError" in exc_name or "ValueError" in exc_name:
        return "validation"

    if "OperationalError" in exc_name:
        return "storage"

    if "Stripe" in exc_name or "CircuitBreaker" in exc_name:
        return "stripe"

    return "internal"


class PrometheusMiddleware(BaseHTTPMiddleware):
    """
    Middleware for automatic Prometheus metric tracking.

    Tracks:
    - Request latency (histogram)
    - Request count (counter)
    - Active requests (gauge)
    - Unhandled errors by category
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        endpoint = normalize_endpoint(request.url.path)
        method = request.method

        http_requests_active.labels(method=method, endpoint=endpoint).inc()
        start_time = time.perf_counter()
        status_code = 500

        try:
            response = await call_next(request)
            status_code = response.status_code
        except Exception as exc:
            logger.error(f"Request failed: {exc}", exc_info=True)
            track_error(error_type=classify_error(exc), endpoint=endpoint)
            raise
        finally:
            duration_seconds = time.perf_counter() - start_time
            http_requests_active.labels(method=method, endpoint=endpoint).dec()
            track_request(
                method=method,
                endpoint=endpoint,
                status_code=status_code,
                duration_seconds=duration_seconds,
            )

        return response
