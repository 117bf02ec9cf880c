"""
FastAPI middleware for structured logging with request context.

Automatically:
- Uses X-Request-ID from the caller or generates one
- Extracts trace_id from X-Trace-ID header
- Binds the calling user from X-User-ID
- Logs request completion with latency
- Echoes X-Request-ID and X-Trace-ID on the response
"""

import time
import uuid
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from clipper_billing.observability.logging import RequestContext, get_logger

logger = get_logger(__name__)


class StructuredLoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware for request logging with structured context.

    Health and metrics probes are not logged.
    """

    EXCLUDED_PATHS = {
        "/health",
        "/metrics",
        "/docs",
        "/redoc",
        "/openapi.json",
    }

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("x-request-id") or f"req_{uuid.uuid4().hex[:16]}"
        trace_id = request.headers.get("x-trace-id") or f"trace_{uuid.uuid4().hex[:16]}"
        user_id = request.headers.get("x-user-id") or None

        with RequestContext(request_id=request_id, trace_id=trace_id, user_id=user_id):
            should_log = request.url.path not in self.EXCLUDED_PATHS
            start_time = time.perf_counter()

            try:
                response = await call_next(request)
            except Exception as exc:
                latency_ms = (time.perf_counter() - start_time) * 1000
                logger.error(
                    "HTTP request failed",
                    method=request.method,
                    path=request.url.path,
                    latency_ms=round(latency_ms, 2),
                    exception_type=type(exc).__name__,
                    exc_info=True,
                )
                # Re-raise for FastAPI exception handlers
                raise

            latency_ms = (time.perf_counter() - start_time) * 1000
            if should_log:
                logger.info(
                    "HTTP request completed",
                    method=request.method,
                    path=request.url.path,
                    status_code=response.status_code,
                    latency_ms=round(latency_ms, 2),
                )

            response.headers["X-Request-ID"] = request_id
            response.headers["X-Trace-ID"] = trace_id
            return response
