"""
Observability infrastructure for production monitoring.

Components:
- metrics.py: Prometheus metrics (counters, histograms, gauges)
- logging.py: Structured JSON logging with request context
- middleware.py / logging_middleware.py: HTTP instrumentation
"""

from clipper_billing.observability.metrics import (
    track_billing_event,
    track_billing_event_failure,
    track_error,
    track_quota_decision,
    track_request,
    track_tier_transition,
)

__all__ = [
    "track_request",
    "track_quota_decision",
    "track_billing_event",
    "track_billing_event_failure",
    "track_tier_transition",
    "track_error",
]
