"""
Prometheus metrics for the billing service.

Metrics tracked:
- Request latency (histogram) per endpoint
- Request count (counter) with status codes
- Active requests (gauge)
- Quota decisions (counter) by feature, tier and outcome
- Usage units charged (counter)
- Billing events processed (counter) by type and outcome
- Billing event failures (counter) by type and error
- Tier transitions (counter)
- Error rates (counter) by error type

Integration:
- Exposed via /metrics endpoint (Prometheus scraping)
- Label values are closed enums or normalized paths, never user IDs
"""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

# ============================================================================
# REQUEST METRICS
# ============================================================================

http_request_duration_seconds = Histogram(
    "clipper_billing_http_request_duration_seconds",
    "HTTP request latency in seconds",
    labelnames=["method", "endpoint", "status_code"],
    buckets=(
        0.001,  # 1ms
        0.005,  # 5ms
        0.010,  # 10ms
        0.025,  # 25ms
        0.050,  # 50ms
        0.100,  # 100ms
        0.250,  # 250ms
        0.500,  # 500ms
        1.000,  # 1s
        2.500,  # 2.5s (Stripe round trips)
        5.000,  # 5s
    ),
)

http_requests_total = Counter(
    "clipper_billing_http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "endpoint", "status_code"],
)

http_requests_active = Gauge(
    "clipper_billing_http_requests_active",
    "Number of in-flight HTTP requests",
    labelnames=["method", "endpoint"],
)

# ============================================================================
# QUOTA METRICS
# ============================================================================

quota_decisions_total = Counter(
    "clipper_billing_quota_decisions_total",
    "Quota gate decisions",
    labelnames=["feature", "tier", "outcome"],  # outcome: charged, quota_exceeded, replayed
)

usage_units_charged_total = Counter(
    "clipper_billing_usage_units_charged_total",
    "Usage units charged to counters",
    labelnames=["feature", "tier"],
)

# ============================================================================
# BILLING EVENT METRICS
# ============================================================================

billing_events_total = Counter(
    "clipper_billing_billing_events_total",
    "Billing provider events processed",
    labelnames=["event_type", "outcome"],
)

billing_event_failures_total = Counter(
    "clipper_billing_billing_event_failures_total",
    "Billing provider events recorded for manual replay",
    labelnames=["event_type", "error_type"],
)

tier_transitions_total = Counter(
    "clipper_billing_tier_transitions_total",
    "Subscription tier changes",
    labelnames=["from_tier", "to_tier"],
)

# ============================================================================
# ERROR METRICS
# ============================================================================

errors_total = Counter(
    "clipper_billing_errors_total",
    "Total errors by type",
    labelnames=["error_type", "endpoint"],
)

# ============================================================================
# HELPER FUNCTIONS
# ============================================================================


def track_request(
    method: str,
    endpoint: str,
    status_code: int,
    duration_seconds: float,
) -> None:
    """
    Track HTTP request metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        endpoint: Normalized API endpoint path
        status_code: HTTP status code
        duration_seconds: Request duration in seconds
    """
    http_request_duration_seconds.labels(
        method=method,
        endpoint=endpoint,
        status_code=status_code,
    ).observe(duration_seconds)

    http_requests_total.labels(
        method=method,
        endpoint=endpoint,
        status_code=status_code,
    ).inc()


def track_quota_decision(feature: str, tier: str, outcome: str, amount: int = 0) -> None:
    """
    Track a quota gate decision.

    Args:
        feature: Metered feature
        tier: Effective tier used for the decision
        outcome: charged, quota_exceeded or replayed
        amount: Units charged (only counted for charged)
    """
    quota_decisions_total.labels(feature=feature, tier=tier, outcome=outcome).inc()

    if outcome == "charged" and amount > 0:
        usage_units_charged_total.labels(feature=feature, tier=tier).inc(amount)


def track_billing_event(event_type: str, outcome: str) -> None:
    billing_events_total.labels(event_type=event_type, outcome=outcome).inc()


def track_billing_event_failure(event_type: str, error_type: str) -> None:
    billing_event_failures_total.labels(event_type=event_type, error_type=error_type).inc()


def track_tier_transition(from_tier: str, to_tier: str) -> None:
    """Track a tier change (no-op when the tier did not change)."""
    if from_tier == to_tier:
        return
    tier_transitions_total.labels(from_tier=from_tier, to_tier=to_tier).inc()


def track_error(error_type: str, endpoint: str) -> None:
    """
    Track error occurrence.

    Args:
        error_type: Error type (validation, storage, stripe, etc.)
        endpoint: API endpoint where error occurred
    """
    errors_total.labels(
        error_type=error_type,
        endpoint=endpoint,
    ).inc()


# ============================================================================
# METRICS ENDPOINT
# ============================================================================


def generate_metrics() -> tuple[bytes, str]:
    """
    Generate Prometheus metrics in exposition format (bytes).

    Returns:
        tuple: (metrics_bytes, content_type)
    """
    metrics_data = generate_latest(REGISTRY)
    return metrics_data, CONTENT_TYPE_LATEST
