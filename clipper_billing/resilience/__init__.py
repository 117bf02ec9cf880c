"""
Resilience patterns for external dependencies.

Circuit breakers prevent cascade failures when Stripe fails; tenacity retries
absorb transient store and ordering failures during webhook reconciliation.
"""

from clipper_billing.resilience.circuit_breakers import (
    get_stripe_breaker,
    reset_all_breakers,
    with_retry,
    with_stripe_circuit_breaker,
)

__all__ = [
    "get_stripe_breaker",
    "reset_all_breakers",
    "with_retry",
    "with_stripe_circuit_breaker",
]
