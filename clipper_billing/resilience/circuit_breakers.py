"""
Circuit breaker and retry helpers for external dependencies.

Prevents cascade failures when Stripe experiences outages: after repeated
failures calls fail fast with PaymentProviderUnavailable instead of tying up
request workers on a dead upstream.

Circuit breaker states:
- CLOSED: Normal operation, requests pass through
- OPEN: Failure threshold exceeded, requests fail immediately
- HALF_OPEN: Testing if service recovered, limited requests allowed
"""

import functools
import logging

from pybreaker import CircuitBreaker, CircuitBreakerError, CircuitBreakerListener
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from clipper_billing.errors import PaymentProviderUnavailable

logger = logging.getLogger(__name__)


def _on_circuit_open(breaker: CircuitBreaker) -> None:
    logger.error(
        f"Circuit breaker OPENED: {breaker.name}",
        extra={
            "breaker_name": breaker.name,
            "fail_count": breaker.fail_counter,
            "fail_max": breaker.fail_max,
            "state": "OPEN",
        },
    )


def _on_circuit_close(breaker: CircuitBreaker) -> None:
    logger.info(
        f"Circuit breaker CLOSED: {breaker.name} (service recovered)",
        extra={"breaker_name": breaker.name, "state": "CLOSED"},
    )


def _on_circuit_half_open(breaker: CircuitBreaker) -> None:
    logger.warning(
        f"Circuit breaker HALF-OPEN: {breaker.name} (testing recovery)",
        extra={"breaker_name": breaker.name, "state": "HALF_OPEN"},
    )


class _StateListener(CircuitBreakerListener):
    """Routes breaker state changes to the log callbacks above."""

    def state_change(self, cb, old_state, new_state):
        callbacks = {
            "open": _on_circuit_open,
            "closed": _on_circuit_close,
            "half-open": _on_circuit_half_open,
        }
        callback = callbacks.get(getattr(new_state, "name", str(new_state)))
        if callback:
            callback(cb)


# Opens after 3 consecutive failures, stays open for 30 seconds
stripe_breaker = CircuitBreaker(
    fail_max=3,
    reset_timeout=30,
    name="Stripe",
    listeners=[_StateListener()],
)


def get_stripe_breaker() -> CircuitBreaker:
    """
    Get Stripe circuit breaker instance.

    Returns:
        CircuitBreaker: Configured for Stripe API calls
    """
    return stripe_breaker


def reset_all_breakers() -> None:
    """
    Reset all circuit breakers to CLOSED state.

    Use for testing or manual recovery.
    """
    stripe_breaker.close()
    logger.info("All circuit breakers reset to CLOSED state")


def with_stripe_circuit_breaker(func):
    """
    Decorator to wrap synchronous Stripe SDK calls with the circuit breaker.

    Raises:
        PaymentProviderUnavailable: If the circuit is open

    Usage:
        @with_stripe_circuit_breaker
        def create_customer(...):
            return stripe.Customer.create(...)
    """

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return stripe_breaker.call(func, *args, **kwargs)
        except CircuitBreakerError as e:
            logger.warning(
                "Stripe circuit breaker OPEN - failing fast",
                extra={
                    "function": func.__name__,
                    "state": stripe_breaker.current_state,
                },
            )
            raise PaymentProviderUnavailable(
                f"Stripe service unavailable (circuit breaker open). "
                f"Retry after {stripe_breaker.reset_timeout} seconds."
            ) from e

    return wrapper


def with_retry(
    max_attempts: int = 3,
    min_wait: float = 1,
    max_wait: float = 10,
    exceptions: tuple[type[Exception], ...] = (Exception,),
    multiplier: float = 1,
):
    """
    Retry decorator with exponential backoff.

    Works for sync and async functions. The last exception is re-raised once
    attempts are exhausted.

    Args:
        max_attempts: Maximum number of attempts (including the first)
        min_wait: Minimum wait time in seconds
        max_wait: Maximum wait time in seconds
        exceptions: Exception types to retry on
        multiplier: Backoff multiplier

    Usage:
        @with_retry(max_attempts=3, exceptions=(ServiceUnavailable,))
        async def apply_event():
            ...
    """
    return retry(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=multiplier, min=min_wait, max=max_wait),
        retry=retry_if_exception_type(exceptions),
        reraise=True,
    )
