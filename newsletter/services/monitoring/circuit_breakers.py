"""
Circuit Breaker for the Email API

Opens after consecutive transient failures so the delivery worker stops
hammering an unavailable email provider, and attempts recovery after the
reset timeout. Sends rejected while the circuit is open are retried later
like any other transient failure.
"""

import logging
from typing import Optional

import pybreaker

from newsletter.config import settings
from newsletter.errors import PermanentDeliveryFailure

logger = logging.getLogger(__name__)


class CircuitBreakerLogListener(pybreaker.CircuitBreakerListener):
    """Logs circuit breaker state changes."""

    def state_change(self, cb: pybreaker.CircuitBreaker, old_state: pybreaker.CircuitBreakerState, new_state: pybreaker.CircuitBreakerState):
        log = logger.error if new_state.name == pybreaker.STATE_OPEN else logger.warning
        log(
            f"Circuit breaker state change: {cb.name} transitioned from {old_state.name} to {new_state.name}",
            extra={
                "circuit_breaker": cb.name,
                "old_state": old_state.name,
                "new_state": new_state.name,
                "fail_count": cb.fail_counter
            }
        )


def create_email_api_breaker(
    fail_max: Optional[int] = None,
    reset_timeout: Optional[int] = None,
) -> pybreaker.CircuitBreaker:
    """
    Create a circuit breaker for the email API.

    Permanent rejections (bad recipient) say nothing about provider health,
    so they do not count as failures.
    """
    return pybreaker.CircuitBreaker(
        name="email_api",
        fail_max=fail_max or settings.circuit_breaker_fail_max,
        reset_timeout=reset_timeout or settings.circuit_breaker_reset_timeout,
        exclude=[PermanentDeliveryFailure],
        listeners=[CircuitBreakerLogListener()]
    )


# Module-level instance (lazy initialization)
_email_api_breaker: Optional[pybreaker.CircuitBreaker] = None


def get_email_api_breaker() -> pybreaker.CircuitBreaker:
    """
    Get the shared email API circuit breaker.

    Lazy initializes the breaker on first access to avoid import-time side effects.
    """
    global _email_api_breaker

    if _email_api_breaker is None:
        _email_api_breaker = create_email_api_breaker()
        logger.info("Initialized email API circuit breaker")
    return _email_api_breaker


# Re-export exception for caller handling
from pybreaker import CircuitBreakerError  # noqa: E402

__all__ = [
    "CircuitBreakerLogListener",
    "create_email_api_breaker",
    "get_email_api_breaker",
    "CircuitBreakerError",
]
