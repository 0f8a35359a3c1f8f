"""
Monitoring Module
Exports for structured logging, error tracking and the email API circuit breaker
"""

from newsletter.services.monitoring.logging import setup_logging, configure_structlog, CorrelationJsonFormatter
from newsletter.services.monitoring.circuit_breakers import (
    create_email_api_breaker,
    get_email_api_breaker,
    CircuitBreakerError,
    CircuitBreakerLogListener,
)
from newsletter.services.monitoring.error_tracking import init_sentry, add_breadcrumb

__all__ = [
    "setup_logging",
    "configure_structlog",
    "CorrelationJsonFormatter",
    "create_email_api_breaker",
    "get_email_api_breaker",
    "CircuitBreakerError",
    "CircuitBreakerLogListener",
    "init_sentry",
    "add_breadcrumb",
]
