"""
Error Taxonomy
Closed set of errors raised by the publish path and the delivery worker
"""

from typing import Dict, Type


class NewsletterError(Exception):
    """Base class for all errors raised by this service."""


class InvalidInput(NewsletterError):
    """A required field is missing or empty. Raised before any reservation."""


class Unauthenticated(NewsletterError):
    """No actor context on the request. The guard is never consulted."""


class RequestInProgress(NewsletterError):
    """Another execution holds a fresh pending reservation for the same key."""


class StoreFailure(NewsletterError):
    """The store transaction could not commit. Nothing was persisted."""


class DeliveryFailure(NewsletterError):
    """Base class for email transport failures. Contained in the worker."""


class TransientDeliveryFailure(DeliveryFailure):
    """Timeout or retryable transport error. The task is retried with backoff."""


class PermanentDeliveryFailure(DeliveryFailure):
    """Non-retryable rejection. The task is dropped."""


# Client-visible status for each error reaching the HTTP boundary.
# Delivery failures never reach it.
ERROR_STATUS_CODES: Dict[Type[NewsletterError], int] = {
    InvalidInput: 400,
    Unauthenticated: 303,
    RequestInProgress: 409,
    StoreFailure: 500,
}


def status_code_for(error: NewsletterError) -> int:
    """Look up the HTTP status for an error, 500 when it is not mapped."""
    for error_type, status_code in ERROR_STATUS_CODES.items():
        if isinstance(error, error_type):
            return status_code
    return 500
