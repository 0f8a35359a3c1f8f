"""
Middleware Module
"""

from newsletter.middleware.correlation_id import (
    REQUEST_ID_HEADER,
    get_correlation_id,
    install_request_id_middleware,
)

__all__ = ["REQUEST_ID_HEADER", "get_correlation_id", "install_request_id_middleware"]
