"""
Request ID Middleware

Every request gets an X-Request-ID (taken from the caller or generated). The
id is echoed on the response, bound on log lines and carried into the publish
command as the actor context's request id.
"""

from asgi_correlation_id import CorrelationIdMiddleware
from asgi_correlation_id.context import correlation_id
from fastapi import FastAPI

REQUEST_ID_HEADER = "X-Request-ID"


def install_request_id_middleware(app: FastAPI) -> None:
    app.add_middleware(
        CorrelationIdMiddleware,
        header_name=REQUEST_ID_HEADER,
        update_request_header=True
    )


def get_correlation_id() -> str:
    """Current request id, 'none' outside a request (worker, scheduler jobs)."""
    return correlation_id.get() or 'none'
