"""
Sentry Error Tracking
"""

import logging
from typing import Optional

logger = logging.getLogger(__name__)


def init_sentry(with_fastapi: bool = True) -> None:
    """
    Initialize Sentry SDK.

    If SENTRY_DSN is not configured, logs a warning and returns (disabled).
    """
    from newsletter.config import settings

    if settings.sentry_dsn is None:
        logger.warning("Sentry DSN not configured - error tracking disabled")
        return

    import sentry_sdk

    integrations = []
    if with_fastapi:
        from sentry_sdk.integrations.fastapi import FastApiIntegration
        integrations.append(FastApiIntegration())

    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.sentry_environment or settings.environment,
        traces_sample_rate=0.1,  # 10% of requests traced
        integrations=integrations,
    )

    logger.info(
        "Sentry initialized",
        extra={"environment": settings.sentry_environment or settings.environment}
    )


def add_breadcrumb(
    category: str,
    message: str,
    level: str = "info",
    data: Optional[dict] = None
) -> None:
    """
    Add breadcrumb to Sentry for the processing trail.

    A no-op when Sentry was never initialized.
    """
    import sentry_sdk

    sentry_sdk.add_breadcrumb(
        category=category,
        message=message,
        level=level,
        data=data or {}
    )
