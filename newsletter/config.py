"""
Application Configuration
"""

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Database
    database_url: Optional[str] = None

    # Environment
    environment: str = "development"

    # Authentication (performed upstream, we only read the actor id)
    actor_header: str = "X-Authenticated-User-Id"

    # Email API
    email_api_base_url: str = "http://localhost:8025"
    email_api_token: Optional[str] = None
    email_sender: str = "newsletter@example.com"
    email_client_timeout_seconds: float = 10.0

    # Idempotency
    idempotency_pending_lease_seconds: int = 60  # Stale pending reservations may be taken over
    idempotency_lock_timeout_ms: int = 10000  # Bound on waiting behind a concurrent duplicate

    # Delivery Worker
    delivery_max_retries: int = 5
    delivery_min_backoff_seconds: int = 15
    delivery_max_backoff_seconds: int = 300  # 5 minutes
    delivery_claim_lease_seconds: int = 120  # Must exceed the email client timeout
    delivery_poll_interval_seconds: float = 10.0
    delivery_error_backoff_seconds: float = 1.0

    # Embedded worker (APScheduler job inside the API process, 0 = disabled)
    embedded_worker_interval_seconds: int = 0

    # Circuit Breaker
    circuit_breaker_fail_max: int = 5  # Consecutive failures before opening circuit
    circuit_breaker_reset_timeout: int = 60  # Seconds before auto-recovery attempt

    # Sentry Error Tracking
    sentry_dsn: Optional[str] = None
    sentry_environment: Optional[str] = None  # Defaults to environment setting

    class Config:
        env_file = ".env"
        case_sensitive = False


settings = Settings()
