"""
Email API Client

Synchronous client for a Postmark-style email API (POST {base_url}/email).
Used by the delivery worker; never called on the request path.
"""

from typing import Optional

import httpx
import pybreaker
import structlog

from newsletter.config import settings
from newsletter.errors import PermanentDeliveryFailure, TransientDeliveryFailure
from newsletter.services.monitoring.circuit_breakers import get_email_api_breaker

logger = structlog.get_logger(__name__)


def classify_status(status_code: int) -> Optional[type]:
    """
    Map an email API status code to a failure type.

    Returns None for success, TransientDeliveryFailure for 429/5xx and
    PermanentDeliveryFailure for any other non-2xx answer.
    """
    if 200 <= status_code < 300:
        return None
    if status_code == 429 or status_code >= 500:
        return TransientDeliveryFailure
    return PermanentDeliveryFailure


class EmailClient:
    """
    Email transport with a bounded timeout.

    send() returns on success and raises TransientDeliveryFailure or
    PermanentDeliveryFailure otherwise.
    """

    def __init__(
        self,
        base_url: str,
        sender: str,
        authorization_token: Optional[str] = None,
        timeout: float = 10.0,
        breaker: Optional[pybreaker.CircuitBreaker] = None,
        http_client: Optional[httpx.Client] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.sender = sender
        self.authorization_token = authorization_token
        self.timeout = timeout
        self.breaker = breaker or get_email_api_breaker()
        self.http_client = http_client or httpx.Client(timeout=timeout)

    def send(self, recipient: str, subject: str, html_body: str, text_body: str) -> None:
        payload = {
            "From": self.sender,
            "To": recipient,
            "Subject": subject,
            "HtmlBody": html_body,
            "TextBody": text_body,
        }
        try:
            self.breaker.call(self._post, payload)
        except pybreaker.CircuitBreakerError as e:
            raise TransientDeliveryFailure(f"email API circuit open: {e}") from e

    def _post(self, payload: dict) -> None:
        headers = {}
        if self.authorization_token:
            headers["X-Postmark-Server-Token"] = self.authorization_token

        try:
            response = self.http_client.post(
                f"{self.base_url}/email",
                json=payload,
                headers=headers,
                timeout=self.timeout
            )
        except httpx.TimeoutException as e:
            logger.warning("email_api_timeout", timeout=self.timeout, error=str(e))
            raise TransientDeliveryFailure(f"email API timed out after {self.timeout}s") from e
        except httpx.TransportError as e:
            logger.warning("email_api_transport_error", error=str(e))
            raise TransientDeliveryFailure(f"email API unreachable: {e}") from e

        failure = classify_status(response.status_code)
        if failure is not None:
            logger.warning(
                "email_api_rejected",
                status=response.status_code,
                response=response.text[:500],
                permanent=failure is PermanentDeliveryFailure
            )
            raise failure(f"email API returned {response.status_code}")

    def close(self) -> None:
        self.http_client.close()


def build_email_client() -> EmailClient:
    """Email client configured from settings."""
    return EmailClient(
        base_url=settings.email_api_base_url,
        sender=settings.email_sender,
        authorization_token=settings.email_api_token,
        timeout=settings.email_client_timeout_seconds
    )
