"""
Test doubles and builders shared by the test modules.
"""

import threading
import time
from dataclasses import dataclass
from typing import List, Optional

from newsletter.errors import StoreFailure
from newsletter.schemas import PublishNewsletterForm
from newsletter.services.delivery_worker import DeliveryWorker
from newsletter.store.memory import InMemoryTransaction

ACTOR_HEADER = "X-Authenticated-User-Id"


@dataclass(frozen=True)
class SentEmail:
    recipient: str
    subject: str
    html_body: str
    text_body: str


class RecordingEmailClient:
    """
    Email client double.

    Every call is recorded in `calls`; successful ones also in `sent`.
    `failures` is consumed one entry per call: an exception instance is
    raised, None means success.
    """

    def __init__(self, failures: Optional[list] = None, delay: float = 0.0):
        self.failures = list(failures or [])
        self.delay = delay
        self.calls: List[SentEmail] = []
        self.sent: List[SentEmail] = []
        self._lock = threading.Lock()

    def send(self, recipient: str, subject: str, html_body: str, text_body: str) -> None:
        if self.delay:
            time.sleep(self.delay)
        email = SentEmail(recipient, subject, html_body, text_body)
        with self._lock:
            self.calls.append(email)
            failure = self.failures.pop(0) if self.failures else None
            if failure is not None:
                raise failure
            self.sent.append(email)

    def close(self) -> None:
        pass


class SlowTransaction(InMemoryTransaction):
    """Holds the reservation long enough for duplicates to pile up behind it."""

    def list_confirmed_subscriber_emails(self):
        time.sleep(0.2)
        return super().list_confirmed_subscriber_emails()


class FailingEnqueueTransaction(InMemoryTransaction):

    def enqueue_delivery_tasks(self, issue_id, subscriber_emails, now):
        raise StoreFailure("connection lost")


def make_form(**overrides) -> PublishNewsletterForm:
    fields = {
        "title": "Issue #1",
        "html_content": "<p>Hello subscribers</p>",
        "text_content": "Hello subscribers",
        "idempotency_key": "key-1",
    }
    fields.update(overrides)
    return PublishNewsletterForm(**fields)


def make_worker(store, email_client, **overrides) -> DeliveryWorker:
    options = {
        "max_retries": 5,
        "min_backoff_seconds": 15,
        "max_backoff_seconds": 300,
        "claim_lease_seconds": 120,
        "poll_interval_seconds": 0.01,
        "error_backoff_seconds": 0.01,
    }
    options.update(overrides)
    return DeliveryWorker(store=store, email_client=email_client, **options)
