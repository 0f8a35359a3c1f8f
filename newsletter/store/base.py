"""
Store Interface

Repository boundary between the publish/delivery services and the durable
store. Services only ever talk to a StoreTransaction obtained from
Store.transaction(); every method runs inside that transaction.

All timestamps are naive UTC datetimes.
"""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterator, List, Optional, Tuple

import structlog

from newsletter.errors import StoreFailure

logger = structlog.get_logger(__name__)


def utcnow() -> datetime:
    """Current time as a naive UTC datetime, the store's time convention."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass(frozen=True)
class SavedResponse:
    """HTTP response cached against an idempotency key."""
    status_code: int
    headers: Tuple[Tuple[str, str], ...]
    body: bytes


@dataclass(frozen=True)
class IdempotencyEntry:
    actor_id: str
    idempotency_key: str
    state: str  # 'pending' or 'completed'
    created_at: datetime
    request_fingerprint: Optional[str] = None
    response: Optional[SavedResponse] = None

    @property
    def is_completed(self) -> bool:
        return self.state == "completed"


@dataclass(frozen=True)
class IssueData:
    id: int
    title: str
    html_body: str
    text_body: str
    created_by: str
    published_at: datetime


@dataclass(frozen=True)
class ClaimedTask:
    """A delivery task claimed by one worker until its lease expires."""
    id: int
    issue_id: int
    subscriber_email: str
    retry_count: int
    claim_token: str


@dataclass(frozen=True)
class DeliveryTaskView:
    id: int
    issue_id: int
    subscriber_email: str
    retry_count: int
    next_attempt_at: datetime
    claimed_until: Optional[datetime] = None
    last_error: Optional[str] = None


class StoreTransaction(ABC):
    """Operations available inside one store transaction."""

    # Idempotency records

    @abstractmethod
    def try_insert_idempotency_record(
        self, actor_id: str, idempotency_key: str, request_fingerprint: str, now: datetime
    ) -> bool:
        """
        Insert a pending record, doing nothing on conflict.

        Blocks while a concurrent transaction holds an uncommitted insert for
        the same key. Returns True if this transaction now owns the record.
        """

    @abstractmethod
    def get_idempotency_record(self, actor_id: str, idempotency_key: str) -> Optional[IdempotencyEntry]:
        ...

    @abstractmethod
    def take_over_idempotency_record(
        self,
        actor_id: str,
        idempotency_key: str,
        request_fingerprint: str,
        stale_before: datetime,
        now: datetime,
    ) -> bool:
        """Re-own a pending record created before `stale_before`."""

    @abstractmethod
    def complete_idempotency_record(
        self, actor_id: str, idempotency_key: str, response: SavedResponse, now: datetime
    ) -> None:
        ...

    # Issues and subscribers

    @abstractmethod
    def insert_issue(
        self, title: str, html_body: str, text_body: str, created_by: str, published_at: datetime
    ) -> int:
        ...

    @abstractmethod
    def get_issue(self, issue_id: int) -> Optional[IssueData]:
        ...

    @abstractmethod
    def list_confirmed_subscriber_emails(self) -> List[str]:
        ...

    # Delivery queue

    @abstractmethod
    def enqueue_delivery_tasks(self, issue_id: int, subscriber_emails: List[str], now: datetime) -> int:
        ...

    @abstractmethod
    def claim_delivery_task(self, now: datetime, lease_until: datetime) -> Optional[ClaimedTask]:
        """
        Claim one eligible task, skipping rows locked by other transactions
        and rows whose claim lease is still live.
        """

    @abstractmethod
    def delete_delivery_task(self, task_id: int, claim_token: str) -> bool:
        ...

    @abstractmethod
    def reschedule_delivery_task(
        self,
        task_id: int,
        claim_token: str,
        retry_count: int,
        next_attempt_at: datetime,
        last_error: Optional[str],
    ) -> bool:
        ...

    @abstractmethod
    def list_delivery_tasks(self, issue_id: int) -> List[DeliveryTaskView]:
        ...

    # Transaction control

    @abstractmethod
    def commit(self) -> None:
        ...

    @abstractmethod
    def rollback(self) -> None:
        ...

    @abstractmethod
    def close(self) -> None:
        ...


class Store(ABC):
    """Factory of store transactions."""

    @abstractmethod
    def begin(self) -> StoreTransaction:
        ...

    @contextmanager
    def transaction(self) -> Iterator[StoreTransaction]:
        """
        Run a block in one transaction.

        Commits on normal exit, rolls back and re-raises on error. Errors
        that are not part of the service taxonomy are wrapped in StoreFailure.
        """
        tx = self.begin()
        try:
            yield tx
            tx.commit()
        except StoreFailure:
            tx.rollback()
            raise
        except Exception as e:
            tx.rollback()
            if self.is_store_error(e):
                logger.error("store_transaction_failed", error=str(e), exc_info=True)
                raise StoreFailure(str(e)) from e
            raise
        finally:
            tx.close()

    def is_store_error(self, error: Exception) -> bool:
        """Whether an exception comes from the underlying store driver."""
        return False
