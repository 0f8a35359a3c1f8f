"""
Delivery Worker
Drains the issue delivery queue: claim one task, send it, resolve it
"""

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional, Tuple, Union

import structlog

from newsletter.config import settings
from newsletter.errors import DeliveryFailure, PermanentDeliveryFailure
from newsletter.services.email_client import EmailClient
from newsletter.services.monitoring.error_tracking import add_breadcrumb
from newsletter.store.base import ClaimedTask, IssueData, Store, utcnow

logger = structlog.get_logger(__name__)


class ExecutionOutcome(Enum):
    TASK_COMPLETED = "task_completed"
    EMPTY_QUEUE = "empty_queue"


class DeliveryOutcome(Enum):
    DELIVERED = "delivered"
    TRANSIENT_FAILURE = "transient_failure"
    PERMANENT_FAILURE = "permanent_failure"


class Resolution(Enum):
    DELETED = "deleted"
    RETRY_SCHEDULED = "retry_scheduled"
    DROPPED = "dropped"
    CLAIM_LOST = "claim_lost"


@dataclass(frozen=True)
class Claimed:
    task: ClaimedTask
    issue: Optional[IssueData]


@dataclass(frozen=True)
class Empty:
    pass


def compute_backoff(retry_count: int, min_backoff_seconds: int, max_backoff_seconds: int) -> timedelta:
    """
    Exponential backoff before retry number `retry_count` (1-based).

    min, 2*min, 4*min, ... capped at max.
    """
    exponent = max(0, retry_count - 1)
    seconds = min(max_backoff_seconds, min_backoff_seconds * (2 ** exponent))
    return timedelta(seconds=seconds)


class DeliveryWorker:
    """
    Single-task delivery loop.

    Each task is claimed in its own short transaction (row lock plus claim
    lease), sent with no store lock held, then resolved in another short
    transaction guarded by the claim token. Several workers, in one process or
    many, can drain the same queue.

    State machine per task:
        pending -> claimed -> deleted (delivered)
                           -> pending (retry with backoff)
                           -> deleted (dropped: permanent failure or retries exhausted)
    """

    def __init__(
        self,
        store: Store,
        email_client: EmailClient,
        max_retries: Optional[int] = None,
        min_backoff_seconds: Optional[int] = None,
        max_backoff_seconds: Optional[int] = None,
        claim_lease_seconds: Optional[int] = None,
        poll_interval_seconds: Optional[float] = None,
        error_backoff_seconds: Optional[float] = None,
    ):
        self.store = store
        self.email_client = email_client
        self.max_retries = settings.delivery_max_retries if max_retries is None else max_retries
        self.min_backoff_seconds = (
            settings.delivery_min_backoff_seconds if min_backoff_seconds is None else min_backoff_seconds
        )
        self.max_backoff_seconds = (
            settings.delivery_max_backoff_seconds if max_backoff_seconds is None else max_backoff_seconds
        )
        self.claim_lease = timedelta(
            seconds=settings.delivery_claim_lease_seconds if claim_lease_seconds is None else claim_lease_seconds
        )
        self.poll_interval_seconds = (
            settings.delivery_poll_interval_seconds if poll_interval_seconds is None else poll_interval_seconds
        )
        self.error_backoff_seconds = (
            settings.delivery_error_backoff_seconds if error_backoff_seconds is None else error_backoff_seconds
        )
        self.logger = logger.bind(service="delivery_worker")

    def claim_one(self, now: Optional[datetime] = None) -> Union[Claimed, Empty]:
        """Claim the next eligible task and load its issue, then release the row lock."""
        now = now or utcnow()
        with self.store.transaction() as tx:
            task = tx.claim_delivery_task(now, now + self.claim_lease)
            if task is None:
                return Empty()
            issue = tx.get_issue(task.issue_id)
        return Claimed(task=task, issue=issue)

    def send(self, claimed: Claimed) -> Tuple[DeliveryOutcome, Optional[str]]:
        """Call the email transport. No store transaction is open here. Returns (outcome, error)."""
        task, issue = claimed.task, claimed.issue
        log = self.logger.bind(task_id=task.id, issue_id=task.issue_id, retry_count=task.retry_count)

        if issue is None:
            log.error("delivery_issue_missing")
            return DeliveryOutcome.PERMANENT_FAILURE, "issue missing"

        try:
            self.email_client.send(
                recipient=task.subscriber_email,
                subject=issue.title,
                html_body=issue.html_body,
                text_body=issue.text_body
            )
        except PermanentDeliveryFailure as e:
            log.warning("delivery_permanent_failure", error=str(e))
            return DeliveryOutcome.PERMANENT_FAILURE, str(e)
        except DeliveryFailure as e:
            log.warning("delivery_transient_failure", error=str(e))
            return DeliveryOutcome.TRANSIENT_FAILURE, str(e)
        except Exception as e:
            # Unknown exception - retry to be safe
            log.error("delivery_unexpected_error", error=str(e), exc_info=True)
            return DeliveryOutcome.TRANSIENT_FAILURE, str(e)

        log.info("delivery_sent")
        return DeliveryOutcome.DELIVERED, None

    def resolve(
        self,
        task: ClaimedTask,
        outcome: DeliveryOutcome,
        error: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Resolution:
        """Delete, reschedule or drop a claimed task according to the send outcome."""
        now = now or utcnow()
        log = self.logger.bind(task_id=task.id, issue_id=task.issue_id, retry_count=task.retry_count)

        if outcome is DeliveryOutcome.TRANSIENT_FAILURE and task.retry_count < self.max_retries:
            retry_count = task.retry_count + 1
            next_attempt_at = now + compute_backoff(
                retry_count, self.min_backoff_seconds, self.max_backoff_seconds
            )
            with self.store.transaction() as tx:
                rescheduled = tx.reschedule_delivery_task(
                    task.id, task.claim_token, retry_count, next_attempt_at, error or outcome.value
                )
            if not rescheduled:
                log.warning("delivery_claim_lost")
                return Resolution.CLAIM_LOST
            log.info("delivery_retry_scheduled", next_retry_count=retry_count, next_attempt_at=next_attempt_at.isoformat())
            return Resolution.RETRY_SCHEDULED

        with self.store.transaction() as tx:
            deleted = tx.delete_delivery_task(task.id, task.claim_token)
        if not deleted:
            log.warning("delivery_claim_lost")
            return Resolution.CLAIM_LOST

        if outcome is DeliveryOutcome.DELIVERED:
            return Resolution.DELETED

        # Dead-letter
        log.error(
            "delivery_dropped",
            reason=outcome.value,
            retries_exhausted=outcome is DeliveryOutcome.TRANSIENT_FAILURE,
            error=error
        )
        add_breadcrumb(
            category="delivery",
            message="delivery task dropped",
            level="error",
            data={"task_id": task.id, "issue_id": task.issue_id, "reason": outcome.value}
        )
        return Resolution.DROPPED

    def try_execute_task(self) -> ExecutionOutcome:
        """Process at most one task."""
        claimed = self.claim_one()
        if isinstance(claimed, Empty):
            return ExecutionOutcome.EMPTY_QUEUE

        outcome, error = self.send(claimed)
        self.resolve(claimed.task, outcome, error)
        return ExecutionOutcome.TASK_COMPLETED

    def drain(self, max_tasks: Optional[int] = None) -> int:
        """
        Execute tasks until the queue reports empty.

        Tasks rescheduled into the future are not eligible, so a drain always
        terminates. Returns the number of tasks processed.
        """
        processed = 0
        while max_tasks is None or processed < max_tasks:
            if self.try_execute_task() is ExecutionOutcome.EMPTY_QUEUE:
                break
            processed += 1
        return processed

    def run_until_stopped(self, stop_event: threading.Event) -> None:
        """
        Poll the queue until `stop_event` is set.

        A stop request is honoured between tasks: an in-flight send completes
        or times out first.
        """
        self.logger.info("delivery_worker_started", poll_interval=self.poll_interval_seconds)

        while not stop_event.is_set():
            try:
                outcome = self.try_execute_task()
            except Exception as e:
                self.logger.error("delivery_worker_iteration_failed", error=str(e), exc_info=True)
                stop_event.wait(self.error_backoff_seconds)
                continue

            if outcome is ExecutionOutcome.EMPTY_QUEUE:
                stop_event.wait(self.poll_interval_seconds)

        self.logger.info("delivery_worker_stopped")
