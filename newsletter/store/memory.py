"""
In-Memory Store

Process-local implementation of the store interface, used when no
DATABASE_URL is configured and in tests.

Mirrors the row-locking behaviour the services rely on:
- an uncommitted idempotency insert blocks other inserters of the same key
  until the owning transaction commits or rolls back;
- a delivery task locked by an open transaction is skipped by claimers;
- writes become visible to other transactions only on commit.
"""

import threading
import time
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Set, Tuple

from newsletter.errors import StoreFailure
from newsletter.store.base import (
    ClaimedTask,
    DeliveryTaskView,
    IdempotencyEntry,
    IssueData,
    SavedResponse,
    Store,
    StoreTransaction,
)

RecordKey = Tuple[str, str]


class InMemoryTransaction(StoreTransaction):

    def __init__(self, store: "InMemoryStore"):
        self.store = store
        self._records: Dict[RecordKey, IdempotencyEntry] = {}
        self._issues: Dict[int, IssueData] = {}
        self._tasks: Dict[int, DeliveryTaskView] = {}
        self._claims: Dict[int, Optional[str]] = {}
        self._deleted_tasks: Set[int] = set()
        self._closed = False

    # Row locks

    def _wait(self, deadline: float, what: str) -> None:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise StoreFailure(f"lock timeout waiting for {what}")
        self.store._cond.wait(remaining)

    def _lock_task(self, task_id: int) -> None:
        # Called with the condition held
        deadline = time.monotonic() + self.store.lock_timeout
        while True:
            holder = self.store._task_locks.get(task_id)
            if holder is None or holder is self:
                self.store._task_locks[task_id] = self
                return
            self._wait(deadline, f"delivery task {task_id}")

    def _visible_task(self, task_id: int) -> Optional[DeliveryTaskView]:
        if task_id in self._deleted_tasks:
            return None
        if task_id in self._tasks:
            return self._tasks[task_id]
        return self.store._tasks.get(task_id)

    def _claim_token(self, task_id: int) -> Optional[str]:
        if task_id in self._claims:
            return self._claims[task_id]
        return self.store._claims.get(task_id)

    # Idempotency records

    def try_insert_idempotency_record(
        self, actor_id: str, idempotency_key: str, request_fingerprint: str, now: datetime
    ) -> bool:
        key = (actor_id, idempotency_key)
        with self.store._cond:
            deadline = time.monotonic() + self.store.lock_timeout
            while True:
                if key in self._records or key in self.store._records:
                    return False
                holder = self.store._reservations.get(key)
                if holder is None:
                    self.store._reservations[key] = self
                    self._records[key] = IdempotencyEntry(
                        actor_id=actor_id,
                        idempotency_key=idempotency_key,
                        state="pending",
                        created_at=now,
                        request_fingerprint=request_fingerprint
                    )
                    return True
                self._wait(deadline, f"idempotency key {idempotency_key!r}")

    def get_idempotency_record(self, actor_id: str, idempotency_key: str) -> Optional[IdempotencyEntry]:
        key = (actor_id, idempotency_key)
        with self.store._cond:
            if key in self._records:
                return self._records[key]
            return self.store._records.get(key)

    def take_over_idempotency_record(
        self,
        actor_id: str,
        idempotency_key: str,
        request_fingerprint: str,
        stale_before: datetime,
        now: datetime,
    ) -> bool:
        key = (actor_id, idempotency_key)
        with self.store._cond:
            deadline = time.monotonic() + self.store.lock_timeout
            while self.store._reservations.get(key) not in (None, self):
                self._wait(deadline, f"idempotency key {idempotency_key!r}")

            record = self.store._records.get(key)
            if record is None or record.state != "pending" or record.created_at >= stale_before:
                return False
            self.store._reservations[key] = self
            self._records[key] = replace(record, created_at=now, request_fingerprint=request_fingerprint)
            return True

    def complete_idempotency_record(
        self, actor_id: str, idempotency_key: str, response: SavedResponse, now: datetime
    ) -> None:
        key = (actor_id, idempotency_key)
        with self.store._cond:
            record = self._records.get(key)
            if record is None or record.state != "pending":
                raise StoreFailure(
                    f"Idempotency record {actor_id}/{idempotency_key} is not pending in this transaction"
                )
            self._records[key] = replace(record, state="completed", response=response)

    # Issues and subscribers

    def insert_issue(
        self, title: str, html_body: str, text_body: str, created_by: str, published_at: datetime
    ) -> int:
        with self.store._cond:
            issue_id = self.store._next_id()
        self._issues[issue_id] = IssueData(
            id=issue_id,
            title=title,
            html_body=html_body,
            text_body=text_body,
            created_by=created_by,
            published_at=published_at
        )
        return issue_id

    def get_issue(self, issue_id: int) -> Optional[IssueData]:
        if issue_id in self._issues:
            return self._issues[issue_id]
        with self.store._cond:
            return self.store._issues.get(issue_id)

    def list_confirmed_subscriber_emails(self) -> List[str]:
        with self.store._cond:
            return [
                email for email, status in self.store._subscribers.items()
                if status == "confirmed"
            ]

    # Delivery queue

    def enqueue_delivery_tasks(self, issue_id: int, subscriber_emails: List[str], now: datetime) -> int:
        with self.store._cond:
            existing = {
                (task.issue_id, task.subscriber_email)
                for task in list(self.store._tasks.values()) + list(self._tasks.values())
            }
            for email in subscriber_emails:
                if (issue_id, email) in existing:
                    raise StoreFailure(f"duplicate delivery task for issue {issue_id} and {email}")
                existing.add((issue_id, email))
                task_id = self.store._next_id()
                self._tasks[task_id] = DeliveryTaskView(
                    id=task_id,
                    issue_id=issue_id,
                    subscriber_email=email,
                    retry_count=0,
                    next_attempt_at=now
                )
        return len(subscriber_emails)

    def claim_delivery_task(self, now: datetime, lease_until: datetime) -> Optional[ClaimedTask]:
        with self.store._cond:
            candidates = [
                task for task in self.store._tasks.values()
                if task.id not in self._deleted_tasks
                and self.store._task_locks.get(task.id) in (None, self)
                and task.next_attempt_at <= now
                and (task.claimed_until is None or task.claimed_until < now)
            ]
            if not candidates:
                return None

            task = min(candidates, key=lambda t: (t.next_attempt_at, t.id))
            self.store._task_locks[task.id] = self

            claim_token = str(uuid.uuid4())
            self._tasks[task.id] = replace(task, claimed_until=lease_until)
            self._claims[task.id] = claim_token

            return ClaimedTask(
                id=task.id,
                issue_id=task.issue_id,
                subscriber_email=task.subscriber_email,
                retry_count=task.retry_count,
                claim_token=claim_token
            )

    def delete_delivery_task(self, task_id: int, claim_token: str) -> bool:
        with self.store._cond:
            self._lock_task(task_id)
            task = self._visible_task(task_id)
            if task is None or self._claim_token(task_id) != claim_token:
                return False
            self._tasks.pop(task_id, None)
            self._deleted_tasks.add(task_id)
            return True

    def reschedule_delivery_task(
        self,
        task_id: int,
        claim_token: str,
        retry_count: int,
        next_attempt_at: datetime,
        last_error: Optional[str],
    ) -> bool:
        with self.store._cond:
            self._lock_task(task_id)
            task = self._visible_task(task_id)
            if task is None or self._claim_token(task_id) != claim_token:
                return False
            self._tasks[task_id] = replace(
                task,
                retry_count=retry_count,
                next_attempt_at=next_attempt_at,
                last_error=last_error,
                claimed_until=None
            )
            self._claims[task_id] = None
            return True

    def list_delivery_tasks(self, issue_id: int) -> List[DeliveryTaskView]:
        with self.store._cond:
            task_ids = set(self.store._tasks) | set(self._tasks)
            tasks = [self._visible_task(task_id) for task_id in sorted(task_ids)]
        return [task for task in tasks if task is not None and task.issue_id == issue_id]

    # Transaction control

    def commit(self) -> None:
        with self.store._cond:
            self.store._records.update(self._records)
            self.store._issues.update(self._issues)
            self.store._tasks.update(self._tasks)
            self.store._claims.update(self._claims)
            for task_id in self._deleted_tasks:
                self.store._tasks.pop(task_id, None)
                self.store._claims.pop(task_id, None)
            self._release()

    def rollback(self) -> None:
        with self.store._cond:
            self._release()

    def close(self) -> None:
        if not self._closed:
            self.rollback()
            self._closed = True

    def _release(self) -> None:
        # Called with the condition held
        self._records.clear()
        self._issues.clear()
        self._tasks.clear()
        self._claims.clear()
        self._deleted_tasks.clear()
        for key in [k for k, holder in self.store._reservations.items() if holder is self]:
            del self.store._reservations[key]
        for task_id in [t for t, holder in self.store._task_locks.items() if holder is self]:
            del self.store._task_locks[task_id]
        self.store._cond.notify_all()


class InMemoryStore(Store):
    """
    Thread-safe in-process store.

    Args:
        lock_timeout: Seconds a transaction waits on a row held by another
            transaction before failing with StoreFailure
    """

    transaction_class = InMemoryTransaction

    def __init__(self, lock_timeout: float = 10.0):
        self.lock_timeout = lock_timeout
        self._cond = threading.Condition()
        self._ids = 0
        self._records: Dict[RecordKey, IdempotencyEntry] = {}
        self._reservations: Dict[RecordKey, InMemoryTransaction] = {}
        self._issues: Dict[int, IssueData] = {}
        self._tasks: Dict[int, DeliveryTaskView] = {}
        self._claims: Dict[int, Optional[str]] = {}
        self._task_locks: Dict[int, InMemoryTransaction] = {}
        self._subscribers: Dict[str, str] = {}

    def _next_id(self) -> int:
        self._ids += 1
        return self._ids

    def begin(self) -> StoreTransaction:
        return self.transaction_class(self)

    # Subscriber list and read-only views of committed state

    def add_subscriber(self, email: str, status: str = "confirmed") -> None:
        with self._cond:
            self._subscribers[email] = status

    @property
    def issues(self) -> List[IssueData]:
        with self._cond:
            return sorted(self._issues.values(), key=lambda issue: issue.id)

    @property
    def delivery_tasks(self) -> List[DeliveryTaskView]:
        with self._cond:
            return sorted(self._tasks.values(), key=lambda task: task.id)

    @property
    def idempotency_records(self) -> List[IdempotencyEntry]:
        with self._cond:
            return list(self._records.values())
