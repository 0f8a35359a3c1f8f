"""
SQLAlchemy Store
PostgreSQL-backed implementation of the store interface (SQLite accepted for local runs)
"""

import uuid
from datetime import datetime
from typing import List, Optional

import structlog
from sqlalchemy import insert, or_, text
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from newsletter.errors import StoreFailure
from newsletter.models import DeliveryTask, IdempotencyRecord, NewsletterIssue, Subscription
from newsletter.store.base import (
    ClaimedTask,
    DeliveryTaskView,
    IdempotencyEntry,
    IssueData,
    SavedResponse,
    Store,
    StoreTransaction,
)

logger = structlog.get_logger(__name__)


class SqlStoreTransaction(StoreTransaction):
    """One SQLAlchemy session, one database transaction."""

    def __init__(self, session: Session):
        self.session = session
        self.dialect = session.get_bind().dialect.name

    def _insert(self, model):
        # ON CONFLICT support is dialect specific
        if self.dialect == "postgresql":
            return pg_insert(model)
        if self.dialect == "sqlite":
            return sqlite_insert(model)
        raise NotImplementedError(f"Unsupported database dialect: {self.dialect}")

    def _record_query(self, actor_id: str, idempotency_key: str):
        return self.session.query(IdempotencyRecord).filter(
            IdempotencyRecord.actor_id == actor_id,
            IdempotencyRecord.idempotency_key == idempotency_key
        )

    # Idempotency records

    def try_insert_idempotency_record(
        self, actor_id: str, idempotency_key: str, request_fingerprint: str, now: datetime
    ) -> bool:
        # Waits behind any concurrent uncommitted insert of the same key
        stmt = self._insert(IdempotencyRecord).values(
            actor_id=actor_id,
            idempotency_key=idempotency_key,
            state="pending",
            request_fingerprint=request_fingerprint,
            created_at=now
        ).on_conflict_do_nothing(index_elements=['actor_id', 'idempotency_key'])

        result_proxy = self.session.execute(stmt)
        return result_proxy.rowcount > 0

    def get_idempotency_record(self, actor_id: str, idempotency_key: str) -> Optional[IdempotencyEntry]:
        record = self._record_query(actor_id, idempotency_key).populate_existing().first()
        if record is None:
            return None

        response = None
        if record.state == "completed":
            response = SavedResponse(
                status_code=record.response_status_code,
                headers=tuple((name, value) for name, value in (record.response_headers or [])),
                body=bytes(record.response_body or b"")
            )

        return IdempotencyEntry(
            actor_id=record.actor_id,
            idempotency_key=record.idempotency_key,
            state=record.state,
            created_at=record.created_at,
            request_fingerprint=record.request_fingerprint,
            response=response
        )

    def take_over_idempotency_record(
        self,
        actor_id: str,
        idempotency_key: str,
        request_fingerprint: str,
        stale_before: datetime,
        now: datetime,
    ) -> bool:
        # Waits behind a concurrent takeover and then sees its committed state
        record = self._record_query(actor_id, idempotency_key).with_for_update().populate_existing().first()
        if record is None or record.state != "pending" or record.created_at >= stale_before:
            return False

        record.created_at = now
        record.request_fingerprint = request_fingerprint
        self.session.flush()
        return True

    def complete_idempotency_record(
        self, actor_id: str, idempotency_key: str, response: SavedResponse, now: datetime
    ) -> None:
        updated = self._record_query(actor_id, idempotency_key).filter(
            IdempotencyRecord.state == "pending"
        ).update(
            {
                IdempotencyRecord.state: "completed",
                IdempotencyRecord.response_status_code: response.status_code,
                IdempotencyRecord.response_headers: [list(header) for header in response.headers],
                IdempotencyRecord.response_body: response.body,
                IdempotencyRecord.completed_at: now,
            },
            synchronize_session=False
        )
        if updated != 1:
            raise StoreFailure(
                f"Idempotency record {actor_id}/{idempotency_key} is not pending in this transaction"
            )

    # Issues and subscribers

    def insert_issue(
        self, title: str, html_body: str, text_body: str, created_by: str, published_at: datetime
    ) -> int:
        issue = NewsletterIssue(
            title=title,
            html_body=html_body,
            text_body=text_body,
            created_by=created_by,
            published_at=published_at
        )
        self.session.add(issue)
        self.session.flush()  # Get ID without committing
        return issue.id

    def get_issue(self, issue_id: int) -> Optional[IssueData]:
        issue = self.session.query(NewsletterIssue).filter(NewsletterIssue.id == issue_id).first()
        if issue is None:
            return None
        return IssueData(
            id=issue.id,
            title=issue.title,
            html_body=issue.html_body,
            text_body=issue.text_body,
            created_by=issue.created_by,
            published_at=issue.published_at
        )

    def list_confirmed_subscriber_emails(self) -> List[str]:
        rows = self.session.query(Subscription.email).filter(
            Subscription.status == "confirmed"
        ).order_by(Subscription.id).all()
        return [row.email for row in rows]

    # Delivery queue

    def enqueue_delivery_tasks(self, issue_id: int, subscriber_emails: List[str], now: datetime) -> int:
        if not subscriber_emails:
            return 0

        self.session.execute(
            insert(DeliveryTask),
            [
                {
                    "issue_id": issue_id,
                    "subscriber_email": email,
                    "retry_count": 0,
                    "next_attempt_at": now,
                    "created_at": now,
                }
                for email in subscriber_emails
            ]
        )
        return len(subscriber_emails)

    def claim_delivery_task(self, now: datetime, lease_until: datetime) -> Optional[ClaimedTask]:
        # FOR UPDATE SKIP LOCKED: concurrent workers never wait on each other's rows
        task = self.session.query(DeliveryTask).filter(
            DeliveryTask.next_attempt_at <= now,
            or_(DeliveryTask.claimed_until.is_(None), DeliveryTask.claimed_until < now)
        ).order_by(
            DeliveryTask.next_attempt_at, DeliveryTask.id
        ).with_for_update(skip_locked=True).first()

        if task is None:
            return None

        task.claim_token = str(uuid.uuid4())
        task.claimed_until = lease_until
        self.session.flush()

        return ClaimedTask(
            id=task.id,
            issue_id=task.issue_id,
            subscriber_email=task.subscriber_email,
            retry_count=task.retry_count,
            claim_token=task.claim_token
        )

    def delete_delivery_task(self, task_id: int, claim_token: str) -> bool:
        deleted = self.session.query(DeliveryTask).filter(
            DeliveryTask.id == task_id,
            DeliveryTask.claim_token == claim_token
        ).delete(synchronize_session=False)
        return deleted > 0

    def reschedule_delivery_task(
        self,
        task_id: int,
        claim_token: str,
        retry_count: int,
        next_attempt_at: datetime,
        last_error: Optional[str],
    ) -> bool:
        updated = self.session.query(DeliveryTask).filter(
            DeliveryTask.id == task_id,
            DeliveryTask.claim_token == claim_token
        ).update(
            {
                DeliveryTask.retry_count: retry_count,
                DeliveryTask.next_attempt_at: next_attempt_at,
                DeliveryTask.last_error: last_error,
                DeliveryTask.claim_token: None,
                DeliveryTask.claimed_until: None,
            },
            synchronize_session=False
        )
        return updated > 0

    def list_delivery_tasks(self, issue_id: int) -> List[DeliveryTaskView]:
        tasks = self.session.query(DeliveryTask).filter(
            DeliveryTask.issue_id == issue_id
        ).order_by(DeliveryTask.id).all()
        return [
            DeliveryTaskView(
                id=task.id,
                issue_id=task.issue_id,
                subscriber_email=task.subscriber_email,
                retry_count=task.retry_count,
                next_attempt_at=task.next_attempt_at,
                claimed_until=task.claimed_until,
                last_error=task.last_error
            )
            for task in tasks
        ]

    # Transaction control

    def commit(self) -> None:
        self.session.commit()

    def rollback(self) -> None:
        self.session.rollback()

    def close(self) -> None:
        self.session.close()


class SqlStore(Store):
    """
    Store backed by a SQLAlchemy sessionmaker.

    Args:
        session_factory: SQLAlchemy sessionmaker (each transaction gets its own session)
        lock_timeout_ms: PostgreSQL lock_timeout applied to every transaction
    """

    def __init__(self, session_factory: sessionmaker, lock_timeout_ms: Optional[int] = None):
        self.session_factory = session_factory
        self.lock_timeout_ms = lock_timeout_ms

    def begin(self) -> StoreTransaction:
        session: Session = self.session_factory()
        tx = SqlStoreTransaction(session)
        if self.lock_timeout_ms and tx.dialect == "postgresql":
            try:
                # Bounds how long a duplicate submission waits on the reservation row
                session.execute(text(f"SET LOCAL lock_timeout = '{int(self.lock_timeout_ms)}ms'"))
            except SQLAlchemyError as e:
                session.close()
                logger.error("store_transaction_begin_failed", error=str(e))
                raise StoreFailure(str(e)) from e
        return tx

    def is_store_error(self, error: Exception) -> bool:
        return isinstance(error, SQLAlchemyError)
