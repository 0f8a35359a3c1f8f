"""
Tests for DeliveryWorker

Tests cover:
- Draining sends one email per task and empties the queue
- Transient failures reschedule with exponential backoff
- Retries exhausted and permanent failures drop the task
- Concurrent claimers never get the same task; expired leases are reclaimed
- A resolution with a stale claim token is rejected
- Concurrent duplicate publishes lead to a single email
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from newsletter.errors import PermanentDeliveryFailure, TransientDeliveryFailure
from newsletter.services.delivery_worker import (
    Claimed,
    DeliveryOutcome,
    Empty,
    ExecutionOutcome,
    Resolution,
    compute_backoff,
)
from newsletter.services.idempotency import IdempotencyGuard
from newsletter.services.publisher import NewsletterPublisher
from newsletter.store.base import utcnow
from newsletter.store.memory import InMemoryStore
from helpers import RecordingEmailClient, make_form, make_worker


class TestComputeBackoff:

    @pytest.mark.parametrize("retry_count, expected", [
        (1, 15),
        (2, 30),
        (3, 60),
        (5, 240),
        (6, 300),
        (20, 300),
    ])
    def test_doubles_up_to_the_cap(self, retry_count, expected):
        assert compute_backoff(retry_count, 15, 300) == timedelta(seconds=expected)


class TestDeliveryWorker:

    def test_empty_queue(self, memory_store, email_client):
        worker = make_worker(memory_store, email_client)

        assert worker.try_execute_task() is ExecutionOutcome.EMPTY_QUEUE
        assert worker.drain() == 0
        assert email_client.calls == []

    def test_drain_delivers_every_task(self, publisher, memory_store, email_client, actor):
        publisher.publish(make_form(), actor)
        worker = make_worker(memory_store, email_client)

        assert worker.drain() == 2

        assert sorted(email.recipient for email in email_client.sent) == ["ada@example.com", "grace@example.com"]
        assert all(email.subject == "Issue #1" for email in email_client.sent)
        assert all(email.text_body == "Hello subscribers" for email in email_client.sent)
        assert memory_store.delivery_tasks == []

    def test_drain_respects_max_tasks(self, publisher, memory_store, email_client, actor):
        publisher.publish(make_form(), actor)
        worker = make_worker(memory_store, email_client)

        assert worker.drain(max_tasks=1) == 1
        assert len(memory_store.delivery_tasks) == 1

    def test_transient_failure_reschedules_with_backoff(self, publisher, memory_store, actor):
        publisher.publish(make_form(), actor)
        email_client = RecordingEmailClient(failures=[TransientDeliveryFailure("email API returned 503")])
        worker = make_worker(memory_store, email_client)
        before = utcnow()

        # The failed task is not eligible again until its backoff elapses
        assert worker.drain() == 2

        [task] = memory_store.delivery_tasks
        assert task.retry_count == 1
        assert task.last_error == "email API returned 503"
        assert task.claimed_until is None
        assert task.next_attempt_at >= before + timedelta(seconds=15)
        assert len(email_client.sent) == 1

    def test_retried_task_is_delivered_after_backoff(self, publisher, memory_store, actor):
        publisher.publish(make_form(), actor)
        email_client = RecordingEmailClient(failures=[TransientDeliveryFailure("timeout")])
        worker = make_worker(memory_store, email_client)
        worker.drain()

        claimed = worker.claim_one(now=utcnow() + timedelta(seconds=16))
        assert isinstance(claimed, Claimed)
        assert claimed.task.retry_count == 1

        outcome, error = worker.send(claimed)
        assert outcome is DeliveryOutcome.DELIVERED
        assert worker.resolve(claimed.task, outcome, error) is Resolution.DELETED
        assert memory_store.delivery_tasks == []
        assert len(email_client.sent) == 2

    def test_task_dropped_after_max_retries(self, publisher, memory_store, actor):
        memory_store.add_subscriber("grace@example.com", status="unsubscribed")
        publisher.publish(make_form(), actor)
        failures = [TransientDeliveryFailure("email API returned 500")] * 3
        email_client = RecordingEmailClient(failures=failures)
        worker = make_worker(
            memory_store, email_client, max_retries=2, min_backoff_seconds=0, max_backoff_seconds=0
        )

        # Attempts with retry_count 0, 1 and 2; the third failure drops the task
        assert worker.drain() == 3

        assert len(email_client.calls) == 3
        assert email_client.sent == []
        assert memory_store.delivery_tasks == []

    def test_permanent_failure_drops_task(self, publisher, memory_store, actor):
        publisher.publish(make_form(), actor)
        email_client = RecordingEmailClient(failures=[PermanentDeliveryFailure("email API returned 422")])
        worker = make_worker(memory_store, email_client)

        assert worker.drain() == 2

        assert len(email_client.calls) == 2
        assert len(email_client.sent) == 1
        assert memory_store.delivery_tasks == []

    def test_unexpected_error_is_treated_as_transient(self, publisher, memory_store, actor):
        publisher.publish(make_form(), actor)
        email_client = RecordingEmailClient(failures=[ValueError("boom")])
        worker = make_worker(memory_store, email_client)

        worker.drain()

        [task] = memory_store.delivery_tasks
        assert task.retry_count == 1
        assert task.last_error == "boom"

    def test_concurrent_claimers_get_distinct_tasks(self, publisher, memory_store, actor):
        publisher.publish(make_form(), actor)
        now = utcnow()
        lease_until = now + timedelta(seconds=120)

        first = memory_store.begin()
        second = memory_store.begin()
        try:
            task_a = first.claim_delivery_task(now, lease_until)
            task_b = second.claim_delivery_task(now, lease_until)
            assert task_a is not None and task_b is not None
            assert task_a.id != task_b.id
            first.commit()
            second.commit()
        finally:
            first.close()
            second.close()

    def test_leased_task_is_skipped_until_lease_expires(self, publisher, memory_store, email_client, actor):
        publisher.publish(make_form(), actor)
        worker = make_worker(memory_store, email_client, claim_lease_seconds=120)
        now = utcnow()

        first = worker.claim_one(now=now)
        second = worker.claim_one(now=now)
        assert isinstance(first, Claimed) and isinstance(second, Claimed)
        assert isinstance(worker.claim_one(now=now), Empty)

        # A crashed worker's claim becomes eligible again once the lease is over
        reclaimed = worker.claim_one(now=now + timedelta(seconds=121))
        assert isinstance(reclaimed, Claimed)
        assert reclaimed.task.claim_token != first.task.claim_token

    def test_stale_claim_token_cannot_resolve(self, publisher, memory_store, email_client, actor):
        memory_store.add_subscriber("grace@example.com", status="unsubscribed")
        publisher.publish(make_form(), actor)
        worker = make_worker(memory_store, email_client, claim_lease_seconds=120)
        now = utcnow()

        stale = worker.claim_one(now=now)
        fresh = worker.claim_one(now=now + timedelta(seconds=121))

        assert worker.resolve(stale.task, DeliveryOutcome.DELIVERED) is Resolution.CLAIM_LOST
        assert len(memory_store.delivery_tasks) == 1
        assert worker.resolve(fresh.task, DeliveryOutcome.DELIVERED) is Resolution.DELETED
        assert memory_store.delivery_tasks == []

    def test_run_until_stopped(self, publisher, memory_store, email_client, actor):
        publisher.publish(make_form(), actor)
        worker = make_worker(memory_store, email_client)
        stop_event = threading.Event()

        thread = threading.Thread(target=worker.run_until_stopped, args=(stop_event,))
        thread.start()
        try:
            deadline = utcnow() + timedelta(seconds=5)
            while memory_store.delivery_tasks and utcnow() < deadline:
                stop_event.wait(0.01)
        finally:
            stop_event.set()
            thread.join(timeout=5)

        assert not thread.is_alive()
        assert len(email_client.sent) == 2


class TestPublishAndDeliver:

    def test_concurrent_duplicate_publishes_send_one_email(self, actor):
        """Two parallel submissions with a slow email API produce exactly one email."""
        store = InMemoryStore(lock_timeout=5.0)
        store.add_subscriber("ada@example.com")
        publisher = NewsletterPublisher(store=store, guard=IdempotencyGuard())
        email_client = RecordingEmailClient(delay=2.0)
        start = threading.Barrier(2)

        def submit_and_deliver():
            start.wait(timeout=5)
            response = publisher.publish(make_form(), actor)
            make_worker(store, email_client).drain()
            return response

        with ThreadPoolExecutor(max_workers=2) as pool:
            first, second = pool.map(lambda _: submit_and_deliver(), range(2))

        assert first == second
        assert len(email_client.calls) == 1
        assert email_client.sent[0].recipient == "ada@example.com"
        assert store.delivery_tasks == []
