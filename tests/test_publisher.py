"""
Tests for NewsletterPublisher

Tests cover:
- One issue and one delivery task per confirmed subscriber
- Replay of a repeated key without new side effects
- Concurrent duplicates produce a single issue and identical responses
- Zero confirmed subscribers
- Validation happens before any reservation
- Store failures persist nothing and the key stays usable
"""

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from newsletter.errors import InvalidInput, StoreFailure
from newsletter.services.idempotency import IdempotencyGuard
from newsletter.services.publisher import (
    PUBLISH_REDIRECT_LOCATION,
    NewsletterPublisher,
    build_publish_response,
    validate_publish_form,
)
from newsletter.store.memory import InMemoryStore, InMemoryTransaction
from helpers import FailingEnqueueTransaction, SlowTransaction, make_form


class TestValidatePublishForm:

    def test_valid_form_is_stripped(self):
        form = validate_publish_form("  Issue  ", "<p>x</p>", "x", " key ")
        assert form.title == "Issue"
        assert form.idempotency_key == "key"

    @pytest.mark.parametrize("field", ["title", "html_content", "text_content", "idempotency_key"])
    def test_blank_field_is_invalid(self, field):
        fields = {
            "title": "Issue",
            "html_content": "<p>x</p>",
            "text_content": "x",
            "idempotency_key": "key-1",
        }
        fields[field] = "   "

        with pytest.raises(InvalidInput) as exc_info:
            validate_publish_form(**fields)
        assert field in str(exc_info.value)

    def test_missing_field_is_invalid(self):
        with pytest.raises(InvalidInput):
            validate_publish_form(None, "<p>x</p>", "x", "key-1")

    def test_overlong_key_is_invalid(self):
        with pytest.raises(InvalidInput):
            validate_publish_form("Issue", "<p>x</p>", "x", "k" * 51)


class TestNewsletterPublisher:

    def test_publish_enqueues_one_task_per_confirmed_subscriber(self, publisher, memory_store, actor):
        response = publisher.publish(make_form(), actor)

        assert response == build_publish_response()
        assert response.status_code == 303
        assert ("location", PUBLISH_REDIRECT_LOCATION) in response.headers

        [issue] = memory_store.issues
        assert issue.title == "Issue #1"
        assert issue.created_by == "operator-1"

        tasks = memory_store.delivery_tasks
        assert sorted(task.subscriber_email for task in tasks) == ["ada@example.com", "grace@example.com"]
        assert all(task.issue_id == issue.id and task.retry_count == 0 for task in tasks)

        [record] = memory_store.idempotency_records
        assert record.state == "completed"
        assert record.response == response

    def test_repeated_key_replays_without_side_effects(self, publisher, memory_store, actor):
        first = publisher.publish(make_form(), actor)
        second = publisher.publish(make_form(), actor)

        assert second == first
        assert len(memory_store.issues) == 1
        assert len(memory_store.delivery_tasks) == 2

    def test_repeated_key_with_different_payload_replays(self, publisher, memory_store, actor):
        first = publisher.publish(make_form(), actor)
        second = publisher.publish(make_form(title="A different title"), actor)

        assert second == first
        assert [issue.title for issue in memory_store.issues] == ["Issue #1"]

    def test_new_key_publishes_again(self, publisher, memory_store, actor):
        publisher.publish(make_form(idempotency_key="key-1"), actor)
        publisher.publish(make_form(idempotency_key="key-2"), actor)

        assert len(memory_store.issues) == 2
        assert len(memory_store.delivery_tasks) == 4

    def test_no_confirmed_subscribers(self, guard, actor):
        store = InMemoryStore()
        store.add_subscriber("pending@example.com", status="pending_confirmation")
        publisher = NewsletterPublisher(store=store, guard=guard)

        response = publisher.publish(make_form(), actor)

        assert response.status_code == 303
        assert len(store.issues) == 1
        assert store.delivery_tasks == []
        assert store.idempotency_records[0].state == "completed"

    def test_store_failure_persists_nothing(self, memory_store, guard, actor):
        memory_store.transaction_class = FailingEnqueueTransaction
        publisher = NewsletterPublisher(store=memory_store, guard=guard)

        with pytest.raises(StoreFailure):
            publisher.publish(make_form(), actor)

        assert memory_store.issues == []
        assert memory_store.delivery_tasks == []
        assert memory_store.idempotency_records == []

        # The key was never committed, so a retry executes normally
        memory_store.transaction_class = InMemoryTransaction
        response = publisher.publish(make_form(), actor)
        assert response.status_code == 303
        assert len(memory_store.delivery_tasks) == 2

    def test_concurrent_duplicates_publish_once(self, memory_store, actor):
        memory_store.transaction_class = SlowTransaction
        publisher = NewsletterPublisher(store=memory_store, guard=IdempotencyGuard())
        start = threading.Barrier(5)

        def submit():
            start.wait(timeout=5)
            return publisher.publish(make_form(), actor)

        with ThreadPoolExecutor(max_workers=5) as pool:
            responses = list(pool.map(lambda _: submit(), range(5)))

        assert all(response == responses[0] for response in responses)
        assert len(memory_store.issues) == 1
        assert len(memory_store.delivery_tasks) == 2
        assert len(memory_store.idempotency_records) == 1
