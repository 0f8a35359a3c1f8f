"""
Shared fixtures: stores, a recording email client and an app client.
"""

import os

os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.pop("DATABASE_URL", None)

import pytest
from sqlalchemy.orm import sessionmaker

from newsletter.database import Base, create_db_engine
from newsletter.models import Subscription
from newsletter.schemas import ActorContext
from newsletter.services.idempotency import IdempotencyGuard
from newsletter.services.publisher import NewsletterPublisher
from newsletter.store.memory import InMemoryStore
from newsletter.store.sql import SqlStore

from helpers import RecordingEmailClient


@pytest.fixture
def actor():
    return ActorContext(actor_id="operator-1", request_id="test-request")


@pytest.fixture
def memory_store():
    """In-memory store with two confirmed subscribers and one pending."""
    store = InMemoryStore(lock_timeout=5.0)
    store.add_subscriber("ada@example.com")
    store.add_subscriber("grace@example.com")
    store.add_subscriber("pending@example.com", status="pending_confirmation")
    return store


@pytest.fixture
def sql_store():
    """SQLite-backed store with the same subscribers as memory_store."""
    engine = create_db_engine("sqlite://")
    Base.metadata.create_all(engine)
    session_factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    session = session_factory()
    session.add_all([
        Subscription(email="ada@example.com", name="Ada", status="confirmed"),
        Subscription(email="grace@example.com", name="Grace", status="confirmed"),
        Subscription(email="pending@example.com", name="Pending", status="pending_confirmation"),
    ])
    session.commit()
    session.close()

    yield SqlStore(session_factory)

    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def guard():
    return IdempotencyGuard(pending_lease_seconds=60)


@pytest.fixture
def publisher(memory_store, guard):
    return NewsletterPublisher(store=memory_store, guard=guard)


@pytest.fixture
def email_client():
    return RecordingEmailClient()


@pytest.fixture
def api_client(memory_store):
    """TestClient bound to an app using memory_store."""
    from fastapi.testclient import TestClient
    from newsletter.main import create_app

    app = create_app(store=memory_store)
    with TestClient(app) as client:
        yield client
