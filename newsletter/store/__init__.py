"""
Durable Store
Repository boundary for idempotency records, issues and the delivery queue
"""

from newsletter.store.base import (
    ClaimedTask,
    DeliveryTaskView,
    IdempotencyEntry,
    IssueData,
    SavedResponse,
    Store,
    StoreTransaction,
    utcnow,
)
from newsletter.store.memory import InMemoryStore
from newsletter.store.sql import SqlStore

__all__ = [
    "ClaimedTask",
    "DeliveryTaskView",
    "IdempotencyEntry",
    "IssueData",
    "SavedResponse",
    "Store",
    "StoreTransaction",
    "utcnow",
    "InMemoryStore",
    "SqlStore",
]
