"""
Event stores - persistence for Event delivery state
"""

from src.store.base import (
    EventMetrics,
    EventNotFoundError,
    EventStore,
    StatusConflictError,
    StoreError,
)
from src.store.memory import InMemoryEventStore
from src.store.postgres import PostgresEventStore

__all__ = [
    "EventStore",
    "EventMetrics",
    "StoreError",
    "EventNotFoundError",
    "StatusConflictError",
    "InMemoryEventStore",
    "PostgresEventStore",
]
