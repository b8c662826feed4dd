"""
In-memory Event Store
Process-local store for development and tests
"""

import asyncio
import copy
from collections import Counter
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

import structlog

from src.models.event import Event, EventStatus, REPLAYABLE_STATUSES, utc_now
from src.store.base import (
    EventMetrics,
    EventNotFoundError,
    EventStore,
    StatusConflictError,
    StoreError,
    check_transition_fields,
)

logger = structlog.get_logger(__name__)


class InMemoryEventStore(EventStore):
    """
    Event store backed by a dict

    Events are copied on the way in and out so callers never share mutable
    state with the store.
    """

    def __init__(self):
        self._events: Dict[str, Event] = {}
        self._lock = asyncio.Lock()
        logger.info("In-memory event store initialized")

    async def create(self, event: Event) -> Event:
        async with self._lock:
            if event.id in self._events:
                raise StoreError(f"Event already exists: {event.id}")
            self._events[event.id] = copy.deepcopy(event)
        return copy.deepcopy(event)

    async def get(self, event_id: str) -> Optional[Event]:
        async with self._lock:
            event = self._events.get(event_id)
            return copy.deepcopy(event) if event is not None else None

    async def transition(
        self,
        event_id: str,
        expected: Iterable[EventStatus],
        status: EventStatus,
        stale_before: Optional[datetime] = None,
        **fields: Any,
    ) -> Event:
        check_transition_fields(fields)
        expected = frozenset(expected)

        async with self._lock:
            current = self._events.get(event_id)
            if current is None:
                raise EventNotFoundError(event_id)

            stale_claim = (
                stale_before is not None
                and current.status == EventStatus.PROCESSING
                and current.updated_at < stale_before
            )
            if current.status not in expected and not stale_claim:
                raise StatusConflictError(event_id, expected, copy.deepcopy(current))

            updated = replace(current, status=status, updated_at=utc_now(), **fields)
            self._events[event_id] = updated
            return copy.deepcopy(updated)

    async def list_failed(self, page: int = 1, limit: int = 50) -> Tuple[List[Event], int]:
        async with self._lock:
            failed = [e for e in self._events.values() if e.status in REPLAYABLE_STATUSES]

        failed.sort(key=lambda e: e.failed_at or e.updated_at, reverse=True)
        start = (page - 1) * limit
        return [copy.deepcopy(e) for e in failed[start : start + limit]], len(failed)

    async def get_metrics(self) -> EventMetrics:
        async with self._lock:
            events = list(self._events.values())

        by_status = Counter(e.status for e in events)
        by_type = Counter(e.event_type for e in events)
        durations = [
            e.processing_seconds
            for e in events
            if e.status == EventStatus.PROCESSED and e.processing_seconds is not None
        ]

        return EventMetrics(
            total=len(events),
            by_status=dict(by_status),
            by_type=dict(by_type),
            average_processing_seconds=sum(durations) / len(durations) if durations else 0.0,
        )

    def __len__(self) -> int:
        return len(self._events)
