"""
Base Event Store Interface
Abstract base class for event persistence backends
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from src.models.event import Event, EventStatus


class StoreError(Exception):
    """Base exception for event store errors"""

    pass


class EventNotFoundError(StoreError):
    """Raised when an event id does not exist in the store"""

    def __init__(self, event_id: str):
        super().__init__(f"Event not found: {event_id}")
        self.event_id = event_id


class StatusConflictError(StoreError):
    """
    Raised when a compare-and-set status update loses

    Attributes:
        event_id: Event that was targeted
        expected: Statuses the update required
        current: Event as currently stored
    """

    def __init__(self, event_id: str, expected: Iterable[EventStatus], current: Event):
        expected_names = sorted(s.value for s in expected)
        super().__init__(
            f"Event {event_id} is {current.status.value}, expected one of {expected_names}"
        )
        self.event_id = event_id
        self.expected = frozenset(expected)
        self.current = current


@dataclass
class EventMetrics:
    """Aggregate view of the event table for operators"""

    total: int = 0
    by_status: Dict[EventStatus, int] = field(default_factory=dict)
    by_type: Dict[str, int] = field(default_factory=dict)
    average_processing_seconds: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "summary": {
                "total": self.total,
                "pending": self.by_status.get(EventStatus.PENDING, 0),
                "processing": self.by_status.get(EventStatus.PROCESSING, 0),
                "processed": self.by_status.get(EventStatus.PROCESSED, 0),
                "failed": self.by_status.get(EventStatus.FAILED, 0),
                "deadLetter": self.by_status.get(EventStatus.DEAD_LETTER, 0),
            },
            "eventsByType": [
                {"eventType": event_type, "count": count}
                for event_type, count in sorted(self.by_type.items())
            ],
            "processingStats": {
                "averageProcessingTimeSeconds": round(self.average_processing_seconds, 2),
                "totalProcessed": self.by_status.get(EventStatus.PROCESSED, 0),
            },
        }


class EventStore(ABC):
    """
    Abstract base class for event stores

    All stores must implement:
    - create(): Persist a new event
    - get(): Read an event by id
    - transition(): Compare-and-set status update of a single event
    - list_failed(): Page through FAILED and DEAD_LETTER events
    - get_metrics(): Aggregate counts for operators
    """

    async def connect(self) -> None:
        """Open backend resources (no-op by default)"""

    async def close(self) -> None:
        """Release backend resources (no-op by default)"""

    async def health_check(self) -> bool:
        return True

    @abstractmethod
    async def create(self, event: Event) -> Event:
        """
        Persist a new event

        Raises:
            StoreError: If the write fails
        """
        pass

    @abstractmethod
    async def get(self, event_id: str) -> Optional[Event]:
        """
        Read an event by id

        Returns:
            The stored event, or None if it does not exist
        """
        pass

    @abstractmethod
    async def transition(
        self,
        event_id: str,
        expected: Iterable[EventStatus],
        status: EventStatus,
        stale_before: Optional[datetime] = None,
        **fields: Any,
    ) -> Event:
        """
        Atomically move an event to ``status`` if its current status is in ``expected``

        Args:
            event_id: Event to update
            expected: Statuses the event must currently have
            status: New status
            stale_before: Also accept a PROCESSING event whose updated_at is older
                than this instant (recovery of a crashed worker's claim)
            **fields: Other columns to set (retry_count, processed_at, failed_at,
                failure_reason)

        Returns:
            The updated event

        Raises:
            EventNotFoundError: If the event does not exist
            StatusConflictError: If the event's status is not in ``expected``
            StoreError: If the write fails
        """
        pass

    @abstractmethod
    async def list_failed(self, page: int = 1, limit: int = 50) -> Tuple[List[Event], int]:
        """
        List FAILED and DEAD_LETTER events, most recently failed first

        Returns:
            Tuple of (events on the requested page, total matching events)
        """
        pass

    @abstractmethod
    async def get_metrics(self) -> EventMetrics:
        """Aggregate counts by status and type plus average processing time"""
        pass

    async def get_or_raise(self, event_id: str) -> Event:
        """
        Read an event by id

        Raises:
            EventNotFoundError: If the event does not exist
        """
        event = await self.get(event_id)
        if event is None:
            raise EventNotFoundError(event_id)
        return event

    async def __aenter__(self):
        """Async context manager entry"""
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit"""
        await self.close()


ALLOWED_TRANSITION_FIELDS = frozenset(
    {"retry_count", "processed_at", "failed_at", "failure_reason"}
)


def check_transition_fields(fields: Dict[str, Any]) -> None:
    """Reject columns a status transition is not allowed to write"""
    unknown = set(fields) - ALLOWED_TRANSITION_FIELDS
    if unknown:
        raise ValueError(f"Cannot update fields in a transition: {sorted(unknown)}")
