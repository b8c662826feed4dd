"""
Event Data Model - the unit of work tracked through delivery
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
from uuid import uuid4


class EventStatus(str, Enum):
    """Delivery status of an event"""

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    PROCESSED = "PROCESSED"
    FAILED = "FAILED"
    DEAD_LETTER = "DEAD_LETTER"


# Statuses an operator may reset back to PENDING
REPLAYABLE_STATUSES = frozenset({EventStatus.FAILED, EventStatus.DEAD_LETTER})

# Statuses a delivered message may claim for processing.
# A stale PROCESSING claim is also claimable, subject to a timeout.
CLAIMABLE_STATUSES = frozenset({EventStatus.PENDING, EventStatus.FAILED})

TERMINAL_STATUSES = frozenset({EventStatus.PROCESSED, EventStatus.DEAD_LETTER})

MAX_EVENT_TYPE_LENGTH = 100


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Event:
    """
    An ingested event and its delivery state

    Attributes:
        id: Unique identifier (UUID string), immutable once assigned
        event_type: Client-supplied classification (1-100 characters)
        payload: Arbitrary structured document, opaque to the pipeline
        metadata: Optional structured document (source, correlation id, version, timestamp)
        status: Current delivery status
        retry_count: Number of failed processing attempts since creation or last replay
        created_at: When the event was ingested
        updated_at: Last status write, used to detect stale PROCESSING claims
        processed_at: Set on PROCESSING -> PROCESSED
        failed_at: Set on PROCESSING -> FAILED / DEAD_LETTER
        failure_reason: Message of the last failure
    """

    id: str
    event_type: str
    payload: Dict[str, Any]
    metadata: Optional[Dict[str, Any]] = None
    status: EventStatus = EventStatus.PENDING
    retry_count: int = 0
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    processed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    failure_reason: Optional[str] = None

    def __post_init__(self) -> None:
        """Validate Event after initialization"""
        if not self.event_type or len(self.event_type) > MAX_EVENT_TYPE_LENGTH:
            raise ValueError(
                f"event_type must be between 1 and {MAX_EVENT_TYPE_LENGTH} characters"
            )

        if self.retry_count < 0:
            raise ValueError("retry_count must be non-negative")

        if not isinstance(self.status, EventStatus):
            self.status = EventStatus(self.status)

    @classmethod
    def create(
        cls,
        event_type: str,
        payload: Dict[str, Any],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> "Event":
        """
        Factory method to create a PENDING event with auto-generated ID and timestamps

        Args:
            event_type: Event classification
            payload: Event body
            metadata: Optional event metadata

        Returns:
            Event instance
        """
        now = utc_now()
        return cls(
            id=str(uuid4()),
            event_type=event_type,
            payload=payload,
            metadata=metadata,
            status=EventStatus.PENDING,
            retry_count=0,
            created_at=now,
            updated_at=now,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def processing_seconds(self) -> Optional[float]:
        """Time from ingestion to successful processing"""
        if self.processed_at is None:
            return None
        return (self.processed_at - self.created_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        """Convert Event to a JSON-friendly dictionary (API responses)"""
        return {
            "id": self.id,
            "eventType": self.event_type,
            "payload": self.payload,
            "metadata": self.metadata,
            "status": self.status.value,
            "retryCount": self.retry_count,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
            "processedAt": self.processed_at.isoformat() if self.processed_at else None,
            "failedAt": self.failed_at.isoformat() if self.failed_at else None,
            "failureReason": self.failure_reason,
        }
