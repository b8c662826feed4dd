"""
BufferedRecord - immutable snapshot of an Event for the analytics sink
"""

import copy
import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from src.models.event import Event

# Column order of the analytics table
ROW_COLUMNS = (
    "id",
    "event_type",
    "payload",
    "metadata",
    "status",
    "created_at",
    "processed_at",
    "failed_at",
    "failure_reason",
    "retry_count",
)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


@dataclass(frozen=True)
class BufferedRecord:
    """
    Snapshot of an event's fields taken when it enters the batch buffer

    The record holds no reference to the Event it was taken from, and later
    status transitions of that Event are never reflected here.
    """

    id: str
    event_type: str
    payload: Dict[str, Any]
    metadata: Optional[Dict[str, Any]]
    status: str
    created_at: datetime
    processed_at: Optional[datetime]
    failed_at: Optional[datetime]
    failure_reason: Optional[str]
    retry_count: int

    @classmethod
    def from_event(cls, event: Event) -> "BufferedRecord":
        """Snapshot an event (payload and metadata are deep-copied)"""
        return cls(
            id=event.id,
            event_type=event.event_type,
            payload=copy.deepcopy(event.payload),
            metadata=copy.deepcopy(event.metadata),
            status=event.status.value,
            created_at=event.created_at,
            processed_at=event.processed_at,
            failed_at=event.failed_at,
            failure_reason=event.failure_reason,
            retry_count=event.retry_count,
        )

    def to_row(self) -> Dict[str, Any]:
        """
        Flatten to an analytics row

        Structured documents are stored as JSON text and timestamps as ISO-8601.
        """
        return {
            "id": self.id,
            "event_type": self.event_type,
            "payload": json.dumps(self.payload, default=str),
            "metadata": json.dumps(self.metadata, default=str) if self.metadata is not None else None,
            "status": self.status,
            "created_at": _iso(self.created_at),
            "processed_at": _iso(self.processed_at),
            "failed_at": _iso(self.failed_at),
            "failure_reason": self.failure_reason,
            "retry_count": self.retry_count,
        }

    def to_json_line(self) -> str:
        """Serialize as one line of newline-delimited JSON"""
        return json.dumps(self.to_row(), default=str)
