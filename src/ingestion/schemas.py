"""
Request validation for the ingestion endpoint
"""

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from src.models.event import MAX_EVENT_TYPE_LENGTH


class EventMetadata(BaseModel):
    """Optional client-supplied metadata; unknown keys are kept"""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    source: Optional[str] = None
    user_id: Optional[str] = Field(default=None, alias="userId")
    correlation_id: Optional[str] = Field(default=None, alias="correlationId")
    timestamp: Optional[str] = None
    version: Optional[str] = None


class EventRequest(BaseModel):
    """Body of POST /events"""

    model_config = ConfigDict(populate_by_name=True)

    event_type: str = Field(
        ..., alias="eventType", min_length=1, max_length=MAX_EVENT_TYPE_LENGTH
    )
    payload: Dict[str, Any]
    metadata: Optional[EventMetadata] = None

    def metadata_dict(self) -> Optional[Dict[str, Any]]:
        """Metadata as stored: wire (camelCase) keys, unset fields dropped"""
        if self.metadata is None:
            return None
        return self.metadata.model_dump(by_alias=True, exclude_none=True)


class EventAccepted(BaseModel):
    """Response of POST /events"""

    success: bool = True
    event_id: str = Field(..., serialization_alias="eventId")
    message: str = "Event received and queued for processing"
