"""
Event ingestion: request validation and the ingestion service
"""

from src.ingestion.schemas import EventAccepted, EventMetadata, EventRequest
from src.ingestion.service import IngestionService

__all__ = ["EventRequest", "EventMetadata", "EventAccepted", "IngestionService"]
