"""
Ingestion Service
Creates events, snapshots them into the batch buffer and enqueues them
"""

from typing import Any, Dict, Optional

import structlog

from src.buffer.engine import BatchBufferEngine
from src.delivery.coordinator import DeliveryCoordinator, PublishError
from src.models.event import Event
from src.models.record import BufferedRecord
from src.observability.metrics import increment_events_ingested
from src.store.base import EventStore

logger = structlog.get_logger(__name__)


class IngestionService:
    """
    Entry point for new events

    Order of operations: persist as PENDING, append a snapshot to the batch
    buffer (best effort), publish the reference on the delivery channel.
    """

    def __init__(
        self,
        store: EventStore,
        coordinator: DeliveryCoordinator,
        buffer: Optional[BatchBufferEngine] = None,
    ):
        self.store = store
        self.coordinator = coordinator
        self.buffer = buffer

    async def ingest(
        self,
        event_type: str,
        payload: Dict[str, Any],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Event:
        """
        Accept a new event

        Returns:
            The stored PENDING event

        Raises:
            StoreError: If the event cannot be stored
            PublishError: If the event was stored but could not be enqueued;
                the event is marked FAILED so an operator can replay it
        """
        event = await self.store.create(Event.create(event_type, payload, metadata or {}))
        increment_events_ingested()
        logger.info("Event stored", event_id=event.id, event_type=event.event_type)

        await self._buffer_snapshot(event)

        try:
            await self.coordinator.publish(event.id)
        except PublishError:
            await self.coordinator.mark_unpublished(event.id)
            raise

        return event

    async def _buffer_snapshot(self, event: Event) -> None:
        # The analytics copy is secondary storage: never fail ingestion over it
        if self.buffer is None:
            return

        try:
            await self.buffer.append(BufferedRecord.from_event(event))
        except Exception as e:
            logger.error(
                "Failed to buffer event for analytics (non-critical)",
                event_id=event.id,
                error=str(e),
            )
