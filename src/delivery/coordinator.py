"""
Delivery Coordinator
Drives an event through its status state machine for each channel delivery
and answers the channel with ack / nack
"""

import time
from datetime import timedelta
from enum import Enum
from typing import Optional

import structlog

from src.delivery.channel import ChannelMessage, DeliveryChannel, parse_event_id
from src.delivery.processor import ProcessingResult, ProcessingStep
from src.models.event import (
    CLAIMABLE_STATUSES,
    REPLAYABLE_STATUSES,
    Event,
    EventStatus,
    utc_now,
)
from src.observability.metrics import (
    increment_channel_response,
    increment_delivery_outcome,
    increment_replays,
    observe_processing_duration,
)
from src.observability.tracing import trace_event_processing
from src.store.base import EventNotFoundError, EventStore, StatusConflictError

logger = structlog.get_logger(__name__)

PUBLISH_FAILURE_REASON = "Failed to publish to delivery channel"


class DeliveryError(Exception):
    """Base exception for delivery errors"""

    pass


class AlreadyProcessedError(DeliveryError):
    """Raised when replaying an event that already reached PROCESSED"""

    def __init__(self, event_id: str):
        super().__init__(f"Event is already processed: {event_id}")
        self.event_id = event_id


class ReplayConflictError(DeliveryError):
    """Raised when replaying an event that is not FAILED or DEAD_LETTER"""

    def __init__(self, event_id: str, status: EventStatus):
        super().__init__(f"Event {event_id} cannot be replayed from status {status.value}")
        self.event_id = event_id
        self.status = status


class PublishError(DeliveryError):
    """Raised when an event reference cannot be put on the delivery channel"""

    def __init__(self, event_id: str, reason: str):
        super().__init__(f"Failed to queue event {event_id}: {reason}")
        self.event_id = event_id


class DeliveryOutcome(str, Enum):
    """What the coordinator did with one delivered message"""

    PROCESSED = "processed"  # success, ack
    RETRY = "retry"  # failed below max retries, nack
    DEAD_LETTERED = "dead_lettered"  # retries exhausted, ack
    DISCARDED = "discarded"  # malformed or dangling reference, ack
    DUPLICATE = "duplicate"  # event already terminal, ack
    BUSY = "busy"  # another lease holds the event, left to lease expiry
    SUPERSEDED = "superseded"  # status changed underneath the attempt, ack


NACK_OUTCOMES = frozenset({DeliveryOutcome.RETRY})
UNANSWERED_OUTCOMES = frozenset({DeliveryOutcome.BUSY})


class DeliveryCoordinator:
    """
    Owns event status transitions during delivery and the ack/nack protocol

    Transitions:
        PENDING|FAILED -> PROCESSING            claim on delivery
        PROCESSING -> PROCESSED                 step succeeded
        PROCESSING -> FAILED                    step failed, retry_count + 1 < max_retries
        PROCESSING -> DEAD_LETTER               step failed, retry_count + 1 >= max_retries
        FAILED|DEAD_LETTER -> PENDING           operator replay

    Every transition is a compare-and-set on the expected prior status.
    Store errors are never retried here: they propagate and the message is
    left unanswered so the channel redelivers it after the lease expires.
    """

    def __init__(
        self,
        store: EventStore,
        channel: DeliveryChannel,
        processor: ProcessingStep,
        max_retries: int = 3,
        processing_timeout_seconds: float = 300.0,
    ):
        """
        Initialize coordinator

        Args:
            store: Event store
            channel: Delivery channel to ack/nack on and publish replays to
            processor: Processing step invoked per claimed event
            max_retries: Failed attempts before an event is dead-lettered
            processing_timeout_seconds: Age after which a PROCESSING claim is
                considered abandoned and may be reclaimed
        """
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")

        self.store = store
        self.channel = channel
        self.processor = processor
        self.max_retries = max_retries
        self.processing_timeout = timedelta(seconds=processing_timeout_seconds)

    async def handle_message(self, message: ChannelMessage) -> DeliveryOutcome:
        """
        Process one channel delivery and answer the channel

        Returns:
            The delivery outcome

        Raises:
            StoreError: On persistence failure (message left unanswered)
        """
        event_id = parse_event_id(message.data)

        if event_id is None:
            logger.error("Discarding malformed message", message_id=message.id)
            await self._respond(message, ack=True)
            increment_delivery_outcome(DeliveryOutcome.DISCARDED.value)
            return DeliveryOutcome.DISCARDED

        logger.info(
            "Received message",
            event_id=event_id,
            message_id=message.id,
            redelivered=message.redelivered,
        )

        with trace_event_processing(event_id=event_id, message_id=message.id):
            outcome = await self.process_event(event_id)

        increment_delivery_outcome(outcome.value)

        if outcome in UNANSWERED_OUTCOMES:
            logger.info("Event claimed elsewhere, leaving message to lease expiry", event_id=event_id)
        else:
            await self._respond(message, ack=outcome not in NACK_OUTCOMES)

        return outcome

    async def _respond(self, message: ChannelMessage, ack: bool) -> None:
        if ack:
            await self.channel.ack(message)
            increment_channel_response("ack")
            logger.debug("Message acknowledged", message_id=message.id)
        else:
            await self.channel.nack(message)
            increment_channel_response("nack")
            logger.info("Message nacked for retry", message_id=message.id)

    async def process_event(self, event_id: str) -> DeliveryOutcome:
        """
        Claim, process and settle an event

        Raises:
            StoreError: On persistence failure
        """
        try:
            event = await self.store.transition(
                event_id,
                expected=CLAIMABLE_STATUSES,
                status=EventStatus.PROCESSING,
                stale_before=utc_now() - self.processing_timeout,
            )
        except EventNotFoundError:
            logger.error("Message references an unknown event, discarding", event_id=event_id)
            return DeliveryOutcome.DISCARDED
        except StatusConflictError as e:
            return self._unclaimable(e.current)

        logger.info(
            "Starting event processing",
            event_id=event_id,
            event_type=event.event_type,
            retry_count=event.retry_count,
        )

        start_time = time.monotonic()
        result = await self._run_step(event)
        observe_processing_duration(
            result="success" if result.success else "failure",
            duration_seconds=time.monotonic() - start_time,
        )

        if result.success:
            return await self._complete(event)
        return await self._fail(event, result.error or "Unknown error")

    def _unclaimable(self, current: Event) -> DeliveryOutcome:
        if current.is_terminal:
            logger.info(
                "Event already settled, acknowledging duplicate delivery",
                event_id=current.id,
                status=current.status.value,
            )
            return DeliveryOutcome.DUPLICATE

        logger.warning("Event is being processed by another consumer", event_id=current.id)
        return DeliveryOutcome.BUSY

    async def _run_step(self, event: Event) -> ProcessingResult:
        try:
            return await self.processor.process(event)
        except Exception as e:
            logger.error("Event processing failed", event_id=event.id, error=str(e), exc_info=True)
            return ProcessingResult.failed(str(e) or type(e).__name__)

    async def _complete(self, event: Event) -> DeliveryOutcome:
        try:
            await self.store.transition(
                event.id,
                expected={EventStatus.PROCESSING},
                status=EventStatus.PROCESSED,
                processed_at=utc_now(),
            )
        except StatusConflictError as e:
            logger.warning(
                "Event changed during processing, dropping result",
                event_id=event.id,
                status=e.current.status.value,
            )
            return DeliveryOutcome.SUPERSEDED

        logger.info("Event processed successfully", event_id=event.id, event_type=event.event_type)
        return DeliveryOutcome.PROCESSED

    async def _fail(self, event: Event, reason: str) -> DeliveryOutcome:
        retry_count = event.retry_count + 1
        status = EventStatus.DEAD_LETTER if retry_count >= self.max_retries else EventStatus.FAILED

        try:
            await self.store.transition(
                event.id,
                expected={EventStatus.PROCESSING},
                status=status,
                retry_count=retry_count,
                failed_at=utc_now(),
                failure_reason=reason,
            )
        except StatusConflictError as e:
            logger.warning(
                "Event changed during processing, dropping failure",
                event_id=event.id,
                status=e.current.status.value,
            )
            return DeliveryOutcome.SUPERSEDED

        if status == EventStatus.DEAD_LETTER:
            logger.warning("Event moved to dead letter", event_id=event.id, retry_count=retry_count)
        else:
            logger.warning("Event marked as failed, will retry", event_id=event.id, retry_count=retry_count)

        # Decide ack/nack from the stored state, not the in-memory attempt
        current = await self.store.get(event.id)
        if current is None:
            return DeliveryOutcome.DISCARDED
        return self._failure_outcome(current)

    def _failure_outcome(self, current: Event) -> DeliveryOutcome:
        if current.status == EventStatus.DEAD_LETTER or current.retry_count >= self.max_retries:
            return DeliveryOutcome.DEAD_LETTERED
        if current.status == EventStatus.FAILED:
            return DeliveryOutcome.RETRY

        # Replayed (a fresh message was published) or claimed by someone else
        logger.info(
            "Event moved on after failure, acknowledging stale message",
            event_id=current.id,
            status=current.status.value,
        )
        return DeliveryOutcome.SUPERSEDED

    async def publish(self, event_id: str) -> str:
        """
        Put an event reference on the channel

        Raises:
            PublishError: If the channel rejects the publish
        """
        try:
            return await self.channel.publish(event_id)
        except Exception as e:
            logger.error("Failed to publish event", event_id=event_id, error=str(e))
            raise PublishError(event_id, str(e)) from e

    async def mark_unpublished(self, event_id: str) -> Event:
        """
        Move a PENDING event that never reached the channel to FAILED

        Nothing would ever deliver it otherwise; as FAILED it shows up in the
        failed-events listing and can be replayed. ``retry_count`` is kept.
        """
        event = await self.store.transition(
            event_id,
            expected={EventStatus.PENDING},
            status=EventStatus.FAILED,
            failed_at=utc_now(),
            failure_reason=PUBLISH_FAILURE_REASON,
        )
        logger.warning("Event marked failed after publish error", event_id=event_id)
        return event

    async def replay(self, event_id: str) -> Event:
        """
        Reset a FAILED or DEAD_LETTER event to PENDING and re-enqueue it

        Returns:
            The reset event

        Raises:
            EventNotFoundError: If the event does not exist
            AlreadyProcessedError: If the event is PROCESSED (nothing changes)
            ReplayConflictError: If the event is PENDING or PROCESSING
            PublishError: If the reset event could not be re-enqueued; the
                event is marked FAILED again
        """
        event = await self.store.get_or_raise(event_id)
        self._check_replayable(event)

        try:
            updated = await self.store.transition(
                event_id,
                expected=REPLAYABLE_STATUSES,
                status=EventStatus.PENDING,
                retry_count=0,
                processed_at=None,
                failed_at=None,
                failure_reason=None,
            )
        except StatusConflictError as e:
            self._check_replayable(e.current)
            raise ReplayConflictError(event_id, e.current.status) from e

        try:
            await self.publish(event_id)
        except PublishError:
            await self.mark_unpublished(event_id)
            raise

        increment_replays()
        logger.info("Failed event replayed", event_id=event_id, previous_status=event.status.value)
        return updated

    @staticmethod
    def _check_replayable(event: Event) -> None:
        if event.status == EventStatus.PROCESSED:
            raise AlreadyProcessedError(event.id)
        if event.status not in REPLAYABLE_STATUSES:
            raise ReplayConflictError(event.id, event.status)
