"""
Delivery Channel Interface
At-least-once message channel carrying event references to workers
"""

import asyncio
import json
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import AsyncIterator, Deque, Dict, Optional, Set, Tuple
from uuid import UUID, uuid4

import structlog

logger = structlog.get_logger(__name__)


class ChannelError(Exception):
    """Base exception for delivery channel errors"""

    pass


def encode_message(event_id: str) -> bytes:
    """Wire format of a channel message: {"eventId": "<uuid>"}"""
    return json.dumps({"eventId": event_id}).encode("utf-8")


def parse_event_id(data: bytes) -> Optional[str]:
    """
    Extract the event id from a channel message body

    Returns:
        The canonical event id, or None if the body is not valid JSON, has no
        eventId, or the eventId is not a UUID
    """
    try:
        body = json.loads(data)
    except (TypeError, ValueError):
        return None

    if not isinstance(body, dict):
        return None

    event_id = body.get("eventId")
    if not isinstance(event_id, str) or not event_id:
        return None

    try:
        return str(UUID(event_id))
    except ValueError:
        return None


@dataclass
class ChannelMessage:
    """
    One delivery of a channel message

    Attributes:
        id: Channel-assigned message id
        data: Raw message body
        ack_id: Token identifying this delivery's lease
        redelivered: True if the message was delivered before
        received_at: When this delivery was handed to the consumer
    """

    id: str
    data: bytes
    ack_id: str = field(default_factory=lambda: str(uuid4()))
    redelivered: bool = False
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class DeliveryChannel(ABC):
    """
    Abstract at-least-once delivery channel

    Guarantees expected from implementations:
    - a message neither acked nor nacked within its lease is redelivered
    - a message is never leased to two consumers at the same time
    """

    async def connect(self) -> None:
        """Open channel resources (no-op by default)"""

    async def close(self) -> None:
        """Stop subscriptions and release resources (no-op by default)"""

    async def health_check(self) -> bool:
        return True

    @abstractmethod
    async def publish(self, event_id: str) -> str:
        """
        Publish an event reference

        Returns:
            Channel message id

        Raises:
            ChannelError: If the message could not be published
        """
        pass

    @abstractmethod
    def subscribe(self) -> AsyncIterator[ChannelMessage]:
        """Yield leased messages until the channel is closed"""
        pass

    @abstractmethod
    async def ack(self, message: ChannelMessage) -> None:
        """Acknowledge a delivery; the message is never redelivered"""
        pass

    @abstractmethod
    async def nack(self, message: ChannelMessage) -> None:
        """Reject a delivery; the message is redelivered"""
        pass


class InMemoryChannel(DeliveryChannel):
    """
    Process-local channel with lease semantics

    Used for single-process deployments and tests. Leases expire after
    ``lease_seconds``; expired messages go back to the front of the queue.
    """

    def __init__(self, lease_seconds: float = 60.0, poll_interval_seconds: float = 0.05):
        self.lease_seconds = lease_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self._messages: Dict[str, bytes] = {}
        self._ready: Deque[str] = deque()
        self._leases: Dict[str, Tuple[str, float]] = {}
        self._delivered: Set[str] = set()
        self._wakeup = asyncio.Event()
        self._closed = False

    @property
    def pending_count(self) -> int:
        """Messages waiting for delivery"""
        return len(self._ready)

    @property
    def in_flight_count(self) -> int:
        """Messages currently leased to a consumer"""
        return len(self._leases)

    async def publish(self, event_id: str) -> str:
        if self._closed:
            raise ChannelError("Channel is closed")

        message_id = str(uuid4())
        self._messages[message_id] = encode_message(event_id)
        self._ready.append(message_id)
        self._wakeup.set()

        logger.debug("Message published", message_id=message_id, event_id=event_id)
        return message_id

    async def publish_raw(self, data: bytes) -> str:
        """Publish an arbitrary body (lets tests inject malformed messages)"""
        message_id = str(uuid4())
        self._messages[message_id] = data
        self._ready.append(message_id)
        self._wakeup.set()
        return message_id

    def _reclaim_expired(self) -> None:
        now = time.monotonic()
        expired = [mid for mid, (_, deadline) in self._leases.items() if deadline <= now]
        for message_id in expired:
            del self._leases[message_id]
            self._ready.appendleft(message_id)
            logger.warning("Lease expired, message will be redelivered", message_id=message_id)

    def _lease_next(self) -> Optional[ChannelMessage]:
        self._reclaim_expired()
        if not self._ready:
            return None

        message_id = self._ready.popleft()
        message = ChannelMessage(
            id=message_id,
            data=self._messages[message_id],
            redelivered=message_id in self._delivered,
        )
        self._leases[message_id] = (message.ack_id, time.monotonic() + self.lease_seconds)
        self._delivered.add(message_id)
        return message

    async def receive(self, timeout: Optional[float] = None) -> Optional[ChannelMessage]:
        """
        Lease the next message, waiting up to ``timeout`` seconds

        Returns:
            The leased message, or None on timeout or close
        """
        deadline = None if timeout is None else time.monotonic() + timeout

        while not self._closed:
            message = self._lease_next()
            if message is not None:
                return message

            wait = self.poll_interval_seconds
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                wait = min(wait, remaining)

            self._wakeup.clear()
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=wait)
            except asyncio.TimeoutError:
                pass

        return None

    async def subscribe(self) -> AsyncIterator[ChannelMessage]:
        while not self._closed:
            message = await self.receive()
            if message is not None:
                yield message

    def _release(self, message: ChannelMessage) -> bool:
        lease = self._leases.get(message.id)
        if lease is None or lease[0] != message.ack_id:
            logger.warning("Ignoring response for a lease that is no longer held", message_id=message.id)
            return False
        del self._leases[message.id]
        return True

    async def ack(self, message: ChannelMessage) -> None:
        if self._release(message):
            self._messages.pop(message.id, None)
            self._delivered.discard(message.id)

    async def nack(self, message: ChannelMessage) -> None:
        if self._release(message):
            self._ready.append(message.id)
            self._wakeup.set()

    async def close(self) -> None:
        self._closed = True
        self._wakeup.set()
