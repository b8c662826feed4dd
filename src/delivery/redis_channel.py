"""
Redis Streams Delivery Channel
Consumer-group delivery with lease reclaim via XAUTOCLAIM
"""

import socket
from typing import AsyncIterator, List, Optional, Tuple

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError, ResponseError

from src.delivery.channel import ChannelError, ChannelMessage, DeliveryChannel, encode_message
from src.sinks.retry import RetryPolicy, retry_with_policy

logger = structlog.get_logger(__name__)

DATA_FIELD = "data"


class RedisStreamChannel(DeliveryChannel):
    """
    Delivery channel on a Redis stream and consumer group

    - publish: XADD
    - subscribe: XREADGROUP for new entries, XAUTOCLAIM for entries whose
      lease (idle time in the pending list) exceeded ``lease_seconds``
    - ack: XACK
    - nack: XACK + XADD of the same body in one MULTI/EXEC, so the message is
      redelivered immediately
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        stream: str = "eventflow:events",
        group: str = "eventflow-workers",
        consumer: Optional[str] = None,
        lease_seconds: float = 60.0,
        block_ms: int = 5000,
        batch_size: int = 10,
        publish_retry: Optional[RetryPolicy] = None,
        client: Optional[aioredis.Redis] = None,
    ):
        """
        Initialize Redis stream channel

        Args:
            redis_url: Redis connection URL
            stream: Stream key
            group: Consumer group name
            consumer: Consumer name (defaults to the host name)
            lease_seconds: Idle time after which another consumer may claim a message
            block_ms: XREADGROUP block timeout
            batch_size: Max entries per read/claim
            publish_retry: Retry policy for transient publish errors
            client: Pre-built client (tests)
        """
        self.redis_url = redis_url
        self.stream = stream
        self.group = group
        self.consumer = consumer or socket.gethostname()
        self.lease_seconds = lease_seconds
        self.block_ms = block_ms
        self.batch_size = batch_size
        self.publish_retry = publish_retry or RetryPolicy()
        self._redis = client
        self._closed = False

    def _sanitize_url(self) -> str:
        """Hide credentials in the URL for logging"""
        if "@" in self.redis_url:
            return f"redis://***@{self.redis_url.split('@')[-1]}"
        return self.redis_url

    async def connect(self) -> None:
        """
        Connect to Redis and create the consumer group if missing

        Raises:
            ChannelError: If Redis is unreachable
        """
        if self._redis is None:
            self._redis = aioredis.from_url(self.redis_url, decode_responses=True)

        try:
            await self._redis.ping()
            await self._redis.xgroup_create(self.stream, self.group, id="0", mkstream=True)
            logger.info("Consumer group created", stream=self.stream, group=self.group)
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise ChannelError(f"Failed to create consumer group: {e}") from e
        except RedisError as e:
            raise ChannelError(f"Failed to connect to Redis: {e}") from e

        logger.info(
            "Redis stream channel connected",
            url=self._sanitize_url(),
            stream=self.stream,
            consumer=self.consumer,
        )

    async def close(self) -> None:
        self._closed = True
        if self._redis is not None:
            await self._redis.aclose()
            logger.info("Redis stream channel closed")

    async def health_check(self) -> bool:
        try:
            if self._redis is None:
                return False
            return bool(await self._redis.ping())
        except RedisError as e:
            logger.warning("Redis health check failed", error=str(e))
            return False

    def _require_client(self) -> aioredis.Redis:
        if self._redis is None:
            raise ChannelError("Not connected to Redis")
        return self._redis

    async def publish(self, event_id: str) -> str:
        client = self._require_client()
        body = encode_message(event_id).decode("utf-8")

        try:
            message_id = await retry_with_policy(
                client.xadd, self.publish_retry, self.stream, {DATA_FIELD: body}
            )
        except RedisError as e:
            raise ChannelError(f"Failed to publish event {event_id}: {e}") from e

        logger.info("Event published to stream", event_id=event_id, message_id=message_id)
        return message_id

    @staticmethod
    def _to_message(entry: Tuple[str, dict], redelivered: bool) -> ChannelMessage:
        message_id, fields = entry
        data = (fields or {}).get(DATA_FIELD, "")
        return ChannelMessage(id=message_id, data=data.encode("utf-8"), redelivered=redelivered)

    async def _claim_expired(self) -> List[ChannelMessage]:
        client = self._require_client()
        result = await client.xautoclaim(
            self.stream,
            self.group,
            self.consumer,
            min_idle_time=int(self.lease_seconds * 1000),
            start_id="0-0",
            count=self.batch_size,
        )
        entries = result[1] if len(result) > 1 else []
        claimed = [self._to_message(entry, redelivered=True) for entry in entries if entry]
        if claimed:
            logger.warning("Reclaimed messages with expired leases", count=len(claimed))
        return claimed

    async def _read_new(self) -> List[ChannelMessage]:
        client = self._require_client()
        response = await client.xreadgroup(
            self.group,
            self.consumer,
            {self.stream: ">"},
            count=self.batch_size,
            block=self.block_ms,
        )
        messages = []
        for _stream, entries in response or []:
            messages.extend(self._to_message(entry, redelivered=False) for entry in entries)
        return messages

    async def subscribe(self) -> AsyncIterator[ChannelMessage]:
        while not self._closed:
            try:
                messages = await self._claim_expired()
                if not messages:
                    messages = await self._read_new()
            except RedisError as e:
                if self._closed:
                    break
                raise ChannelError(f"Failed to read from stream: {e}") from e

            for message in messages:
                yield message

    async def ack(self, message: ChannelMessage) -> None:
        client = self._require_client()
        try:
            await client.xack(self.stream, self.group, message.id)
        except RedisError as e:
            raise ChannelError(f"Failed to ack message {message.id}: {e}") from e

    async def nack(self, message: ChannelMessage) -> None:
        client = self._require_client()
        try:
            async with client.pipeline(transaction=True) as pipe:
                pipe.xack(self.stream, self.group, message.id)
                pipe.xadd(self.stream, {DATA_FIELD: message.data.decode("utf-8")})
                await pipe.execute()
        except RedisError as e:
            raise ChannelError(f"Failed to nack message {message.id}: {e}") from e
