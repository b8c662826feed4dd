"""
Delivery Worker
Pulls messages from the delivery channel and hands them to the coordinator
"""

import asyncio
from collections import Counter
from typing import Optional, Set

import structlog

from src.delivery.channel import ChannelMessage, DeliveryChannel
from src.delivery.coordinator import DeliveryCoordinator, DeliveryOutcome

logger = structlog.get_logger(__name__)


class DeliveryWorker:
    """
    Consume loop over one channel subscription

    Up to ``concurrency`` messages are handled at once. When settling a
    message raises (a persistence failure), the message stays unanswered so
    the channel redelivers it after its lease; with ``fail_fast`` the worker
    also stops and ``run()`` re-raises the error so the process exits.
    """

    def __init__(
        self,
        coordinator: DeliveryCoordinator,
        channel: DeliveryChannel,
        concurrency: int = 1,
        fail_fast: bool = True,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")

        self.coordinator = coordinator
        self.channel = channel
        self.concurrency = concurrency
        self.fail_fast = fail_fast
        self.outcomes: Counter = Counter()
        self.fatal_error: Optional[BaseException] = None
        self._stop = asyncio.Event()
        self._slots = asyncio.Semaphore(concurrency)
        self._in_flight: Set[asyncio.Task] = set()

    @property
    def handled_count(self) -> int:
        return sum(self.outcomes.values())

    def stop(self) -> None:
        """Request graceful shutdown: stop pulling, finish in-flight messages"""
        if not self._stop.is_set():
            logger.info("Worker shutdown requested")
        self._stop.set()

    async def run(self) -> None:
        """
        Run until stopped or the subscription ends

        Raises:
            Exception: The fatal error that stopped a fail-fast worker
        """
        logger.info("Worker started and listening for messages", concurrency=self.concurrency)

        subscription = self.channel.subscribe().__aiter__()
        stop_waiter = asyncio.ensure_future(self._stop.wait())

        try:
            while not self._stop.is_set():
                next_message = asyncio.ensure_future(subscription.__anext__())
                done, _ = await asyncio.wait(
                    {next_message, stop_waiter}, return_when=asyncio.FIRST_COMPLETED
                )

                if next_message not in done:
                    next_message.cancel()
                    await asyncio.gather(next_message, return_exceptions=True)
                    break

                try:
                    message = next_message.result()
                except StopAsyncIteration:
                    logger.info("Subscription ended")
                    break

                await self._slots.acquire()
                task = asyncio.create_task(self._handle(message))
                self._in_flight.add(task)
                task.add_done_callback(self._in_flight.discard)

        finally:
            stop_waiter.cancel()
            if self._in_flight:
                logger.info("Waiting for in-flight messages", count=len(self._in_flight))
                await asyncio.gather(*self._in_flight, return_exceptions=True)
            await subscription.aclose()

        logger.info("Worker stopped", handled=self.handled_count)

        if self.fatal_error is not None:
            raise self.fatal_error

    async def _handle(self, message: ChannelMessage) -> None:
        try:
            outcome: DeliveryOutcome = await self.coordinator.handle_message(message)
            self.outcomes[outcome] += 1

        except Exception as e:
            logger.error(
                "Failed to settle message, leaving it for redelivery",
                message_id=message.id,
                error=str(e),
                exc_info=True,
            )
            if self.fail_fast:
                if self.fatal_error is None:
                    self.fatal_error = e
                self.stop()

        finally:
            self._slots.release()
