"""
Processing Step Capability
The business logic a delivered event triggers, injected into the coordinator
"""

import asyncio
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Union

import structlog

from src.models.event import Event

logger = structlog.get_logger(__name__)


@dataclass
class ProcessingResult:
    """Outcome of one processing attempt"""

    success: bool
    error: Optional[str] = None

    @classmethod
    def ok(cls) -> "ProcessingResult":
        return cls(success=True)

    @classmethod
    def failed(cls, reason: str) -> "ProcessingResult":
        return cls(success=False, error=reason)


class ProcessingStep(ABC):
    """Single-method capability: process an event, report success or failure"""

    @abstractmethod
    async def process(self, event: Event) -> ProcessingResult:
        """
        Process an event

        Raising is equivalent to returning a failed result whose reason is
        the exception message.
        """
        pass


HandlerResult = Union[None, bool, ProcessingResult]


class CallableProcessingStep(ProcessingStep):
    """
    Adapt an async callable into a processing step

    The callable may return None or True (success), False (failure) or a
    ProcessingResult.
    """

    def __init__(self, handler: Callable[[Event], Awaitable[HandlerResult]]):
        self.handler = handler

    async def process(self, event: Event) -> ProcessingResult:
        result = await self.handler(event)

        if isinstance(result, ProcessingResult):
            return result
        if result is False:
            return ProcessingResult.failed("handler reported failure")
        return ProcessingResult.ok()


class SimulatedProcessingStep(ProcessingStep):
    """
    Stand-in processing with a random delay and failure rate

    Args:
        min_delay_seconds: Lower bound of the simulated work time
        max_delay_seconds: Upper bound of the simulated work time
        failure_rate: Probability (0-1) that an attempt fails
        seed: Seed for reproducible runs
    """

    def __init__(
        self,
        min_delay_seconds: float = 0.1,
        max_delay_seconds: float = 0.3,
        failure_rate: float = 0.1,
        seed: Optional[int] = None,
    ):
        if not 0.0 <= failure_rate <= 1.0:
            raise ValueError("failure_rate must be between 0 and 1")
        self.min_delay_seconds = min_delay_seconds
        self.max_delay_seconds = max_delay_seconds
        self.failure_rate = failure_rate
        self._random = random.Random(seed)

    async def process(self, event: Event) -> ProcessingResult:
        await asyncio.sleep(self._random.uniform(self.min_delay_seconds, self.max_delay_seconds))

        if self._random.random() < self.failure_rate:
            return ProcessingResult.failed("Simulated processing failure")

        logger.debug("Processing completed", event_id=event.id, event_type=event.event_type)
        return ProcessingResult.ok()
