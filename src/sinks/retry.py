"""
Backoff and Retry
One delay schedule for load-job status polling and channel publish retries
"""

import asyncio
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")

JITTER_FRACTION = 0.25

# Substrings of error messages, lower-cased
PERMANENT_MARKERS = ("permission denied", "authentication", "noauth", "wrongtype", "invalid")
TRANSIENT_MARKERS = (
    "connection",
    "timeout",
    "timed out",
    "temporar",
    "unavailable",
    "loading",
    "busy",
    "reset",
    "broken pipe",
)


def calculate_backoff(
    attempt: int,
    base_delay: float,
    multiplier: float,
    max_delay: Optional[float] = None,
    jitter: bool = True,
) -> float:
    """
    Delay before retry number ``attempt`` (1-indexed)

    ``base_delay * multiplier ** (attempt - 1)``, capped at ``max_delay``, then
    spread by up to 25% either way when ``jitter`` is set. A multiplier of 1.0
    gives a fixed interval.
    """
    delay = base_delay * multiplier ** (attempt - 1)
    if max_delay is not None and delay > max_delay:
        delay = max_delay

    if jitter:
        delay *= 1 + random.uniform(-JITTER_FRACTION, JITTER_FRACTION)

    return max(delay, 0.0)


@dataclass
class RetryPolicy:
    """
    How often and how patiently to retry a transient failure

    Attributes:
        max_attempts: Total attempts, the first one included
        base_delay: Seconds before the second attempt
        max_delay: Upper bound for a single delay
        multiplier: Growth factor between delays
        jitter: Randomize delays by up to 25%
    """

    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 10.0
    multiplier: float = 2.0
    jitter: bool = True

    def delay_for(self, attempt: int) -> float:
        return calculate_backoff(
            attempt=attempt,
            base_delay=self.base_delay,
            multiplier=self.multiplier,
            max_delay=self.max_delay,
            jitter=self.jitter,
        )


def is_retryable_error(error: Exception) -> bool:
    """
    True for failures worth another attempt (lost connections, timeouts,
    a server still loading), False for everything else
    """
    if isinstance(error, (ConnectionError, TimeoutError, asyncio.TimeoutError)):
        return True

    message = str(error).lower()
    if any(marker in message for marker in PERMANENT_MARKERS):
        return False
    return any(marker in message for marker in TRANSIENT_MARKERS)


async def retry_with_policy(
    func: Callable[..., Awaitable[T]],
    policy: RetryPolicy,
    *args,
    **kwargs,
) -> T:
    """
    Await ``func(*args, **kwargs)``, retrying transient errors per ``policy``

    Raises:
        The first permanent error, or the last transient one once
        ``policy.max_attempts`` is used up
    """
    if policy.max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    attempt = 1
    while True:
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            if attempt >= policy.max_attempts or not is_retryable_error(e):
                raise

            delay = policy.delay_for(attempt)
            logger.warning(
                "Transient error, retrying",
                operation=getattr(func, "__name__", repr(func)),
                attempt=attempt,
                max_attempts=policy.max_attempts,
                delay_seconds=round(delay, 2),
                error=str(e),
            )
            await asyncio.sleep(delay)
            attempt += 1
