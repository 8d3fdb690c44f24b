"""
Retry/Backoff Policy
====================

Decides whether a failed pipeline attempt is re-attempted and how long to
wait first. Delays double with each attempt: 1s, 2s, 4s, ...

The policy itself never sleeps on its own clock: ``wait`` goes through an
injectable ``sleep`` coroutine so tests can record delays instead of waiting.
"""

import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional

from config import Settings
from exceptions import PipelineError


logger = logging.getLogger(__name__)


SleepFunc = Callable[[float], Awaitable[None]]


class RetryPolicy:
    """
    Exponential backoff for retryable pipeline failures.

    Args:
        base_delay_seconds: Delay before the first retry
        max_delay_seconds: Optional cap for a single delay
        jitter: Fraction of the delay added at random (0.0 = none)
        sleep: Awaitable sleep used by ``wait`` (defaults to asyncio.sleep)
    """

    def __init__(
        self,
        base_delay_seconds: float = 1.0,
        max_delay_seconds: Optional[float] = None,
        jitter: float = 0.0,
        sleep: Optional[SleepFunc] = None
    ):
        self.base_delay_seconds = base_delay_seconds
        self.max_delay_seconds = max_delay_seconds
        self.jitter = jitter
        self._sleep = sleep or asyncio.sleep

    @classmethod
    def from_settings(cls, settings: Settings, sleep: Optional[SleepFunc] = None) -> "RetryPolicy":
        return cls(
            base_delay_seconds=settings.retry_base_delay_seconds,
            max_delay_seconds=settings.retry_max_delay_seconds,
            jitter=settings.retry_jitter,
            sleep=sleep
        )

    def should_retry(self, error: PipelineError, attempt: int, max_retries: int) -> bool:
        """True iff the error is retryable and retries remain."""
        return bool(error.retryable) and attempt < max_retries

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait before re-running after ``attempt`` failed."""
        delay = self.base_delay_seconds * (2 ** attempt)
        if self.max_delay_seconds is not None:
            delay = min(delay, self.max_delay_seconds)
        if self.jitter:
            delay += delay * self.jitter * random.random()
        return delay

    async def wait(self, attempt: int) -> float:
        """Sleep for the backoff of ``attempt``. Cancellable."""
        delay = self.delay_for(attempt)
        logger.debug(f"Backing off {delay:.2f}s after attempt {attempt}")
        await self._sleep(delay)
        return delay
