"""Asyncio token bucket used to stay under external API request ceilings."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

_EPSILON = 1e-9


class TokenBucket:
    """Token bucket refilled continuously at ``rate`` tokens per second.

    ``capacity`` bounds the burst size.  With ``capacity=1`` the bucket
    degenerates into a minimum spacing of ``1 / rate`` seconds between calls.
    Waiters are served in arrival order.
    """

    def __init__(
        self,
        rate: float,
        capacity: float | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if rate <= 0:
            raise ValueError("rate must be positive")
        self.rate = float(rate)
        self.capacity = float(capacity if capacity is not None else rate)
        if self.capacity <= 0:
            raise ValueError("capacity must be positive")
        self._clock = clock
        self._sleep = sleep
        self._tokens = self.capacity
        self._updated = clock()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._updated)
        self._tokens = min(self.capacity, self._tokens + elapsed * self.rate)
        self._updated = now

    @property
    def tokens_remaining(self) -> float:
        self._refill()
        return self._tokens

    async def acquire(self, tokens: float = 1) -> float:
        """Wait until ``tokens`` are available and take them.

        Returns the total time spent waiting, in seconds.
        """
        if tokens > self.capacity:
            raise ValueError(f"cannot acquire {tokens} tokens from a bucket of {self.capacity}")

        waited = 0.0
        async with self._lock:
            while True:
                self._refill()
                # Tolerance absorbs float drift from the refill arithmetic
                if self._tokens + _EPSILON >= tokens:
                    self._tokens = max(0.0, self._tokens - tokens)
                    break
                delay = (tokens - self._tokens) / self.rate
                logger.debug("Rate limit reached, waiting %.3fs", delay)
                await self._sleep(delay)
                waited += delay
        return waited
