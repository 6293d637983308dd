"""Admission Controller — global token bucket in front of the upstream.

Bounds both burst size (capacity) and sustained rate (refill rate) of
upstream calls, independent of how many callers are waiting:

  - refill():    level += rate * elapsed, clamped to capacity
  - consume(n):  deduct immediately if possible, otherwise sleep for the
                 deficit (n - level) / rate, refill and deduct
  - status():    fresh integer token count for health surfaces

consume() never rejects; it only waits. Waiters are served FIFO through
an asyncio.Lock which is held across the deficit sleep, so concurrent
coroutines queue behind each other instead of racing for the same refill.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)


class TokenBucket:
    """Token bucket rate limiter shared by every dispatch.

    Usage:
        bucket = TokenBucket(capacity=10, refill_rate=0.15)

        # Before each upstream call:
        waited = await bucket.consume()

        # Observability:
        bucket.status()  # {"tokens_available": 7, "tokens_capacity": 10}
    """

    def __init__(
        self,
        capacity: int,
        refill_rate: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        if refill_rate <= 0:
            raise ValueError("refill_rate must be > 0")

        self.capacity = capacity
        self.refill_rate = refill_rate
        self._clock = clock
        self._sleep = sleep

        # Starts full so a fresh process can burst up to capacity
        self._level: float = float(capacity)
        self._last_refill: float = clock()
        self._lock = asyncio.Lock()

    @property
    def level(self) -> float:
        return self._level

    def refill(self) -> None:
        """Top up the level by the time elapsed since the last refill."""
        now = self._clock()
        elapsed = now - self._last_refill
        if elapsed > 0:
            self._level = min(float(self.capacity), self._level + elapsed * self.refill_rate)
        self._last_refill = now

    def wait_time(self, n: int = 1) -> float:
        """Seconds until `n` tokens are available (0 if available now)."""
        self.refill()
        if self._level >= n:
            return 0.0
        return (n - self._level) / self.refill_rate

    async def consume(self, n: int = 1) -> float:
        """Take `n` tokens, suspending the caller until they are available.

        Returns the number of seconds spent waiting for admission.
        """
        if n < 1:
            raise ValueError("n must be >= 1")
        if n > self.capacity:
            raise ValueError(f"cannot consume {n} tokens from a bucket of capacity {self.capacity}")

        started = self._clock()
        async with self._lock:
            wait = self.wait_time(n)

            if wait > 0:
                logger.debug(
                    "Admission wait %.2fs (level=%.2f, need=%d)",
                    wait,
                    self._level,
                    n,
                )
                await self._sleep(wait)
                self.refill()

            # Float drift can leave the level a hair short after the sleep
            self._level = max(0.0, self._level - n)
            return max(0.0, self._clock() - started)

    def status(self) -> dict:
        """Current integer token count and capacity (refreshed)."""
        self.refill()
        return {
            "tokens_available": max(0, min(self.capacity, math.floor(self._level))),
            "tokens_capacity": self.capacity,
        }
