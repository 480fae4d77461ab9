from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable

from podping_ingest.core.errors import RateLimitTimeout


class TokenBucketRateLimiter:
    """Process-wide token bucket refilled continuously at ``rate_per_second``.

    ``acquire`` only suspends its caller. Waiters are served one at a time in
    arrival order so a large request cannot be starved by small ones.
    """

    def __init__(
        self,
        rate_per_second: float,
        capacity: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if rate_per_second <= 0:
            raise ValueError("rate_per_second must be positive")
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.rate_per_second = float(rate_per_second)
        self.capacity = float(capacity)
        self._clock = clock
        self._sleep = sleep
        self._tokens = float(capacity)
        self._updated_at = clock()
        self._lock = asyncio.Lock()

    @property
    def available(self) -> float:
        self._refill()
        return self._tokens

    async def acquire(self, cost: float = 1, *, timeout: float | None = None) -> None:
        if cost <= 0:
            return
        if cost > self.capacity:
            raise ValueError(f"cost {cost} exceeds bucket capacity {self.capacity}")

        deadline = None if timeout is None else self._clock() + timeout
        if timeout is None:
            await self._lock.acquire()
        elif not await self._acquire_lock_within(timeout):
            raise RateLimitTimeout(f"rate limit permit not granted within {timeout}s")

        try:
            while True:
                self._refill()
                if self._tokens >= cost:
                    self._tokens -= cost
                    return
                wait_for = (cost - self._tokens) / self.rate_per_second
                if deadline is not None and self._clock() + wait_for > deadline:
                    raise RateLimitTimeout(f"rate limit permit not granted within {timeout}s")
                await self._sleep(wait_for)
        finally:
            self._lock.release()

    async def _acquire_lock_within(self, timeout: float) -> bool:
        waiter = asyncio.ensure_future(self._lock.acquire())
        try:
            done, _ = await asyncio.wait({waiter}, timeout=max(0.0, timeout))
        except asyncio.CancelledError:
            self._abandon(waiter)
            raise
        if done:
            return True
        self._abandon(waiter)
        return False

    def _abandon(self, waiter: asyncio.Future) -> None:
        # the waiter may still win the lock after we stop waiting for it
        waiter.cancel()
        waiter.add_done_callback(self._release_if_acquired)

    def _release_if_acquired(self, waiter: asyncio.Future) -> None:
        if not waiter.cancelled() and waiter.exception() is None:
            self._lock.release()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._updated_at)
        self._updated_at = now
        self._tokens = min(self.capacity, self._tokens + elapsed * self.rate_per_second)
