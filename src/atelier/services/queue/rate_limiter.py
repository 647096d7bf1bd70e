"""Rolling-window rate limiters for worker pools.

SlidingWindowRateLimiter is shared by the executors of one process. SharedRateLimiter
keeps the window in the database so the limit holds across worker processes.
"""

import asyncio
import time
from collections import deque
from typing import Callable

from atelier.services.queue.job_queue import JobQueue


class SlidingWindowRateLimiter:
    """Allow at most ``max_calls`` acquisitions per rolling ``duration_ms`` window.

    One instance is shared by all executors of a subscription, so the limit applies
    to the pool as a whole rather than per executor.

    Args:
        max_calls: Acquisitions allowed per window (0 disables the limiter)
        duration_ms: Window length in milliseconds
        clock: Monotonic clock in seconds (injectable for tests)
    """

    def __init__(
        self,
        max_calls: int,
        duration_ms: int,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_calls = max_calls
        self.window = duration_ms / 1000.0
        self.clock = clock
        self._calls: deque[float] = deque()
        self._lock = asyncio.Lock()

    @property
    def enabled(self) -> bool:
        return self.max_calls > 0

    def _evict(self, now: float) -> None:
        while self._calls and now - self._calls[0] >= self.window:
            self._calls.popleft()

    def try_acquire(self) -> float:
        """Take a slot if one is free.

        Returns:
            0.0 if a slot was taken, otherwise seconds until the oldest call leaves the window
        """
        if not self.enabled:
            return 0.0
        now = self.clock()
        self._evict(now)
        if len(self._calls) < self.max_calls:
            self._calls.append(now)
            return 0.0
        return max(self.window - (now - self._calls[0]), 0.0)

    def release(self) -> None:
        """Give back the most recent slot (the call it admitted did not happen)."""
        if self._calls:
            self._calls.pop()

    async def acquire(self) -> None:
        """Wait until a slot is free and take it."""
        async with self._lock:
            while True:
                wait = self.try_acquire()
                if wait <= 0:
                    return
                await asyncio.sleep(wait)


class SharedRateLimiter:
    """Allow at most ``max_calls`` jobs of ``job_type`` per window across all processes.

    Slots are recorded through the queue's database. The in-process window is checked
    first, so a saturated process waits without a database round trip.

    Args:
        queue: Queue whose database holds the shared window
        job_type: Queue name the limit applies to
        max_calls: Acquisitions allowed per window (0 disables the limiter)
        duration_ms: Window length in milliseconds
    """

    def __init__(self, queue: JobQueue, job_type: str, max_calls: int, duration_ms: int):
        self.queue = queue
        self.job_type = job_type
        self.max_calls = max_calls
        self.duration_ms = duration_ms
        self.local = SlidingWindowRateLimiter(max_calls, duration_ms)
        self._lock = asyncio.Lock()

    @property
    def enabled(self) -> bool:
        return self.max_calls > 0

    async def try_acquire(self) -> float:
        """Take a slot if one is free locally and in the shared window.

        Returns:
            0.0 if a slot was taken, otherwise seconds to wait before trying again

        Raises:
            QueueUnavailableError: If the shared window cannot be reached
        """
        if not self.enabled:
            return 0.0
        wait = self.local.try_acquire()
        if wait > 0:
            return wait
        wait = await self.queue.acquire_rate_slot(
            self.job_type, self.max_calls, self.duration_ms
        )
        if wait > 0:
            self.local.release()
        return wait

    async def acquire(self) -> None:
        """Wait until a slot is free and take it."""
        async with self._lock:
            while True:
                wait = await self.try_acquire()
                if wait <= 0:
                    return
                await asyncio.sleep(wait)
