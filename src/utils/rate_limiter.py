"""Parcel Tracker — Async Rate Limiter.

Sliding-window limiter used by the page-scraping providers so a poll
cycle over many tracking codes does not hammer the carrier's site.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque

from src.utils.logger import get_logger

logger = get_logger(__name__)


class AsyncRateLimiter:
    """Allow at most `max_calls` acquisitions per `period_seconds`.

    Waiters are served in arrival order: the lock is held while a
    waiter sleeps, so later callers queue behind it.

    Attributes:
        max_calls: Maximum number of calls allowed within the window.
        period: Window length in seconds.
    """

    def __init__(self, max_calls: int, period_seconds: float) -> None:
        """Initialize the rate limiter.

        Args:
            max_calls: Maximum number of calls allowed per window.
            period_seconds: Length of the sliding window in seconds.

        Raises:
            ValueError: If max_calls is below 1.
        """
        if max_calls < 1:
            raise ValueError("max_calls must be at least 1")
        self.max_calls = max_calls
        self.period = period_seconds
        self._timestamps: deque[float] = deque()
        self._lock = asyncio.Lock()

    def _cleanup_expired(self, now: float) -> None:
        """Drop timestamps that fell out of the window ending at `now`."""
        cutoff = now - self.period
        while self._timestamps and self._timestamps[0] <= cutoff:
            self._timestamps.popleft()

    @property
    def available_slots(self) -> int:
        """Return the number of free slots in the current window.

        Approximate: read without taking the lock.

        Returns:
            Remaining slots before acquire() would wait.
        """
        self._cleanup_expired(time.monotonic())
        return max(0, self.max_calls - len(self._timestamps))

    async def acquire(self) -> None:
        """Acquire a slot, sleeping until the oldest timestamp expires if needed.

        Safe to call from concurrent coroutines; waiters are served in
        arrival order.
        """
        async with self._lock:
            while True:
                now = time.monotonic()
                self._cleanup_expired(now)
                if len(self._timestamps) < self.max_calls:
                    self._timestamps.append(now)
                    return

                wait_time = self._timestamps[0] + self.period - now
                logger.debug(
                    "Rate limit reached (%d/%d). Waiting %.2f seconds...",
                    len(self._timestamps), self.max_calls, wait_time,
                )
                await asyncio.sleep(max(wait_time, 0.0))

    async def __aenter__(self) -> "AsyncRateLimiter":
        await self.acquire()
        return self

    async def __aexit__(self, *args: object) -> None:
        pass

    def __repr__(self) -> str:
        return f"AsyncRateLimiter(max_calls={self.max_calls}, period={self.period}s)"
