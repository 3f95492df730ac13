"""
RateLimiter - Enforces a minimum spacing between outbound upstream calls.

Acquire-and-record happens under a single asyncio.Lock, so concurrent callers
queue up behind each other instead of both observing "enough time has passed"
and dispatching together.
"""

import asyncio
import time
from datetime import timedelta
from typing import Any, Awaitable, Callable

from loguru import logger


class RateLimiter:
    """
    Serializing gate for calls to a rate-limited provider.

    Usage:
        limiter = RateLimiter(min_interval=timedelta(seconds=2))

        await limiter.acquire()
        response = await client.get(url)
    """

    def __init__(
        self,
        min_interval: timedelta = timedelta(seconds=2),
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        debug: bool = False,
    ):
        self._min_interval = min_interval.total_seconds()
        self._clock = clock
        self._sleep = sleep
        self._debug = debug
        self._lock = asyncio.Lock()
        self._last_dispatch_at: float | None = None
        self._dispatched = 0
        self._waited = 0.0

    @property
    def min_interval(self) -> float:
        """Minimum spacing between dispatches, in seconds."""
        return self._min_interval

    @property
    def last_dispatch_at(self) -> float | None:
        return self._last_dispatch_at

    async def acquire(self) -> None:
        """Suspend until a dispatch is permitted, then record it."""
        async with self._lock:
            if self._last_dispatch_at is not None:
                wait = self._last_dispatch_at + self._min_interval - self._clock()
                if wait > 0:
                    self._log(f"Rate limiting: waiting {wait * 1000:.0f}ms")
                    self._waited += wait
                    await self._sleep(wait)

            self._last_dispatch_at = self._clock()
            self._dispatched += 1

    def get_status(self) -> dict[str, Any]:
        """Get current status as dictionary."""
        return {
            "min_interval_ms": int(self._min_interval * 1000),
            "dispatched": self._dispatched,
            "total_wait_ms": int(self._waited * 1000),
        }

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[RateLimiter] {message}")
