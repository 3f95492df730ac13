"""
SingleFlightRefresher - Runs at most one aggregate refresh at a time.

When a refresh is already running, callers join it and await the same
task instead of starting another one. Its outcome (new snapshot or error)
is shared by every joiner.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Generic, TypeVar

from loguru import logger

from songbook.services.cache import CacheEntry, CacheSnapshot, as_utc, utc_now
from songbook.services.errors import RefreshTimeoutError, UpstreamFatalError

T = TypeVar("T")


def _consume_exception(task: "asyncio.Task[Any]") -> None:
    """Mark a refresh failure as retrieved even when nobody awaited it."""
    if not task.cancelled():
        task.exception()


class SingleFlightRefresher(Generic[T]):
    """
    Coalesces concurrent refreshes of a CacheEntry.

    Usage:
        refresher = SingleFlightRefresher(CacheEntry())

        task = await refresher.trigger_or_join(aggregator.fetch_aggregate)
        snapshot = await task
    """

    def __init__(
        self,
        entry: CacheEntry[T] | None = None,
        timeout: timedelta | None = None,
        clock: Callable[[], datetime] = utc_now,
        debug: bool = False,
    ):
        self._entry: CacheEntry[T] = entry if entry is not None else CacheEntry()
        self._timeout = timeout.total_seconds() if timeout else None
        self._clock = clock
        self._debug = debug
        self._lock = asyncio.Lock()
        self._stats = RefresherStats()

    @property
    def entry(self) -> CacheEntry[T]:
        return self._entry

    async def trigger_or_join(
        self,
        aggregate: Callable[[], Awaitable[T]],
    ) -> "asyncio.Task[CacheSnapshot[T]]":
        """
        Start a refresh, or join the one already running.

        Args:
            aggregate: Async function producing the full payload

        Returns:
            Task resolving to the committed snapshot, or raising UpstreamFatalError
        """
        async with self._lock:
            task = self._entry.in_flight
            if task is not None and not task.done():
                self._stats.joined += 1
                self._log("JOIN: Waiting for in-flight refresh")
                return task

            self._stats.started += 1
            self._entry.last_attempt_started_at = self._clock()
            task = asyncio.create_task(self._run(aggregate))
            task.add_done_callback(_consume_exception)
            self._entry.in_flight = task
            self._log("NEW: Starting refresh")
            return task

    async def _run(self, aggregate: Callable[[], Awaitable[T]]) -> CacheSnapshot[T]:
        """Execute the refresh and commit its result to the entry."""
        logger.info("Refreshing cache data...")
        try:
            try:
                payload = await self._aggregate_with_deadline(aggregate)
            except UpstreamFatalError:
                raise
            except Exception as e:
                raise UpstreamFatalError(
                    f"Refresh failed: {type(e).__name__}: {e}",
                    last_error=e,
                ) from e

        except UpstreamFatalError as e:
            self._stats.failed += 1
            self._entry.last_error = str(e)
            logger.error(f"Error refreshing cache, keeping existing data: {e}")
            raise

        else:
            snapshot = self._commit(payload)
            self._stats.succeeded += 1
            logger.info(f"Cache refreshed at {snapshot.fetched_at.isoformat()}")
            return snapshot

        finally:
            if self._entry.in_flight is asyncio.current_task():
                self._entry.in_flight = None
            self._log("DONE: Refresh finished")

    async def _aggregate_with_deadline(self, aggregate: Callable[[], Awaitable[T]]) -> T:
        if self._timeout is None:
            return await aggregate()

        try:
            return await asyncio.wait_for(aggregate(), timeout=self._timeout)
        except asyncio.TimeoutError as e:
            raise RefreshTimeoutError(self._timeout) from e

    def _commit(self, payload: T) -> CacheSnapshot[T]:
        """Store payload and fetch time together; fetch time never moves back."""
        fetched_at = self._clock()
        previous = self._entry.fetched_at
        if previous is not None and as_utc(fetched_at) < as_utc(previous):
            fetched_at = previous

        snapshot = CacheSnapshot(payload=payload, fetched_at=fetched_at)
        self._entry.snapshot = snapshot
        self._entry.last_error = None
        return snapshot

    def is_refreshing(self) -> bool:
        """Check if a refresh is currently running."""
        task = self._entry.in_flight
        return task is not None and not task.done()

    async def wait(self) -> None:
        """Wait for the running refresh, if any, ignoring its outcome."""
        task = self._entry.in_flight
        if task is not None:
            await asyncio.wait([task])

    async def cancel(self) -> bool:
        """Cancel the running refresh."""
        async with self._lock:
            task = self._entry.in_flight
            if task is None or task.done():
                return False
            task.cancel()
            self._entry.in_flight = None
            self._log("CANCEL: Refresh cancelled")
            return True

    def get_stats(self) -> "RefresherStats":
        """Get refresh statistics."""
        self._stats.in_flight = self.is_refreshing()
        return self._stats

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[Refresher] {message}")


class RefresherStats:
    """Statistics for single-flight refreshes."""

    def __init__(self):
        self.started: int = 0  # Physical refresh executions
        self.joined: int = 0  # Callers that joined a running refresh
        self.succeeded: int = 0
        self.failed: int = 0
        self.in_flight: bool = False

    @property
    def join_rate(self) -> float:
        """Calculate the share of callers that joined instead of starting."""
        total = self.started + self.joined
        if total == 0:
            return 0.0
        return self.joined / total

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "started": self.started,
            "joined": self.joined,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "in_flight": self.in_flight,
            "join_rate": f"{self.join_rate:.2%}",
        }
