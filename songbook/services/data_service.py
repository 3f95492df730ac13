"""
CacheService - Stale-while-revalidate access to the songs/setlists aggregate.

Combines:
- FreshnessPolicy to decide between serving, background refresh and blocking refresh
- SingleFlightRefresher so concurrent readers share one refresh
- Stale fallback when a refresh fails but an older payload exists
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable

from loguru import logger

from songbook.datasource.models import Aggregate
from songbook.services.cache import (
    CacheEntry,
    CacheSnapshot,
    CacheStats,
    FreshnessPolicy,
    utc_now,
)
from songbook.services.errors import NoDataAvailableError, UpstreamFatalError
from songbook.services.refresher import SingleFlightRefresher

if TYPE_CHECKING:
    from songbook.datasource.base import DataAggregator
    from songbook.settings import Settings


def to_epoch_ms(value: datetime | None) -> int | None:
    """Serialize a timestamp the way API consumers expect it."""
    if value is None:
        return None
    return int(value.timestamp() * 1000)


@dataclass
class DataResult:
    """Result of CacheService.get()."""

    payload: Aggregate
    cached: bool
    fetched_at: datetime | None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = self.payload.model_dump(mode="json")
        data["cached"] = self.cached
        data["fetchedAt"] = to_epoch_ms(self.fetched_at)
        if self.error:
            data["error"] = self.error
        return data


@dataclass
class RefreshResult:
    """Result of CacheService.force_refresh().

    refreshed is True only when the refresh itself succeeded; a stale
    fallback always carries refreshed=False together with error.
    """

    payload: Aggregate
    refreshed: bool
    fetched_at: datetime | None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = self.payload.model_dump(mode="json")
        data["refreshed"] = self.refreshed
        data["fetchedAt"] = to_epoch_ms(self.fetched_at)
        if self.error:
            data["error"] = self.error
        return data


class CacheService:
    """
    Public entry point used by request handlers.

    Usage:
        service = CacheService(GoogleDriveAggregator(...))

        result = await service.get()
        return result.to_dict()
    """

    def __init__(
        self,
        aggregator: "DataAggregator",
        policy: FreshnessPolicy | None = None,
        refresher: SingleFlightRefresher[Aggregate] | None = None,
        clock: Callable[[], datetime] = utc_now,
        debug: bool = False,
    ):
        self._aggregator = aggregator
        self._policy = policy or FreshnessPolicy()
        self._clock = clock
        self._debug = debug
        self._refresher: SingleFlightRefresher[Aggregate] = (
            refresher
            if refresher is not None
            else SingleFlightRefresher(CacheEntry(), clock=clock, debug=debug)
        )
        self._stats = CacheStats()

    @property
    def aggregator(self) -> "DataAggregator":
        return self._aggregator

    @property
    def entry(self) -> CacheEntry[Aggregate]:
        return self._refresher.entry

    @property
    def refresher(self) -> SingleFlightRefresher[Aggregate]:
        return self._refresher

    @property
    def policy(self) -> FreshnessPolicy:
        return self._policy

    async def get(self) -> DataResult:
        """
        Get the aggregate, refreshing it first if the cache is empty or expired.

        Returns:
            DataResult; cached=True with error set when serving a stale fallback

        Raises:
            NoDataAvailableError: If the refresh failed and nothing was ever fetched
        """
        now = self._clock()
        entry = self._refresher.entry
        snapshot = entry.snapshot

        if snapshot is not None and self._policy.is_fresh(now, entry):
            if self._policy.should_background_refresh(now, entry):
                self._stats.stale_hits += 1
                logger.info("Starting background refresh for all data")
                await self._start_background_refresh()
            else:
                self._stats.hits += 1
            self._log("Serving all cached data")
            return DataResult(
                payload=snapshot.payload,
                cached=True,
                fetched_at=snapshot.fetched_at,
            )

        self._stats.misses += 1
        logger.info("No valid cache, fetching fresh data")
        try:
            fresh = await self._refresh()
        except UpstreamFatalError as e:
            stale = self._fallback(e)
            return DataResult(
                payload=stale.payload,
                cached=True,
                fetched_at=stale.fetched_at,
                error=str(e),
            )

        return DataResult(
            payload=fresh.payload,
            cached=False,
            fetched_at=fresh.fetched_at,
        )

    async def force_refresh(self) -> RefreshResult:
        """
        Refresh the aggregate regardless of its age.

        Returns:
            RefreshResult; refreshed=False with error set when serving a stale fallback

        Raises:
            NoDataAvailableError: If the refresh failed and nothing was ever fetched
        """
        logger.info("Manual refresh requested")
        try:
            fresh = await self._refresh()
        except UpstreamFatalError as e:
            stale = self._fallback(e)
            return RefreshResult(
                payload=stale.payload,
                refreshed=False,
                fetched_at=stale.fetched_at,
                error=str(e),
            )

        return RefreshResult(
            payload=fresh.payload,
            refreshed=True,
            fetched_at=fresh.fetched_at,
        )

    async def _refresh(self) -> CacheSnapshot[Aggregate]:
        """Trigger or join a refresh and wait for it."""
        task = await self._refresher.trigger_or_join(self._aggregator.fetch_aggregate)
        # A cancelled caller must not cancel the refresh other callers share.
        return await asyncio.shield(task)

    async def _start_background_refresh(self) -> None:
        task = await self._refresher.trigger_or_join(self._aggregator.fetch_aggregate)
        self._stats.background_refreshes += 1
        task.add_done_callback(self._log_background_result)

    def _log_background_result(self, task: "asyncio.Task[Any]") -> None:
        if task.cancelled():
            logger.warning("Background refresh was cancelled")
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Background refresh failed: {error}")

    def _fallback(self, error: UpstreamFatalError) -> CacheSnapshot[Aggregate]:
        """Return the last good snapshot, or fail if there never was one."""
        snapshot = self._refresher.entry.snapshot
        if snapshot is None:
            logger.error(f"Refresh failed and no cached data is available: {error}")
            raise NoDataAvailableError(str(error)) from error

        self._stats.fallbacks += 1
        logger.warning(
            f"Refresh failed, serving cached data from "
            f"{snapshot.fetched_at.isoformat()}: {error}"
        )
        return snapshot

    def get_health_status(self) -> dict[str, Any]:
        """Get health status of the cache and its collaborators."""
        now = self._clock()
        entry = self._refresher.entry
        return {
            "state": self._policy.classify(now, entry).value,
            "refresh_state": entry.refresh_state.value,
            "fetched_at": to_epoch_ms(entry.fetched_at),
            "last_attempt_started_at": to_epoch_ms(entry.last_attempt_started_at),
            "last_error": entry.last_error,
            "cache": self._stats.to_dict(),
            "refresher": self._refresher.get_stats().to_dict(),
            "aggregator": self._aggregator.get_status(),
        }

    async def close(self) -> None:
        """Cancel any running refresh and release the aggregator."""
        await self._refresher.cancel()
        await self._aggregator.close()
        logger.debug("CacheService closed")

    async def __aenter__(self) -> "CacheService":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[CacheService] {message}")


def build_cache_service(settings: "Settings") -> CacheService:
    """Wire the Google Drive aggregator and cache from settings."""
    from songbook.datasource.google_drive import GoogleDriveAggregator
    from songbook.services.rate_limiter import RateLimiter
    from songbook.services.retry import RetryExecutor

    executor = RetryExecutor(
        RateLimiter(settings.min_request_interval, debug=settings.cache_debug),
        max_attempts=settings.max_retry_attempts,
        soft_backoff_base=settings.soft_backoff_base,
        generic_backoff_base=settings.generic_backoff_base,
        call_timeout=settings.request_timeout,
        service_id=GoogleDriveAggregator.SERVICE_ID,
    )
    aggregator = GoogleDriveAggregator(
        api_key=settings.google_api_key,
        songs_folder_id=settings.songs_folder_id,
        setlists_folder_id=settings.setlists_folder_id,
        executor=executor,
        timeout=settings.request_timeout_seconds,
    )
    refresher: SingleFlightRefresher[Aggregate] = SingleFlightRefresher(
        CacheEntry(),
        timeout=settings.refresh_timeout,
        debug=settings.cache_debug,
    )
    return CacheService(
        aggregator,
        policy=FreshnessPolicy(
            ttl=settings.cache_ttl,
            background_threshold=settings.background_refresh_threshold,
        ),
        refresher=refresher,
        debug=settings.cache_debug,
    )


# Global service instance
_global_service: CacheService | None = None


def get_cache_service() -> CacheService:
    """Get the process-wide cache service instance."""
    global _global_service
    if _global_service is None:
        from songbook.settings import global_settings

        _global_service = build_cache_service(global_settings)
    return _global_service


async def close_cache_service() -> None:
    """Close the process-wide cache service."""
    global _global_service
    if _global_service:
        await _global_service.close()
        _global_service = None
