"""
Cache entry and freshness policy for the aggregate value.

Features:
- One CacheEntry per process holding the last successful snapshot
- Payload and fetch time committed together as an immutable CacheSnapshot
- TTL and background-refresh threshold evaluated by a side-effect free policy
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Generic, TypeVar

T = TypeVar("T")


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Normalize an aware datetime to UTC; naive values are left as they are.

    Aware values sharing one tzinfo compare and subtract by wall clock, which
    goes wrong across a DST change, so arithmetic always happens in UTC.
    """
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc)


class RefreshState(str, Enum):
    """Refresh states of a cache entry."""

    IDLE = "IDLE"
    IN_FLIGHT = "IN_FLIGHT"


class CacheState(str, Enum):
    """Effective state of a cache entry as seen by readers."""

    EMPTY = "EMPTY"  # Nothing fetched yet
    FRESH = "FRESH"  # Within the background threshold
    STALE_BACKGROUND = "STALE_BACKGROUND"  # Still served, refresh due
    EXPIRED = "EXPIRED"  # Past TTL, readers wait for a refresh


@dataclass(frozen=True)
class CacheSnapshot(Generic[T]):
    """A payload together with the time it was fetched."""

    payload: T
    fetched_at: datetime


@dataclass
class CacheEntry(Generic[T]):
    """The single stored aggregate with its freshness metadata."""

    snapshot: CacheSnapshot[T] | None = None
    last_attempt_started_at: datetime | None = None
    last_error: str | None = None
    in_flight: "asyncio.Task[CacheSnapshot[T]] | None" = field(
        default=None, repr=False
    )

    @property
    def payload(self) -> T | None:
        return self.snapshot.payload if self.snapshot else None

    @property
    def fetched_at(self) -> datetime | None:
        return self.snapshot.fetched_at if self.snapshot else None

    @property
    def refresh_state(self) -> RefreshState:
        if self.in_flight is not None and not self.in_flight.done():
            return RefreshState.IN_FLIGHT
        return RefreshState.IDLE

    def age(self, now: datetime) -> timedelta | None:
        """Age of the stored snapshot, or None when empty."""
        if self.snapshot is None:
            return None
        return as_utc(now) - as_utc(self.snapshot.fetched_at)


@dataclass(frozen=True)
class FreshnessPolicy:
    """
    Decides how a read is served from the entry's timestamps.

    Usage:
        policy = FreshnessPolicy(ttl=timedelta(minutes=30))

        if policy.is_fresh(now, entry):
            serve(entry.payload)
    """

    ttl: timedelta = timedelta(minutes=30)
    background_threshold: timedelta = timedelta(minutes=15)

    def is_fresh(self, now: datetime, entry: CacheEntry[Any]) -> bool:
        """Check if the entry can be served without a blocking refresh."""
        age = entry.age(now)
        return age is not None and age < self.ttl

    def should_background_refresh(self, now: datetime, entry: CacheEntry[Any]) -> bool:
        """Check if a read should also kick off a refresh in the background."""
        age = entry.age(now)
        return (
            age is not None
            and age > self.background_threshold
            and entry.refresh_state == RefreshState.IDLE
        )

    def classify(self, now: datetime, entry: CacheEntry[Any]) -> CacheState:
        """Map the entry's age onto a CacheState."""
        age = entry.age(now)
        if age is None:
            return CacheState.EMPTY
        if age >= self.ttl:
            return CacheState.EXPIRED
        if age > self.background_threshold:
            return CacheState.STALE_BACKGROUND
        return CacheState.FRESH


@dataclass
class CacheStats:
    """Cache statistics."""

    hits: int = 0
    stale_hits: int = 0
    misses: int = 0
    fallbacks: int = 0
    background_refreshes: int = 0

    @property
    def hit_rate(self) -> float:
        """Calculate cache hit rate."""
        total = self.hits + self.stale_hits + self.misses
        if total == 0:
            return 0.0
        return (self.hits + self.stale_hits) / total

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "hits": self.hits,
            "stale_hits": self.stale_hits,
            "misses": self.misses,
            "fallbacks": self.fallbacks,
            "background_refreshes": self.background_refreshes,
            "hit_rate": f"{self.hit_rate:.2%}",
        }
