"""Shared test fixtures and fake collaborators."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from songbook.datasource.base import DataAggregator
from songbook.datasource.models import Aggregate, Setlist, Song


class FakeClock:
    """Controllable clock; sleeping advances time instead of waiting."""

    def __init__(self, start: datetime | None = None) -> None:
        self.start = start or datetime(2024, 1, 1, 12, 0, 0)
        self.elapsed = 0.0
        self.sleeps: list[float] = []

    def monotonic(self) -> float:
        return self.elapsed

    def now(self) -> datetime:
        return self.start + timedelta(seconds=self.elapsed)

    def advance(self, seconds: float = 0.0, minutes: float = 0.0) -> None:
        self.elapsed += seconds + minutes * 60

    def at(self, minutes: float) -> datetime:
        return self.start + timedelta(minutes=minutes)

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.elapsed += seconds
        await asyncio.sleep(0)


class ZonedClock(FakeClock):
    """FakeClock reading wall-clock time in a named zone, as datetime.now(tz) does."""

    def __init__(self, start: datetime, zone: str) -> None:
        super().__init__(start)
        self.zone = ZoneInfo(zone)

    def now(self) -> datetime:
        return super().now().astimezone(self.zone)


class FakeAggregator(DataAggregator):
    """Aggregator returning queued results; the last one repeats."""

    def __init__(self, *results: Aggregate | BaseException, gate: asyncio.Event | None = None) -> None:
        super().__init__()
        self.results = list(results)
        self.gate = gate
        self.calls = 0
        self.closed = False

    @property
    def service_id(self) -> str:
        return "fake"

    def is_configured(self) -> bool:
        return True

    async def fetch_aggregate(self) -> Aggregate:
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, BaseException):
            raise result
        return result

    async def close(self) -> None:
        self.closed = True


def make_aggregate(label: str) -> Aggregate:
    """Small aggregate tagged with label so generations can be told apart."""
    return Aggregate(
        songs={label: Song(title=label.title(), content=f"# {label}")},
        setlists={"Sunday": Setlist(name="Sunday", songs=[label.title()])},
    )


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def dst_clock() -> ZonedClock:
    # 01:50 EDT, ten minutes before clocks fall back to 01:00 EST
    return ZonedClock(datetime(2024, 11, 3, 5, 50, tzinfo=timezone.utc), "America/New_York")
