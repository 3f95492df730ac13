"""Tests for RetryExecutor classification, backoff and exhaustion."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import httpx
import pytest

from songbook.services.errors import (
    UpstreamFatalError,
    UpstreamSoftBlockError,
    UpstreamTransientError,
)
from songbook.services.rate_limiter import RateLimiter
from songbook.services.retry import AttemptOutcome, RetryExecutor, classify_error


class ScriptedCall:
    """Callable returning or raising the scripted outcomes in order."""

    def __init__(self, *outcomes: object) -> None:
        self.outcomes = list(outcomes)
        self.calls = 0

    async def __call__(self) -> object:
        self.calls += 1
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


def _status_error(status: int, body: str = "") -> httpx.HTTPStatusError:
    request = httpx.Request("GET", "https://www.googleapis.com/drive/v3/files")
    response = httpx.Response(status, request=request, text=body)
    return httpx.HTTPStatusError(f"HTTP {status}", request=request, response=response)


@pytest.fixture()
def executor(clock) -> RetryExecutor:
    limiter = RateLimiter(clock=clock.monotonic, sleep=clock.sleep)
    return RetryExecutor(limiter, sleep=clock.sleep)


class TestClassifyError:
    def test_soft_block_error_type(self) -> None:
        assert classify_error(UpstreamSoftBlockError("blocked")) is AttemptOutcome.RETRYABLE_SOFT

    def test_automated_queries_message(self) -> None:
        error = RuntimeError("Google detected automated queries")
        assert classify_error(error) is AttemptOutcome.RETRYABLE_SOFT

    def test_rate_limit_message_any_case(self) -> None:
        assert classify_error(RuntimeError("Rate Limit exceeded")) is AttemptOutcome.RETRYABLE_SOFT

    def test_http_429(self) -> None:
        assert classify_error(_status_error(429)) is AttemptOutcome.RETRYABLE_SOFT

    def test_response_body_phrase(self) -> None:
        error = _status_error(403, "<html>Our systems have detected automated queries</html>")
        assert classify_error(error) is AttemptOutcome.RETRYABLE_SOFT

    def test_other_errors_are_generic(self) -> None:
        assert classify_error(_status_error(500, "oops")) is AttemptOutcome.RETRYABLE_GENERIC
        assert classify_error(ConnectionError("reset")) is AttemptOutcome.RETRYABLE_GENERIC


class TestRetryExecutor:
    @pytest.mark.asyncio
    async def test_success_on_first_attempt(self, executor, clock) -> None:
        call = ScriptedCall({"files": []})
        assert await executor.execute(call) == {"files": []}
        assert call.calls == 1
        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_generic_failure_then_success(self, executor, clock) -> None:
        call = ScriptedCall(ConnectionError("reset"), {"ok": True})
        assert await executor.execute(call) == {"ok": True}
        assert call.calls == 2
        assert clock.sleeps == [4.0]

    @pytest.mark.asyncio
    async def test_generic_exhaustion_raises_fatal(self, executor, clock) -> None:
        last = ConnectionError("third")
        call = ScriptedCall(ConnectionError("first"), ConnectionError("second"), last)

        with pytest.raises(UpstreamFatalError) as exc_info:
            await executor.execute(call, description="list folders")

        assert exc_info.value.attempts == 3
        assert exc_info.value.last_error is last
        assert "list folders" in str(exc_info.value)
        assert clock.sleeps == [4.0, 8.0]
        assert executor.get_stats().failures == 1

    @pytest.mark.asyncio
    async def test_soft_block_then_success_uses_long_backoff(self, executor, clock) -> None:
        call = ScriptedCall(RuntimeError("automated queries"), {"ok": True})
        assert await executor.execute(call) == {"ok": True}
        assert clock.sleeps == [20.0]
        assert clock.elapsed >= 20.0

    @pytest.mark.asyncio
    async def test_soft_block_exhaustion_raises_instead_of_returning_nothing(self, executor, clock) -> None:
        call = ScriptedCall(*(RuntimeError("rate limit") for _ in range(3)))

        with pytest.raises(UpstreamFatalError) as exc_info:
            await executor.execute(call)

        assert call.calls == 3
        assert clock.sleeps == [20.0, 40.0, 80.0]
        assert isinstance(exc_info.value.last_error, RuntimeError)
        assert executor.get_stats().soft_blocks == 3

    @pytest.mark.asyncio
    async def test_success_status_with_block_page_is_soft_block(self, executor, clock) -> None:
        page = "<html><body>Sorry, we detected automated queries</body></html>"
        call = ScriptedCall(page, "# Song")
        assert await executor.execute(call) == "# Song"
        assert clock.sleeps == [20.0]

    @pytest.mark.asyncio
    async def test_failed_validation_is_retried_as_generic(self, executor, clock) -> None:
        call = ScriptedCall("<html>not json</html>", {"files": []})
        result = await executor.execute(call, validate=lambda data: isinstance(data, dict))
        assert result == {"files": []}
        assert clock.sleeps == [4.0]

    @pytest.mark.asyncio
    async def test_failed_validation_on_last_attempt(self, executor, clock) -> None:
        call = ScriptedCall(["unexpected"])
        with pytest.raises(UpstreamFatalError) as exc_info:
            await executor.execute(
                call, max_attempts=1, validate=lambda data: isinstance(data, dict)
            )
        assert isinstance(exc_info.value.last_error, UpstreamTransientError)
        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_each_attempt_passes_the_rate_limiter(self, executor) -> None:
        call = ScriptedCall(ConnectionError("a"), ConnectionError("b"), {"ok": True})
        await executor.execute(call)
        assert executor.rate_limiter.get_status()["dispatched"] == 3

    @pytest.mark.asyncio
    async def test_hung_call_times_out(self, clock) -> None:
        executor = RetryExecutor(
            RateLimiter(clock=clock.monotonic, sleep=clock.sleep),
            call_timeout=timedelta(milliseconds=10),
            sleep=clock.sleep,
        )
        never = asyncio.Event()

        async def hang() -> None:
            await never.wait()

        with pytest.raises(UpstreamFatalError) as exc_info:
            await executor.execute(hang, max_attempts=1)
        assert isinstance(exc_info.value.last_error, UpstreamTransientError)

    @pytest.mark.asyncio
    async def test_attempt_outcomes_are_recorded(self, executor) -> None:
        await executor.execute(ScriptedCall(RuntimeError("rate limit"), ConnectionError("reset"), "ok"))
        with pytest.raises(UpstreamFatalError):
            await executor.execute(ScriptedCall(*(ConnectionError("down") for _ in range(3))))

        stats = executor.get_stats()
        assert stats.outcomes == {
            AttemptOutcome.SUCCESS: 1,
            AttemptOutcome.RETRYABLE_SOFT: 1,
            AttemptOutcome.RETRYABLE_GENERIC: 3,
            AttemptOutcome.FATAL: 1,
        }
        assert stats.to_dict()["outcomes"]["FATAL"] == 1
        assert sum(stats.outcomes.values()) == stats.attempts

    @pytest.mark.asyncio
    async def test_exhausted_soft_block_is_recorded_fatal(self, executor) -> None:
        with pytest.raises(UpstreamFatalError):
            await executor.execute(ScriptedCall(RuntimeError("automated queries")), max_attempts=1)

        outcomes = executor.get_stats().outcomes
        assert outcomes[AttemptOutcome.FATAL] == 1
        assert outcomes[AttemptOutcome.RETRYABLE_SOFT] == 0
        assert executor.get_stats().soft_blocks == 1

    def test_backoff_schedule(self) -> None:
        executor = RetryExecutor()
        assert [executor.generic_backoff(n) for n in (1, 2, 3)] == [4.0, 8.0, 16.0]
        assert [executor.soft_backoff(n) for n in (1, 2, 3)] == [20.0, 40.0, 80.0]

    def test_rejects_zero_attempts(self) -> None:
        with pytest.raises(ValueError):
            RetryExecutor(max_attempts=0)
