"""
RetryExecutor - Rate-limited retry with classification-aware exponential backoff.

Every upstream call goes through execute():
- the shared RateLimiter gate is acquired before each attempt
- soft blocks (throttling / bot detection) back off for 2^attempt x 10s
- any other failure backs off for 2^attempt x 2s
- exhausting the attempts always ends in UpstreamFatalError
"""

import asyncio
from datetime import timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

import httpx
from loguru import logger

from songbook.services.errors import (
    UpstreamFatalError,
    UpstreamSoftBlockError,
    UpstreamTransientError,
)
from songbook.services.rate_limiter import RateLimiter

T = TypeVar("T")

SOFT_BLOCK_PHRASES = ("automated queries", "rate limit")


class AttemptOutcome(str, Enum):
    """Classified outcome of a single attempt."""

    SUCCESS = "SUCCESS"
    RETRYABLE_SOFT = "RETRYABLE_SOFT"  # Throttling or bot detection
    RETRYABLE_GENERIC = "RETRYABLE_GENERIC"
    FATAL = "FATAL"  # Failed on the last allowed attempt


def contains_soft_block(text: str | None) -> bool:
    """Check whether a message or body carries a soft-block phrase."""
    if not text:
        return False
    lowered = text.lower()
    return any(phrase in lowered for phrase in SOFT_BLOCK_PHRASES)


def _response_text(error: BaseException) -> str | None:
    """Best-effort body text of the response attached to an error."""
    response = getattr(error, "response", None)
    if response is None:
        return None
    if isinstance(response, httpx.Response):
        try:
            return response.text
        except httpx.ResponseNotRead:
            return None
    body = getattr(response, "text", None) or getattr(response, "data", None)
    return body if isinstance(body, str) else None


def classify_error(error: BaseException) -> AttemptOutcome:
    """Classify a failed attempt as a soft block or a generic failure."""
    if isinstance(error, UpstreamSoftBlockError):
        return AttemptOutcome.RETRYABLE_SOFT

    if (
        isinstance(error, httpx.HTTPStatusError)
        and error.response.status_code == 429
    ):
        return AttemptOutcome.RETRYABLE_SOFT

    if contains_soft_block(str(error)) or contains_soft_block(_response_text(error)):
        return AttemptOutcome.RETRYABLE_SOFT

    return AttemptOutcome.RETRYABLE_GENERIC


class RetryExecutor:
    """
    Wraps single upstream calls with rate limiting and retry.

    Usage:
        executor = RetryExecutor(RateLimiter())

        files = await executor.execute(
            lambda: drive.list_files(folder_id),
            validate=lambda data: isinstance(data, dict),
            description="list song folders",
        )
    """

    def __init__(
        self,
        rate_limiter: RateLimiter | None = None,
        max_attempts: int = 3,
        soft_backoff_base: timedelta = timedelta(seconds=10),
        generic_backoff_base: timedelta = timedelta(seconds=2),
        call_timeout: timedelta | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        service_id: str | None = None,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        self._limiter = rate_limiter or RateLimiter(sleep=sleep)
        self._max_attempts = max_attempts
        self._soft_base = soft_backoff_base.total_seconds()
        self._generic_base = generic_backoff_base.total_seconds()
        self._call_timeout = call_timeout.total_seconds() if call_timeout else None
        self._sleep = sleep
        self._service_id = service_id
        self._stats = RetryStats()

    @property
    def rate_limiter(self) -> RateLimiter:
        return self._limiter

    def soft_backoff(self, attempt: int) -> float:
        """Seconds to wait after a soft-blocked attempt."""
        return (2**attempt) * self._soft_base

    def generic_backoff(self, attempt: int) -> float:
        """Seconds to wait after any other failed attempt."""
        return (2**attempt) * self._generic_base

    async def execute(
        self,
        call: Callable[[], Awaitable[T]],
        max_attempts: int | None = None,
        validate: Callable[[T], bool] | None = None,
        description: str = "upstream call",
    ) -> T:
        """
        Execute call with rate limiting and retry.

        Args:
            call: Zero-argument coroutine function performing one upstream request
            max_attempts: Override the configured attempt count
            validate: Predicate the result must satisfy to count as a success
            description: Human-readable name used in logs and errors

        Returns:
            The validated result of the first successful attempt

        Raises:
            UpstreamFatalError: If every attempt failed
        """
        attempts = max_attempts or self._max_attempts
        last_error: Exception | None = None

        for attempt in range(1, attempts + 1):
            await self._limiter.acquire()
            self._stats.attempts += 1

            try:
                result = await self._invoke(call, description)
                if isinstance(result, str) and contains_soft_block(result):
                    raise UpstreamSoftBlockError(
                        f"Upstream returned a soft-block page for {description}",
                        service_id=self._service_id,
                    )
                if validate is not None and not validate(result):
                    raise UpstreamTransientError(
                        f"Unexpected payload for {description}: {type(result).__name__}",
                        service_id=self._service_id,
                    )
                self._stats.record(AttemptOutcome.SUCCESS)
                self._stats.successes += 1
                return result

            except Exception as e:
                last_error = e
                outcome = classify_error(e)
                logger.warning(
                    f"Attempt {attempt}/{attempts} for {description} failed: "
                    f"{type(e).__name__}: {e}"
                )

            self._stats.record(AttemptOutcome.FATAL if attempt == attempts else outcome)

            if outcome is AttemptOutcome.RETRYABLE_SOFT:
                self._stats.soft_blocks += 1
                delay = self.soft_backoff(attempt)
                logger.warning(
                    f"Rate limiting or automated query detection for {description}, "
                    f"waiting {delay:.0f}s"
                )
            elif attempt == attempts:
                break
            else:
                delay = self.generic_backoff(attempt)
                logger.info(f"Retrying {description} in {delay:.0f}s")

            if attempt < attempts:
                self._stats.retries += 1
            await self._sleep(delay)

        self._stats.failures += 1
        raise UpstreamFatalError(
            f"{description} failed after {attempts} attempts: {last_error}",
            service_id=self._service_id,
            attempts=attempts,
            last_error=last_error,
        ) from last_error

    async def _invoke(self, call: Callable[[], Awaitable[T]], description: str) -> T:
        """Run one attempt, bounded by the per-call timeout."""
        if self._call_timeout is None:
            return await call()

        try:
            return await asyncio.wait_for(call(), timeout=self._call_timeout)
        except asyncio.TimeoutError as e:
            raise UpstreamTransientError(
                f"{description} timed out after {self._call_timeout}s",
                service_id=self._service_id,
            ) from e

    def get_stats(self) -> "RetryStats":
        """Get retry statistics."""
        return self._stats


class RetryStats:
    """Statistics for upstream call attempts."""

    def __init__(self):
        self.attempts: int = 0  # Physical attempts dispatched
        self.successes: int = 0
        self.retries: int = 0
        self.soft_blocks: int = 0
        self.failures: int = 0  # Calls that exhausted their attempts
        self.outcomes: dict[AttemptOutcome, int] = {outcome: 0 for outcome in AttemptOutcome}

    def record(self, outcome: AttemptOutcome) -> None:
        """Count the classified outcome of one attempt."""
        self.outcomes[outcome] += 1

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "attempts": self.attempts,
            "successes": self.successes,
            "retries": self.retries,
            "soft_blocks": self.soft_blocks,
            "failures": self.failures,
            "outcomes": {outcome.value: count for outcome, count in self.outcomes.items()},
        }
