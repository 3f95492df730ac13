"""
Service layer infrastructure - freshness and refresh coordination for the aggregate.

Provides:
- RateLimiter: Minimum spacing between upstream calls
- RetryExecutor: Classification-aware retry with exponential backoff
- CacheEntry / FreshnessPolicy: Stored snapshot and TTL decisions
- SingleFlightRefresher: At most one refresh in flight, shared by all callers
- CacheService: Stale-while-revalidate entry point for request handlers
"""

from songbook.services.errors import (
    ServiceError,
    UpstreamSoftBlockError,
    UpstreamTransientError,
    UpstreamFatalError,
    RefreshTimeoutError,
    NoDataAvailableError,
)
from songbook.services.rate_limiter import RateLimiter
from songbook.services.retry import AttemptOutcome, RetryExecutor, classify_error
from songbook.services.cache import (
    CacheEntry,
    CacheSnapshot,
    CacheState,
    FreshnessPolicy,
    RefreshState,
)
from songbook.services.refresher import SingleFlightRefresher
from songbook.services.data_service import (
    CacheService,
    DataResult,
    RefreshResult,
    get_cache_service,
    close_cache_service,
)

__all__ = [
    # Errors
    "ServiceError",
    "UpstreamSoftBlockError",
    "UpstreamTransientError",
    "UpstreamFatalError",
    "RefreshTimeoutError",
    "NoDataAvailableError",
    # Upstream calls
    "RateLimiter",
    "RetryExecutor",
    "AttemptOutcome",
    "classify_error",
    # Cache
    "CacheEntry",
    "CacheSnapshot",
    "CacheState",
    "FreshnessPolicy",
    "RefreshState",
    # Refresh
    "SingleFlightRefresher",
    # Service
    "CacheService",
    "DataResult",
    "RefreshResult",
    "get_cache_service",
    "close_cache_service",
]
