"""
Base aggregator interface.
"""

from abc import ABC, abstractmethod
from typing import Any

from songbook.datasource.models import Aggregate
from songbook.services.retry import RetryExecutor


class DataAggregator(ABC):
    """
    Abstract base class for providers of the songs/setlists aggregate.

    All aggregators should:
    - Issue every upstream call through RetryExecutor (rate limiting, retry, backoff)
    - Return an Aggregate model
    - Raise when the aggregate as a whole cannot be produced
    """

    def __init__(self, executor: RetryExecutor | None = None):
        self.executor = executor or RetryExecutor(service_id=self.service_id)

    @property
    @abstractmethod
    def service_id(self) -> str:
        """Unique identifier for this aggregator."""
        ...

    @abstractmethod
    async def fetch_aggregate(self) -> Aggregate:
        """Fetch all songs and setlists from the provider."""
        ...

    @abstractmethod
    def is_configured(self) -> bool:
        """Check if the aggregator is properly configured."""
        ...

    def get_status(self) -> dict[str, Any]:
        """Get status of the upstream call machinery."""
        return {
            "service_id": self.service_id,
            "configured": self.is_configured(),
            "rate_limiter": self.executor.rate_limiter.get_status(),
            "retry": self.executor.get_stats().to_dict(),
        }

    async def close(self) -> None:
        """Release any held resources."""
        return None
