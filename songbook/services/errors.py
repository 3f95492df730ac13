"""
Service layer exceptions.
"""


class ServiceError(Exception):
    """Base exception for service layer errors."""

    def __init__(self, message: str, service_id: str | None = None):
        self.service_id = service_id
        super().__init__(message)


class UpstreamSoftBlockError(ServiceError):
    """Upstream throttled the request or flagged it as automated traffic."""

    pass


class UpstreamTransientError(ServiceError):
    """Any other failed upstream call; retryable with a short backoff."""

    pass


class UpstreamFatalError(ServiceError):
    """Upstream call or refresh failed for good (retries exhausted)."""

    def __init__(
        self,
        message: str,
        service_id: str | None = None,
        attempts: int = 0,
        last_error: BaseException | None = None,
    ):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(message, service_id=service_id)


class RefreshTimeoutError(UpstreamFatalError):
    """A refresh did not complete before its deadline."""

    def __init__(self, timeout: float, service_id: str | None = None):
        self.timeout = timeout
        super().__init__(
            f"Refresh did not complete within {timeout:.1f}s",
            service_id=service_id,
        )


class NoDataAvailableError(ServiceError):
    """Refresh failed and there is no previous payload to fall back to."""

    def __init__(self, reason: str, service_id: str | None = None):
        self.reason = reason
        super().__init__(f"No data available: {reason}", service_id=service_id)
