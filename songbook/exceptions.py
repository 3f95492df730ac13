"""
Custom exceptions and error handlers
"""

from fastapi import HTTPException, status


class ServiceUnavailableError(HTTPException):
    """No data could be served"""

    def __init__(self, detail: str = "Service unavailable"):
        super().__init__(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=detail)


class ConfigurationError(HTTPException):
    """Server is missing required configuration"""

    def __init__(self, detail: str = "Server not configured"):
        super().__init__(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=detail
        )


class BadRequestError(HTTPException):
    """Request is missing required parameters"""

    def __init__(self, detail: str = "Bad request"):
        super().__init__(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


class UpstreamRequestError(HTTPException):
    """A Google API request failed after retries"""

    def __init__(
        self,
        detail: str = "Upstream request failed",
        status_code: int = status.HTTP_502_BAD_GATEWAY,
    ):
        super().__init__(status_code=status_code, detail=detail)
