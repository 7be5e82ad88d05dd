"""
Dashboard exceptions, all surfaced to clients as {error, message, timestamp}.
"""

from typing import Optional
from fastapi import HTTPException, status


class MissingParameterError(HTTPException):
    """Raised when a required path/query parameter is absent or blank."""

    def __init__(self, name: str, location: str = "query"):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Missing required {location} parameter: {name}",
        )


class InvalidPayloadError(HTTPException):
    """Raised for request bodies that cannot be interpreted at all."""

    def __init__(self, detail: str = "Invalid request payload"):
        super().__init__(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


class QueryError(HTTPException):
    """Raised when the results store fails a query, the cause is only exposed in debug mode."""

    def __init__(self, label: str, cause: Optional[BaseException] = None):
        super().__init__(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to fetch {label} data",
        )
        self.label = label
        self.cause = cause


class UpstreamError(HTTPException):
    """Raised when an external service (weights, validator summary) fails."""

    def __init__(self, detail: str, cause: Optional[BaseException] = None):
        super().__init__(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=detail)
        self.cause = cause
