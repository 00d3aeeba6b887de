"""Custom exceptions for Gallery Sync.

This module defines exception classes for the error conditions that can
occur while talking to the remote gallery API, touching the content store,
and running the sync and migration pipeline.
"""


class GallerySyncError(Exception):
    """Base exception for all Gallery Sync errors."""

    pass


class ConfigurationError(GallerySyncError):
    """Raised when configuration or remote credentials are invalid or missing."""

    pass


class PreconditionError(GallerySyncError):
    """Raised when an operation cannot start.

    Covers a concurrent migration holding the lease, an insufficient
    memory/time/storage budget, and a missing prerequisite artifact.
    """

    pass


class ConnectivityError(GallerySyncError):
    """Raised when the remote API or the content store is unreachable."""

    pass


class NetworkError(ConnectivityError):
    """Raised when network-related errors occur (timeouts, connection failures)."""

    pass


class APIError(ConnectivityError):
    """Base class for remote API errors."""

    def __init__(self, message: str, status_code: int | None = None, response: dict | None = None):
        """Initialize API error.

        Args:
            message: Error message
            status_code: HTTP status code
            response: API response body
        """
        self.message = message
        self.status_code = status_code
        self.response = response
        super().__init__(self.format_message())

    def format_message(self) -> str:
        """Format error message with status code and response."""
        msg = self.message
        if self.status_code:
            msg = f"[{self.status_code}] {msg}"
        if self.response:
            msg = f"{msg}: {self.response}"
        return msg


class AuthenticationError(APIError):
    """Raised when authentication fails (401 Unauthorized)."""

    pass


class AuthorizationError(APIError):
    """Raised when authorization fails (403 Forbidden)."""

    pass


class NotFoundError(APIError):
    """Raised when a resource is not found (404 Not Found)."""

    pass


class RateLimitError(APIError):
    """Raised when API rate limit is exceeded (429 Too Many Requests)."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response: dict | None = None,
        retry_after: int | None = None,
    ):
        """Initialize rate limit error.

        Args:
            message: Error message
            status_code: HTTP status code
            response: API response body
            retry_after: Seconds to wait before retrying (from Retry-After header)
        """
        super().__init__(message, status_code, response)
        self.retry_after = retry_after


class ServerError(APIError):
    """Raised when server returns 5xx error."""

    pass


class ValidationError(GallerySyncError):
    """Raised when options, structures or import payloads fail validation."""

    pass


class PartialFailure(GallerySyncError):
    """Raised for a single case that failed inside a Stage 3 batch.

    Never fatal: the batch loop records it and moves on.
    """

    def __init__(self, case_id: int | str, message: str):
        self.case_id = case_id
        super().__init__(f"Failed to process case {case_id}: {message}")


class StateError(GallerySyncError):
    """Raised when content store or state management operations fail."""

    pass


class MigrationError(GallerySyncError):
    """Raised when a migration step fails for any other reason."""

    pass
