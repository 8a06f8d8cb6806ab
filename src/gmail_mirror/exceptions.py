"""Custom exceptions for Gmail Mirror."""

from __future__ import annotations


class GmailMirrorError(Exception):
    """Base exception for all Gmail Mirror errors."""


class ConfigurationError(GmailMirrorError):
    """Exception raised for configuration related errors."""


class AuthenticationError(GmailMirrorError):
    """Exception raised for authentication failures."""


class RemoteApiError(GmailMirrorError):
    """Exception raised when a Gmail API call fails.

    Attributes:
        status: HTTP status of the failed call, or None for transport failures.
        rate_limited: Whether the provider signalled a quota/rate limit.
    """

    def __init__(self, message: str, status: int | None = None, *, rate_limited: bool = False) -> None:
        super().__init__(message)
        self.status = status
        self.rate_limited = rate_limited

    @property
    def is_rate_limited(self) -> bool:
        return self.rate_limited or self.status == 429

    @property
    def is_retryable(self) -> bool:
        """Rate limits, 5xx responses and transport failures are worth retrying."""
        if self.is_rate_limited:
            return True
        return self.status is None or self.status >= 500

    @property
    def is_permanent(self) -> bool:
        return not self.is_retryable


class BlobStoreError(GmailMirrorError):
    """Exception raised when the blob store rejects or fails an operation."""


class CredentialsMissingError(GmailMirrorError):
    """Exception raised when a user has no stored access/refresh token pair."""


class NotFoundError(GmailMirrorError):
    """Exception raised when a requested record does not exist or is not owned by the caller."""


class SyncAlreadyRunningError(GmailMirrorError):
    """Exception raised when a sync cycle is requested for a user that already has one running."""
