"""
Custom exception hierarchy for the marketplace client layer.

All exceptions inherit from SellerLinkError, which provides optional context
for structured error handling and logging. Call failures additionally carry
an ErrorKind so retry decisions can be made without isinstance chains.
"""

from __future__ import annotations

from typing import Any

from sellerlink.types import ErrorKind


class SellerLinkError(Exception):
    """Base exception for all marketplace client errors.

    Attributes:
        message: Human-readable error message.
        context: Optional structured context for logging/debugging.
    """

    kind: ErrorKind | None = None

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            ctx_str = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
            return f"{self.message} ({ctx_str})"
        return self.message

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, context={self.context!r})"


class ConfigurationError(SellerLinkError):
    """Raised when configuration is invalid or missing.

    Examples:
        - Missing marketplace credentials
        - Unknown marketplace name
    """

    pass


class MarketplaceApiError(SellerLinkError):
    """A failed call to a marketplace API.

    Context should include:
        - method, path: The request that failed
        - category: The rate-limit category of the endpoint
        - status_code: HTTP status code if a response was received
    """

    kind: ErrorKind | None = ErrorKind.PERMANENT

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message, context)
        self.status_code = status_code


class AuthError(MarketplaceApiError):
    """Credentials were rejected or could not be refreshed.

    Fatal once the single forced refresh of a call has also failed; the
    caller has to replace the credentials.
    """

    kind = ErrorKind.AUTH


class RateLimitError(MarketplaceApiError):
    """The marketplace throttled the call (HTTP 429).

    Attributes:
        retry_after: Seconds to wait before the next attempt, when known.
        reset_at: Epoch time at which the quota resets, when known.
    """

    kind = ErrorKind.RATE_LIMITED

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        status_code: int | None = 429,
        retry_after: float | None = None,
        reset_at: float | None = None,
    ) -> None:
        super().__init__(message, context, status_code)
        self.retry_after = retry_after
        self.reset_at = reset_at


class TransientServerError(MarketplaceApiError):
    """The marketplace returned a 5xx response."""

    kind = ErrorKind.TRANSIENT_SERVER


class TransientNetworkError(MarketplaceApiError):
    """The call timed out or the connection failed before a response."""

    kind = ErrorKind.TRANSIENT_NETWORK


class PermanentError(MarketplaceApiError):
    """A 4xx response other than 401/429. Never retried."""

    kind = ErrorKind.PERMANENT


class RetryExhaustedError(MarketplaceApiError):
    """All attempts of a logical call failed with retryable errors.

    Attributes:
        last_error: The error of the final attempt.
        attempts: Number of attempts made.
    """

    def __init__(self, last_error: MarketplaceApiError, attempts: int) -> None:
        super().__init__(
            f"Max attempts ({attempts}) exceeded. Last error: {last_error.message}",
            context={**last_error.context, "attempts": attempts},
            status_code=last_error.status_code,
        )
        self.last_error = last_error
        self.attempts = attempts
        self.kind = last_error.kind


ERROR_TYPES: dict[ErrorKind, type[MarketplaceApiError]] = {
    ErrorKind.RATE_LIMITED: RateLimitError,
    ErrorKind.TRANSIENT_SERVER: TransientServerError,
    ErrorKind.TRANSIENT_NETWORK: TransientNetworkError,
    ErrorKind.AUTH: AuthError,
    ErrorKind.PERMANENT: PermanentError,
}
