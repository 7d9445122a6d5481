"""
Retry policy for outbound marketplace calls.

Classifies failures into ErrorKind and decides, as pure functions of
(classification, attempt), whether and how long to wait before the next
attempt. The executor feeds these decisions into a tenacity loop.
"""

from __future__ import annotations

import random
from dataclasses import dataclass, field

import httpx

from sellerlink.exceptions import RateLimitError, SellerLinkError
from sellerlink.types import ErrorKind

JITTER_RANGE = (0.8, 1.2)


def classify_status(status_code: int) -> ErrorKind | None:
    """Map an HTTP status to an ErrorKind; None for non-error statuses."""
    if status_code < 400:
        return None
    if status_code == 429:
        return ErrorKind.RATE_LIMITED
    if status_code == 401:
        return ErrorKind.AUTH
    if status_code >= 500:
        return ErrorKind.TRANSIENT_SERVER
    return ErrorKind.PERMANENT


@dataclass
class RetryPolicy:
    """Exponential backoff with jitter, deferring to server waits on 429.

    Attributes:
        max_attempts: Total attempts per logical call, including the first.
        base_delay: Delay in seconds before the first retry (before jitter).
        max_delay: Upper bound on computed backoff.
        rng: Source of jitter; inject a seeded Random for reproducible tests.
    """

    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 30.0
    rng: random.Random = field(default_factory=random.Random)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be non-negative")

    def classify(self, error: BaseException) -> ErrorKind:
        """Classify an error raised by a call attempt."""
        if isinstance(error, SellerLinkError) and error.kind is not None:
            return error.kind
        if isinstance(error, httpx.HTTPStatusError):
            return classify_status(error.response.status_code) or ErrorKind.PERMANENT
        if isinstance(error, (httpx.TimeoutException, httpx.TransportError)):
            return ErrorKind.TRANSIENT_NETWORK
        if isinstance(error, (TimeoutError, ConnectionError)):
            return ErrorKind.TRANSIENT_NETWORK
        return ErrorKind.PERMANENT

    def should_retry(
        self,
        kind: ErrorKind,
        attempt: int,
        auth_refreshed: bool = False,
    ) -> bool:
        """Decide whether another attempt is allowed.

        Args:
            kind: Classification of the failed attempt.
            attempt: Number of attempts already made (1 after the first).
            auth_refreshed: Whether this call already used its forced refresh.
        """
        if attempt >= self.max_attempts:
            return False
        if kind is ErrorKind.PERMANENT:
            return False
        if kind is ErrorKind.AUTH:
            return not auth_refreshed
        return True

    def backoff(self, attempt: int) -> float:
        """Jittered exponential delay for a zero-based retry index, capped."""
        jitter = self.rng.uniform(*JITTER_RANGE)
        return min(self.max_delay, self.base_delay * (2**attempt) * jitter)

    def compute_delay(
        self,
        attempt: int,
        kind: ErrorKind,
        error: BaseException | None = None,
    ) -> float:
        """Seconds to wait before the next attempt.

        Args:
            attempt: Zero-based retry index (0 before the first retry).
            kind: Classification of the failed attempt.
            error: The failure, consulted for a server-reported wait.
        """
        if kind is ErrorKind.AUTH:
            return 0.0
        if kind is ErrorKind.RATE_LIMITED and isinstance(error, RateLimitError):
            if error.retry_after is not None:
                return max(0.0, error.retry_after)
        return self.backoff(attempt)
