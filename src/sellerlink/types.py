"""
Core types for the marketplace client layer.

This module defines the data structures shared by every component:
- Enums for error classification and batch lifecycle
- Credential and rate-limit state owned by the client layer
- The outbound call envelope (RequestSpec -> OutboundRequest -> SignedRequest)
- OperationResult, the typed result returned by every public operation
- Batch job, outcome and report records
- Helper functions for ID generation and timestamps
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Generic, TypeVar
from urllib.parse import urlsplit

from uuid6 import uuid7

if TYPE_CHECKING:
    from sellerlink.exceptions import SellerLinkError

T = TypeVar("T")


def generate_id(prefix: str = "") -> str:
    """Generate a time-ordered unique ID using UUID7.

    Args:
        prefix: Optional prefix for the ID (e.g., "req", "batch").

    Returns:
        A unique ID string, optionally prefixed.
    """
    uid = str(uuid7())
    return f"{prefix}_{uid}" if prefix else uid


def utc_now() -> datetime:
    """Get current UTC time with timezone info."""
    return datetime.now(timezone.utc)


class ErrorKind(str, Enum):
    """Classification of a failed outbound call."""

    RATE_LIMITED = "rate_limited"
    TRANSIENT_SERVER = "transient_server"
    TRANSIENT_NETWORK = "transient_network"
    AUTH = "auth"
    PERMANENT = "permanent"


class BatchStatus(str, Enum):
    """Lifecycle of a batch job."""

    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    PARTIALLY_FAILED = "partially_failed"


# =============================================================================
# Credentials and rate-limit state
# =============================================================================


@dataclass
class Credential:
    """OAuth-style credential for a marketplace connection.

    Created when a client is built and mutated only by the CredentialManager.
    `expires_at` is an epoch timestamp in seconds.
    """

    client_id: str
    client_secret: str
    refresh_token: str
    access_token: str | None = None
    expires_at: float | None = None

    def clear(self) -> None:
        """Drop the cached access token so the next caller refreshes."""
        self.access_token = None
        self.expires_at = None

    def is_valid(self, now: float, buffer: float = 0.0) -> bool:
        """Check whether the access token is usable for at least `buffer` seconds."""
        if not self.access_token or self.expires_at is None:
            return False
        return self.expires_at > now + buffer


@dataclass(frozen=True)
class TokenGrant:
    """Result of exchanging a refresh token for an access token."""

    access_token: str
    expires_in: float = 3600.0
    refresh_token: str | None = None


@dataclass
class RateLimitState:
    """Server-reported quota for one endpoint category."""

    limit: float
    remaining: int
    reset_at: float

    def __post_init__(self) -> None:
        self.remaining = max(0, int(self.remaining))

    @property
    def utilization(self) -> float:
        """Fraction of the quota still available (0.0 = exhausted)."""
        if self.limit <= 0:
            return 0.0
        return min(1.0, self.remaining / self.limit)


@dataclass
class RetryContext:
    """Retry bookkeeping for a single logical call."""

    max_attempts: int
    base_delay: float
    max_delay: float
    attempt: int = 0
    auth_refreshed: bool = False
    refresh_required: bool = False
    rejected_token: str | None = None

    def advance(self) -> int:
        """Record the start of a new attempt and return its number."""
        self.attempt += 1
        return self.attempt


# =============================================================================
# Outbound call envelope
# =============================================================================


@dataclass
class RequestSpec:
    """Description of one outbound marketplace call.

    `category` selects the rate-limit bucket. `json` is serialized with
    orjson; `content` is sent as-is when given instead.
    """

    method: str
    path: str
    category: str = "default"
    params: dict[str, Any] | None = None
    json: Any = None
    content: bytes | None = None
    headers: dict[str, str] = field(default_factory=dict)
    timeout: float | None = None


@dataclass
class OutboundRequest:
    """A fully resolved request before signing."""

    method: str
    url: str  # absolute URL without query string
    params: list[tuple[str, str]] = field(default_factory=list)
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    @property
    def host(self) -> str:
        """Host header value derived from the URL."""
        return urlsplit(self.url).netloc

    @property
    def path(self) -> str:
        """Path component of the URL."""
        return urlsplit(self.url).path or "/"


@dataclass(frozen=True)
class SignedRequest:
    """A request ready to send; `url` includes the canonical query string."""

    method: str
    url: str
    headers: dict[str, str]
    body: bytes
    signature: str | None = None


@dataclass
class ApiResponse:
    """Raw decoded response returned to the domain mapping layer."""

    status_code: int
    headers: dict[str, str]
    body: Any
    elapsed_ms: int = 0


@dataclass
class OperationResult(Generic[T]):
    """Typed result of an operation that can fail for expected reasons."""

    ok: bool
    value: T | None = None
    error: SellerLinkError | None = None
    attempts: int = 0

    @classmethod
    def success(cls, value: T, attempts: int = 1) -> OperationResult[T]:
        return cls(ok=True, value=value, attempts=attempts)

    @classmethod
    def failure(cls, error: SellerLinkError, attempts: int = 1) -> OperationResult[T]:
        return cls(ok=False, error=error, attempts=attempts)

    @property
    def error_kind(self) -> ErrorKind | None:
        """Classification of the failure, if any."""
        if self.error is None:
            return None
        return getattr(self.error, "kind", None)

    def map(self, fn: Callable[[T], Any]) -> OperationResult[Any]:
        """Transform the value of a successful result, keeping attempts."""
        if not self.ok:
            return OperationResult(ok=False, error=self.error, attempts=self.attempts)
        return OperationResult(ok=True, value=fn(self.value), attempts=self.attempts)  # type: ignore[arg-type]

    def unwrap(self) -> T:
        """Return the value or raise the carried error."""
        if not self.ok:
            assert self.error is not None
            raise self.error
        return self.value  # type: ignore[return-value]


# =============================================================================
# Batch records
# =============================================================================


@dataclass
class BatchConfig:
    """Tuning for one bulk invocation."""

    batch_size: int = 10
    max_concurrency: int = 2
    inter_chunk_delay: float = 0.0
    continue_on_error: bool = True
    max_retries: int = 0

    def __post_init__(self) -> None:
        if self.batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if self.max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        if self.inter_chunk_delay < 0:
            raise ValueError("inter_chunk_delay must be non-negative")
        if self.max_retries < 0:
            raise ValueError("max_retries must be non-negative")


@dataclass
class BatchJob(Generic[T]):
    """Items and tuning of a single bulk invocation."""

    items: list[T]
    config: BatchConfig
    job_id: str = field(default_factory=lambda: generate_id("batch"))

    @property
    def chunks(self) -> list[tuple[int, list[T]]]:
        """Chunks as (offset into items, chunk items)."""
        size = self.config.batch_size
        return [(i, self.items[i : i + size]) for i in range(0, len(self.items), size)]


@dataclass
class ItemOutcome(Generic[T]):
    """Outcome of one item, positioned like its input."""

    item: T
    ok: bool
    value: Any = None
    reason: str | None = None
    dispatched: bool = True


@dataclass
class BatchItemFailure(Generic[T]):
    """A failed (or never dispatched) item. Recorded, never raised."""

    item: T
    reason: str
    dispatched: bool = True


@dataclass
class BatchReport(Generic[T]):
    """Aggregated result of a batch job, aligned with the input order."""

    job_id: str
    status: BatchStatus
    results: list[ItemOutcome[T]]
    chunk_count: int = 0

    @property
    def successful(self) -> list[T]:
        return [outcome.item for outcome in self.results if outcome.ok]

    @property
    def failed(self) -> list[BatchItemFailure[T]]:
        return [
            BatchItemFailure(
                item=outcome.item,
                reason=outcome.reason or "unknown error",
                dispatched=outcome.dispatched,
            )
            for outcome in self.results
            if not outcome.ok
        ]

    @property
    def failed_count(self) -> int:
        return sum(1 for outcome in self.results if not outcome.ok)


NOT_DISPATCHED_REASON = "not dispatched: batch halted"


# =============================================================================
# Marketplace boundary shapes
# =============================================================================


@dataclass(frozen=True)
class StockUpdate:
    """Requested stock level for one SKU."""

    sku: str
    quantity: int


@dataclass(frozen=True)
class PriceUpdate:
    """Requested selling price for one SKU."""

    sku: str
    price: float
    currency: str = "USD"


@dataclass(frozen=True)
class StatusUpdate:
    """Requested listing state for one SKU; inactive listings are not buyable."""

    sku: str
    active: bool


@dataclass
class Page(Generic[T]):
    """One page of a paginated listing; `next_cursor` is None on the last page."""

    items: list[T]
    next_cursor: str | None = None
    total: int | None = None


@dataclass
class ConnectionStatus:
    """Result of a marketplace connectivity probe."""

    connected: bool
    message: str
    checked_at: datetime = field(default_factory=utc_now)
    rate_limit: RateLimitState | None = None
