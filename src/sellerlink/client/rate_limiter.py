"""
Per-category token bucket driven by server rate-limit headers.

Each endpoint category (e.g. "orders", "listings") has its own bucket.
Local decrements are a best-effort estimate between responses; every
response that reports limits overwrites the bucket, because the server
is authoritative.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, replace

from sellerlink.logging import get_logger
from sellerlink.types import RateLimitState

logger = get_logger(__name__)

DEFAULT_WINDOW_SECONDS = 1.0


@dataclass(frozen=True)
class RateLimitHeaders:
    """Names and semantics of a marketplace's rate-limit headers.

    Attributes:
        limit: Header carrying the bucket capacity.
        remaining: Header carrying the remaining quota.
        reset: Header carrying the reset time.
        reset_is_epoch: True if `reset` is an epoch timestamp, False if it is
            seconds from now.
    """

    limit: str
    remaining: str
    reset: str
    reset_is_epoch: bool = False


AMAZON_HEADERS = RateLimitHeaders(
    limit="x-amzn-ratelimit-limit",
    remaining="x-amzn-quota-remaining",
    reset="x-amzn-ratelimit-reset",
    reset_is_epoch=False,
)

TAKEALOT_HEADERS = RateLimitHeaders(
    limit="x-ratelimit-limit",
    remaining="x-ratelimit-remaining",
    reset="x-ratelimit-reset",
    reset_is_epoch=True,
)


@dataclass(frozen=True)
class BucketDefaults:
    """Quota assumed for a category before the server reports one."""

    limit: int
    window: float = DEFAULT_WINDOW_SECONDS


def _parse_float(value: str | None) -> float | None:
    if value is None:
        return None
    try:
        return float(value.strip())
    except ValueError:
        return None


class RateLimiter:
    """Token bucket keyed by endpoint category.

    Thread-safe: every read-modify-write happens under one lock that is
    never held across an await.
    """

    def __init__(
        self,
        headers: RateLimitHeaders = TAKEALOT_HEADERS,
        defaults: Mapping[str, BucketDefaults] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the rate limiter.

        Args:
            headers: Header convention of the marketplace.
            defaults: Optional per-category quota used until the server
                reports one. Categories without defaults are unthrottled
                until their first response.
            clock: Epoch-seconds clock; injectable for tests.
        """
        self.headers = headers
        self._defaults = dict(defaults or {})
        self._clock = clock
        self._states: dict[str, RateLimitState] = {}
        self._lock = threading.Lock()

    def _window(self, category: str) -> float:
        defaults = self._defaults.get(category)
        return defaults.window if defaults else DEFAULT_WINDOW_SECONDS

    def consume(self, category: str) -> float:
        """Take one token from the category's bucket.

        Returns:
            0.0 if a token was taken, otherwise the seconds until the
            bucket resets. The caller should wait and consume again.
        """
        with self._lock:
            now = self._clock()
            state = self._states.get(category)

            if state is None:
                defaults = self._defaults.get(category)
                if defaults is None:
                    return 0.0
                state = RateLimitState(
                    limit=defaults.limit,
                    remaining=defaults.limit,
                    reset_at=now + defaults.window,
                )
                self._states[category] = state

            if now >= state.reset_at:
                state.remaining = max(1, int(state.limit))
                state.reset_at = now + self._window(category)

            if state.remaining > 0:
                state.remaining -= 1
                return 0.0

            wait = max(0.0, state.reset_at - now)

        logger.debug("Rate limit bucket empty", category=category, wait_seconds=round(wait, 3))
        return wait

    def update(self, category: str, headers: Mapping[str, str]) -> RateLimitState | None:
        """Overwrite the category's bucket with server-reported values.

        Args:
            category: Endpoint category the response belongs to.
            headers: Response headers; lookups use lower-cased names, so
                pass an httpx.Headers or a dict with lower-cased keys.

        Returns:
            A copy of the updated state, or None if the response carried no
            rate-limit information.
        """
        limit = _parse_float(headers.get(self.headers.limit))
        remaining = _parse_float(headers.get(self.headers.remaining))
        reset = _parse_float(headers.get(self.headers.reset))

        if limit is None and remaining is None and reset is None:
            return None

        with self._lock:
            now = self._clock()
            reset_at: float | None = None
            if reset is not None:
                reset_at = reset if self.headers.reset_is_epoch else now + reset

            state = self._states.get(category)
            if state is None:
                if limit is None and remaining is None:
                    return None
                capacity = limit if limit is not None else float(remaining or 0)
                state = RateLimitState(
                    limit=capacity,
                    remaining=int(remaining if remaining is not None else capacity),
                    reset_at=reset_at if reset_at is not None else now + self._window(category),
                )
                self._states[category] = state
            else:
                if limit is not None:
                    state.limit = limit
                if remaining is not None:
                    state.remaining = max(0, int(remaining))
                if reset_at is not None:
                    state.reset_at = reset_at

            return replace(state)

    def exhaust(self, category: str, reset_at: float) -> None:
        """Mark the category as empty until `reset_at` (used after a 429)."""
        with self._lock:
            state = self._states.get(category)
            if state is None:
                defaults = self._defaults.get(category)
                limit = defaults.limit if defaults else 1
                self._states[category] = RateLimitState(limit=limit, remaining=0, reset_at=reset_at)
                return
            state.remaining = 0
            state.reset_at = max(state.reset_at, reset_at)

    def state(self, category: str) -> RateLimitState | None:
        """Snapshot of a category's bucket."""
        with self._lock:
            state = self._states.get(category)
            return replace(state) if state else None

    def status(self) -> RateLimitState | None:
        """Snapshot of the most constrained bucket, for health reporting."""
        with self._lock:
            if not self._states:
                return None
            tightest = min(
                self._states.values(),
                key=lambda s: (s.utilization, s.remaining),
            )
            return replace(tightest)

    @property
    def categories(self) -> list[str]:
        with self._lock:
            return sorted(self._states)
