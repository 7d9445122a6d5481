"""
Request executor: the single path every outbound marketplace call takes.

Pipeline per attempt:
    authorize -> prepare -> sign -> throttle -> send -> record limits -> classify

Failures are classified by the RetryPolicy and retried in a tenacity loop.
Every call returns an OperationResult; expected failures never escape as
exceptions.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any
from urllib.parse import urlsplit

import httpx
import orjson
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from sellerlink.client.credentials import CredentialManager
from sellerlink.client.rate_limiter import RateLimiter
from sellerlink.client.retry import RetryPolicy, classify_status
from sellerlink.client.signing import AwsCredentials, RequestSigner
from sellerlink.exceptions import (
    ERROR_TYPES,
    AuthError,
    MarketplaceApiError,
    PermanentError,
    RateLimitError,
    RetryExhaustedError,
    TransientNetworkError,
)
from sellerlink.logging import get_logger, log_context
from sellerlink.types import (
    ApiResponse,
    ErrorKind,
    OperationResult,
    OutboundRequest,
    RequestSpec,
    RetryContext,
    SignedRequest,
    generate_id,
)

logger = get_logger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
RETRYABLE_KINDS = (
    ErrorKind.RATE_LIMITED,
    ErrorKind.TRANSIENT_SERVER,
    ErrorKind.TRANSIENT_NETWORK,
)


def _decode_body(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return orjson.loads(response.content)
    except orjson.JSONDecodeError:
        return response.text


def _parse_retry_after(value: str | None) -> float | None:
    if value is None:
        return None
    try:
        return max(0.0, float(value.strip()))
    except ValueError:
        return None


def _query_params(params: dict[str, Any] | None) -> list[tuple[str, str]]:
    """Flatten params into string pairs; list values repeat the key, None is dropped."""
    pairs: list[tuple[str, str]] = []
    for key, value in (params or {}).items():
        if value is None:
            continue
        values = value if isinstance(value, (list, tuple)) else [value]
        for item in values:
            if isinstance(item, bool):
                item = "true" if item else "false"
            pairs.append((str(key), str(item)))
    return pairs


class RequestExecutor:
    """Composes credentials, signing, rate limiting and retry around httpx.

    One executor serves one marketplace connection. The credential manager
    and signer are optional: API-key marketplaces pass neither and put the
    key in `default_headers`.
    """

    def __init__(
        self,
        base_url: str,
        name: str,
        rate_limiter: RateLimiter,
        retry_policy: RetryPolicy | None = None,
        credentials: CredentialManager | None = None,
        signer: RequestSigner | None = None,
        aws_credentials: AwsCredentials | None = None,
        auth_header: str = "Authorization",
        auth_scheme: str | None = "Bearer",
        default_headers: dict[str, str] | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the executor.

        Args:
            base_url: Marketplace API root, e.g. "https://seller-api.takealot.com".
            name: Marketplace name used in logs and error context.
            rate_limiter: Limiter shared by all calls of this connection.
            retry_policy: Backoff policy; defaults to RetryPolicy().
            credentials: Access-token manager for OAuth-style marketplaces.
            signer: SigV4 signer; requires `aws_credentials`.
            aws_credentials: IAM credentials used by `signer`.
            auth_header: Header that carries the access token.
            auth_scheme: Token prefix ("Bearer"), or None for a bare token.
            default_headers: Headers sent with every call.
            http_client: Pre-built client; the executor then does not close it.
            timeout: Default per-request timeout in seconds.
            clock: Epoch-seconds clock; injectable for tests.
            sleep: Awaitable sleep; injectable for tests.
        """
        if signer is not None and aws_credentials is None:
            raise ValueError("signer requires aws_credentials")

        self.base_url = base_url.rstrip("/")
        self.name = name
        self.rate_limiter = rate_limiter
        self.retry_policy = retry_policy or RetryPolicy()
        self.credentials = credentials
        self.signer = signer
        self.aws_credentials = aws_credentials
        self.auth_header = auth_header
        self.auth_scheme = auth_scheme
        self.default_headers = dict(default_headers or {})
        self.timeout = timeout
        self._client = http_client
        self._owns_client = http_client is None
        self._clock = clock
        self._sleep = sleep

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self) -> None:
        """Close the HTTP client if this executor created it."""
        if self._client and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> RequestExecutor:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def execute(self, spec: RequestSpec) -> OperationResult[ApiResponse]:
        """Run one logical call with retries.

        Args:
            spec: The call to make.

        Returns:
            OperationResult with the decoded response on success. On failure
            the error is AuthError, PermanentError or, once attempts run out
            on retryable failures, RetryExhaustedError.
        """
        policy = self.retry_policy
        ctx = RetryContext(
            max_attempts=policy.max_attempts,
            base_delay=policy.base_delay,
            max_delay=policy.max_delay,
        )

        with log_context(marketplace=self.name, request_id=generate_id("req")):
            retrying = AsyncRetrying(
                stop=stop_after_attempt(policy.max_attempts),
                retry=retry_if_exception(lambda e: self._should_retry(e, ctx)),
                wait=lambda state: self._retry_delay(state, ctx),
                sleep=self._sleep,
                before_sleep=lambda state: self._log_retry(state, spec),
                reraise=True,
            )
            try:
                async for attempt in retrying:
                    with attempt:
                        response = await self._attempt(spec, ctx)
            except MarketplaceApiError as e:
                error = self._final_error(e, ctx)
                logger.error(
                    "Marketplace call failed",
                    method=spec.method,
                    path=spec.path,
                    kind=error.kind.value if error.kind else None,
                    attempts=ctx.attempt,
                    error=error.message,
                )
                return OperationResult.failure(error, attempts=ctx.attempt)

        return OperationResult.success(response, attempts=ctx.attempt)

    def _should_retry(self, error: BaseException, ctx: RetryContext) -> bool:
        kind = self.retry_policy.classify(error)
        return self.retry_policy.should_retry(
            kind,
            ctx.attempt,
            auth_refreshed=ctx.auth_refreshed or self.credentials is None,
        )

    def _retry_delay(self, state: RetryCallState, ctx: RetryContext) -> float:
        error = state.outcome.exception() if state.outcome else None
        if error is None:
            return 0.0
        kind = self.retry_policy.classify(error)
        return self.retry_policy.compute_delay(ctx.attempt - 1, kind, error)

    def _log_retry(self, state: RetryCallState, spec: RequestSpec) -> None:
        error = state.outcome.exception() if state.outcome else None
        delay = state.next_action.sleep if state.next_action else 0.0
        logger.warning(
            "Retrying marketplace call",
            method=spec.method,
            path=spec.path,
            attempt=state.attempt_number,
            delay_seconds=round(delay, 3),
            error=str(error),
        )

    def _final_error(self, error: MarketplaceApiError, ctx: RetryContext) -> MarketplaceApiError:
        if error.kind in RETRYABLE_KINDS and ctx.attempt >= self.retry_policy.max_attempts:
            return RetryExhaustedError(error, ctx.attempt)
        return error

    async def _attempt(self, spec: RequestSpec, ctx: RetryContext) -> ApiResponse:
        ctx.advance()
        token = await self._authorize(ctx)
        request = self._prepare(spec, token)
        signed = self._sign(request)
        await self._throttle(spec.category)
        started = self._clock()
        response = await self._send(signed, spec)
        elapsed_ms = max(0, int((self._clock() - started) * 1000))
        self._record_limits(spec, response)
        self._raise_for_status(spec, response, ctx, token)

        return ApiResponse(
            status_code=response.status_code,
            headers={k.lower(): v for k, v in response.headers.items()},
            body=_decode_body(response),
            elapsed_ms=elapsed_ms,
        )

    async def _authorize(self, ctx: RetryContext) -> str | None:
        """Return the access token for this attempt, if the connection uses one."""
        if self.credentials is None:
            return None

        if ctx.refresh_required:
            ctx.refresh_required = False
            ctx.auth_refreshed = True
            self.credentials.invalidate(ctx.rejected_token)

        result = await self.credentials.ensure_valid_token()
        if not result.ok:
            # A failed refresh is fatal for this call.
            ctx.auth_refreshed = True
            raise result.error or AuthError("Access token unavailable")
        return result.value

    def _prepare(self, spec: RequestSpec, token: str | None) -> OutboundRequest:
        headers = {**self.default_headers, **spec.headers}
        if token is not None:
            headers[self.auth_header] = f"{self.auth_scheme} {token}" if self.auth_scheme else token

        if spec.content is not None:
            body = spec.content
        elif spec.json is not None:
            body = orjson.dumps(spec.json)
            headers.setdefault("content-type", "application/json")
        else:
            body = b""

        path = spec.path if spec.path.startswith("/") else f"/{spec.path}"
        return OutboundRequest(
            method=spec.method.upper(),
            url=f"{self.base_url}{path}",
            params=_query_params(spec.params),
            headers=headers,
            body=body,
        )

    def _sign(self, request: OutboundRequest) -> SignedRequest:
        if self.signer is None or self.aws_credentials is None:
            url = str(httpx.URL(request.url, params=request.params)) if request.params else request.url
            return SignedRequest(
                method=request.method,
                url=url,
                headers=request.headers,
                body=request.body,
            )
        timestamp = datetime.fromtimestamp(self._clock(), tz=timezone.utc)
        return self.signer.sign(request, self.aws_credentials, timestamp)

    async def _throttle(self, category: str) -> None:
        while True:
            wait = self.rate_limiter.consume(category)
            if wait <= 0:
                return
            await self._sleep(wait)

    async def _send(self, signed: SignedRequest, spec: RequestSpec) -> httpx.Response:
        client = await self._get_client()
        context = {"method": signed.method, "path": spec.path, "category": spec.category}

        try:
            return await client.request(
                signed.method,
                signed.url,
                headers=signed.headers,
                content=signed.body or None,
                timeout=spec.timeout or self.timeout,
            )
        except httpx.TimeoutException as e:
            raise TransientNetworkError(
                f"Request to {self.name} timed out",
                context={**context, "error": str(e)},
            ) from e
        except httpx.TransportError as e:
            raise TransientNetworkError(
                f"Connection to {self.name} failed: {e}",
                context={**context, "error": str(e)},
            ) from e
        except httpx.RequestError as e:
            # Undecodable body or too many redirects.
            raise PermanentError(
                f"Invalid response from {self.name}: {e}",
                context={**context, "error": str(e)},
            ) from e

    def _record_limits(self, spec: RequestSpec, response: httpx.Response) -> None:
        state = self.rate_limiter.update(spec.category, response.headers)
        if state is not None:
            logger.debug(
                "Rate limit updated",
                category=spec.category,
                remaining=state.remaining,
                limit=state.limit,
            )

    def _raise_for_status(
        self,
        spec: RequestSpec,
        response: httpx.Response,
        ctx: RetryContext,
        token: str | None,
    ) -> None:
        kind = classify_status(response.status_code)
        if kind is None:
            return

        context: dict[str, Any] = {
            "method": spec.method.upper(),
            "path": urlsplit(spec.path).path,
            "category": spec.category,
            "status_code": response.status_code,
            "response": response.text[:200] if response.text else None,
        }

        if kind is ErrorKind.RATE_LIMITED:
            now = self._clock()
            retry_after = _parse_retry_after(response.headers.get("retry-after"))
            if retry_after is None:
                state = self.rate_limiter.state(spec.category)
                if state is not None and state.reset_at > now:
                    retry_after = state.reset_at - now
            reset_at = now + retry_after if retry_after is not None else None
            if reset_at is not None:
                self.rate_limiter.exhaust(spec.category, reset_at)
            raise RateLimitError(
                f"{self.name} rate limit hit",
                context=context,
                status_code=response.status_code,
                retry_after=retry_after,
                reset_at=reset_at,
            )

        if kind is ErrorKind.AUTH:
            ctx.refresh_required = not ctx.auth_refreshed
            ctx.rejected_token = token
            raise AuthError(
                f"{self.name} rejected the credentials",
                context=context,
                status_code=response.status_code,
            )

        raise ERROR_TYPES[kind](
            f"{self.name} returned {response.status_code}",
            context=context,
            status_code=response.status_code,
        )
