"""
Access-token lifecycle for OAuth-style marketplace credentials.

CredentialManager keeps one cached access token per connection, refreshes
it shortly before expiry, and coalesces concurrent refreshes into a single
token exchange. LwaTokenRefresher performs the Login with Amazon exchange.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from typing import Protocol

import httpx

from sellerlink.exceptions import AuthError, SellerLinkError
from sellerlink.logging import get_logger
from sellerlink.types import Credential, OperationResult, TokenGrant

logger = get_logger(__name__)

LWA_TOKEN_URL = "https://api.amazon.com/auth/o2/token"
DEFAULT_EXPIRY_BUFFER_SECONDS = 300.0
DEFAULT_TOKEN_LIFETIME_SECONDS = 3600.0


class TokenRefresher(Protocol):
    """Exchanges a credential's refresh token for a new access token."""

    async def __call__(self, credential: Credential) -> TokenGrant:
        ...


class LwaTokenRefresher:
    """Login with Amazon refresh-token grant."""

    def __init__(
        self,
        token_url: str = LWA_TOKEN_URL,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ) -> None:
        self.token_url = token_url
        self.timeout = timeout
        self._client = http_client
        self._owns_client = http_client is None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self) -> None:
        """Close the HTTP client if this refresher created it."""
        if self._client and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def __call__(self, credential: Credential) -> TokenGrant:
        """Perform the token exchange.

        Raises:
            AuthError: If the exchange fails or returns no access token.
        """
        client = await self._get_client()
        form = {
            "grant_type": "refresh_token",
            "refresh_token": credential.refresh_token,
            "client_id": credential.client_id,
            "client_secret": credential.client_secret,
        }

        try:
            response = await client.post(
                self.token_url,
                data=form,
                headers={"Accept": "application/json"},
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise AuthError(
                f"Token refresh rejected: {e.response.status_code}",
                context={
                    "token_url": self.token_url,
                    "status_code": e.response.status_code,
                    "response": e.response.text[:200] if e.response.text else None,
                },
                status_code=e.response.status_code,
            ) from e
        except httpx.RequestError as e:
            raise AuthError(
                f"Token refresh request failed: {e}",
                context={"token_url": self.token_url, "error": str(e)},
            ) from e

        try:
            data = response.json()
        except ValueError as e:
            raise AuthError(
                "Failed to parse token response",
                context={"token_url": self.token_url, "error": str(e)},
            ) from e

        access_token = data.get("access_token") if isinstance(data, dict) else None
        if not access_token:
            raise AuthError(
                "Token response did not include an access token",
                context={"token_url": self.token_url},
            )

        try:
            expires_in = float(data.get("expires_in") or DEFAULT_TOKEN_LIFETIME_SECONDS)
        except (TypeError, ValueError) as e:
            raise AuthError(
                "Token response has an invalid expires_in",
                context={"token_url": self.token_url, "expires_in": data.get("expires_in")},
            ) from e

        return TokenGrant(
            access_token=access_token,
            expires_in=expires_in,
            refresh_token=data.get("refresh_token"),
        )


class CredentialManager:
    """Owns the cached access token of one marketplace connection.

    At most one refresh is in flight at any time: callers arriving while a
    refresh runs await the same task instead of starting their own.
    """

    def __init__(
        self,
        credential: Credential,
        refresher: TokenRefresher,
        expiry_buffer: float = DEFAULT_EXPIRY_BUFFER_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the credential manager.

        Args:
            credential: Initial credential from the credential store.
            refresher: Token exchange implementation.
            expiry_buffer: Seconds before expiry at which a token counts as
                stale and is proactively refreshed.
            clock: Epoch-seconds clock; injectable for tests.
        """
        self._credential = credential
        self._refresher = refresher
        self.expiry_buffer = expiry_buffer
        self._clock = clock
        self._inflight: asyncio.Task[OperationResult[str]] | None = None
        self.refresh_count = 0

    @property
    def credential(self) -> Credential:
        return self._credential

    def has_valid_token(self) -> bool:
        return self._credential.is_valid(self._clock(), self.expiry_buffer)

    async def ensure_valid_token(self) -> OperationResult[str]:
        """Return a usable access token, refreshing it if needed."""
        if self.has_valid_token():
            return OperationResult.success(self._credential.access_token)  # type: ignore[arg-type]
        return await self.refresh()

    async def refresh(self) -> OperationResult[str]:
        """Exchange the refresh token, joining an in-flight refresh if any."""
        task = self._inflight
        if task is None:
            task = asyncio.ensure_future(self._refresh_once())
            self._inflight = task
            task.add_done_callback(self._clear_inflight)
        return await asyncio.shield(task)

    def invalidate(self, token: str | None = None) -> bool:
        """Clear the cached token after the server rejected it.

        Args:
            token: The token that was rejected. If another caller already
                replaced it, nothing is cleared.

        Returns:
            True if the cached token was cleared.
        """
        if token is not None and self._credential.access_token != token:
            return False
        self._credential.clear()
        return True

    def _clear_inflight(self, task: asyncio.Task[OperationResult[str]]) -> None:
        if self._inflight is task:
            self._inflight = None

    async def _refresh_once(self) -> OperationResult[str]:
        self.refresh_count += 1
        try:
            grant = await self._refresher(self._credential)
        except SellerLinkError as e:
            self._credential.clear()
            error = e if isinstance(e, AuthError) else AuthError(e.message, context=e.context)
            logger.error("Access token refresh failed", error=str(error))
            return OperationResult.failure(error)
        except httpx.HTTPError as e:
            self._credential.clear()
            logger.error("Access token refresh failed", error=str(e))
            return OperationResult.failure(
                AuthError(f"Token refresh failed: {e}", context={"error": str(e)})
            )
        except Exception as e:
            self._credential.clear()
            logger.exception("Access token refresh raised unexpectedly")
            return OperationResult.failure(
                AuthError(
                    f"Token refresh failed: {type(e).__name__}: {e}",
                    context={"error": type(e).__name__},
                )
            )

        self._credential.access_token = grant.access_token
        self._credential.expires_at = self._clock() + grant.expires_in
        if grant.refresh_token:
            self._credential.refresh_token = grant.refresh_token

        logger.info("Access token refreshed", expires_in=grant.expires_in)
        return OperationResult.success(grant.access_token)
