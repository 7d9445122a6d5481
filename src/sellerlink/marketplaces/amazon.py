"""
Amazon Selling Partner API client.

Authenticates with Login with Amazon (access token in x-amz-access-token),
signs every call with SigV4 and throttles per API section using the
x-amzn-ratelimit-* response headers.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from datetime import datetime, timedelta, timezone
from typing import Any
from urllib.parse import quote

import httpx

from sellerlink.client.batch import BatchProcessor
from sellerlink.client.credentials import (
    DEFAULT_EXPIRY_BUFFER_SECONDS,
    LWA_TOKEN_URL,
    CredentialManager,
    LwaTokenRefresher,
    TokenRefresher,
)
from sellerlink.client.executor import RequestExecutor
from sellerlink.client.rate_limiter import AMAZON_HEADERS, BucketDefaults, RateLimiter
from sellerlink.client.retry import RetryPolicy
from sellerlink.client.signing import AwsCredentials, RequestSigner
from sellerlink.config import Settings
from sellerlink.exceptions import ConfigurationError, PermanentError
from sellerlink.logging import get_logger, log_context
from sellerlink.marketplaces.base import iterate_pages, per_item_worker
from sellerlink.types import (
    ApiResponse,
    BatchConfig,
    BatchReport,
    ConnectionStatus,
    Credential,
    OperationResult,
    Page,
    PriceUpdate,
    RateLimitState,
    RequestSpec,
    StatusUpdate,
    StockUpdate,
)

logger = get_logger(__name__)

# region -> (endpoint, AWS signing region)
REGION_ENDPOINTS: dict[str, tuple[str, str]] = {
    "na": ("https://sellingpartnerapi-na.amazon.com", "us-east-1"),
    "eu": ("https://sellingpartnerapi-eu.amazon.com", "eu-west-1"),
    "fe": ("https://sellingpartnerapi-fe.amazon.com", "us-west-2"),
}

LISTINGS_VERSION = "2021-08-01"
ORDERS_VERSION = "v0"

# Published SP-API quotas, used until the first response reports limits
DEFAULT_BUCKETS: dict[str, BucketDefaults] = {
    "listings": BucketDefaults(limit=5, window=1.0),
    "orders": BucketDefaults(limit=20, window=60.0),
    "sellers": BucketDefaults(limit=15, window=60.0),
    "catalog": BucketDefaults(limit=2, window=1.0),
}

DEFAULT_ORDERS_LOOKBACK = timedelta(days=7)
DEFAULT_PAGE_SIZE = 20


def category_for(path: str) -> str:
    """Rate-limit category of an SP-API path: its first segment."""
    segment = path.lstrip("/").split("/", 1)[0]
    return segment or "default"


class AmazonClient:
    """Client for the Amazon Selling Partner API.

    Uses the listings API for product reads and stock/price patches and
    the orders API for order reads.
    """

    def __init__(
        self,
        credential: Credential,
        aws_credentials: AwsCredentials,
        seller_id: str,
        marketplace_id: str = "ATVPDKIKX0DER",
        region: str = "na",
        retry_policy: RetryPolicy | None = None,
        batch_config: BatchConfig | None = None,
        token_url: str = LWA_TOKEN_URL,
        expiry_buffer: float = DEFAULT_EXPIRY_BUFFER_SECONDS,
        timeout: float = 30.0,
        page_size: int = DEFAULT_PAGE_SIZE,
        http_client: httpx.AsyncClient | None = None,
        refresher: TokenRefresher | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the Amazon client.

        Args:
            credential: LWA app credentials and refresh token.
            aws_credentials: IAM keys used for SigV4.
            seller_id: Selling partner ID.
            marketplace_id: Marketplace the listings belong to.
            region: SP-API endpoint region (na, eu or fe).
            retry_policy: Retry tuning for every call.
            batch_config: Tuning for bulk operations.
            token_url: LWA token endpoint.
            expiry_buffer: Seconds before expiry at which tokens are refreshed.
            timeout: Per-request timeout in seconds.
            page_size: Listings per page when searching the seller's listings.
            http_client: Shared HTTP client; not closed by this client.
            refresher: Token exchange; defaults to an LwaTokenRefresher.
            clock: Epoch-seconds clock; injectable for tests.
            sleep: Awaitable sleep; injectable for tests.

        Raises:
            ConfigurationError: If the region is unknown.
        """
        if region not in REGION_ENDPOINTS:
            raise ConfigurationError(
                f"Unknown Amazon region: {region}",
                context={"region": region, "valid": sorted(REGION_ENDPOINTS)},
            )
        endpoint, aws_region = REGION_ENDPOINTS[region]

        self.seller_id = seller_id
        self.marketplace_id = marketplace_id
        self.region = region
        self.batch_config = batch_config or BatchConfig()
        self.page_size = page_size
        self._sleep = sleep

        self._refresher = refresher or LwaTokenRefresher(
            token_url=token_url,
            http_client=http_client,
            timeout=timeout,
        )
        self.credentials = CredentialManager(
            credential,
            self._refresher,
            expiry_buffer=expiry_buffer,
            clock=clock,
        )
        self.rate_limiter = RateLimiter(headers=AMAZON_HEADERS, defaults=DEFAULT_BUCKETS, clock=clock)
        self.executor = RequestExecutor(
            base_url=endpoint,
            name=self.name,
            rate_limiter=self.rate_limiter,
            retry_policy=retry_policy,
            credentials=self.credentials,
            signer=RequestSigner(region=aws_region),
            aws_credentials=aws_credentials,
            auth_header="x-amz-access-token",
            auth_scheme=None,
            default_headers={"accept": "application/json"},
            http_client=http_client,
            timeout=timeout,
            clock=clock,
            sleep=sleep,
        )

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> AmazonClient:
        """Build a client from application settings.

        Raises:
            ConfigurationError: If Amazon credentials are incomplete.
        """
        if not settings.amazon_configured:
            raise ConfigurationError(
                "Amazon credentials are not fully configured",
                context={"required": [
                    "AMAZON_CLIENT_ID",
                    "AMAZON_CLIENT_SECRET",
                    "AMAZON_REFRESH_TOKEN",
                    "AMAZON_AWS_ACCESS_KEY_ID",
                    "AMAZON_AWS_SECRET_ACCESS_KEY",
                    "AMAZON_SELLER_ID",
                ]},
            )
        return cls(
            credential=Credential(
                client_id=settings.AMAZON_CLIENT_ID or "",
                client_secret=settings.AMAZON_CLIENT_SECRET or "",
                refresh_token=settings.AMAZON_REFRESH_TOKEN or "",
            ),
            aws_credentials=AwsCredentials(
                access_key_id=settings.AMAZON_AWS_ACCESS_KEY_ID or "",
                secret_access_key=settings.AMAZON_AWS_SECRET_ACCESS_KEY or "",
            ),
            seller_id=settings.AMAZON_SELLER_ID or "",
            marketplace_id=settings.AMAZON_MARKETPLACE_ID,
            region=settings.AMAZON_REGION,
            retry_policy=settings.retry_policy(),
            batch_config=settings.batch_config(),
            token_url=settings.AMAZON_TOKEN_URL,
            expiry_buffer=settings.TOKEN_EXPIRY_BUFFER_SECONDS,
            timeout=settings.REQUEST_TIMEOUT_SECONDS,
            **kwargs,
        )

    @property
    def name(self) -> str:
        return "amazon"

    async def close(self) -> None:
        """Close the HTTP clients."""
        await self.executor.close()
        if isinstance(self._refresher, LwaTokenRefresher):
            await self._refresher.close()

    async def _call(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json: Any = None,
    ) -> OperationResult[ApiResponse]:
        spec = RequestSpec(
            method=method,
            path=path,
            category=category_for(path),
            params=params,
            json=json,
        )
        return await self.executor.execute(spec)

    def _listing_path(self, sku: str) -> str:
        return f"/listings/{LISTINGS_VERSION}/items/{quote(self.seller_id, safe='')}/{quote(sku, safe='')}"

    async def test_connection(self) -> ConnectionStatus:
        """Probe the sellers API with the current credentials."""
        with log_context(operation="test_connection"):
            result = await self._call("GET", "/sellers/v1/marketplaceParticipations")

        if not result.ok:
            message = result.error.message if result.error else "unknown error"
            return ConnectionStatus(
                connected=False,
                message=f"Failed to connect to Amazon SP-API: {message}",
                rate_limit=self.rate_limit_status(),
            )
        return ConnectionStatus(
            connected=True,
            message="Successfully connected to Amazon SP-API",
            rate_limit=self.rate_limit_status(),
        )

    async def get_product_by_sku(self, sku: str) -> OperationResult[Any]:
        """Fetch a listing item with summaries, offers and availability."""
        with log_context(operation="get_product_by_sku"):
            result = await self._call(
                "GET",
                self._listing_path(sku),
                params={
                    "marketplaceIds": self.marketplace_id,
                    "includedData": "summaries,attributes,offers,fulfillmentAvailability",
                },
            )
        return result.map(lambda response: response.body)

    async def get_products_by_skus(self, skus: list[str]) -> BatchReport[str]:
        with log_context(operation="get_products_by_skus"):
            processor: BatchProcessor[str] = BatchProcessor(self.batch_config, sleep=self._sleep)
            return await processor.process_batch(skus, per_item_worker(self.get_product_by_sku))

    async def _patch_listing(self, sku: str, patches: list[dict[str, Any]]) -> OperationResult[Any]:
        result = await self._call(
            "PATCH",
            self._listing_path(sku),
            params={"marketplaceIds": self.marketplace_id},
            json={"productType": "PRODUCT", "patches": patches},
        )
        if not result.ok or result.value is None:
            return result.map(lambda response: response.body)

        body = result.value.body if isinstance(result.value.body, dict) else {}
        if body.get("status") == "INVALID":
            issues = body.get("issues") or []
            reason = "; ".join(str(issue.get("message", issue)) for issue in issues) or "listing rejected"
            return OperationResult.failure(
                PermanentError(
                    f"Listing update rejected for {sku}: {reason}",
                    context={"sku": sku, "issues": issues},
                    status_code=result.value.status_code,
                ),
                attempts=result.attempts,
            )
        return OperationResult.success(body, attempts=result.attempts)

    async def _update_one_stock(self, update: StockUpdate) -> OperationResult[Any]:
        return await self._patch_listing(
            update.sku,
            [{
                "op": "replace",
                "path": "/attributes/fulfillment_availability",
                "value": [{
                    "fulfillment_channel_code": "DEFAULT",
                    "quantity": max(0, int(update.quantity)),
                }],
            }],
        )

    async def _update_one_price(self, update: PriceUpdate) -> OperationResult[Any]:
        return await self._patch_listing(
            update.sku,
            [{
                "op": "replace",
                "path": "/attributes/purchasable_offer",
                "value": [{
                    "marketplace_id": self.marketplace_id,
                    "currency": update.currency,
                    "our_price": [{"schedule": [{"value_with_tax": update.price}]}],
                }],
            }],
        )

    async def _update_one_status(self, update: StatusUpdate) -> OperationResult[Any]:
        return await self._patch_listing(
            update.sku,
            [{
                "op": "replace",
                "path": "/attributes/status",
                "value": [{
                    "marketplace_id": self.marketplace_id,
                    "value": "ACTIVE" if update.active else "INACTIVE",
                }],
            }],
        )

    async def update_stock(self, updates: list[StockUpdate]) -> BatchReport[StockUpdate]:
        """Set fulfillment availability for each SKU via listings patches."""
        with log_context(operation="update_stock"):
            processor: BatchProcessor[StockUpdate] = BatchProcessor(self.batch_config, sleep=self._sleep)
            return await processor.process_batch(updates, per_item_worker(self._update_one_stock))

    async def update_prices(self, updates: list[PriceUpdate]) -> BatchReport[PriceUpdate]:
        """Set the purchasable offer price for each SKU via listings patches."""
        with log_context(operation="update_prices"):
            processor: BatchProcessor[PriceUpdate] = BatchProcessor(self.batch_config, sleep=self._sleep)
            return await processor.process_batch(updates, per_item_worker(self._update_one_price))

    async def update_status(self, updates: list[StatusUpdate]) -> BatchReport[StatusUpdate]:
        """Activate or deactivate each listing via listings patches."""
        with log_context(operation="update_status"):
            processor: BatchProcessor[StatusUpdate] = BatchProcessor(self.batch_config, sleep=self._sleep)
            return await processor.process_batch(updates, per_item_worker(self._update_one_status))

    async def get_products(self, cursor: str | None = None) -> OperationResult[Page[dict[str, Any]]]:
        """Fetch one page of the seller's listings; `cursor` is the previous page's nextToken."""
        params: dict[str, Any] = {
            "marketplaceIds": self.marketplace_id,
            "includedData": "summaries",
            "pageSize": self.page_size,
        }
        if cursor:
            params["pageToken"] = cursor

        with log_context(operation="get_products"):
            result = await self._call(
                "GET",
                f"/listings/{LISTINGS_VERSION}/items/{quote(self.seller_id, safe='')}",
                params=params,
            )
        return result.map(self._listings_page)

    @staticmethod
    def _listings_page(response: ApiResponse) -> Page[dict[str, Any]]:
        body = response.body if isinstance(response.body, dict) else {}
        pagination = body.get("pagination") or {}
        total = body.get("numberOfResults")
        return Page(
            items=list(body.get("items") or []),
            next_cursor=pagination.get("nextToken") or None,
            total=int(total) if total is not None else None,
        )

    async def iter_products(self) -> AsyncIterator[OperationResult[dict[str, Any]]]:
        async for listing in iterate_pages(self.get_products):
            yield listing

    async def get_orders(
        self,
        cursor: str | None = None,
        created_after: datetime | None = None,
    ) -> OperationResult[Page[dict[str, Any]]]:
        """Fetch one page of orders; `cursor` is the previous page's NextToken."""
        params: dict[str, Any] = {"MarketplaceIds": self.marketplace_id}
        if cursor:
            params["NextToken"] = cursor
        else:
            since = created_after or datetime.now(timezone.utc) - DEFAULT_ORDERS_LOOKBACK
            if since.tzinfo is None:
                since = since.replace(tzinfo=timezone.utc)
            params["CreatedAfter"] = since.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")

        with log_context(operation="get_orders"):
            result = await self._call("GET", f"/orders/{ORDERS_VERSION}/orders", params=params)
        return result.map(self._orders_page)

    @staticmethod
    def _orders_page(response: ApiResponse) -> Page[dict[str, Any]]:
        body = response.body if isinstance(response.body, dict) else {}
        payload = body.get("payload") or {}
        return Page(
            items=list(payload.get("Orders") or []),
            next_cursor=payload.get("NextToken") or None,
        )

    async def get_order_by_id(self, order_id: str) -> OperationResult[dict[str, Any]]:
        """Fetch one order by its Amazon order ID."""
        with log_context(operation="get_order_by_id"):
            result = await self._call(
                "GET",
                f"/orders/{ORDERS_VERSION}/orders/{quote(order_id, safe='')}",
            )
        if not result.ok or result.value is None:
            return OperationResult.failure(
                result.error or PermanentError("Order lookup failed"),
                attempts=result.attempts,
            )

        body = result.value.body if isinstance(result.value.body, dict) else {}
        order = body.get("payload")
        if not order:
            return OperationResult.failure(
                PermanentError(f"No order found with ID: {order_id}", context={"order_id": order_id}),
                attempts=result.attempts,
            )
        return OperationResult.success(order, attempts=result.attempts)

    async def iter_orders(
        self, created_after: datetime | None = None
    ) -> AsyncIterator[OperationResult[dict[str, Any]]]:
        async for order in iterate_pages(lambda cursor: self.get_orders(cursor, created_after)):
            yield order

    def rate_limit_status(self) -> RateLimitState | None:
        return self.rate_limiter.status()
