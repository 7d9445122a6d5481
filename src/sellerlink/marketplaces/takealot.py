"""
Takealot Seller API client.

Authenticates with a static API key, throttles using the x-ratelimit-*
headers (epoch reset) and pushes stock, price and status changes through the bulk
offers batch endpoint, polling each batch until it settles.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from datetime import datetime
from typing import Any

import httpx

from sellerlink.client.batch import BatchProcessor
from sellerlink.client.executor import RequestExecutor
from sellerlink.client.rate_limiter import TAKEALOT_HEADERS, RateLimiter
from sellerlink.client.retry import RetryPolicy
from sellerlink.config import Settings
from sellerlink.exceptions import ConfigurationError, PermanentError, TransientServerError
from sellerlink.logging import get_logger, log_context
from sellerlink.marketplaces.base import iterate_pages, per_item_worker
from sellerlink.types import (
    ApiResponse,
    BatchConfig,
    BatchReport,
    ConnectionStatus,
    OperationResult,
    Page,
    PriceUpdate,
    RateLimitState,
    RequestSpec,
    StatusUpdate,
    StockUpdate,
)

logger = get_logger(__name__)

TAKEALOT_BASE_URL = "https://seller-api.takealot.com"
API_VERSION = "v2"

DEFAULT_POLL_INTERVAL_SECONDS = 5.0
DEFAULT_MAX_POLLS = 12
DEFAULT_PAGE_SIZE = 100


def _unwrap_data(body: Any) -> Any:
    """Takealot wraps most payloads in {"data": ...}."""
    if isinstance(body, dict) and "data" in body:
        return body["data"]
    return body


def _status_code(batch: dict[str, Any]) -> int | None:
    """Integer status code of a batch, or None while it is missing or malformed."""
    code = (batch.get("status") or {}).get("code")
    if isinstance(code, bool):
        return None
    try:
        return int(code)
    except (TypeError, ValueError):
        return None


class TakealotClient:
    """Client for the Takealot Seller API v2."""

    def __init__(
        self,
        api_key: str,
        base_url: str = TAKEALOT_BASE_URL,
        warehouse_id: int | None = None,
        retry_policy: RetryPolicy | None = None,
        batch_config: BatchConfig | None = None,
        timeout: float = 30.0,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        max_polls: int = DEFAULT_MAX_POLLS,
        page_size: int = DEFAULT_PAGE_SIZE,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the Takealot client.

        Args:
            api_key: Seller API key.
            base_url: API root.
            warehouse_id: Merchant warehouse that stock levels apply to.
            retry_policy: Retry tuning for every call.
            batch_config: Tuning for bulk operations; batch_size is the
                number of offers per submitted batch.
            timeout: Per-request timeout in seconds.
            poll_interval: Seconds between batch status polls.
            max_polls: Polls before a batch counts as timed out.
            page_size: Page size used for offer and order listing.
            http_client: Shared HTTP client; not closed by this client.
            clock: Epoch-seconds clock; injectable for tests.
            sleep: Awaitable sleep; injectable for tests.

        Raises:
            ConfigurationError: If the API key is empty.
        """
        if not api_key:
            raise ConfigurationError("Takealot API key is required")

        self.warehouse_id = warehouse_id
        self.batch_config = batch_config or BatchConfig()
        self.poll_interval = poll_interval
        self.max_polls = max_polls
        self.page_size = page_size
        self._sleep = sleep

        self.rate_limiter = RateLimiter(headers=TAKEALOT_HEADERS, clock=clock)
        self.executor = RequestExecutor(
            base_url=base_url,
            name=self.name,
            rate_limiter=self.rate_limiter,
            retry_policy=retry_policy,
            default_headers={"X-API-KEY": api_key, "accept": "application/json"},
            http_client=http_client,
            timeout=timeout,
            clock=clock,
            sleep=sleep,
        )

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> TakealotClient:
        """Build a client from application settings.

        Raises:
            ConfigurationError: If TAKEALOT_API_KEY is not set.
        """
        if not settings.takealot_configured:
            raise ConfigurationError(
                "Takealot API key is not configured",
                context={"required": ["TAKEALOT_API_KEY"]},
            )
        return cls(
            api_key=settings.TAKEALOT_API_KEY or "",
            base_url=settings.TAKEALOT_BASE_URL,
            warehouse_id=settings.TAKEALOT_WAREHOUSE_ID,
            retry_policy=settings.retry_policy(),
            batch_config=settings.batch_config(),
            timeout=settings.REQUEST_TIMEOUT_SECONDS,
            **kwargs,
        )

    @property
    def name(self) -> str:
        return "takealot"

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.executor.close()

    async def _call(
        self,
        method: str,
        path: str,
        category: str,
        params: dict[str, Any] | None = None,
        json: Any = None,
    ) -> OperationResult[ApiResponse]:
        spec = RequestSpec(
            method=method,
            path=f"/{API_VERSION}{path}",
            category=category,
            params=params,
            json=json,
        )
        return await self.executor.execute(spec)

    async def test_connection(self) -> ConnectionStatus:
        """Probe the offers count endpoint with the API key."""
        with log_context(operation="test_connection"):
            result = await self._call("GET", "/offers/count", category="offers")

        if not result.ok:
            message = result.error.message if result.error else "unknown error"
            return ConnectionStatus(
                connected=False,
                message=f"Failed to connect to Takealot API: {message}",
                rate_limit=self.rate_limit_status(),
            )
        return ConnectionStatus(
            connected=True,
            message="Successfully connected to Takealot API",
            rate_limit=self.rate_limit_status(),
        )

    async def get_product_by_sku(self, sku: str) -> OperationResult[Any]:
        """Look up an offer by seller SKU."""
        with log_context(operation="get_product_by_sku"):
            result = await self._call(
                "GET",
                "/offers/offer",
                category="offers",
                params={"identifier": sku, "identifier_type": "sku"},
            )
        if result.ok and result.value is not None and not _unwrap_data(result.value.body):
            return OperationResult.failure(
                PermanentError(f"No offer found with SKU: {sku}", context={"sku": sku}),
                attempts=result.attempts,
            )
        return result.map(lambda response: _unwrap_data(response.body))

    async def get_products_by_skus(self, skus: list[str]) -> BatchReport[str]:
        with log_context(operation="get_products_by_skus"):
            processor: BatchProcessor[str] = BatchProcessor(self.batch_config, sleep=self._sleep)
            return await processor.process_batch(skus, per_item_worker(self.get_product_by_sku))

    def _stock_payload(self, update: StockUpdate) -> dict[str, Any]:
        stock: dict[str, Any] = {"quantity_available": max(0, int(update.quantity))}
        if self.warehouse_id is not None:
            stock["merchant_warehouse"] = {"warehouse_id": self.warehouse_id}
        return {"sku": update.sku, "leadtime_stock": [stock]}

    @staticmethod
    def _price_payload(update: PriceUpdate) -> dict[str, Any]:
        # Takealot only accepts whole-rand prices
        return {"sku": update.sku, "selling_price": int(round(update.price))}

    @staticmethod
    def _status_payload(update: StatusUpdate) -> dict[str, Any]:
        return {"sku": update.sku, "status_action": "Re-enable" if update.active else "Disable"}

    async def update_stock(self, updates: list[StockUpdate]) -> BatchReport[StockUpdate]:
        """Submit stock levels through the offers batch endpoint."""
        with log_context(operation="update_stock"):
            processor: BatchProcessor[StockUpdate] = BatchProcessor(self.batch_config, sleep=self._sleep)
            return await processor.process_batch(
                updates,
                lambda chunk: self._submit_batch([self._stock_payload(u) for u in chunk]),
            )

    async def update_prices(self, updates: list[PriceUpdate]) -> BatchReport[PriceUpdate]:
        """Submit selling prices through the offers batch endpoint."""
        with log_context(operation="update_prices"):
            processor: BatchProcessor[PriceUpdate] = BatchProcessor(self.batch_config, sleep=self._sleep)
            return await processor.process_batch(
                updates,
                lambda chunk: self._submit_batch([self._price_payload(u) for u in chunk]),
            )

    async def update_status(self, updates: list[StatusUpdate]) -> BatchReport[StatusUpdate]:
        """Re-enable or disable offers through the offers batch endpoint."""
        with log_context(operation="update_status"):
            processor: BatchProcessor[StatusUpdate] = BatchProcessor(self.batch_config, sleep=self._sleep)
            return await processor.process_batch(
                updates,
                lambda chunk: self._submit_batch([self._status_payload(u) for u in chunk]),
            )

    async def _submit_batch(
        self,
        offers: list[dict[str, Any]],
    ) -> OperationResult[list[OperationResult[Any]]]:
        """Create an offers batch and wait for its per-offer results.

        Returns:
            A failed result if the batch could not be created or did not
            settle in time; otherwise one OperationResult per offer.
        """
        created = await self._call("POST", "/offers/batch", category="batch", json={"offers": offers})
        if not created.ok or created.value is None:
            return OperationResult.failure(
                created.error or PermanentError("Batch creation failed"),
                attempts=created.attempts,
            )

        batch_id = (_unwrap_data(created.value.body) or {}).get("batch_id")
        if not batch_id:
            return OperationResult.failure(
                PermanentError("Batch response did not include a batch_id"),
                attempts=created.attempts,
            )

        batch = await self._poll_batch(str(batch_id))
        if batch is None:
            return OperationResult.failure(
                TransientServerError(
                    f"Batch {batch_id} did not complete",
                    context={"batch_id": batch_id, "polls": self.max_polls},
                )
            )

        entries = batch.get("result") or []
        code = _status_code(batch)
        missing_reason = "No result for this item in batch response"
        if not entries and code is not None and code >= 400:
            status = batch.get("status") or {}
            detail = status.get("message") or status.get("description") or "no detail"
            missing_reason = f"Batch {batch_id} failed with status {code}: {detail}"

        by_index = {entry.get("index"): entry for entry in entries if isinstance(entry, dict)}
        results: list[OperationResult[Any]] = []
        for index, offer in enumerate(offers):
            entry = by_index.get(index)
            context = {"batch_id": batch_id, "sku": offer.get("sku"), "index": index}
            if entry is None:
                results.append(OperationResult.failure(
                    PermanentError(missing_reason, context=context, status_code=code)
                ))
            elif entry.get("errors"):
                reason = ", ".join(str(e.get("message", e)) for e in entry["errors"])
                results.append(OperationResult.failure(PermanentError(reason, context=context)))
            else:
                results.append(OperationResult.success(entry))
        return OperationResult.success(results, attempts=created.attempts)

    async def _poll_batch(self, batch_id: str) -> dict[str, Any] | None:
        """Poll a batch until its status code is terminal (200 or >= 400)."""
        for poll in range(1, self.max_polls + 1):
            await self._sleep(self.poll_interval)
            result = await self._call("GET", f"/offers/batch/{batch_id}", category="batch")
            if not result.ok or result.value is None:
                logger.warning(
                    "Batch status check failed",
                    batch_id=batch_id,
                    poll=poll,
                    error=str(result.error),
                )
                continue

            batch = _unwrap_data(result.value.body)
            if not isinstance(batch, dict):
                continue
            code = _status_code(batch)
            if code is not None and (code == 200 or code >= 400):
                logger.info("Batch settled", batch_id=batch_id, status_code=code, polls=poll)
                return batch

        logger.warning("Batch did not settle", batch_id=batch_id, polls=self.max_polls)
        return None

    def _page(
        self,
        items: list[dict[str, Any]],
        total: Any,
        page_number: int,
        page_size: Any,
    ) -> Page[dict[str, Any]]:
        """Build a Page from page-number pagination; the cursor is the next page number."""
        size = int(page_size or self.page_size)
        if total is not None:
            has_next = page_number * size < int(total)
        else:
            has_next = len(items) >= size
        return Page(
            items=items,
            next_cursor=str(page_number + 1) if has_next and items else None,
            total=int(total) if total is not None else None,
        )

    async def get_products(self, cursor: str | None = None) -> OperationResult[Page[dict[str, Any]]]:
        """Fetch one page of offers; `cursor` is the page number as a string."""
        page_number = int(cursor) if cursor else 1
        params = {"page_number": page_number, "page_size": self.page_size}

        with log_context(operation="get_products"):
            result = await self._call("GET", "/offers", category="offers", params=params)
        return result.map(lambda response: self._offers_page(response, page_number))

    def _offers_page(self, response: ApiResponse, page_number: int) -> Page[dict[str, Any]]:
        data = _unwrap_data(response.body)
        data = data if isinstance(data, dict) else {}
        return self._page(
            list(data.get("offers") or []),
            data.get("total_results"),
            page_number,
            data.get("page_size"),
        )

    async def iter_products(self) -> AsyncIterator[OperationResult[dict[str, Any]]]:
        async for offer in iterate_pages(self.get_products):
            yield offer

    async def get_orders(
        self,
        cursor: str | None = None,
        created_after: datetime | None = None,
    ) -> OperationResult[Page[dict[str, Any]]]:
        """Fetch one page of sales; `cursor` is the page number as a string."""
        page_number = int(cursor) if cursor else 1
        params: dict[str, Any] = {"page_number": page_number, "page_size": self.page_size}
        if created_after is not None:
            params["filters"] = f"start_date:{created_after.date().isoformat()}"

        with log_context(operation="get_orders"):
            result = await self._call("GET", "/sales", category="sales", params=params)
        return result.map(lambda response: self._sales_page(response, page_number))

    def _sales_page(self, response: ApiResponse, page_number: int) -> Page[dict[str, Any]]:
        body = response.body if isinstance(response.body, dict) else {}
        summary = body.get("page_summary") or {}
        return self._page(
            list(body.get("sales") or []),
            summary.get("total"),
            page_number,
            summary.get("page_size"),
        )

    async def get_order_by_id(self, order_id: str) -> OperationResult[dict[str, Any]]:
        """Find a sale by its numeric Takealot order ID.

        There is no single-order endpoint, so the sales listing is filtered
        by order ID and the first match is returned.
        """
        if not str(order_id).strip().isdigit():
            return OperationResult.failure(
                PermanentError(f"Invalid order ID: {order_id}", context={"order_id": order_id})
            )

        with log_context(operation="get_order_by_id"):
            result = await self._call(
                "GET",
                "/sales",
                category="sales",
                params={"filters": f"order_id:{int(order_id)}"},
            )
        if not result.ok or result.value is None:
            return OperationResult.failure(
                result.error or PermanentError("Order lookup failed"),
                attempts=result.attempts,
            )

        body = result.value.body if isinstance(result.value.body, dict) else {}
        sales = body.get("sales") or []
        if not sales:
            return OperationResult.failure(
                PermanentError(f"Order not found: {order_id}", context={"order_id": order_id}),
                attempts=result.attempts,
            )
        return OperationResult.success(sales[0], attempts=result.attempts)

    async def iter_orders(
        self, created_after: datetime | None = None
    ) -> AsyncIterator[OperationResult[dict[str, Any]]]:
        async for sale in iterate_pages(lambda cursor: self.get_orders(cursor, created_after)):
            yield sale

    def rate_limit_status(self) -> RateLimitState | None:
        return self.rate_limiter.status()
