"""
Capability interface shared by marketplace clients.

This module defines:
- MarketplaceClient: Protocol every marketplace client satisfies
- chunk helpers used by clients to run per-SKU work through a BatchProcessor
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable
from datetime import datetime
from typing import Any, Protocol, TypeVar, runtime_checkable

from sellerlink.exceptions import MarketplaceApiError
from sellerlink.types import (
    BatchReport,
    ConnectionStatus,
    OperationResult,
    Page,
    PriceUpdate,
    RateLimitState,
    StatusUpdate,
    StockUpdate,
)

T = TypeVar("T")


@runtime_checkable
class MarketplaceClient(Protocol):
    """Protocol for marketplace clients.

    Clients are built by composition around a RequestExecutor; there is no
    shared base class.
    """

    @property
    def name(self) -> str:
        """Name of this marketplace (e.g., 'amazon', 'takealot')."""
        ...

    async def test_connection(self) -> ConnectionStatus:
        """Probe the API with a lightweight authenticated call."""
        ...

    async def get_product_by_sku(self, sku: str) -> OperationResult[Any]:
        """Fetch one listing by seller SKU.

        Args:
            sku: Seller SKU.

        Returns:
            OperationResult with the raw listing payload.
        """
        ...

    async def get_products_by_skus(self, skus: list[str]) -> BatchReport[str]:
        """Fetch many listings; one outcome per SKU, in input order."""
        ...

    async def update_stock(self, updates: list[StockUpdate]) -> BatchReport[StockUpdate]:
        """Set stock levels; one outcome per update, in input order."""
        ...

    async def update_prices(self, updates: list[PriceUpdate]) -> BatchReport[PriceUpdate]:
        """Set selling prices; one outcome per update, in input order."""
        ...

    async def update_status(self, updates: list[StatusUpdate]) -> BatchReport[StatusUpdate]:
        """Enable or disable listings; one outcome per update, in input order."""
        ...

    async def get_products(self, cursor: str | None = None) -> OperationResult[Page[dict[str, Any]]]:
        """Fetch one page of the seller's listings."""
        ...

    def iter_products(self) -> AsyncIterator[OperationResult[dict[str, Any]]]:
        """Iterate listings across all pages."""
        ...

    async def get_orders(
        self,
        cursor: str | None = None,
        created_after: datetime | None = None,
    ) -> OperationResult[Page[dict[str, Any]]]:
        """Fetch one page of orders.

        Args:
            cursor: Cursor from a previous page's `next_cursor`, or None.
            created_after: Only orders created after this time.
        """
        ...

    async def get_order_by_id(self, order_id: str) -> OperationResult[dict[str, Any]]:
        """Fetch a single order by its marketplace order ID."""
        ...

    def iter_orders(
        self, created_after: datetime | None = None
    ) -> AsyncIterator[OperationResult[dict[str, Any]]]:
        """Iterate orders across all pages.

        Each order arrives as a successful OperationResult. A page that fails
        yields one failed result and ends the iteration.
        """
        ...

    def rate_limit_status(self) -> RateLimitState | None:
        """Most constrained rate-limit bucket, if any limits are known."""
        ...

    async def close(self) -> None:
        """Close any open connections."""
        ...


async def iterate_pages(
    fetch: Callable[[str | None], Awaitable[OperationResult[Page[T]]]],
) -> AsyncIterator[OperationResult[T]]:
    """Yield items from successive pages until a page has no next cursor.

    Items are wrapped in successful results. The first page that fails is
    yielded as its failed result and iteration stops there.
    """
    cursor: str | None = None
    while True:
        result = await fetch(cursor)
        if not result.ok or result.value is None:
            yield OperationResult.failure(
                result.error or MarketplaceApiError("Page fetch failed"),
                attempts=result.attempts,
            )
            return
        page = result.value
        for item in page.items:
            yield OperationResult.success(item)
        if not page.next_cursor:
            return
        cursor = page.next_cursor


def per_item_worker(
    operation: Callable[[T], Awaitable[OperationResult[Any]]],
) -> Callable[[list[T]], Awaitable[OperationResult[list[OperationResult[Any]]]]]:
    """Wrap a single-item operation as a chunk worker.

    Items of a chunk run sequentially; each item's OperationResult is kept so
    the batch report can attribute failures per item.
    """

    async def worker(chunk: list[T]) -> OperationResult[list[OperationResult[Any]]]:
        results = [await operation(item) for item in chunk]
        return OperationResult.success(results)

    return worker
