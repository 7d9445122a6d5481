"""
Tests for the Amazon SP-API client.
"""

from __future__ import annotations

import random
from collections.abc import Callable
from datetime import datetime, timezone

import httpx
import orjson
import pytest

from conftest import FakeClock, mock_client
from sellerlink.client.retry import RetryPolicy
from sellerlink.client.signing import AwsCredentials
from sellerlink.exceptions import ConfigurationError, PermanentError
from sellerlink.marketplaces.amazon import AmazonClient, category_for
from sellerlink.marketplaces.base import MarketplaceClient
from sellerlink.types import BatchConfig, Credential, PriceUpdate, StatusUpdate, StockUpdate

TOKEN_URL = "https://api.amazon.com/auth/o2/token"
SELLER_ID = "A2SELLERTEST"
MARKETPLACE_ID = "ATVPDKIKX0DER"


class AmazonApi:
    """Mock SP-API and LWA endpoints; `routes` handles everything but the token exchange."""

    def __init__(self, routes: Callable[[httpx.Request], httpx.Response]) -> None:
        self.routes = routes
        self.token_calls = 0
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if str(request.url) == TOKEN_URL:
            self.token_calls += 1
            return httpx.Response(
                200,
                json={"access_token": f"Atza|token-{self.token_calls}", "expires_in": 3600},
            )
        self.requests.append(request)
        return self.routes(request)


def build_client(api: AmazonApi, clock: FakeClock, credential: Credential, **kwargs) -> AmazonClient:
    kwargs.setdefault("batch_config", BatchConfig(batch_size=10, max_concurrency=3))
    return AmazonClient(
        credential=credential,
        aws_credentials=AwsCredentials("AKIATEST", "aws-secret"),
        seller_id=SELLER_ID,
        marketplace_id=MARKETPLACE_ID,
        region="na",
        retry_policy=RetryPolicy(max_attempts=3, base_delay=0.5, max_delay=4.0, rng=random.Random(5)),
        http_client=mock_client(api),
        clock=clock,
        sleep=clock.sleep,
        **kwargs,
    )


class TestConstruction:
    """Tests for client setup."""

    def test_unknown_region(self, credential: Credential) -> None:
        """Test that an unknown region is a configuration error."""
        with pytest.raises(ConfigurationError):
            AmazonClient(
                credential=credential,
                aws_credentials=AwsCredentials("AKIATEST", "aws-secret"),
                seller_id=SELLER_ID,
                region="mars",
            )

    def test_satisfies_protocol(self, credential: Credential, fake_clock: FakeClock) -> None:
        """Test that the client implements MarketplaceClient."""
        client = build_client(AmazonApi(lambda r: httpx.Response(200)), fake_clock, credential)

        assert isinstance(client, MarketplaceClient)
        assert client.name == "amazon"

    @pytest.mark.parametrize(
        ("path", "category"),
        [
            ("/listings/2021-08-01/items/S/K", "listings"),
            ("/orders/v0/orders", "orders"),
            ("sellers/v1/marketplaceParticipations", "sellers"),
            ("/", "default"),
        ],
    )
    def test_category_for(self, path: str, category: str) -> None:
        """Test rate-limit category derivation from the path."""
        assert category_for(path) == category


class TestProducts:
    """Tests for listing reads."""

    @pytest.mark.asyncio
    async def test_get_product_by_sku(self, credential: Credential, fake_clock: FakeClock) -> None:
        """Test the listings request, token header and signature."""
        api = AmazonApi(lambda r: httpx.Response(200, json={"sku": "SKU-001", "summaries": []}))
        client = build_client(api, fake_clock, credential)

        result = await client.get_product_by_sku("SKU-001")

        assert result.ok
        assert result.value == {"sku": "SKU-001", "summaries": []}
        request = api.requests[0]
        assert request.method == "GET"
        assert request.url.host == "sellingpartnerapi-na.amazon.com"
        assert request.url.path == f"/listings/2021-08-01/items/{SELLER_ID}/SKU-001"
        assert request.url.params["marketplaceIds"] == MARKETPLACE_ID
        assert request.url.params["includedData"] == "summaries,attributes,offers,fulfillmentAvailability"
        assert request.headers["x-amz-access-token"] == "Atza|token-1"
        assert request.headers["Authorization"].startswith("AWS4-HMAC-SHA256 Credential=AKIATEST/")
        assert "/us-east-1/execute-api/aws4_request" in request.headers["Authorization"]

    @pytest.mark.asyncio
    async def test_missing_product_is_permanent(
        self, credential: Credential, fake_clock: FakeClock
    ) -> None:
        """Test that a 404 fails without retrying."""
        api = AmazonApi(lambda r: httpx.Response(404, json={"errors": [{"code": "NotFound"}]}))
        client = build_client(api, fake_clock, credential)

        result = await client.get_product_by_sku("NOPE")

        assert not result.ok
        assert isinstance(result.error, PermanentError)
        assert len(api.requests) == 1

    @pytest.mark.asyncio
    async def test_bulk_lookup_with_ten_percent_missing(
        self, credential: Credential, fake_clock: FakeClock
    ) -> None:
        """Test 100 SKUs with 10 missing: 90 succeed, 10 fail, one token exchange."""

        def routes(request: httpx.Request) -> httpx.Response:
            sku = request.url.path.rsplit("/", 1)[-1]
            if int(sku.split("-")[1]) % 10 == 0:
                return httpx.Response(404, json={"errors": [{"message": "not found"}]})
            return httpx.Response(200, json={"sku": sku})

        api = AmazonApi(routes)
        client = build_client(api, fake_clock, credential)
        skus = [f"SKU-{i:03d}" for i in range(100)]

        report = await client.get_products_by_skus(skus)

        failed = [failure.item for failure in report.failed]
        assert len(report.successful) == 90
        assert sorted(failed) == [f"SKU-{i:03d}" for i in range(0, 100, 10)]
        assert set(report.successful).isdisjoint(failed)
        assert [outcome.item for outcome in report.results] == skus
        assert api.token_calls == 1

    @pytest.mark.asyncio
    async def test_expired_token_is_refreshed_on_401(
        self, credential: Credential, fake_clock: FakeClock
    ) -> None:
        """Test that a 401 triggers a token refresh and a successful retry."""
        responses = iter([httpx.Response(401), httpx.Response(200, json={"sku": "SKU-001"})])
        api = AmazonApi(lambda r: next(responses))
        client = build_client(api, fake_clock, credential)

        result = await client.get_product_by_sku("SKU-001")

        assert result.ok
        assert result.attempts == 2
        assert api.token_calls == 2
        assert api.requests[1].headers["x-amz-access-token"] == "Atza|token-2"


class TestUpdates:
    """Tests for listings patches."""

    @pytest.mark.asyncio
    async def test_update_stock_patch(self, credential: Credential, fake_clock: FakeClock) -> None:
        """Test the fulfillment availability patch body."""
        api = AmazonApi(lambda r: httpx.Response(200, json={"status": "ACCEPTED", "sku": "SKU-001"}))
        client = build_client(api, fake_clock, credential)

        report = await client.update_stock([StockUpdate("SKU-001", 7), StockUpdate("SKU-002", -3)])

        assert len(report.successful) == 2
        first, second = (orjson.loads(request.content) for request in api.requests)
        assert api.requests[0].method == "PATCH"
        assert api.requests[0].url.params["marketplaceIds"] == MARKETPLACE_ID
        assert first["productType"] == "PRODUCT"
        assert first["patches"] == [{
            "op": "replace",
            "path": "/attributes/fulfillment_availability",
            "value": [{"fulfillment_channel_code": "DEFAULT", "quantity": 7}],
        }]
        assert second["patches"][0]["value"][0]["quantity"] == 0

    @pytest.mark.asyncio
    async def test_invalid_listing_update_fails(
        self, credential: Credential, fake_clock: FakeClock
    ) -> None:
        """Test that an INVALID submission is reported as a failed item."""
        api = AmazonApi(
            lambda r: httpx.Response(
                200,
                json={"status": "INVALID", "issues": [{"message": "price below minimum"}]},
            )
        )
        client = build_client(api, fake_clock, credential)

        report = await client.update_prices([PriceUpdate("SKU-001", 0.5)])

        assert report.successful == []
        assert "price below minimum" in report.failed[0].reason

    @pytest.mark.asyncio
    async def test_update_prices_patch(self, credential: Credential, fake_clock: FakeClock) -> None:
        """Test the purchasable offer patch body."""
        api = AmazonApi(lambda r: httpx.Response(200, json={"status": "ACCEPTED"}))
        client = build_client(api, fake_clock, credential)

        await client.update_prices([PriceUpdate("SKU-001", 19.99)])

        body = orjson.loads(api.requests[0].content)
        assert body["patches"][0]["path"] == "/attributes/purchasable_offer"
        assert body["patches"][0]["value"] == [{
            "marketplace_id": MARKETPLACE_ID,
            "currency": "USD",
            "our_price": [{"schedule": [{"value_with_tax": 19.99}]}],
        }]

    @pytest.mark.asyncio
    async def test_update_status_patch(self, credential: Credential, fake_clock: FakeClock) -> None:
        """Test that listings are set ACTIVE or INACTIVE through the status attribute."""
        api = AmazonApi(lambda r: httpx.Response(200, json={"status": "ACCEPTED"}))
        client = build_client(api, fake_clock, credential)
        updates = [StatusUpdate("SKU-001", active=False), StatusUpdate("SKU-002", active=True)]

        report = await client.update_status(updates)

        assert report.successful == updates
        bodies = {
            request.url.path.rsplit("/", 1)[-1]: orjson.loads(request.content)
            for request in api.requests
        }
        assert bodies["SKU-001"]["patches"] == [{
            "op": "replace",
            "path": "/attributes/status",
            "value": [{"marketplace_id": MARKETPLACE_ID, "value": "INACTIVE"}],
        }]
        assert bodies["SKU-002"]["patches"][0]["value"][0]["value"] == "ACTIVE"


class TestListings:
    """Tests for paging through the seller's listings."""

    @pytest.mark.asyncio
    async def test_iter_products_follows_next_token(
        self, credential: Credential, fake_clock: FakeClock
    ) -> None:
        """Test that listing search follows pagination.nextToken."""

        def routes(request: httpx.Request) -> httpx.Response:
            if request.url.params.get("pageToken") == "tok-2":
                return httpx.Response(200, json={"numberOfResults": 3, "items": [{"sku": "C"}]})
            return httpx.Response(
                200,
                json={
                    "numberOfResults": 3,
                    "pagination": {"nextToken": "tok-2"},
                    "items": [{"sku": "A"}, {"sku": "B"}],
                },
            )

        api = AmazonApi(routes)
        client = build_client(api, fake_clock, credential, page_size=2)

        results = [result async for result in client.iter_products()]

        assert [result.value["sku"] for result in results] == ["A", "B", "C"]
        first, second = api.requests
        assert first.url.path == f"/listings/2021-08-01/items/{SELLER_ID}"
        assert first.url.params["pageSize"] == "2"
        assert first.url.params["marketplaceIds"] == MARKETPLACE_ID
        assert "pageToken" not in first.url.params
        assert second.url.params["pageToken"] == "tok-2"

    @pytest.mark.asyncio
    async def test_get_products_page(self, credential: Credential, fake_clock: FakeClock) -> None:
        """Test that the last page has no cursor and carries the result count."""
        api = AmazonApi(
            lambda r: httpx.Response(200, json={"numberOfResults": 1, "items": [{"sku": "A"}]})
        )
        client = build_client(api, fake_clock, credential)

        result = await client.get_products()

        assert result.value.items == [{"sku": "A"}]
        assert result.value.next_cursor is None
        assert result.value.total == 1


class TestOrders:
    """Tests for order listing."""

    @pytest.mark.asyncio
    async def test_iter_orders_follows_next_token(
        self, credential: Credential, fake_clock: FakeClock
    ) -> None:
        """Test that pagination follows NextToken until it is absent."""

        def routes(request: httpx.Request) -> httpx.Response:
            if request.url.params.get("NextToken") == "page-2":
                return httpx.Response(200, json={"payload": {"Orders": [{"AmazonOrderId": "3"}]}})
            return httpx.Response(
                200,
                json={
                    "payload": {
                        "Orders": [{"AmazonOrderId": "1"}, {"AmazonOrderId": "2"}],
                        "NextToken": "page-2",
                    }
                },
            )

        api = AmazonApi(routes)
        client = build_client(api, fake_clock, credential)
        since = datetime(2024, 1, 1, tzinfo=timezone.utc)

        results = [result async for result in client.iter_orders(created_after=since)]

        assert [result.value["AmazonOrderId"] for result in results] == ["1", "2", "3"]
        first, second = api.requests
        assert first.url.path == "/orders/v0/orders"
        assert first.url.params["CreatedAfter"] == "2024-01-01T00:00:00Z"
        assert first.url.params["MarketplaceIds"] == MARKETPLACE_ID
        assert "CreatedAfter" not in second.url.params

    @pytest.mark.asyncio
    async def test_get_orders_failure(self, credential: Credential, fake_clock: FakeClock) -> None:
        """Test that a rejected orders call returns a failed result."""
        api = AmazonApi(lambda r: httpx.Response(400, json={"errors": [{"code": "InvalidInput"}]}))
        client = build_client(api, fake_clock, credential)

        result = await client.get_orders()

        assert not result.ok
        assert isinstance(result.error, PermanentError)

    @pytest.mark.asyncio
    async def test_iter_orders_stops_at_failed_page(
        self, credential: Credential, fake_clock: FakeClock
    ) -> None:
        """Test that a failing first page yields a single failed result."""
        api = AmazonApi(lambda r: httpx.Response(403, json={"errors": [{"code": "Unauthorized"}]}))
        client = build_client(api, fake_clock, credential)

        results = [result async for result in client.iter_orders()]

        assert len(results) == 1
        assert not results[0].ok
        assert isinstance(results[0].error, PermanentError)

    @pytest.mark.asyncio
    async def test_get_order_by_id(self, credential: Credential, fake_clock: FakeClock) -> None:
        """Test that a single order is read from the payload."""
        order = {"AmazonOrderId": "902-3159896-1390916", "OrderStatus": "Shipped"}
        api = AmazonApi(lambda r: httpx.Response(200, json={"payload": order}))
        client = build_client(api, fake_clock, credential)

        result = await client.get_order_by_id("902-3159896-1390916")

        assert result.value == order
        assert api.requests[0].url.path == "/orders/v0/orders/902-3159896-1390916"

    @pytest.mark.asyncio
    async def test_get_order_by_id_not_found(
        self, credential: Credential, fake_clock: FakeClock
    ) -> None:
        """Test that an empty payload is a permanent failure."""
        api = AmazonApi(lambda r: httpx.Response(200, json={"payload": {}}))
        client = build_client(api, fake_clock, credential)

        result = await client.get_order_by_id("111-0000000-0000000")

        assert not result.ok
        assert isinstance(result.error, PermanentError)
        assert "No order found" in result.error.message


class TestConnection:
    """Tests for the connectivity probe."""

    @pytest.mark.asyncio
    async def test_connection_ok(self, credential: Credential, fake_clock: FakeClock) -> None:
        """Test a successful probe."""
        api = AmazonApi(
            lambda r: httpx.Response(
                200,
                json={"payload": []},
                headers={"x-amzn-ratelimit-limit": "0.016", "x-amzn-quota-remaining": "14"},
            )
        )
        client = build_client(api, fake_clock, credential)

        status = await client.test_connection()

        assert status.connected
        assert status.message == "Successfully connected to Amazon SP-API"
        assert api.requests[0].url.path == "/sellers/v1/marketplaceParticipations"
        assert status.rate_limit is not None

    @pytest.mark.asyncio
    async def test_connection_failure(self, credential: Credential, fake_clock: FakeClock) -> None:
        """Test that a failed probe reports the reason instead of raising."""
        api = AmazonApi(lambda r: httpx.Response(403, json={"errors": [{"code": "Unauthorized"}]}))
        client = build_client(api, fake_clock, credential)

        status = await client.test_connection()

        assert not status.connected
        assert status.message.startswith("Failed to connect to Amazon SP-API")
