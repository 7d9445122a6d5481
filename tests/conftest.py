"""
Pytest configuration and fixtures for marketplace client tests.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable
from typing import Generator
from unittest.mock import patch

import httpx
import pytest

from sellerlink.config import Settings, clear_settings_cache
from sellerlink.types import Credential, TokenGrant

START_TIME = 1_700_000_000.0


class FakeClock:
    """Epoch clock whose async sleep advances time instead of waiting."""

    def __init__(self, start: float = START_TIME) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += max(0.0, seconds)
        await asyncio.sleep(0)


class StubRefresher:
    """Token refresher that counts exchanges and yields to the loop while working."""

    def __init__(
        self,
        error: Exception | None = None,
        expires_in: float = 3600.0,
        ticks: int = 3,
    ) -> None:
        self.error = error
        self.expires_in = expires_in
        self.ticks = ticks
        self.calls = 0
        self.gate: asyncio.Event | None = None

    async def __call__(self, credential: Credential) -> TokenGrant:
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        for _ in range(self.ticks):
            await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        return TokenGrant(access_token=f"token-{self.calls}", expires_in=self.expires_in)


def mock_client(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
    """Build an AsyncClient whose requests are answered by `handler`."""
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
def fake_clock() -> FakeClock:
    """Provide a fake clock starting at a fixed epoch time."""
    return FakeClock()


@pytest.fixture
def credential() -> Credential:
    """Provide a credential without a cached access token."""
    return Credential(
        client_id="amzn1.application-oa2-client.test",
        client_secret="test-client-secret",
        refresh_token="Atzr|test-refresh-token",
    )


@pytest.fixture
def mock_env_vars() -> Generator[dict[str, str], None, None]:
    """Provide mock environment variables for testing.

    Sets up fake marketplace credentials and tuning.
    """
    env_vars = {
        "AMAZON_CLIENT_ID": "amzn1.application-oa2-client.test",
        "AMAZON_CLIENT_SECRET": "test-amazon-client-secret",
        "AMAZON_REFRESH_TOKEN": "Atzr|test-refresh-token-value",
        "AMAZON_AWS_ACCESS_KEY_ID": "AKIATESTACCESSKEY",
        "AMAZON_AWS_SECRET_ACCESS_KEY": "test-aws-secret-access-key",
        "AMAZON_REGION": "eu",
        "AMAZON_MARKETPLACE_ID": "A1F83G8C2ARO7P",
        "AMAZON_SELLER_ID": "A2SELLERTEST",
        "TAKEALOT_API_KEY": "test-takealot-api-key-123456",
        "RETRY_MAX_ATTEMPTS": "4",
        "RETRY_BASE_DELAY_SECONDS": "0.5",
        "RETRY_MAX_DELAY_SECONDS": "8",
        "BATCH_SIZE": "25",
        "BATCH_MAX_CONCURRENCY": "3",
        "LOG_LEVEL": "DEBUG",
    }

    with patch.dict(os.environ, env_vars, clear=False):
        clear_settings_cache()
        yield env_vars


@pytest.fixture
def mock_settings(mock_env_vars: dict[str, str]) -> Generator[Settings, None, None]:
    """Provide a Settings instance with mock configuration."""
    clear_settings_cache()
    from sellerlink.config import get_settings

    settings = get_settings()
    yield settings
    clear_settings_cache()


@pytest.fixture(autouse=True)
def reset_settings_cache() -> Generator[None, None, None]:
    """Automatically reset settings cache before and after each test."""
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture(autouse=True)
def restore_logging() -> Generator[None, None, None]:
    """Put the sellerlink logger back the way the test found it."""
    logger = logging.getLogger("sellerlink")
    level = logger.level
    handlers = list(logger.handlers)
    yield
    for handler in logger.handlers:
        if handler not in handlers:
            handler.close()
    logger.handlers[:] = handlers
    logger.setLevel(level)
