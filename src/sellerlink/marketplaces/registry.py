"""
Marketplace client construction by name.
"""

from __future__ import annotations

from typing import Any

from sellerlink.config import Settings, configure_logging, get_settings
from sellerlink.exceptions import ConfigurationError
from sellerlink.marketplaces.amazon import AmazonClient
from sellerlink.marketplaces.base import MarketplaceClient
from sellerlink.marketplaces.takealot import TakealotClient

SUPPORTED_MARKETPLACES = ("amazon", "takealot")


def create_marketplace_client(
    name: str,
    settings: Settings | None = None,
    **kwargs: Any,
) -> MarketplaceClient:
    """Build a configured client for a marketplace.

    Args:
        name: Marketplace name ("amazon" or "takealot").
        settings: Settings to read credentials from; defaults to get_settings().
        **kwargs: Passed to the client constructor (e.g. http_client, sleep).

    The settings' LOG_LEVEL and LOG_FILE are applied to the sellerlink logger.

    Returns:
        A MarketplaceClient.

    Raises:
        ConfigurationError: If the name is unknown or credentials are missing.
    """
    settings = settings or get_settings()
    configure_logging(settings)
    marketplace = name.strip().lower()

    if marketplace == "amazon":
        return AmazonClient.from_settings(settings, **kwargs)
    elif marketplace == "takealot":
        return TakealotClient.from_settings(settings, **kwargs)
    else:
        raise ConfigurationError(
            f"Unknown marketplace: {name}",
            context={"supported": list(SUPPORTED_MARKETPLACES)},
        )
