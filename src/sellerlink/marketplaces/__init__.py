"""
Marketplace client package.

This package provides clients sharing the MarketplaceClient interface:
- Amazon Selling Partner API (LWA + SigV4)
- Takealot Seller API (API key, offers batch endpoint)
"""

from sellerlink.marketplaces.amazon import AmazonClient
from sellerlink.marketplaces.base import MarketplaceClient
from sellerlink.marketplaces.registry import SUPPORTED_MARKETPLACES, create_marketplace_client
from sellerlink.marketplaces.takealot import TakealotClient

__all__ = [
    "AmazonClient",
    "MarketplaceClient",
    "SUPPORTED_MARKETPLACES",
    "TakealotClient",
    "create_marketplace_client",
]
