"""
Configuration management using pydantic-settings.

Loads configuration from environment variables and .env files.
Validates marketplace credentials and tuning values and provides typed
access to settings.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from sellerlink.client.retry import RetryPolicy
from sellerlink.logging import setup_logging
from sellerlink.types import BatchConfig

AMAZON_REGIONS = ("na", "eu", "fe")


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Amazon (all required to build an Amazon client):
        AMAZON_CLIENT_ID, AMAZON_CLIENT_SECRET, AMAZON_REFRESH_TOKEN: LWA app credentials
        AMAZON_AWS_ACCESS_KEY_ID, AMAZON_AWS_SECRET_ACCESS_KEY: IAM keys for SigV4
        AMAZON_SELLER_ID: Selling partner ID used by the listings API

    Takealot:
        TAKEALOT_API_KEY: Seller API key
        TAKEALOT_WAREHOUSE_ID: Merchant warehouse for stock levels (optional)

    Optional:
        AMAZON_REGION: SP-API endpoint region (na|eu|fe)
        REQUEST_TIMEOUT_SECONDS: Per-request timeout
        RETRY_*: Retry policy tuning
        BATCH_*: Bulk operation tuning
        LOG_LEVEL, LOG_FILE: Logging
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Amazon Selling Partner API
    AMAZON_CLIENT_ID: str | None = Field(default=None, description="LWA client ID")
    AMAZON_CLIENT_SECRET: str | None = Field(default=None, description="LWA client secret")
    AMAZON_REFRESH_TOKEN: str | None = Field(default=None, description="LWA refresh token")
    AMAZON_AWS_ACCESS_KEY_ID: str | None = Field(
        default=None, description="IAM access key used for SigV4 signing"
    )
    AMAZON_AWS_SECRET_ACCESS_KEY: str | None = Field(
        default=None, description="IAM secret key used for SigV4 signing"
    )
    AMAZON_REGION: str = Field(default="na", description="SP-API region (na|eu|fe)")
    AMAZON_MARKETPLACE_ID: str = Field(
        default="ATVPDKIKX0DER", description="Amazon marketplace ID"
    )
    AMAZON_SELLER_ID: str | None = Field(default=None, description="Selling partner ID")
    AMAZON_TOKEN_URL: str = Field(
        default="https://api.amazon.com/auth/o2/token",
        description="LWA token endpoint",
    )

    # Takealot Seller API
    TAKEALOT_API_KEY: str | None = Field(default=None, description="Takealot seller API key")
    TAKEALOT_BASE_URL: str = Field(
        default="https://seller-api.takealot.com",
        description="Takealot seller API base URL",
    )
    TAKEALOT_WAREHOUSE_ID: int | None = Field(
        default=None, description="Merchant warehouse that stock updates apply to"
    )

    # Transport
    REQUEST_TIMEOUT_SECONDS: float = Field(
        default=30.0, gt=0.0, description="Per-request timeout in seconds"
    )
    TOKEN_EXPIRY_BUFFER_SECONDS: float = Field(
        default=300.0, ge=0.0, description="Refresh access tokens this long before expiry"
    )

    # Retry
    RETRY_MAX_ATTEMPTS: int = Field(
        default=5, ge=1, le=20, description="Attempts per call, including the first"
    )
    RETRY_BASE_DELAY_SECONDS: float = Field(
        default=1.0, ge=0.0, description="Backoff before the first retry"
    )
    RETRY_MAX_DELAY_SECONDS: float = Field(
        default=30.0, ge=0.0, description="Upper bound on computed backoff"
    )

    # Batch
    BATCH_SIZE: int = Field(default=10, ge=1, description="Items per chunk")
    BATCH_MAX_CONCURRENCY: int = Field(
        default=2, ge=1, le=50, description="Chunks in flight at once"
    )
    BATCH_INTER_CHUNK_DELAY_SECONDS: float = Field(
        default=0.0, ge=0.0, description="Delay between successive chunk starts"
    )
    BATCH_CONTINUE_ON_ERROR: bool = Field(
        default=True, description="Keep dispatching chunks after a chunk fails"
    )
    BATCH_MAX_RETRIES: int = Field(
        default=0, ge=0, le=10, description="Re-runs of a failed chunk"
    )

    # Logging
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )
    LOG_FILE: Path | None = Field(default=None, description="JSON-lines log file")

    @field_validator("AMAZON_REGION")
    @classmethod
    def validate_amazon_region(cls, v: str) -> str:
        """Validate that AMAZON_REGION names an SP-API endpoint region."""
        value = v.strip().lower()
        if value not in AMAZON_REGIONS:
            raise ValueError(f"AMAZON_REGION must be one of {', '.join(AMAZON_REGIONS)}")
        return value

    @field_validator("TAKEALOT_BASE_URL")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        """Strip trailing slashes from the base URL."""
        return v.rstrip("/")

    @model_validator(mode="after")
    def validate_retry_delays(self) -> Settings:
        """Ensure the backoff cap is not below the base delay."""
        if self.RETRY_MAX_DELAY_SECONDS < self.RETRY_BASE_DELAY_SECONDS:
            raise ValueError(
                "RETRY_MAX_DELAY_SECONDS must be >= RETRY_BASE_DELAY_SECONDS"
            )
        return self

    @property
    def amazon_configured(self) -> bool:
        """Whether every credential needed for an Amazon client is set."""
        return all([
            self.AMAZON_CLIENT_ID,
            self.AMAZON_CLIENT_SECRET,
            self.AMAZON_REFRESH_TOKEN,
            self.AMAZON_AWS_ACCESS_KEY_ID,
            self.AMAZON_AWS_SECRET_ACCESS_KEY,
            self.AMAZON_SELLER_ID,
        ])

    @property
    def takealot_configured(self) -> bool:
        """Whether a Takealot API key is set."""
        return bool(self.TAKEALOT_API_KEY)

    @property
    def available_marketplaces(self) -> list[str]:
        """Return list of configured marketplaces."""
        marketplaces: list[str] = []
        if self.amazon_configured:
            marketplaces.append("amazon")
        if self.takealot_configured:
            marketplaces.append("takealot")
        return marketplaces

    def retry_policy(self) -> RetryPolicy:
        """Build a RetryPolicy from the retry settings."""
        return RetryPolicy(
            max_attempts=self.RETRY_MAX_ATTEMPTS,
            base_delay=self.RETRY_BASE_DELAY_SECONDS,
            max_delay=self.RETRY_MAX_DELAY_SECONDS,
        )

    def batch_config(self) -> BatchConfig:
        """Build a BatchConfig from the batch settings."""
        return BatchConfig(
            batch_size=self.BATCH_SIZE,
            max_concurrency=self.BATCH_MAX_CONCURRENCY,
            inter_chunk_delay=self.BATCH_INTER_CHUNK_DELAY_SECONDS,
            continue_on_error=self.BATCH_CONTINUE_ON_ERROR,
            max_retries=self.BATCH_MAX_RETRIES,
        )

    def redacted_display(self) -> dict[str, str | int | float | bool | None]:
        """Return settings with secrets redacted for display."""
        def redact(key: str, value: str | None) -> str | None:
            if value is None:
                return None
            if "KEY" in key or "SECRET" in key or "TOKEN" in key:
                return f"{value[:4]}...{value[-4:]}" if len(value) > 12 else "***"
            return value

        return {
            "AMAZON_CLIENT_ID": self.AMAZON_CLIENT_ID,
            "AMAZON_CLIENT_SECRET": redact("AMAZON_CLIENT_SECRET", self.AMAZON_CLIENT_SECRET),
            "AMAZON_REFRESH_TOKEN": redact("AMAZON_REFRESH_TOKEN", self.AMAZON_REFRESH_TOKEN),
            "AMAZON_AWS_ACCESS_KEY_ID": redact(
                "AMAZON_AWS_ACCESS_KEY_ID", self.AMAZON_AWS_ACCESS_KEY_ID
            ),
            "AMAZON_AWS_SECRET_ACCESS_KEY": redact(
                "AMAZON_AWS_SECRET_ACCESS_KEY", self.AMAZON_AWS_SECRET_ACCESS_KEY
            ),
            "AMAZON_REGION": self.AMAZON_REGION,
            "AMAZON_MARKETPLACE_ID": self.AMAZON_MARKETPLACE_ID,
            "AMAZON_SELLER_ID": self.AMAZON_SELLER_ID,
            "TAKEALOT_API_KEY": redact("TAKEALOT_API_KEY", self.TAKEALOT_API_KEY),
            "TAKEALOT_BASE_URL": self.TAKEALOT_BASE_URL,
            "TAKEALOT_WAREHOUSE_ID": self.TAKEALOT_WAREHOUSE_ID,
            "REQUEST_TIMEOUT_SECONDS": self.REQUEST_TIMEOUT_SECONDS,
            "RETRY_MAX_ATTEMPTS": self.RETRY_MAX_ATTEMPTS,
            "BATCH_SIZE": self.BATCH_SIZE,
            "BATCH_MAX_CONCURRENCY": self.BATCH_MAX_CONCURRENCY,
            "LOG_LEVEL": self.LOG_LEVEL,
        }


@lru_cache
def get_settings() -> Settings:
    """Get cached settings singleton.

    Returns:
        Settings instance loaded from environment.

    Raises:
        ValidationError: If settings are invalid.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache (useful for testing)."""
    get_settings.cache_clear()


def configure_logging(settings: Settings | None = None) -> None:
    """Apply LOG_LEVEL and LOG_FILE to the sellerlink logger."""
    settings = settings or get_settings()
    setup_logging(log_level=settings.LOG_LEVEL, log_file=settings.LOG_FILE)
