"""
Tests for configuration module.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from sellerlink.config import Settings, clear_settings_cache, configure_logging, get_settings
from sellerlink.logging import get_logger
from sellerlink.types import BatchConfig


class TestSettingsValidation:
    """Tests for Settings validation."""

    def test_settings_loads_from_env(self, mock_env_vars: dict[str, str]) -> None:
        """Test that settings correctly loads from environment variables."""
        settings = get_settings()

        assert settings.AMAZON_CLIENT_ID == "amzn1.application-oa2-client.test"
        assert settings.AMAZON_REGION == "eu"
        assert settings.AMAZON_MARKETPLACE_ID == "A1F83G8C2ARO7P"
        assert settings.TAKEALOT_API_KEY == "test-takealot-api-key-123456"
        assert settings.RETRY_MAX_ATTEMPTS == 4
        assert settings.BATCH_SIZE == 25
        assert settings.LOG_LEVEL == "DEBUG"

    def test_defaults_without_environment(self) -> None:
        """Test the defaults when nothing is configured."""
        with patch.dict(os.environ, {}, clear=True):
            clear_settings_cache()
            settings = Settings(_env_file=None)

        assert settings.AMAZON_REGION == "na"
        assert settings.AMAZON_MARKETPLACE_ID == "ATVPDKIKX0DER"
        assert settings.TAKEALOT_BASE_URL == "https://seller-api.takealot.com"
        assert settings.TAKEALOT_WAREHOUSE_ID is None
        assert settings.RETRY_MAX_ATTEMPTS == 5
        assert settings.BATCH_MAX_CONCURRENCY == 2
        assert settings.BATCH_CONTINUE_ON_ERROR is True
        assert settings.available_marketplaces == []

    def test_region_is_normalized(self) -> None:
        """Test that the region is case-insensitive."""
        with patch.dict(os.environ, {"AMAZON_REGION": " FE "}, clear=True):
            settings = Settings(_env_file=None)

        assert settings.AMAZON_REGION == "fe"

    def test_unknown_region_is_rejected(self) -> None:
        """Test that AMAZON_REGION must name an endpoint region."""
        with patch.dict(os.environ, {"AMAZON_REGION": "moon"}, clear=True):
            with pytest.raises(ValidationError) as exc_info:
                Settings(_env_file=None)

        assert "AMAZON_REGION must be one of" in str(exc_info.value)

    def test_max_delay_below_base_is_rejected(self) -> None:
        """Test that the backoff cap cannot be below the base delay."""
        env_vars = {"RETRY_BASE_DELAY_SECONDS": "10", "RETRY_MAX_DELAY_SECONDS": "2"}

        with patch.dict(os.environ, env_vars, clear=True):
            with pytest.raises(ValidationError) as exc_info:
                Settings(_env_file=None)

        assert "RETRY_MAX_DELAY_SECONDS" in str(exc_info.value)

    @pytest.mark.parametrize(
        ("name", "value"),
        [
            ("RETRY_MAX_ATTEMPTS", "0"),
            ("BATCH_SIZE", "0"),
            ("BATCH_MAX_CONCURRENCY", "100"),
            ("REQUEST_TIMEOUT_SECONDS", "0"),
            ("LOG_LEVEL", "VERBOSE"),
        ],
    )
    def test_out_of_range_values(self, name: str, value: str) -> None:
        """Test that field bounds are enforced."""
        with patch.dict(os.environ, {name: value}, clear=True):
            with pytest.raises(ValidationError):
                Settings(_env_file=None)

    def test_base_url_trailing_slash_is_stripped(self) -> None:
        """Test that TAKEALOT_BASE_URL is normalized."""
        with patch.dict(os.environ, {"TAKEALOT_BASE_URL": "https://sandbox.example.com/"}, clear=True):
            settings = Settings(_env_file=None)

        assert settings.TAKEALOT_BASE_URL == "https://sandbox.example.com"


class TestSettingsProperties:
    """Tests for derived settings."""

    def test_available_marketplaces(self, mock_env_vars: dict[str, str]) -> None:
        """Test that both marketplaces are reported when fully configured."""
        settings = get_settings()

        assert settings.amazon_configured
        assert settings.takealot_configured
        assert settings.available_marketplaces == ["amazon", "takealot"]

    def test_partial_amazon_credentials(self) -> None:
        """Test that Amazon needs every credential, including the seller ID."""
        env_vars = {
            "AMAZON_CLIENT_ID": "client",
            "AMAZON_CLIENT_SECRET": "secret",
            "AMAZON_REFRESH_TOKEN": "refresh",
            "AMAZON_AWS_ACCESS_KEY_ID": "AKIA",
            "AMAZON_AWS_SECRET_ACCESS_KEY": "aws-secret",
        }

        with patch.dict(os.environ, env_vars, clear=True):
            settings = Settings(_env_file=None)

        assert not settings.amazon_configured
        assert settings.available_marketplaces == []

    def test_retry_policy_factory(self, mock_env_vars: dict[str, str]) -> None:
        """Test that the retry policy reflects the retry settings."""
        policy = get_settings().retry_policy()

        assert policy.max_attempts == 4
        assert policy.base_delay == 0.5
        assert policy.max_delay == 8.0

    def test_batch_config_factory(self, mock_env_vars: dict[str, str]) -> None:
        """Test that the batch config reflects the batch settings."""
        config = get_settings().batch_config()

        assert config == BatchConfig(
            batch_size=25,
            max_concurrency=3,
            inter_chunk_delay=0.0,
            continue_on_error=True,
            max_retries=0,
        )

    def test_redacted_display(self, mock_env_vars: dict[str, str]) -> None:
        """Test that secrets are masked for display."""
        display = get_settings().redacted_display()

        assert display["TAKEALOT_API_KEY"] == "test...3456"
        assert display["AMAZON_CLIENT_SECRET"] == "test...cret"
        assert display["AMAZON_SELLER_ID"] == "A2SELLERTEST"
        assert "test-takealot-api-key-123456" not in str(display)

    def test_warehouse_id_from_env(self, mock_env_vars: dict[str, str]) -> None:
        """Test that TAKEALOT_WAREHOUSE_ID is parsed as an integer."""
        with patch.dict(os.environ, {"TAKEALOT_WAREHOUSE_ID": "1042"}):
            clear_settings_cache()
            settings = get_settings()

        assert settings.TAKEALOT_WAREHOUSE_ID == 1042
        assert settings.redacted_display()["TAKEALOT_WAREHOUSE_ID"] == 1042


class TestSettingsCache:
    """Tests for the cached settings accessor."""

    def test_get_settings_is_cached(self, mock_env_vars: dict[str, str]) -> None:
        """Test that repeated calls return the same instance."""
        assert get_settings() is get_settings()

    def test_clear_settings_cache(self, mock_env_vars: dict[str, str]) -> None:
        """Test that clearing the cache rebuilds settings."""
        first = get_settings()
        clear_settings_cache()

        assert get_settings() is not first


class TestConfigureLogging:
    """Tests for applying logging settings."""

    def test_level_is_applied(self, mock_env_vars: dict[str, str]) -> None:
        """Test that LOG_LEVEL sets the sellerlink logger level."""
        with patch.dict(os.environ, {"LOG_LEVEL": "WARNING"}):
            clear_settings_cache()
            configure_logging()

        assert logging.getLogger("sellerlink").level == logging.WARNING

    def test_log_file_receives_json_lines(self, mock_env_vars: dict[str, str], tmp_path: Path) -> None:
        """Test that LOG_FILE adds a JSON-lines file handler."""
        log_file = tmp_path / "logs" / "sellerlink.jsonl"
        with patch.dict(os.environ, {"LOG_FILE": str(log_file), "LOG_LEVEL": "INFO"}):
            settings = Settings()

        configure_logging(settings)
        get_logger("tests.config").info("Logging configured", marketplace_count=2)

        lines = log_file.read_text(encoding="utf-8").splitlines()
        payload = json.loads(lines[-1])
        assert payload["message"] == "Logging configured"
        assert payload["level"] == "INFO"
        assert payload["extra"]["marketplace_count"] == 2
