"""
Tests for structured logging helpers.
"""

from __future__ import annotations

import json
import logging

from sellerlink.logging import (
    JSONFormatter,
    get_logger,
    get_marketplace,
    get_operation,
    get_request_id,
    log_context,
)


def _record(message: str, **extra: object) -> logging.LogRecord:
    record = logging.LogRecord(
        name="sellerlink.test",
        level=logging.WARNING,
        pathname=__file__,
        lineno=1,
        msg=message,
        args=(),
        exc_info=None,
    )
    if extra:
        record.extra = extra
    return record


class TestLogContext:
    """Tests for scoped context variables."""

    def test_context_is_set_and_reset(self) -> None:
        """Test that values apply inside the block only."""
        assert get_marketplace() is None

        with log_context(marketplace="amazon", request_id="req_1", operation="update_stock"):
            assert get_marketplace() == "amazon"
            assert get_request_id() == "req_1"
            assert get_operation() == "update_stock"

        assert get_marketplace() is None
        assert get_request_id() is None
        assert get_operation() is None

    def test_nested_context_restores_outer_values(self) -> None:
        """Test that an inner block only overrides what it sets."""
        with log_context(marketplace="takealot", operation="get_orders"):
            with log_context(request_id="req_2"):
                assert get_marketplace() == "takealot"
                assert get_request_id() == "req_2"
            assert get_request_id() is None
            assert get_operation() == "get_orders"


class TestJSONFormatter:
    """Tests for JSON log lines."""

    def test_fields_and_context(self) -> None:
        """Test that a record includes context and structured fields."""
        with log_context(marketplace="amazon", request_id="req_3"):
            line = JSONFormatter().format(_record("Retrying marketplace call", attempt=2))

        payload = json.loads(line)
        assert payload["level"] == "WARNING"
        assert payload["logger"] == "sellerlink.test"
        assert payload["message"] == "Retrying marketplace call"
        assert payload["marketplace"] == "amazon"
        assert payload["request_id"] == "req_3"
        assert payload["extra"] == {"attempt": 2}

    def test_without_context(self) -> None:
        """Test that absent context keys are omitted."""
        payload = json.loads(JSONFormatter().format(_record("plain")))

        assert "marketplace" not in payload
        assert "extra" not in payload


class TestGetLogger:
    """Tests for the logger factory."""

    def test_names_are_namespaced(self) -> None:
        """Test that loggers live under the sellerlink namespace."""
        assert get_logger("tests.example").name == "sellerlink.tests.example"
        assert get_logger("sellerlink.client").name == "sellerlink.client"
