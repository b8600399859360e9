"""Tests for laos_checkout.logging_config."""
from __future__ import annotations

import json
import logging
import re

import pytest

from laos_checkout.logging_config import (
    CorrelationIDFilter,
    LogContext,
    StructuredFormatter,
    generate_error_id,
    generate_trace_id,
)


def render(msg="Order totals calculated", **extra) -> dict:
    record = logging.makeLogRecord({"name": "laos_checkout.stages", "levelname": "INFO", "msg": msg, **extra})
    CorrelationIDFilter().filter(record)
    return json.loads(StructuredFormatter().format(record))


class TestStructuredFormatter:
    """Tests for the JSON formatter and context filter."""

    def test_standard_fields_and_extras(self):
        """Should emit the message, level and any extra fields."""
        data = render(total="135.00", item_count=1)

        assert data["message"] == "Order totals calculated"
        assert data["level"] == "INFO"
        assert data["logger"] == "laos_checkout.stages"
        assert data["total"] == "135.00"
        assert data["item_count"] == 1
        assert "msg" not in data
        assert "args" not in data

    def test_unbound_context_is_omitted(self):
        """Should leave out context fields that are not bound."""
        data = render()
        assert "request_id" not in data
        assert "user_id" not in data

    def test_bound_context_is_included(self):
        """Should copy bound request and user ids onto the record."""
        with LogContext(request_id="req_1", user_id="user_1"):
            data = render()

        assert data["request_id"] == "req_1"
        assert data["user_id"] == "user_1"
        assert "request_id" not in render()

    def test_explicit_order_id_wins(self):
        """Should keep an order id passed through extra over the bound one."""
        with LogContext(order_id="ord_ctx"):
            assert render(order_id="ord_extra")["order_id"] == "ord_extra"
            assert render()["order_id"] == "ord_ctx"

    def test_unknown_context_field(self):
        """Should reject fields that are not part of the log context."""
        with pytest.raises(TypeError):
            LogContext(session="cs_1")


class TestGeneratedIds:
    """Tests for error and trace id generators."""

    def test_error_id_format(self):
        """Should produce ERR-<ms>-<9 chars>."""
        assert re.fullmatch(r"ERR-\d{13}-[0-9a-f]{9}", generate_error_id())

    def test_trace_id_format(self):
        """Should produce three dash-separated parts ending in a hex digest."""
        trace_id = generate_trace_id()
        assert re.fullmatch(r"[0-9a-z]+-[0-9a-z]{7}-[0-9a-f]{8}", trace_id)
        assert generate_trace_id() != trace_id
