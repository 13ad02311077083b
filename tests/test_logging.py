"""
Tests for Logging Infrastructure
"""
import json
import logging
from io import StringIO

import pytest

from app.core.logging import (
    CorrelationIdFilter,
    JSONFormatter,
    bind_conversation,
    generate_correlation_id,
    get_correlation_id,
    get_logger,
    log_async_operation,
    set_correlation_id,
    correlation_id_var,
)


@pytest.fixture
def log_stream() -> StringIO:
    return StringIO()


@pytest.fixture
def json_logger(log_stream: StringIO):
    """A structured logger writing JSON lines into log_stream"""
    handler = logging.StreamHandler(log_stream)
    handler.setFormatter(JSONFormatter())

    logger = get_logger("tests.json")
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG)
    yield logger
    logger.removeHandler(handler)


def _entries(log_stream: StringIO) -> list[dict]:
    return [json.loads(line) for line in log_stream.getvalue().splitlines() if line]


class TestCorrelationId:

    @pytest.mark.unit
    def test_generate_correlation_id(self):
        cid = generate_correlation_id()

        assert len(cid) == 8
        assert cid.isalnum()

    @pytest.mark.unit
    def test_set_and_get_correlation_id(self):
        assert set_correlation_id("msg00001") == "msg00001"
        assert get_correlation_id() == "msg00001"

    @pytest.mark.unit
    def test_set_correlation_id_generates_if_none(self):
        result = set_correlation_id(None)
        assert len(result) == 8

    @pytest.mark.unit
    def test_get_mints_once_and_keeps_it(self):
        correlation_id_var.set("")

        first = get_correlation_id()
        assert first
        assert get_correlation_id() == first

    @pytest.mark.unit
    def test_filter_injects_placeholder(self):
        correlation_id_var.set("")
        record = logging.LogRecord("x", logging.INFO, __file__, 1, "msg", None, None)

        assert CorrelationIdFilter().filter(record) is True
        assert record.correlation_id == "-"
        assert record.phone == "-"


class TestJSONFormatter:

    @pytest.mark.unit
    def test_basic_fields(self, json_logger, log_stream: StringIO):
        json_logger.info("Session created")

        (entry,) = _entries(log_stream)
        assert entry["level"] == "INFO"
        assert entry["message"] == "Session created"
        assert entry["logger"] == "tests.json"
        assert entry["service"]
        assert entry["timestamp"].endswith("Z")

    @pytest.mark.unit
    def test_correlation_id(self, json_logger, log_stream: StringIO):
        set_correlation_id("corr1234")
        json_logger.info("Message parsed")

        (entry,) = _entries(log_stream)
        assert entry["correlation_id"] == "corr1234"

    @pytest.mark.unit
    def test_exception(self, json_logger, log_stream: StringIO):
        try:
            raise ValueError("cart exploded")
        except ValueError:
            json_logger.error("Order creation failed", exc_info=True)

        (entry,) = _entries(log_stream)
        assert entry["level"] == "ERROR"
        assert "ValueError: cart exploded" in entry["exception"]

    @pytest.mark.unit
    def test_non_ascii_and_decimals(self, json_logger, log_stream: StringIO):
        from decimal import Decimal

        json_logger.info("Order created", extra_data={"total": Decimal("9900.00"), "currency": "₦"})

        (entry,) = _entries(log_stream)
        assert entry["extra"] == {"total": "9900.00", "currency": "₦"}

    @pytest.mark.unit
    def test_bound_conversation_phone(self, json_logger, log_stream: StringIO):
        with bind_conversation("+234803123****"):
            json_logger.info("Message parsed")
        json_logger.info("Sweep finished")

        inside, outside = _entries(log_stream)
        assert inside["phone"] == "+234803123****"
        assert "phone" not in outside


class TestStructuredLogger:

    @pytest.mark.unit
    def test_get_logger(self):
        assert get_logger("app.test").name == "app.test"

    @pytest.mark.unit
    def test_extra_data(self, json_logger, log_stream: StringIO):
        json_logger.info("Rejected inbound message", extra_data={"phone": "+23480312****", "errors": ["empty"]})

        (entry,) = _entries(log_stream)
        assert entry["extra"]["phone"] == "+23480312****"
        assert entry["extra"]["errors"] == ["empty"]

    @pytest.mark.unit
    def test_level_filtering(self, json_logger, log_stream: StringIO):
        json_logger.setLevel(logging.WARNING)
        json_logger.info("hidden", extra_data={"x": 1})
        json_logger.warning("shown")

        assert [entry["message"] for entry in _entries(log_stream)] == ["shown"]


class TestAsyncLoggingDecorator:

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_success_logs_duration(self, log_stream: StringIO):
        handler = logging.StreamHandler(log_stream)
        handler.setFormatter(JSONFormatter())
        logger = get_logger(__name__)
        logger.addHandler(handler)
        logger.setLevel(logging.INFO)

        @log_async_operation("sync_sweep")
        async def sweep():
            return 3

        try:
            assert await sweep() == 3
        finally:
            logger.removeHandler(handler)

        (entry,) = _entries(log_stream)
        assert entry["message"] == "Completed sync_sweep"
        assert entry["extra"]["status"] == "completed"
        assert entry["extra"]["duration_seconds"] >= 0

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_failure_reraises(self):
        @log_async_operation("failing_operation")
        async def failing():
            raise ValueError("boom")

        with pytest.raises(ValueError):
            await failing()
