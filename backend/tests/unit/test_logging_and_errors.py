"""
Unit tests for structured logging and the exception hierarchy
"""
import json
import logging
from decimal import Decimal

from shopfloor.exceptions import (
    BusinessRuleError,
    InsufficientStockError,
    InvalidIntervalError,
    OverProductionError,
    ShopfloorException,
    ValidationError,
)
from shopfloor.logging_config import StructuredFormatter, get_logger, setup_logging

from tests.factories import hours


def _record(msg="hello", exc_info=None, **extra):
    record = logging.LogRecord("shopfloor.test", logging.WARNING, __file__, 1, msg, (), exc_info)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestStructuredFormatter:

    def test_extra_fields_are_merged(self):
        line = StructuredFormatter().format(_record(work_order_id=7, quantity=Decimal("2.5")))
        payload = json.loads(line)

        assert payload["level"] == "WARNING"
        assert payload["message"] == "hello"
        assert payload["work_order_id"] == 7
        assert payload["quantity"] == "2.5"

    def test_exception_code_is_logged(self):
        try:
            raise InsufficientStockError(3, requested=Decimal("5"), available=Decimal("1"))
        except InsufficientStockError as exc:
            record = _record(exc_info=(type(exc), exc, exc.__traceback__))

        payload = json.loads(StructuredFormatter().format(record))

        assert payload["exc_type"] == "InsufficientStockError"
        assert payload["exc_code"] == "INSUFFICIENT_STOCK"


class TestLoggerSetup:

    def test_get_logger_namespaces(self):
        assert get_logger("services.x").name == "shopfloor.services.x"
        assert get_logger("shopfloor.services.x").name == "shopfloor.services.x"

    def test_setup_is_idempotent(self):
        root = setup_logging(level="debug", fmt="json")
        setup_logging(level="info", fmt="text")

        installed = [h for h in root.handlers if getattr(h, "_shopfloor_handler", False)]
        assert len(installed) == 1
        assert root.level == logging.INFO


class TestExceptions:

    def test_to_dict(self):
        error = InsufficientStockError(3, requested=Decimal("5.000"), available=Decimal("1"))

        assert error.to_dict() == {
            "error": "INSUFFICIENT_STOCK",
            "message": "Insufficient stock for product 3: requested 5, available 1",
            "details": {"product_id": 3, "requested": "5", "available": "1"},
        }
        assert isinstance(error, BusinessRuleError)
        assert error.status_code == 422

    def test_invalid_interval_is_validation_error(self):
        error = InvalidIntervalError(hours(2), hours(1))
        assert isinstance(error, ValidationError)
        assert error.status_code == 400

    def test_over_production_details(self):
        error = OverProductionError(planned=Decimal("10"), tolerance=Decimal("0"), attempted=Decimal("11"))
        assert error.details == {"planned": "10", "tolerance": "0", "attempted": "11"}
        assert isinstance(error, ShopfloorException)
