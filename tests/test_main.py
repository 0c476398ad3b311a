"""Tests for logging setup."""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Iterator

import pytest

from envstack.main import NOISY_LOGGERS, JsonFormatter, setup_logging


@pytest.fixture(autouse=True)
def restore_logging() -> Iterator[None]:
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    noisy = {name: logging.getLogger(name).level for name in NOISY_LOGGERS}
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
    for name, noisy_level in noisy.items():
        logging.getLogger(name).setLevel(noisy_level)


def make_record(**extra: object) -> logging.LogRecord:
    record = logging.LogRecord(
        "envstack.stacks", logging.INFO, __file__, 10, "Stack %s created", ("shop",), None
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJsonFormatter:
    """Tests for JsonFormatter."""

    def test_fields(self) -> None:
        data = json.loads(JsonFormatter().format(make_record()))

        assert data["level"] == "INFO"
        assert data["message"] == "Stack shop created"
        assert data["logger"] == "envstack.stacks"
        assert data["timestamp"].endswith("Z")

    def test_extra_fields(self) -> None:
        data = json.loads(JsonFormatter().format(make_record(stack_name="shop-ab12cd-stage")))

        assert data["stack_name"] == "shop-ab12cd-stage"
        assert "pathname" not in data

    def test_exception(self) -> None:
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = make_record()
            record.exc_info = sys.exc_info()

        data = json.loads(JsonFormatter().format(record))

        assert "RuntimeError: boom" in data["exception"]


class TestSetupLogging:
    """Tests for setup_logging()."""

    def test_replaces_handlers(self) -> None:
        setup_logging(logging.INFO)
        setup_logging(logging.INFO)

        root = logging.getLogger()
        assert len(root.handlers) == 1
        assert root.level == logging.INFO

    def test_json_output(self) -> None:
        setup_logging(json_output=True)

        assert isinstance(logging.getLogger().handlers[0].formatter, JsonFormatter)

    def test_noisy_loggers_quieted(self) -> None:
        setup_logging(logging.DEBUG)

        for name in NOISY_LOGGERS:
            assert logging.getLogger(name).level == logging.WARNING
