from __future__ import annotations

import json
import logging
import sys

import pytest

from shared.src.logs import JSONFormatter, configure_logging, redact_sensitive_text


def _make_record(
    msg: str = "test message",
    level: int = logging.INFO,
    exc_info: object = None,
) -> logging.LogRecord:
    return logging.LogRecord(
        name="test.logger",
        level=level,
        pathname="test.py",
        lineno=1,
        msg=msg,
        args=(),
        exc_info=exc_info,  # type: ignore[arg-type]
    )


class TestJSONFormatter:
    """Tests for the structured JSON log formatter."""

    def test_format_produces_valid_json(self) -> None:
        parsed = json.loads(JSONFormatter().format(_make_record()))

        assert parsed["msg"] == "test message"
        assert parsed["level"] == "INFO"
        assert parsed["logger"] == "test.logger"
        assert "ts" in parsed
        assert "error" not in parsed

    def test_format_includes_error_on_exception(self) -> None:
        try:
            raise ValueError("boom")
        except ValueError:
            record = _make_record(exc_info=sys.exc_info())

        parsed = json.loads(JSONFormatter().format(record))

        assert "ValueError" in parsed["error"]
        assert "boom" in parsed["error"]

    def test_format_is_single_line(self) -> None:
        output = JSONFormatter().format(_make_record(msg="line one\nline two"))

        assert output.count("\n") == 0

    def test_format_redacts_credentials(self) -> None:
        record = _make_record(
            msg="token=abc123 password=hunter2 Authorization: Bearer abc.def.ghi "
            "url=/metrics?access_token=qwerty"
        )

        message = json.loads(JSONFormatter().format(record))["msg"]

        assert "[REDACTED]" in message
        for leaked in ("abc123", "hunter2", "abc.def.ghi", "qwerty"):
            assert leaked not in message


def test_secret_names_are_not_redacted() -> None:
    text = "Created telegraf config secret apps/telegraf-config-web-0-abcde secret=cfg"
    assert redact_sensitive_text(text) == text


def test_configure_logging_installs_json_handler(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("LOG_LEVEL", "debug")
    previous_handlers = list(logging.root.handlers)
    previous_level = logging.root.level
    try:
        configure_logging()

        assert logging.root.level == logging.DEBUG
        assert len(logging.root.handlers) == 1
        assert isinstance(logging.root.handlers[0].formatter, JSONFormatter)
    finally:
        logging.root.handlers[:] = previous_handlers
        logging.root.setLevel(previous_level)
