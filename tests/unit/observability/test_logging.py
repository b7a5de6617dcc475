"""Unit tests for structlog configuration, correlation scopes and redaction."""

from __future__ import annotations

import io
import json
import logging
from collections.abc import Iterator

import pytest
import structlog

from avatar_morphology.observability.logging import (
    LoggingConfig,
    configure_logging,
    correlation_scope,
    get_correlation_context,
    parse_log_level,
    redact_event,
    reset_logging,
)


@pytest.fixture(autouse=True)
def _reset_structlog() -> Iterator[None]:
    yield
    reset_logging()


def _lines(stream: io.StringIO) -> list[dict[str, object]]:
    return [json.loads(line) for line in stream.getvalue().splitlines() if line.strip()]


def test_json_output_carries_level_timestamp_and_correlation() -> None:
    stream = io.StringIO()
    configure_logging(LoggingConfig(level="INFO", stream=stream))

    with correlation_scope(request_id="req-9", user_id=None, mapping_version="v1.0"):
        structlog.get_logger("test").info("resolution_completed", strategy="archetype_blend")
    structlog.get_logger("test").info("after_scope")

    first, second = _lines(stream)
    assert first["event"] == "resolution_completed"
    assert first["level"] == "info"
    assert first["request_id"] == "req-9"
    assert first["mapping_version"] == "v1.0"
    assert "user_id" not in first
    assert "timestamp" in first
    assert "request_id" not in second


def test_level_filter_drops_lower_events() -> None:
    stream = io.StringIO()
    configure_logging(LoggingConfig(level="warning", stream=stream))

    logger = structlog.get_logger("test")
    logger.info("quiet")
    logger.warning("loud")

    assert [line["event"] for line in _lines(stream)] == ["loud"]


def test_secrets_are_redacted_in_output() -> None:
    stream = io.StringIO()
    configure_logging(LoggingConfig(stream=stream))

    structlog.get_logger("test").info(
        "refinement_request",
        api_key="sk-123",
        headers={"Authorization": "Bearer abc.def"},
        detail="sent Bearer abc.def upstream",
    )

    (line,) = _lines(stream)
    assert line["api_key"] == "***REDACTED***"
    assert line["headers"] == {"Authorization": "***REDACTED***"}
    assert line["detail"] == "sent Bearer ***REDACTED*** upstream"


def test_redaction_can_be_disabled() -> None:
    stream = io.StringIO()
    configure_logging(LoggingConfig(stream=stream, redact_secrets=False))

    structlog.get_logger("test").info("raw", token="visible")

    assert _lines(stream)[0]["token"] == "visible"


def test_console_format_renders_plain_text() -> None:
    stream = io.StringIO()
    configure_logging(LoggingConfig(format="console", stream=stream))

    structlog.get_logger("test").info("stream_started", total=3)

    output = stream.getvalue()
    assert "stream_started" in output
    assert "total=3" in output


def test_redact_event_processor_handles_nested_values() -> None:
    event = {"event": "x", "payload": {"password": "p", "items": [{"secret": "s"}, "ok"]}}

    redacted = redact_event(None, "info", event)

    assert redacted["payload"] == {"password": "***REDACTED***", "items": [{"secret": "***REDACTED***"}, "ok"]}


def test_correlation_context_is_scoped() -> None:
    with correlation_scope(request_id="outer"):
        with correlation_scope(session_id="7"):
            assert get_correlation_context() == {"request_id": "outer", "session_id": "7"}
        assert get_correlation_context() == {"request_id": "outer"}
    assert get_correlation_context() == {}

    with pytest.raises(ValueError, match="must not be empty"), correlation_scope(**{" ": "x"}):
        pass


def test_parse_log_level_and_config_validation() -> None:
    assert parse_log_level("debug") == logging.DEBUG
    assert parse_log_level(30) == 30
    with pytest.raises(ValueError, match="unsupported logging level"):
        parse_log_level("chatty")
    with pytest.raises(ValueError, match="format"):
        LoggingConfig(format="xml")


def test_logging_config_from_config_section() -> None:
    config = LoggingConfig.from_config(
        {"log_level": "ERROR", "log_format": "console", "redact_secrets": False}
    )

    assert config.level == "ERROR"
    assert config.format == "console"
    assert not config.redact_secrets
