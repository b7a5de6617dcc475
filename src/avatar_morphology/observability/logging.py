"""structlog configuration, correlation scopes and log redaction."""

from __future__ import annotations

import json
import logging
import math
import re
import sys
from collections.abc import Iterator, Mapping, MutableMapping
from contextlib import contextmanager
from dataclasses import dataclass
from typing import IO, Any, Final

import structlog

_SUPPORTED_FORMATS: Final[frozenset[str]] = frozenset({"json", "console"})
_REDACTED_VALUE: Final[str] = "***REDACTED***"

_CORRELATION_KEYS: Final[tuple[str, ...]] = (
    "request_id",
    "session_id",
    "user_id",
    "mapping_version",
)

_SENSITIVE_KEY_TERMS: Final[tuple[str, ...]] = (
    "secret",
    "token",
    "password",
    "api_key",
    "apikey",
    "authorization",
    "credential",
    "cookie",
)

_BEARER_TOKEN_PATTERN: Final[re.Pattern[str]] = re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/-]+=*")


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    """Configuration for structlog output."""

    level: int | str = "INFO"
    format: str = "json"
    redact_secrets: bool = True
    stream: IO[str] | None = None

    def __post_init__(self) -> None:
        if self.format not in _SUPPORTED_FORMATS:
            raise ValueError(f"format must be one of {sorted(_SUPPORTED_FORMATS)}")
        parse_log_level(self.level)

    @classmethod
    def from_config(cls, section: Mapping[str, object]) -> LoggingConfig:
        raw_level = section.get("log_level", "INFO")
        level: int | str = raw_level if isinstance(raw_level, (int, str)) else "INFO"
        raw_format = section.get("log_format", "json")
        return cls(
            level=level,
            format=raw_format if isinstance(raw_format, str) else "json",
            redact_secrets=bool(section.get("redact_secrets", True)),
        )


def configure_logging(config: LoggingConfig | None = None) -> None:
    """Configure structlog globally: context merge, level filter, timestamps, renderer."""

    resolved = config if config is not None else LoggingConfig()
    level = parse_log_level(resolved.level)

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if resolved.redact_secrets:
        processors.append(redact_event)
    if resolved.format == "json":
        processors.append(structlog.processors.JSONRenderer(serializer=_dumps))
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(file=resolved.stream or sys.stderr),
        cache_logger_on_first_use=False,
    )


def reset_logging() -> None:
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()


def parse_log_level(value: int | str) -> int:
    if isinstance(value, int):
        return value
    if not isinstance(value, str):
        raise ValueError(f"level must be int or str, got {type(value).__name__}")
    parsed = logging.getLevelName(value.strip().upper())
    if isinstance(parsed, int):
        return parsed
    raise ValueError(f"unsupported logging level {value!r}")


def get_correlation_context() -> dict[str, str]:
    """Correlation fields currently bound in this context."""

    bound = structlog.contextvars.get_contextvars()
    return {key: str(value) for key, value in bound.items() if key in _CORRELATION_KEYS}


@contextmanager
def correlation_scope(**fields: str | None) -> Iterator[None]:
    """Temporarily bind correlation fields for every log event in scope."""

    bound: dict[str, str] = {}
    for key, value in fields.items():
        name = key.strip()
        if not name:
            raise ValueError("correlation key must not be empty")
        if value is None:
            continue
        text = str(value).strip()
        if text:
            bound[name] = text
    with structlog.contextvars.bound_contextvars(**bound):
        yield


def redact_event(
    logger: object,
    method_name: str,
    event_dict: MutableMapping[str, Any],
) -> MutableMapping[str, Any]:
    """structlog processor masking secret-looking keys and bearer tokens."""

    for key in list(event_dict):
        event_dict[key] = _redact_value(event_dict[key], key_context=key)
    return event_dict


def _redact_value(value: object, *, key_context: str | None) -> object:
    if key_context is not None and _requires_redaction(key_context):
        return _REDACTED_VALUE
    if isinstance(value, str):
        return _BEARER_TOKEN_PATTERN.sub(f"Bearer {_REDACTED_VALUE}", value)
    if isinstance(value, Mapping):
        return {str(key): _redact_value(item, key_context=str(key)) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_redact_value(item, key_context=None) for item in value]
    return value


def _requires_redaction(key: str) -> bool:
    lowered = key.lower()
    return any(term in lowered for term in _SENSITIVE_KEY_TERMS)


def _dumps(value: object, **_: object) -> str:
    return json.dumps(
        value,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=_json_default,
    )


def _json_default(value: object) -> object:
    if isinstance(value, (set, frozenset)):
        return sorted(str(item) for item in value)
    if isinstance(value, float) and not math.isfinite(value):
        return str(value)
    return repr(value)


__all__ = [
    "LoggingConfig",
    "configure_logging",
    "correlation_scope",
    "get_correlation_context",
    "parse_log_level",
    "redact_event",
    "reset_logging",
]
