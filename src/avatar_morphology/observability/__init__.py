"""Public observability primitives: structlog setup and correlation scopes."""

from avatar_morphology.observability.logging import (
    LoggingConfig,
    configure_logging,
    correlation_scope,
    get_correlation_context,
    parse_log_level,
    redact_event,
    reset_logging,
)

__all__ = [
    "LoggingConfig",
    "configure_logging",
    "correlation_scope",
    "get_correlation_context",
    "parse_log_level",
    "redact_event",
    "reset_logging",
]
