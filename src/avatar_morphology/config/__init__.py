"""
avatar-morphology config package public API.

Loads ``avatar_morphology.toml`` plus ``AVATAR_MORPH_`` env overrides and fails fast
with structured validation or load errors.
"""

from avatar_morphology.config.loader import (
    DEFAULT_CONFIG_FILE,
    ENV_PREFIX,
    ConfigLoadError,
    load_config,
    resolve_secret,
)
from avatar_morphology.config.schema import (
    DEFAULT_CONFIG,
    PATH_FIELDS,
    ConfigSchemaVersion,
    ConfigValidationError,
    ConfigValidationIssue,
    ConfigValidationResult,
    MorphologyConfig,
    assert_valid_config,
    default_config,
    merge_config,
    redact_config,
    validate_config,
)

__all__ = [
    "ConfigLoadError",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "MorphologyConfig",
    "PATH_FIELDS",
    "assert_valid_config",
    "default_config",
    "load_config",
    "merge_config",
    "redact_config",
    "resolve_secret",
    "validate_config",
]
