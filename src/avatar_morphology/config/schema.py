"""
avatar-morphology: runtime config schema.

Purpose
- Define the typed shape of ``avatar_morphology.toml`` and its built-in defaults.
- Validate payloads strictly, collecting every issue with a dotted path.

Sections
- ``meta``: schema version.
- ``blending``: weighting constants of the archetype blender.
- ``refinement``: service location, timeout and retry policy.
- ``streaming``: batch size, frame interval and smoothing.
- ``resolution``: mapping document paths, default style, refinement switch.
- ``observability``: log level, format and redaction.

Secrets are never embedded: the refinement credential is named through
``refinement.api_key_env`` and read from the environment at startup.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, NotRequired, TypedDict

ConfigSchemaVersion: Final[int] = 1

SUPPORTED_STYLES: Final[tuple[str, ...]] = ("realistic", "stylized")
SUPPORTED_LOG_FORMATS: Final[tuple[str, ...]] = ("json", "console")
SUPPORTED_LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

_ENV_NAME_PATTERN = re.compile(r"^[A-Z_][A-Z0-9_]*$")
_CAMEL_CASE_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")

_SENSITIVE_KEY_TOKENS: Final[frozenset[str]] = frozenset(
    {"secret", "token", "password", "passwd", "credential", "credentials", "apikey"}
)
_SENSITIVE_KEY_PHRASES: Final[tuple[str, ...]] = ("api_key", "access_key", "private_key")

PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("resolution", "mapping_path"),
    ("resolution", "bone_mapping_path"),
)


class MetaConfig(TypedDict):
    schema_version: int


class BlendingConfig(TypedDict):
    distance_epsilon: float
    softmax_temperature: float
    materiality_threshold: float
    default_distance: float
    extreme_magnitude: float


class RefinementConfig(TypedDict):
    enabled: bool
    base_url: NotRequired[str]
    endpoint: str
    api_key_env: NotRequired[str]
    timeout_seconds: float
    max_retries: int
    initial_delay_seconds: float
    multiplier: float
    max_delay_seconds: float
    jitter_ratio: float


class StreamingConfig(TypedDict):
    batch_size: int
    frame_interval_seconds: float
    enable_smoothing: bool
    smoothing_steps: int


class ResolutionConfig(TypedDict):
    mapping_path: NotRequired[str]
    bone_mapping_path: NotRequired[str]
    default_style: str
    refine_enabled: bool


class ObservabilityConfig(TypedDict):
    log_level: str
    log_format: str
    redact_secrets: bool


class MorphologyConfig(TypedDict):
    meta: MetaConfig
    blending: BlendingConfig
    refinement: RefinementConfig
    streaming: StreamingConfig
    resolution: ResolutionConfig
    observability: ObservabilityConfig


DEFAULT_CONFIG: Final[MorphologyConfig] = {
    "meta": {"schema_version": ConfigSchemaVersion},
    "blending": {
        "distance_epsilon": 0.1,
        "softmax_temperature": 2.0,
        "materiality_threshold": 0.01,
        "default_distance": 1.0,
        "extreme_magnitude": 3.0,
    },
    "refinement": {
        "enabled": False,
        "endpoint": "/morphology/refine",
        "timeout_seconds": 30.0,
        "max_retries": 2,
        "initial_delay_seconds": 0.25,
        "multiplier": 2.0,
        "max_delay_seconds": 4.0,
        "jitter_ratio": 0.0,
    },
    "streaming": {
        "batch_size": 8,
        "frame_interval_seconds": 0.0,
        "enable_smoothing": True,
        "smoothing_steps": 3,
    },
    "resolution": {
        "default_style": "realistic",
        "refine_enabled": True,
    },
    "observability": {
        "log_level": "INFO",
        "log_format": "json",
        "redact_secrets": True,
    },
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """Single structured validation failure."""

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    """Validation result with normalized config when no issues were found."""

    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Raised when strict config validation fails."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        if not self.issues:
            rendered = "unknown validation failure"
        else:
            rendered = "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
        super().__init__(f"invalid config:\n{rendered}")


class _IssueCollector:
    __slots__ = ("_items",)

    def __init__(self) -> None:
        self._items: list[ConfigValidationIssue] = []

    def add(self, path: str, message: str) -> None:
        self._items.append(ConfigValidationIssue(path=path, message=message))

    def items(self) -> tuple[ConfigValidationIssue, ...]:
        return tuple(self._items)

    @property
    def has_issues(self) -> bool:
        return bool(self._items)


_SectionValidator = Callable[[dict[str, object], str, _IssueCollector], dict[str, Any]]


def default_config() -> MorphologyConfig:
    """Return a deep copy of the built-in defaults."""

    return copy.deepcopy(DEFAULT_CONFIG)


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deterministically deep-merge ``overlay`` onto ``base``."""

    merged = _deep_copy_mapping(base)
    _merge_into(merged, overlay)
    return merged


def validate_config(config: Mapping[str, object] | object) -> ConfigValidationResult:
    """Validate config and return structured issues with deterministic paths."""

    issues = _IssueCollector()
    root = _as_object(config, "<root>", issues)
    if root is None:
        return ConfigValidationResult(config=None, issues=issues.items())

    _reject_unknown_keys(root, set(_SECTIONS), "", issues)
    normalized: dict[str, Any] = {}
    for key, validator in _SECTIONS.items():
        raw = root.get(key)
        if raw is None:
            issues.add(key, "missing required section")
            continue
        section = _as_object(raw, key, issues)
        if section is None:
            continue
        normalized[key] = validator(section, key, issues)

    if issues.has_issues:
        return ConfigValidationResult(config=None, issues=issues.items())
    return ConfigValidationResult(config=normalized, issues=())


def assert_valid_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Validate config and raise ``ConfigValidationError`` on failure."""

    result = validate_config(config)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def redact_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Return a redacted copy suitable for logs and ``avatar-morph config`` output."""

    if not isinstance(config, Mapping):
        return {}
    redacted = _redact_value(config, parent_key=None)
    if isinstance(redacted, dict):
        return redacted
    return {}


def _validate_meta(payload: dict[str, object], path: str, issues: _IssueCollector) -> dict[str, Any]:
    _reject_unknown_keys(payload, {"schema_version"}, path, issues)
    out: dict[str, Any] = {}
    version = _as_int(payload.get("schema_version"), _join(path, "schema_version"), issues)
    if version is not None:
        if version != ConfigSchemaVersion:
            issues.add(
                _join(path, "schema_version"),
                f"unsupported schema version {version}; expected {ConfigSchemaVersion}",
            )
        out["schema_version"] = version
    return out


def _validate_blending(
    payload: dict[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    allowed = set(DEFAULT_CONFIG["blending"])
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)
    out: dict[str, Any] = {}
    for key in ("distance_epsilon", "softmax_temperature", "extreme_magnitude"):
        value = _as_float(payload.get(key), _join(path, key), issues, exclusive_minimum=0.0)
        if value is not None:
            out[key] = value
    default_distance = _as_float(
        payload.get("default_distance"), _join(path, "default_distance"), issues, minimum=0.0
    )
    if default_distance is not None:
        out["default_distance"] = default_distance
    threshold = _as_float(
        payload.get("materiality_threshold"),
        _join(path, "materiality_threshold"),
        issues,
        minimum=0.0,
    )
    if threshold is not None:
        if threshold >= 1.0:
            issues.add(_join(path, "materiality_threshold"), "must be < 1.0")
        out["materiality_threshold"] = threshold
    return out


def _validate_refinement(
    payload: dict[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    required = set(DEFAULT_CONFIG["refinement"])
    _reject_unknown_keys(payload, required | {"base_url", "api_key_env"}, path, issues)
    _require_keys(payload, required, path, issues)
    out: dict[str, Any] = {}

    enabled = _as_bool(payload.get("enabled"), _join(path, "enabled"), issues)
    if enabled is not None:
        out["enabled"] = enabled
    endpoint = _as_str(payload.get("endpoint"), _join(path, "endpoint"), issues)
    if endpoint is not None:
        out["endpoint"] = endpoint
    if "base_url" in payload:
        base_url = _as_str(payload["base_url"], _join(path, "base_url"), issues)
        if base_url is not None:
            if not base_url.startswith(("http://", "https://")):
                issues.add(_join(path, "base_url"), "must start with http:// or https://")
            out["base_url"] = base_url
    elif enabled:
        issues.add(_join(path, "base_url"), "required when refinement is enabled")
    if "api_key_env" in payload:
        env_name = _as_env_name(payload["api_key_env"], _join(path, "api_key_env"), issues)
        if env_name is not None:
            out["api_key_env"] = env_name

    timeout = _as_float(
        payload.get("timeout_seconds"),
        _join(path, "timeout_seconds"),
        issues,
        exclusive_minimum=0.0,
    )
    if timeout is not None:
        out["timeout_seconds"] = timeout
    retries = _as_int(payload.get("max_retries"), _join(path, "max_retries"), issues, minimum=0)
    if retries is not None:
        out["max_retries"] = retries
    for key in ("initial_delay_seconds", "max_delay_seconds"):
        value = _as_float(payload.get(key), _join(path, key), issues, minimum=0.0)
        if value is not None:
            out[key] = value
    multiplier = _as_float(
        payload.get("multiplier"), _join(path, "multiplier"), issues, minimum=1.0
    )
    if multiplier is not None:
        out["multiplier"] = multiplier
    jitter = _as_float(payload.get("jitter_ratio"), _join(path, "jitter_ratio"), issues, minimum=0.0)
    if jitter is not None:
        if jitter > 1.0:
            issues.add(_join(path, "jitter_ratio"), "must be <= 1.0")
        out["jitter_ratio"] = jitter

    initial = out.get("initial_delay_seconds")
    ceiling = out.get("max_delay_seconds")
    if initial is not None and ceiling is not None and initial > ceiling:
        issues.add(_join(path, "initial_delay_seconds"), "must be <= max_delay_seconds")
    return out


def _validate_streaming(
    payload: dict[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    allowed = set(DEFAULT_CONFIG["streaming"])
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)
    out: dict[str, Any] = {}
    for key in ("batch_size", "smoothing_steps"):
        value = _as_int(payload.get(key), _join(path, key), issues, minimum=1)
        if value is not None:
            out[key] = value
    interval = _as_float(
        payload.get("frame_interval_seconds"),
        _join(path, "frame_interval_seconds"),
        issues,
        minimum=0.0,
    )
    if interval is not None:
        out["frame_interval_seconds"] = interval
    smoothing = _as_bool(payload.get("enable_smoothing"), _join(path, "enable_smoothing"), issues)
    if smoothing is not None:
        out["enable_smoothing"] = smoothing
    return out


def _validate_resolution(
    payload: dict[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    required = set(DEFAULT_CONFIG["resolution"])
    _reject_unknown_keys(payload, required | {"mapping_path", "bone_mapping_path"}, path, issues)
    _require_keys(payload, required, path, issues)
    out: dict[str, Any] = {}
    for key in ("mapping_path", "bone_mapping_path"):
        if key in payload:
            value = _as_path_text(payload[key], _join(path, key), issues)
            if value is not None:
                out[key] = value
    style = _as_enum(
        payload.get("default_style"),
        _join(path, "default_style"),
        issues,
        allowed_values=SUPPORTED_STYLES,
    )
    if style is not None:
        out["default_style"] = style
    refine = _as_bool(payload.get("refine_enabled"), _join(path, "refine_enabled"), issues)
    if refine is not None:
        out["refine_enabled"] = refine
    return out


def _validate_observability(
    payload: dict[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    allowed = set(DEFAULT_CONFIG["observability"])
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)
    out: dict[str, Any] = {}
    raw_level = payload.get("log_level")
    level = _as_enum(
        raw_level.upper() if isinstance(raw_level, str) else raw_level,
        _join(path, "log_level"),
        issues,
        allowed_values=SUPPORTED_LOG_LEVELS,
    )
    if level is not None:
        out["log_level"] = level
    log_format = _as_enum(
        payload.get("log_format"),
        _join(path, "log_format"),
        issues,
        allowed_values=SUPPORTED_LOG_FORMATS,
    )
    if log_format is not None:
        out["log_format"] = log_format
    redact = _as_bool(payload.get("redact_secrets"), _join(path, "redact_secrets"), issues)
    if redact is not None:
        out["redact_secrets"] = redact
    return out


_SECTIONS: Final[dict[str, _SectionValidator]] = {
    "meta": _validate_meta,
    "blending": _validate_blending,
    "refinement": _validate_refinement,
    "streaming": _validate_streaming,
    "resolution": _validate_resolution,
    "observability": _validate_observability,
}


def _as_object(value: object, path: str, issues: _IssueCollector) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.add(path, f"expected object, got {type(value).__name__}")
        return None
    out: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            issues.add(path, f"object key must be string, got {type(key).__name__}")
            continue
        out[key] = item
    return out


def _as_str(value: object, path: str, issues: _IssueCollector) -> str | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    parsed = value.strip()
    if not parsed:
        issues.add(path, "must not be empty")
        return None
    return parsed


def _as_path_text(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if "\x00" in parsed:
        issues.add(path, "must not contain NUL bytes")
        return None
    return parsed


def _as_env_name(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if not _ENV_NAME_PATTERN.fullmatch(parsed):
        issues.add(path, "must be an env var name (example: AVATAR_MORPH_REFINEMENT_KEY)")
        return None
    return parsed


def _as_bool(value: object, path: str, issues: _IssueCollector) -> bool | None:
    if isinstance(value, bool):
        return value
    issues.add(path, f"expected boolean, got {type(value).__name__}")
    return None


def _as_int(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: int | None = None,
) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        issues.add(path, f"expected integer, got {type(value).__name__}")
        return None
    if minimum is not None and value < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return value


def _as_float(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: float | None = None,
    exclusive_minimum: float | None = None,
) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        issues.add(path, f"expected number, got {type(value).__name__}")
        return None
    parsed = float(value)
    if not math.isfinite(parsed):
        issues.add(path, "must be finite")
        return None
    if minimum is not None and parsed < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    if exclusive_minimum is not None and parsed <= exclusive_minimum:
        issues.add(path, f"must be > {exclusive_minimum}")
        return None
    return parsed


def _as_enum(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    allowed_values: tuple[str, ...],
) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if parsed not in allowed_values:
        expected = ", ".join(sorted(allowed_values))
        issues.add(path, f"invalid value {parsed!r}; expected one of: {expected}")
        return None
    return parsed


def _reject_unknown_keys(
    payload: Mapping[str, object],
    allowed: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(payload):
        if key in allowed:
            continue
        key_path = _join(path, key)
        if _looks_sensitive_key(key):
            issues.add(
                key_path,
                "embedded secret values are forbidden; use an *_env key with an env var name",
            )
        else:
            issues.add(key_path, "unknown field")


def _require_keys(
    payload: Mapping[str, object],
    required: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(required):
        if key not in payload:
            issues.add(_join(path, key), "missing required field")


def _looks_sensitive_key(key: str) -> bool:
    normalized = _normalize_key(key)
    if normalized.endswith("_env"):
        return False
    if any(phrase in normalized for phrase in _SENSITIVE_KEY_PHRASES):
        return True
    tokens = tuple(token for token in normalized.split("_") if token)
    return any(token in _SENSITIVE_KEY_TOKENS for token in tokens)


def _normalize_key(key: str) -> str:
    with_boundaries = _CAMEL_CASE_BOUNDARY.sub(r"\1_\2", key.strip())
    return _NON_ALNUM.sub("_", with_boundaries.lower()).strip("_")


def _join(path: str, key: str) -> str:
    if not path:
        return key
    return f"{path}.{key}"


def _merge_into(target: dict[str, Any], overlay: Mapping[str, object]) -> None:
    for key in sorted(overlay):
        value = overlay[key]
        if isinstance(value, Mapping):
            existing = target.get(key)
            if isinstance(existing, dict):
                _merge_into(existing, value)
            else:
                nested: dict[str, Any] = {}
                _merge_into(nested, value)
                target[key] = nested
        else:
            target[key] = copy.deepcopy(value)


def _deep_copy_mapping(value: Mapping[str, object]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for key in sorted(value):
        item = value[key]
        out[key] = _deep_copy_mapping(item) if isinstance(item, Mapping) else copy.deepcopy(item)
    return out


def _redact_value(value: object, parent_key: str | None) -> object:
    if isinstance(value, Mapping):
        out: dict[str, object] = {}
        for key in sorted(value):
            if _key_is_sensitive_for_redaction(key):
                out[key] = "<redacted>"
            else:
                out[key] = _redact_value(value[key], key)
        return out
    if isinstance(value, (list, tuple)):
        return [_redact_value(item, parent_key) for item in value]
    return value


def _key_is_sensitive_for_redaction(key: str) -> bool:
    normalized = _normalize_key(key)
    if normalized.endswith("_env"):
        return True
    return _looks_sensitive_key(normalized)


__all__ = [
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "MorphologyConfig",
    "PATH_FIELDS",
    "SUPPORTED_STYLES",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "redact_config",
    "validate_config",
]
