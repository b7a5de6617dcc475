"""Wire contract of the external refinement service.

Requests and responses travel as snake_case JSON objects. Response parsing is
strict and total: every violation is collected before anything is trusted, and a
single violation rejects the whole response.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING, Final, TypeGuard

from avatar_morphology.refinement.errors import SchemaIssue, SchemaValidationError

if TYPE_CHECKING:
    from avatar_morphology.domain.models import Gender, ValueRange

_OPTIONAL_LIST_FIELDS: Final[tuple[str, ...]] = (
    "envelope_violations",
    "db_violations",
    "missing_keys_added",
    "extra_keys_removed",
)


@dataclass(frozen=True, slots=True)
class UserMeasurements:
    """Subject measurements (centimetres, kilograms) sent as refinement context."""

    height: float = 175.0
    weight: float = 70.0
    bmi: float = 22.0
    waist: float = 80.0
    chest: float = 95.0
    hips: float = 100.0

    def __post_init__(self) -> None:
        for name in ("height", "weight", "bmi", "waist", "chest", "hips"):
            value = float(getattr(self, name))
            if not math.isfinite(value) or value <= 0:
                raise ValueError(f"{name} must be a finite positive number")
            object.__setattr__(self, name, value)

    @classmethod
    def from_payload(cls, payload: Mapping[str, object] | None) -> UserMeasurements:
        defaults = cls()
        if not payload:
            return defaults
        values: dict[str, float] = {}
        for name in ("height", "weight", "bmi", "waist", "chest", "hips"):
            raw = payload.get(name)
            if isinstance(raw, (int, float)) and not isinstance(raw, bool) and raw > 0:
                values[name] = float(raw)
        return cls(**values)

    def to_dict(self) -> dict[str, float]:
        return {
            "height": self.height,
            "weight": self.weight,
            "bmi": self.bmi,
            "waist": self.waist,
            "chest": self.chest,
            "hips": self.hips,
        }


@dataclass(frozen=True, slots=True)
class ClassificationHints:
    """Vision classification labels produced upstream of the resolver."""

    muscularity: str | None = None
    obesity: str | None = None
    morphotype: str | None = None
    level: str | None = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, object] | None) -> ClassificationHints:
        if not payload:
            return cls()
        return cls(
            muscularity=_optional_text(payload.get("muscularity")),
            obesity=_optional_text(payload.get("obesity")),
            morphotype=_optional_text(payload.get("morphotype")),
            level=_optional_text(payload.get("level")),
        )

    def to_dict(self) -> dict[str, str | None]:
        return {
            "muscularity": self.muscularity,
            "obesity": self.obesity,
            "morphotype": self.morphotype,
            "level": self.level,
        }


@dataclass(frozen=True, slots=True)
class RefinementRequest:
    """Payload sent to the refinement service."""

    request_id: str
    gender: Gender
    shape_values: Mapping[str, float]
    limb_masses: Mapping[str, float]
    mapping_version: str
    envelope: Mapping[str, ValueRange] | None = None
    classification: ClassificationHints | None = None
    measurements: UserMeasurements = field(default_factory=UserMeasurements)
    user_id: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.request_id, str) or not self.request_id.strip():
            raise ValueError("request_id must be a non-empty string")
        object.__setattr__(self, "shape_values", MappingProxyType(dict(self.shape_values)))
        object.__setattr__(self, "limb_masses", MappingProxyType(dict(self.limb_masses)))

    def to_payload(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "request_id": self.request_id,
            "resolved_gender": str(self.gender),
            "blend_shape_params": dict(sorted(self.shape_values.items())),
            "blend_limb_masses": dict(sorted(self.limb_masses.items())),
            "mapping_version": self.mapping_version,
            "user_measurements": self.measurements.to_dict(),
        }
        if self.envelope:
            payload["k5_envelope"] = {
                key: value_range.to_dict() for key, value_range in sorted(self.envelope.items())
            }
        if self.classification is not None:
            payload["vision_classification"] = self.classification.to_dict()
        if self.user_id is not None:
            payload["user_id"] = self.user_id
        return payload


@dataclass(frozen=True, slots=True)
class RefinementResponse:
    """Schema-valid refinement response. Values are proposals, not yet validated."""

    refined: bool
    final_shape_values: Mapping[str, float]
    final_limb_masses: Mapping[str, float]
    clamped_keys: tuple[str, ...]
    out_of_range_count: int
    active_keys_count: int
    mapping_version: str
    confidence: float | None = None
    envelope_violations: tuple[str, ...] = ()
    db_violations: tuple[str, ...] = ()
    missing_keys_added: tuple[str, ...] = ()
    extra_keys_removed: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "final_shape_values", MappingProxyType(dict(self.final_shape_values))
        )
        object.__setattr__(
            self, "final_limb_masses", MappingProxyType(dict(self.final_limb_masses))
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "ai_refine": self.refined,
            "final_shape_params": dict(self.final_shape_values),
            "final_limb_masses": dict(self.final_limb_masses),
            "clamped_keys": list(self.clamped_keys),
            "out_of_range_count": self.out_of_range_count,
            "active_keys_count": self.active_keys_count,
            "mapping_version": self.mapping_version,
            "ai_confidence": self.confidence,
            "envelope_violations": list(self.envelope_violations),
            "db_violations": list(self.db_violations),
            "missing_keys_added": list(self.missing_keys_added),
            "extra_keys_removed": list(self.extra_keys_removed),
        }


def parse_refinement_response(payload: object) -> RefinementResponse:
    """Validate ``payload`` against the response contract or raise ``SchemaValidationError``."""

    issues: list[SchemaIssue] = []
    if not isinstance(payload, Mapping):
        raise SchemaValidationError(
            [SchemaIssue("$", f"expected object, got {type(payload).__name__}")]
        )

    refined = payload.get("ai_refine")
    if not isinstance(refined, bool):
        issues.append(SchemaIssue("ai_refine", "must be a boolean"))

    shape_values = _finite_number_map(payload.get("final_shape_params"), "final_shape_params", issues)
    limb_masses = _finite_number_map(payload.get("final_limb_masses"), "final_limb_masses", issues)

    clamped_keys = payload.get("clamped_keys")
    if not isinstance(clamped_keys, list):
        issues.append(SchemaIssue("clamped_keys", "must be an array"))
        clamped_keys = []

    out_of_range = _count(payload.get("out_of_range_count"), "out_of_range_count", issues)
    active_keys = _count(payload.get("active_keys_count"), "active_keys_count", issues)

    mapping_version = payload.get("mapping_version")
    if not isinstance(mapping_version, str) or not mapping_version.strip():
        issues.append(SchemaIssue("mapping_version", "must be a non-empty string"))
        mapping_version = ""

    confidence: float | None = None
    raw_confidence = payload.get("ai_confidence")
    if raw_confidence is not None:
        if not _is_finite_number(raw_confidence):
            issues.append(SchemaIssue("ai_confidence", "must be a finite number when present"))
        else:
            confidence = float(raw_confidence)

    optional_lists: dict[str, tuple[str, ...]] = {}
    for name in _OPTIONAL_LIST_FIELDS:
        raw_list = payload.get(name)
        if raw_list is None:
            optional_lists[name] = ()
            continue
        if not isinstance(raw_list, list):
            issues.append(SchemaIssue(name, "must be an array when present"))
            optional_lists[name] = ()
            continue
        optional_lists[name] = tuple(str(item) for item in raw_list)

    if issues:
        raise SchemaValidationError(issues)

    return RefinementResponse(
        refined=bool(refined),
        final_shape_values=shape_values,
        final_limb_masses=limb_masses,
        clamped_keys=tuple(str(item) for item in clamped_keys),
        out_of_range_count=out_of_range,
        active_keys_count=active_keys,
        mapping_version=str(mapping_version).strip(),
        confidence=confidence,
        envelope_violations=optional_lists["envelope_violations"],
        db_violations=optional_lists["db_violations"],
        missing_keys_added=optional_lists["missing_keys_added"],
        extra_keys_removed=optional_lists["extra_keys_removed"],
    )


def _finite_number_map(value: object, path: str, issues: list[SchemaIssue]) -> dict[str, float]:
    if not isinstance(value, Mapping):
        issues.append(SchemaIssue(path, "must be an object of finite numbers"))
        return {}
    if not value:
        issues.append(SchemaIssue(path, "must not be empty"))
        return {}
    parsed: dict[str, float] = {}
    for key, item in value.items():
        if not _is_finite_number(item):
            issues.append(SchemaIssue(f"{path}.{key}", "must be a finite number"))
            continue
        parsed[str(key)] = float(item)
    return parsed


def _count(value: object, path: str, issues: list[SchemaIssue]) -> int:
    if not _is_finite_number(value):
        issues.append(SchemaIssue(path, "must be a finite number"))
        return 0
    number = float(value)
    if number < 0 or not number.is_integer():
        issues.append(SchemaIssue(path, "must be a non-negative integer"))
        return 0
    return int(number)


def _is_finite_number(value: object) -> TypeGuard[int | float]:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(float(value))
    )


def _optional_text(value: object) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


__all__ = [
    "ClassificationHints",
    "RefinementRequest",
    "RefinementResponse",
    "UserMeasurements",
    "parse_refinement_response",
]
