"""Core value types shared across the resolution pipeline."""

from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from types import MappingProxyType
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterable


class Gender(StrEnum):
    """Gender section selector for mapping tables."""

    MASCULINE = "masculine"
    FEMININE = "feminine"

    @classmethod
    def parse(cls, value: str | Gender) -> Gender:
        if isinstance(value, Gender):
            return value
        if not isinstance(value, str):
            raise ValueError(f"gender must be a string, got {type(value).__name__}")
        token = value.strip().lower()
        if token in {"masculine", "male", "m"}:
            return cls.MASCULINE
        if token in {"feminine", "female", "f"}:
            return cls.FEMININE
        raise ValueError(f"unsupported gender: {value!r}")

    @property
    def other(self) -> Gender:
        return Gender.FEMININE if self is Gender.MASCULINE else Gender.MASCULINE


class StreamPriority(StrEnum):
    """Application tier of a streamed morph target; lower rank streams first."""

    STRUCTURAL = "structural"
    DETAIL = "detail"
    FINE = "fine"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    StreamPriority.STRUCTURAL: 0,
    StreamPriority.DETAIL: 1,
    StreamPriority.FINE: 2,
}


def _freeze(values: Mapping[str, float] | None) -> Mapping[str, float]:
    return MappingProxyType(dict(values or {}))


@dataclass(frozen=True, slots=True)
class ValueRange:
    """Closed numeric interval; ``(0, 0)`` marks a structurally disabled key."""

    minimum: float
    maximum: float

    def __post_init__(self) -> None:
        minimum = float(self.minimum)
        maximum = float(self.maximum)
        if not (math.isfinite(minimum) and math.isfinite(maximum)):
            raise ValueError("range bounds must be finite")
        if minimum > maximum:
            raise ValueError(f"range minimum {minimum} exceeds maximum {maximum}")
        object.__setattr__(self, "minimum", minimum)
        object.__setattr__(self, "maximum", maximum)

    @property
    def is_banned(self) -> bool:
        return self.minimum == 0.0 and self.maximum == 0.0

    def contains(self, value: float) -> bool:
        return self.minimum <= value <= self.maximum

    def clamp(self, value: float) -> float:
        return min(self.maximum, max(self.minimum, value))

    def nearest_to_zero(self) -> float:
        """Zero when admissible, otherwise the bound closest to zero."""

        if self.contains(0.0):
            return 0.0
        return self.minimum if abs(self.minimum) <= abs(self.maximum) else self.maximum

    def intersect(self, other: ValueRange) -> ValueRange | None:
        minimum = max(self.minimum, other.minimum)
        maximum = min(self.maximum, other.maximum)
        if minimum > maximum:
            return None
        return ValueRange(minimum, maximum)

    def to_dict(self) -> dict[str, float]:
        return {"min": self.minimum, "max": self.maximum}


@dataclass(frozen=True, slots=True)
class GenderPolicy:
    """Allow-list and numeric bounds for one gender of one mapping version."""

    gender: Gender
    mapping_version: str
    required_keys: frozenset[str]
    optional_keys: frozenset[str]
    ranges: Mapping[str, ValueRange]
    limb_ranges: Mapping[str, ValueRange] = field(default_factory=dict)

    def __post_init__(self) -> None:
        overlap = self.required_keys & self.optional_keys
        if overlap:
            raise ValueError(f"keys cannot be both required and optional: {sorted(overlap)}")
        missing = (self.required_keys | self.optional_keys) - set(self.ranges)
        if missing:
            raise ValueError(f"policy keys missing ranges: {sorted(missing)}")
        object.__setattr__(self, "ranges", MappingProxyType(dict(self.ranges)))
        object.__setattr__(self, "limb_ranges", MappingProxyType(dict(self.limb_ranges)))

    @property
    def allowed_keys(self) -> frozenset[str]:
        return self.required_keys | self.optional_keys

    def range_for(self, key: str) -> ValueRange | None:
        return self.ranges.get(key)

    def is_banned(self, key: str) -> bool:
        value_range = self.ranges.get(key)
        return value_range is not None and value_range.is_banned

    @property
    def banned_keys(self) -> frozenset[str]:
        return frozenset(key for key, value_range in self.ranges.items() if value_range.is_banned)


@dataclass(frozen=True, slots=True)
class ArchetypeCandidate:
    """One scan-matched reference body shape with its distance to the subject."""

    id: str
    name: str
    shape_values: Mapping[str, float]
    limb_masses: Mapping[str, float] = field(default_factory=dict)
    distance: float | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.id, str) or not self.id.strip():
            raise ValueError("candidate id must be a non-empty string")
        object.__setattr__(self, "shape_values", _freeze(self.shape_values))
        object.__setattr__(self, "limb_masses", _freeze(self.limb_masses))

    @classmethod
    def from_payload(cls, payload: Mapping[str, object]) -> ArchetypeCandidate:
        """Build a candidate from a scan payload entry (``morph_values`` spelling accepted)."""

        shape = payload.get("shape_values", payload.get("morph_values", {}))
        limbs = payload.get("limb_masses", {})
        distance = payload.get("distance")
        return cls(
            id=str(payload.get("id", "")),
            name=str(payload.get("name", payload.get("id", ""))),
            shape_values=_numeric_items(shape),
            limb_masses=_numeric_items(limbs),
            distance=float(distance) if isinstance(distance, (int, float)) else None,
        )


@dataclass(frozen=True, slots=True)
class BlendResult:
    """Weighted combination of archetype candidates."""

    shape_values: Mapping[str, float]
    limb_masses: Mapping[str, float]
    weights: tuple[tuple[str, float], ...]
    confidence: float
    quality_score: float

    def __post_init__(self) -> None:
        object.__setattr__(self, "shape_values", _freeze(self.shape_values))
        object.__setattr__(self, "limb_masses", _freeze(self.limb_masses))

    def to_dict(self) -> dict[str, object]:
        return {
            "shape_values": dict(self.shape_values),
            "limb_masses": dict(self.limb_masses),
            "weights": [{"id": item_id, "weight": weight} for item_id, weight in self.weights],
            "confidence": self.confidence,
            "quality_score": self.quality_score,
        }


@dataclass(frozen=True, slots=True)
class ValidatedParameterSet:
    """Authoritative, allow-listed and range-enforced parameter state."""

    shape_values: Mapping[str, float]
    limb_masses: Mapping[str, float]
    rejected_keys: tuple[str, ...] = ()
    banned_keys_forced: tuple[str, ...] = ()
    clamped_keys: tuple[str, ...] = ()
    defaulted_keys: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "shape_values", _freeze(self.shape_values))
        object.__setattr__(self, "limb_masses", _freeze(self.limb_masses))

    @property
    def active_keys_count(self) -> int:
        return sum(1 for value in self.shape_values.values() if abs(value) > 1e-6)

    def to_dict(self) -> dict[str, object]:
        return {
            "shape_values": dict(sorted(self.shape_values.items())),
            "limb_masses": dict(sorted(self.limb_masses.items())),
            "rejected_keys": list(self.rejected_keys),
            "banned_keys_forced": list(self.banned_keys_forced),
            "clamped_keys": list(self.clamped_keys),
            "defaulted_keys": list(self.defaulted_keys),
        }


@dataclass(frozen=True, slots=True)
class BoneScaleTarget:
    """Resolved scale for one skeleton bone; recomputed on every update."""

    bone_id: str
    scale_factor: float
    axis_scale: tuple[float, float, float] = (1.0, 1.0, 1.0)
    source_key: str = ""

    def to_dict(self) -> dict[str, object]:
        return {
            "bone_id": self.bone_id,
            "scale_factor": self.scale_factor,
            "axis_scale": list(self.axis_scale),
            "source_key": self.source_key,
        }


@dataclass(frozen=True, slots=True)
class StreamTask:
    """One morph-target write queued by the stream orchestrator."""

    key: str
    target_name: str
    target_value: float
    priority: StreamPriority


def _numeric_items(values: object) -> dict[str, float]:
    if not isinstance(values, Mapping):
        return {}
    numeric: dict[str, float] = {}
    for key, value in values.items():
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            continue
        numeric[str(key)] = float(value)
    return numeric


def finite_items(values: Mapping[str, float]) -> Iterable[tuple[str, float]]:
    for key, value in values.items():
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            continue
        if math.isfinite(value):
            yield key, float(value)


__all__ = [
    "ArchetypeCandidate",
    "BlendResult",
    "BoneScaleTarget",
    "Gender",
    "GenderPolicy",
    "StreamPriority",
    "StreamTask",
    "ValidatedParameterSet",
    "ValueRange",
    "finite_items",
]
