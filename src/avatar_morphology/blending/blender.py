"""Weighted interpolation of archetype candidates.

Weighting runs in three stages, all kept deliberately: inverse-distance weights are
normalized, smoothed through a temperature softmax so one very close candidate does
not take the whole blend, then immaterial weights are dropped and the remainder
renormalized.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Final

import structlog

from avatar_morphology.domain.keys import canonicalize
from avatar_morphology.domain.models import ArchetypeCandidate, BlendResult, finite_items
from avatar_morphology.utils.options import float_option

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

NEUTRAL_LIMB_MASS: Final[float] = 1.0

_CONFIDENCE_CEILING: Final[float] = 0.95
_CONFIDENCE_FLOOR: Final[float] = 0.1
_CANDIDATE_BONUS_STEP: Final[float] = 0.05
_CANDIDATE_BONUS_CAP: Final[float] = 0.2
_ENTROPY_BONUS: Final[float] = 0.1
_EXTREME_VALUE_PENALTY: Final[float] = 0.9
_DIVERSITY_WEIGHT: Final[float] = 0.1
_DIVERSITY_STEP: Final[float] = 0.05
_DIVERSITY_CAP: Final[float] = 0.2


class EmptyInputError(ValueError):
    """Raised when the blender receives no candidates."""


@dataclass(frozen=True, slots=True)
class BlendSettings:
    """Tunable constants of the weighting pipeline."""

    distance_epsilon: float = 0.1
    softmax_temperature: float = 2.0
    materiality_threshold: float = 0.01
    default_distance: float = 1.0
    extreme_magnitude: float = 3.0

    def __post_init__(self) -> None:
        if self.distance_epsilon <= 0:
            raise ValueError("distance_epsilon must be > 0")
        if self.softmax_temperature <= 0:
            raise ValueError("softmax_temperature must be > 0")
        if not (0.0 <= self.materiality_threshold < 1.0):
            raise ValueError("materiality_threshold must be in [0.0, 1.0)")
        if self.default_distance < 0:
            raise ValueError("default_distance must be >= 0")
        if self.extreme_magnitude <= 0:
            raise ValueError("extreme_magnitude must be > 0")

    @classmethod
    def from_config(cls, section: Mapping[str, object]) -> BlendSettings:
        defaults = cls()
        return cls(
            distance_epsilon=float_option(section, "distance_epsilon", defaults.distance_epsilon),
            softmax_temperature=float_option(
                section, "softmax_temperature", defaults.softmax_temperature
            ),
            materiality_threshold=float_option(
                section, "materiality_threshold", defaults.materiality_threshold
            ),
            default_distance=float_option(section, "default_distance", defaults.default_distance),
            extreme_magnitude=float_option(
                section, "extreme_magnitude", defaults.extreme_magnitude
            ),
        )


class Blender:
    """Combine N archetype candidates into one shape and limb-mass set."""

    def __init__(self, settings: BlendSettings | None = None, *, logger: Any | None = None) -> None:
        self._settings = settings if settings is not None else BlendSettings()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def settings(self) -> BlendSettings:
        return self._settings

    def blend(self, candidates: Sequence[ArchetypeCandidate]) -> BlendResult:
        if not candidates:
            raise EmptyInputError("cannot blend an empty candidate list")

        distances = [self._resolve_distance(candidate) for candidate in candidates]
        weights = self.compute_weights(distances)
        weighted = [
            (candidate, weight)
            for candidate, weight in zip(candidates, weights, strict=True)
            if weight > 0.0
        ]

        shape_values = _weighted_average(
            [(_canonical_values(candidate.shape_values), weight) for candidate, weight in weighted],
            missing=0.0,
        )
        limb_masses = _weighted_average(
            [(_canonical_values(candidate.limb_masses), weight) for candidate, weight in weighted],
            missing=NEUTRAL_LIMB_MASS,
        )

        kept_weights = tuple((candidate.id, weight) for candidate, weight in weighted)
        confidence = self._confidence(distances, [weight for _, weight in kept_weights])
        quality = self._quality(shape_values, [weight for _, weight in kept_weights])

        self._logger.debug(
            "blend_weights_computed",
            candidates=len(candidates),
            kept=len(kept_weights),
            weights={item_id: round(weight, 6) for item_id, weight in kept_weights},
            confidence=round(confidence, 4),
            quality_score=round(quality, 4),
        )
        return BlendResult(
            shape_values=shape_values,
            limb_masses=limb_masses,
            weights=kept_weights,
            confidence=confidence,
            quality_score=quality,
        )

    def compute_weights(self, distances: Sequence[float]) -> list[float]:
        """Return one weight per distance, zero for dropped entries, summing to 1."""

        if not distances:
            raise EmptyInputError("cannot weight an empty candidate list")
        if len(distances) == 1:
            return [1.0]

        settings = self._settings
        inverse = [1.0 / (settings.distance_epsilon + distance) for distance in distances]
        normalized = _normalize(inverse)

        # Normalized weights lie in [0, 1], so exp() cannot overflow here.
        softened = _normalize(
            [math.exp(weight / settings.softmax_temperature) for weight in normalized]
        )

        material = [
            weight if weight >= settings.materiality_threshold else 0.0 for weight in softened
        ]
        if not any(material):
            return softened
        return _normalize(material)

    def _resolve_distance(self, candidate: ArchetypeCandidate) -> float:
        distance = candidate.distance
        if distance is None or not math.isfinite(distance) or distance < 0:
            return self._settings.default_distance
        return float(distance)

    def _confidence(self, distances: Sequence[float], weights: Sequence[float]) -> float:
        average_distance = sum(distances) / len(distances)
        base = max(_CONFIDENCE_FLOOR, 1.0 / (1.0 + average_distance))
        count_bonus = min(_CANDIDATE_BONUS_CAP, len(distances) * _CANDIDATE_BONUS_STEP)
        entropy_ratio = _entropy_ratio(weights)
        return min(_CONFIDENCE_CEILING, base + count_bonus + entropy_ratio * _ENTROPY_BONUS)

    def _quality(self, shape_values: Mapping[str, float], weights: Sequence[float]) -> float:
        consistency = 1.0
        for value in shape_values.values():
            if abs(value) > self._settings.extreme_magnitude:
                consistency *= _EXTREME_VALUE_PENALTY

        effective = sum(1 for weight in weights if weight > _DIVERSITY_WEIGHT)
        diversity_bonus = min(_DIVERSITY_CAP, effective * _DIVERSITY_STEP) if effective >= 2 else 0.0
        return min(1.0, max(0.1, consistency + diversity_bonus))


def _normalize(values: Sequence[float]) -> list[float]:
    total = math.fsum(values)
    if total <= 0.0 or not math.isfinite(total):
        return [1.0 / len(values)] * len(values)
    return [value / total for value in values]


def _entropy_ratio(weights: Sequence[float]) -> float:
    if len(weights) <= 1:
        return 0.0
    entropy = -math.fsum(weight * math.log(weight) for weight in weights if weight > 0.0)
    return entropy / math.log(len(weights))


def _canonical_values(values: Mapping[str, float]) -> dict[str, float]:
    canonical: dict[str, float] = {}
    for raw_key, value in finite_items(values):
        key = canonicalize(raw_key)
        if key:
            canonical[key] = value
    return canonical


def _weighted_average(
    entries: Sequence[tuple[Mapping[str, float], float]],
    *,
    missing: float,
) -> dict[str, float]:
    keys: list[str] = []
    seen: set[str] = set()
    for values, _ in entries:
        for key in values:
            if key not in seen:
                seen.add(key)
                keys.append(key)

    return {
        key: math.fsum(values.get(key, missing) * weight for values, weight in entries)
        for key in keys
    }


__all__ = ["NEUTRAL_LIMB_MASS", "BlendSettings", "Blender", "EmptyInputError"]
