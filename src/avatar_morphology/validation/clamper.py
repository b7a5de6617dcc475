"""Allow-list and range enforcement for shape values and limb masses.

Nothing in here raises for extraneous or out-of-range input: rejections, bans and
clamps are expected on every resolution and are reported through the returned
``ValidatedParameterSet``.
"""

from __future__ import annotations

import dataclasses
import math
from collections.abc import Mapping
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Final, TypeAlias, TypeGuard

import structlog

from avatar_morphology.blending.blender import NEUTRAL_LIMB_MASS
from avatar_morphology.domain.keys import MorphKey, canonicalize
from avatar_morphology.domain.models import Gender, ValidatedParameterSet, ValueRange

if TYPE_CHECKING:
    from avatar_morphology.domain.models import GenderPolicy

StructuralEnvelope: TypeAlias = Mapping[str, ValueRange]

REALISTIC_SOFT_CAP: Final[float] = 0.05
FEMININE_FANTASY_KEYS: Final[tuple[str, ...]] = (
    MorphKey.SUPER_BREAST,
    MorphKey.BREASTS_SMALL,
    MorphKey.BREASTS_SAG,
    MorphKey.PREGNANT,
    MorphKey.ANIME_WAIST,
    MorphKey.DOLL_BODY,
    MorphKey.ANIME_PROPORTION,
    MorphKey.ANIME_NECK,
    MorphKey.NIPPLES,
)

_SOFT_CAP_ACTIVATION: Final[float] = 0.01
_SOFT_CAP_TOLERANCE: Final[float] = 0.001


class AvatarStyle(StrEnum):
    REALISTIC = "realistic"
    STYLIZED = "stylized"


class Validator:
    """Two-pass validator: allow-listing first, then ban/clamp."""

    def __init__(self, *, logger: Any | None = None) -> None:
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def validate(
        self,
        values: Mapping[str, float],
        policy: GenderPolicy,
        *,
        limb_masses: Mapping[str, float] | None = None,
        envelope: StructuralEnvelope | None = None,
    ) -> ValidatedParameterSet:
        rejected: list[str] = []

        allowed = policy.allowed_keys
        admitted: dict[str, float] = {}
        for raw_key, value in values.items():
            key = canonicalize(raw_key)
            if not key or key not in allowed or not _is_finite_number(value):
                rejected.append(str(raw_key))
                continue
            admitted[key] = float(value)

        shape_values: dict[str, float] = {}
        banned: list[str] = []
        clamped: list[str] = []
        for key, value in admitted.items():
            if policy.is_banned(key):
                shape_values[key] = 0.0
                banned.append(key)
                continue
            value_range = self._effective_range(key, policy, envelope)
            bounded = value_range.clamp(value)
            if bounded != value:
                clamped.append(key)
            shape_values[key] = bounded

        limbs: dict[str, float] = {}
        for raw_key, value in (limb_masses or {}).items():
            key = canonicalize(raw_key)
            limb_range = policy.limb_ranges.get(key) if key else None
            if limb_range is None or not _is_finite_number(value):
                rejected.append(str(raw_key))
                continue
            bounded = limb_range.clamp(float(value))
            if bounded != value:
                clamped.append(key)
            limbs[key] = bounded

        result = ValidatedParameterSet(
            shape_values=shape_values,
            limb_masses=limbs,
            rejected_keys=tuple(rejected),
            banned_keys_forced=tuple(banned),
            clamped_keys=tuple(clamped),
        )
        self._logger.info(
            "validation_completed",
            gender=str(policy.gender),
            mapping_version=policy.mapping_version,
            allowlisted=len(shape_values),
            limb_masses=len(limbs),
            rejected=len(rejected),
            banned_forced=len(banned),
            clamped=len(clamped),
            envelope_keys=len(envelope or {}),
        )
        if rejected:
            self._logger.warning("validation_keys_rejected", keys=sorted(rejected))
        return result

    def ensure_complete(
        self,
        validated: ValidatedParameterSet,
        policy: GenderPolicy,
    ) -> ValidatedParameterSet:
        """Fill required shape keys and known limb masses the resolution did not produce.

        Shape keys default to zero (or the bound nearest zero); limb masses default to
        the neutral mass clamped into the limb range.
        """

        missing = sorted(policy.required_keys - set(validated.shape_values))
        missing_limbs = sorted(set(policy.limb_ranges) - set(validated.limb_masses))
        if not missing and not missing_limbs:
            return validated

        shape_values = dict(validated.shape_values)
        for key in missing:
            shape_values[key] = policy.ranges[key].nearest_to_zero()
        limb_masses = dict(validated.limb_masses)
        for key in missing_limbs:
            limb_masses[key] = policy.limb_ranges[key].clamp(NEUTRAL_LIMB_MASS)
        self._logger.debug("validation_defaults_filled", keys=missing, limb_keys=missing_limbs)
        return dataclasses.replace(
            validated,
            shape_values=shape_values,
            limb_masses=limb_masses,
            defaulted_keys=(*validated.defaulted_keys, *missing, *missing_limbs),
        )

    def apply_style_constraints(
        self,
        validated: ValidatedParameterSet,
        policy: GenderPolicy,
        style: AvatarStyle | str = AvatarStyle.REALISTIC,
    ) -> tuple[ValidatedParameterSet, tuple[str, ...]]:
        """Soft-cap feminine/fantasy shapes on realistic masculine avatars."""

        if AvatarStyle(style) is not AvatarStyle.REALISTIC or policy.gender is not Gender.MASCULINE:
            return validated, ()

        shape_values = dict(validated.shape_values)
        adjusted: list[str] = []
        for key in FEMININE_FANTASY_KEYS:
            value = shape_values.get(key)
            if value is None or abs(value) <= _SOFT_CAP_ACTIVATION:
                continue
            capped = min(value, REALISTIC_SOFT_CAP)
            value_range = policy.range_for(key)
            if value_range is not None:
                capped = value_range.clamp(capped)
            if abs(value - capped) > _SOFT_CAP_TOLERANCE:
                shape_values[key] = capped
                adjusted.append(str(key))

        if not adjusted:
            return validated, ()
        self._logger.info("style_constraints_applied", style=str(style), keys=adjusted)
        return dataclasses.replace(validated, shape_values=shape_values), tuple(adjusted)

    def _effective_range(
        self,
        key: str,
        policy: GenderPolicy,
        envelope: StructuralEnvelope | None,
    ) -> ValueRange:
        value_range = policy.ranges[key]
        if envelope is None:
            return value_range
        bound = envelope.get(key)
        if bound is None:
            return value_range
        narrowed = value_range.intersect(bound)
        if narrowed is None:
            self._logger.warning(
                "validation_envelope_disjoint",
                key=key,
                policy_range=value_range.to_dict(),
                envelope_range=bound.to_dict(),
            )
            return value_range
        return narrowed


def parse_envelope(payload: object) -> dict[str, ValueRange]:
    """Parse ``{key: {min, max}}`` into canonical ranges; malformed entries are skipped."""

    if not isinstance(payload, Mapping):
        return {}
    envelope: dict[str, ValueRange] = {}
    for raw_key, raw_range in payload.items():
        key = canonicalize(str(raw_key))
        if not key or not isinstance(raw_range, Mapping):
            continue
        minimum = _finite_float(raw_range.get("min"))
        maximum = _finite_float(raw_range.get("max"))
        if minimum is None or maximum is None or minimum > maximum:
            continue
        envelope[key] = ValueRange(minimum, maximum)
    return envelope


def _is_finite_number(value: object) -> TypeGuard[int | float]:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(float(value))
    )


def _finite_float(value: object) -> float | None:
    if _is_finite_number(value):
        return float(value)
    return None


__all__ = [
    "FEMININE_FANTASY_KEYS",
    "REALISTIC_SOFT_CAP",
    "AvatarStyle",
    "StructuralEnvelope",
    "Validator",
    "parse_envelope",
]
