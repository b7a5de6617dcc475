"""Per-bone scale factors from limb masses, shape values and the bone mapping."""

from __future__ import annotations

import math
from collections.abc import Iterable, Mapping
from typing import Any

import structlog

from avatar_morphology.domain.keys import LimbKey, canonicalize_mapping
from avatar_morphology.domain.models import BoneScaleTarget, finite_items
from avatar_morphology.skeleton.config import (
    AxisScale,
    BoneMapping,
    BoneMappingConfig,
    default_bone_mapping,
)


class BoneScaler:
    """Pure function object from masses and shapes to ``BoneScaleTarget`` values.

    Performs no skeleton I/O; the caller owns writing transforms. A bone targeted
    by several mappings takes the largest requested scale, never the product.
    """

    def __init__(self, config: BoneMappingConfig, *, logger: Any | None = None) -> None:
        self._config = config
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def config(self) -> BoneMappingConfig:
        return self._config

    def compute_bone_scales(
        self,
        limb_masses: Mapping[str, float],
        shape_values: Mapping[str, float],
        bone_names: Iterable[str],
    ) -> tuple[BoneScaleTarget, ...]:
        masses = self.resolve_masses(limb_masses)
        shapes = dict(finite_items(canonicalize_mapping(shape_values)))
        enabled = self.enabled_mappings(shapes)
        multipliers = self._group_multipliers(shapes)
        bones = [bone for bone in dict.fromkeys(bone_names) if self._config.selectors.admits(bone)]

        resolved: dict[str, BoneScaleTarget] = {}
        for mapping in enabled:
            mass = masses.get(mapping.key)
            if mass is None:
                continue
            factor = mapping.scale_for(mass)
            for group_name in mapping.groups:
                group = self._config.bone_groups[group_name]
                multiplier = multipliers.get(group_name, AxisScale())
                for bone in bones:
                    if not group.matches(bone):
                        continue
                    target = _bone_target(bone, mapping, factor, multiplier)
                    current = resolved.get(bone)
                    if current is None or target.scale_factor > current.scale_factor:
                        resolved[bone] = target

        gate = self.gate_factor(masses)
        if gate is not None:
            resolved = {bone: _apply_gate(target, gate) for bone, target in resolved.items()}

        targets = tuple(resolved[bone] for bone in sorted(resolved))
        self._logger.info(
            "bone_scales_computed",
            bones=len(targets),
            candidates=len(bones),
            enabled_keys=[mapping.key for mapping in enabled],
            gate=gate,
            rig_id=self._config.rig_id,
        )
        return targets

    def resolve_masses(self, limb_masses: Mapping[str, float]) -> dict[str, float]:
        """Supplied finite masses plus any derived mass whose inputs are all present."""

        masses = dict(finite_items(canonicalize_mapping(limb_masses)))
        for key, derived in self._config.derived_masses.items():
            if key in masses:
                continue
            value = derived.evaluate(masses)
            if value is None:
                self._logger.debug(
                    "derived_mass_skipped",
                    key=key,
                    missing=sorted(derived.inputs - set(masses)),
                )
                continue
            masses[key] = value
            self._logger.debug("derived_mass_computed", key=key, value=value, formula=derived.formula)
        return masses

    def enabled_mappings(self, shape_values: Mapping[str, float]) -> tuple[BoneMapping, ...]:
        """Mappings enabled by default or switched on by a satisfied interplay rule."""

        dynamic: set[str] = set()
        for rule in self._config.overrides:
            if rule.enable_keys and rule.when.evaluate(shape_values):
                dynamic.update(rule.enable_keys)
        return tuple(
            mapping
            for mapping in self._config.mappings
            if mapping.enabled or mapping.key in dynamic
        )

    def gate_factor(self, masses: Mapping[str, float]) -> float | None:
        gate = self._config.gate
        if not gate.apply:
            return None
        value = masses.get(LimbKey.GATE, self._config.gate_default)
        return gate.clamp.clamp(value)

    def _group_multipliers(self, shape_values: Mapping[str, float]) -> dict[str, AxisScale]:
        multipliers: dict[str, AxisScale] = {}
        for rule in self._config.overrides:
            if rule.axis_scale_multiplier is None or not rule.when.evaluate(shape_values):
                continue
            for group_name in rule.bones:
                current = multipliers.get(group_name, AxisScale())
                multipliers[group_name] = current.multiply(rule.axis_scale_multiplier)
        return multipliers


def compute_bone_scales(
    limb_masses: Mapping[str, float],
    shape_values: Mapping[str, float],
    bone_names: Iterable[str],
    config: BoneMappingConfig | None = None,
) -> tuple[BoneScaleTarget, ...]:
    """Module-level convenience over ``BoneScaler`` using the packaged mapping by default."""

    scaler = BoneScaler(config if config is not None else default_bone_mapping())
    return scaler.compute_bone_scales(limb_masses, shape_values, bone_names)


def _bone_target(
    bone: str,
    mapping: BoneMapping,
    factor: float,
    multiplier: AxisScale,
) -> BoneScaleTarget:
    weight = mapping.distribution_weight(bone)
    scale = mapping.clamp.clamp(1.0 + (factor - 1.0) * weight)
    delta = scale - 1.0

    axes = mapping.axis_scale.as_tuple()
    peak = max(axes)
    factors = multiplier.as_tuple()
    axis_scale = tuple(
        1.0 + delta * (axis / peak) * extra for axis, extra in zip(axes, factors, strict=True)
    )
    return BoneScaleTarget(
        bone_id=bone,
        scale_factor=scale,
        axis_scale=(axis_scale[0], axis_scale[1], axis_scale[2]),
        source_key=mapping.key,
    )


def _apply_gate(target: BoneScaleTarget, gate: float) -> BoneScaleTarget:
    if math.isclose(gate, 1.0):
        return target
    x, y, z = target.axis_scale
    return BoneScaleTarget(
        bone_id=target.bone_id,
        scale_factor=target.scale_factor * gate,
        axis_scale=(x * gate, y * gate, z * gate),
        source_key=target.source_key,
    )


__all__ = ["BoneScaler", "compute_bone_scales"]
