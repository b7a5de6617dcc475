"""Unit tests for bone scale computation."""

from __future__ import annotations

import pytest

from avatar_morphology.domain.models import BoneScaleTarget
from avatar_morphology.skeleton.config import BoneMappingConfig, parse_bone_mapping
from avatar_morphology.skeleton.scaler import BoneScaler, compute_bone_scales

_BONES = ("spine_01", "spine_02", "c_spine_03", "arm_l", "head")


def _config(*, gate: dict[str, object] | None = None) -> BoneMappingConfig:
    return parse_bone_mapping(
        {
            "rig_id": "TEST_RIG",
            "selectors": {"exclude_regex": ["^c_"]},
            "bone_groups": {
                "SPINE": {"patterns": ["spine_0[1-3]$"]},
                "ARM_L": {"patterns": ["^arm_l$"]},
            },
            "derived_masses": {
                "hipMass": {"formula": "0.6*thighMass + 0.4*torsoMass", "clamp": [0.5, 2.0]}
            },
            "mappings": [
                {
                    "key": "torsoMass",
                    "groups": ["SPINE"],
                    "axis_scale": {"x": 1.0, "y": 0.5, "z": 0.0},
                    "smoothing": "none",
                    "clamp": [0.5, 2.0],
                },
                {
                    "key": "neckMass",
                    "groups": ["SPINE"],
                    "axis_scale": {"x": 1.0, "y": 1.0, "z": 1.0},
                    "clamp": [0.5, 2.0],
                },
                {
                    "key": "armMass",
                    "enabled": False,
                    "groups": ["ARM_L"],
                    "axis_scale": {"x": 1.0, "y": 1.0, "z": 1.0},
                    "clamp": [0.5, 1.35],
                },
            ],
            "interplay": {
                "gate": gate if gate is not None else {"apply": False},
                "shape_key_overrides": [
                    {"when": "bodybuilderSize>=0.8", "enable_keys": ["armMass"]},
                    {
                        "when": "pearFigure>=1.2",
                        "bones": ["SPINE"],
                        "axis_scale_multiplier": {"x": 1.0, "y": 0.5, "z": 1.0},
                    },
                ],
            },
        }
    )


def _by_bone(targets: tuple[BoneScaleTarget, ...]) -> dict[str, BoneScaleTarget]:
    return {target.bone_id: target for target in targets}


def test_scale_follows_mass_and_axis_weights() -> None:
    targets = _by_bone(
        BoneScaler(_config()).compute_bone_scales({"torsoMass": 1.4}, {}, _BONES)
    )

    assert set(targets) == {"spine_01", "spine_02"}
    spine = targets["spine_01"]
    assert spine.scale_factor == pytest.approx(1.4)
    assert spine.axis_scale == pytest.approx((1.4, 1.2, 1.0))
    assert spine.source_key == "torsoMass"


def test_selector_excluded_bones_are_never_scaled() -> None:
    targets = BoneScaler(_config()).compute_bone_scales({"torsoMass": 1.4}, {}, _BONES)

    assert "c_spine_03" not in {target.bone_id for target in targets}


def test_overlapping_mappings_take_largest_scale_not_product() -> None:
    targets = _by_bone(
        BoneScaler(_config()).compute_bone_scales(
            {"torsoMass": 1.4, "neckMass": 1.1}, {}, ["spine_01"]
        )
    )

    assert targets["spine_01"].scale_factor == pytest.approx(1.4)
    assert targets["spine_01"].source_key == "torsoMass"


def test_disabled_mapping_needs_interplay_rule() -> None:
    scaler = BoneScaler(_config())

    assert scaler.compute_bone_scales({"armMass": 1.2}, {}, ["arm_l"]) == ()
    enabled = scaler.compute_bone_scales({"armMass": 1.2}, {"bodybuilderSize": 0.9}, ["arm_l"])
    assert [target.bone_id for target in enabled] == ["arm_l"]
    assert enabled[0].scale_factor == pytest.approx(1.2)


def test_axis_multiplier_applies_when_predicate_holds() -> None:
    targets = _by_bone(
        BoneScaler(_config()).compute_bone_scales(
            {"torsoMass": 1.4}, {"pear_figure": 1.5}, ["spine_01"]
        )
    )

    assert targets["spine_01"].axis_scale == pytest.approx((1.4, 1.1, 1.0))


def test_gate_multiplies_every_target_within_clamp() -> None:
    scaler = BoneScaler(_config(gate={"apply": True, "clamp": [0.8, 1.2]}))

    targets = scaler.compute_bone_scales({"torsoMass": 1.4, "gate": 1.5}, {}, ["spine_01"])

    assert scaler.gate_factor({"gate": 1.5}) == 1.2
    assert scaler.gate_factor({}) == 1.0
    assert targets[0].scale_factor == pytest.approx(1.4 * 1.2)
    assert targets[0].axis_scale == pytest.approx((1.4 * 1.2, 1.2 * 1.2, 1.0 * 1.2))


def test_gate_disabled_returns_none() -> None:
    assert BoneScaler(_config()).gate_factor({"gate": 1.5}) is None


def test_derived_masses_fill_only_missing_keys() -> None:
    scaler = BoneScaler(_config())

    derived = scaler.resolve_masses({"thighMass": 1.0, "torsoMass": 1.5})
    assert derived["hipMass"] == pytest.approx(1.2)

    supplied = scaler.resolve_masses({"thighMass": 1.0, "torsoMass": 1.5, "hip_mass": 0.9})
    assert supplied["hipMass"] == 0.9

    assert "hipMass" not in scaler.resolve_masses({"torsoMass": 1.5})


def test_non_finite_masses_are_ignored() -> None:
    targets = BoneScaler(_config()).compute_bone_scales(
        {"torsoMass": float("nan")}, {}, ["spine_01"]
    )

    assert targets == ()


def test_output_is_sorted_and_deduplicated() -> None:
    targets = BoneScaler(_config()).compute_bone_scales(
        {"torsoMass": 1.2}, {}, ["spine_02", "spine_01", "spine_02"]
    )

    assert [target.bone_id for target in targets] == ["spine_01", "spine_02"]


def test_packaged_mapping_scales_default_rig() -> None:
    targets = compute_bone_scales(
        {"torsoMass": 1.3, "armMass": 1.2},
        {"pearFigure": 0.6},
        ["spine_02", "arml", "c_arm_ik", "head"],
    )
    by_bone = {target.bone_id: target for target in targets}

    assert set(by_bone) == {"spine_02", "arml"}
    assert by_bone["arml"].scale_factor == pytest.approx(1.2)
    assert 1.0 < by_bone["spine_02"].scale_factor < 1.3
