"""Unit tests for archetype blending."""

from __future__ import annotations

import math

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from avatar_morphology.blending.blender import (
    NEUTRAL_LIMB_MASS,
    Blender,
    BlendSettings,
    EmptyInputError,
)
from avatar_morphology.domain.models import ArchetypeCandidate


def _candidate(
    item_id: str,
    distance: float | None,
    shape: dict[str, float] | None = None,
    limbs: dict[str, float] | None = None,
) -> ArchetypeCandidate:
    return ArchetypeCandidate(
        id=item_id,
        name=item_id,
        shape_values=shape or {},
        limb_masses=limbs or {},
        distance=distance,
    )


def test_empty_candidate_list_raises() -> None:
    with pytest.raises(EmptyInputError):
        Blender().blend([])
    with pytest.raises(EmptyInputError):
        Blender().compute_weights([])


def test_single_candidate_passes_through_with_canonical_keys() -> None:
    result = Blender().blend(
        [_candidate("a", 0.3, {"BS_LOD0.BodyBigHips": 0.6}, {"arm_mass": 1.2})]
    )

    assert dict(result.shape_values) == {"bigHips": 0.6}
    assert dict(result.limb_masses) == {"armMass": 1.2}
    assert result.weights == (("a", 1.0),)


def test_equal_distances_average_with_neutral_defaults() -> None:
    result = Blender().blend(
        [
            _candidate("a", 0.5, {"bigHips": 0.8}, {"armMass": 1.4}),
            _candidate("b", 0.5, {"pearFigure": 0.2}, {}),
        ]
    )

    assert result.shape_values["bigHips"] == pytest.approx(0.4)
    assert result.shape_values["pearFigure"] == pytest.approx(0.1)
    assert result.limb_masses["armMass"] == pytest.approx((1.4 + NEUTRAL_LIMB_MASS) / 2)
    assert dict(result.weights)["a"] == pytest.approx(0.5)


def test_closer_candidate_dominates_but_softmax_keeps_the_other() -> None:
    weights = Blender().compute_weights([0.0, 2.0])

    assert weights[0] > weights[1] > 0.0
    assert math.fsum(weights) == pytest.approx(1.0)


def test_immaterial_weights_are_dropped_and_renormalized() -> None:
    blender = Blender(BlendSettings(softmax_temperature=0.05, materiality_threshold=0.2))
    weights = blender.compute_weights([0.0, 5.0, 5.0])

    assert weights[0] == pytest.approx(1.0)
    assert weights[1] == 0.0
    assert weights[2] == 0.0


def test_missing_or_invalid_distance_uses_default() -> None:
    blender = Blender(BlendSettings(default_distance=0.5))
    result = blender.blend(
        [
            _candidate("known", 0.5, {"bigHips": 1.0}),
            _candidate("unknown", None, {"bigHips": 0.0}),
            _candidate("negative", -3.0, {"bigHips": 0.5}),
        ]
    )

    weights = dict(result.weights)
    assert weights["known"] == pytest.approx(weights["unknown"])
    assert weights["known"] == pytest.approx(weights["negative"])


def test_confidence_and_quality_are_bounded() -> None:
    result = Blender().blend(
        [
            _candidate("a", 0.0, {"bigHips": 9.0}),
            _candidate("b", 0.0, {"bigHips": 9.0}),
            _candidate("c", 0.0, {"bigHips": 9.0}),
            _candidate("d", 0.0, {"bigHips": 9.0}),
            _candidate("e", 0.0, {"bigHips": 9.0}),
        ]
    )

    assert result.confidence <= 0.95
    assert 0.1 <= result.quality_score <= 1.0


def test_non_finite_values_are_ignored() -> None:
    result = Blender().blend([_candidate("a", 0.1, {"bigHips": math.nan, "pregnant": 0.3})])

    assert dict(result.shape_values) == {"pregnant": 0.3}


@pytest.mark.parametrize(
    "kwargs",
    [
        {"distance_epsilon": 0.0},
        {"softmax_temperature": -1.0},
        {"materiality_threshold": 1.0},
        {"default_distance": -0.1},
        {"extreme_magnitude": 0.0},
    ],
)
def test_settings_validation(kwargs: dict[str, float]) -> None:
    with pytest.raises(ValueError):
        BlendSettings(**kwargs)


def test_settings_from_config_section() -> None:
    loaded = BlendSettings.from_config({"softmax_temperature": 3, "distance_epsilon": 0.2})

    assert loaded.softmax_temperature == 3.0
    assert loaded.distance_epsilon == 0.2
    assert loaded.materiality_threshold == BlendSettings().materiality_threshold
    with pytest.raises(ValueError, match="number"):
        BlendSettings.from_config({"softmax_temperature": "hot"})


@settings(max_examples=25, derandomize=True, deadline=None)
@given(st.lists(st.floats(min_value=0.0, max_value=50.0), min_size=1, max_size=12))
def test_weights_sum_to_one_and_follow_distance_order(distances: list[float]) -> None:
    weights = Blender().compute_weights(distances)

    assert len(weights) == len(distances)
    assert math.fsum(weights) == pytest.approx(1.0)
    assert all(weight >= 0.0 for weight in weights)
    ordered = sorted(zip(distances, weights, strict=True))
    for (_, nearer), (_, farther) in zip(ordered, ordered[1:], strict=False):
        assert nearer >= farther - 1e-12
