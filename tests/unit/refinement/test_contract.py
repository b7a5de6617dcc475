"""Unit tests for the refinement wire contract."""

from __future__ import annotations

import math

import pytest

from avatar_morphology.domain.models import Gender, ValueRange
from avatar_morphology.refinement.contract import (
    ClassificationHints,
    RefinementRequest,
    UserMeasurements,
    parse_refinement_response,
)
from avatar_morphology.refinement.errors import SchemaValidationError


def _valid_body(**overrides: object) -> dict[str, object]:
    body: dict[str, object] = {
        "ai_refine": True,
        "final_shape_params": {"bigHips": 0.4, "pearFigure": 0.1},
        "final_limb_masses": {"armMass": 1.1},
        "clamped_keys": ["bigHips"],
        "out_of_range_count": 1,
        "active_keys_count": 2,
        "mapping_version": "v1.0",
    }
    body.update(overrides)
    return body


def test_request_payload_uses_snake_case_wire_names() -> None:
    request = RefinementRequest(
        request_id="req-1",
        gender=Gender.FEMININE,
        shape_values={"pearFigure": 0.2, "bigHips": 0.5},
        limb_masses={"armMass": 1.0},
        mapping_version="v1.0",
        envelope={"bigHips": ValueRange(0.0, 0.6)},
        classification=ClassificationHints(muscularity="high"),
        user_id="user-7",
    )

    payload = request.to_payload()

    assert payload["resolved_gender"] == "feminine"
    assert list(payload["blend_shape_params"]) == ["bigHips", "pearFigure"]  # type: ignore[call-overload]
    assert payload["k5_envelope"] == {"bigHips": {"min": 0.0, "max": 0.6}}
    assert payload["vision_classification"]["muscularity"] == "high"  # type: ignore[index]
    assert payload["user_id"] == "user-7"
    assert payload["user_measurements"] == UserMeasurements().to_dict()


def test_request_omits_optional_sections_when_absent() -> None:
    payload = RefinementRequest(
        request_id="req-2",
        gender=Gender.MASCULINE,
        shape_values={},
        limb_masses={},
        mapping_version="v1.0",
    ).to_payload()

    assert "k5_envelope" not in payload
    assert "vision_classification" not in payload
    assert "user_id" not in payload


def test_request_requires_identifier() -> None:
    with pytest.raises(ValueError, match="request_id"):
        RefinementRequest(
            request_id=" ",
            gender=Gender.MASCULINE,
            shape_values={},
            limb_masses={},
            mapping_version="v1",
        )


def test_measurements_from_payload_keeps_positive_numbers_only() -> None:
    measurements = UserMeasurements.from_payload({"height": 182, "weight": -3, "bmi": "fat"})

    assert measurements.height == 182.0
    assert measurements.weight == UserMeasurements().weight
    assert measurements.bmi == UserMeasurements().bmi


def test_valid_response_parses() -> None:
    response = parse_refinement_response(_valid_body(ai_confidence=0.9, db_violations=["x"]))

    assert response.refined is True
    assert dict(response.final_shape_values) == {"bigHips": 0.4, "pearFigure": 0.1}
    assert response.confidence == 0.9
    assert response.db_violations == ("x",)
    assert response.envelope_violations == ()
    assert response.to_dict()["ai_refine"] is True


def test_all_violations_are_reported_together() -> None:
    body = _valid_body(
        ai_refine="yes",
        final_shape_params={"bigHips": math.inf},
        out_of_range_count=-1,
        mapping_version="",
    )

    with pytest.raises(SchemaValidationError) as excinfo:
        parse_refinement_response(body)

    paths = {issue.path for issue in excinfo.value.issues}
    assert paths == {
        "ai_refine",
        "final_shape_params.bigHips",
        "out_of_range_count",
        "mapping_version",
    }


@pytest.mark.parametrize(
    ("overrides", "path"),
    [
        ({"final_limb_masses": {}}, "final_limb_masses"),
        ({"final_shape_params": [1, 2]}, "final_shape_params"),
        ({"clamped_keys": "bigHips"}, "clamped_keys"),
        ({"active_keys_count": 1.5}, "active_keys_count"),
        ({"ai_confidence": "high"}, "ai_confidence"),
        ({"missing_keys_added": {"a": 1}}, "missing_keys_added"),
        ({"active_keys_count": True}, "active_keys_count"),
    ],
)
def test_single_violation_rejects_response(overrides: dict[str, object], path: str) -> None:
    with pytest.raises(SchemaValidationError, match=path):
        parse_refinement_response(_valid_body(**overrides))


def test_non_object_body_is_rejected() -> None:
    with pytest.raises(SchemaValidationError, match="expected object"):
        parse_refinement_response(["not", "an", "object"])
