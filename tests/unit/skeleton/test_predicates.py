"""Unit tests for interplay predicate parsing and evaluation."""

from __future__ import annotations

import pytest

from avatar_morphology.skeleton.predicates import (
    AllOf,
    AnyOf,
    Comparison,
    Constant,
    PredicateSyntaxError,
    ShapeRef,
    parse_predicate,
)


def test_disjunction_parses_and_evaluates() -> None:
    predicate = parse_predicate("pearFigure>=1.2 || bodybuilderSize<=-0.5")

    assert isinstance(predicate, AnyOf)
    assert predicate.evaluate({"pearFigure": 1.3})
    assert predicate.evaluate({"bodybuilderSize": -0.6})
    assert not predicate.evaluate({"pearFigure": 1.0, "bodybuilderSize": 0.0})
    assert predicate.names() == frozenset({"pearFigure", "bodybuilderSize"})


def test_single_comparison_is_not_wrapped() -> None:
    predicate = parse_predicate("bodybuilderSize >= 0.8")

    assert predicate == Comparison(ShapeRef("bodybuilderSize"), ">=", Constant(0.8))


def test_conjunction_binds_tighter_than_disjunction() -> None:
    predicate = parse_predicate("pregnant>0.5 || pearFigure>1 && bigHips<0")

    assert isinstance(predicate, AnyOf)
    assert isinstance(predicate.terms[1], AllOf)
    assert predicate.evaluate({"pregnant": 0.6})
    assert not predicate.evaluate({"pearFigure": 2.0, "bigHips": 0.5})
    assert predicate.evaluate({"pearFigure": 2.0, "bigHips": -0.5})


def test_parentheses_group_subexpressions() -> None:
    predicate = parse_predicate("(pregnant>0.5 || pearFigure>1) && bigHips<0")

    assert isinstance(predicate, AllOf)
    assert not predicate.evaluate({"pregnant": 0.6, "bigHips": 0.2})
    assert predicate.evaluate({"pregnant": 0.6, "bigHips": -0.2})
    assert predicate.render() == "(pregnant>0.5 || pearFigure>1.0) && bigHips<0.0"


def test_missing_shape_value_is_not_satisfied() -> None:
    assert not parse_predicate("pearFigure<1").evaluate({})


def test_names_are_canonicalized() -> None:
    predicate = parse_predicate("pear_figure>=0.5")

    assert predicate.names() == frozenset({"pearFigure"})
    assert predicate.evaluate({"pearFigure": 0.7})


def test_constants_compare_on_either_side() -> None:
    predicate = parse_predicate("0.5<pearFigure")

    assert predicate.evaluate({"pearFigure": 0.7})
    assert not predicate.evaluate({"pearFigure": 0.2})


@pytest.mark.parametrize(
    "source",
    [
        "",
        "   ",
        "pearFigure",
        "pearFigure>=",
        "pearFigure == 1",
        "(pearFigure>1",
        "pearFigure>1 bigHips<0",
        "pearFigure>1 ||",
        ">= 1",
    ],
)
def test_malformed_predicates_raise(source: str) -> None:
    with pytest.raises(PredicateSyntaxError):
        parse_predicate(source)
