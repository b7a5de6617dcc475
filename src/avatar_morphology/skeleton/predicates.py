"""Typed predicate AST for interplay rules such as ``pearFigure>=1.2 || bodybuilderSize<=-0.5``.

Predicates are parsed once when the bone mapping document is loaded; evaluation
never re-reads the source text. ``&&`` binds tighter than ``||`` and parentheses
group. A comparison that references a shape value absent from the current set is
not satisfied.
"""

from __future__ import annotations

import operator
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Final, TypeAlias

from avatar_morphology.domain.keys import canonicalize

_TOKEN_RE: Final[re.Pattern[str]] = re.compile(
    r"\s*(?:(?P<number>-?\d+(?:\.\d+)?(?:[eE][-+]?\d+)?)"
    r"|(?P<name>[A-Za-z_][A-Za-z0-9_]*)"
    r"|(?P<op>>=|<=|>|<|&&|\|\||\(|\)))"
)

_COMPARATORS: Final[dict[str, Callable[[float, float], bool]]] = {
    ">=": operator.ge,
    "<=": operator.le,
    ">": operator.gt,
    "<": operator.lt,
}


class PredicateSyntaxError(ValueError):
    """Raised when an interplay predicate cannot be parsed."""


@dataclass(frozen=True, slots=True)
class ShapeRef:
    name: str

    def resolve(self, values: Mapping[str, float]) -> float | None:
        return values.get(self.name)


@dataclass(frozen=True, slots=True)
class Constant:
    value: float

    def resolve(self, values: Mapping[str, float]) -> float | None:
        return self.value


Operand: TypeAlias = ShapeRef | Constant


@dataclass(frozen=True, slots=True)
class Comparison:
    left: Operand
    op: str
    right: Operand

    def evaluate(self, values: Mapping[str, float]) -> bool:
        left = self.left.resolve(values)
        right = self.right.resolve(values)
        if left is None or right is None:
            return False
        return _COMPARATORS[self.op](left, right)

    def names(self) -> frozenset[str]:
        return frozenset(
            operand.name for operand in (self.left, self.right) if isinstance(operand, ShapeRef)
        )

    def render(self) -> str:
        return f"{_render_operand(self.left)}{self.op}{_render_operand(self.right)}"


@dataclass(frozen=True, slots=True)
class AllOf:
    terms: tuple[Predicate, ...]

    def evaluate(self, values: Mapping[str, float]) -> bool:
        return all(term.evaluate(values) for term in self.terms)

    def names(self) -> frozenset[str]:
        return frozenset().union(*(term.names() for term in self.terms))

    def render(self) -> str:
        return " && ".join(_render_nested(term) for term in self.terms)


@dataclass(frozen=True, slots=True)
class AnyOf:
    terms: tuple[Predicate, ...]

    def evaluate(self, values: Mapping[str, float]) -> bool:
        return any(term.evaluate(values) for term in self.terms)

    def names(self) -> frozenset[str]:
        return frozenset().union(*(term.names() for term in self.terms))

    def render(self) -> str:
        return " || ".join(_render_nested(term) for term in self.terms)


Predicate: TypeAlias = Comparison | AllOf | AnyOf


def parse_predicate(source: str) -> Predicate:
    """Parse ``source`` into a predicate tree or raise ``PredicateSyntaxError``."""

    if not isinstance(source, str) or not source.strip():
        raise PredicateSyntaxError("predicate must be a non-empty string")
    parser = _Parser(source, _tokenize(source))
    predicate = parser.parse_or()
    if not parser.at_end:
        raise PredicateSyntaxError(f"unexpected token {parser.peek()!r} in {source!r}")
    return predicate


def _tokenize(source: str) -> list[tuple[str, str]]:
    tokens: list[tuple[str, str]] = []
    position = 0
    text = source.rstrip()
    while position < len(text):
        match = _TOKEN_RE.match(text, position)
        if match is None or match.end() == position:
            raise PredicateSyntaxError(f"invalid character at offset {position} in {source!r}")
        kind = match.lastgroup
        if kind is None:
            raise PredicateSyntaxError(f"invalid token at offset {position} in {source!r}")
        tokens.append((kind, match.group(kind)))
        position = match.end()
    return tokens


class _Parser:
    __slots__ = ("_index", "_source", "_tokens")

    def __init__(self, source: str, tokens: list[tuple[str, str]]) -> None:
        self._source = source
        self._tokens = tokens
        self._index = 0

    @property
    def at_end(self) -> bool:
        return self._index >= len(self._tokens)

    def peek(self) -> str | None:
        if self.at_end:
            return None
        return self._tokens[self._index][1]

    def parse_or(self) -> Predicate:
        terms = [self.parse_and()]
        while self.peek() == "||":
            self._index += 1
            terms.append(self.parse_and())
        return terms[0] if len(terms) == 1 else AnyOf(tuple(terms))

    def parse_and(self) -> Predicate:
        terms = [self.parse_atom()]
        while self.peek() == "&&":
            self._index += 1
            terms.append(self.parse_atom())
        return terms[0] if len(terms) == 1 else AllOf(tuple(terms))

    def parse_atom(self) -> Predicate:
        if self.peek() == "(":
            self._index += 1
            inner = self.parse_or()
            if self.peek() != ")":
                raise PredicateSyntaxError(f"missing ')' in {self._source!r}")
            self._index += 1
            return inner

        left = self._operand()
        op = self.peek()
        if op not in _COMPARATORS:
            raise PredicateSyntaxError(f"expected comparison operator in {self._source!r}")
        self._index += 1
        right = self._operand()
        return Comparison(left=left, op=op, right=right)

    def _operand(self) -> Operand:
        if self.at_end:
            raise PredicateSyntaxError(f"unexpected end of predicate {self._source!r}")
        kind, text = self._tokens[self._index]
        self._index += 1
        if kind == "number":
            return Constant(float(text))
        if kind == "name":
            return ShapeRef(canonicalize(text))
        raise PredicateSyntaxError(f"expected name or number, got {text!r} in {self._source!r}")


def _render_operand(operand: Operand) -> str:
    if isinstance(operand, ShapeRef):
        return operand.name
    return repr(operand.value)


def _render_nested(term: Predicate) -> str:
    if isinstance(term, Comparison):
        return term.render()
    return f"({term.render()})"


__all__ = [
    "AllOf",
    "AnyOf",
    "Comparison",
    "Constant",
    "Operand",
    "Predicate",
    "PredicateSyntaxError",
    "ShapeRef",
    "parse_predicate",
]
