"""Versioned bone mapping document: parsing, validation and loading.

The document is loaded and validated once at startup and then passed explicitly to
``BoneScaler``. Every problem found is collected and reported together.
"""

from __future__ import annotations

import json
import math
import os
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from importlib import resources
from pathlib import Path
from types import MappingProxyType
from typing import Final, TypeAlias, cast

import yaml

from avatar_morphology.domain.keys import LimbKey, canonicalize
from avatar_morphology.domain.models import ValueRange
from avatar_morphology.skeleton.predicates import Predicate, PredicateSyntaxError, parse_predicate

PathLike: TypeAlias = str | os.PathLike[str]

DEFAULT_BONE_MAPPING_RESOURCE: Final[str] = "bone_mapping.yaml"
DEFAULT_TANH_SOFTNESS: Final[float] = 0.6

_SUPPORTED_BLEND_MODES: Final[frozenset[str]] = frozenset({"multiply"})
_SUPPORTED_GATE_MODES: Final[frozenset[str]] = frozenset({"multiply_all"})
_SUPPORTED_SMOOTHING: Final[frozenset[str]] = frozenset({"none", "tanh"})
_FORMULA_TERM_RE: Final[re.Pattern[str]] = re.compile(
    r"\s*(?P<sign>[+-])?\s*(?:(?P<coef>\d+(?:\.\d+)?)\s*\*\s*)?"
    r"(?:(?P<name>[A-Za-z_][A-Za-z0-9_]*)|(?P<const>\d+(?:\.\d+)?))\s*"
)


@dataclass(frozen=True, slots=True)
class BoneMappingIssue:
    path: str
    message: str


class BoneMappingError(ValueError):
    """Raised when a bone mapping document fails validation."""

    def __init__(self, issues: Sequence[BoneMappingIssue]) -> None:
        self.issues = tuple(issues)
        rendered = "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
        super().__init__(f"invalid bone mapping:\n{rendered or '- unknown failure'}")


class _IssueCollector:
    __slots__ = ("_items",)

    def __init__(self) -> None:
        self._items: list[BoneMappingIssue] = []

    def add(self, path: str, message: str) -> None:
        self._items.append(BoneMappingIssue(path=path, message=message))

    def items(self) -> tuple[BoneMappingIssue, ...]:
        return tuple(self._items)


@dataclass(frozen=True, slots=True)
class AxisScale:
    x: float = 1.0
    y: float = 1.0
    z: float = 1.0

    def as_tuple(self) -> tuple[float, float, float]:
        return (self.x, self.y, self.z)

    def multiply(self, other: AxisScale) -> AxisScale:
        return AxisScale(self.x * other.x, self.y * other.y, self.z * other.z)


@dataclass(frozen=True, slots=True)
class BoneSelectors:
    """Bones admitted when they match an include pattern and no exclude pattern."""

    include: tuple[re.Pattern[str], ...] = ()
    exclude: tuple[re.Pattern[str], ...] = ()

    def admits(self, bone_id: str) -> bool:
        if self.include and not any(pattern.search(bone_id) for pattern in self.include):
            return False
        return not any(pattern.search(bone_id) for pattern in self.exclude)


@dataclass(frozen=True, slots=True)
class BoneGroup:
    name: str
    patterns: tuple[re.Pattern[str], ...]

    def matches(self, bone_id: str) -> bool:
        return any(pattern.search(bone_id) for pattern in self.patterns)


@dataclass(frozen=True, slots=True)
class DerivedMass:
    """Mass computed as a linear combination of other masses when not supplied."""

    key: str
    terms: tuple[tuple[str, float], ...]
    constant: float
    clamp: ValueRange
    formula: str

    @property
    def inputs(self) -> frozenset[str]:
        return frozenset(name for name, _ in self.terms)

    def evaluate(self, masses: Mapping[str, float]) -> float | None:
        total = self.constant
        for name, coefficient in self.terms:
            value = masses.get(name)
            if value is None:
                return None
            total += coefficient * value
        return self.clamp.clamp(total)


@dataclass(frozen=True, slots=True)
class BoneMapping:
    key: str
    enabled: bool
    groups: tuple[str, ...]
    axis_scale: AxisScale
    clamp: ValueRange
    distribution: Mapping[str, float] | None = None
    blend_mode: str = "multiply"
    smoothing: str = "none"
    smoothing_softness: float = DEFAULT_TANH_SOFTNESS

    def scale_for(self, mass: float) -> float:
        """Scale factor for ``mass``: clamped, optionally tanh-smoothed around 1.0."""

        bounded = self.clamp.clamp(mass)
        if self.smoothing == "tanh":
            softness = self.smoothing_softness
            bounded = self.clamp.clamp(1.0 + softness * math.tanh((bounded - 1.0) / softness))
        return bounded

    def distribution_weight(self, bone_id: str) -> float:
        """Relative share of the scale delta applied to ``bone_id`` (1.0 = full)."""

        if not self.distribution:
            return 1.0
        peak = max(self.distribution.values())
        if peak <= 0:
            return 1.0
        lowered = bone_id.lower()
        for prefix, weight in self.distribution.items():
            if lowered.startswith(prefix.lower()):
                return weight / peak
        return 1.0


@dataclass(frozen=True, slots=True)
class GateConfig:
    apply: bool = True
    mode: str = "multiply_all"
    clamp: ValueRange = field(default_factory=lambda: ValueRange(0.8, 1.2))


@dataclass(frozen=True, slots=True)
class InterplayRule:
    """Shape-driven override: enables mapping keys and/or reweights group axes."""

    when: Predicate
    source: str
    enable_keys: tuple[str, ...] = ()
    bones: tuple[str, ...] = ()
    axis_scale_multiplier: AxisScale | None = None


@dataclass(frozen=True, slots=True)
class BoneMappingConfig:
    version: str
    rig_id: str
    gate_default: float
    selectors: BoneSelectors
    bone_groups: Mapping[str, BoneGroup]
    derived_masses: Mapping[str, DerivedMass]
    mappings: tuple[BoneMapping, ...]
    gate: GateConfig
    overrides: tuple[InterplayRule, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "bone_groups", MappingProxyType(dict(self.bone_groups)))
        object.__setattr__(self, "derived_masses", MappingProxyType(dict(self.derived_masses)))


def parse_bone_mapping(payload: object) -> BoneMappingConfig:
    """Validate a raw bone mapping document and build the typed configuration."""

    issues = _IssueCollector()
    root = _as_mapping(payload, "$", issues)
    if root is None:
        raise BoneMappingError(issues.items())

    version = _as_text(root.get("version", "1.0"), "version", issues) or "1.0"
    rig_id = _as_text(root.get("rig_id"), "rig_id", issues) or ""
    gate_default = _as_number(root.get("gate_default", 1.0), "gate_default", issues)

    selectors = _parse_selectors(root.get("selectors", {}), issues)
    groups = _parse_groups(root.get("bone_groups"), issues)
    derived = _parse_derived(root.get("derived_masses", {}), issues)
    mappings = _parse_mappings(root.get("mappings"), groups, issues)

    interplay = _as_mapping(root.get("interplay", {}), "interplay", issues) or {}
    gate = _parse_gate(interplay.get("gate", {}), issues)
    mapping_keys = {mapping.key for mapping in mappings}
    overrides = _parse_overrides(interplay.get("shape_key_overrides", []), groups, mapping_keys, issues)

    if issues.items():
        raise BoneMappingError(issues.items())

    return BoneMappingConfig(
        version=version,
        rig_id=rig_id,
        gate_default=gate_default if gate_default is not None else 1.0,
        selectors=selectors,
        bone_groups=groups,
        derived_masses=derived,
        mappings=tuple(mappings),
        gate=gate,
        overrides=tuple(overrides),
    )


def load_bone_mapping(path: PathLike) -> BoneMappingConfig:
    """Load a bone mapping document from YAML or JSON."""

    file_path = Path(path)
    try:
        text = file_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise BoneMappingError(
            [BoneMappingIssue(str(file_path), f"unable to read document ({exc})")]
        ) from exc
    try:
        if file_path.suffix.lower() == ".json":
            loaded = cast("object", json.loads(text))
        else:
            loaded = cast("object", yaml.safe_load(text))
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise BoneMappingError(
            [BoneMappingIssue(str(file_path), f"invalid document ({exc})")]
        ) from exc
    return parse_bone_mapping(loaded)


def default_bone_mapping() -> BoneMappingConfig:
    """Packaged ``MAS_RIG_V1`` bone mapping."""

    resource = resources.files("avatar_morphology.resources").joinpath(
        DEFAULT_BONE_MAPPING_RESOURCE
    )
    return parse_bone_mapping(cast("object", yaml.safe_load(resource.read_text(encoding="utf-8"))))


def parse_formula(formula: str) -> tuple[tuple[tuple[str, float], ...], float]:
    """Parse ``0.6*thighMass + 0.4*torsoMass + 0.1`` into terms and a constant."""

    if not isinstance(formula, str) or not formula.strip():
        raise ValueError("formula must be a non-empty string")
    terms: list[tuple[str, float]] = []
    constant = 0.0
    position = 0
    text = formula.strip()
    first = True
    while position < len(text):
        match = _FORMULA_TERM_RE.match(text, position)
        if match is None or match.end() == position:
            raise ValueError(f"invalid formula near offset {position}: {formula!r}")
        if not first and match.group("sign") is None:
            raise ValueError(f"missing '+' or '-' between terms: {formula!r}")
        sign = -1.0 if match.group("sign") == "-" else 1.0
        if match.group("name") is not None:
            coefficient = float(match.group("coef")) if match.group("coef") else 1.0
            terms.append((canonicalize(match.group("name")), sign * coefficient))
        else:
            if match.group("coef"):
                raise ValueError(f"constant cannot carry a coefficient: {formula!r}")
            constant += sign * float(match.group("const"))
        position = match.end()
        first = False
    if not terms:
        raise ValueError(f"formula references no masses: {formula!r}")
    return tuple(terms), constant


def _parse_selectors(value: object, issues: _IssueCollector) -> BoneSelectors:
    section = _as_mapping(value, "selectors", issues)
    if section is None:
        return BoneSelectors()
    include = _compile_patterns(section.get("include_regex", []), "selectors.include_regex", issues)
    exclude = _compile_patterns(section.get("exclude_regex", []), "selectors.exclude_regex", issues)
    return BoneSelectors(include=include, exclude=exclude)


def _parse_groups(value: object, issues: _IssueCollector) -> dict[str, BoneGroup]:
    section = _as_mapping(value, "bone_groups", issues)
    if section is None:
        return {}
    groups: dict[str, BoneGroup] = {}
    for name, raw_group in section.items():
        path = f"bone_groups.{name}"
        group = _as_mapping(raw_group, path, issues)
        if group is None:
            continue
        patterns = _compile_patterns(group.get("patterns"), f"{path}.patterns", issues)
        if not patterns:
            issues.add(f"{path}.patterns", "must list at least one pattern")
            continue
        groups[str(name)] = BoneGroup(name=str(name), patterns=patterns)
    return groups


def _parse_derived(value: object, issues: _IssueCollector) -> dict[str, DerivedMass]:
    section = _as_mapping(value, "derived_masses", issues)
    if section is None:
        return {}
    derived: dict[str, DerivedMass] = {}
    for raw_key, raw_entry in section.items():
        path = f"derived_masses.{raw_key}"
        entry = _as_mapping(raw_entry, path, issues)
        if entry is None:
            continue
        formula = entry.get("formula")
        clamp = _parse_clamp(entry.get("clamp"), f"{path}.clamp", issues)
        try:
            terms, constant = parse_formula(cast("str", formula))
        except ValueError as exc:
            issues.add(f"{path}.formula", str(exc))
            continue
        key = canonicalize(str(raw_key))
        if key in {name for name, _ in terms}:
            issues.add(f"{path}.formula", "derived mass cannot reference itself")
            continue
        if clamp is not None:
            derived[key] = DerivedMass(
                key=key,
                terms=terms,
                constant=constant,
                clamp=clamp,
                formula=str(formula),
            )
    return derived


def _parse_mappings(
    value: object,
    groups: Mapping[str, BoneGroup],
    issues: _IssueCollector,
) -> list[BoneMapping]:
    if not isinstance(value, list) or not value:
        issues.add("mappings", "must be a non-empty list")
        return []

    mappings: list[BoneMapping] = []
    seen: set[str] = set()
    for index, raw_mapping in enumerate(value):
        path = f"mappings[{index}]"
        entry = _as_mapping(raw_mapping, path, issues)
        if entry is None:
            continue
        key = canonicalize(str(entry.get("key", "")))
        if not key:
            issues.add(f"{path}.key", "must be a non-empty string")
            continue
        if key in seen:
            issues.add(f"{path}.key", f"duplicate mapping for '{key}'")
            continue
        seen.add(key)

        group_names = entry.get("groups")
        if not isinstance(group_names, list) or not group_names:
            issues.add(f"{path}.groups", "must be a non-empty list")
            continue
        unknown = sorted(str(name) for name in group_names if str(name) not in groups)
        if unknown:
            issues.add(f"{path}.groups", f"unknown bone groups: {unknown}")

        clamp = _parse_clamp(entry.get("clamp"), f"{path}.clamp", issues)
        if clamp is not None and clamp.minimum <= 0:
            issues.add(f"{path}.clamp", "scale bounds must be > 0")

        blend_mode = str(entry.get("blend_mode", "multiply"))
        if blend_mode not in _SUPPORTED_BLEND_MODES:
            issues.add(f"{path}.blend_mode", f"unsupported blend mode '{blend_mode}'")

        default_smoothing = "tanh" if key == LimbKey.TORSO_MASS else "none"
        smoothing = str(entry.get("smoothing", default_smoothing))
        if smoothing not in _SUPPORTED_SMOOTHING:
            issues.add(f"{path}.smoothing", f"unsupported smoothing '{smoothing}'")
        softness = _as_number(
            entry.get("smoothing_softness", DEFAULT_TANH_SOFTNESS),
            f"{path}.smoothing_softness",
            issues,
        )
        if softness is not None and softness <= 0:
            issues.add(f"{path}.smoothing_softness", "must be > 0")

        enabled = entry.get("enabled", True)
        if not isinstance(enabled, bool):
            issues.add(f"{path}.enabled", "must be a boolean")
            enabled = False

        axis = _parse_axis(entry.get("axis_scale", {}), f"{path}.axis_scale", issues)
        distribution = _parse_distribution(entry.get("distribution", "uniform"), path, issues)

        if clamp is None or axis is None or softness is None:
            continue
        mappings.append(
            BoneMapping(
                key=key,
                enabled=enabled,
                groups=tuple(str(name) for name in group_names),
                axis_scale=axis,
                clamp=clamp,
                distribution=distribution,
                blend_mode=blend_mode,
                smoothing=smoothing,
                smoothing_softness=softness,
            )
        )
    return mappings


def _parse_gate(value: object, issues: _IssueCollector) -> GateConfig:
    section = _as_mapping(value, "interplay.gate", issues)
    if section is None:
        return GateConfig()
    apply = section.get("apply", True)
    if not isinstance(apply, bool):
        issues.add("interplay.gate.apply", "must be a boolean")
        apply = True
    mode = str(section.get("mode", "multiply_all"))
    if mode not in _SUPPORTED_GATE_MODES:
        issues.add("interplay.gate.mode", f"unsupported gate mode '{mode}'")
    clamp = _parse_clamp(section.get("clamp", [0.8, 1.2]), "interplay.gate.clamp", issues)
    if clamp is not None and clamp.minimum <= 0:
        issues.add("interplay.gate.clamp", "gate bounds must be > 0")
    return GateConfig(apply=apply, mode=mode, clamp=clamp or ValueRange(0.8, 1.2))


def _parse_overrides(
    value: object,
    groups: Mapping[str, BoneGroup],
    mapping_keys: set[str],
    issues: _IssueCollector,
) -> list[InterplayRule]:
    if not isinstance(value, list):
        issues.add("interplay.shape_key_overrides", "must be a list")
        return []

    rules: list[InterplayRule] = []
    for index, raw_rule in enumerate(value):
        path = f"interplay.shape_key_overrides[{index}]"
        entry = _as_mapping(raw_rule, path, issues)
        if entry is None:
            continue
        source = entry.get("when")
        try:
            predicate = parse_predicate(cast("str", source))
        except PredicateSyntaxError as exc:
            issues.add(f"{path}.when", str(exc))
            continue

        enable_keys = tuple(canonicalize(str(key)) for key in entry.get("enable_keys", []) or [])
        unknown_keys = sorted(key for key in enable_keys if key not in mapping_keys)
        if unknown_keys:
            issues.add(f"{path}.enable_keys", f"no mapping for keys: {unknown_keys}")

        bones = tuple(str(name) for name in entry.get("bones", []) or [])
        unknown_groups = sorted(name for name in bones if name not in groups)
        if unknown_groups:
            issues.add(f"{path}.bones", f"unknown bone groups: {unknown_groups}")

        multiplier = None
        if entry.get("axis_scale_multiplier") is not None:
            multiplier = _parse_axis(
                entry.get("axis_scale_multiplier"), f"{path}.axis_scale_multiplier", issues
            )
        if not enable_keys and multiplier is None:
            issues.add(path, "rule must enable keys or set an axis_scale_multiplier")

        rules.append(
            InterplayRule(
                when=predicate,
                source=str(source),
                enable_keys=enable_keys,
                bones=bones,
                axis_scale_multiplier=multiplier,
            )
        )
    return rules


def _parse_axis(value: object, path: str, issues: _IssueCollector) -> AxisScale | None:
    section = _as_mapping(value, path, issues)
    if section is None:
        return None
    components: list[float] = []
    for axis in ("x", "y", "z"):
        number = _as_number(section.get(axis, 1.0), f"{path}.{axis}", issues)
        if number is None:
            return None
        if number < 0:
            issues.add(f"{path}.{axis}", "must be >= 0")
            return None
        components.append(number)
    if not any(components):
        issues.add(path, "at least one axis weight must be > 0")
        return None
    return AxisScale(*components)


def _parse_distribution(
    value: object,
    path: str,
    issues: _IssueCollector,
) -> dict[str, float] | None:
    if value == "uniform" or value is None:
        return None
    section = _as_mapping(value, f"{path}.distribution", issues)
    if section is None:
        return None
    weights: dict[str, float] = {}
    for bone_prefix, raw_weight in section.items():
        number = _as_number(raw_weight, f"{path}.distribution.{bone_prefix}", issues)
        if number is None:
            continue
        if number < 0:
            issues.add(f"{path}.distribution.{bone_prefix}", "must be >= 0")
            continue
        weights[str(bone_prefix)] = number
    return weights or None


def _parse_clamp(value: object, path: str, issues: _IssueCollector) -> ValueRange | None:
    if not isinstance(value, (list, tuple)) or len(value) != 2:
        issues.add(path, "must be a [min, max] pair")
        return None
    minimum = _as_number(value[0], f"{path}[0]", issues)
    maximum = _as_number(value[1], f"{path}[1]", issues)
    if minimum is None or maximum is None:
        return None
    if minimum > maximum:
        issues.add(path, f"min {minimum} exceeds max {maximum}")
        return None
    return ValueRange(minimum, maximum)


def _compile_patterns(
    value: object,
    path: str,
    issues: _IssueCollector,
) -> tuple[re.Pattern[str], ...]:
    if value is None:
        return ()
    if not isinstance(value, list):
        issues.add(path, "must be a list of regular expressions")
        return ()
    compiled: list[re.Pattern[str]] = []
    for index, pattern in enumerate(value):
        try:
            compiled.append(re.compile(str(pattern), re.IGNORECASE))
        except re.error as exc:
            issues.add(f"{path}[{index}]", f"invalid regular expression ({exc})")
    return tuple(compiled)


def _as_mapping(value: object, path: str, issues: _IssueCollector) -> Mapping[str, object] | None:
    if not isinstance(value, Mapping):
        issues.add(path, f"expected object, got {type(value).__name__}")
        return None
    return cast("Mapping[str, object]", value)


def _as_text(value: object, path: str, issues: _IssueCollector) -> str | None:
    if not isinstance(value, (str, int, float)) or isinstance(value, bool) or not str(value).strip():
        issues.add(path, "must be a non-empty string")
        return None
    return str(value).strip()


def _as_number(value: object, path: str, issues: _IssueCollector) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        issues.add(path, "must be a finite number")
        return None
    return float(value)


__all__ = [
    "DEFAULT_TANH_SOFTNESS",
    "AxisScale",
    "BoneGroup",
    "BoneMapping",
    "BoneMappingConfig",
    "BoneMappingError",
    "BoneMappingIssue",
    "BoneSelectors",
    "DerivedMass",
    "GateConfig",
    "InterplayRule",
    "default_bone_mapping",
    "load_bone_mapping",
    "parse_bone_mapping",
    "parse_formula",
]
