"""Versioned gender mapping tables: parsing and loading."""

from __future__ import annotations

import json
import math
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from importlib import resources
from pathlib import Path
from types import MappingProxyType
from typing import Any, Final, TypeAlias, cast

import structlog
import yaml

from avatar_morphology.domain.models import Gender, ValueRange

PathLike: TypeAlias = str | os.PathLike[str]

DEFAULT_MAPPING_RESOURCE: Final[str] = "gender_mapping.yaml"
DEFAULT_MAPPING_VERSION: Final[str] = "v1.0"

_SECTION_BY_GENDER: Final[dict[Gender, str]] = {
    Gender.MASCULINE: "mapping_masculine",
    Gender.FEMININE: "mapping_feminine",
}

_logger = structlog.get_logger(__name__)


class InvalidMappingError(ValueError):
    """Raised when a mapping table lacks a gender section or its morph values."""


@dataclass(frozen=True, slots=True)
class GenderMappingSection:
    """Range tables for one gender."""

    morph_values: Mapping[str, ValueRange]
    limb_masses: Mapping[str, ValueRange] = field(default_factory=dict)
    face_values: Mapping[str, ValueRange] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "morph_values", MappingProxyType(dict(self.morph_values)))
        object.__setattr__(self, "limb_masses", MappingProxyType(dict(self.limb_masses)))
        object.__setattr__(self, "face_values", MappingProxyType(dict(self.face_values)))

    def shape_ranges(self) -> dict[str, ValueRange]:
        """Morph and face ranges in table order; face entries win on collision."""

        merged = dict(self.morph_values)
        merged.update(self.face_values)
        return merged


@dataclass(frozen=True, slots=True)
class GenderMappingTable:
    """Both gender sections of one mapping version."""

    version: str
    masculine: GenderMappingSection
    feminine: GenderMappingSection

    def __post_init__(self) -> None:
        if not isinstance(self.version, str) or not self.version.strip():
            raise InvalidMappingError("mapping version must be a non-empty string")
        object.__setattr__(self, "version", self.version.strip())

    def section(self, gender: Gender | str) -> GenderMappingSection:
        resolved = Gender.parse(gender)
        return self.masculine if resolved is Gender.MASCULINE else self.feminine

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {"version": self.version}
        for gender, name in _SECTION_BY_GENDER.items():
            section = self.section(gender)
            payload[name] = {
                "morph_values": _ranges_to_dict(section.morph_values),
                "limb_masses": _ranges_to_dict(section.limb_masses),
                "face_values": _ranges_to_dict(section.face_values),
            }
        return payload


def parse_mapping_table(
    payload: object,
    *,
    version: str | None = None,
    logger: Any | None = None,
) -> GenderMappingTable:
    """Parse a raw mapping document.

    Missing gender sections or ``morph_values`` are fatal. Individual malformed range
    entries are skipped and logged so one bad row does not take the table down.
    """

    log = logger if logger is not None else _logger
    if not isinstance(payload, Mapping):
        raise InvalidMappingError(
            f"mapping table must be an object, got {type(payload).__name__}"
        )

    resolved_version = version
    if resolved_version is None:
        raw_version = payload.get("version", payload.get("mapping_version", DEFAULT_MAPPING_VERSION))
        resolved_version = str(raw_version)

    sections: dict[Gender, GenderMappingSection] = {}
    for gender, name in _SECTION_BY_GENDER.items():
        raw_section = payload.get(name)
        if not isinstance(raw_section, Mapping):
            raise InvalidMappingError(f"mapping table is missing the '{name}' section")
        raw_morph_values = raw_section.get("morph_values")
        if not isinstance(raw_morph_values, Mapping):
            raise InvalidMappingError(f"'{name}.morph_values' must be an object")
        sections[gender] = GenderMappingSection(
            morph_values=_parse_ranges(raw_morph_values, f"{name}.morph_values", log),
            limb_masses=_parse_optional_ranges(raw_section, "limb_masses", name, log),
            face_values=_parse_optional_ranges(raw_section, "face_values", name, log),
        )

    table = GenderMappingTable(
        version=resolved_version,
        masculine=sections[Gender.MASCULINE],
        feminine=sections[Gender.FEMININE],
    )
    log.debug(
        "mapping_table_parsed",
        version=table.version,
        masculine_morph_values=len(table.masculine.morph_values),
        feminine_morph_values=len(table.feminine.morph_values),
        masculine_limb_masses=len(table.masculine.limb_masses),
        feminine_limb_masses=len(table.feminine.limb_masses),
    )
    return table


def load_mapping_table(path: PathLike, *, version: str | None = None) -> GenderMappingTable:
    """Load a mapping table from a YAML or JSON file."""

    file_path = Path(path)
    try:
        text = file_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise InvalidMappingError(f"{file_path}: unable to read mapping table ({exc})") from exc

    try:
        if file_path.suffix.lower() == ".json":
            loaded = cast("object", json.loads(text))
        else:
            loaded = cast("object", yaml.safe_load(text))
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise InvalidMappingError(f"{file_path}: invalid mapping document ({exc})") from exc
    return parse_mapping_table(loaded, version=version)


def default_mapping_table() -> GenderMappingTable:
    """Packaged fallback mapping used when no versioned table is configured."""

    resource = resources.files("avatar_morphology.resources").joinpath(DEFAULT_MAPPING_RESOURCE)
    loaded = cast("object", yaml.safe_load(resource.read_text(encoding="utf-8")))
    return parse_mapping_table(loaded)


def _parse_optional_ranges(
    raw_section: Mapping[str, object],
    field_name: str,
    section_name: str,
    log: Any,
) -> dict[str, ValueRange]:
    raw = raw_section.get(field_name)
    if raw is None:
        return {}
    if not isinstance(raw, Mapping):
        raise InvalidMappingError(f"'{section_name}.{field_name}' must be an object")
    return _parse_ranges(raw, f"{section_name}.{field_name}", log)


def _parse_ranges(raw: Mapping[object, object], path: str, log: Any) -> dict[str, ValueRange]:
    parsed: dict[str, ValueRange] = {}
    for raw_key, raw_range in raw.items():
        key = str(raw_key)
        value_range = _coerce_range(raw_range)
        if value_range is None:
            log.warning("policy_range_skipped", path=f"{path}.{key}", value=repr(raw_range))
            continue
        parsed[key] = value_range
    return parsed


def _coerce_range(value: object) -> ValueRange | None:
    if not isinstance(value, Mapping):
        return None
    minimum = value.get("min")
    maximum = value.get("max")
    if not _is_finite_number(minimum) or not _is_finite_number(maximum):
        return None
    if float(cast("float", minimum)) > float(cast("float", maximum)):
        return None
    return ValueRange(float(cast("float", minimum)), float(cast("float", maximum)))


def _is_finite_number(value: object) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(float(value))
    )


def _ranges_to_dict(ranges: Mapping[str, ValueRange]) -> dict[str, dict[str, float]]:
    return {key: value.to_dict() for key, value in ranges.items()}


__all__ = [
    "DEFAULT_MAPPING_VERSION",
    "GenderMappingSection",
    "GenderMappingTable",
    "InvalidMappingError",
    "default_mapping_table",
    "load_mapping_table",
    "parse_mapping_table",
]
