"""Per-gender morph policy construction with version-keyed caching."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Final

import structlog

from avatar_morphology.domain.keys import SUPPLEMENTARY_FACE_KEYS, canonicalize
from avatar_morphology.domain.models import Gender, GenderPolicy, ValueRange

if TYPE_CHECKING:
    from collections.abc import Mapping

    from avatar_morphology.policy.mapping import GenderMappingTable

SUPPLEMENTARY_DEFAULT_RANGE: Final[ValueRange] = ValueRange(-2.0, 2.0)


class PolicyBuilder:
    """Build ``GenderPolicy`` values from a mapping table.

    Policies are cached by ``(gender, mapping.version)``. The allow-list
    (required plus optional keys) is identical for both genders of one table: a key
    that only one gender defines is admitted as optional for the other, bounded by
    the defining gender's range.
    """

    def __init__(self, *, logger: Any | None = None) -> None:
        self._cache: dict[tuple[Gender, str], GenderPolicy] = {}
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def build(self, mapping: GenderMappingTable, gender: Gender | str) -> GenderPolicy:
        resolved = Gender.parse(gender)
        cache_key = (resolved, mapping.version)
        cached = self._cache.get(cache_key)
        if cached is not None:
            return cached

        policy = self._build_uncached(mapping, resolved)
        self._cache[cache_key] = policy
        return policy

    def build_all(self, mapping: GenderMappingTable) -> dict[Gender, GenderPolicy]:
        return {gender: self.build(mapping, gender) for gender in Gender}

    def clear_cache(self) -> None:
        self._cache.clear()

    def _build_uncached(self, mapping: GenderMappingTable, gender: Gender) -> GenderPolicy:
        section = mapping.section(gender)
        other_section = mapping.section(gender.other)

        ranges: dict[str, ValueRange] = {}
        required: set[str] = set()
        optional: set[str] = set()

        for raw_key, value_range in section.shape_ranges().items():
            key = canonicalize(raw_key)
            if not key:
                self._logger.warning("policy_key_skipped", gender=str(gender), raw_key=raw_key)
                continue
            ranges[key] = value_range
            required.discard(key)
            optional.discard(key)
            if value_range.is_banned:
                optional.add(key)
            else:
                required.add(key)

        supplementary_added = 0
        for face_key in SUPPLEMENTARY_FACE_KEYS:
            key = canonicalize(face_key)
            if key in ranges:
                continue
            ranges[key] = SUPPLEMENTARY_DEFAULT_RANGE
            optional.add(key)
            supplementary_added += 1

        cross_gender_added = 0
        for raw_key, value_range in other_section.shape_ranges().items():
            key = canonicalize(raw_key)
            if not key or key in ranges:
                continue
            ranges[key] = value_range
            optional.add(key)
            cross_gender_added += 1

        limb_ranges = _canonical_ranges(section.limb_masses)
        for key, value_range in _canonical_ranges(other_section.limb_masses).items():
            limb_ranges.setdefault(key, value_range)

        policy = GenderPolicy(
            gender=gender,
            mapping_version=mapping.version,
            required_keys=frozenset(required),
            optional_keys=frozenset(optional),
            ranges=ranges,
            limb_ranges=limb_ranges,
        )
        self._logger.info(
            "policy_built",
            gender=str(gender),
            mapping_version=mapping.version,
            required_keys=len(policy.required_keys),
            optional_keys=len(policy.optional_keys),
            banned_keys=len(policy.banned_keys),
            supplementary_added=supplementary_added,
            cross_gender_added=cross_gender_added,
            limb_keys=len(policy.limb_ranges),
        )
        return policy


def _canonical_ranges(ranges: Mapping[str, ValueRange]) -> dict[str, ValueRange]:
    canonical: dict[str, ValueRange] = {}
    for raw_key, value_range in ranges.items():
        key = canonicalize(raw_key)
        if key:
            canonical[key] = value_range
    return canonical


def allow_list(mapping: GenderMappingTable) -> frozenset[str]:
    """Stable allow-list shared by both genders of ``mapping``."""

    return PolicyBuilder().build(mapping, Gender.MASCULINE).allowed_keys


__all__ = ["SUPPLEMENTARY_DEFAULT_RANGE", "PolicyBuilder", "allow_list"]
