"""Resolution request model and the ordered source-selection strategies.

Each strategy inspects the request and either produces raw (unvalidated) shape
values and limb masses or declines with ``None``. The first strategy that answers
wins; ``comprehensive_fallback`` always answers.
"""

from __future__ import annotations

import abc
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING, Final, Protocol, TypeAlias

from avatar_morphology.blending.blender import NEUTRAL_LIMB_MASS
from avatar_morphology.domain.models import ArchetypeCandidate, Gender, ValueRange, finite_items
from avatar_morphology.refinement.contract import (
    ClassificationHints,
    UserMeasurements,
    parse_refinement_response,
)
from avatar_morphology.validation.clamper import AvatarStyle, parse_envelope

if TYPE_CHECKING:
    from avatar_morphology.blending.blender import Blender
    from avatar_morphology.domain.models import BlendResult, GenderPolicy
    from avatar_morphology.refinement.contract import RefinementResponse

DEFAULT_SOURCE_CONFIDENCE: Final[float] = 0.8
DEFAULT_SOURCE_QUALITY: Final[float] = 0.8
PRECOMPUTED_REFINEMENT_SCORE: Final[float] = 0.95
FALLBACK_CONFIDENCE: Final[float] = 0.3
FALLBACK_QUALITY: Final[float] = 0.5

SourceValues: TypeAlias = tuple[Mapping[str, float] | None, Mapping[str, float] | None]


@dataclass(frozen=True, slots=True)
class ResolutionRequest:
    """Everything the upstream scan produced for one subject."""

    request_id: str
    gender: Gender
    candidates: tuple[ArchetypeCandidate, ...] | None = None
    precomputed_refinement: Mapping[str, object] | None = None
    match_shape_values: Mapping[str, float] | None = None
    match_limb_masses: Mapping[str, float] | None = None
    semantic_values: Mapping[str, float] | None = None
    estimate_shape_values: Mapping[str, float] | None = None
    estimate_limb_masses: Mapping[str, float] | None = None
    envelope: Mapping[str, ValueRange] | None = None
    classification: ClassificationHints | None = None
    measurements: UserMeasurements = field(default_factory=UserMeasurements)
    style: AvatarStyle | None = None
    user_id: str | None = None
    refine: bool = True

    def __post_init__(self) -> None:
        if not isinstance(self.request_id, str) or not self.request_id.strip():
            raise ValueError("request_id must be a non-empty string")
        object.__setattr__(self, "gender", Gender.parse(self.gender))
        if self.candidates is not None:
            object.__setattr__(self, "candidates", tuple(self.candidates))

    @classmethod
    def from_payload(cls, payload: Mapping[str, object]) -> ResolutionRequest:
        """Build a request from a scan-result document.

        Recognised keys: ``request_id``, ``gender``, ``candidates`` (or
        ``selected_archetypes``), ``ai_refinement``, ``blended_shape_params``,
        ``blended_limb_masses``, ``semantic_values``, ``estimate_shape_params``,
        ``estimate_limb_masses``, ``k5_envelope``, ``vision_classification``,
        ``user_measurements``, ``style``, ``user_id``, ``refine``.
        """

        raw_candidates = payload.get("candidates", payload.get("selected_archetypes"))
        candidates: tuple[ArchetypeCandidate, ...] | None = None
        if raw_candidates is not None:
            if not isinstance(raw_candidates, list):
                raise ValueError("candidates must be a list")
            candidates = tuple(
                ArchetypeCandidate.from_payload(_require_mapping(item, "candidates[]"))
                for item in raw_candidates
            )

        precomputed = payload.get("ai_refinement")
        raw_style = payload.get("style")
        raw_user = payload.get("user_id")
        raw_refine = payload.get("refine", True)
        return cls(
            request_id=str(payload.get("request_id", "")),
            gender=Gender.parse(str(payload.get("gender", ""))),
            candidates=candidates,
            precomputed_refinement=precomputed if isinstance(precomputed, Mapping) else None,
            match_shape_values=_optional_values(payload.get("blended_shape_params")),
            match_limb_masses=_optional_values(payload.get("blended_limb_masses")),
            semantic_values=_optional_values(payload.get("semantic_values")),
            estimate_shape_values=_optional_values(payload.get("estimate_shape_params")),
            estimate_limb_masses=_optional_values(payload.get("estimate_limb_masses")),
            envelope=parse_envelope(payload.get("k5_envelope")) or None,
            classification=_optional_classification(payload.get("vision_classification")),
            measurements=UserMeasurements.from_payload(
                _optional_mapping(payload.get("user_measurements"))
            ),
            style=AvatarStyle(raw_style) if isinstance(raw_style, str) else None,
            user_id=raw_user if isinstance(raw_user, str) and raw_user.strip() else None,
            refine=raw_refine if isinstance(raw_refine, bool) else True,
        )


@dataclass(frozen=True, slots=True)
class StrategyContext:
    policy: GenderPolicy
    blender: Blender


@dataclass(frozen=True, slots=True)
class StrategyResult:
    """Raw values chosen by one strategy, before validation."""

    strategy: str
    shape_values: Mapping[str, float]
    limb_masses: Mapping[str, float]
    confidence: float
    quality_score: float
    refinement: RefinementResponse | None = None
    blend: BlendResult | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "shape_values", MappingProxyType(dict(self.shape_values)))
        object.__setattr__(self, "limb_masses", MappingProxyType(dict(self.limb_masses)))

    @property
    def refined(self) -> bool:
        return self.refinement is not None and self.refinement.refined


class Resolver(Protocol):
    """One source-selection strategy."""

    @property
    def name(self) -> str: ...

    def resolve(self, request: ResolutionRequest, context: StrategyContext) -> StrategyResult | None:
        """Return values from this source, or ``None`` when the source is absent."""


class PrecomputedRefinementResolver:
    """Use a refinement already attached to the scan results.

    A payload claiming ``ai_refine`` that violates the response contract raises
    ``SchemaValidationError`` rather than falling through.
    """

    name = "ai_refined_from_scan_results"

    def resolve(self, request: ResolutionRequest, context: StrategyContext) -> StrategyResult | None:
        payload = request.precomputed_refinement
        if payload is None or payload.get("ai_refine") is not True:
            return None
        response = parse_refinement_response(payload)
        score = response.confidence if response.confidence is not None else PRECOMPUTED_REFINEMENT_SCORE
        return StrategyResult(
            strategy=self.name,
            shape_values=response.final_shape_values,
            limb_masses=response.final_limb_masses,
            confidence=score,
            quality_score=PRECOMPUTED_REFINEMENT_SCORE,
            refinement=response,
        )


class ArchetypeBlendResolver:
    """Blend the scan-matched archetype candidates.

    ``candidates=None`` declines; an explicitly empty list reaches the blender and
    raises ``EmptyInputError``.
    """

    name = "archetype_blend"
    single_name = "primary_archetype"

    def resolve(self, request: ResolutionRequest, context: StrategyContext) -> StrategyResult | None:
        if request.candidates is None:
            return None
        blend = context.blender.blend(request.candidates)
        return StrategyResult(
            strategy=self.single_name if len(request.candidates) == 1 else self.name,
            shape_values=blend.shape_values,
            limb_masses=blend.limb_masses,
            confidence=blend.confidence,
            quality_score=blend.quality_score,
            blend=blend,
        )


class _ValueSourceResolver(abc.ABC):
    name = ""

    @abc.abstractmethod
    def values(self, request: ResolutionRequest) -> SourceValues:
        """Pre-computed shape values and limb masses this source carries."""

    def resolve(self, request: ResolutionRequest, context: StrategyContext) -> StrategyResult | None:
        shape_values, limb_masses = self.values(request)
        if not shape_values:
            return None
        return StrategyResult(
            strategy=self.name,
            shape_values=shape_values,
            limb_masses=limb_masses or {},
            confidence=DEFAULT_SOURCE_CONFIDENCE,
            quality_score=DEFAULT_SOURCE_QUALITY,
        )


class MatchBlendedResolver(_ValueSourceResolver):
    name = "match_blended_data"

    def values(self, request: ResolutionRequest) -> SourceValues:
        return request.match_shape_values, request.match_limb_masses


class SemanticResolver(_ValueSourceResolver):
    name = "semantic_validated"

    def values(self, request: ResolutionRequest) -> SourceValues:
        return request.semantic_values, None


class EstimateResolver(_ValueSourceResolver):
    name = "estimate_data"

    def values(self, request: ResolutionRequest) -> SourceValues:
        return request.estimate_shape_values, request.estimate_limb_masses


class ComprehensiveFallbackResolver:
    """Policy defaults: every required key at its neutral value, neutral limb masses."""

    name = "comprehensive_fallback"

    def resolve(self, request: ResolutionRequest, context: StrategyContext) -> StrategyResult:
        policy = context.policy
        shape_values = {
            key: policy.ranges[key].nearest_to_zero() for key in sorted(policy.required_keys)
        }
        limb_masses = {
            key: value_range.clamp(NEUTRAL_LIMB_MASS)
            for key, value_range in sorted(policy.limb_ranges.items())
        }
        return StrategyResult(
            strategy=self.name,
            shape_values=shape_values,
            limb_masses=limb_masses,
            confidence=FALLBACK_CONFIDENCE,
            quality_score=FALLBACK_QUALITY,
        )


def default_strategies() -> tuple[Resolver, ...]:
    return (
        PrecomputedRefinementResolver(),
        ArchetypeBlendResolver(),
        MatchBlendedResolver(),
        SemanticResolver(),
        EstimateResolver(),
        ComprehensiveFallbackResolver(),
    )


def select_strategy(
    strategies: Sequence[Resolver],
    request: ResolutionRequest,
    context: StrategyContext,
) -> StrategyResult:
    """First answer in priority order; the policy fallback when none answers."""

    for strategy in strategies:
        result = strategy.resolve(request, context)
        if result is not None:
            return result
    return ComprehensiveFallbackResolver().resolve(request, context)


def _optional_values(value: object) -> dict[str, float] | None:
    if not isinstance(value, Mapping):
        return None
    values = dict(finite_items({str(key): item for key, item in value.items()}))
    return values or None


def _optional_mapping(value: object) -> Mapping[str, object] | None:
    if isinstance(value, Mapping):
        return {str(key): item for key, item in value.items()}
    return None


def _optional_classification(value: object) -> ClassificationHints | None:
    mapping = _optional_mapping(value)
    if mapping is None:
        return None
    return ClassificationHints.from_payload(mapping)


def _require_mapping(value: object, path: str) -> Mapping[str, object]:
    if not isinstance(value, Mapping):
        raise ValueError(f"{path} must be an object")
    return {str(key): item for key, item in value.items()}


__all__ = [
    "ArchetypeBlendResolver",
    "ComprehensiveFallbackResolver",
    "EstimateResolver",
    "MatchBlendedResolver",
    "PrecomputedRefinementResolver",
    "ResolutionRequest",
    "Resolver",
    "SemanticResolver",
    "StrategyContext",
    "StrategyResult",
    "default_strategies",
    "select_strategy",
]
