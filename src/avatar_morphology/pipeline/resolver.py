"""End-to-end morphology resolution.

``resolve`` runs: strategy selection -> validation -> style constraints -> optional
refinement round trip -> validation of the refined values -> completion. Only the
refinement call suspends. A newer ``resolve`` supersedes an older one: the older
request's token is cancelled, the active stream is aborted, and the superseded
call raises ``ResolutionSupersededError`` instead of returning stale values.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog

from avatar_morphology.blending.blender import Blender
from avatar_morphology.observability.logging import correlation_scope
from avatar_morphology.pipeline.strategies import (
    PRECOMPUTED_REFINEMENT_SCORE,
    ResolutionRequest,
    Resolver,
    StrategyContext,
    StrategyResult,
    default_strategies,
    select_strategy,
)
from avatar_morphology.policy.builder import PolicyBuilder
from avatar_morphology.refinement.contract import RefinementRequest
from avatar_morphology.utils.concurrency import CancellationToken
from avatar_morphology.validation.clamper import AvatarStyle, Validator

if TYPE_CHECKING:
    from avatar_morphology.domain.models import (
        BoneScaleTarget,
        Gender,
        GenderPolicy,
        ValidatedParameterSet,
    )
    from avatar_morphology.policy.mapping import GenderMappingTable
    from avatar_morphology.refinement.client import RefinementClient, RefinementOutcome
    from avatar_morphology.skeleton.scaler import BoneScaler
    from avatar_morphology.streaming.orchestrator import (
        MorphTargetMesh,
        StreamOrchestrator,
        StreamSession,
    )


class ResolutionSupersededError(RuntimeError):
    """Raised when a newer resolution started before this one finished."""

    def __init__(self, request_id: str, *, superseded_by: str | None = None) -> None:
        self.request_id = request_id
        self.superseded_by = superseded_by
        detail = f" by {superseded_by}" if superseded_by else ""
        super().__init__(f"resolution {request_id} was superseded{detail}")


@dataclass(frozen=True, slots=True)
class ResolutionMetadata:
    strategy: str
    confidence: float
    quality_score: float
    ai_refined: bool
    mapping_version: str
    allowlisted_count: int
    rejected_count: int
    banned_count: int
    clamped_keys: tuple[str, ...]
    envelope_constrained: bool
    out_of_range_count: int
    active_keys_count: int
    ai_confidence: float | None = None
    refinement_failure: str | None = None
    refinement_retries: int = 0
    style_adjusted_keys: tuple[str, ...] = ()
    defaulted_keys: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, object]:
        return {
            "strategy": self.strategy,
            "confidence": self.confidence,
            "quality_score": self.quality_score,
            "ai_refined": self.ai_refined,
            "ai_confidence": self.ai_confidence,
            "mapping_version": self.mapping_version,
            "allowlisted_count": self.allowlisted_count,
            "rejected_count": self.rejected_count,
            "banned_count": self.banned_count,
            "clamped_keys": list(self.clamped_keys),
            "envelope_constrained": self.envelope_constrained,
            "out_of_range_count": self.out_of_range_count,
            "active_keys_count": self.active_keys_count,
            "refinement_failure": self.refinement_failure,
            "refinement_retries": self.refinement_retries,
            "style_adjusted_keys": list(self.style_adjusted_keys),
            "defaulted_keys": list(self.defaulted_keys),
        }


@dataclass(frozen=True, slots=True)
class ResolutionResult:
    request_id: str
    gender: Gender
    parameters: ValidatedParameterSet
    metadata: ResolutionMetadata

    def to_dict(self) -> dict[str, object]:
        return {
            "request_id": self.request_id,
            "gender": str(self.gender),
            "parameters": self.parameters.to_dict(),
            "metadata": self.metadata.to_dict(),
        }


@dataclass(frozen=True, slots=True)
class AppliedResolution:
    result: ResolutionResult
    bone_scales: tuple[BoneScaleTarget, ...] = ()
    stream: StreamSession | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "request_id": self.result.request_id,
            "bone_scales": [target.to_dict() for target in self.bone_scales],
            "stream": self.stream.state().to_dict() if self.stream is not None else None,
        }


@dataclass(frozen=True, slots=True)
class ResolutionSettings:
    default_style: AvatarStyle = AvatarStyle.REALISTIC
    refine_enabled: bool = True


@dataclass(frozen=True, slots=True)
class _ValidationPass:
    parameters: ValidatedParameterSet
    rejected: tuple[str, ...] = ()
    style_adjusted: tuple[str, ...] = ()


class MorphologyResolver:
    """Resolve scan output into one validated parameter set and fan it out."""

    def __init__(
        self,
        mapping: GenderMappingTable,
        *,
        policy_builder: PolicyBuilder | None = None,
        blender: Blender | None = None,
        validator: Validator | None = None,
        refinement_client: RefinementClient | None = None,
        bone_scaler: BoneScaler | None = None,
        stream_orchestrator: StreamOrchestrator | None = None,
        strategies: Sequence[Resolver] | None = None,
        settings: ResolutionSettings | None = None,
        logger: Any | None = None,
    ) -> None:
        self._mapping = mapping
        self._policies = policy_builder if policy_builder is not None else PolicyBuilder()
        self._blender = blender if blender is not None else Blender()
        self._validator = validator if validator is not None else Validator()
        self._refinement = refinement_client
        self._bone_scaler = bone_scaler
        self._streams = stream_orchestrator
        self._strategies = tuple(strategies) if strategies is not None else default_strategies()
        self._settings = settings if settings is not None else ResolutionSettings()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._active_token: CancellationToken | None = None
        self._active_request_id: str | None = None
        self._latest_request_id: str | None = None

    @property
    def mapping(self) -> GenderMappingTable:
        return self._mapping

    @property
    def latest_request_id(self) -> str | None:
        return self._latest_request_id

    def policy_for(self, gender: Gender | str) -> GenderPolicy:
        return self._policies.build(self._mapping, gender)

    def cancel_active(self, reason: str = "cancelled") -> bool:
        """Cancel the in-flight resolution, if any, and abort the active stream."""

        cancelled = False
        if self._active_token is not None and not self._active_token.is_cancelled:
            self._active_token.cancel(reason)
            cancelled = True
        if self._streams is not None:
            self._streams.abort()
        return cancelled

    async def resolve(self, request: ResolutionRequest) -> ResolutionResult:
        previous = self._active_request_id
        if self.cancel_active(f"superseded by {request.request_id}"):
            self._logger.info(
                "resolution_superseded",
                request_id=previous,
                superseded_by=request.request_id,
            )
        token = CancellationToken()
        self._active_token = token
        self._active_request_id = request.request_id
        self._latest_request_id = request.request_id

        with correlation_scope(request_id=request.request_id, user_id=request.user_id):
            try:
                return await self._resolve(request, token)
            except asyncio.CancelledError:
                if not token.is_cancelled:
                    raise
                raise ResolutionSupersededError(
                    request.request_id,
                    superseded_by=self._latest_request_id,
                ) from None
            finally:
                if self._active_token is token:
                    self._active_token = None
                    self._active_request_id = None

    def apply(
        self,
        result: ResolutionResult,
        mesh: MorphTargetMesh | None = None,
        bone_names: Iterable[str] | None = None,
    ) -> AppliedResolution:
        """Fan a result out to the skeleton and the mesh.

        Streaming needs a running event loop. A result from a superseded request is
        refused.
        """

        if result.request_id != self._latest_request_id:
            raise ResolutionSupersededError(result.request_id, superseded_by=self._latest_request_id)

        bone_scales: tuple[BoneScaleTarget, ...] = ()
        if self._bone_scaler is not None and bone_names is not None:
            bone_scales = self._bone_scaler.compute_bone_scales(
                result.parameters.limb_masses,
                result.parameters.shape_values,
                bone_names,
            )
        stream: StreamSession | None = None
        if self._streams is not None and mesh is not None:
            stream = self._streams.start(result.parameters.shape_values, mesh)
        return AppliedResolution(result=result, bone_scales=bone_scales, stream=stream)

    async def _resolve(self, request: ResolutionRequest, token: CancellationToken) -> ResolutionResult:
        policy = self._policies.build(self._mapping, request.gender)
        style = request.style if request.style is not None else self._settings.default_style
        chosen = select_strategy(
            self._strategies,
            request,
            StrategyContext(policy=policy, blender=self._blender),
        )
        self._logger.info(
            "resolution_strategy_selected",
            strategy=chosen.strategy,
            gender=str(policy.gender),
            shape_keys=len(chosen.shape_values),
            limb_keys=len(chosen.limb_masses),
        )

        current = self._validate(chosen.shape_values, chosen.limb_masses, policy, request, style)
        outcome: RefinementOutcome | None = None
        if self._should_refine(request, chosen):
            outcome = await self._refine(request, policy, current.parameters, token)
            token.raise_if_cancelled()
            response = outcome.response
            if response is not None and response.refined:
                if response.mapping_version != policy.mapping_version:
                    self._logger.warning(
                        "refinement_mapping_version_mismatch",
                        expected=policy.mapping_version,
                        received=response.mapping_version,
                    )
                current = self._validate(
                    response.final_shape_values,
                    response.final_limb_masses,
                    policy,
                    request,
                    style,
                )

        completed = self._validator.ensure_complete(current.parameters, policy)
        token.raise_if_cancelled()

        metadata = self._metadata(
            chosen,
            outcome,
            completed,
            policy,
            request,
            style_adjusted=current.style_adjusted,
            rejected_count=len(current.rejected),
        )
        self._logger.info(
            "resolution_completed",
            strategy=metadata.strategy,
            ai_refined=metadata.ai_refined,
            confidence=metadata.confidence,
            allowlisted=metadata.allowlisted_count,
            rejected=metadata.rejected_count,
            banned=metadata.banned_count,
            clamped=len(metadata.clamped_keys),
        )
        return ResolutionResult(
            request_id=request.request_id,
            gender=policy.gender,
            parameters=completed,
            metadata=metadata,
        )

    def _should_refine(self, request: ResolutionRequest, chosen: StrategyResult) -> bool:
        return (
            self._refinement is not None
            and self._settings.refine_enabled
            and request.refine
            and not chosen.refined
        )

    async def _refine(
        self,
        request: ResolutionRequest,
        policy: GenderPolicy,
        validated: ValidatedParameterSet,
        token: CancellationToken,
    ) -> RefinementOutcome:
        if self._refinement is None:
            raise RuntimeError("refinement client is not configured")
        refinement_request = RefinementRequest(
            request_id=request.request_id,
            gender=policy.gender,
            shape_values=validated.shape_values,
            limb_masses=validated.limb_masses,
            mapping_version=policy.mapping_version,
            envelope=request.envelope,
            classification=request.classification,
            measurements=request.measurements,
            user_id=request.user_id,
        )
        return await self._refinement.refine(refinement_request, cancel_token=token)

    def _validate(
        self,
        shape_values: Mapping[str, float],
        limb_masses: Mapping[str, float],
        policy: GenderPolicy,
        request: ResolutionRequest,
        style: AvatarStyle,
    ) -> _ValidationPass:
        validated = self._validator.validate(
            shape_values,
            policy,
            limb_masses=limb_masses,
            envelope=request.envelope,
        )
        styled, adjusted = self._validator.apply_style_constraints(validated, policy, style)
        return _ValidationPass(
            parameters=styled,
            rejected=validated.rejected_keys,
            style_adjusted=adjusted,
        )

    def _metadata(
        self,
        chosen: StrategyResult,
        outcome: RefinementOutcome | None,
        parameters: ValidatedParameterSet,
        policy: GenderPolicy,
        request: ResolutionRequest,
        *,
        style_adjusted: tuple[str, ...],
        rejected_count: int,
    ) -> ResolutionMetadata:
        response = outcome.response if outcome is not None else None
        refined_by_service = response is not None and response.refined
        refinement = response if refined_by_service else chosen.refinement

        if refinement is not None and refinement.refined:
            confidence = (
                refinement.confidence
                if refinement.confidence is not None
                else PRECOMPUTED_REFINEMENT_SCORE
            )
            quality = PRECOMPUTED_REFINEMENT_SCORE
            out_of_range = refinement.out_of_range_count
            mapping_version = refinement.mapping_version
            ai_confidence = refinement.confidence
        else:
            confidence = chosen.confidence
            quality = chosen.quality_score
            out_of_range = len(parameters.clamped_keys)
            mapping_version = policy.mapping_version
            ai_confidence = None

        failure = outcome.failure if outcome is not None else None
        return ResolutionMetadata(
            strategy=chosen.strategy,
            confidence=confidence,
            quality_score=quality,
            ai_refined=refinement is not None and refinement.refined,
            ai_confidence=ai_confidence,
            mapping_version=mapping_version,
            allowlisted_count=len(parameters.shape_values),
            rejected_count=rejected_count,
            banned_count=len(parameters.banned_keys_forced),
            clamped_keys=parameters.clamped_keys,
            envelope_constrained=bool(request.envelope),
            out_of_range_count=out_of_range,
            active_keys_count=parameters.active_keys_count,
            refinement_failure=failure.code if failure is not None else None,
            refinement_retries=outcome.retries if outcome is not None else 0,
            style_adjusted_keys=style_adjusted,
            defaulted_keys=parameters.defaulted_keys,
        )


__all__ = [
    "AppliedResolution",
    "MorphologyResolver",
    "ResolutionMetadata",
    "ResolutionResult",
    "ResolutionSettings",
    "ResolutionSupersededError",
]
