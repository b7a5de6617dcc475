"""Resolution pipeline: strategy chain, validation, refinement and fan-out."""

from avatar_morphology.pipeline.resolver import (
    AppliedResolution,
    MorphologyResolver,
    ResolutionMetadata,
    ResolutionResult,
    ResolutionSettings,
    ResolutionSupersededError,
)
from avatar_morphology.pipeline.strategies import (
    ArchetypeBlendResolver,
    ComprehensiveFallbackResolver,
    EstimateResolver,
    MatchBlendedResolver,
    PrecomputedRefinementResolver,
    ResolutionRequest,
    Resolver,
    SemanticResolver,
    StrategyContext,
    StrategyResult,
    default_strategies,
    select_strategy,
)

__all__ = [
    "AppliedResolution",
    "ArchetypeBlendResolver",
    "ComprehensiveFallbackResolver",
    "EstimateResolver",
    "MatchBlendedResolver",
    "MorphologyResolver",
    "PrecomputedRefinementResolver",
    "ResolutionMetadata",
    "ResolutionRequest",
    "ResolutionResult",
    "ResolutionSettings",
    "ResolutionSupersededError",
    "Resolver",
    "SemanticResolver",
    "StrategyContext",
    "StrategyResult",
    "default_strategies",
    "select_strategy",
]
