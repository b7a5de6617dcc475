"""Skeleton scaling: bone mapping document, interplay predicates and the scaler."""

from avatar_morphology.skeleton.config import (
    AxisScale,
    BoneGroup,
    BoneMapping,
    BoneMappingConfig,
    BoneMappingError,
    BoneMappingIssue,
    BoneSelectors,
    DerivedMass,
    GateConfig,
    InterplayRule,
    default_bone_mapping,
    load_bone_mapping,
    parse_bone_mapping,
    parse_formula,
)
from avatar_morphology.skeleton.predicates import (
    PredicateSyntaxError,
    parse_predicate,
)
from avatar_morphology.skeleton.scaler import BoneScaler, compute_bone_scales

__all__ = [
    "AxisScale",
    "BoneGroup",
    "BoneMapping",
    "BoneMappingConfig",
    "BoneMappingError",
    "BoneMappingIssue",
    "BoneScaler",
    "BoneSelectors",
    "DerivedMass",
    "GateConfig",
    "InterplayRule",
    "PredicateSyntaxError",
    "compute_bone_scales",
    "default_bone_mapping",
    "load_bone_mapping",
    "parse_bone_mapping",
    "parse_formula",
    "parse_predicate",
]
