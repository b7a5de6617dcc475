"""Domain value types and key canonicalization."""

from avatar_morphology.domain.keys import (
    LimbKey,
    MorphKey,
    canonicalize,
    from_target_name,
    to_target_name,
)
from avatar_morphology.domain.models import (
    ArchetypeCandidate,
    BlendResult,
    BoneScaleTarget,
    Gender,
    GenderPolicy,
    StreamPriority,
    StreamTask,
    ValidatedParameterSet,
    ValueRange,
)

__all__ = [
    "ArchetypeCandidate",
    "BlendResult",
    "BoneScaleTarget",
    "Gender",
    "GenderPolicy",
    "LimbKey",
    "MorphKey",
    "StreamPriority",
    "StreamTask",
    "ValidatedParameterSet",
    "ValueRange",
    "canonicalize",
    "from_target_name",
    "to_target_name",
]
