"""Priority-ordered, batched morph-target streaming."""

from avatar_morphology.streaming.orchestrator import (
    InMemoryMorphMesh,
    MorphTargetMesh,
    StreamOrchestrator,
    StreamSession,
    StreamSettings,
    StreamState,
    StreamStatus,
    build_stream_tasks,
    classify_priority,
)

__all__ = [
    "InMemoryMorphMesh",
    "MorphTargetMesh",
    "StreamOrchestrator",
    "StreamSession",
    "StreamSettings",
    "StreamState",
    "StreamStatus",
    "build_stream_tasks",
    "classify_priority",
]
