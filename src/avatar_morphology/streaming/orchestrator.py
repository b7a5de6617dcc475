"""Progressive, priority-ordered morph-target application.

Tasks are grouped into fixed-size batches and one batch is written per cooperative
tick, so the event loop (and whatever renders the mesh) is never blocked for more
than one batch. Writes inside a tick never yield, so a mesh is never observed
half-way through a batch.
"""

from __future__ import annotations

import asyncio
import itertools
import math
from collections.abc import Callable, Iterable, Mapping, MutableSequence
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Final, Protocol

import structlog

from avatar_morphology.domain.keys import canonicalize, to_target_name
from avatar_morphology.domain.models import StreamPriority, StreamTask
from avatar_morphology.refinement.errors import SleepFn
from avatar_morphology.utils.concurrency import CancellationToken
from avatar_morphology.utils.options import bool_option, float_option, int_option

STRUCTURAL_KEYWORDS: Final[tuple[str, ...]] = (
    "height",
    "bodyWeight",
    "bodybuilderSize",
    "athleteFigure",
    "shoulderWidth",
    "hipWidth",
    "legLength",
    "torsoLength",
)
DETAIL_KEYWORDS: Final[tuple[str, ...]] = (
    "pearFigure",
    "appleShape",
    "muscularity",
    "chestSize",
    "waistSize",
    "gluteSize",
    "thighSize",
    "calfSize",
    "armSize",
)

ProgressCallback = Callable[[int, int], None]
BatchCallback = Callable[[int, int], None]
CompleteCallback = Callable[[], None]

_SESSION_IDS = itertools.count(1)


class StreamStatus(StrEnum):
    IDLE = "idle"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ABORTED = "aborted"


@dataclass(frozen=True, slots=True)
class StreamState:
    """Snapshot of the orchestrator's current (or most recent) session."""

    status: StreamStatus
    current_batch: int = 0
    total_batches: int = 0
    applied: int = 0
    total: int = 0

    @property
    def is_streaming(self) -> bool:
        return self.status is StreamStatus.STREAMING

    def to_dict(self) -> dict[str, object]:
        return {
            "status": str(self.status),
            "current_batch": self.current_batch,
            "total_batches": self.total_batches,
            "applied": self.applied,
            "total": self.total,
        }


@dataclass(frozen=True, slots=True)
class StreamSettings:
    batch_size: int = 8
    frame_interval_seconds: float = 0.0
    enable_smoothing: bool = True
    smoothing_steps: int = 3

    def __post_init__(self) -> None:
        if self.batch_size <= 0:
            raise ValueError("batch_size must be > 0")
        if self.frame_interval_seconds < 0:
            raise ValueError("frame_interval_seconds must be >= 0")
        if self.smoothing_steps <= 0:
            raise ValueError("smoothing_steps must be > 0")

    @classmethod
    def from_config(cls, section: Mapping[str, object]) -> StreamSettings:
        defaults = cls()
        return cls(
            batch_size=int_option(section, "batch_size", defaults.batch_size),
            frame_interval_seconds=float_option(
                section, "frame_interval_seconds", defaults.frame_interval_seconds
            ),
            enable_smoothing=bool_option(section, "enable_smoothing", defaults.enable_smoothing),
            smoothing_steps=int_option(section, "smoothing_steps", defaults.smoothing_steps),
        )


class MorphTargetMesh(Protocol):
    """Live mesh surface: morph-target name -> influence index, plus the influences."""

    @property
    def morph_target_dictionary(self) -> Mapping[str, int]: ...

    @property
    def morph_target_influences(self) -> MutableSequence[float]: ...


class InMemoryMorphMesh:
    """Plain morph-target mesh used by the CLI and tests."""

    def __init__(self, target_names: Iterable[str], influences: Iterable[float] | None = None) -> None:
        names = list(dict.fromkeys(target_names))
        self._dictionary = {name: index for index, name in enumerate(names)}
        values = [float(value) for value in influences] if influences is not None else []
        if values and len(values) != len(names):
            raise ValueError("influences must match the number of morph targets")
        self._influences: list[float] = values or [0.0] * len(names)

    @property
    def morph_target_dictionary(self) -> Mapping[str, int]:
        return self._dictionary

    @property
    def morph_target_influences(self) -> MutableSequence[float]:
        return self._influences

    def influence(self, target_name: str) -> float:
        return self._influences[self._dictionary[target_name]]

    def snapshot(self) -> dict[str, float]:
        return {name: self._influences[index] for name, index in self._dictionary.items()}


def classify_priority(key: str) -> StreamPriority:
    lowered = key.lower()
    if any(keyword.lower() in lowered for keyword in STRUCTURAL_KEYWORDS):
        return StreamPriority.STRUCTURAL
    if any(keyword.lower() in lowered for keyword in DETAIL_KEYWORDS):
        return StreamPriority.DETAIL
    return StreamPriority.FINE


def build_stream_tasks(
    target_values: Mapping[str, float],
    mesh: MorphTargetMesh,
) -> tuple[StreamTask, ...]:
    """One task per addressable target, structural first; unknown keys are dropped."""

    dictionary = mesh.morph_target_dictionary
    by_target: dict[str, StreamTask] = {}
    for raw_key, value in target_values.items():
        if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
            continue
        if raw_key in dictionary:
            target_name = raw_key
            key = canonicalize(raw_key) or raw_key
        else:
            key = canonicalize(raw_key)
            mapped = to_target_name(key)
            if mapped is None or mapped not in dictionary:
                continue
            target_name = mapped
        by_target[target_name] = StreamTask(
            key=key,
            target_name=target_name,
            target_value=float(value),
            priority=classify_priority(key),
        )
    # sorted() is stable: input order is kept within a tier.
    return tuple(sorted(by_target.values(), key=lambda task: task.priority.rank))


class StreamSession:
    """One streaming run. Owns its task queue and smoothing state exclusively."""

    def __init__(self, tasks: tuple[StreamTask, ...], batch_size: int) -> None:
        self.id = next(_SESSION_IDS)
        self.token = CancellationToken()
        self.status = StreamStatus.STREAMING
        self.total = len(tasks)
        self.total_batches = math.ceil(len(tasks) / batch_size) if tasks else 0
        self.current_batch = 0
        self.applied = 0
        self._tasks: list[StreamTask] = list(tasks)
        self._batch_size = batch_size
        self.smoothing_origins: dict[str, float] = {}
        self._runner: asyncio.Task[None] | None = None

    @property
    def tasks(self) -> tuple[StreamTask, ...]:
        return tuple(self._tasks)

    @property
    def done(self) -> bool:
        return self.status in (StreamStatus.COMPLETED, StreamStatus.ABORTED)

    def batches(self) -> list[list[StreamTask]]:
        size = self._batch_size
        return [self._tasks[start : start + size] for start in range(0, len(self._tasks), size)]

    def state(self) -> StreamState:
        return StreamState(
            status=self.status,
            current_batch=self.current_batch,
            total_batches=self.total_batches,
            applied=self.applied,
            total=self.total,
        )

    def release(self) -> None:
        self._tasks.clear()
        self.smoothing_origins.clear()

    def attach(self, runner: asyncio.Task[None]) -> None:
        self._runner = runner

    def cancel_runner(self) -> None:
        if self._runner is not None and not self._runner.done():
            self._runner.cancel()

    async def wait(self) -> StreamStatus:
        """Wait for the session to finish; re-raises a callback failure."""

        runner = self._runner
        if runner is not None:
            await asyncio.wait({runner})
            error = None if runner.cancelled() else runner.exception()
            if error is not None:
                raise error
        return self.status


class StreamOrchestrator:
    """Apply target influences to a live mesh in priority-ordered batches.

    Only one session is active at a time; ``start`` aborts the previous session
    before queueing anything.
    """

    def __init__(
        self,
        settings: StreamSettings | None = None,
        *,
        on_progress: ProgressCallback | None = None,
        on_batch_complete: BatchCallback | None = None,
        on_complete: CompleteCallback | None = None,
        sleep: SleepFn = asyncio.sleep,
        logger: Any | None = None,
    ) -> None:
        self._settings = settings if settings is not None else StreamSettings()
        self._on_progress = on_progress
        self._on_batch_complete = on_batch_complete
        self._on_complete = on_complete
        self._sleep = sleep
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._session: StreamSession | None = None

    @property
    def settings(self) -> StreamSettings:
        return self._settings

    @property
    def is_active(self) -> bool:
        return self._session is not None and self._session.status is StreamStatus.STREAMING

    def state(self) -> StreamState:
        if self._session is None:
            return StreamState(status=StreamStatus.IDLE)
        return self._session.state()

    def start(self, target_values: Mapping[str, float], mesh: MorphTargetMesh) -> StreamSession:
        """Abort any active session and begin streaming ``target_values`` onto ``mesh``.

        Must be called with a running event loop unless nothing is addressable, in
        which case the session completes immediately.
        """

        self.abort()
        tasks = build_stream_tasks(target_values, mesh)
        session = StreamSession(tasks, self._settings.batch_size)
        self._session = session

        if not tasks:
            session.status = StreamStatus.COMPLETED
            self._logger.debug("stream_empty", session_id=session.id, requested=len(target_values))
            if self._on_complete is not None:
                self._on_complete()
            return session

        self._logger.info(
            "stream_started",
            session_id=session.id,
            total=session.total,
            total_batches=session.total_batches,
            batch_size=self._settings.batch_size,
            smoothing=self._settings.enable_smoothing,
            smoothing_steps=self._settings.smoothing_steps,
            structural=sum(1 for task in tasks if task.priority is StreamPriority.STRUCTURAL),
            detail=sum(1 for task in tasks if task.priority is StreamPriority.DETAIL),
            fine=sum(1 for task in tasks if task.priority is StreamPriority.FINE),
        )
        session.attach(asyncio.get_running_loop().create_task(self._run(session, mesh)))
        return session

    def abort(self) -> bool:
        """Abort the active session, if any. Returns ``True`` when one was aborted."""

        session = self._session
        if session is None or session.done:
            return False
        session.token.cancel("stream aborted")
        session.status = StreamStatus.ABORTED
        session.cancel_runner()
        session.release()
        self._logger.info(
            "stream_aborted",
            session_id=session.id,
            applied=session.applied,
            total=session.total,
            current_batch=session.current_batch,
        )
        return True

    async def _run(self, session: StreamSession, mesh: MorphTargetMesh) -> None:
        batches = session.batches()
        for index, batch in enumerate(batches):
            session.token.raise_if_cancelled()
            await self._apply_batch(session, batch, mesh)

            session.applied += len(batch)
            session.current_batch = index + 1
            self._logger.debug(
                "stream_batch_applied",
                session_id=session.id,
                batch=index,
                size=len(batch),
                applied=session.applied,
            )
            if self._on_progress is not None:
                self._on_progress(session.applied, session.total)
            if self._on_batch_complete is not None:
                self._on_batch_complete(index, session.total_batches)
            if index + 1 < len(batches):
                await self._sleep(self._settings.frame_interval_seconds)

        session.token.raise_if_cancelled()
        session.status = StreamStatus.COMPLETED
        session.release()
        self._logger.info(
            "stream_completed",
            session_id=session.id,
            applied=session.applied,
            total_batches=session.total_batches,
        )
        if self._on_complete is not None:
            self._on_complete()

    async def _apply_batch(
        self,
        session: StreamSession,
        batch: list[StreamTask],
        mesh: MorphTargetMesh,
    ) -> None:
        dictionary = mesh.morph_target_dictionary
        influences = mesh.morph_target_influences
        indexed = [(dictionary[task.target_name], task) for task in batch]

        if not self._settings.enable_smoothing:
            for index, task in indexed:
                influences[index] = task.target_value
            return

        for index, task in indexed:
            session.smoothing_origins[task.target_name] = float(influences[index])

        steps = self._settings.smoothing_steps
        for step in range(1, steps + 1):
            session.token.raise_if_cancelled()
            for index, task in indexed:
                if step == steps:
                    influences[index] = task.target_value
                    continue
                origin = session.smoothing_origins[task.target_name]
                influences[index] = origin + (task.target_value - origin) * (step / steps)
            if step < steps:
                await self._sleep(self._settings.frame_interval_seconds)

        for _, task in indexed:
            session.smoothing_origins.pop(task.target_name, None)


__all__ = [
    "DETAIL_KEYWORDS",
    "STRUCTURAL_KEYWORDS",
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
