"""Unit tests for progressive morph-target streaming."""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from typing import Any

import pytest

from avatar_morphology.domain.models import StreamPriority
from avatar_morphology.streaming.orchestrator import (
    InMemoryMorphMesh,
    StreamOrchestrator,
    StreamSettings,
    StreamStatus,
    build_stream_tasks,
    classify_priority,
)

_TARGETS = (
    "BS_LOD0.BodyBigHips",
    "BS_LOD0.BodyPearFigure",
    "BS_LOD0.BodyBodybuilderSize",
    "BS_LOD0.BodyPregnant",
    "BS_LOD0.FaceJawWidth",
)


class _RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


class _WriteLog(list[float]):
    def __init__(self, values: Sequence[float], names: Sequence[str]) -> None:
        super().__init__(values)
        self._names = list(names)
        self.writes: list[str] = []

    def __setitem__(self, index: Any, value: Any) -> None:
        self.writes.append(self._names[index])
        super().__setitem__(index, value)


class _RecordingMesh(InMemoryMorphMesh):
    def __init__(self, target_names: Sequence[str]) -> None:
        super().__init__(target_names)
        self.log = _WriteLog(self._influences, target_names)
        self._influences = self.log


def _values() -> dict[str, float]:
    return {
        "bigHips": 0.4,
        "pearFigure": 0.6,
        "bodybuilderSize": 0.2,
        "pregnant": 0.1,
        "FaceJawWidth": -0.3,
    }


@pytest.mark.parametrize(
    ("key", "expected"),
    [
        ("bodybuilderSize", StreamPriority.STRUCTURAL),
        ("height", StreamPriority.STRUCTURAL),
        ("pearFigure", StreamPriority.DETAIL),
        ("gluteSize", StreamPriority.DETAIL),
        ("bigHips", StreamPriority.FINE),
        ("FaceJawWidth", StreamPriority.FINE),
    ],
)
def test_classify_priority(key: str, expected: StreamPriority) -> None:
    assert classify_priority(key) is expected


def test_tasks_are_ordered_by_tier_and_unaddressable_keys_dropped() -> None:
    mesh = InMemoryMorphMesh(_TARGETS)
    values = {**_values(), "unknownKey": 1.0, "dollBody": 0.5, "pregnant": float("nan")}

    tasks = build_stream_tasks(values, mesh)

    assert [task.key for task in tasks] == ["bodybuilderSize", "pearFigure", "bigHips", "FaceJawWidth"]
    assert tasks[0].target_name == "BS_LOD0.BodyBodybuilderSize"


def test_direct_target_names_are_accepted() -> None:
    mesh = InMemoryMorphMesh(_TARGETS)

    tasks = build_stream_tasks({"BS_LOD0.BodyBigHips": 0.7}, mesh)

    assert len(tasks) == 1
    assert tasks[0].key == "bigHips"
    assert tasks[0].target_value == 0.7


async def test_full_run_applies_every_target_in_batches() -> None:
    mesh = InMemoryMorphMesh(_TARGETS)
    progress: list[tuple[int, int]] = []
    batches: list[tuple[int, int]] = []
    completions: list[bool] = []
    sleep = _RecordingSleep()
    orchestrator = StreamOrchestrator(
        StreamSettings(batch_size=2, enable_smoothing=False, frame_interval_seconds=0.01),
        on_progress=lambda applied, total: progress.append((applied, total)),
        on_batch_complete=lambda index, total: batches.append((index, total)),
        on_complete=lambda: completions.append(True),
        sleep=sleep,
    )

    session = orchestrator.start(_values(), mesh)
    assert orchestrator.is_active
    status = await session.wait()

    assert status is StreamStatus.COMPLETED
    assert progress == [(2, 5), (4, 5), (5, 5)]
    assert batches == [(0, 3), (1, 3), (2, 3)]
    assert completions == [True]
    assert sleep.delays == [0.01, 0.01]
    assert mesh.influence("BS_LOD0.BodyBigHips") == 0.4
    assert mesh.influence("BS_LOD0.FaceJawWidth") == -0.3
    assert orchestrator.state().to_dict() == {
        "status": "completed",
        "current_batch": 3,
        "total_batches": 3,
        "applied": 5,
        "total": 5,
    }
    assert session.tasks == ()


async def test_smoothing_interpolates_and_lands_exactly_on_target() -> None:
    mesh = InMemoryMorphMesh(["BS_LOD0.BodyBigHips"], influences=[0.3])
    frames: list[float] = []

    async def sleep(delay: float) -> None:
        frames.append(mesh.influence("BS_LOD0.BodyBigHips"))

    orchestrator = StreamOrchestrator(StreamSettings(smoothing_steps=3), sleep=sleep)
    await orchestrator.start({"bigHips": 0.9}, mesh).wait()

    assert frames == pytest.approx([0.5, 0.7])
    assert mesh.influence("BS_LOD0.BodyBigHips") == 0.9


async def test_abort_stops_remaining_batches() -> None:
    mesh = InMemoryMorphMesh(_TARGETS)
    completions: list[bool] = []

    async def sleep(delay: float) -> None:
        assert orchestrator.abort()
        await asyncio.sleep(0)

    orchestrator = StreamOrchestrator(
        StreamSettings(batch_size=1, enable_smoothing=False),
        on_complete=lambda: completions.append(True),
        sleep=sleep,
    )
    session = orchestrator.start(_values(), mesh)

    assert await session.wait() is StreamStatus.ABORTED
    assert session.applied == 1
    assert session.token.is_cancelled
    assert mesh.influence("BS_LOD0.BodyBodybuilderSize") == 0.2
    assert mesh.influence("BS_LOD0.BodyBigHips") == 0.0
    assert completions == []
    assert not orchestrator.abort()


async def test_new_start_supersedes_active_session() -> None:
    mesh = InMemoryMorphMesh(_TARGETS)
    orchestrator = StreamOrchestrator(
        StreamSettings(batch_size=1, enable_smoothing=False),
        sleep=_RecordingSleep(),
    )

    first = orchestrator.start(_values(), mesh)
    await asyncio.sleep(0)
    second = orchestrator.start({"bigHips": 0.9, "pearFigure": 0.1}, mesh)

    assert first.status is StreamStatus.ABORTED
    assert await first.wait() is StreamStatus.ABORTED
    assert await second.wait() is StreamStatus.COMPLETED
    assert mesh.influence("BS_LOD0.BodyBigHips") == 0.9
    assert mesh.influence("BS_LOD0.BodyPearFigure") == 0.1
    assert first.id != second.id


async def test_start_after_two_of_five_batches_drops_the_remaining_three() -> None:
    mesh = _RecordingMesh(_TARGETS)
    batch_log: list[tuple[int, int]] = []
    completions: list[bool] = []
    reached = asyncio.Event()
    release = asyncio.Event()
    frames = 0

    async def gated_sleep(delay: float) -> None:
        nonlocal frames
        frames += 1
        if frames == 2:
            reached.set()
            await release.wait()
        await asyncio.sleep(0)

    orchestrator = StreamOrchestrator(
        StreamSettings(batch_size=1, enable_smoothing=False),
        on_batch_complete=lambda index, total: batch_log.append((index, total)),
        on_complete=lambda: completions.append(True),
        sleep=gated_sleep,
    )

    first = orchestrator.start(_values(), mesh)
    first_order = [task.target_name for task in first.tasks]
    await reached.wait()

    assert first.applied == 2
    assert first.current_batch == 2
    assert mesh.log.writes == first_order[:2]

    second = orchestrator.start({"bigHips": 0.9, "pearFigure": 0.1}, mesh)
    release.set()

    assert await first.wait() is StreamStatus.ABORTED
    assert await second.wait() is StreamStatus.COMPLETED
    assert first.applied == 2
    assert batch_log == [(0, 5), (1, 5), (0, 2), (1, 2)]
    assert mesh.log.writes == [*first_order[:2], "BS_LOD0.BodyPearFigure", "BS_LOD0.BodyBigHips"]
    for name in first_order[2:]:
        if name not in ("BS_LOD0.BodyPearFigure", "BS_LOD0.BodyBigHips"):
            assert mesh.influence(name) == 0.0
    assert completions == [True]


def test_nothing_addressable_completes_without_event_loop() -> None:
    completions: list[bool] = []
    orchestrator = StreamOrchestrator(on_complete=lambda: completions.append(True))

    session = orchestrator.start({"unknownKey": 1.0}, InMemoryMorphMesh(_TARGETS))

    assert session.status is StreamStatus.COMPLETED
    assert session.total_batches == 0
    assert completions == [True]
    assert not orchestrator.is_active


async def test_callback_failure_surfaces_from_wait() -> None:
    def explode(applied: int, total: int) -> None:
        raise RuntimeError("progress sink failed")

    orchestrator = StreamOrchestrator(
        StreamSettings(enable_smoothing=False),
        on_progress=explode,
        sleep=_RecordingSleep(),
    )
    session = orchestrator.start(_values(), InMemoryMorphMesh(_TARGETS))

    with pytest.raises(RuntimeError, match="progress sink failed"):
        await session.wait()


def test_idle_state_before_any_session() -> None:
    state = StreamOrchestrator().state()

    assert state.status is StreamStatus.IDLE
    assert not state.is_streaming


@pytest.mark.parametrize(
    "kwargs",
    [{"batch_size": 0}, {"frame_interval_seconds": -1.0}, {"smoothing_steps": 0}],
)
def test_settings_validation(kwargs: dict[str, float]) -> None:
    with pytest.raises(ValueError):
        StreamSettings(**kwargs)  # type: ignore[arg-type]


def test_settings_from_config() -> None:
    settings = StreamSettings.from_config({"batch_size": 4, "enable_smoothing": False})

    assert settings.batch_size == 4
    assert not settings.enable_smoothing
    assert settings.smoothing_steps == StreamSettings().smoothing_steps
    with pytest.raises(ValueError, match="integer"):
        StreamSettings.from_config({"batch_size": 2.5})


def test_mesh_rejects_mismatched_influences() -> None:
    with pytest.raises(ValueError, match="influences"):
        InMemoryMorphMesh(["a", "b"], influences=[0.1])
