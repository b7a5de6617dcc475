"""Unit tests for cooperative cancellation primitives."""

from __future__ import annotations

import asyncio

import pytest

from avatar_morphology.utils.concurrency import CancellationToken, checkpoint


async def test_token_records_first_reason_and_raises() -> None:
    token = CancellationToken()
    assert not token.is_cancelled
    token.raise_if_cancelled()

    token.cancel("superseded")
    token.cancel("second reason")

    assert token.is_cancelled
    assert token.reason == "superseded"
    with pytest.raises(asyncio.CancelledError):
        token.raise_if_cancelled()


async def test_wait_returns_once_cancelled() -> None:
    token = CancellationToken()
    waiter = asyncio.create_task(token.wait())
    await asyncio.sleep(0)
    assert not waiter.done()

    token.cancel()
    await asyncio.wait_for(waiter, timeout=1.0)

    assert token.reason is None


async def test_checkpoint_yields_and_honours_token() -> None:
    await checkpoint(None)
    token = CancellationToken()
    await checkpoint(token)

    token.cancel("stop")
    with pytest.raises(asyncio.CancelledError):
        await checkpoint(token)


async def test_checkpoint_rejects_negative_delay() -> None:
    with pytest.raises(ValueError, match="delay_seconds"):
        await checkpoint(None, -0.1)
