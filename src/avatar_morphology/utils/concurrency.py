"""Cooperative cancellation primitives shared by the refinement and streaming paths."""

from __future__ import annotations

import asyncio


class CancellationToken:
    """Cooperative cancellation token backed by ``asyncio.Event``.

    A token is created per resolution request or streaming session. Cancelling it
    never interrupts a running mutation; holders check it at their own yield points.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None

    def cancel(self, reason: str | None = None) -> None:
        if not self._event.is_set():
            self._reason = reason
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise asyncio.CancelledError(self._reason or "operation cancelled")


async def checkpoint(token: CancellationToken | None, delay_seconds: float = 0.0) -> None:
    """Yield control to the event loop once, then honour cancellation."""

    if delay_seconds < 0:
        raise ValueError("delay_seconds must be >= 0")
    await asyncio.sleep(delay_seconds)
    if token is not None:
        token.raise_if_cancelled()


__all__ = ["CancellationToken", "checkpoint"]
