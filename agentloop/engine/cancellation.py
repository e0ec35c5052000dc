"""Cooperative cancellation handle shared by one session.

The loop never polls this itself. Message streams and the permission
gate call raise_if_cancelled() at their suspension points, so a
cancelled session surfaces as asyncio.CancelledError out of the
generator.
"""
from __future__ import annotations

import asyncio


class CancellationHandle:
    """Wraps an asyncio.Event with a reason string."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "Request interrupted by user") -> None:
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise asyncio.CancelledError(self._reason)

    async def wait(self) -> None:
        await self._event.wait()
