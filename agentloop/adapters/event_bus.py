"""Async event bus merging concurrent sub-agent streams.

Producers (one task per session) emit events; a single consumer drains
them in arrival order. Order within one producer is preserved; across
producers it is not, consumers rely on each event's tool_use_id.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Any

logger = logging.getLogger(__name__)

_CLOSED = object()


class EventBus:
    """Async queue bridging session producers to one consumer."""

    def __init__(self, maxsize: int = 5000) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def emit(self, event: Any) -> None:
        """Queue an event. Blocks when the consumer falls behind."""
        if self._closed:
            logger.debug("EventBus closed, dropping %s", getattr(event, "type", event))
            return
        await self._queue.put(event)

    async def consume(self) -> AsyncIterator[Any]:
        """Yield events until close() and the queue is drained."""
        while True:
            event = await self._queue.get()
            if event is _CLOSED:
                break
            yield event

    async def close(self) -> None:
        """Stop accepting events; the consumer exits after draining."""
        if self._closed:
            return
        self._closed = True
        await self._queue.put(_CLOSED)
