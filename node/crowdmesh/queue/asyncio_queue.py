"""In-process asyncio queue implementation of EventQueue."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from crowdmesh.transport.base import TransportEvent


class AsyncioEventQueue:
    """EventQueue backed by asyncio.Queue. Zero dependencies.

    ``put_nowait`` raises asyncio.QueueFull when ``max_size`` is reached.
    """

    def __init__(self, max_size: int = 10_000) -> None:
        self._queue: asyncio.Queue[TransportEvent] = asyncio.Queue(maxsize=max_size)

    async def put(self, event: TransportEvent) -> None:
        await self._queue.put(event)

    def put_nowait(self, event: TransportEvent) -> None:
        self._queue.put_nowait(event)

    async def get(self) -> TransportEvent:
        return await self._queue.get()

    def qsize(self) -> int:
        return self._queue.qsize()
