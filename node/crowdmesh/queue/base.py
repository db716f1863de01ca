"""Queue interface (port) for the node's single transport event stream."""

from __future__ import annotations

from typing import Protocol, TYPE_CHECKING

if TYPE_CHECKING:
    from crowdmesh.transport.base import TransportEvent


class EventQueue(Protocol):
    """Port: buffers transport events and delivers them to one consumer, in order."""

    async def put(self, event: TransportEvent) -> None: ...

    def put_nowait(self, event: TransportEvent) -> None: ...

    async def get(self) -> TransportEvent: ...

    def qsize(self) -> int: ...
