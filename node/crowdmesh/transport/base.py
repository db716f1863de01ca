"""Peer transport interface (port).

The core never talks to a radio directly. A transport advertises, discovers,
connects and carries text between peers, and reports what happens through
events delivered to subscribed listeners.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Protocol


class TransportError(Exception):
    """A transport primitive failed (peer unknown, link down, radio off...)."""


class EventKind(str, Enum):
    PEER_FOUND = "peer_found"
    PEER_LOST = "peer_lost"
    CONNECTION_REQUESTED = "connection_requested"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    TEXT_RECEIVED = "text_received"


@dataclass(frozen=True)
class TransportEvent:
    kind: EventKind
    peer_id: str
    name: str = ""
    text: str = ""


TransportListener = Callable[[TransportEvent], None]


class PeerTransport(Protocol):
    """Port: short-range peer-to-peer link used by the event node."""

    async def advertise(self, name: str) -> str: ...

    async def discover(self, name: str) -> str: ...

    async def stop_advertise(self) -> None: ...

    async def stop_discover(self) -> None: ...

    async def request_connection(self, peer_id: str) -> None: ...

    async def accept_connection(self, peer_id: str) -> None: ...

    async def disconnect(self, peer_id: str) -> None: ...

    async def send_text(self, peer_id: str, text: str) -> None: ...

    async def read_signal_strength(self, peer_id: str) -> int | None: ...

    def subscribe(self, listener: TransportListener) -> Callable[[], None]: ...
