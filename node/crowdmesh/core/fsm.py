"""Events and effects shared by the host and join state machines.

Both session types are written as pure transition functions
``(state, event) -> (state, effects)``. Effects that touch the transport are
carried out by EffectExecutor; ``Forward`` and ``Notice`` effects are handed
back to the caller, which routes them to the rest of the node.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Union

import structlog

from crowdmesh.core.protocol import Message, encode
from crowdmesh.transport.base import TransportError

if TYPE_CHECKING:
    from crowdmesh.core.stats import NodeStats
    from crowdmesh.transport.base import PeerTransport

log = structlog.get_logger()


# ---- Events (inputs) ----

@dataclass(frozen=True)
class ConnectionRequested:
    peer_id: str


@dataclass(frozen=True)
class Connected:
    peer_id: str


@dataclass(frozen=True)
class Disconnected:
    peer_id: str


@dataclass(frozen=True)
class Received:
    peer_id: str
    message: Message


@dataclass(frozen=True)
class PeerFound:
    peer_id: str
    name: str = ""


@dataclass(frozen=True)
class PeerLost:
    peer_id: str


@dataclass(frozen=True)
class StrengthMeasured:
    peer_id: str
    strength: int


@dataclass(frozen=True)
class JoinRequested:
    host_id: str
    event_code: str


@dataclass(frozen=True)
class LeaveRequested:
    pass


@dataclass(frozen=True)
class CloseRequested:
    pass


SessionEvent = Union[
    ConnectionRequested, Connected, Disconnected, Received, PeerFound,
    PeerLost, StrengthMeasured, JoinRequested, LeaveRequested, CloseRequested,
]


# ---- Effects (outputs) ----

@dataclass(frozen=True)
class Send:
    peer_id: str
    message: Message


@dataclass(frozen=True)
class Disconnect:
    peer_id: str


@dataclass(frozen=True)
class Accept:
    peer_id: str


@dataclass(frozen=True)
class RequestConnection:
    peer_id: str


@dataclass(frozen=True)
class StopAdvertising:
    pass


@dataclass(frozen=True)
class Forward:
    """An application message for the node's consumers (positions, chat...)."""
    peer_id: str
    message: Message


@dataclass(frozen=True)
class Notice:
    """Something the user should be told about (rejection, room closed...)."""
    kind: str
    text: str


@dataclass(frozen=True)
class Failed:
    """Result marker: a transport effect could not be carried out."""
    effect: Disconnect | Accept | RequestConnection | StopAdvertising


Effect = Union[Send, Disconnect, Accept, RequestConnection, StopAdvertising, Forward, Notice, Failed]


class EffectExecutor:
    """Carries out transport effects. Failures are logged and counted, never raised."""

    def __init__(self, transport: PeerTransport, stats: NodeStats) -> None:
        self._transport = transport
        self._stats = stats

    async def send(self, peer_id: str, message: Message) -> bool:
        text = encode(message)
        try:
            await self._transport.send_text(peer_id, text)
        except TransportError:
            log.warning("send_failed", peer=peer_id[:8],
                        message=type(message).__name__, exc_info=True)
            self._stats.record_send_failure()
            return False
        self._stats.record_sent(peer_id)
        return True

    async def broadcast(self, peer_ids: list[str], message: Message) -> int:
        """Send one message to many peers. Returns how many sends succeeded."""
        sent = 0
        for peer_id in peer_ids:
            if await self.send(peer_id, message):
                sent += 1
        return sent

    async def run(self, effects: list[Effect]) -> list[Effect]:
        """Execute transport effects in order.

        Returns the Forward/Notice effects for the caller, plus a Failed
        marker for every transport call that raised.
        """
        passed: list[Effect] = []
        for effect in effects:
            if isinstance(effect, (Forward, Notice)):
                passed.append(effect)
            elif isinstance(effect, Send):
                await self.send(effect.peer_id, effect.message)
            elif not await self._call(effect):
                passed.append(Failed(effect))
        return passed

    async def _call(self, effect: Effect) -> bool:
        try:
            if isinstance(effect, Disconnect):
                await self._transport.disconnect(effect.peer_id)
            elif isinstance(effect, Accept):
                await self._transport.accept_connection(effect.peer_id)
            elif isinstance(effect, RequestConnection):
                await self._transport.request_connection(effect.peer_id)
            elif isinstance(effect, StopAdvertising):
                await self._transport.stop_advertise()
        except TransportError:
            log.warning("transport_call_failed", effect=type(effect).__name__, exc_info=True)
            self._stats.record_transport_error()
            return False
        return True
