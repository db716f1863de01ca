"""Host-role session: admits peers that present the event code.

Peers enter as CONNECTED_UNVERIFIED when the transport connects them and are
promoted to VERIFIED by a JOIN_REQUEST carrying the exact event code. A wrong
code gets JOIN_REJECTED followed by a disconnect. There is no retry limit.

The host is the hub of the room: application messages from a verified peer
are forwarded to the local consumers and relayed to every other verified peer.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import TYPE_CHECKING, Mapping

import structlog

from crowdmesh.core.fsm import (
    Accept,
    CloseRequested,
    Connected,
    ConnectionRequested,
    Disconnect,
    Disconnected,
    Effect,
    Forward,
    Received,
    Send,
    SessionEvent,
    StopAdvertising,
    StrengthMeasured,
)
from crowdmesh.core.models import ConnectionRecord, PeerStatus
from crowdmesh.core.protocol import (
    JoinAccepted,
    JoinRejected,
    JoinRequest,
    Message,
    RoomClosed,
    SignalBroadcast,
    SignalUpdate,
)

if TYPE_CHECKING:
    from crowdmesh.core.fsm import EffectExecutor
    from crowdmesh.core.stats import NodeStats

log = structlog.get_logger()

REJECT_INVALID_CODE = "Invalid event code"
REJECT_NOT_CONNECTED = "Join request without a connection"

# Join-protocol messages a host has no use for when they come from a peer.
_HOST_IGNORED = (JoinAccepted, JoinRejected, RoomClosed, SignalBroadcast)


class HostPhase(str, Enum):
    ADVERTISING = "ADVERTISING"
    CLOSED = "CLOSED"


@dataclass(frozen=True)
class HostState:
    event_code: str
    phase: HostPhase = HostPhase.ADVERTISING
    peers: Mapping[str, PeerStatus] = field(default_factory=dict)
    strengths: Mapping[str, int] = field(default_factory=dict)


def verified_peers(state: HostState) -> list[str]:
    return [pid for pid, status in state.peers.items() if status is PeerStatus.VERIFIED]


def _without(mapping: Mapping, key: str) -> dict:
    return {k: v for k, v in mapping.items() if k != key}


def _on_message(state: HostState, peer_id: str, msg: Message) -> tuple[HostState, list[Effect]]:
    status = state.peers.get(peer_id)

    if isinstance(msg, JoinRequest):
        if status is None:
            return state, [Send(peer_id, JoinRejected(REJECT_NOT_CONNECTED)), Disconnect(peer_id)]
        if msg.event_code == state.event_code:
            peers = {**state.peers, peer_id: PeerStatus.VERIFIED}
            return replace(state, peers=peers), [Send(peer_id, JoinAccepted())]
        return state, [Send(peer_id, JoinRejected(REJECT_INVALID_CODE)), Disconnect(peer_id)]

    # Everything else is only accepted from verified peers.
    if status is not PeerStatus.VERIFIED:
        return state, []

    if isinstance(msg, SignalUpdate):
        strengths = {**state.strengths, msg.peer_id: msg.strength}
        return replace(state, strengths=strengths), []

    if isinstance(msg, _HOST_IGNORED):
        return state, []

    relay: list[Effect] = [
        Send(other, msg) for other in verified_peers(state) if other != peer_id
    ]
    return state, [Forward(peer_id, msg), *relay]


def host_transition(state: HostState, event: SessionEvent) -> tuple[HostState, list[Effect]]:
    """Pure host state machine step."""
    if state.phase is HostPhase.CLOSED:
        return state, []

    if isinstance(event, ConnectionRequested):
        return state, [Accept(event.peer_id)]

    if isinstance(event, Connected):
        peers = {**state.peers, event.peer_id: PeerStatus.CONNECTED_UNVERIFIED}
        return replace(state, peers=peers), []

    if isinstance(event, Disconnected):
        return replace(
            state,
            peers=_without(state.peers, event.peer_id),
            strengths=_without(state.strengths, event.peer_id),
        ), []

    if isinstance(event, Received):
        return _on_message(state, event.peer_id, event.message)

    if isinstance(event, StrengthMeasured):
        strengths = {**state.strengths, event.peer_id: event.strength}
        return replace(state, strengths=strengths), []

    if isinstance(event, CloseRequested):
        effects: list[Effect] = [Send(pid, RoomClosed()) for pid in verified_peers(state)]
        effects.extend(Disconnect(pid) for pid in state.peers)
        effects.append(StopAdvertising())
        return replace(state, phase=HostPhase.CLOSED, peers={}, strengths={}), effects

    return state, []


class HostSession:
    """Owns the host state and runs its effects on the transport."""

    def __init__(self, executor: EffectExecutor, event_code: str, stats: NodeStats) -> None:
        self._executor = executor
        self._stats = stats
        self._state = HostState(event_code=event_code)

    @property
    def state(self) -> HostState:
        return self._state

    @property
    def closed(self) -> bool:
        return self._state.phase is HostPhase.CLOSED

    def verified_peers(self) -> list[str]:
        """The room roster."""
        return verified_peers(self._state)

    def connections(self) -> list[ConnectionRecord]:
        return [ConnectionRecord(pid, status) for pid, status in self._state.peers.items()]

    def strengths(self) -> dict[str, int]:
        return dict(self._state.strengths)

    async def dispatch(self, event: SessionEvent) -> list[Effect]:
        before = self._state
        self._state, effects = host_transition(before, event)
        self._log_transition(before, event, effects)
        return await self._executor.run(effects)

    def _log_transition(self, before: HostState, event: SessionEvent, effects: list[Effect]) -> None:
        if isinstance(event, CloseRequested) and before.phase is HostPhase.ADVERTISING:
            log.info("room_closed", notified=len(verified_peers(before)))
            return

        peer_id = getattr(event, "peer_id", "")
        if isinstance(event, Received) and isinstance(event.message, JoinRequest):
            replies = [e.message for e in effects if isinstance(e, Send)]
            if any(isinstance(m, JoinAccepted) for m in replies):
                self._stats.record_join(accepted=True)
                log.info("peer_verified", peer=peer_id[:8])
            elif replies:
                self._stats.record_join(accepted=False)
                log.info("peer_rejected", peer=peer_id[:8], reason=replies[0].reason)
            return

        old = before.peers.get(peer_id)
        new = self._state.peers.get(peer_id)
        if new is PeerStatus.CONNECTED_UNVERIFIED and old is None:
            log.info("peer_connected", peer=peer_id[:8])
        elif new is None and old is not None:
            log.info("peer_removed", peer=peer_id[:8], was=old.value)
