"""Join-role session: connect to a host and authenticate with the event code.

IDLE -> CONNECTING (join_host) -> AWAITING_AUTH (transport connected, request
sent) -> IN_ROOM (JOIN_ACCEPTED). Rejection, room closed, loss of the host
link and leave all return to IDLE with the pending code and host cleared.

Hosts seen while discovering are tracked separately from the phase.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import TYPE_CHECKING, Mapping

import structlog

from crowdmesh.core.fsm import (
    Connected,
    Disconnect,
    Disconnected,
    Effect,
    Failed,
    Forward,
    JoinRequested,
    LeaveRequested,
    Notice,
    PeerFound,
    PeerLost,
    Received,
    RequestConnection,
    Send,
    SessionEvent,
)
from crowdmesh.core.protocol import JoinAccepted, JoinRejected, JoinRequest, RoomClosed

if TYPE_CHECKING:
    from crowdmesh.core.fsm import EffectExecutor

log = structlog.get_logger()


class JoinPhase(str, Enum):
    IDLE = "IDLE"
    CONNECTING = "CONNECTING"
    AWAITING_AUTH = "AWAITING_AUTH"
    IN_ROOM = "IN_ROOM"


@dataclass(frozen=True)
class JoinState:
    phase: JoinPhase = JoinPhase.IDLE
    host_id: str | None = None
    pending_code: str | None = None
    discovered: Mapping[str, str] = field(default_factory=dict)   # peer_id -> name


def _reset(state: JoinState) -> JoinState:
    return replace(state, phase=JoinPhase.IDLE, host_id=None, pending_code=None)


def _on_connected(state: JoinState, peer_id: str) -> tuple[JoinState, list[Effect]]:
    expected = (
        state.phase is JoinPhase.CONNECTING
        and peer_id == state.host_id
        and state.pending_code is not None
    )
    if not expected:
        return state, [
            Disconnect(peer_id),
            Notice("protocol_error", f"Unexpected connection from {peer_id}"),
        ]
    return (
        replace(state, phase=JoinPhase.AWAITING_AUTH),
        [Send(peer_id, JoinRequest(state.pending_code))],
    )


def _on_message(state: JoinState, event: Received) -> tuple[JoinState, list[Effect]]:
    if state.host_id is None or event.peer_id != state.host_id:
        return state, []
    msg = event.message

    if isinstance(msg, JoinAccepted):
        if state.phase is not JoinPhase.AWAITING_AUTH:
            return state, []
        return replace(state, phase=JoinPhase.IN_ROOM, pending_code=None), [
            Notice("joined", "Joined the event"),
        ]

    if isinstance(msg, JoinRejected):
        return _reset(state), [Disconnect(event.peer_id), Notice("rejected", msg.reason)]

    if isinstance(msg, RoomClosed):
        return _reset(state), [
            Disconnect(event.peer_id),
            Notice("room_closed", "The host closed the event"),
        ]

    if isinstance(msg, JoinRequest) or state.phase is not JoinPhase.IN_ROOM:
        return state, []
    return state, [Forward(event.peer_id, msg)]


def join_transition(state: JoinState, event: SessionEvent) -> tuple[JoinState, list[Effect]]:
    """Pure join state machine step."""
    if isinstance(event, PeerFound):
        return replace(state, discovered={**state.discovered, event.peer_id: event.name}), []

    if isinstance(event, PeerLost):
        discovered = {k: v for k, v in state.discovered.items() if k != event.peer_id}
        return replace(state, discovered=discovered), []

    if isinstance(event, JoinRequested):
        if state.phase is not JoinPhase.IDLE:
            return state, []
        return (
            replace(state, phase=JoinPhase.CONNECTING,
                    host_id=event.host_id, pending_code=event.event_code),
            [RequestConnection(event.host_id)],
        )

    if isinstance(event, Connected):
        return _on_connected(state, event.peer_id)

    if isinstance(event, Received):
        return _on_message(state, event)

    if isinstance(event, Disconnected):
        # Stray links we refused do not end the session with our host.
        if state.host_id is not None and event.peer_id != state.host_id:
            return state, []
        if state.phase is JoinPhase.IDLE:
            return state, []
        return _reset(state), [Notice("disconnected", "Disconnected from host")]

    if isinstance(event, LeaveRequested):
        if state.phase is JoinPhase.IDLE or state.host_id is None:
            return state, []
        return _reset(state), [Disconnect(state.host_id)]

    return state, []


class JoinSession:
    """Owns the join state and runs its effects on the transport."""

    def __init__(self, executor: EffectExecutor) -> None:
        self._executor = executor
        self._state = JoinState()

    @property
    def state(self) -> JoinState:
        return self._state

    @property
    def phase(self) -> JoinPhase:
        return self._state.phase

    @property
    def host_id(self) -> str | None:
        return self._state.host_id

    @property
    def in_room(self) -> bool:
        return self._state.phase is JoinPhase.IN_ROOM

    def discovered_hosts(self) -> dict[str, str]:
        return dict(self._state.discovered)

    async def join_host(self, host_id: str, event_code: str) -> bool:
        """Request to join. Only valid from IDLE."""
        if self._state.phase is not JoinPhase.IDLE:
            log.info("join_ignored", phase=self._state.phase.value)
            return False
        log.info("join_requested", host=host_id[:8])
        await self.dispatch(JoinRequested(host_id, event_code))
        return self._state.phase is JoinPhase.CONNECTING

    async def leave_room(self) -> None:
        await self.dispatch(LeaveRequested())

    async def dispatch(self, event: SessionEvent) -> list[Effect]:
        before = self._state.phase
        self._state, effects = join_transition(self._state, event)
        if self._state.phase is not before:
            log.info("join_phase_changed", old=before.value, new=self._state.phase.value)
        passed = await self._executor.run(effects)

        failed_connect = any(
            isinstance(e, Failed) and isinstance(e.effect, RequestConnection) for e in passed
        )
        if failed_connect and self._state.host_id is not None:
            # The transport refused the request, so no connect event will follow.
            passed.extend(await self.dispatch(Disconnected(self._state.host_id)))
        return [e for e in passed if not isinstance(e, Failed)]
