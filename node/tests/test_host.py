"""Tests for the host state machine."""

from __future__ import annotations

import pytest

from crowdmesh.core.fsm import (
    Accept,
    CloseRequested,
    Connected,
    ConnectionRequested,
    Disconnect,
    Disconnected,
    EffectExecutor,
    Forward,
    Received,
    Send,
    StopAdvertising,
    StrengthMeasured,
)
from crowdmesh.core.host import (
    REJECT_INVALID_CODE,
    REJECT_NOT_CONNECTED,
    HostPhase,
    HostSession,
    HostState,
    host_transition,
    verified_peers,
)
from crowdmesh.core.models import AnchorRecord, PeerStatus
from crowdmesh.core.protocol import ChatText, JoinAccepted, JoinRejected, JoinRequest, RoomClosed, SignalUpdate
from crowdmesh.core.stats import NodeStats
from crowdmesh.transport.memory import InMemoryMedium, InMemoryTransport


def _run(state, *events):
    effects = []
    for event in events:
        state, step = host_transition(state, event)
        effects.extend(step)
    return state, effects


def _with_verified(*peer_ids, code="1234"):
    state = HostState(event_code=code)
    for pid in peer_ids:
        state, _ = _run(state, Connected(pid), Received(pid, JoinRequest(code)))
    return state


def test_connection_request_is_accepted():
    _, effects = host_transition(HostState("1234"), ConnectionRequested("p1"))
    assert effects == [Accept("p1")]


def test_connected_peer_starts_unverified():
    state, effects = host_transition(HostState("1234"), Connected("p1"))
    assert state.peers == {"p1": PeerStatus.CONNECTED_UNVERIFIED}
    assert effects == []
    assert verified_peers(state) == []


def test_correct_code_verifies():
    state, effects = _run(HostState("1234"), Connected("p1"), Received("p1", JoinRequest("1234")))
    assert verified_peers(state) == ["p1"]
    assert effects == [Send("p1", JoinAccepted())]


def test_wrong_code_rejects_and_disconnects():
    state, effects = _run(HostState("1234"), Connected("p1"), Received("p1", JoinRequest("4321")))
    assert verified_peers(state) == []
    assert effects == [Send("p1", JoinRejected(REJECT_INVALID_CODE)), Disconnect("p1")]


@pytest.mark.parametrize("code", ["", "123", "12345", " 1234", "1234 ", "１２３４"])
def test_code_comparison_is_exact(code):
    state, effects = _run(HostState("1234"), Connected("p1"), Received("p1", JoinRequest(code)))
    assert "p1" not in verified_peers(state)
    assert isinstance(effects[0].message, JoinRejected)


def test_rejected_peer_may_retry():
    state, _ = _run(HostState("1234"), Connected("p1"), Received("p1", JoinRequest("0000")))
    state, effects = _run(state, Received("p1", JoinRequest("1234")))
    assert verified_peers(state) == ["p1"]
    assert effects == [Send("p1", JoinAccepted())]


def test_join_request_without_connection_is_rejected():
    state, effects = host_transition(HostState("1234"), Received("ghost", JoinRequest("1234")))
    assert state.peers == {}
    assert effects == [Send("ghost", JoinRejected(REJECT_NOT_CONNECTED)), Disconnect("ghost")]


def test_unverified_peer_messages_dropped():
    state, _ = host_transition(HostState("1234"), Connected("p1"))
    state2, effects = host_transition(state, Received("p1", ChatText("let me in")))
    assert effects == []
    assert state2 == state


def test_signal_update_from_verified_peer_updates_map():
    state = _with_verified("p1")
    state, effects = host_transition(state, Received("p1", SignalUpdate("p1", -58)))
    assert state.strengths == {"p1": -58}
    assert effects == []


def test_strength_measured_updates_map():
    state, _ = host_transition(_with_verified("p1"), StrengthMeasured("p1", -66))
    assert state.strengths == {"p1": -66}


def test_disconnect_removes_peer_and_strength():
    state, _ = host_transition(_with_verified("p1", "p2"), StrengthMeasured("p1", -66))
    state, _ = host_transition(state, Disconnected("p1"))
    assert verified_peers(state) == ["p2"]
    assert "p1" not in state.strengths


def test_application_message_forwarded_and_relayed():
    state = _with_verified("p1", "p2", "p3")
    anchor = AnchorRecord("p1", "A", 1.0, 2.0, 3.0, 4)
    _, effects = host_transition(state, Received("p1", anchor))
    assert effects[0] == Forward("p1", anchor)
    assert set(effects[1:]) == {Send("p2", anchor), Send("p3", anchor)}


def test_close_notifies_verified_and_disconnects_all():
    state = _with_verified("p1", "p2")
    state, _ = host_transition(state, Connected("p3"))
    state, effects = host_transition(state, CloseRequested())

    assert state.phase is HostPhase.CLOSED
    assert state.peers == {}
    sends = [e for e in effects if isinstance(e, Send)]
    assert {s.peer_id for s in sends} == {"p1", "p2"}
    assert all(isinstance(s.message, RoomClosed) for s in sends)
    assert {e.peer_id for e in effects if isinstance(e, Disconnect)} == {"p1", "p2", "p3"}
    assert effects[-1] == StopAdvertising()


def test_closed_host_ignores_everything():
    state, _ = host_transition(_with_verified("p1"), CloseRequested())
    for event in (ConnectionRequested("p9"), Connected("p9"), Received("p9", JoinRequest("1234"))):
        new_state, effects = host_transition(state, event)
        assert new_state == state
        assert effects == []


@pytest.mark.parametrize("good,bad", [("1234", "1235"), ("0001", "1"), ("abc", "ABC")])
def test_wrong_code_never_verified(good, bad):
    state = HostState(good)
    for _ in range(3):
        state, effects = _run(state, Connected("p1"), Received("p1", JoinRequest(bad)))
        assert any(isinstance(e, Send) and isinstance(e.message, JoinRejected) for e in effects)
        assert "p1" not in verified_peers(state)


def test_join_accepted_sent_at_most_once_per_request():
    state = _with_verified("p1")
    _, effects = host_transition(state, Received("p1", JoinRequest("1234")))
    assert effects.count(Send("p1", JoinAccepted())) == 1


@pytest.mark.asyncio
async def test_session_counts_joins():
    medium = InMemoryMedium()
    transport = InMemoryTransport(medium, "host")
    stats = NodeStats()
    session = HostSession(EffectExecutor(transport, stats), "1234", stats)

    await session.dispatch(Connected("p1"))
    await session.dispatch(Received("p1", JoinRequest("1234")))
    await session.dispatch(Connected("p2"))
    await session.dispatch(Received("p2", JoinRequest("9999")))

    snap = stats.snapshot()
    assert snap["joins_accepted"] == 1
    assert snap["joins_rejected"] == 1
    assert session.verified_peers() == ["p1"]
    # Not really linked on the medium, so every send failed.
    assert snap["send_failures"] == 2
