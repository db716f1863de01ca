"""Tests for the wire protocol codec."""

from __future__ import annotations

import json

import pytest

from crowdmesh.core.models import AnchorRecord, ProximityReading, ProximityReport
from crowdmesh.core.protocol import (
    ChatText,
    JoinAccepted,
    JoinRejected,
    JoinRequest,
    RoomClosed,
    SignalBroadcast,
    SignalUpdate,
    decode,
    encode,
)


def test_join_request_wire_format():
    assert json.loads(encode(JoinRequest("1234"))) == {"type": "JOIN_REQUEST", "eventCode": "1234"}


def test_encoding_is_compact():
    assert encode(JoinAccepted()) == '{"type":"JOIN_ACCEPTED"}'


def test_anchor_wire_format():
    anchor = AnchorRecord("p1", "Alice", 45.5, -73.6, 4.0, 1700000000000)
    assert json.loads(encode(anchor)) == {
        "type": "GPS_ANCHOR",
        "peerId": "p1",
        "name": "Alice",
        "latitude": 45.5,
        "longitude": -73.6,
        "accuracy": 4.0,
        "timestamp": 1700000000000,
    }


@pytest.mark.parametrize("msg", [
    JoinRequest("0042"),
    JoinAccepted(),
    JoinRejected("Invalid event code"),
    RoomClosed(),
    SignalUpdate("p2", -61),
    SignalBroadcast({"p2": -61, "p3": -80}),
    AnchorRecord("p1", "Alice", 45.5, -73.6, 4.0, 1700000000000),
    ProximityReport("p4", "Bob", (ProximityReading("p1", 12.5),), 1700000000500),
])
def test_decode_inverts_encode(msg):
    assert decode(encode(msg)) == msg


def test_plain_text_is_chat():
    assert decode("see you at the north gate") == ChatText("see you at the north gate")


@pytest.mark.parametrize("text", [
    "[1, 2, 3]",
    '"just a string"',
    "42",
    '{"hello": "world"}',
    '{"type": 7}',
    '{"type": "PANIC_BUTTON"}',
])
def test_non_protocol_json_is_chat(text):
    assert decode(text) == ChatText(text)


def test_chat_encodes_as_raw_text():
    assert encode(ChatText("hi there")) == "hi there"


@pytest.mark.parametrize("text", [
    '{"type": "JOIN_REQUEST"}',
    '{"type": "JOIN_REQUEST", "eventCode": 1234}',
    '{"type": "JOIN_REJECTED"}',
    '{"type": "SIGNAL_UPDATE", "peerId": "p2"}',
    '{"type": "SIGNAL_UPDATE", "peerId": "p2", "strength": "loud"}',
    '{"type": "SIGNAL_BROADCAST", "strengths": [1, 2]}',
    '{"type": "GPS_ANCHOR", "peerId": "p1", "name": "A", "latitude": 1}',
    '{"type": "GPS_ANCHOR", "peerId": "p1", "name": "A", "latitude": true,'
    ' "longitude": 2, "accuracy": 1, "timestamp": 1}',
    '{"type": "PROXIMITY_REPORT", "peerId": "p4", "name": "B", "readings": "none", "timestamp": 1}',
    '{"type": "PROXIMITY_REPORT", "peerId": "p4", "name": "B", "timestamp": 1,'
    ' "readings": [{"targetPeerId": "p1", "distance": -3}]}',
    '{"type": "SIGNAL_UPDATE", "peerId": "x", "strength": ' + "9" * 400 + "}",
    '{"type": "SIGNAL_BROADCAST", "strengths": {"p2": ' + "9" * 400 + "}}",
])
def test_known_tag_with_bad_fields_is_malformed(text):
    assert decode(text) is None


def test_legacy_field_names_accepted():
    text = json.dumps({
        "type": "PROXIMITY_REPORT",
        "peerId": "p4",
        "peerName": "Bob",
        "readings": [{"targetPeerId": "p1", "estimatedDistance": 7}],
        "timestamp": 10,
    })
    assert decode(text) == ProximityReport("p4", "Bob", (ProximityReading("p1", 7.0),), 10)


def test_legacy_signal_tags_accepted():
    assert decode('{"type": "RSSI_UPDATE", "peerId": "p2", "rssi": -55}') == SignalUpdate("p2", -55)
    assert decode('{"type": "RSSI_BROADCAST", "strengths": {"p2": -55}}') == SignalBroadcast({"p2": -55})
