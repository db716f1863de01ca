"""Application protocol carried over the transport's text channel.

Every message is a compact JSON object discriminated by its ``type`` tag.
Any text that is not such an object, or whose tag is unknown, is chat.
Text that carries a known tag but broken fields is malformed: ``decode``
returns None and the caller drops it.
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Union

import structlog

from crowdmesh.core.models import AnchorRecord, ProximityReading, ProximityReport

log = structlog.get_logger()

# ---- Message tags ----
JOIN_REQUEST = "JOIN_REQUEST"
JOIN_ACCEPTED = "JOIN_ACCEPTED"
JOIN_REJECTED = "JOIN_REJECTED"
ROOM_CLOSED = "ROOM_CLOSED"
SIGNAL_UPDATE = "SIGNAL_UPDATE"
SIGNAL_BROADCAST = "SIGNAL_BROADCAST"
GPS_ANCHOR = "GPS_ANCHOR"
PROXIMITY_REPORT = "PROXIMITY_REPORT"

# Tags emitted by older mobile clients.
_TAG_ALIASES = {
    "RSSI_UPDATE": SIGNAL_UPDATE,
    "RSSI_BROADCAST": SIGNAL_BROADCAST,
}


@dataclass(frozen=True)
class JoinRequest:
    event_code: str


@dataclass(frozen=True)
class JoinAccepted:
    pass


@dataclass(frozen=True)
class JoinRejected:
    reason: str


@dataclass(frozen=True)
class RoomClosed:
    pass


@dataclass(frozen=True)
class SignalUpdate:
    peer_id: str
    strength: int


@dataclass(frozen=True)
class SignalBroadcast:
    strengths: Mapping[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class ChatText:
    text: str


Message = Union[
    JoinRequest, JoinAccepted, JoinRejected, RoomClosed, SignalUpdate,
    SignalBroadcast, AnchorRecord, ProximityReport, ChatText,
]


def dumps(obj: Any) -> str:
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False)


def loads(text: str) -> Any:
    return json.loads(text)


# ---- Encoding ----

def _to_wire(msg: Message) -> dict:
    if isinstance(msg, JoinRequest):
        return {"type": JOIN_REQUEST, "eventCode": msg.event_code}
    if isinstance(msg, JoinAccepted):
        return {"type": JOIN_ACCEPTED}
    if isinstance(msg, JoinRejected):
        return {"type": JOIN_REJECTED, "reason": msg.reason}
    if isinstance(msg, RoomClosed):
        return {"type": ROOM_CLOSED}
    if isinstance(msg, SignalUpdate):
        return {"type": SIGNAL_UPDATE, "peerId": msg.peer_id, "strength": msg.strength}
    if isinstance(msg, SignalBroadcast):
        return {"type": SIGNAL_BROADCAST, "strengths": dict(msg.strengths)}
    if isinstance(msg, AnchorRecord):
        return {
            "type": GPS_ANCHOR,
            "peerId": msg.peer_id,
            "name": msg.name,
            "latitude": msg.latitude,
            "longitude": msg.longitude,
            "accuracy": msg.accuracy,
            "timestamp": msg.timestamp_ms,
        }
    if isinstance(msg, ProximityReport):
        return {
            "type": PROXIMITY_REPORT,
            "peerId": msg.peer_id,
            "name": msg.name,
            "readings": [
                {"targetPeerId": r.target_peer_id, "distance": r.distance_m}
                for r in msg.readings
            ],
            "timestamp": msg.timestamp_ms,
        }
    raise TypeError(f"cannot encode {type(msg).__name__}")


def encode(msg: Message) -> str:
    """Encode a message for the transport's text channel."""
    if isinstance(msg, ChatText):
        return msg.text
    return dumps(_to_wire(msg))


# ---- Decoding ----

def _field(raw: dict, key: str, *aliases: str) -> Any:
    for k in (key, *aliases):
        if k in raw:
            return raw[k]
    raise KeyError(key)


def _str(raw: dict, key: str, *aliases: str) -> str:
    value = _field(raw, key, *aliases)
    if not isinstance(value, str):
        raise TypeError(f"{key} must be a string")
    return value


def _float(raw: dict, key: str, *aliases: str) -> float:
    value = _field(raw, key, *aliases)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise TypeError(f"{key} must be a number")
    try:
        value = float(value)
    except OverflowError:
        raise ValueError(f"{key} is out of range") from None
    if not math.isfinite(value):
        raise ValueError(f"{key} must be finite")
    return value


def _int(raw: dict, key: str, *aliases: str) -> int:
    return int(round(_float(raw, key, *aliases)))


def _parse_signal_broadcast(raw: dict) -> SignalBroadcast:
    strengths = _field(raw, "strengths", "rssiMap")
    if not isinstance(strengths, dict):
        raise TypeError("strengths must be an object")
    parsed = {}
    for peer_id, value in strengths.items():
        parsed[peer_id] = _int({"v": value}, "v")
    return SignalBroadcast(strengths=parsed)


def _parse_anchor(raw: dict) -> AnchorRecord:
    return AnchorRecord(
        peer_id=_str(raw, "peerId"),
        name=_str(raw, "name", "peerName"),
        latitude=_float(raw, "latitude"),
        longitude=_float(raw, "longitude"),
        accuracy=_float(raw, "accuracy"),
        timestamp_ms=_int(raw, "timestamp"),
    )


def _parse_proximity(raw: dict) -> ProximityReport:
    readings = _field(raw, "readings")
    if not isinstance(readings, list):
        raise TypeError("readings must be a list")
    parsed = []
    for r in readings:
        if not isinstance(r, dict):
            raise TypeError("reading must be an object")
        distance = _float(r, "distance", "estimatedDistance")
        if distance < 0:
            raise ValueError("distance must not be negative")
        parsed.append(ProximityReading(target_peer_id=_str(r, "targetPeerId"), distance_m=distance))
    return ProximityReport(
        peer_id=_str(raw, "peerId"),
        name=_str(raw, "name", "peerName"),
        readings=tuple(parsed),
        timestamp_ms=_int(raw, "timestamp"),
    )


_PARSERS: dict[str, Callable[[dict], Message]] = {
    JOIN_REQUEST: lambda raw: JoinRequest(event_code=_str(raw, "eventCode")),
    JOIN_ACCEPTED: lambda raw: JoinAccepted(),
    JOIN_REJECTED: lambda raw: JoinRejected(reason=_str(raw, "reason")),
    ROOM_CLOSED: lambda raw: RoomClosed(),
    SIGNAL_UPDATE: lambda raw: SignalUpdate(peer_id=_str(raw, "peerId"), strength=_int(raw, "strength", "rssi")),
    SIGNAL_BROADCAST: _parse_signal_broadcast,
    GPS_ANCHOR: _parse_anchor,
    PROXIMITY_REPORT: _parse_proximity,
}


def decode(text: str) -> Message | None:
    """Decode transport text. Returns None for malformed protocol messages."""
    try:
        raw = loads(text)
    except (json.JSONDecodeError, UnicodeDecodeError, RecursionError):
        return ChatText(text)

    if not isinstance(raw, dict):
        return ChatText(text)

    tag = raw.get("type")
    if not isinstance(tag, str):
        return ChatText(text)
    tag = _TAG_ALIASES.get(tag, tag)
    parser = _PARSERS.get(tag)
    if parser is None:
        return ChatText(text)

    try:
        return parser(raw)
    except (KeyError, TypeError, ValueError) as exc:
        log.debug("malformed_message", type=tag, error=str(exc))
        return None
