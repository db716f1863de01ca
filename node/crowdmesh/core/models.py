"""CrowdMesh node: core internal data models.

These are plain dataclasses with no framework dependencies.
Wire messages are converted to/from these at the codec boundary.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class PeerStatus(str, Enum):
    CONNECTED_UNVERIFIED = "CONNECTED_UNVERIFIED"
    VERIFIED = "VERIFIED"


class PositionSource(str, Enum):
    GPS = "gps"
    TRIANGULATED = "triangulated"
    ESTIMATED_2 = "estimated-2"
    ESTIMATED_1 = "estimated-1"


# Crowd-crush alert severities.
SEVERITY_LOW = "low"
SEVERITY_MEDIUM = "medium"
SEVERITY_HIGH = "high"


@dataclass(frozen=True)
class ConnectionRecord:
    peer_id: str
    status: PeerStatus


@dataclass(frozen=True)
class SignalSample:
    peer_id: str
    strength: int        # dBm-like, higher = closer
    timestamp_ms: int


@dataclass(frozen=True)
class PeerSignalHistory:
    peer_id: str
    samples: tuple[SignalSample, ...] = ()
    closing_in: bool = False

    @property
    def latest_strength(self) -> int | None:
        return self.samples[-1].strength if self.samples else None

    def to_dict(self) -> dict:
        return {
            "peer_id": self.peer_id,
            "closing_in": self.closing_in,
            "latest_strength": self.latest_strength,
            "samples": [
                {"strength": s.strength, "timestamp_ms": s.timestamp_ms}
                for s in self.samples
            ],
        }


@dataclass(frozen=True)
class CrowdCrushAlert:
    detected: bool = False
    severity: str = SEVERITY_LOW
    closest_peers: int = 0
    total_nearby: int = 0
    message: str = ""

    def to_dict(self) -> dict:
        return {
            "detected": self.detected,
            "severity": self.severity,
            "closest_peers": self.closest_peers,
            "total_nearby": self.total_nearby,
            "message": self.message,
        }


@dataclass(frozen=True)
class GpsFix:
    latitude: float
    longitude: float
    accuracy: float = 0.0
    timestamp_ms: int = 0


@dataclass(frozen=True)
class AnchorRecord:
    """A peer broadcasting its own GPS position (GPS_ANCHOR)."""
    peer_id: str
    name: str
    latitude: float
    longitude: float
    accuracy: float
    timestamp_ms: int


@dataclass(frozen=True)
class ProximityReading:
    target_peer_id: str
    distance_m: float


@dataclass(frozen=True)
class ProximityReport:
    """A peer's estimated distances to anchors (PROXIMITY_REPORT)."""
    peer_id: str
    name: str
    readings: tuple[ProximityReading, ...]
    timestamp_ms: int


@dataclass(frozen=True)
class UserPosition:
    peer_id: str
    name: str
    latitude: float
    longitude: float
    accuracy: float
    source: PositionSource
    is_anchor: bool
    last_update_ms: int
    # Anchor references kept for ring / line rendering.
    anchor_lat: float | None = None
    anchor_lon: float | None = None
    anchor_distance: float | None = None
    anchor2_lat: float | None = None
    anchor2_lon: float | None = None
    anchor2_distance: float | None = None

    def to_geojson_feature(self) -> dict:
        anchors = []
        if self.anchor_lat is not None:
            anchors.append({
                "lat": self.anchor_lat,
                "lon": self.anchor_lon,
                "distance_m": self.anchor_distance,
            })
        if self.anchor2_lat is not None:
            anchors.append({
                "lat": self.anchor2_lat,
                "lon": self.anchor2_lon,
                "distance_m": self.anchor2_distance,
            })
        return {
            "type": "Feature",
            "geometry": {
                "type": "Point",
                "coordinates": [round(self.longitude, 7), round(self.latitude, 7)],
            },
            "properties": {
                "peer_id": self.peer_id,
                "name": self.name,
                "accuracy_m": round(self.accuracy, 1),
                "source": self.source.value,
                "is_anchor": self.is_anchor,
                "last_update_ms": self.last_update_ms,
                "anchors": anchors,
            },
        }


@dataclass(frozen=True)
class ChatMessage:
    id: str
    sender_id: str
    text: str
    timestamp_ms: int
    is_me: bool = False

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sender_id": self.sender_id,
            "text": self.text,
            "timestamp_ms": self.timestamp_ms,
            "is_me": self.is_me,
        }
