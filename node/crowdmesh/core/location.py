"""This node's own location sharing.

A participating node shows up on the map. If it also shares GPS it is an
anchor and broadcasts GPS_ANCHOR; otherwise it broadcasts PROXIMITY_REPORT
with estimated distances to the anchors it is directly connected to.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Iterable, Mapping

from crowdmesh.core.models import AnchorRecord, GpsFix, ProximityReading, ProximityReport

if TYPE_CHECKING:
    from crowdmesh.config import LocationConfig


def distance_from_strength(
    strength: int | float | None,
    ref_strength_1m: float,
    path_loss_exponent: float,
    max_distance_m: float,
) -> float | None:
    """Estimate distance from signal strength using the log-distance path loss model."""
    if strength is None or path_loss_exponent <= 0:
        return None
    distance = 10 ** ((ref_strength_1m - float(strength)) / (10.0 * path_loss_exponent))
    return round(min(max(0.5, distance), max_distance_m), 2)


class LocationSharing:
    """Participation / GPS-sharing flags plus the latest own fix."""

    def __init__(self, config: LocationConfig) -> None:
        self._config = config
        self.participating = False
        self.sharing_gps = False
        self.fix: GpsFix | None = None

    def start_participating(self) -> None:
        self.participating = True

    def stop_participating(self) -> None:
        self.participating = False
        self.sharing_gps = False

    def share_gps(self, fix: GpsFix) -> None:
        """Start (or keep) sharing GPS with a fresh fix. Implies participating."""
        self.participating = True
        self.sharing_gps = True
        self.fix = fix

    def stop_sharing_gps(self) -> None:
        # Still participating: position will come from proximity instead.
        self.sharing_gps = False

    def anchor_record(self, peer_id: str, name: str) -> AnchorRecord | None:
        if not self.sharing_gps or self.fix is None:
            return None
        return AnchorRecord(
            peer_id=peer_id,
            name=name,
            latitude=self.fix.latitude,
            longitude=self.fix.longitude,
            accuracy=self.fix.accuracy,
            timestamp_ms=self.fix.timestamp_ms,
        )

    def should_report(self) -> bool:
        return self.participating and not self.sharing_gps

    def proximity_report(
        self,
        peer_id: str,
        name: str,
        anchors: Mapping[str, AnchorRecord],
        connected: Iterable[str],
        strengths: Mapping[str, int],
        now_ms: int,
    ) -> ProximityReport | None:
        """Distances to every known anchor we are directly connected to."""
        if not self.should_report():
            return None
        cfg = self._config
        connected = set(connected)
        readings = []
        for anchor_id in anchors:
            if anchor_id == peer_id or anchor_id not in connected:
                continue
            distance = distance_from_strength(
                strengths.get(anchor_id),
                cfg.ref_strength_1m,
                cfg.path_loss_exponent,
                cfg.max_distance_m,
            )
            if distance is None:
                distance = cfg.default_proximity_distance_m
            readings.append(ProximityReading(target_peer_id=anchor_id, distance_m=distance))
        # Sent even without readings so others know we are participating.
        return ProximityReport(peer_id=peer_id, name=name, readings=tuple(readings), timestamp_ms=now_ms)
