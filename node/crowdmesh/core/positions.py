"""Position estimation from GPS anchors and proximity reports.

Peers that broadcast GPS are placed where they say they are. Every other
reporting peer is placed from the anchors it reports distances to:

- 3 or more anchors: trilateration (fails on collinear anchors),
- 2 anchors: circle intersection, side chosen from the peer id,
- 1 anchor: on the distance ring, at an angle chosen from the peer id.

The position map is rebuilt from scratch whenever the anchor or report maps
change. Nothing is smoothed across rebuilds.
"""

from __future__ import annotations

import time
from typing import Callable, Mapping

import structlog

from crowdmesh.core.geometry import (
    AnchorDistance,
    intersect_two,
    intersection_side,
    ring_angle,
    ring_point,
    trilaterate,
)
from crowdmesh.core.models import AnchorRecord, PositionSource, ProximityReport, UserPosition

log = structlog.get_logger()


def _anchor_position(anchor: AnchorRecord) -> UserPosition:
    return UserPosition(
        peer_id=anchor.peer_id,
        name=anchor.name,
        latitude=anchor.latitude,
        longitude=anchor.longitude,
        accuracy=anchor.accuracy,
        source=PositionSource.GPS,
        is_anchor=True,
        last_update_ms=anchor.timestamp_ms,
    )


def _visible_anchors(report: ProximityReport, anchors: Mapping[str, AnchorRecord]) -> list[AnchorDistance]:
    """Anchors the reporter has a reading for, once each, in reading order."""
    visible: list[AnchorDistance] = []
    seen: set[str] = set()
    for reading in report.readings:
        target = reading.target_peer_id
        if target in seen or target == report.peer_id:
            continue
        anchor = anchors.get(target)
        if anchor is None:
            continue
        seen.add(target)
        visible.append(AnchorDistance(anchor.latitude, anchor.longitude, reading.distance_m))
    return visible


def estimate_position(report: ProximityReport, anchors: Mapping[str, AnchorRecord]) -> UserPosition | None:
    """Derive a position for one non-anchor reporter, or None."""
    visible = _visible_anchors(report, anchors)
    common = {
        "peer_id": report.peer_id,
        "name": report.name,
        "is_anchor": False,
        "last_update_ms": report.timestamp_ms,
    }

    if len(visible) >= 3:
        estimate = trilaterate(visible)
        if estimate is None:
            log.debug("trilateration_degenerate", peer=report.peer_id[:8])
            return None
        return UserPosition(
            latitude=estimate.latitude,
            longitude=estimate.longitude,
            accuracy=estimate.accuracy,
            source=PositionSource.TRIANGULATED,
            **common,
        )

    if len(visible) == 2:
        a1, a2 = visible
        lat, lon = intersect_two(a1, a2, intersection_side(report.peer_id))
        return UserPosition(
            latitude=lat,
            longitude=lon,
            accuracy=max(a1.distance, a2.distance) * 0.4,
            source=PositionSource.ESTIMATED_2,
            anchor_lat=a1.lat,
            anchor_lon=a1.lon,
            anchor_distance=a1.distance,
            anchor2_lat=a2.lat,
            anchor2_lon=a2.lon,
            anchor2_distance=a2.distance,
            **common,
        )

    if len(visible) == 1:
        anchor = visible[0]
        lat, lon = ring_point(anchor, ring_angle(report.peer_id))
        return UserPosition(
            latitude=lat,
            longitude=lon,
            accuracy=anchor.distance * 0.5,
            source=PositionSource.ESTIMATED_1,
            anchor_lat=anchor.lat,
            anchor_lon=anchor.lon,
            anchor_distance=anchor.distance,
            **common,
        )

    return None


def derive_positions(
    anchors: Mapping[str, AnchorRecord],
    reports: Mapping[str, ProximityReport],
) -> dict[str, UserPosition]:
    """Build the full position map from the current anchor and report maps."""
    positions = {peer_id: _anchor_position(a) for peer_id, a in anchors.items()}
    for peer_id, report in reports.items():
        if peer_id in anchors:
            continue
        position = estimate_position(report, anchors)
        if position is not None:
            positions[peer_id] = position
    return positions


def positions_to_geojson(positions: Mapping[str, UserPosition]) -> dict:
    """Convert positions to a GeoJSON FeatureCollection."""
    return {
        "type": "FeatureCollection",
        "features": [p.to_geojson_feature() for p in positions.values()],
    }


class PositionEstimator:
    """Holds the anchor / report maps and the positions derived from them.

    ``anchor_ttl_seconds`` > 0 makes ``tick`` drop anchors and reports that
    were not refreshed within that time. 0 keeps them until the peer is lost.
    """

    def __init__(
        self,
        anchor_ttl_seconds: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = anchor_ttl_seconds
        self._clock = clock
        self._anchors: dict[str, AnchorRecord] = {}
        self._reports: dict[str, ProximityReport] = {}
        self._anchor_seen: dict[str, float] = {}
        self._report_seen: dict[str, float] = {}
        self._self_anchor: AnchorRecord | None = None
        self._positions: dict[str, UserPosition] = {}

    def upsert_anchor(self, anchor: AnchorRecord) -> None:
        self._anchors[anchor.peer_id] = anchor
        self._anchor_seen[anchor.peer_id] = self._clock()
        self._rebuild()

    def upsert_report(self, report: ProximityReport) -> None:
        self._reports[report.peer_id] = report
        self._report_seen[report.peer_id] = self._clock()
        self._rebuild()

    def set_self_anchor(self, anchor: AnchorRecord | None) -> None:
        """This node's own GPS position, when it is sharing it."""
        if anchor == self._self_anchor:
            return
        self._self_anchor = anchor
        self._rebuild()

    def remove_peer(self, peer_id: str) -> bool:
        removed = self._anchors.pop(peer_id, None) is not None
        removed = (self._reports.pop(peer_id, None) is not None) or removed
        self._anchor_seen.pop(peer_id, None)
        self._report_seen.pop(peer_id, None)
        if removed:
            self._rebuild()
        return removed

    def tick(self) -> int:
        """Expire stale anchors and reports. Returns how many entries were dropped."""
        if self._ttl <= 0:
            return 0
        cutoff = self._clock() - self._ttl
        stale_anchors = [pid for pid, seen in self._anchor_seen.items() if seen < cutoff]
        stale_reports = [pid for pid, seen in self._report_seen.items() if seen < cutoff]
        for pid in stale_anchors:
            del self._anchors[pid]
            del self._anchor_seen[pid]
        for pid in stale_reports:
            del self._reports[pid]
            del self._report_seen[pid]
        dropped = len(stale_anchors) + len(stale_reports)
        if dropped:
            log.info("stale_locations_expired", anchors=len(stale_anchors), reports=len(stale_reports))
            self._rebuild()
        return dropped

    def clear(self) -> None:
        self._anchors.clear()
        self._reports.clear()
        self._anchor_seen.clear()
        self._report_seen.clear()
        self._self_anchor = None
        self._positions = {}

    def anchors(self) -> dict[str, AnchorRecord]:
        anchors = dict(self._anchors)
        if self._self_anchor is not None:
            anchors[self._self_anchor.peer_id] = self._self_anchor
        return anchors

    def reports(self) -> dict[str, ProximityReport]:
        return dict(self._reports)

    def current_positions(self) -> dict[str, UserPosition]:
        return dict(self._positions)

    def _rebuild(self) -> None:
        self._positions = derive_positions(self.anchors(), self._reports)
