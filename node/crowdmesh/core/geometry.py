"""Planar geometry for anchor-based position estimation.

Anchors are converted to a local equirectangular frame (meters east/north of
a reference point). At event scale (a few hundred meters) the error of this
approximation is far below the error of the distance estimates themselves.
"""

from __future__ import annotations

import hashlib
import math
from dataclasses import dataclass
from typing import Sequence

# Meters per degree of latitude.
METERS_PER_DEGREE_LAT = 111_320.0

# Below this |determinant| the three anchors are treated as collinear.
COLLINEAR_EPSILON = 1e-4

# Earth radius in meters (for Haversine).
_EARTH_R = 6_371_000.0


@dataclass(frozen=True)
class AnchorDistance:
    """An anchor location and the estimated distance to it."""
    lat: float
    lon: float
    distance: float


@dataclass(frozen=True)
class Estimate:
    latitude: float
    longitude: float
    accuracy: float


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in meters between two points."""
    rlat1, rlat2 = math.radians(lat1), math.radians(lat2)
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)
    a = math.sin(dlat / 2) ** 2 + math.cos(rlat1) * math.cos(rlat2) * math.sin(dlon / 2) ** 2
    return 2 * _EARTH_R * math.asin(math.sqrt(a))


def meters_per_degree_lon(lat: float) -> float:
    # Clamped so the frame stays finite at the poles.
    return METERS_PER_DEGREE_LAT * max(math.cos(math.radians(lat)), 1e-6)


def to_local(lat: float, lon: float, ref_lat: float, ref_lon: float) -> tuple[float, float]:
    """(lat, lon) -> (x east, y north) in meters from the reference point."""
    return (
        (lon - ref_lon) * meters_per_degree_lon(ref_lat),
        (lat - ref_lat) * METERS_PER_DEGREE_LAT,
    )


def from_local(x: float, y: float, ref_lat: float, ref_lon: float) -> tuple[float, float]:
    """(x, y) meters from the reference point -> (lat, lon)."""
    return (
        ref_lat + y / METERS_PER_DEGREE_LAT,
        ref_lon + x / meters_per_degree_lon(ref_lat),
    )


# ---- Peer-id derived choices ----

def stable_hash(value: str) -> int:
    """32-bit hash of a string, identical across processes and runs."""
    return int(hashlib.sha256(value.encode("utf-8")).hexdigest()[:8], 16)


def intersection_side(peer_id: str) -> int:
    """+1 or -1: which of two circle intersections a peer is placed on."""
    return 1 if stable_hash(peer_id) % 2 == 0 else -1


def ring_angle(peer_id: str) -> float:
    """Angle in radians (0 = north, clockwise) for single-anchor ring placement."""
    return (stable_hash(peer_id) % 3600) / 3600 * 2 * math.pi


# ---- Estimators ----

def trilaterate(anchors: Sequence[AnchorDistance]) -> Estimate | None:
    """Position from the first three anchors. None when they are collinear."""
    if len(anchors) < 3:
        return None

    ref = anchors[0]
    points = []
    for a in anchors[:3]:
        x, y = to_local(a.lat, a.lon, ref.lat, ref.lon)
        points.append((x, y, a.distance))
    (x1, y1, r1), (x2, y2, r2), (x3, y3, r3) = points

    # Subtracting pairs of circle equations leaves a 2x2 linear system.
    a = 2 * x2 - 2 * x1
    b = 2 * y2 - 2 * y1
    c = r1 ** 2 - r2 ** 2 - x1 ** 2 + x2 ** 2 - y1 ** 2 + y2 ** 2
    d = 2 * x3 - 2 * x2
    e = 2 * y3 - 2 * y2
    f = r2 ** 2 - r3 ** 2 - x2 ** 2 + x3 ** 2 - y2 ** 2 + y3 ** 2

    det = a * e - b * d
    if abs(det) < COLLINEAR_EPSILON:
        return None

    x = (c * e - f * b) / det
    y = (a * f - c * d) / det
    lat, lon = from_local(x, y, ref.lat, ref.lon)

    avg_distance = sum(an.distance for an in anchors) / len(anchors)
    return Estimate(latitude=lat, longitude=lon, accuracy=avg_distance * 0.3)


def intersect_two(a1: AnchorDistance, a2: AnchorDistance, side: int) -> tuple[float, float]:
    """One intersection point of the two distance circles, as (lat, lon).

    ``side`` (+1/-1) picks which of the two points. When the circles do not
    intersect, returns the point dividing the anchor segment in the ratio of
    the radii instead.
    """
    x2, y2 = to_local(a2.lat, a2.lon, a1.lat, a1.lon)
    r1, r2 = a1.distance, a2.distance
    d = math.hypot(x2, y2)

    if d == 0 or d > r1 + r2 or d < abs(r1 - r2):
        total = r1 + r2
        ratio = r1 / total if total > 0 else 0.5
        return (
            a1.lat + (a2.lat - a1.lat) * ratio,
            a1.lon + (a2.lon - a1.lon) * ratio,
        )

    a = (r1 * r1 - r2 * r2 + d * d) / (2 * d)
    h = math.sqrt(max(0.0, r1 * r1 - a * a))
    px = a * x2 / d
    py = a * y2 / d
    ix = px + side * h * y2 / d
    iy = py - side * h * x2 / d
    return from_local(ix, iy, a1.lat, a1.lon)


def ring_point(anchor: AnchorDistance, angle: float) -> tuple[float, float]:
    """Point at ``anchor.distance`` meters from the anchor, at ``angle``."""
    return from_local(
        anchor.distance * math.sin(angle),
        anchor.distance * math.cos(angle),
        anchor.lat,
        anchor.lon,
    )
