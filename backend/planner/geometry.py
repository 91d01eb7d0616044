from __future__ import annotations

import math
from dataclasses import dataclass
from typing import NamedTuple, Sequence

from .models import Coordinate, is_placeholder

EARTH_RADIUS_M = 6_371_008.8


class Segment(NamedTuple):
    start: Coordinate
    end: Coordinate
    index: int


@dataclass(frozen=True)
class NearestPoint:
    segment_index: int
    distance_m: float
    location: Coordinate


def segments_of(path: Sequence[Coordinate]) -> list[Segment]:
    """Split a coordinate list into consecutive-pair segments tagged with their 0-based order."""
    return [
        Segment(
            start=(float(path[i][0]), float(path[i][1])),
            end=(float(path[i + 1][0]), float(path[i + 1][1])),
            index=i,
        )
        for i in range(len(path) - 1)
    ]


def haversine_m(a: Coordinate, b: Coordinate) -> float:
    phi1 = math.radians(a[1])
    phi2 = math.radians(b[1])
    dphi = math.radians(b[1] - a[1])
    dlmb = math.radians(b[0] - a[0])

    s = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlmb / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.asin(math.sqrt(min(1.0, s)))


def bearing_between(a: Coordinate, b: Coordinate) -> float:
    """Initial bearing (forward azimuth) from a to b, degrees true, [0, 360)."""
    phi1 = math.radians(a[1])
    phi2 = math.radians(b[1])
    dlmb = math.radians(b[0] - a[0])

    y = math.sin(dlmb) * math.cos(phi2)
    x = math.cos(phi1) * math.sin(phi2) - math.sin(phi1) * math.cos(phi2) * math.cos(dlmb)
    brng = (math.degrees(math.atan2(y, x)) + 360.0) % 360.0
    # -0.0 % 360 and float rounding can land exactly on 360.
    return 0.0 if brng >= 360.0 else brng


def destination_point(origin: Coordinate, bearing_deg: float, distance_m: float) -> Coordinate:
    phi1 = math.radians(origin[1])
    lmb1 = math.radians(origin[0])
    theta = math.radians(bearing_deg)
    delta = distance_m / EARTH_RADIUS_M

    phi2 = math.asin(
        math.sin(phi1) * math.cos(delta) + math.cos(phi1) * math.sin(delta) * math.cos(theta)
    )
    lmb2 = lmb1 + math.atan2(
        math.sin(theta) * math.sin(delta) * math.cos(phi1),
        math.cos(delta) - math.sin(phi1) * math.sin(phi2),
    )
    lon = (math.degrees(lmb2) + 540.0) % 360.0 - 180.0
    return (lon, math.degrees(phi2))


def _project(origin: Coordinate, point: Coordinate) -> tuple[float, float]:
    # Local equirectangular plane in metres around `origin`.
    cos_lat = math.cos(math.radians(origin[1]))
    x = math.radians(point[0] - origin[0]) * cos_lat * EARTH_RADIUS_M
    y = math.radians(point[1] - origin[1]) * EARTH_RADIUS_M
    return x, y


def _unproject(origin: Coordinate, x: float, y: float) -> Coordinate:
    cos_lat = math.cos(math.radians(origin[1])) or 1e-12
    lon = origin[0] + math.degrees(x / (EARTH_RADIUS_M * cos_lat))
    lat = origin[1] + math.degrees(y / EARTH_RADIUS_M)
    return (lon, lat)


def _project_onto_segment(point: Coordinate, a: Coordinate, b: Coordinate) -> tuple[Coordinate, float]:
    ax, ay = _project(point, a)
    bx, by = _project(point, b)
    dx = bx - ax
    dy = by - ay
    length_sq = dx * dx + dy * dy
    if length_sq <= 0.0:
        t = 0.0
    else:
        # Query point is the plane origin, so its coordinates are (0, 0).
        t = max(0.0, min(1.0, -(ax * dx + ay * dy) / length_sq))
    px = ax + t * dx
    py = ay + t * dy
    location = _unproject(point, px, py)
    return location, haversine_m(point, location)


def point_to_segment_distance_m(point: Coordinate, a: Coordinate, b: Coordinate) -> float:
    _, distance = _project_onto_segment(point, a, b)
    return distance


def nearest_point_on(path: Sequence[Coordinate], point: Coordinate) -> NearestPoint | None:
    """Project `point` onto the closest segment of `path`.

    Returns None when the path has fewer than two coordinates. Ties keep the
    earliest segment so the result is deterministic.
    """
    best: NearestPoint | None = None
    for seg in segments_of(path):
        location, distance = _project_onto_segment(point, seg.start, seg.end)
        if best is None or distance < best.distance_m:
            best = NearestPoint(segment_index=seg.index, distance_m=distance, location=location)
    return best


def anchor_index_for_segment(
    path: Sequence[Coordinate],
    waypoint_coords: Sequence[Coordinate],
    segment_index: int,
) -> int:
    """Map a rendered path segment to the 1-based waypoint leg it belongs to.

    Leg k runs from waypoint k-1 to waypoint k. Each real waypoint is located at
    its nearest path vertex, searching forward only so legs stay ordered.
    Placeholder waypoints are skipped.
    """
    last_position = max(1, len(waypoint_coords) - 1)
    if len(path) < 2:
        return 1

    located: list[tuple[int, int]] = []
    search_from = 0
    for position, coord in enumerate(waypoint_coords):
        if is_placeholder(coord):
            continue
        best_idx = search_from
        best_d = math.inf
        for idx in range(search_from, len(path)):
            d = haversine_m(coord, path[idx])
            if d < best_d:
                best_d = d
                best_idx = idx
        located.append((position, best_idx))
        search_from = best_idx

    if len(located) < 2:
        return 1

    for position, vertex_idx in located[1:]:
        if segment_index < vertex_idx:
            return max(1, min(position, last_position))
    return max(1, min(located[-1][0], last_position))


def radius_for_zoom(zoom: float) -> float:
    """Shaping snap radius in metres; closer zoom gives a tighter radius."""
    if zoom > 17:
        return 5.0
    if zoom > 14:
        return 7.0
    if zoom > 11:
        return 15.0
    return 30.0


def circle_polygon(center: Coordinate, radius_m: float, *, steps: int = 32) -> list[Coordinate]:
    ring = [destination_point(center, (360.0 / steps) * i, radius_m) for i in range(steps)]
    ring.append(ring[0])
    return ring
