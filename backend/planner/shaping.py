from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Sequence

from .models import ActiveDrag, BearingConstraint, Coordinate, ShapingPoint, Waypoint


class Strategy(str, Enum):
    EMPTY = "empty"
    HARD = "hard"
    STICKY_TWO_LEG = "sticky_two_leg"
    GENERAL_SINGLE_CALL = "general_single_call"


@dataclass(frozen=True)
class FlattenedRequest:
    points: list[Coordinate] = field(default_factory=list)
    radii: list[float] = field(default_factory=list)
    bearings: list[BearingConstraint | None] = field(default_factory=list)
    shaping_ids: list[str] = field(default_factory=list)

    @property
    def routable(self) -> bool:
        return len(self.points) >= 2


def valid_waypoints(waypoints: Sequence[Waypoint]) -> list[Waypoint]:
    return [wp for wp in waypoints if not wp.is_placeholder]


def ordered_shaping(shaping_points: Sequence[ShapingPoint]) -> list[ShapingPoint]:
    return sorted(shaping_points, key=lambda sp: (sp.anchor_index, sp.seq))


def select_shaping_strategy(
    waypoints: Sequence[Waypoint],
    shaping_points: Sequence[ShapingPoint],
    active_drag: ActiveDrag | None,
) -> Strategy:
    valid = valid_waypoints(waypoints)
    if len(valid) < 2:
        return Strategy.EMPTY
    if not shaping_points and active_drag is None:
        return Strategy.HARD
    if (
        len(valid) == 2
        and len(shaping_points) == 1
        and active_drag is not None
        and active_drag.shaping_point_id == shaping_points[0].id
    ):
        return Strategy.STICKY_TWO_LEG
    return Strategy.GENERAL_SINGLE_CALL


def hard_request(waypoints: Sequence[Waypoint]) -> FlattenedRequest:
    valid = valid_waypoints(waypoints)
    return FlattenedRequest(
        points=[wp.coord for wp in valid],
        radii=[wp.snap_radius_m for wp in valid],
        bearings=[None] * len(valid),
    )


def flatten_shaping_request(
    waypoints: Sequence[Waypoint],
    shaping_points: Sequence[ShapingPoint],
    active_drag: ActiveDrag | None,
) -> FlattenedRequest:
    """Splice shaping points between the waypoints of their anchor leg.

    Shaping points anchored at k go right before waypoint k. Points anchored
    before the first or after the last real waypoint have no leg to bend and
    are left out. Only the dragged point carries a bearing.
    """
    positions = [idx for idx, wp in enumerate(waypoints) if not wp.is_placeholder]
    if len(positions) < 2:
        return FlattenedRequest()
    first_pos, last_pos = positions[0], positions[-1]

    by_anchor: dict[int, list[ShapingPoint]] = {}
    for sp in ordered_shaping(shaping_points):
        if first_pos < sp.anchor_index <= last_pos:
            by_anchor.setdefault(sp.anchor_index, []).append(sp)

    points: list[Coordinate] = []
    radii: list[float] = []
    bearings: list[BearingConstraint | None] = []
    shaping_ids: list[str] = []
    for position in range(first_pos, last_pos + 1):
        for sp in by_anchor.get(position, []):
            points.append(sp.coord)
            radii.append(sp.snap_radius_m)
            dragged = active_drag is not None and active_drag.shaping_point_id == sp.id
            bearings.append(active_drag.bearing if dragged and active_drag is not None else None)
            shaping_ids.append(sp.id)
        wp = waypoints[position]
        if wp.is_placeholder:
            continue
        points.append(wp.coord)
        radii.append(wp.snap_radius_m)
        bearings.append(None)

    return FlattenedRequest(points=points, radii=radii, bearings=bearings, shaping_ids=shaping_ids)
