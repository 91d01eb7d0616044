from __future__ import annotations

from dataclasses import dataclass

from .geometry import anchor_index_for_segment, point_to_segment_distance_m, radius_for_zoom
from .logging_utils import log_event
from .models import ActiveDrag, Coordinate, ShapingPoint, Waypoint
from .route_store import RouteStateStore
from .settings import settings


@dataclass
class SegmentPress:
    segment_index: int
    origin: Coordinate


class MapInteractionBridge:
    """Translate pointer gestures on the map into store mutations.

    Holds only gesture state (the segment press, the temporary marker, whether
    panning is allowed); everything else lives in the store.
    """

    def __init__(self, store: RouteStateStore, *, hit_distance_m: float | None = None) -> None:
        self._store = store
        self.hit_distance_m = float(hit_distance_m or settings.segment_hit_distance_m)
        self.map_panning_enabled = True
        self.temp_marker: Coordinate | None = None
        self._press: SegmentPress | None = None

    @property
    def segment_drag_active(self) -> bool:
        return self._press is not None

    def _segment_hit(self, coord: Coordinate, segment_index: int) -> bool:
        path = self._store.path.coordinates
        if not 0 <= segment_index < len(path) - 1:
            return False
        distance = point_to_segment_distance_m(coord, path[segment_index], path[segment_index + 1])
        return distance < self.hit_distance_m

    def on_map_click(self, coord: Coordinate, hit_segment_index: int | None = None) -> Waypoint | None:
        if self._press is not None:
            return None
        if hit_segment_index is not None and self._segment_hit(coord, hit_segment_index):
            return self._store.insert_waypoint_on_route(hit_segment_index, coord)
        return self._store.add_or_update_endpoint_by_click(coord)

    # --- shaping gesture: press on a segment, drag, release -----------------

    def on_segment_press(self, segment_index: int, coord: Coordinate) -> bool:
        path = self._store.path.coordinates
        if not 0 <= segment_index < len(path) - 1:
            return False
        self._press = SegmentPress(segment_index=segment_index, origin=coord)
        self.map_panning_enabled = False
        self.temp_marker = coord
        return True

    def on_pointer_move(self, coord: Coordinate) -> None:
        if self._press is not None:
            self.temp_marker = coord

    def on_pointer_release(self, coord: Coordinate, zoom: float) -> ShapingPoint | None:
        press = self._press
        self._press = None
        self.map_panning_enabled = True
        self.temp_marker = None
        if press is None:
            return None

        anchor = anchor_index_for_segment(
            self._store.path.coordinates,
            [wp.coord for wp in self._store.waypoints],
            press.segment_index,
        )
        radius = radius_for_zoom(zoom)
        log_event(
            "shaping_point_dropped",
            segment_index=press.segment_index,
            anchor_index=anchor,
            radius_m=radius,
        )
        return self._store.insert_shaping_point(anchor, coord, radius)

    # --- marker drags -------------------------------------------------------

    def on_shaping_drag_start(self, shaping_id: str) -> ActiveDrag | None:
        return self._store.begin_shaping_point_drag(shaping_id, self._store.path)

    def on_shaping_drag_end(self, shaping_id: str, coord: Coordinate, zoom: float | None = None) -> ShapingPoint:
        radius = radius_for_zoom(zoom) if zoom is not None else None
        sp = self._store.update_shaping_point_coord(shaping_id, coord, radius)
        self._store.end_shaping_point_drag()
        return sp

    def on_waypoint_drag_end(self, waypoint_id: str, coord: Coordinate) -> Waypoint:
        return self._store.update_waypoint_coord(waypoint_id, coord)
