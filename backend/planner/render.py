from __future__ import annotations

from typing import Any, Callable

from pydantic import BaseModel, Field

from .geometry import circle_polygon, destination_point, segments_of
from .models import Coordinate, WaypointRole
from .route_store import RouteStateStore, StoreChange

# Length of the debug bearing rays drawn from a dragged shaping point.
BEARING_RAY_M = 60.0


def _feature_collection(features: list[dict[str, Any]]) -> dict[str, Any]:
    return {"type": "FeatureCollection", "features": features}


def _point(coord: Coordinate, properties: dict[str, Any]) -> dict[str, Any]:
    return {
        "type": "Feature",
        "geometry": {"type": "Point", "coordinates": [coord[0], coord[1]]},
        "properties": properties,
    }


def _line(coords: list[Coordinate], properties: dict[str, Any]) -> dict[str, Any]:
    return {
        "type": "Feature",
        "geometry": {"type": "LineString", "coordinates": [[lon, lat] for lon, lat in coords]},
        "properties": properties,
    }


def _polygon(ring: list[Coordinate], properties: dict[str, Any]) -> dict[str, Any]:
    return {
        "type": "Feature",
        "geometry": {"type": "Polygon", "coordinates": [[[lon, lat] for lon, lat in ring]]},
        "properties": properties,
    }


class RenderSnapshot(BaseModel):
    version: int = 0
    state: str = "empty"
    segments: dict[str, Any] = Field(default_factory=lambda: _feature_collection([]))
    route_line: dict[str, Any] = Field(default_factory=lambda: _feature_collection([]))
    waypoints: dict[str, Any] = Field(default_factory=lambda: _feature_collection([]))
    shaping_points: dict[str, Any] = Field(default_factory=lambda: _feature_collection([]))
    debug_radii: dict[str, Any] = Field(default_factory=lambda: _feature_collection([]))
    debug_bearing: dict[str, Any] = Field(default_factory=lambda: _feature_collection([]))


def build_snapshot(store: RouteStateStore, *, version: int = 0) -> RenderSnapshot:
    """Turn store state into map layer data. Reads the store, never writes it."""
    path = store.path
    segments = [
        _line([seg.start, seg.end], {"idx": seg.index})
        for seg in segments_of(path.coordinates)
    ]
    route_line = [_line(list(path.coordinates), {})] if not path.is_empty else []

    waypoint_features: list[dict[str, Any]] = []
    radii: list[dict[str, Any]] = []
    number = 0
    for wp in store.waypoints:
        if wp.is_placeholder:
            continue
        if wp.role == WaypointRole.via:
            number += 1
        waypoint_features.append(
            _point(
                wp.coord,
                {
                    "id": wp.id,
                    "role": wp.role.value,
                    # Vias are numbered in route order; endpoints carry no number.
                    "number": number if wp.role == WaypointRole.via else None,
                    "label": wp.label,
                    "kind": wp.kind,
                    "is_geocoding": wp.is_geocoding,
                },
            )
        )
        radii.append(
            _polygon(
                circle_polygon(wp.coord, wp.snap_radius_m),
                {"id": wp.id, "kind": "waypoint", "radius_m": wp.snap_radius_m},
            )
        )

    shaping_features: list[dict[str, Any]] = []
    for sp in store.shaping_points:
        shaping_features.append(_point(sp.coord, {"id": sp.id, "anchor_index": sp.anchor_index}))
        radii.append(
            _polygon(
                circle_polygon(sp.coord, sp.snap_radius_m),
                {"id": sp.id, "kind": "shaping", "radius_m": sp.snap_radius_m},
            )
        )

    bearing_features: list[dict[str, Any]] = []
    drag = store.active_drag
    if drag is not None:
        try:
            origin = store.get_shaping_point(drag.shaping_point_id).coord
        except KeyError:
            origin = None
        if origin is not None:
            angle = drag.bearing.angle_deg
            tolerance = drag.bearing.tolerance_deg
            for edge, heading in (
                ("bearing", angle),
                ("tolerance_min", (angle - tolerance) % 360.0),
                ("tolerance_max", (angle + tolerance) % 360.0),
            ):
                tip = destination_point(origin, heading, BEARING_RAY_M)
                bearing_features.append(
                    _line([origin, tip], {"id": drag.shaping_point_id, "edge": edge, "heading_deg": heading})
                )

    return RenderSnapshot(
        version=version,
        state=store.state.value,
        segments=_feature_collection(segments),
        route_line=_feature_collection(route_line),
        waypoints=_feature_collection(waypoint_features),
        shaping_points=_feature_collection(shaping_features),
        debug_radii=_feature_collection(radii),
        debug_bearing=_feature_collection(bearing_features),
    )


class RouteRenderer:
    """Keeps a render snapshot in step with the store via its change feed."""

    def __init__(self, store: RouteStateStore) -> None:
        self._store = store
        self._version = 0
        self._snapshot = build_snapshot(store, version=0)
        self._listeners: list[Callable[[RenderSnapshot], None]] = []
        self._unsubscribe = store.subscribe(self._on_change)

    @property
    def snapshot(self) -> RenderSnapshot:
        return self._snapshot

    def on_render(self, listener: Callable[[RenderSnapshot], None]) -> None:
        self._listeners.append(listener)

    def _on_change(self, change: StoreChange) -> None:
        self.rebuild()

    def rebuild(self) -> RenderSnapshot:
        self._version += 1
        self._snapshot = build_snapshot(self._store, version=self._version)
        for listener in list(self._listeners):
            listener(self._snapshot)
        return self._snapshot

    def close(self) -> None:
        self._unsubscribe()
