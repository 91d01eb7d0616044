from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

# (lon, lat) in that order, matching GeoJSON and the routing engine.
Coordinate = tuple[float, float]

SENTINEL: Coordinate = (0.0, 0.0)

START_PLACEHOLDER_LABEL = "Start Point"
END_PLACEHOLDER_LABEL = "End Point"
VIA_PLACEHOLDER_LABEL = "Via Point"
NEW_VIA_LABEL = "New Via Point (Search or click map)"
LOADING_LABEL = "Loading address..."
NOT_FOUND_LABEL = "Address not found"
LOOKUP_FAILED_LABEL = "Address lookup failed"
SEARCH_NOT_FOUND_LABEL = "Location not found"
SEARCH_FAILED_LABEL = "Search failed"


def is_placeholder(coord: Coordinate) -> bool:
    return float(coord[0]) == 0.0 and float(coord[1]) == 0.0


class WaypointRole(str, Enum):
    start = "start"
    end = "end"
    via = "via"


class PlannerState(str, Enum):
    empty = "empty"
    hard_routed = "hard_routed"
    shaped = "shaped"


def placeholder_label(role: WaypointRole) -> str:
    if role == WaypointRole.start:
        return START_PLACEHOLDER_LABEL
    if role == WaypointRole.end:
        return END_PLACEHOLDER_LABEL
    return VIA_PLACEHOLDER_LABEL


class BearingConstraint(BaseModel):
    angle_deg: float = Field(..., ge=0.0, lt=360.0)
    tolerance_deg: float = Field(..., ge=0.0, le=180.0)

    def as_pair(self) -> list[float]:
        return [round(self.angle_deg, 6), round(self.tolerance_deg, 6)]


class Waypoint(BaseModel):
    """A hard stop. `label` is display-only and never used for routing."""

    id: str
    coord: Coordinate = SENTINEL
    role: WaypointRole
    label: str | None = None
    snap_radius_m: float = Field(..., gt=0.0)
    kind: str = "address"
    is_geocoding: bool = False
    user_input: str = ""

    @property
    def is_placeholder(self) -> bool:
        return is_placeholder(self.coord)


class ShapingPoint(BaseModel):
    id: str
    anchor_index: int = Field(..., ge=1)
    coord: Coordinate
    snap_radius_m: float = Field(..., gt=0.0)
    seq: int = 0


class ActiveDrag(BaseModel):
    shaping_point_id: str
    bearing: BearingConstraint


class RoutePath(BaseModel):
    coordinates: list[Coordinate] = Field(default_factory=list)
    distance_m: float = 0.0
    duration_s: float = 0.0

    @classmethod
    def empty(cls) -> RoutePath:
        return cls()

    @property
    def is_empty(self) -> bool:
        return len(self.coordinates) < 2

    def to_feature_collection(self) -> dict[str, Any]:
        if self.is_empty:
            return {"type": "FeatureCollection", "features": []}
        return {
            "type": "FeatureCollection",
            "features": [
                {
                    "type": "Feature",
                    "geometry": {
                        "type": "LineString",
                        "coordinates": [[lon, lat] for lon, lat in self.coordinates],
                    },
                    "properties": {
                        "summary": {
                            "distance": round(self.distance_m, 1),
                            "duration": round(self.duration_s, 1),
                        }
                    },
                }
            ],
        }


class Place(BaseModel):
    label: str
    coord: Coordinate
    kind: str = "address"


# --- API payloads -----------------------------------------------------------


class LngLat(BaseModel):
    lon: float = Field(..., ge=-180, le=180)
    lat: float = Field(..., ge=-90, le=90)

    def as_coord(self) -> Coordinate:
        return (float(self.lon), float(self.lat))


class MapClickRequest(BaseModel):
    coord: LngLat
    hit_segment_index: int | None = Field(default=None, ge=0)


class PlaceRequest(BaseModel):
    label: str = Field(..., min_length=1)
    coord: LngLat
    kind: str = "poi"


class CoordUpdateRequest(BaseModel):
    coord: LngLat


class AddressSearchRequest(BaseModel):
    query: str = Field(..., min_length=1, max_length=256)


class SegmentPressRequest(BaseModel):
    segment_index: int = Field(..., ge=0)
    coord: LngLat


class PointerRequest(BaseModel):
    coord: LngLat


class PointerReleaseRequest(BaseModel):
    coord: LngLat
    zoom: float = Field(default=15.0, ge=0.0, le=24.0)


class PlaceListResponse(BaseModel):
    places: list[Place]
