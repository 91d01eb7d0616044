from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass
from typing import Any, Callable, Protocol, Sequence

from .geometry import bearing_between, nearest_point_on
from .logging_utils import log_event
from .models import (
    LOADING_LABEL,
    LOOKUP_FAILED_LABEL,
    NEW_VIA_LABEL,
    NOT_FOUND_LABEL,
    SEARCH_FAILED_LABEL,
    SEARCH_NOT_FOUND_LABEL,
    SENTINEL,
    ActiveDrag,
    BearingConstraint,
    Coordinate,
    Place,
    PlannerState,
    RoutePath,
    ShapingPoint,
    Waypoint,
    WaypointRole,
    placeholder_label,
)
from .routing_errors import GeocodingError, RoutingError, RoutingThrottledError
from .settings import settings
from .shaping import (
    Strategy,
    flatten_shaping_request,
    hard_request,
    select_shaping_strategy,
    valid_waypoints,
)


class RoutingEngine(Protocol):
    async def compute_route(
        self,
        points: Sequence[Coordinate],
        radii: Sequence[float],
        bearings: Sequence[BearingConstraint | None] | None = None,
        *,
        bypass_throttle: bool = False,
    ) -> RoutePath: ...

    async def compute_sticky_two_leg_route(
        self,
        start: Coordinate,
        shape_point: Coordinate,
        end: Coordinate,
        shape_bearing: BearingConstraint,
        start_radius: float,
        shape_radius: float,
        end_radius: float,
        *,
        bypass_throttle: bool = False,
    ) -> RoutePath: ...


class Geocoder(Protocol):
    async def reverse(self, coord: Coordinate) -> Place | None: ...

    async def forward(
        self,
        query: str,
        *,
        limit: int = 5,
        proximity: Coordinate | None = None,
    ) -> list[Place]: ...


@dataclass(frozen=True)
class StoreChange:
    reason: str
    recompute: bool = False
    geocode_ids: tuple[str, ...] = ()


StoreListener = Callable[[StoreChange], None]


class _ShapingTierFailed(Exception):
    pass


class RouteStateStore:
    """Owns waypoints, shaping points, the drag bearing context and the path.

    Mutations are synchronous and announce themselves through `subscribe`;
    the store never debounces. `recalc` is the single recomputation entry point
    and never raises routing errors: it resolves to a path, possibly empty.

    Policy: moving a hard waypoint (`update_waypoint_coord`) clears all shaping
    points, like every other hard-waypoint edit.
    """

    def __init__(
        self,
        routing: RoutingEngine,
        geocoder: Geocoder | None = None,
        *,
        waypoint_radius_m: float | None = None,
        shaping_radius_m: float | None = None,
        bearing_tolerance_deg: float | None = None,
    ) -> None:
        self._routing = routing
        self._geocoder = geocoder
        self.waypoint_radius_m = float(waypoint_radius_m or settings.waypoint_snap_radius_m)
        self.shaping_radius_m = float(shaping_radius_m or settings.shaping_snap_radius_m)
        self.bearing_tolerance_deg = float(
            settings.bearing_tolerance_deg if bearing_tolerance_deg is None else bearing_tolerance_deg
        )

        self._waypoint_ids = itertools.count()
        self._shaping_ids = itertools.count()
        self._shaping_seq = itertools.count()
        self._listeners: list[StoreListener] = []

        self._waypoints: list[Waypoint] = [
            self._new_waypoint(WaypointRole.start),
            self._new_waypoint(WaypointRole.end),
        ]
        self._shaping_points: list[ShapingPoint] = []
        self._active_drag: ActiveDrag | None = None
        self._path = RoutePath.empty()
        self._path_strategy = Strategy.EMPTY
        self._generation = 0
        self._recompute_pending = False
        self.is_calculating_global_route = False

    # --- read side ----------------------------------------------------------

    @property
    def waypoints(self) -> list[Waypoint]:
        return list(self._waypoints)

    @property
    def shaping_points(self) -> list[ShapingPoint]:
        return list(self._shaping_points)

    @property
    def active_drag(self) -> ActiveDrag | None:
        return self._active_drag

    @property
    def path(self) -> RoutePath:
        return self._path

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def recompute_pending(self) -> bool:
        return self._recompute_pending

    @property
    def state(self) -> PlannerState:
        if self._path.is_empty:
            return PlannerState.empty
        if self._path_strategy in (Strategy.STICKY_TWO_LEG, Strategy.GENERAL_SINGLE_CALL):
            return PlannerState.shaped
        return PlannerState.hard_routed

    @property
    def path_strategy(self) -> Strategy:
        return self._path_strategy

    def get_waypoint(self, waypoint_id: str) -> Waypoint:
        for wp in self._waypoints:
            if wp.id == waypoint_id:
                return wp
        raise KeyError(waypoint_id)

    def get_shaping_point(self, shaping_id: str) -> ShapingPoint:
        for sp in self._shaping_points:
            if sp.id == shaping_id:
                return sp
        raise KeyError(shaping_id)

    def snapshot(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "strategy": self._path_strategy.value,
            "generation": self._generation,
            "is_calculating_global_route": self.is_calculating_global_route,
            "waypoints": [wp.model_dump(mode="json") for wp in self._waypoints],
            "shaping_points": [sp.model_dump(mode="json") for sp in self._shaping_points],
            "active_drag": self._active_drag.model_dump(mode="json") if self._active_drag else None,
            "route": self._path.to_feature_collection(),
            "distance_m": round(self._path.distance_m, 1),
            "duration_s": round(self._path.duration_s, 1),
        }

    # --- change notification ------------------------------------------------

    def subscribe(self, listener: StoreListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _notify(self, reason: str, *, recompute: bool = False, geocode_ids: Sequence[str] = ()) -> None:
        if recompute:
            self._recompute_pending = True
        change = StoreChange(reason=reason, recompute=recompute, geocode_ids=tuple(geocode_ids))
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception as e:  # a broken observer must not block the others
                log_event(
                    "store_subscriber_failed",
                    level=logging.WARNING,
                    reason=reason,
                    error=f"{type(e).__name__}: {e}",
                )

    # --- helpers ------------------------------------------------------------

    def _new_waypoint(
        self,
        role: WaypointRole,
        coord: Coordinate = SENTINEL,
        *,
        label: str | None = None,
        kind: str = "address",
    ) -> Waypoint:
        text = label if label is not None else placeholder_label(role)
        return Waypoint(
            id=f"wp-{next(self._waypoint_ids)}",
            coord=coord,
            role=role,
            label=text,
            snap_radius_m=self.waypoint_radius_m,
            kind=kind,
            user_input="" if label is None else text,
        )

    def _invalidate_shaping(self) -> None:
        # Anchor indices point into the waypoint sequence; any hard edit breaks them.
        self._shaping_points = []
        self._active_drag = None

    def _reassign_roles(self) -> None:
        last = len(self._waypoints) - 1
        for idx, wp in enumerate(self._waypoints):
            if idx == 0:
                wp.role = WaypointRole.start
            elif idx == last:
                wp.role = WaypointRole.end
            else:
                wp.role = WaypointRole.via

    def _reset_to_placeholder(self, wp: Waypoint) -> None:
        wp.coord = SENTINEL
        wp.label = placeholder_label(wp.role)
        wp.user_input = wp.label
        wp.kind = "address"
        wp.is_geocoding = False

    def _fill_endpoint_or_insert(self, coord: Coordinate) -> Waypoint:
        start = self._waypoints[0]
        end = self._waypoints[-1]
        if start.is_placeholder:
            start.coord = coord
            return start
        if end.is_placeholder:
            end.coord = coord
            return end
        wp = self._new_waypoint(WaypointRole.via, coord)
        self._waypoints.insert(len(self._waypoints) - 1, wp)
        return wp

    # --- hard waypoint mutations -------------------------------------------

    def add_or_update_endpoint_by_click(self, coord: Coordinate) -> Waypoint:
        wp = self._fill_endpoint_or_insert(coord)
        if wp.is_placeholder:
            self._reset_to_placeholder(wp)
            geocode_ids: list[str] = []
        else:
            wp.label = LOADING_LABEL
            wp.user_input = LOADING_LABEL
            geocode_ids = [wp.id]
        self._invalidate_shaping()
        self._notify("waypoint_clicked", recompute=True, geocode_ids=geocode_ids)
        return wp

    def add_place_as_waypoint(self, place: Place) -> Waypoint:
        wp = self._fill_endpoint_or_insert(place.coord)
        wp.label = place.label
        wp.user_input = place.label
        wp.kind = place.kind or "poi"
        wp.is_geocoding = False
        self._invalidate_shaping()
        self._notify("place_added", recompute=True)
        return wp

    def add_intermediate_stop(self) -> Waypoint:
        wp = self._new_waypoint(WaypointRole.via, label=NEW_VIA_LABEL)
        wp.user_input = ""
        self._waypoints.insert(len(self._waypoints) - 1, wp)
        self._invalidate_shaping()
        self._notify("intermediate_stop_added", recompute=True)
        return wp

    def insert_waypoint_on_route(self, segment_index: int, coord: Coordinate) -> Waypoint:
        # Segment i starts at waypoint i, so the new stop takes position i + 1;
        # clamp so the end waypoint stays last.
        position = max(1, min(int(segment_index) + 1, len(self._waypoints) - 1))
        wp = self._new_waypoint(WaypointRole.via, coord, label=LOADING_LABEL)
        self._waypoints.insert(position, wp)
        self._invalidate_shaping()
        self._notify("waypoint_inserted", recompute=True, geocode_ids=[wp.id])
        return wp

    def update_waypoint_coord(self, waypoint_id: str, coord: Coordinate) -> Waypoint:
        wp = self.get_waypoint(waypoint_id)
        wp.coord = coord
        if wp.is_placeholder:
            self._reset_to_placeholder(wp)
            geocode_ids: list[str] = []
        else:
            wp.label = LOADING_LABEL
            wp.user_input = LOADING_LABEL
            geocode_ids = [wp.id]
        self._invalidate_shaping()
        self._notify("waypoint_moved", recompute=True, geocode_ids=geocode_ids)
        return wp

    def remove_waypoint(self, waypoint_id: str) -> None:
        wp = self.get_waypoint(waypoint_id)
        if len(self._waypoints) <= 2:
            self._reset_to_placeholder(wp)
        else:
            self._waypoints.remove(wp)
            self._reassign_roles()
        self._invalidate_shaping()
        self._notify("waypoint_removed", recompute=True)

    # --- shaping mutations --------------------------------------------------

    def insert_shaping_point(
        self,
        anchor_index: int,
        coord: Coordinate,
        radius_m: float | None = None,
    ) -> ShapingPoint:
        if not 1 <= int(anchor_index) <= len(self._waypoints) - 1:
            raise ValueError(
                f"anchor_index {anchor_index} outside [1, {len(self._waypoints) - 1}]"
            )
        sp = ShapingPoint(
            id=f"sp-{next(self._shaping_ids)}",
            anchor_index=int(anchor_index),
            coord=coord,
            snap_radius_m=float(radius_m or self.shaping_radius_m),
            seq=next(self._shaping_seq),
        )
        self._shaping_points.append(sp)
        self._shaping_points.sort(key=lambda p: (p.anchor_index, p.seq))
        self._notify("shaping_added", recompute=True)
        return sp

    def update_shaping_point_coord(
        self,
        shaping_id: str,
        coord: Coordinate,
        radius_m: float | None = None,
    ) -> ShapingPoint:
        sp = self.get_shaping_point(shaping_id)
        sp.coord = coord
        if radius_m is not None:
            sp.snap_radius_m = float(radius_m)
        self._notify("shaping_moved", recompute=True)
        return sp

    def remove_shaping_point(self, shaping_id: str) -> None:
        sp = self.get_shaping_point(shaping_id)
        self._shaping_points.remove(sp)
        if self._active_drag is not None and self._active_drag.shaping_point_id == shaping_id:
            self._active_drag = None
        self._notify("shaping_removed", recompute=True)

    def clear_shaping(self) -> None:
        self._invalidate_shaping()
        self._notify("shaping_cleared", recompute=True)

    def begin_shaping_point_drag(
        self,
        shaping_id: str,
        route_path: RoutePath | None = None,
    ) -> ActiveDrag | None:
        """Derive the drag bearing from the route segment enclosing the point.

        Without an enclosing segment no context is set and the drag is
        unconstrained.
        """
        sp = self.get_shaping_point(shaping_id)
        path = route_path if route_path is not None else self._path
        nearest = nearest_point_on(path.coordinates, sp.coord)
        if nearest is None:
            self._active_drag = None
            return None

        seg_start = path.coordinates[nearest.segment_index]
        seg_end = path.coordinates[nearest.segment_index + 1]
        drag = ActiveDrag(
            shaping_point_id=sp.id,
            bearing=BearingConstraint(
                angle_deg=bearing_between(seg_start, seg_end),
                tolerance_deg=self.bearing_tolerance_deg,
            ),
        )
        self._active_drag = drag
        log_event(
            "shaping_drag_started",
            shaping_id=sp.id,
            segment_index=nearest.segment_index,
            bearing_deg=round(drag.bearing.angle_deg, 2),
        )
        self._notify("drag_started")
        return drag

    def end_shaping_point_drag(self) -> None:
        # The final position was applied by update_shaping_point_coord; a pending
        # recompute consumes (and clears) the context, otherwise drop it now.
        if not self._recompute_pending and self._active_drag is not None:
            self._active_drag = None
            self._notify("drag_ended")

    # --- geocoding ----------------------------------------------------------

    async def geocode_waypoint(self, waypoint_id: str) -> None:
        try:
            wp = self.get_waypoint(waypoint_id)
        except KeyError:
            # Removed while the lookup was queued.
            return
        if wp.is_placeholder or self._geocoder is None:
            wp.is_geocoding = False
            return

        coord = wp.coord
        wp.is_geocoding = True
        wp.label = LOADING_LABEL
        try:
            place = await self._geocoder.reverse(coord)
        except GeocodingError as e:
            if wp.coord == coord:
                wp.label = LOOKUP_FAILED_LABEL
            log_event("geocode_failed", waypoint_id=waypoint_id, error=str(e), level=logging.WARNING)
        else:
            # A newer move schedules its own lookup; keep its label.
            if wp.coord == coord:
                wp.label = place.label if place is not None else NOT_FOUND_LABEL
                wp.user_input = wp.label
                if place is not None and place.kind:
                    wp.kind = place.kind
        finally:
            wp.is_geocoding = False
        self._notify("label_updated")

    async def search_and_set_waypoint_address(self, waypoint_id: str, query: str) -> Waypoint:
        wp = self.get_waypoint(waypoint_id)
        wp.is_geocoding = True
        wp.user_input = query
        wp.label = f'Searching for "{query}"...'
        try:
            if self._geocoder is None:
                raise GeocodingError("no geocoder configured")
            places = await self._geocoder.forward(query, limit=1)
        except GeocodingError as e:
            wp.label = SEARCH_FAILED_LABEL
            log_event("geocode_failed", waypoint_id=waypoint_id, op="forward", error=str(e), level=logging.WARNING)
            wp.is_geocoding = False
            self._notify("label_updated")
            return wp

        wp.is_geocoding = False
        if not places:
            wp.label = SEARCH_NOT_FOUND_LABEL
            self._notify("label_updated")
            return wp

        first = places[0]
        wp.coord = first.coord
        wp.label = first.label
        wp.user_input = first.label
        wp.kind = first.kind or wp.kind
        self._invalidate_shaping()
        self._notify("waypoint_searched", recompute=True)
        return wp

    # --- recomputation ------------------------------------------------------

    async def recalc(self, *, bypass_throttle: bool = False) -> RoutePath:
        """Recompute the path from current state.

        `bypass_throttle` is for explicit settle points (an API flush) that must
        not be dropped by the client-side throttle.
        """
        self._generation += 1
        generation = self._generation
        self._recompute_pending = False

        waypoints = [wp.model_copy() for wp in self._waypoints]
        shaping = [sp.model_copy() for sp in self._shaping_points]
        drag = self._active_drag
        strategy = select_shaping_strategy(waypoints, shaping, drag)

        try:
            path, used = await self._compute_tiered(
                strategy, waypoints, shaping, drag, bypass_throttle=bypass_throttle
            )
        except RoutingThrottledError:
            log_event("recalc_throttled", generation=generation, strategy=strategy.value)
            # The drop is not a result: re-request the recompute (drag context
            # kept) unless a newer recalc already superseded this one.
            if generation == self._generation:
                self._notify("recalc_throttled", recompute=True)
            return self._path
        # Consumed by this attempt; a context set by a newer drag-start during
        # the await is left alone.
        if drag is not None and self._active_drag is drag:
            self._active_drag = None

        return self._commit(generation, path, used)

    async def force_reoptimize(self) -> RoutePath:
        """Drop manual shaping and recompute the best route over hard waypoints only."""
        self._invalidate_shaping()
        self._generation += 1
        generation = self._generation
        self._recompute_pending = False
        self.is_calculating_global_route = True
        self._notify("shaping_cleared")
        try:
            waypoints = [wp.model_copy() for wp in self._waypoints]
            if len(valid_waypoints(waypoints)) < 2:
                path, used = RoutePath.empty(), Strategy.EMPTY
            else:
                path, used = await self._hard_tier(waypoints, bypass_throttle=True), Strategy.HARD
        finally:
            self.is_calculating_global_route = False
        return self._commit(generation, path, used)

    def _commit(self, generation: int, path: RoutePath, used: Strategy) -> RoutePath:
        if generation != self._generation:
            log_event("recalc_stale_discarded", generation=generation, latest=self._generation)
            return self._path
        self._path = path
        self._path_strategy = used if not path.is_empty else Strategy.EMPTY
        log_event(
            "recalc_completed",
            generation=generation,
            strategy=used.value,
            point_count=len(path.coordinates),
            distance_m=round(path.distance_m, 1),
        )
        self._notify("path")
        return path

    async def _compute_tiered(
        self,
        strategy: Strategy,
        waypoints: list[Waypoint],
        shaping: list[ShapingPoint],
        drag: ActiveDrag | None,
        *,
        bypass_throttle: bool = False,
    ) -> tuple[RoutePath, Strategy]:
        """Run `strategy`, falling back sticky -> general -> hard -> empty."""
        if strategy == Strategy.EMPTY:
            return RoutePath.empty(), Strategy.EMPTY

        # Follow-up tiers belong to the call the throttle already admitted.
        bypass = bypass_throttle

        if strategy == Strategy.STICKY_TWO_LEG and drag is not None:
            try:
                path = await self._sticky_tier(waypoints, shaping[0], drag, bypass_throttle=bypass)
                return path, Strategy.STICKY_TWO_LEG
            except _ShapingTierFailed:
                bypass = True
                strategy = Strategy.GENERAL_SINGLE_CALL

        if strategy in (Strategy.GENERAL_SINGLE_CALL, Strategy.STICKY_TWO_LEG):
            try:
                path = await self._general_tier(waypoints, shaping, drag, bypass_throttle=bypass)
                return path, Strategy.GENERAL_SINGLE_CALL
            except _ShapingTierFailed:
                bypass = True

        return await self._hard_tier(waypoints, bypass_throttle=bypass), Strategy.HARD

    async def _sticky_tier(
        self,
        waypoints: list[Waypoint],
        sp: ShapingPoint,
        drag: ActiveDrag,
        *,
        bypass_throttle: bool,
    ) -> RoutePath:
        start, end = valid_waypoints(waypoints)[:2]
        try:
            path = await self._routing.compute_sticky_two_leg_route(
                start.coord,
                sp.coord,
                end.coord,
                drag.bearing,
                start.snap_radius_m,
                sp.snap_radius_m,
                end.snap_radius_m,
                bypass_throttle=bypass_throttle,
            )
        except RoutingThrottledError:
            raise
        except RoutingError as e:
            self._log_tier_failure(Strategy.STICKY_TWO_LEG, e)
            raise _ShapingTierFailed() from e
        if path.is_empty:
            self._log_tier_failure(Strategy.STICKY_TWO_LEG, None)
            raise _ShapingTierFailed()
        return path

    async def _general_tier(
        self,
        waypoints: list[Waypoint],
        shaping: list[ShapingPoint],
        drag: ActiveDrag | None,
        *,
        bypass_throttle: bool,
    ) -> RoutePath:
        req = flatten_shaping_request(waypoints, shaping, drag)
        try:
            path = await self._routing.compute_route(
                req.points,
                req.radii,
                req.bearings,
                bypass_throttle=bypass_throttle,
            )
        except RoutingThrottledError:
            raise
        except RoutingError as e:
            self._log_tier_failure(Strategy.GENERAL_SINGLE_CALL, e)
            raise _ShapingTierFailed() from e
        if path.is_empty:
            self._log_tier_failure(Strategy.GENERAL_SINGLE_CALL, None)
            raise _ShapingTierFailed()
        return path

    async def _hard_tier(self, waypoints: list[Waypoint], *, bypass_throttle: bool) -> RoutePath:
        req = hard_request(waypoints)
        try:
            return await self._routing.compute_route(
                req.points,
                req.radii,
                req.bearings,
                bypass_throttle=bypass_throttle,
            )
        except RoutingThrottledError:
            raise
        except RoutingError as e:
            # Hard-route failure is the explicit "no route" state.
            self._log_tier_failure(Strategy.HARD, e)
            return RoutePath.empty()

    def _log_tier_failure(self, tier: Strategy, err: RoutingError | None) -> None:
        log_event(
            "recalc_tier_failed",
            level=logging.WARNING,
            tier=tier.value,
            status_code=err.status_code if err is not None else None,
            reason_code=err.reason_code if err is not None else "routing_leg_empty",
            detail=str(err) if err is not None else "empty geometry",
        )
