from __future__ import annotations

import asyncio
from typing import Any

import pytest

from planner.models import (
    END_PLACEHOLDER_LABEL,
    LOADING_LABEL,
    LOOKUP_FAILED_LABEL,
    NEW_VIA_LABEL,
    NOT_FOUND_LABEL,
    SEARCH_FAILED_LABEL,
    SEARCH_NOT_FOUND_LABEL,
    SENTINEL,
    START_PLACEHOLDER_LABEL,
    Place,
    PlannerState,
    RoutePath,
    WaypointRole,
)
from planner.route_store import RouteStateStore, StoreChange
from planner.routing_errors import GeocodingError, RoutingError, RoutingThrottledError
from planner.shaping import Strategy

A = (-1.90, 52.48)
B = (-1.85, 52.45)
C = (-1.80, 52.43)
D = (-1.70, 52.40)


class FakeRouting:
    """Routing double: echoes the requested points back as the path."""

    def __init__(self) -> None:
        self.route_calls: list[dict[str, Any]] = []
        self.sticky_calls: list[dict[str, Any]] = []
        self.route_errors: list[Exception | None] = []
        self.sticky_error: Exception | None = None

    async def compute_route(self, points, radii, bearings=None, *, bypass_throttle=False) -> RoutePath:
        self.route_calls.append(
            {
                "points": list(points),
                "radii": list(radii),
                "bearings": list(bearings) if bearings is not None else None,
                "bypass_throttle": bypass_throttle,
            }
        )
        if self.route_errors:
            err = self.route_errors.pop(0)
            if err is not None:
                raise err
        return RoutePath(coordinates=list(points), distance_m=100.0 * len(points), duration_s=10.0)

    async def compute_sticky_two_leg_route(
        self,
        start,
        shape_point,
        end,
        shape_bearing,
        start_radius,
        shape_radius,
        end_radius,
        *,
        bypass_throttle=False,
    ) -> RoutePath:
        self.sticky_calls.append(
            {
                "points": [start, shape_point, end],
                "bearing": shape_bearing,
                "radii": [start_radius, shape_radius, end_radius],
                "bypass_throttle": bypass_throttle,
            }
        )
        if self.sticky_error is not None:
            raise self.sticky_error
        return RoutePath(coordinates=[start, shape_point, end], distance_m=300.0, duration_s=30.0)


class FakeGeocoder:
    def __init__(self, *, reverse_result: Place | None = None, forward_result: list[Place] | None = None) -> None:
        self.reverse_result = reverse_result
        self.forward_result = forward_result or []
        self.error: Exception | None = None
        self.reverse_calls: list[tuple[float, float]] = []
        self.forward_calls: list[str] = []
        self.during_reverse = None

    async def reverse(self, coord):
        self.reverse_calls.append(coord)
        if self.during_reverse is not None:
            self.during_reverse()
        if self.error is not None:
            raise self.error
        return self.reverse_result

    async def forward(self, query, *, limit=5, proximity=None):
        self.forward_calls.append(query)
        if self.error is not None:
            raise self.error
        return self.forward_result[:limit]


def _store(routing: FakeRouting | None = None, geocoder: FakeGeocoder | None = None) -> RouteStateStore:
    return RouteStateStore(
        routing or FakeRouting(),
        geocoder,
        waypoint_radius_m=350.0,
        shaping_radius_m=7.0,
        bearing_tolerance_deg=45.0,
    )


def _filled(routing: FakeRouting | None = None, *coords, geocoder: FakeGeocoder | None = None) -> RouteStateStore:
    store = _store(routing, geocoder)
    for i, coord in enumerate(coords or (A, C)):
        store.add_place_as_waypoint(Place(label=f"p{i}", coord=coord))
    return store


def test_initial_state_has_two_placeholders() -> None:
    store = _store()

    assert [wp.role for wp in store.waypoints] == [WaypointRole.start, WaypointRole.end]
    assert all(wp.coord == SENTINEL for wp in store.waypoints)
    assert [wp.label for wp in store.waypoints] == [START_PLACEHOLDER_LABEL, END_PLACEHOLDER_LABEL]
    assert store.shaping_points == []
    assert store.active_drag is None
    assert store.path.is_empty
    assert store.state == PlannerState.empty


def test_click_fills_start_then_end_then_inserts_via_before_end() -> None:
    store = _store()
    changes: list[StoreChange] = []
    store.subscribe(changes.append)

    first = store.add_or_update_endpoint_by_click(A)
    second = store.add_or_update_endpoint_by_click(C)
    third = store.add_or_update_endpoint_by_click(B)

    assert first.role == WaypointRole.start and first.coord == A
    assert second.role == WaypointRole.end and second.coord == C
    assert third.role == WaypointRole.via
    assert [wp.coord for wp in store.waypoints] == [A, B, C]
    assert third.label == LOADING_LABEL
    assert all(c.recompute for c in changes)
    assert [c.geocode_ids for c in changes] == [(first.id,), (second.id,), (third.id,)]


def test_click_on_the_sentinel_leaves_a_placeholder_without_lookup() -> None:
    store = _store()
    changes: list[StoreChange] = []
    store.subscribe(changes.append)

    wp = store.add_or_update_endpoint_by_click(SENTINEL)

    assert wp.role == WaypointRole.start
    assert wp.is_placeholder
    assert wp.label == START_PLACEHOLDER_LABEL
    assert wp.user_input == START_PLACEHOLDER_LABEL
    assert changes[-1].recompute is True
    assert changes[-1].geocode_ids == ()


def test_add_place_sets_label_without_reverse_geocoding() -> None:
    store = _store()
    changes: list[StoreChange] = []
    store.subscribe(changes.append)

    wp = store.add_place_as_waypoint(Place(label="Bullring", coord=A, kind="poi"))

    assert wp.label == "Bullring"
    assert wp.user_input == "Bullring"
    assert wp.kind == "poi"
    assert changes[-1].recompute is True
    assert changes[-1].geocode_ids == ()


def test_ids_are_store_scoped_and_never_reused() -> None:
    first = _store()
    second = _store()
    assert [wp.id for wp in first.waypoints] == [wp.id for wp in second.waypoints]

    first.add_place_as_waypoint(Place(label="a", coord=A))
    first.add_place_as_waypoint(Place(label="c", coord=C))
    via = first.add_or_update_endpoint_by_click(B)
    first.remove_waypoint(via.id)
    again = first.add_or_update_endpoint_by_click(B)

    assert again.id != via.id
    ids = [wp.id for wp in first.waypoints]
    assert len(ids) == len(set(ids))


def test_remove_with_two_waypoints_resets_to_placeholder() -> None:
    store = _filled()
    start = store.waypoints[0]

    store.remove_waypoint(start.id)

    assert len(store.waypoints) == 2
    assert store.waypoints[0].id == start.id
    assert store.waypoints[0].coord == SENTINEL
    assert store.waypoints[0].label == START_PLACEHOLDER_LABEL
    assert store.waypoints[0].role == WaypointRole.start


def test_remove_start_promotes_next_waypoint() -> None:
    store = _filled(None, A, C)
    via = store.add_or_update_endpoint_by_click(B)
    start = store.waypoints[0]

    store.remove_waypoint(start.id)

    assert [wp.id for wp in store.waypoints] == [via.id, store.waypoints[1].id]
    assert store.waypoints[0].role == WaypointRole.start
    assert store.waypoints[-1].role == WaypointRole.end


def test_remove_end_promotes_previous_waypoint() -> None:
    store = _filled(None, A, C)
    via = store.add_or_update_endpoint_by_click(B)

    store.remove_waypoint(store.waypoints[-1].id)

    assert store.waypoints[-1].id == via.id
    assert store.waypoints[-1].role == WaypointRole.end


def test_remove_unknown_id_raises_key_error() -> None:
    with pytest.raises(KeyError):
        _store().remove_waypoint("wp-99")


def test_insert_waypoint_on_route_uses_segment_plus_one_and_clamps() -> None:
    store = _filled(None, A, C)

    inserted = store.insert_waypoint_on_route(0, B)
    assert [wp.id for wp in store.waypoints].index(inserted.id) == 1
    assert inserted.role == WaypointRole.via
    assert inserted.label == LOADING_LABEL

    clamped = store.insert_waypoint_on_route(40, D)
    assert store.waypoints[-2].id == clamped.id
    assert store.waypoints[-1].role == WaypointRole.end


@pytest.mark.parametrize(
    "edit",
    [
        lambda s: s.update_waypoint_coord(s.waypoints[-1].id, D),
        lambda s: s.insert_waypoint_on_route(0, B),
        lambda s: s.remove_waypoint(s.waypoints[0].id),
        lambda s: s.add_or_update_endpoint_by_click(B),
        lambda s: s.add_place_as_waypoint(Place(label="x", coord=D)),
        lambda s: s.add_intermediate_stop(),
    ],
)
def test_every_hard_waypoint_edit_clears_shaping(edit) -> None:
    store = _filled()
    sp = store.insert_shaping_point(1, B)
    store.begin_shaping_point_drag(sp.id, RoutePath(coordinates=[A, C]))
    assert store.active_drag is not None

    edit(store)

    assert store.shaping_points == []
    assert store.active_drag is None


def test_insert_shaping_point_validates_anchor_and_sorts() -> None:
    store = _filled(None, A, C)
    store.add_or_update_endpoint_by_click(B)

    with pytest.raises(ValueError):
        store.insert_shaping_point(0, B)
    with pytest.raises(ValueError):
        store.insert_shaping_point(3, B)

    late = store.insert_shaping_point(2, (-1.82, 52.44))
    early = store.insert_shaping_point(1, (-1.88, 52.47))
    tie = store.insert_shaping_point(2, (-1.81, 52.44), radius_m=15.0)

    assert [sp.id for sp in store.shaping_points] == [early.id, late.id, tie.id]
    assert early.snap_radius_m == 7.0
    assert tie.snap_radius_m == 15.0


def test_begin_drag_derives_bearing_from_enclosing_segment() -> None:
    store = _filled(None, (10.0, 50.0), (10.01, 50.01))
    sp = store.insert_shaping_point(1, (10.005, 50.0001))
    path = RoutePath(coordinates=[(10.0, 50.0), (10.01, 50.0), (10.01, 50.01)])

    drag = store.begin_shaping_point_drag(sp.id, path)

    assert drag is not None
    assert drag.shaping_point_id == sp.id
    assert drag.bearing.angle_deg == pytest.approx(90.0, abs=0.1)
    assert drag.bearing.tolerance_deg == 45.0
    assert store.active_drag == drag


def test_begin_drag_without_path_sets_no_context() -> None:
    store = _filled()
    sp = store.insert_shaping_point(1, B)

    assert store.begin_shaping_point_drag(sp.id) is None
    assert store.active_drag is None


def test_end_drag_keeps_context_for_the_pending_recompute() -> None:
    store = _filled()
    sp = store.insert_shaping_point(1, B)
    store.begin_shaping_point_drag(sp.id, RoutePath(coordinates=[A, C]))
    store.update_shaping_point_coord(sp.id, (-1.84, 52.44))

    store.end_shaping_point_drag()
    assert store.active_drag is not None


def test_end_drag_without_pending_recompute_clears_context() -> None:
    store = _filled()
    sp = store.insert_shaping_point(1, B)
    asyncio.run(store.recalc())
    store.begin_shaping_point_drag(sp.id, RoutePath(coordinates=[A, C]))

    store.end_shaping_point_drag()
    assert store.active_drag is None


@pytest.mark.anyio
async def test_recalc_with_a_single_real_waypoint_is_empty() -> None:
    routing = FakeRouting()
    store = _store(routing)
    store.add_or_update_endpoint_by_click(A)

    path = await store.recalc()

    assert path.is_empty
    assert routing.route_calls == []
    assert store.state == PlannerState.empty


@pytest.mark.anyio
async def test_recalc_hard_route_skips_placeholders() -> None:
    routing = FakeRouting()
    store = _filled(routing)
    store.add_intermediate_stop()

    path = await store.recalc()

    assert routing.route_calls == [
        {"points": [A, C], "radii": [350.0, 350.0], "bearings": [None, None], "bypass_throttle": False}
    ]
    assert path.coordinates == [A, C]
    assert store.state == PlannerState.hard_routed
    assert store.path_strategy == Strategy.HARD
    assert store.waypoints[1].label == NEW_VIA_LABEL


@pytest.mark.anyio
async def test_recalc_sticky_when_dragging_the_only_shaping_point() -> None:
    routing = FakeRouting()
    store = _filled(routing)
    sp = store.insert_shaping_point(1, B)
    drag = store.begin_shaping_point_drag(sp.id, RoutePath(coordinates=[A, C]))

    path = await store.recalc()

    assert len(routing.sticky_calls) == 1
    assert routing.sticky_calls[0]["points"] == [A, B, C]
    assert routing.sticky_calls[0]["bearing"] == drag.bearing
    assert routing.sticky_calls[0]["radii"] == [350.0, 7.0, 350.0]
    assert routing.route_calls == []
    assert path.coordinates == [A, B, C]
    assert store.state == PlannerState.shaped
    assert store.active_drag is None


@pytest.mark.anyio
async def test_recalc_general_single_call_flattens_shaping() -> None:
    routing = FakeRouting()
    store = _filled(routing)
    store.insert_shaping_point(1, B)

    await store.recalc()

    assert routing.sticky_calls == []
    assert routing.route_calls[0]["points"] == [A, B, C]
    assert routing.route_calls[0]["radii"] == [350.0, 7.0, 350.0]
    assert routing.route_calls[0]["bearings"] == [None, None, None]
    assert store.path_strategy == Strategy.GENERAL_SINGLE_CALL


@pytest.mark.anyio
async def test_recalc_falls_back_sticky_general_hard() -> None:
    routing = FakeRouting()
    routing.sticky_error = RoutingError("sticky failed", status_code=503)
    routing.route_errors = [RoutingError("general failed", status_code=400), None]
    store = _filled(routing)
    sp = store.insert_shaping_point(1, B)
    store.begin_shaping_point_drag(sp.id, RoutePath(coordinates=[A, C]))

    path = await store.recalc()

    assert len(routing.sticky_calls) == 1
    assert routing.route_calls[0]["points"] == [A, B, C]
    assert routing.route_calls[0]["bypass_throttle"] is True
    assert routing.route_calls[1]["points"] == [A, C]
    assert routing.route_calls[1]["bypass_throttle"] is True
    assert path.coordinates == [A, C]
    assert store.state == PlannerState.hard_routed
    # Fallback is a routing decision only; the shaping point survives.
    assert [p.id for p in store.shaping_points] == [sp.id]
    assert store.active_drag is None


@pytest.mark.anyio
async def test_recalc_sticky_empty_geometry_falls_back_to_general() -> None:
    class EmptySticky(FakeRouting):
        async def compute_sticky_two_leg_route(self, *args, **kwargs) -> RoutePath:
            await super().compute_sticky_two_leg_route(*args, **kwargs)
            return RoutePath.empty()

    routing = EmptySticky()
    store = _filled(routing)
    sp = store.insert_shaping_point(1, B)
    store.begin_shaping_point_drag(sp.id, RoutePath(coordinates=[A, C]))

    await store.recalc()

    assert store.path_strategy == Strategy.GENERAL_SINGLE_CALL
    assert store.path.coordinates == [A, B, C]


@pytest.mark.anyio
async def test_hard_route_failure_sets_explicit_no_route() -> None:
    routing = FakeRouting()
    store = _filled(routing)
    await store.recalc()
    assert not store.path.is_empty

    store.update_waypoint_coord(store.waypoints[-1].id, D)
    routing.route_errors = [RoutingError("unroutable", status_code=404)]
    path = await store.recalc()

    assert path.is_empty
    assert store.path.is_empty
    assert store.state == PlannerState.empty


@pytest.mark.anyio
async def test_throttled_recalc_keeps_path_and_asks_for_a_retry() -> None:
    routing = FakeRouting()
    store = _filled(routing)
    await store.recalc()
    before = store.path

    sp = store.insert_shaping_point(1, B)
    store.begin_shaping_point_drag(sp.id, before)
    changes: list[StoreChange] = []
    store.subscribe(changes.append)
    routing.sticky_error = RoutingThrottledError("dropped", reason_code="routing_throttled")
    path = await store.recalc()

    assert path == before
    assert store.path == before
    assert routing.route_calls[1:] == []
    assert store.recompute_pending is True
    assert store.active_drag is not None
    assert [(c.reason, c.recompute) for c in changes] == [("recalc_throttled", True)]

    routing.sticky_error = None
    path = await store.recalc()

    assert len(routing.sticky_calls) == 2
    assert path.coordinates == [A, B, C]
    assert store.recompute_pending is False
    assert store.active_drag is None


def test_stale_recalc_results_are_discarded() -> None:
    class GatedRouting(FakeRouting):
        def __init__(self) -> None:
            super().__init__()
            self.gates: list[asyncio.Event] = []

        async def compute_route(self, points, radii, bearings=None, *, bypass_throttle=False) -> RoutePath:
            gate = asyncio.Event()
            self.gates.append(gate)
            await gate.wait()
            return await super().compute_route(points, radii, bearings, bypass_throttle=bypass_throttle)

    async def scenario() -> tuple[RouteStateStore, RoutePath]:
        routing = GatedRouting()
        store = _filled(routing)
        older = asyncio.create_task(store.recalc())
        await asyncio.sleep(0)
        store.update_waypoint_coord(store.waypoints[-1].id, D)
        newer = asyncio.create_task(store.recalc())
        await asyncio.sleep(0)

        routing.gates[1].set()
        await newer
        routing.gates[0].set()
        stale = await older
        return store, stale

    store, stale = asyncio.run(scenario())

    assert store.path.coordinates == [A, D]
    assert stale.coordinates == [A, D]
    assert store.generation == 2


@pytest.mark.anyio
async def test_force_reoptimize_drops_shaping_and_uses_hard_route() -> None:
    routing = FakeRouting()
    store = _filled(routing)
    store.insert_shaping_point(1, B)
    seen_flag: list[bool] = []

    original = routing.compute_route

    async def _spy(*args, **kwargs):
        seen_flag.append(store.is_calculating_global_route)
        return await original(*args, **kwargs)

    routing.compute_route = _spy  # type: ignore[method-assign]
    path = await store.force_reoptimize()

    assert store.shaping_points == []
    assert path.coordinates == [A, C]
    assert seen_flag == [True]
    assert store.is_calculating_global_route is False
    assert routing.route_calls[-1]["bypass_throttle"] is True


@pytest.mark.anyio
async def test_geocode_sets_label_from_reverse_lookup() -> None:
    geocoder = FakeGeocoder(reverse_result=Place(label="Broad Street, Birmingham", coord=A, kind="street"))
    store = _store(geocoder=geocoder)
    wp = store.add_or_update_endpoint_by_click(A)

    await store.geocode_waypoint(wp.id)

    assert wp.label == "Broad Street, Birmingham"
    assert wp.user_input == "Broad Street, Birmingham"
    assert wp.kind == "street"
    assert wp.is_geocoding is False
    assert geocoder.reverse_calls == [A]


@pytest.mark.anyio
async def test_geocode_not_found_and_failure_labels() -> None:
    geocoder = FakeGeocoder(reverse_result=None)
    store = _store(geocoder=geocoder)
    wp = store.add_or_update_endpoint_by_click(A)

    await store.geocode_waypoint(wp.id)
    assert wp.label == NOT_FOUND_LABEL

    geocoder.error = GeocodingError("upstream down")
    await store.geocode_waypoint(wp.id)
    assert wp.label == LOOKUP_FAILED_LABEL
    assert wp.is_geocoding is False
    # Labels never feed routing.
    assert wp.coord == A


@pytest.mark.anyio
async def test_geocode_skips_placeholders_and_unknown_ids() -> None:
    geocoder = FakeGeocoder(reverse_result=Place(label="x", coord=A))
    store = _store(geocoder=geocoder)

    await store.geocode_waypoint(store.waypoints[0].id)
    await store.geocode_waypoint("wp-404")

    assert geocoder.reverse_calls == []
    assert store.waypoints[0].label == START_PLACEHOLDER_LABEL


@pytest.mark.anyio
async def test_geocode_result_for_an_old_position_is_ignored() -> None:
    geocoder = FakeGeocoder(reverse_result=Place(label="Old place", coord=A))
    store = _store(geocoder=geocoder)
    wp = store.add_or_update_endpoint_by_click(A)
    geocoder.during_reverse = lambda: store.update_waypoint_coord(wp.id, D)

    await store.geocode_waypoint(wp.id)

    assert wp.coord == D
    assert wp.label == LOADING_LABEL


@pytest.mark.anyio
async def test_search_and_set_moves_waypoint_to_first_result() -> None:
    geocoder = FakeGeocoder(
        forward_result=[Place(label="Coventry", coord=D, kind="city"), Place(label="Other", coord=B)]
    )
    store = _filled(None, A, C, geocoder=geocoder)
    store.insert_shaping_point(1, B)
    changes: list[StoreChange] = []
    store.subscribe(changes.append)
    end = store.waypoints[-1]

    await store.search_and_set_waypoint_address(end.id, "coventry")

    assert end.coord == D
    assert end.label == "Coventry"
    assert end.kind == "city"
    assert end.is_geocoding is False
    assert store.shaping_points == []
    assert changes[-1].recompute is True
    assert geocoder.forward_calls == ["coventry"]


@pytest.mark.anyio
async def test_search_and_set_not_found_and_failure_leave_routing_untouched() -> None:
    geocoder = FakeGeocoder(forward_result=[])
    store = _filled(None, A, C, geocoder=geocoder)
    end = store.waypoints[-1]

    await store.search_and_set_waypoint_address(end.id, "nowhere")
    assert end.label == SEARCH_NOT_FOUND_LABEL
    assert end.coord == C
    assert end.user_input == "nowhere"

    geocoder.error = GeocodingError("boom")
    await store.search_and_set_waypoint_address(end.id, "anything")
    assert end.label == SEARCH_FAILED_LABEL
    assert end.coord == C
    assert end.is_geocoding is False


def test_subscribe_unsubscribe_and_failing_listener() -> None:
    store = _store()
    seen: list[str] = []

    def broken(change: StoreChange) -> None:
        raise RuntimeError("listener bug")

    store.subscribe(broken)
    unsubscribe = store.subscribe(lambda c: seen.append(c.reason))

    store.add_or_update_endpoint_by_click(A)
    unsubscribe()
    store.add_or_update_endpoint_by_click(C)

    assert seen == ["waypoint_clicked"]


def test_snapshot_is_json_ready() -> None:
    store = _filled()
    store.insert_shaping_point(1, B)

    snap = store.snapshot()

    assert snap["state"] == "empty"
    assert [w["role"] for w in snap["waypoints"]] == ["start", "end"]
    assert snap["shaping_points"][0]["anchor_index"] == 1
    assert snap["route"] == {"type": "FeatureCollection", "features": []}
    assert snap["active_drag"] is None
