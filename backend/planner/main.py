from __future__ import annotations

import time
import uuid
from contextlib import asynccontextmanager
from typing import Annotated, Any

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware

from .geocoding import GeocodingClient
from .logging_utils import log_context, log_event
from .metrics_store import metrics_snapshot, record_call
from .models import (
    AddressSearchRequest,
    CoordUpdateRequest,
    MapClickRequest,
    Place,
    PlaceListResponse,
    PlaceRequest,
    PointerReleaseRequest,
    PointerRequest,
    SegmentPressRequest,
)
from .render import RenderSnapshot
from .route_cache import clear_route_cache, route_cache_stats
from .routing_errors import GeocodingError
from .routing_ors import ORSClient
from .sessions import PlannerSession, SessionRegistry
from .settings import settings


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.routing = ORSClient(
        base_url=settings.ors_base_url,
        api_key=settings.ors_api_key,
        profile=settings.ors_profile,
    )
    app.state.geocoder = GeocodingClient(
        base_url=settings.geocoder_base_url,
        api_key=settings.maptiler_api_key,
    )
    app.state.sessions = SessionRegistry(app.state.routing, app.state.geocoder)
    yield
    await app.state.sessions.aclose()
    await app.state.geocoder.aclose()
    await app.state.routing.aclose()


app = FastAPI(title="Interactive Route Planner", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def record_endpoint_metrics(request: Request, call_next):
    request_id = request.headers.get("x-request-id") or uuid.uuid4().hex[:16]
    with log_context(request_id=request_id):
        t0 = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - t0) * 1000.0
        route = request.scope.get("route")
        endpoint = getattr(route, "name", None) or "unmatched"
        record_call(f"api.{endpoint}", duration_ms=duration_ms, error=response.status_code >= 500)
        log_event(
            "api_request",
            endpoint=endpoint,
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=round(duration_ms, 2),
        )
    response.headers["x-request-id"] = request_id
    return response


def session_registry(request: Request) -> SessionRegistry:
    registry: SessionRegistry | None = getattr(request.app.state, "sessions", None)  # type: ignore[attr-defined]
    if registry is None:
        raise HTTPException(status_code=503, detail="session registry not initialised")
    return registry


def geocoder_client(request: Request) -> GeocodingClient:
    geocoder: GeocodingClient | None = getattr(request.app.state, "geocoder", None)  # type: ignore[attr-defined]
    if geocoder is None:
        raise HTTPException(status_code=503, detail="geocoding client not initialised")
    return geocoder


RegistryDep = Annotated[SessionRegistry, Depends(session_registry)]
GeocoderDep = Annotated[GeocodingClient, Depends(geocoder_client)]


def _session(registry: SessionRegistry, session_id: str) -> PlannerSession:
    try:
        return registry.get(session_id)
    except KeyError as e:
        raise HTTPException(status_code=404, detail=f"unknown session: {session_id}") from e


async def _settled(session: PlannerSession) -> dict[str, Any]:
    # Apply the debounced recompute now so the response carries the new path.
    await session.coordinator.flush()
    return session.to_dict()


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/metrics")
async def metrics() -> dict[str, object]:
    return metrics_snapshot()


@app.get("/cache/stats")
async def cache_stats() -> dict[str, int]:
    return route_cache_stats()


@app.delete("/cache")
async def cache_clear(profile: str | None = None) -> dict[str, int]:
    return {"cleared": clear_route_cache(profile)}


# --- sessions ---------------------------------------------------------------


@app.post("/sessions", status_code=201)
async def create_session(registry: RegistryDep) -> dict[str, Any]:
    session = await registry.create()
    return session.to_dict()


@app.get("/sessions/{session_id}")
async def get_session(session_id: str, registry: RegistryDep) -> dict[str, Any]:
    return _session(registry, session_id).to_dict()


@app.delete("/sessions/{session_id}")
async def delete_session(session_id: str, registry: RegistryDep) -> dict[str, str]:
    try:
        await registry.delete(session_id)
    except KeyError as e:
        raise HTTPException(status_code=404, detail=f"unknown session: {session_id}") from e
    return {"deleted": session_id}


@app.get("/sessions/{session_id}/render", response_model=RenderSnapshot)
async def get_render(session_id: str, registry: RegistryDep) -> RenderSnapshot:
    return _session(registry, session_id).renderer.snapshot


# --- hard waypoints ---------------------------------------------------------


@app.post("/sessions/{session_id}/click")
async def map_click(session_id: str, req: MapClickRequest, registry: RegistryDep) -> dict[str, Any]:
    session = _session(registry, session_id)
    session.bridge.on_map_click(req.coord.as_coord(), req.hit_segment_index)
    return await _settled(session)


@app.post("/sessions/{session_id}/places")
async def add_place(session_id: str, req: PlaceRequest, registry: RegistryDep) -> dict[str, Any]:
    session = _session(registry, session_id)
    session.store.add_place_as_waypoint(Place(label=req.label, coord=req.coord.as_coord(), kind=req.kind))
    return await _settled(session)


@app.post("/sessions/{session_id}/waypoints/intermediate")
async def add_intermediate_stop(session_id: str, registry: RegistryDep) -> dict[str, Any]:
    session = _session(registry, session_id)
    session.store.add_intermediate_stop()
    return await _settled(session)


@app.patch("/sessions/{session_id}/waypoints/{waypoint_id}")
async def move_waypoint(
    session_id: str,
    waypoint_id: str,
    req: CoordUpdateRequest,
    registry: RegistryDep,
) -> dict[str, Any]:
    session = _session(registry, session_id)
    try:
        session.bridge.on_waypoint_drag_end(waypoint_id, req.coord.as_coord())
    except KeyError as e:
        raise HTTPException(status_code=404, detail=f"unknown waypoint: {waypoint_id}") from e
    return await _settled(session)


@app.post("/sessions/{session_id}/waypoints/{waypoint_id}/search")
async def search_waypoint_address(
    session_id: str,
    waypoint_id: str,
    req: AddressSearchRequest,
    registry: RegistryDep,
) -> dict[str, Any]:
    session = _session(registry, session_id)
    try:
        await session.store.search_and_set_waypoint_address(waypoint_id, req.query)
    except KeyError as e:
        raise HTTPException(status_code=404, detail=f"unknown waypoint: {waypoint_id}") from e
    return await _settled(session)


@app.delete("/sessions/{session_id}/waypoints/{waypoint_id}")
async def remove_waypoint(session_id: str, waypoint_id: str, registry: RegistryDep) -> dict[str, Any]:
    session = _session(registry, session_id)
    try:
        session.store.remove_waypoint(waypoint_id)
    except KeyError as e:
        raise HTTPException(status_code=404, detail=f"unknown waypoint: {waypoint_id}") from e
    return await _settled(session)


# --- shaping gesture and shaping points -------------------------------------


@app.post("/sessions/{session_id}/segment-drag/press")
async def segment_press(session_id: str, req: SegmentPressRequest, registry: RegistryDep) -> dict[str, Any]:
    session = _session(registry, session_id)
    accepted = session.bridge.on_segment_press(req.segment_index, req.coord.as_coord())
    return {"accepted": accepted, **session.to_dict()}


@app.post("/sessions/{session_id}/segment-drag/move")
async def segment_move(session_id: str, req: PointerRequest, registry: RegistryDep) -> dict[str, Any]:
    session = _session(registry, session_id)
    session.bridge.on_pointer_move(req.coord.as_coord())
    return session.to_dict()


@app.post("/sessions/{session_id}/segment-drag/release")
async def segment_release(
    session_id: str,
    req: PointerReleaseRequest,
    registry: RegistryDep,
) -> dict[str, Any]:
    session = _session(registry, session_id)
    try:
        session.bridge.on_pointer_release(req.coord.as_coord(), req.zoom)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e
    return await _settled(session)


@app.post("/sessions/{session_id}/shaping/{shaping_id}/drag-start")
async def shaping_drag_start(session_id: str, shaping_id: str, registry: RegistryDep) -> dict[str, Any]:
    session = _session(registry, session_id)
    try:
        session.bridge.on_shaping_drag_start(shaping_id)
    except KeyError as e:
        raise HTTPException(status_code=404, detail=f"unknown shaping point: {shaping_id}") from e
    return session.to_dict()


@app.post("/sessions/{session_id}/shaping/{shaping_id}/drag-end")
async def shaping_drag_end(
    session_id: str,
    shaping_id: str,
    req: PointerReleaseRequest,
    registry: RegistryDep,
) -> dict[str, Any]:
    session = _session(registry, session_id)
    try:
        session.bridge.on_shaping_drag_end(shaping_id, req.coord.as_coord(), req.zoom)
    except KeyError as e:
        raise HTTPException(status_code=404, detail=f"unknown shaping point: {shaping_id}") from e
    return await _settled(session)


@app.delete("/sessions/{session_id}/shaping/{shaping_id}")
async def remove_shaping_point(session_id: str, shaping_id: str, registry: RegistryDep) -> dict[str, Any]:
    session = _session(registry, session_id)
    try:
        session.store.remove_shaping_point(shaping_id)
    except KeyError as e:
        raise HTTPException(status_code=404, detail=f"unknown shaping point: {shaping_id}") from e
    return await _settled(session)


@app.delete("/sessions/{session_id}/shaping")
async def clear_shaping(session_id: str, registry: RegistryDep) -> dict[str, Any]:
    session = _session(registry, session_id)
    session.store.clear_shaping()
    return await _settled(session)


# --- recomputation ----------------------------------------------------------


@app.post("/sessions/{session_id}/recalc")
async def recalc(session_id: str, registry: RegistryDep) -> dict[str, Any]:
    session = _session(registry, session_id)
    await session.coordinator.flush()
    await session.store.recalc(bypass_throttle=True)
    return session.to_dict()


@app.post("/sessions/{session_id}/optimize")
async def optimize(session_id: str, registry: RegistryDep) -> dict[str, Any]:
    session = _session(registry, session_id)
    await session.coordinator.flush()
    await session.store.force_reoptimize()
    return await _settled(session)


# --- geocoding --------------------------------------------------------------


@app.get("/geocode/search", response_model=PlaceListResponse)
async def geocode_search(
    geocoder: GeocoderDep,
    q: Annotated[str, Query(min_length=1, max_length=256)],
    limit: Annotated[int, Query(ge=1, le=10)] = 5,
) -> PlaceListResponse:
    try:
        places = await geocoder.forward(q, limit=limit)
    except GeocodingError as e:
        raise HTTPException(status_code=502, detail=str(e)) from e
    return PlaceListResponse(places=places)
