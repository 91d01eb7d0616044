from __future__ import annotations

import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import UTC, datetime

from .coordinator import RecalcCoordinator
from .interaction import MapInteractionBridge
from .logging_utils import log_event
from .render import RouteRenderer
from .route_store import Geocoder, RouteStateStore, RoutingEngine
from .settings import settings


@dataclass
class PlannerSession:
    id: str
    store: RouteStateStore
    coordinator: RecalcCoordinator
    bridge: MapInteractionBridge
    renderer: RouteRenderer
    created_at: str = field(default_factory=lambda: datetime.now(UTC).isoformat())

    def to_dict(self) -> dict[str, object]:
        return {
            "session_id": self.id,
            "created_at": self.created_at,
            "map_panning_enabled": self.bridge.map_panning_enabled,
            "temp_marker": list(self.bridge.temp_marker) if self.bridge.temp_marker else None,
            **self.store.snapshot(),
        }

    async def aclose(self) -> None:
        self.renderer.close()
        await self.coordinator.aclose()


class SessionRegistry:
    """Planning sessions keyed by id, all sharing the process-wide engine clients.

    The oldest session is evicted once `max_sessions` is exceeded.
    """

    def __init__(
        self,
        routing: RoutingEngine,
        geocoder: Geocoder | None = None,
        *,
        max_sessions: int | None = None,
        debounce_s: float | None = None,
    ) -> None:
        self._routing = routing
        self._geocoder = geocoder
        self._max_sessions = max(1, int(max_sessions or settings.max_sessions))
        self._debounce_s = debounce_s
        self._sessions: OrderedDict[str, PlannerSession] = OrderedDict()

    def __len__(self) -> int:
        return len(self._sessions)

    async def create(self) -> PlannerSession:
        store = RouteStateStore(self._routing, self._geocoder)
        session = PlannerSession(
            id=uuid.uuid4().hex,
            store=store,
            coordinator=RecalcCoordinator(store, debounce_s=self._debounce_s),
            bridge=MapInteractionBridge(store),
            renderer=RouteRenderer(store),
        )
        self._sessions[session.id] = session
        log_event("session_created", session_id=session.id, session_count=len(self._sessions))

        while len(self._sessions) > self._max_sessions:
            _, evicted = self._sessions.popitem(last=False)
            await evicted.aclose()
            log_event("session_evicted", session_id=evicted.id)
        return session

    def get(self, session_id: str) -> PlannerSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise KeyError(session_id)
        return session

    async def delete(self, session_id: str) -> None:
        session = self._sessions.pop(session_id, None)
        if session is None:
            raise KeyError(session_id)
        await session.aclose()
        log_event("session_deleted", session_id=session_id)

    async def aclose(self) -> None:
        sessions = list(self._sessions.values())
        self._sessions.clear()
        for session in sessions:
            await session.aclose()
