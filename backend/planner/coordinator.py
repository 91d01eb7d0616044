from __future__ import annotations

import asyncio
import logging
from typing import Any, Coroutine

from .logging_utils import log_event
from .route_store import RouteStateStore, StoreChange
from .settings import settings


class RecalcCoordinator:
    """Debounce store changes into `recalc` calls and run label lookups.

    A recompute request (re)arms a timer; `recalc` runs once the store has been
    quiet for `debounce_s`. Geocode requests start immediately. Without a
    running event loop, work is queued until `flush()`.
    """

    def __init__(self, store: RouteStateStore, *, debounce_s: float | None = None) -> None:
        self._store = store
        self.debounce_s = max(
            0.0,
            float(settings.recalc_debounce_ms / 1000.0 if debounce_s is None else debounce_s),
        )
        self._timer: asyncio.TimerHandle | None = None
        self._dirty = False
        self._queued_geocodes: list[str] = []
        self._tasks: set[asyncio.Task[Any]] = set()
        self._unsubscribe = store.subscribe(self._on_change)
        self._closed = False

    @property
    def pending(self) -> bool:
        return self._dirty or bool(self._queued_geocodes) or bool(self._tasks)

    def _on_change(self, change: StoreChange) -> None:
        if self._closed:
            return
        for waypoint_id in change.geocode_ids:
            self._start_geocode(waypoint_id)
        if change.recompute:
            self._dirty = True
            self._arm()

    def _arm(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._timer = loop.call_later(self.debounce_s, self._fire)

    def _fire(self) -> None:
        self._timer = None
        if not self._dirty or self._closed:
            return
        self._dirty = False
        self._spawn(self._store.recalc, "recalc")

    def _start_geocode(self, waypoint_id: str) -> None:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            self._queued_geocodes.append(waypoint_id)
            return
        self._spawn(lambda: self._store.geocode_waypoint(waypoint_id), "geocode")

    def _spawn(self, factory: Any, kind: str) -> None:
        coro: Coroutine[Any, Any, Any] = factory()
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(lambda t: self._task_done(t, kind))

    def _task_done(self, task: asyncio.Task[Any], kind: str) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        err = task.exception()
        if err is not None:
            log_event(
                "coordinator_task_failed",
                level=logging.ERROR,
                kind=kind,
                error=f"{type(err).__name__}: {err}",
            )

    async def flush(self) -> None:
        """Run pending work now and wait until the store has settled."""
        while True:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

            queued, self._queued_geocodes = self._queued_geocodes, []
            for waypoint_id in queued:
                self._start_geocode(waypoint_id)

            if self._dirty:
                self._dirty = False
                await self._store.recalc(bypass_throttle=True)

            if self._tasks:
                await asyncio.gather(*list(self._tasks), return_exceptions=True)
                continue
            if not self._dirty and not self._queued_geocodes:
                return

    async def aclose(self) -> None:
        self._closed = True
        self._unsubscribe()
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._dirty = False
        self._queued_geocodes.clear()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
