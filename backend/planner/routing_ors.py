from __future__ import annotations

import asyncio
import math
import time
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, Final, Sequence

import httpx

from .logging_utils import log_event
from .metrics_store import record_call
from .models import BearingConstraint, Coordinate, RoutePath, is_placeholder
from .route_cache import ROUTE_CACHE, RouteCacheStore, route_request_key
from .routing_errors import RoutingError, RoutingRetryableError, RoutingThrottledError
from .settings import settings

_DEFAULT_RETRYABLE_STATUS: Final[frozenset[int]] = frozenset({429, 502, 503, 504})


def _retryable_status_codes() -> frozenset[int]:
    raw = str(settings.routing_retryable_status_codes or "").strip()
    if not raw:
        return _DEFAULT_RETRYABLE_STATUS
    parsed: set[int] = set()
    for token in raw.split(","):
        part = token.strip()
        if not part:
            continue
        try:
            code = int(part)
        except ValueError:
            continue
        if 100 <= code <= 599:
            parsed.add(code)
    return frozenset(parsed) or _DEFAULT_RETRYABLE_STATUS


def _parse_retry_after_s(headers: httpx.Headers) -> float | None:
    value = headers.get("retry-after")
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    try:
        seconds = float(text)
        if math.isfinite(seconds) and seconds >= 0.0:
            return seconds
        return None
    except ValueError:
        pass
    try:
        parsed = parsedate_to_datetime(text)
    except (TypeError, ValueError, IndexError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return max(0.0, (parsed.astimezone(UTC) - datetime.now(UTC)).total_seconds())


def _format_ors_error(resp: httpx.Response) -> str:
    """Best-effort decode of openrouteservice JSON error payloads."""
    try:
        data = resp.json()
    except ValueError:
        data = None
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict):
            code = err.get("code")
            message = err.get("message")
            if code is not None and message:
                return f"ORS {resp.status_code} {code}: {message}"
            if message:
                return f"ORS {resp.status_code}: {message}"
        elif isinstance(err, str) and err:
            return f"ORS {resp.status_code}: {err}"
        message = data.get("message")
        if message:
            return f"ORS {resp.status_code}: {message}"

    body = (resp.text or "").strip().replace("\n", " ")
    if len(body) > 240:
        body = body[:240] + "..."
    if body:
        return f"ORS {resp.status_code}: {body}"
    return f"ORS HTTP {resp.status_code}"


def _coerce_line(coords: Any) -> list[Coordinate]:
    out: list[Coordinate] = []
    if not isinstance(coords, list):
        return out
    for pt in coords:
        # ORS appends elevation as a third value when requested.
        if (
            isinstance(pt, (list, tuple))
            and len(pt) >= 2
            and isinstance(pt[0], (int, float))
            and isinstance(pt[1], (int, float))
        ):
            out.append((float(pt[0]), float(pt[1])))
    return out


def _summary_values(summary: Any) -> tuple[float, float]:
    if not isinstance(summary, dict):
        return 0.0, 0.0
    return float(summary.get("distance") or 0.0), float(summary.get("duration") or 0.0)


def normalize_route_response(data: Any) -> RoutePath:
    """Normalize the accepted engine response shapes into one RoutePath.

    Accepted: a GeoJSON FeatureCollection whose first LineString feature holds
    the route, or the legacy `routes[0]` shape with a GeoJSON geometry. An empty
    feature list is "no route", not an error.
    """
    if not isinstance(data, dict):
        raise RoutingError("Routing engine returned a non-object body", reason_code="routing_bad_response")

    if data.get("type") == "FeatureCollection":
        features = data.get("features")
        if not isinstance(features, list):
            raise RoutingError("FeatureCollection without features", reason_code="routing_bad_response")
        for feature in features:
            if not isinstance(feature, dict):
                continue
            geometry = feature.get("geometry") or {}
            if geometry.get("type") != "LineString":
                continue
            coords = _coerce_line(geometry.get("coordinates"))
            if len(coords) < 2:
                return RoutePath.empty()
            properties = feature.get("properties") or {}
            distance_m, duration_s = _summary_values(properties.get("summary"))
            return RoutePath(coordinates=coords, distance_m=distance_m, duration_s=duration_s)
        return RoutePath.empty()

    routes = data.get("routes")
    if isinstance(routes, list):
        if not routes or not isinstance(routes[0], dict):
            return RoutePath.empty()
        route = routes[0]
        geometry = route.get("geometry")
        if not isinstance(geometry, dict):
            raise RoutingError(
                "Legacy route shape without GeoJSON geometry",
                reason_code="routing_bad_response",
            )
        coords = _coerce_line(geometry.get("coordinates"))
        if len(coords) < 2:
            return RoutePath.empty()
        distance_m, duration_s = _summary_values(route.get("summary"))
        return RoutePath(coordinates=coords, distance_m=distance_m, duration_s=duration_s)

    raise RoutingError("Unrecognized routing response shape", reason_code="routing_bad_response")


def filter_engine_bearings(
    bearings: Sequence[BearingConstraint | None],
) -> tuple[list[BearingConstraint | None], list[int]]:
    """Keep bearings only at the first and last position; return (filtered, dropped indices)."""
    last = len(bearings) - 1
    filtered: list[BearingConstraint | None] = []
    dropped: list[int] = []
    for idx, bearing in enumerate(bearings):
        if bearing is not None and idx not in (0, last):
            dropped.append(idx)
            filtered.append(None)
        else:
            filtered.append(bearing)
    return filtered, dropped


def merge_legs(legs: Sequence[RoutePath]) -> RoutePath:
    """Concatenate consecutive legs that share their joining point."""
    merged: list[Coordinate] = []
    distance_m = 0.0
    duration_s = 0.0
    for index, leg in enumerate(legs):
        if leg.is_empty:
            raise RoutingError(f"Leg {index} returned no geometry", reason_code="routing_leg_empty")
        merged.extend(leg.coordinates if index == 0 else leg.coordinates[1:])
        distance_m += float(leg.distance_m)
        duration_s += float(leg.duration_s)
    return RoutePath(coordinates=merged, distance_m=distance_m, duration_s=duration_s)


class LeadingEdgeThrottle:
    """Admit the first call of a burst; drop (never queue) calls inside the window."""

    def __init__(self, window_s: float, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.window_s = max(0.0, float(window_s))
        self._clock = clock
        self._last_admitted: float | None = None

    def try_acquire(self) -> bool:
        if self.window_s <= 0.0:
            return True
        now = self._clock()
        if self._last_admitted is not None and (now - self._last_admitted) < self.window_s:
            return False
        self._last_admitted = now
        return True


class ORSClient:
    def __init__(
        self,
        *,
        base_url: str,
        api_key: str = "",
        profile: str = "cycling-road",
        preference: str | None = None,
        elevation: bool | None = None,
        cache: RouteCacheStore | None = None,
        throttle: LeadingEdgeThrottle | None = None,
        max_attempts: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.profile = profile
        self.preference = preference if preference is not None else settings.ors_preference
        self.elevation = settings.ors_elevation if elevation is None else bool(elevation)
        self.max_attempts = max(1, int(max_attempts or settings.routing_max_attempts))
        self._cache = cache if cache is not None else ROUTE_CACHE
        self._throttle = throttle or LeadingEdgeThrottle(settings.routing_throttle_window_ms / 1000.0)
        self._url = f"{self.base_url}/v2/directions/{self.profile}/geojson"
        self._sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep

        headers = {
            "accept": "application/json, application/geo+json",
            "content-type": "application/json",
        }
        if api_key:
            headers["authorization"] = api_key
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(settings.routing_request_timeout_s, connect=5.0),
            headers=headers,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    def _cache_key(
        self,
        points: Sequence[Coordinate],
        radii: Sequence[float],
        bearings: Sequence[BearingConstraint | None],
    ) -> str:
        filtered, _ = filter_engine_bearings(bearings)
        return route_request_key(profile=self.profile, points=points, radii=radii, bearings=filtered)

    def _backoff_s(self, attempt: int) -> float:
        base_ms = max(0, int(settings.routing_retry_backoff_base_ms))
        max_ms = max(base_ms, int(settings.routing_retry_backoff_max_ms))
        return min(max_ms, base_ms * (2 ** (max(1, attempt) - 1))) / 1000.0

    def build_payload(
        self,
        points: Sequence[Coordinate],
        radii: Sequence[float],
        bearings: Sequence[BearingConstraint | None] | None,
    ) -> dict[str, Any]:
        """Engine-facing request body, with interior bearings already dropped."""
        payload: dict[str, Any] = {
            "coordinates": [[float(lon), float(lat)] for lon, lat in points],
            "radiuses": [float(r) for r in radii],
            "instructions": False,
            "elevation": self.elevation,
        }
        if self.preference:
            payload["preference"] = self.preference
        if bearings is not None and any(b is not None for b in bearings):
            filtered, _ = filter_engine_bearings(bearings)
            payload["bearings"] = [b.as_pair() if b is not None else None for b in filtered]
        return payload

    async def compute_route(
        self,
        points: Sequence[Coordinate],
        radii: Sequence[float],
        bearings: Sequence[BearingConstraint | None] | None = None,
        *,
        bypass_throttle: bool = False,
    ) -> RoutePath:
        if bearings is None:
            bearings = [None] * len(points)
        if len(points) < 2:
            raise ValueError("compute_route needs at least two points")
        if not (len(points) == len(radii) == len(bearings)):
            raise ValueError("points, radii and bearings must have the same length")
        if any(is_placeholder(p) for p in points):
            raise ValueError("placeholder coordinate (0, 0) cannot be routed")

        filtered, dropped = filter_engine_bearings(bearings)
        if dropped:
            log_event("routing_interior_bearing_dropped", indices=dropped, point_count=len(points))

        key = self._cache_key(points, radii, filtered)
        cached = self._cache.get(key)
        if cached is not None:
            log_event("routing_cache_hit", point_count=len(points))
            return cached

        if not bypass_throttle and not self._throttle.try_acquire():
            log_event("routing_throttled", point_count=len(points))
            raise RoutingThrottledError(
                "Routing call dropped by client-side throttle",
                reason_code="routing_throttled",
            )

        data = await self._post_with_retry(self.build_payload(points, radii, bearings))
        path = normalize_route_response(data)
        if not path.is_empty:
            self._cache.set(key, path)
        return path

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
    ) -> RoutePath:
        """Route start -> shape point -> end as two legs pinned to the same bearing.

        Leg A arrives at the shape point with `shape_bearing`; leg B departs from
        it with the same bearing. The pair consumes one throttle slot unless
        both legs are already cached.
        """
        legs_cached = (
            self._cache_key([start, shape_point], [start_radius, shape_radius], [None, shape_bearing]) in self._cache
            and self._cache_key([shape_point, end], [shape_radius, end_radius], [shape_bearing, None]) in self._cache
        )
        if not bypass_throttle and not legs_cached and not self._throttle.try_acquire():
            log_event("routing_throttled", point_count=3, strategy="sticky_two_leg")
            raise RoutingThrottledError(
                "Routing call dropped by client-side throttle",
                reason_code="routing_throttled",
            )

        leg_a = await self.compute_route(
            [start, shape_point],
            [start_radius, shape_radius],
            [None, shape_bearing],
            bypass_throttle=True,
        )
        leg_b = await self.compute_route(
            [shape_point, end],
            [shape_radius, end_radius],
            [shape_bearing, None],
            bypass_throttle=True,
        )
        return merge_legs([leg_a, leg_b])

    async def _post_with_retry(self, payload: dict[str, Any]) -> dict[str, Any]:
        retryable = _retryable_status_codes()
        last_err: Exception | None = None

        for attempt in range(1, self.max_attempts + 1):
            t0 = time.perf_counter()
            retry_after_s: float | None = None
            try:
                resp = await self._client.post(self._url, json=payload)
                status = resp.status_code

                if status in retryable:
                    if status == 429:
                        retry_after_s = _parse_retry_after_s(resp.headers)
                    raise RoutingRetryableError(
                        _format_ors_error(resp),
                        status_code=status,
                        reason_code="routing_rate_limited" if status == 429 else "routing_upstream_error",
                    )

                # Fast-fail on everything else: request errors (bad param,
                # unroutable point, ...) will not succeed on a retry.
                if status >= 400:
                    raise RoutingError(_format_ors_error(resp), status_code=status)

                try:
                    data = resp.json()
                except ValueError as e:
                    raise RoutingError(
                        "Routing engine returned invalid JSON",
                        status_code=status,
                        reason_code="routing_bad_response",
                    ) from e

                duration_ms = (time.perf_counter() - t0) * 1000.0
                record_call("ors.directions", duration_ms=duration_ms)
                log_event(
                    "routing_request",
                    attempt=attempt,
                    status_code=status,
                    point_count=len(payload.get("coordinates", [])),
                    duration_ms=round(duration_ms, 2),
                )
                return data

            except RoutingRetryableError as e:
                last_err = e
            except (httpx.TimeoutException, httpx.TransportError) as e:
                last_err = e
            except RoutingError as e:
                record_call(
                    "ors.directions",
                    duration_ms=(time.perf_counter() - t0) * 1000.0,
                    error=True,
                    error_detail=e.reason_code,
                )
                log_event("routing_failed", status_code=e.status_code, detail=e.message, attempt=attempt)
                raise

            record_call(
                "ors.directions",
                duration_ms=(time.perf_counter() - t0) * 1000.0,
                error=True,
                error_detail=type(last_err).__name__,
            )
            if attempt >= self.max_attempts:
                break

            if retry_after_s is not None:
                wait_s = min(retry_after_s, max(0.0, float(settings.routing_retry_after_max_s)))
            else:
                wait_s = self._backoff_s(attempt)
            log_event(
                "routing_retry",
                attempt=attempt,
                wait_s=round(wait_s, 3),
                honoured_retry_after=retry_after_s is not None,
                error=type(last_err).__name__,
            )
            await self._sleep(wait_s)

        # httpx exceptions can stringify to "" (e.g. some timeouts), so include the type.
        if last_err is None:
            detail = "unknown error"
        else:
            msg = str(last_err).strip()
            detail = f"{type(last_err).__name__}: {msg}" if msg else f"{type(last_err).__name__}: {last_err!r}"
        status_code = last_err.status_code if isinstance(last_err, RoutingError) else None
        log_event("routing_failed", status_code=status_code, detail=detail, attempt=self.max_attempts)
        raise RoutingError(
            f"Routing request failed after {self.max_attempts} attempts (base={self.base_url}): {detail}",
            status_code=status_code,
            reason_code="routing_retries_exhausted",
        )
