from __future__ import annotations

from typing import Any
from urllib.parse import quote

import httpx

from .logging_utils import log_event
from .metrics_store import timed_call
from .models import Coordinate, Place
from .routing_errors import GeocodingError
from .settings import settings


def _place_from_feature(feature: Any) -> Place | None:
    if not isinstance(feature, dict):
        return None
    center = feature.get("center")
    if not (
        isinstance(center, (list, tuple))
        and len(center) >= 2
        and isinstance(center[0], (int, float))
        and isinstance(center[1], (int, float))
    ):
        geometry = feature.get("geometry") or {}
        center = geometry.get("coordinates") if geometry.get("type") == "Point" else None
        if not isinstance(center, (list, tuple)) or len(center) < 2:
            return None
    label = str(feature.get("place_name") or feature.get("text") or "").strip()
    if not label:
        return None
    place_types = feature.get("place_type")
    kind = str(place_types[0]) if isinstance(place_types, list) and place_types else "address"
    return Place(label=label, coord=(float(center[0]), float(center[1])), kind=kind)


class GeocodingClient:
    """Forward and reverse lookups against a MapTiler-compatible geocoding API."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str = "",
        language: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.language = language if language is not None else settings.geocoder_language
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(settings.geocoder_timeout_s, connect=5.0),
            headers={"accept": "application/json"},
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _get_features(self, path: str, params: dict[str, str], *, op: str) -> list[Any]:
        query = dict(params)
        if self.api_key:
            query["key"] = self.api_key
        if self.language:
            query["language"] = self.language

        try:
            with timed_call(f"geocoder.{op}"):
                resp = await self._client.get(f"{self.base_url}{path}", params=query)
                resp.raise_for_status()
                data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            log_event("geocode_failed", op=op, error=type(e).__name__)
            raise GeocodingError(f"{op} geocoding failed: {type(e).__name__}") from e

        features = data.get("features") if isinstance(data, dict) else None
        if not isinstance(features, list):
            raise GeocodingError(f"{op} geocoding returned no feature list")
        return features

    async def reverse(self, coord: Coordinate) -> Place | None:
        lon, lat = coord
        features = await self._get_features(
            f"/geocoding/{lon:.6f},{lat:.6f}.json",
            {"limit": "1"},
            op="reverse",
        )
        for feature in features:
            place = _place_from_feature(feature)
            if place is not None:
                return place
        return None

    async def forward(
        self,
        query: str,
        *,
        limit: int = 5,
        proximity: Coordinate | None = None,
    ) -> list[Place]:
        text = query.strip()
        if not text:
            return []
        params = {"limit": str(max(1, int(limit)))}
        if proximity is not None:
            params["proximity"] = f"{proximity[0]:.6f},{proximity[1]:.6f}"
        features = await self._get_features(
            f"/geocoding/{quote(text, safe='')}.json",
            params,
            op="forward",
        )
        places = [_place_from_feature(feature) for feature in features]
        return [place for place in places if place is not None]
