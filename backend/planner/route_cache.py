from __future__ import annotations

import hashlib
import json
import time
from collections import OrderedDict
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Sequence

from .models import BearingConstraint, Coordinate, RoutePath
from .settings import settings


def route_request_key(
    *,
    profile: str,
    points: Sequence[Coordinate],
    radii: Sequence[float],
    bearings: Sequence[BearingConstraint | None],
) -> str:
    """Cache key for one engine request; `bearings` must already be filtered.

    The key is `<profile>:<sha1>` so entries can be dropped per profile.
    """
    body = {
        "points": [[round(float(lon), 7), round(float(lat), 7)] for lon, lat in points],
        "radii": [round(float(r), 3) for r in radii],
        "bearings": [b.as_pair() if b is not None else None for b in bearings],
    }
    digest = hashlib.sha1(
        json.dumps(body, sort_keys=True, separators=(",", ":")).encode("utf-8")
    ).hexdigest()
    return f"{profile}:{digest}"


@dataclass
class _CachedPath:
    expires_at: float
    path: RoutePath


class RouteCacheStore:
    """Normalized routing results, bounded by size (LRU) and age (TTL).

    Paths are copied on the way in and out so callers can never mutate a
    cached geometry.
    """

    def __init__(
        self,
        *,
        ttl_s: int,
        max_entries: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_s = max(1, int(ttl_s))
        self.max_entries = max(1, int(max_entries))
        self._clock = clock
        self._lock = Lock()
        self._entries: OrderedDict[str, _CachedPath] = OrderedDict()
        self._counters = {"hits": 0, "misses": 0, "evictions": 0, "expirations": 0}

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        """Live-entry check that leaves hit/miss counters and LRU order alone."""
        with self._lock:
            entry = self._entries.get(key)
            return entry is not None and entry.expires_at > self._clock()

    def get(self, key: str) -> RoutePath | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry.expires_at <= self._clock():
                del self._entries[key]
                self._counters["expirations"] += 1
                entry = None
            if entry is None:
                self._counters["misses"] += 1
                return None
            self._entries.move_to_end(key)
            self._counters["hits"] += 1
            return entry.path.model_copy(deep=True)

    def set(self, key: str, path: RoutePath) -> None:
        entry = _CachedPath(expires_at=self._clock() + self.ttl_s, path=path.model_copy(deep=True))
        with self._lock:
            self._entries[key] = entry
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)
                self._counters["evictions"] += 1

    def clear(self, *, profile: str | None = None) -> int:
        """Drop every entry, or only those of `profile`; returns how many went."""
        with self._lock:
            if profile is None:
                dropped = len(self._entries)
                self._entries.clear()
                return dropped
            prefix = f"{profile}:"
            doomed = [key for key in self._entries if key.startswith(prefix)]
            for key in doomed:
                del self._entries[key]
            return len(doomed)

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return {
                "size": len(self._entries),
                **self._counters,
                "ttl_s": self.ttl_s,
                "max_entries": self.max_entries,
            }


ROUTE_CACHE = RouteCacheStore(
    ttl_s=settings.route_cache_ttl_s,
    max_entries=settings.route_cache_max_entries,
)


def clear_route_cache(profile: str | None = None) -> int:
    return ROUTE_CACHE.clear(profile=profile)


def route_cache_stats() -> dict[str, int]:
    return ROUTE_CACHE.snapshot()
