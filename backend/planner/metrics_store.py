from __future__ import annotations

import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from threading import Lock
from typing import Iterator


@dataclass
class CallStats:
    calls: int = 0
    errors: int = 0
    total_ms: float = 0.0
    max_ms: float = 0.0
    last_error: str | None = None
    last_called_at: str | None = None

    def as_dict(self) -> dict[str, float | int | str | None]:
        return {
            "request_count": self.calls,
            "error_count": self.errors,
            "error_rate": round(self.errors / self.calls, 4) if self.calls else 0.0,
            "total_duration_ms": round(self.total_ms, 3),
            "avg_duration_ms": round(self.total_ms / self.calls, 3) if self.calls else 0.0,
            "max_duration_ms": round(self.max_ms, 3),
            "last_error": self.last_error,
            "last_called_at": self.last_called_at,
        }


class MetricsStore:
    """Call counters keyed by dotted name: `api.<endpoint>`, `ors.directions`, `geocoder.<op>`."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._created_at = datetime.now(UTC).isoformat()
        self._stats: dict[str, CallStats] = {}

    def record(
        self,
        name: str,
        *,
        duration_ms: float,
        error: bool = False,
        error_detail: str | None = None,
    ) -> None:
        key = name.strip() or "unknown"
        d_ms = max(float(duration_ms), 0.0)
        now = datetime.now(UTC).isoformat()

        with self._lock:
            stats = self._stats.get(key)
            if stats is None:
                stats = self._stats[key] = CallStats()
            stats.calls += 1
            stats.total_ms += d_ms
            stats.max_ms = max(stats.max_ms, d_ms)
            stats.last_called_at = now
            if error:
                stats.errors += 1
                stats.last_error = error_detail

    def snapshot(self) -> dict[str, object]:
        with self._lock:
            calls = {name: self._stats[name].as_dict() for name in sorted(self._stats)}
            return {
                "created_at": self._created_at,
                "total_requests": sum(s.calls for s in self._stats.values()),
                "total_errors": sum(s.errors for s in self._stats.values()),
                "call_count": len(calls),
                "calls": calls,
            }

    def reset(self) -> None:
        with self._lock:
            self._created_at = datetime.now(UTC).isoformat()
            self._stats.clear()


METRICS = MetricsStore()


def record_call(
    name: str,
    *,
    duration_ms: float,
    error: bool = False,
    error_detail: str | None = None,
) -> None:
    METRICS.record(name, duration_ms=duration_ms, error=error, error_detail=error_detail)


@contextmanager
def timed_call(name: str) -> Iterator[None]:
    """Record one call of `name`; an exception escaping the block counts as an error."""
    t0 = time.perf_counter()
    try:
        yield
    except Exception as e:
        record_call(
            name,
            duration_ms=(time.perf_counter() - t0) * 1000.0,
            error=True,
            error_detail=type(e).__name__,
        )
        raise
    record_call(name, duration_ms=(time.perf_counter() - t0) * 1000.0)


def metrics_snapshot() -> dict[str, object]:
    return METRICS.snapshot()


def reset_metrics() -> None:
    METRICS.reset()
