from __future__ import annotations

from dataclasses import dataclass
from typing import Any

FROZEN_REASON_CODES: frozenset[str] = frozenset(
    {
        "routing_upstream_error",
        "routing_rate_limited",
        "routing_retries_exhausted",
        "routing_bad_response",
        "routing_leg_empty",
        "routing_throttled",
        "routing_invalid_request",
    }
)


def normalize_reason_code(reason_code: str, *, default: str = "routing_upstream_error") -> str:
    code = str(reason_code or "").strip()
    if code in FROZEN_REASON_CODES:
        return code
    return default


@dataclass(eq=False)
class RoutingError(RuntimeError):
    message: str
    status_code: int | None = None
    reason_code: str = "routing_upstream_error"
    details: dict[str, Any] | None = None

    def __post_init__(self) -> None:
        self.reason_code = normalize_reason_code(self.reason_code)
        super().__init__(self.message)

    def __str__(self) -> str:
        return self.message


class RoutingRetryableError(RoutingError):
    """A routing engine error that is likely transient and safe to retry."""


class RoutingThrottledError(RoutingError):
    """Raised when the client-side throttle drops a call inside its window."""


class GeocodingError(RuntimeError):
    pass
