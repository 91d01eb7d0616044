from __future__ import annotations

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Validated settings (env-driven), keeping engine endpoints and tuning out of code."""

    model_config = SettingsConfigDict(
        # Support both "repo root/.env" and "backend/.env" (local dev)
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    ors_base_url: str = Field(default="https://api.openrouteservice.org", alias="ORS_BASE_URL")
    ors_api_key: str = Field(default="", alias="ORS_API_KEY")
    ors_profile: str = Field(default="cycling-road", alias="ORS_PROFILE")
    ors_preference: str = Field(default="recommended", alias="ORS_PREFERENCE")
    ors_elevation: bool = Field(default=False, alias="ORS_ELEVATION")

    out_dir: str = Field(default="out", alias="OUT_DIR")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Upstream call policy for the routing engine.
    routing_request_timeout_s: float = Field(default=10.0, ge=0.5, le=120.0, alias="ROUTING_REQUEST_TIMEOUT_S")
    routing_max_attempts: int = Field(default=3, ge=1, le=10, alias="ROUTING_MAX_ATTEMPTS")
    routing_retry_backoff_base_ms: int = Field(default=250, ge=0, alias="ROUTING_RETRY_BACKOFF_BASE_MS")
    routing_retry_backoff_max_ms: int = Field(default=4000, ge=0, alias="ROUTING_RETRY_BACKOFF_MAX_MS")
    routing_retryable_status_codes: str = Field(
        default="429,502,503,504",
        alias="ROUTING_RETRYABLE_STATUS_CODES",
    )
    # Ceiling on an upstream Retry-After wait.
    routing_retry_after_max_s: float = Field(default=30.0, ge=0.0, alias="ROUTING_RETRY_AFTER_MAX_S")
    # Leading-edge throttle window; 0 disables it.
    routing_throttle_window_ms: int = Field(default=250, ge=0, alias="ROUTING_THROTTLE_WINDOW_MS")

    route_cache_ttl_s: int = Field(default=600, alias="ROUTE_CACHE_TTL_S")
    route_cache_max_entries: int = Field(default=512, alias="ROUTE_CACHE_MAX_ENTRIES")

    geocoder_base_url: str = Field(default="https://api.maptiler.com", alias="GEOCODER_BASE_URL")
    maptiler_api_key: str = Field(default="", alias="MAPTILER_API_KEY")
    geocoder_timeout_s: float = Field(default=8.0, ge=0.5, le=60.0, alias="GEOCODER_TIMEOUT_S")
    geocoder_language: str = Field(default="en", alias="GEOCODER_LANGUAGE")

    # Planner behaviour.
    waypoint_snap_radius_m: float = Field(default=350.0, gt=0.0, alias="WAYPOINT_SNAP_RADIUS_M")
    shaping_snap_radius_m: float = Field(default=7.0, gt=0.0, alias="SHAPING_SNAP_RADIUS_M")
    bearing_tolerance_deg: float = Field(default=45.0, ge=0.0, le=180.0, alias="BEARING_TOLERANCE_DEG")
    segment_hit_distance_m: float = Field(default=5.0, gt=0.0, alias="SEGMENT_HIT_DISTANCE_M")
    recalc_debounce_ms: int = Field(default=350, ge=0, alias="RECALC_DEBOUNCE_MS")
    max_sessions: int = Field(default=256, ge=1, alias="MAX_SESSIONS")

    @model_validator(mode="after")
    def _normalize(self) -> "Settings":
        self.ors_base_url = self.ors_base_url.rstrip("/")
        self.geocoder_base_url = self.geocoder_base_url.rstrip("/")
        # The backoff cap can never be below its base.
        if self.routing_retry_backoff_max_ms < self.routing_retry_backoff_base_ms:
            self.routing_retry_backoff_max_ms = self.routing_retry_backoff_base_ms
        return self


settings = Settings()
