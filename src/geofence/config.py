"""Application configuration and settings management."""

from typing import Any, Optional

import json
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration loaded from environment variables or defaults."""

    model_config = SettingsConfigDict(
        env_prefix="GEOFENCE_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
    )

    app_name: str = "Service Area Geofencing API"
    api_prefix: str = "/api"
    frontend_allowed_origins: tuple[str, ...] = Field(
        default=(
            "http://localhost:3000",
            "http://127.0.0.1:3000",
        ),
        description="Permitted web origins for browser clients (CORS).",
    )

    # Remote KML (NetworkLink) fetching
    network_link_cache_ttl_seconds: float = Field(
        default=3600.0,
        ge=0.0,
        description="How long a fetched network-link document stays in the in-process cache.",
    )
    network_link_timeout_seconds: float = Field(default=10.0, gt=0.0)
    network_link_max_redirects: int = Field(default=1, ge=0)
    network_link_stale_hours: float = Field(
        default=24.0,
        ge=0.0,
        description="Age after which a stored network-link area is re-fetched before a point check.",
    )
    network_link_user_agent: str = "ServiceAreaPolygonFetcher/1.0"

    # ZIP code boundaries (Census TIGERweb ZCTA layer)
    zcta_query_url: str = Field(
        default="https://tigerweb.geo.census.gov/arcgis/rest/services/TIGERweb/tigerWMS_Census2020/MapServer/84/query",
        description="ArcGIS query endpoint returning ZCTA boundaries as GeoJSON.",
    )
    zcta_timeout_seconds: float = Field(default=15.0, gt=0.0)
    zcta_max_concurrency: int = Field(default=1, ge=1)
    zip_batch_max: int = Field(
        default=150,
        ge=1,
        description="Maximum number of unique ZIP codes accepted per import.",
    )

    boundary_tolerance_degrees: float = Field(
        default=0.0001,
        ge=0.0,
        description="Default tolerance (degrees, roughly 11m) for near-boundary checks.",
    )

    # Supabase configuration
    supabase_url: Optional[str] = Field(
        default=None,
        description="Supabase project URL (e.g., https://xxx.supabase.co).",
    )
    supabase_key: Optional[str] = Field(
        default=None,
        description="Supabase service role key for backend operations.",
    )
    service_areas_table: str = "service_areas"

    @field_validator("frontend_allowed_origins", mode="before")
    @classmethod
    def _parse_str_tuple_from_env(cls, value: Any) -> tuple[str, ...]:
        """Parse string tuple from environment variable (comma-separated or JSON array)."""
        if isinstance(value, tuple):
            return value
        if isinstance(value, list):
            return tuple(str(item) for item in value)
        if isinstance(value, str):
            # Try JSON first
            try:
                parsed = json.loads(value)
                if isinstance(parsed, list):
                    return tuple(str(item) for item in parsed)
            except (json.JSONDecodeError, TypeError):
                pass
            # Try comma-separated
            if "," in value:
                return tuple(item.strip() for item in value.split(",") if item.strip())
            # Single value
            if value.strip():
                return (value.strip(),)
        # Return empty tuple if value is None or empty
        return tuple()


settings = Settings()
