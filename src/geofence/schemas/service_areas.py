"""Pydantic request/response models for service-area endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator


class ZoneDisplayModel(BaseModel):
    label: Optional[str] = None
    color: Optional[str] = Field(default=None, description="Hex colour such as '#1e90ff'.")


class ServiceAreaCreate(BaseModel):
    """Create a service area from exactly one source."""

    name: str = Field(..., description="Display name of the service area.")
    polygon: Optional[List[Any]] = Field(
        default=None,
        description="A single polygon ([[lat, lng], ...]) or a list of polygons.",
    )
    zone_display: Optional[List[Optional[ZoneDisplayModel]]] = Field(
        default=None, description="Per-polygon label/colour, parallel to the polygon list."
    )
    kml_content: Optional[str] = Field(default=None, description="Raw KML document text.")
    network_link_url: Optional[str] = Field(default=None, description="URL of a remote KML document.")
    zip_codes: Optional[List[str]] = Field(default=None, description="Explicit list of US ZIP codes.")
    zip_text: Optional[str] = Field(default=None, description="Free text or CSV containing ZIP codes.")
    allow_empty: bool = Field(default=False, description="Save as a draft without polygons.")

    @field_validator("name")
    @classmethod
    def validate_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("name is required")
        return value


class ServiceAreaUpdate(BaseModel):
    """Partial update; polygons and zone metadata are replaced wholesale."""

    name: Optional[str] = None
    polygon: Optional[List[Any]] = Field(
        default=None, description="Replacement polygon(s); explicit null clears the area to a draft."
    )
    zone_display: Optional[List[Optional[ZoneDisplayModel]]] = None
    network_link_url: Optional[str] = None


class ServiceAreaModel(BaseModel):
    id: str
    org_id: str
    name: str
    polygons: List[List[List[float]]]
    zone_display: List[ZoneDisplayModel]
    network_link_url: Optional[str] = None
    network_link_fetched_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ServiceAreaSummary(BaseModel):
    id: str
    name: str
    polygon_count: int
    point_count: int
    network_link_url: Optional[str] = None
    has_polygon: bool


class ServiceAreaListResponse(BaseModel):
    service_areas: List[ServiceAreaSummary]


class ServiceAreaResponse(BaseModel):
    service_area: ServiceAreaModel
    failed_zip_codes: List[str] = Field(default_factory=list)
    duplicate_zip_codes: int = 0
    invalid_zip_codes: List[str] = Field(default_factory=list)


class RefreshResponse(BaseModel):
    success: bool
    polygon_count: int
    point_count: int
    fetched_at: Optional[datetime] = None


class PointCheckRequest(BaseModel):
    lat: float = Field(..., ge=-90.0, le=90.0)
    lng: float = Field(..., ge=-180.0, le=180.0)
    area_ids: Optional[List[str]] = Field(default=None, description="Limit the check to these service areas.")
    tolerance: Optional[float] = Field(
        default=None, ge=0.0, description="Treat points within this many degrees of an edge as inside."
    )
    match: Literal["first", "all"] = "first"


class ZoneMatchModel(BaseModel):
    service_area_id: str
    service_area_name: str
    zone_index: int
    label: str


class PointCheckResponse(BaseModel):
    in_service_area: bool
    near_boundary: bool
    matches: List[ZoneMatchModel]
    message: str


class ZipPolygonResponse(BaseModel):
    zip: str
    polygon: List[List[float]]


class MapDataArea(BaseModel):
    id: str
    name: str
    polygons: List[List[List[float]]]
    zone_display: List[ZoneDisplayModel]
    bounds: Optional[dict[str, float]] = None
    center: Optional[dict[str, float]] = None


class MapDataResponse(BaseModel):
    areas: List[MapDataArea]


class CacheClearRequest(BaseModel):
    url: Optional[str] = Field(default=None, description="Evict only this URL; omit to clear the whole cache.")
