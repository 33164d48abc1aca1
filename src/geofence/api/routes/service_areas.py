"""API routes for organization service areas."""

from __future__ import annotations

from functools import lru_cache

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status

from ...models.domain import ServiceArea
from ...persistence.service_areas import ServiceAreaStoreError, get_default_repository
from ...schemas.service_areas import (
    CacheClearRequest,
    MapDataArea,
    MapDataResponse,
    PointCheckRequest,
    PointCheckResponse,
    RefreshResponse,
    ServiceAreaCreate,
    ServiceAreaListResponse,
    ServiceAreaModel,
    ServiceAreaResponse,
    ServiceAreaSummary,
    ServiceAreaUpdate,
    ZipPolygonResponse,
    ZoneDisplayModel,
    ZoneMatchModel,
)
from ...services.service_areas import ServiceAreaError, ServiceAreaNotFound, ServiceAreaService

router = APIRouter(tags=["service-areas"])


@lru_cache()
def get_service_area_service() -> ServiceAreaService:
    return ServiceAreaService(repository=get_default_repository())


def _to_model(area: ServiceArea) -> ServiceAreaModel:
    return ServiceAreaModel(
        id=area.id,
        org_id=area.org_id,
        name=area.name,
        polygons=area.polygons,
        zone_display=[ZoneDisplayModel(label=entry.label, color=entry.color) for entry in area.zone_display],
        network_link_url=area.network_link_url,
        network_link_fetched_at=area.network_link_fetched_at,
        created_at=area.created_at,
        updated_at=area.updated_at,
    )


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, ServiceAreaNotFound):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


@router.get("/orgs/{org_id}/service-areas", response_model=ServiceAreaListResponse)
def list_service_areas(
    org_id: str,
    service: ServiceAreaService = Depends(get_service_area_service),
) -> ServiceAreaListResponse:
    """List service areas for an organization with polygon and point counts."""
    try:
        areas = service.list_areas(org_id)
    except ServiceAreaStoreError as exc:
        raise _http_error(exc) from exc
    return ServiceAreaListResponse(
        service_areas=[
            ServiceAreaSummary(
                id=area.id,
                name=area.name,
                polygon_count=len(area.polygons),
                point_count=area.point_count,
                network_link_url=area.network_link_url,
                has_polygon=bool(area.polygons),
            )
            for area in areas
        ]
    )


@router.post("/orgs/{org_id}/service-areas", response_model=ServiceAreaResponse, status_code=status.HTTP_201_CREATED)
def create_service_area(
    org_id: str,
    payload: ServiceAreaCreate,
    service: ServiceAreaService = Depends(get_service_area_service),
) -> ServiceAreaResponse:
    """Create a service area from drawn polygons, KML content, a KML URL or ZIP codes."""
    try:
        created = service.create_area(org_id, payload)
    except (ServiceAreaError, ServiceAreaStoreError) as exc:
        raise _http_error(exc) from exc
    return ServiceAreaResponse(
        service_area=_to_model(created.area),
        failed_zip_codes=created.failed_zip_codes,
        duplicate_zip_codes=created.duplicate_zip_codes,
        invalid_zip_codes=created.invalid_zip_codes,
    )


@router.get("/orgs/{org_id}/service-areas/zip-to-polygon", response_model=ZipPolygonResponse)
def zip_to_polygon(
    org_id: str,
    zip_code: str = Query(..., alias="zip", description="US 5-digit ZIP code"),
    service: ServiceAreaService = Depends(get_service_area_service),
) -> ZipPolygonResponse:
    """Return the boundary polygon of one ZIP code for the drawing UI."""
    try:
        zip5, polygon = service.zip_to_polygon(zip_code)
    except (ServiceAreaError, ServiceAreaNotFound) as exc:
        raise _http_error(exc) from exc
    return ZipPolygonResponse(zip=zip5, polygon=polygon)


@router.get("/orgs/{org_id}/service-areas/map-data", response_model=MapDataResponse)
def map_data(
    org_id: str,
    service: ServiceAreaService = Depends(get_service_area_service),
) -> MapDataResponse:
    try:
        areas = service.map_data(org_id)
    except ServiceAreaStoreError as exc:
        raise _http_error(exc) from exc
    return MapDataResponse(
        areas=[
            MapDataArea(
                id=item.area.id,
                name=item.area.name,
                polygons=item.area.polygons,
                zone_display=[ZoneDisplayModel(label=entry.label, color=entry.color) for entry in item.zone_display],
                bounds=item.bounds,
                center=item.center,
            )
            for item in areas
        ]
    )


@router.post("/orgs/{org_id}/service-areas/check", response_model=PointCheckResponse)
def check_point(
    org_id: str,
    payload: PointCheckRequest,
    service: ServiceAreaService = Depends(get_service_area_service),
) -> PointCheckResponse:
    """Check whether a coordinate falls inside any of the organization's service areas."""
    try:
        result = service.check_point(
            org_id,
            payload.lat,
            payload.lng,
            area_ids=payload.area_ids,
            tolerance=payload.tolerance,
            match=payload.match,
        )
    except (ServiceAreaError, ServiceAreaStoreError) as exc:
        raise _http_error(exc) from exc
    return PointCheckResponse(
        in_service_area=result.in_service_area,
        near_boundary=result.near_boundary,
        matches=[
            ZoneMatchModel(
                service_area_id=item.service_area_id,
                service_area_name=item.service_area_name,
                zone_index=item.zone_index,
                label=item.label,
            )
            for item in result.matches
        ],
        message=(
            "Great! You are within our service area."
            if result.in_service_area
            else "Sorry, this address is outside our service area."
        ),
    )


@router.get("/orgs/{org_id}/service-areas/{area_id}", response_model=ServiceAreaResponse)
def get_service_area(
    org_id: str,
    area_id: str,
    service: ServiceAreaService = Depends(get_service_area_service),
) -> ServiceAreaResponse:
    try:
        area = service.get_area(org_id, area_id)
    except (ServiceAreaNotFound, ServiceAreaStoreError) as exc:
        raise _http_error(exc) from exc
    return ServiceAreaResponse(service_area=_to_model(area))


@router.patch("/orgs/{org_id}/service-areas/{area_id}", response_model=ServiceAreaResponse)
def update_service_area(
    org_id: str,
    area_id: str,
    payload: ServiceAreaUpdate,
    service: ServiceAreaService = Depends(get_service_area_service),
) -> ServiceAreaResponse:
    """Update name, network link and/or replace the polygons wholesale."""
    try:
        area = service.update_area(org_id, area_id, payload)
    except (ServiceAreaError, ServiceAreaNotFound, ServiceAreaStoreError) as exc:
        raise _http_error(exc) from exc
    return ServiceAreaResponse(service_area=_to_model(area))


@router.delete("/orgs/{org_id}/service-areas/{area_id}", status_code=status.HTTP_200_OK)
def delete_service_area(
    org_id: str,
    area_id: str,
    service: ServiceAreaService = Depends(get_service_area_service),
) -> dict:
    try:
        service.delete_area(org_id, area_id)
    except (ServiceAreaNotFound, ServiceAreaStoreError) as exc:
        raise _http_error(exc) from exc
    return {"success": True}


@router.post("/orgs/{org_id}/service-areas/{area_id}/refresh-from-link", response_model=RefreshResponse)
def refresh_from_link(
    org_id: str,
    area_id: str,
    service: ServiceAreaService = Depends(get_service_area_service),
) -> RefreshResponse:
    """Re-fetch KML from the area's network link URL and replace its polygons."""
    try:
        area = service.refresh_from_link(org_id, area_id)
    except (ServiceAreaError, ServiceAreaNotFound, ServiceAreaStoreError) as exc:
        raise _http_error(exc) from exc
    return RefreshResponse(
        success=True,
        polygon_count=len(area.polygons),
        point_count=area.point_count,
        fetched_at=area.network_link_fetched_at,
    )


@router.get("/orgs/{org_id}/service-areas/{area_id}/download-kml")
def download_kml(
    org_id: str,
    area_id: str,
    service: ServiceAreaService = Depends(get_service_area_service),
) -> Response:
    """Return the area's polygons as a KML attachment."""
    try:
        filename, kml = service.download_kml(org_id, area_id)
    except (ServiceAreaError, ServiceAreaNotFound, ServiceAreaStoreError) as exc:
        raise _http_error(exc) from exc
    return Response(
        content=kml,
        media_type="application/vnd.google-earth.kml+xml",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.post("/service-areas/cache/clear", status_code=status.HTTP_200_OK)
def clear_cache(
    payload: CacheClearRequest,
    service: ServiceAreaService = Depends(get_service_area_service),
) -> dict:
    """Evict cached network-link documents so the next fetch hits the network."""
    service.clear_cache(payload.url)
    return {"success": True, "cleared": payload.url or "all"}
