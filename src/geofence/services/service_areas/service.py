"""High-level orchestration for service-area ingestion and point checks."""

from __future__ import annotations

import logging
import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Literal, Optional, Sequence

from ...config import settings
from ...models.domain import Polygon, ServiceArea, ZoneDisplay
from ...persistence.service_areas import ServiceAreaRepository, ServiceAreaStoreError
from ...schemas.service_areas import ServiceAreaCreate, ServiceAreaUpdate, ZoneDisplayModel
from ..geospatial import (
    matching_zone_indexes,
    point_near_boundary,
    polygons_bounds,
    polygons_center,
)
from ..kml.export import kml_filename, polygons_to_kml
from ..kml.network import NetworkKMLFetcher
from ..kml.parser import parse_kml
from ..storage import align_zone_display, to_stored_polygons
from ..zcta import CensusZCTAClient, extract_zip_codes, normalize_zip_code, normalize_zip_codes, zip_codes_to_polygons

logger = logging.getLogger(__name__)


class ServiceAreaError(ValueError):
    """Operator-facing failure with a human-readable reason."""


class ZipBatchTooLarge(ServiceAreaError):
    pass


class ServiceAreaNotFound(LookupError):
    pass


@dataclass(slots=True)
class IngestedPolygons:
    polygons: list[Polygon] = field(default_factory=list)
    labels: list[Optional[str]] = field(default_factory=list)
    network_link_url: Optional[str] = None
    network_link_fetched_at: Optional[datetime] = None
    failed_zip_codes: list[str] = field(default_factory=list)
    duplicate_zip_codes: int = 0
    invalid_zip_codes: list[str] = field(default_factory=list)


@dataclass(slots=True)
class CreatedServiceArea:
    area: ServiceArea
    failed_zip_codes: list[str] = field(default_factory=list)
    duplicate_zip_codes: int = 0
    invalid_zip_codes: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ZoneMatch:
    service_area_id: str
    service_area_name: str
    zone_index: int
    label: str


@dataclass(slots=True)
class PointCheck:
    in_service_area: bool
    near_boundary: bool
    matches: list[ZoneMatch] = field(default_factory=list)


@dataclass(slots=True)
class MapArea:
    area: ServiceArea
    zone_display: list[ZoneDisplay]
    bounds: Optional[dict[str, float]]
    center: Optional[dict[str, float]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _zone_display_from_models(models: Sequence[Optional[ZoneDisplayModel]] | None, count: int) -> list[ZoneDisplay]:
    raw = [model.model_dump() if model is not None else None for model in (models or [])]
    return align_zone_display(raw, count)


def _zone_display_from_labels(labels: Sequence[Optional[str]], count: int) -> list[ZoneDisplay]:
    return align_zone_display([{"label": label} for label in labels], count)


class ServiceAreaService:
    """Ingest coverage areas from any supported source and answer point checks."""

    def __init__(
        self,
        repository: ServiceAreaRepository,
        fetcher: NetworkKMLFetcher | None = None,
        zcta_client: CensusZCTAClient | None = None,
        now: Callable[[], datetime] = _utcnow,
        zip_batch_max: int | None = None,
        stale_after: timedelta | None = None,
    ) -> None:
        self.repository = repository
        self.fetcher = fetcher or NetworkKMLFetcher()
        self.zcta_client = zcta_client or CensusZCTAClient()
        self._now = now
        self.zip_batch_max = zip_batch_max if zip_batch_max is not None else settings.zip_batch_max
        self.stale_after = stale_after if stale_after is not None else timedelta(hours=settings.network_link_stale_hours)

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def _from_network_link(self, url: str) -> IngestedPolygons:
        result = self.fetcher.fetch(url)
        if result.error or not result.polygons:
            raise ServiceAreaError(result.error or "No polygon data at URL")
        return IngestedPolygons(
            polygons=to_stored_polygons(result.polygons),
            labels=list(result.labels),
            network_link_url=url,
            network_link_fetched_at=self._now(),
        )

    def _from_kml(self, kml_content: str) -> IngestedPolygons:
        parsed = parse_kml(kml_content)
        if parsed.error:
            raise ServiceAreaError(parsed.error)
        if parsed.network_link:
            # Uploaded file only points at the real document; follow it once
            try:
                return self._from_network_link(parsed.network_link)
            except ServiceAreaError as exc:
                raise ServiceAreaError(f"Failed to validate NetworkLink: {exc}") from exc
        return IngestedPolygons(polygons=to_stored_polygons(parsed.polygons), labels=list(parsed.labels))

    def _from_zip_codes(self, codes: Sequence[str]) -> IngestedPolygons:
        unique = normalize_zip_codes(codes).codes
        if not unique:
            raise ServiceAreaError("No valid 5-digit ZIP codes found.")
        if len(unique) > self.zip_batch_max:
            raise ZipBatchTooLarge(
                f"Too many ZIP codes ({len(unique)}). At most {self.zip_batch_max} can be imported at once."
            )
        result = zip_codes_to_polygons(codes, client=self.zcta_client)
        if not result.polygons:
            raise ServiceAreaError(
                f"Could not load a boundary for any of the ZIP codes: {', '.join(result.failed)}"
            )
        return IngestedPolygons(
            polygons=result.polygons,
            labels=list(result.labels),
            failed_zip_codes=result.failed,
            duplicate_zip_codes=result.duplicates,
            invalid_zip_codes=result.invalid,
        )

    def ingest(self, payload: ServiceAreaCreate) -> IngestedPolygons:
        """Turn whichever source the payload carries into stored-shape polygons."""

        sources = [
            name
            for name, present in (
                ("polygon", payload.polygon is not None),
                ("kml_content", bool(payload.kml_content and payload.kml_content.strip())),
                ("network_link_url", bool(payload.network_link_url and payload.network_link_url.strip())),
                ("zip_codes", payload.zip_codes is not None or bool(payload.zip_text and payload.zip_text.strip())),
            )
            if present
        ]
        if len(sources) > 1:
            raise ServiceAreaError(f"Provide only one of polygon, kml_content, network_link_url or zip_codes (got {', '.join(sources)}).")

        if payload.polygon is not None:
            stored = to_stored_polygons(payload.polygon)
            if not stored:
                raise ServiceAreaError("Provide at least one valid polygon (3+ points each)")
            return IngestedPolygons(polygons=stored)
        if sources == ["kml_content"]:
            return self._from_kml(payload.kml_content.strip())
        if sources == ["network_link_url"]:
            return self._from_network_link(payload.network_link_url.strip())
        if sources == ["zip_codes"]:
            codes = payload.zip_codes if payload.zip_codes is not None else extract_zip_codes(payload.zip_text)
            return self._from_zip_codes(codes)

        if payload.allow_empty:
            return IngestedPolygons()
        raise ServiceAreaError("Provide polygon, kml_content, network_link_url or zip_codes")

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    def list_areas(self, org_id: str) -> list[ServiceArea]:
        return self.repository.list_for_org(org_id)

    def get_area(self, org_id: str, area_id: str) -> ServiceArea:
        area = self.repository.get(org_id, area_id)
        if area is None:
            raise ServiceAreaNotFound("Service area not found")
        return area

    def create_area(self, org_id: str, payload: ServiceAreaCreate) -> CreatedServiceArea:
        ingested = self.ingest(payload)
        count = len(ingested.polygons)
        if payload.zone_display is not None:
            zone_display = _zone_display_from_models(payload.zone_display, count)
        else:
            zone_display = _zone_display_from_labels(ingested.labels, count)

        now = self._now()
        area = ServiceArea(
            id=str(uuid.uuid4()),
            org_id=org_id,
            name=payload.name,
            polygons=ingested.polygons,
            zone_display=zone_display,
            network_link_url=ingested.network_link_url,
            network_link_fetched_at=ingested.network_link_fetched_at,
            created_at=now,
            updated_at=now,
        )
        saved = self.repository.insert(area)
        logger.info(f"Created service area '{saved.name}' ({saved.id}) with {count} polygon(s) for org {org_id}")
        return CreatedServiceArea(
            area=saved,
            failed_zip_codes=ingested.failed_zip_codes,
            duplicate_zip_codes=ingested.duplicate_zip_codes,
            invalid_zip_codes=ingested.invalid_zip_codes,
        )

    def update_area(self, org_id: str, area_id: str, payload: ServiceAreaUpdate) -> ServiceArea:
        area = self.get_area(org_id, area_id)
        changed = payload.model_fields_set

        if "name" in changed and payload.name and payload.name.strip():
            area.name = payload.name.strip()

        if "polygon" in changed:
            if payload.polygon is None:
                area.polygons = []
            else:
                stored = to_stored_polygons(payload.polygon)
                if not stored:
                    raise ServiceAreaError("Provide at least one valid polygon (3+ points each)")
                area.polygons = stored

        if "zone_display" in changed:
            area.zone_display = _zone_display_from_models(payload.zone_display, len(area.polygons))
        elif "polygon" in changed:
            area.zone_display = align_zone_display([], len(area.polygons))

        if "network_link_url" in changed:
            url = (payload.network_link_url or "").strip() or None
            if url != area.network_link_url:
                area.network_link_url = url
                # Forces a re-fetch on the next point check
                area.network_link_fetched_at = None

        area.updated_at = self._now()
        return self.repository.update(area)

    def delete_area(self, org_id: str, area_id: str) -> None:
        if not self.repository.delete(org_id, area_id):
            raise ServiceAreaNotFound("Service area not found")
        logger.info(f"Deleted service area {area_id} for org {org_id}")

    # ------------------------------------------------------------------
    # Network links
    # ------------------------------------------------------------------

    def refresh_from_link(self, org_id: str, area_id: str) -> ServiceArea:
        """Re-fetch the area's network link, bypassing the cache, and replace its polygons."""

        area = self.get_area(org_id, area_id)
        if not area.network_link_url:
            raise ServiceAreaError("Service area has no network link URL")

        self.fetcher.clear_cache_for_url(area.network_link_url)
        ingested = self._from_network_link(area.network_link_url)
        area.polygons = ingested.polygons
        area.zone_display = _zone_display_from_labels(ingested.labels, len(ingested.polygons))
        area.network_link_fetched_at = ingested.network_link_fetched_at
        area.updated_at = ingested.network_link_fetched_at
        return self.repository.update(area)

    def is_stale(self, area: ServiceArea) -> bool:
        if not area.network_link_url:
            return False
        if area.network_link_fetched_at is None:
            return True
        fetched_at = area.network_link_fetched_at
        if fetched_at.tzinfo is None:
            fetched_at = fetched_at.replace(tzinfo=timezone.utc)
        return self._now() - fetched_at > self.stale_after

    def polygons_for_area(self, area: ServiceArea) -> list[Polygon]:
        """Current polygons of an area, refreshing a stale network link first.

        A failed refresh falls back to the stored polygons.
        """

        if not self.is_stale(area):
            return area.polygons

        result = self.fetcher.fetch(area.network_link_url)
        if result.error or not result.polygons:
            logger.warning(
                f"Could not refresh service area {area.id} from {area.network_link_url}: {result.error}. "
                f"Using stored polygons."
            )
            return area.polygons

        now = self._now()
        area.polygons = to_stored_polygons(result.polygons)
        area.zone_display = _zone_display_from_labels(result.labels, len(area.polygons))
        area.network_link_fetched_at = now
        area.updated_at = now
        try:
            self.repository.update(area)
        except ServiceAreaStoreError as exc:
            logger.warning(f"Refreshed polygons for service area {area.id} could not be saved: {exc}")
        return area.polygons

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def check_point(
        self,
        org_id: str,
        lat: float,
        lng: float,
        area_ids: Sequence[str] | None = None,
        tolerance: float | None = None,
        match: Literal["first", "all"] = "first",
    ) -> PointCheck:
        """Find which of the organization's service areas and zones contain a point.

        With ``match="first"`` the search stops at the first matching zone, so
        areas after it are neither refreshed nor reported.
        """

        if not (math.isfinite(lat) and math.isfinite(lng)) or not (-90 <= lat <= 90 and -180 <= lng <= 180):
            raise ServiceAreaError("Coordinates out of valid range.")

        areas = self.list_areas(org_id)
        if area_ids is not None:
            by_id = {area.id: area for area in areas}
            missing = [area_id for area_id in area_ids if area_id not in by_id]
            if missing:
                logger.warning(f"Ignoring unknown service area id(s) for org {org_id}: {missing}")
            areas = [by_id[area_id] for area_id in area_ids if area_id in by_id]

        boundary_tolerance = tolerance if tolerance is not None else settings.boundary_tolerance_degrees
        result = PointCheck(in_service_area=False, near_boundary=False)
        for area in areas:
            polygons = self.polygons_for_area(area)
            if not result.near_boundary:
                result.near_boundary = any(
                    point_near_boundary(lat, lng, polygon, boundary_tolerance) for polygon in polygons
                )
            for index in matching_zone_indexes(lat, lng, polygons, tolerance):
                result.matches.append(
                    ZoneMatch(
                        service_area_id=area.id,
                        service_area_name=area.name,
                        zone_index=index,
                        label=area.zone_label(index),
                    )
                )
                if match == "first":
                    break
            if match == "first" and result.matches:
                break

        result.in_service_area = bool(result.matches)
        return result

    def zip_to_polygon(self, zip_code: str) -> tuple[str, Polygon]:
        zip5 = normalize_zip_code(zip_code or "")
        if zip5 is None:
            raise ServiceAreaError("Valid 5-digit US ZIP code required")
        polygon = self.zcta_client.fetch_polygon(zip5)
        if polygon is None:
            raise ServiceAreaNotFound(f"Could not load boundary for ZIP {zip5}. Check that it's a valid US ZIP.")
        return zip5, polygon

    def download_kml(self, org_id: str, area_id: str) -> tuple[str, str]:
        """Filename and KML document for an area's polygons."""

        area = self.get_area(org_id, area_id)
        if not area.polygons:
            raise ServiceAreaError("Service area has no polygon data")
        return kml_filename(area.name), polygons_to_kml(area.polygons, area.name or None)

    def map_data(self, org_id: str) -> list[MapArea]:
        areas = []
        for area in self.list_areas(org_id):
            areas.append(
                MapArea(
                    area=area,
                    zone_display=align_zone_display(
                        [entry.to_record() for entry in area.zone_display],
                        len(area.polygons),
                        default_label=area.name,
                    ),
                    bounds=polygons_bounds(area.polygons),
                    center=polygons_center(area.polygons),
                )
            )
        return areas

    def clear_cache(self, url: str | None = None) -> None:
        if url:
            self.fetcher.clear_cache_for_url(url)
        else:
            self.fetcher.clear_cache()
