"""Service-area persistence.

Rows look like ``{id, org_id, name, polygon, zone_display, network_link_url,
network_link_fetched_at, created_at, updated_at}``. ``polygon`` may hold the
legacy single-polygon shape; it is normalized on read and always written as a
list of polygons.
"""

from __future__ import annotations

import copy
import logging
from datetime import datetime, timezone
from typing import Any, Protocol

from ..config import settings
from ..db.supabase import get_supabase_client
from ..models.domain import ServiceArea
from ..services.storage import (
    align_zone_display,
    normalize_service_area_polygons,
    to_stored_polygons,
    zone_display_to_stored,
)

logger = logging.getLogger(__name__)


class ServiceAreaStoreError(RuntimeError):
    """The backing store rejected or failed a service-area operation."""


def _parse_timestamp(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        logger.warning(f"Ignoring unparseable timestamp {value!r}")
        return None


def _format_timestamp(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def service_area_from_record(row: dict[str, Any]) -> ServiceArea:
    """Build a ServiceArea from a stored row, resolving the polygon shape.

    Zone metadata is aligned to one entry per polygon.
    """

    polygons = normalize_service_area_polygons(row.get("polygon"))
    return ServiceArea(
        id=str(row["id"]),
        org_id=str(row.get("org_id") or ""),
        name=row.get("name") or "",
        polygons=polygons,
        zone_display=align_zone_display(row.get("zone_display"), len(polygons)),
        network_link_url=(row.get("network_link_url") or "").strip() or None,
        network_link_fetched_at=_parse_timestamp(row.get("network_link_fetched_at")),
        created_at=_parse_timestamp(row.get("created_at")),
        updated_at=_parse_timestamp(row.get("updated_at")),
    )


def service_area_to_record(area: ServiceArea) -> dict[str, Any]:
    """Row for a ServiceArea; polygons are always written as a list of polygons."""

    stored = to_stored_polygons(area.polygons)
    return {
        "id": area.id,
        "org_id": area.org_id,
        "name": area.name,
        "polygon": stored or None,
        "zone_display": zone_display_to_stored(area.zone_display),
        "network_link_url": area.network_link_url,
        "network_link_fetched_at": _format_timestamp(area.network_link_fetched_at),
        "created_at": _format_timestamp(area.created_at),
        "updated_at": _format_timestamp(area.updated_at),
    }


class ServiceAreaRepository(Protocol):
    def list_for_org(self, org_id: str) -> list[ServiceArea]:
        ...

    def get(self, org_id: str, area_id: str) -> ServiceArea | None:
        ...

    def insert(self, area: ServiceArea) -> ServiceArea:
        ...

    def update(self, area: ServiceArea) -> ServiceArea:
        ...

    def delete(self, org_id: str, area_id: str) -> bool:
        ...


class InMemoryServiceAreaRepository:
    """Dict-backed store used in tests and when Supabase is not configured."""

    def __init__(self, rows: list[dict[str, Any]] | None = None) -> None:
        self._rows: dict[str, dict[str, Any]] = {}
        for row in rows or []:
            self._rows[str(row["id"])] = copy.deepcopy(row)

    def list_for_org(self, org_id: str) -> list[ServiceArea]:
        rows = [row for row in self._rows.values() if row.get("org_id") == org_id]
        rows.sort(key=lambda row: row.get("name") or "")
        return [service_area_from_record(row) for row in rows]

    def get(self, org_id: str, area_id: str) -> ServiceArea | None:
        row = self._rows.get(area_id)
        if row is None or row.get("org_id") != org_id:
            return None
        return service_area_from_record(row)

    def insert(self, area: ServiceArea) -> ServiceArea:
        if area.id in self._rows:
            raise ServiceAreaStoreError(f"Service area '{area.id}' already exists")
        record = service_area_to_record(area)
        self._rows[area.id] = record
        return service_area_from_record(record)

    def update(self, area: ServiceArea) -> ServiceArea:
        existing = self._rows.get(area.id)
        if existing is None or existing.get("org_id") != area.org_id:
            raise ServiceAreaStoreError(f"Service area '{area.id}' not found")
        record = service_area_to_record(area)
        self._rows[area.id] = record
        return service_area_from_record(record)

    def delete(self, org_id: str, area_id: str) -> bool:
        row = self._rows.get(area_id)
        if row is None or row.get("org_id") != org_id:
            return False
        del self._rows[area_id]
        return True

    def raw_row(self, area_id: str) -> dict[str, Any] | None:
        row = self._rows.get(area_id)
        return copy.deepcopy(row) if row is not None else None


class SupabaseServiceAreaRepository:
    """Service areas stored in a Supabase (PostgREST) table."""

    def __init__(self, client: Any | None = None, table: str | None = None) -> None:
        self.client = client or get_supabase_client()
        if self.client is None:
            raise ValueError("Supabase is not configured. Set GEOFENCE_SUPABASE_URL and GEOFENCE_SUPABASE_KEY.")
        self.table = table or settings.service_areas_table

    def _query(self):
        return self.client.table(self.table)

    def list_for_org(self, org_id: str) -> list[ServiceArea]:
        try:
            response = self._query().select("*").eq("org_id", org_id).order("name").execute()
        except Exception as e:
            logger.warning(f"Failed to list service areas for org {org_id}: {e}")
            raise ServiceAreaStoreError(str(e)) from e
        return [service_area_from_record(row) for row in (response.data or [])]

    def get(self, org_id: str, area_id: str) -> ServiceArea | None:
        try:
            response = (
                self._query()
                .select("*")
                .eq("id", area_id)
                .eq("org_id", org_id)
                .limit(1)
                .execute()
            )
        except Exception as e:
            logger.warning(f"Failed to load service area {area_id}: {e}")
            raise ServiceAreaStoreError(str(e)) from e
        rows = response.data or []
        return service_area_from_record(rows[0]) if rows else None

    def insert(self, area: ServiceArea) -> ServiceArea:
        try:
            response = self._query().insert(service_area_to_record(area)).execute()
        except Exception as e:
            logger.error(f"Failed to insert service area '{area.name}': {e}")
            raise ServiceAreaStoreError(str(e)) from e
        rows = response.data or []
        return service_area_from_record(rows[0]) if rows else area

    def update(self, area: ServiceArea) -> ServiceArea:
        record = service_area_to_record(area)
        record.pop("id")
        record.pop("created_at")
        try:
            response = (
                self._query()
                .update(record)
                .eq("id", area.id)
                .eq("org_id", area.org_id)
                .execute()
            )
        except Exception as e:
            logger.error(f"Failed to update service area {area.id}: {e}")
            raise ServiceAreaStoreError(str(e)) from e
        rows = response.data or []
        if not rows:
            raise ServiceAreaStoreError(f"Service area '{area.id}' not found")
        return service_area_from_record(rows[0])

    def delete(self, org_id: str, area_id: str) -> bool:
        try:
            response = self._query().delete().eq("id", area_id).eq("org_id", org_id).execute()
        except Exception as e:
            logger.error(f"Failed to delete service area {area_id}: {e}")
            raise ServiceAreaStoreError(str(e)) from e
        return bool(response.data)


def get_default_repository() -> ServiceAreaRepository:
    """Supabase-backed repository when configured, otherwise an in-process store."""

    client = get_supabase_client()
    if client is None:
        logger.warning("Supabase not configured - service areas are kept in memory only")
        return InMemoryServiceAreaRepository()
    return SupabaseServiceAreaRepository(client=client)
