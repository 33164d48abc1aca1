"""Resolve US ZIP codes to ZCTA boundary polygons.

Boundaries come from the Census Bureau TIGERweb ArcGIS service (free, no key
required) as GeoJSON in lng,lat order and are converted to [lat, lng]
polygons.
"""

from __future__ import annotations

import logging
import math
import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

import httpx

from ..config import settings
from ..models.domain import Polygon

# US 5-digit ZIP, optional +4 extension which is discarded
ZIP5_PATTERN = re.compile(r"\b(\d{5})(?:-\d{4})?\b")
_LEADING_ZIP5 = re.compile(r"^(\d{5})")
_ZIP5 = re.compile(r"^\d{5}$")

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ZipNormalization:
    codes: list[str] = field(default_factory=list)
    duplicates: int = 0
    invalid: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ZipPolygonsResult:
    """Polygons resolved from a ZIP batch.

    ``labels`` runs parallel to ``polygons`` and holds the source ZIP code;
    ``failed`` lists codes that could not be resolved.
    """

    polygons: list[Polygon] = field(default_factory=list)
    labels: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    duplicates: int = 0
    invalid: list[str] = field(default_factory=list)


def extract_zip_codes(text: str) -> list[str]:
    """Extract unique 5-digit ZIP codes from CSV (or any) text, in first-seen order."""

    seen: set[str] = set()
    zips: list[str] = []
    for match in ZIP5_PATTERN.finditer(text or ""):
        zip5 = match.group(1)
        if zip5 not in seen:
            seen.add(zip5)
            zips.append(zip5)
    return zips


def normalize_zip_code(value: Any) -> Optional[str]:
    """Trim and truncate a candidate to its leading 5 digits; None if it is not a ZIP."""

    candidate = str(value).strip()
    match = _LEADING_ZIP5.match(candidate)
    if match:
        candidate = match.group(1)
    return candidate if _ZIP5.match(candidate) else None


def normalize_zip_codes(codes: Iterable[Any]) -> ZipNormalization:
    result = ZipNormalization()
    seen: set[str] = set()
    for raw in codes:
        zip5 = normalize_zip_code(raw)
        if zip5 is None:
            result.invalid.append(str(raw))
            continue
        if zip5 in seen:
            result.duplicates += 1
            continue
        seen.add(zip5)
        result.codes.append(zip5)
    return result


def _outer_ring(geometry: dict) -> list:
    coordinates = geometry.get("coordinates")
    if geometry.get("type") == "MultiPolygon":
        if not isinstance(coordinates, list) or not coordinates:
            return []
        coordinates = coordinates[0]
    if not isinstance(coordinates, list) or not coordinates:
        return []
    ring = coordinates[0]
    return ring if isinstance(ring, list) else []


def geojson_to_polygon(payload: Any) -> Optional[Polygon]:
    """Outer ring of the first feature of a GeoJSON FeatureCollection as a closed [lat, lng] polygon."""

    if not isinstance(payload, dict) or payload.get("type") != "FeatureCollection":
        return None
    features = payload.get("features")
    if not isinstance(features, list) or not features or not isinstance(features[0], dict):
        return None
    geometry = features[0].get("geometry")
    if not isinstance(geometry, dict) or geometry.get("type") not in ("Polygon", "MultiPolygon"):
        return None

    polygon: Polygon = []
    for point in _outer_ring(geometry):
        if not isinstance(point, (list, tuple)) or len(point) < 2:
            continue
        try:
            lng, lat = float(point[0]), float(point[1])
        except (TypeError, ValueError):
            continue
        if math.isfinite(lat) and math.isfinite(lng):
            polygon.append([lat, lng])

    if len(polygon) < 3:
        return None
    if polygon[0] != polygon[-1]:
        polygon.append(list(polygon[0]))
    return polygon


class CensusZCTAClient:
    """HTTP client for ZCTA boundary lookups."""

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = base_url or settings.zcta_query_url
        self.timeout = timeout if timeout is not None else settings.zcta_timeout_seconds
        self._transport = transport

    def _get_client(self) -> httpx.Client:
        return httpx.Client(timeout=httpx.Timeout(self.timeout), transport=self._transport)

    def fetch_polygon(self, zip5: str) -> Optional[Polygon]:
        """Fetch one ZCTA polygon; None if the ZIP is unknown or the lookup fails."""

        params = {
            "where": f"GEOID='{zip5}'",
            "outFields": "*",
            "returnGeometry": "true",
            "outSR": "4326",
            "f": "geojson",
        }
        client = self._get_client()
        try:
            response = client.get(self.base_url, params=params)
            if not response.is_success:
                logger.warning(f"ZCTA lookup for {zip5} returned HTTP {response.status_code}")
                return None
            payload = response.json()
        except httpx.TimeoutException:
            logger.warning(f"ZCTA lookup for {zip5} timed out after {self.timeout:g}s")
            return None
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning(f"ZCTA lookup for {zip5} failed: {exc}")
            return None
        finally:
            client.close()

        polygon = geojson_to_polygon(payload)
        if polygon is None:
            logger.debug(f"No usable ZCTA boundary returned for {zip5}")
        return polygon


def zip_codes_to_polygons(
    zip_codes: Iterable[Any],
    client: CensusZCTAClient | None = None,
    max_concurrency: int | None = None,
) -> ZipPolygonsResult:
    """Convert ZIP codes to ZCTA polygons.

    Lookups run one at a time unless ``max_concurrency`` is above 1, in which
    case a bounded thread pool is used. Either way the output order follows
    the normalized input order, and a failing code never aborts the batch.
    """

    client = client or CensusZCTAClient()
    workers = max_concurrency if max_concurrency is not None else settings.zcta_max_concurrency
    normalized = normalize_zip_codes(zip_codes)
    result = ZipPolygonsResult(duplicates=normalized.duplicates, invalid=normalized.invalid)

    if workers > 1 and len(normalized.codes) > 1:
        with ThreadPoolExecutor(max_workers=workers) as executor:
            fetched = list(executor.map(client.fetch_polygon, normalized.codes))
    else:
        fetched = [client.fetch_polygon(zip5) for zip5 in normalized.codes]

    for zip5, polygon in zip(normalized.codes, fetched):
        if polygon:
            result.polygons.append(polygon)
            result.labels.append(zip5)
        else:
            result.failed.append(zip5)

    if result.failed:
        logger.warning(f"Could not resolve {len(result.failed)} of {len(normalized.codes)} ZIP code(s): {result.failed}")
    return result
