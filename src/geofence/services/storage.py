"""Canonical mapping between stored ``service_areas.polygon`` values and polygon lists.

The stored column holds either a single polygon (``[[lat, lng], ...]``) from
older rows or a list of polygons (``[poly1, poly2, ...]``). Everything
outside this module works with the list-of-polygons form only.
"""

from __future__ import annotations

import math
import re
from numbers import Real
from typing import Any, Optional, Sequence

from ..models.domain import Polygon, ZoneDisplay

_HEX_COLOR = re.compile(r"^#(?:[0-9a-fA-F]{3}|[0-9a-fA-F]{6})$")


def _is_number(value: Any) -> bool:
    return isinstance(value, Real) and not isinstance(value, bool)


def is_single_polygon(value: Any) -> bool:
    """True when ``value`` looks like one polygon rather than a list of polygons."""

    return (
        isinstance(value, (list, tuple))
        and len(value) >= 3
        and isinstance(value[0], (list, tuple))
        and len(value[0]) >= 2
        and _is_number(value[0][0])
    )


def _coerce_polygon(value: Sequence[Sequence[Any]]) -> Optional[Polygon]:
    polygon: Polygon = []
    for point in value:
        if not isinstance(point, (list, tuple)) or len(point) < 2:
            return None
        lat, lng = point[0], point[1]
        if not (_is_number(lat) and _is_number(lng)):
            return None
        lat, lng = float(lat), float(lng)
        if not (math.isfinite(lat) and math.isfinite(lng)):
            return None
        polygon.append([lat, lng])
    return polygon


def _valid_polygons(value: Any) -> list[Polygon]:
    if not value or not isinstance(value, (list, tuple)):
        return []
    candidates = [value] if is_single_polygon(value) else value
    polygons: list[Polygon] = []
    for candidate in candidates:
        if not is_single_polygon(candidate):
            continue
        polygon = _coerce_polygon(candidate)
        if polygon is not None:
            polygons.append(polygon)
    return polygons


def normalize_service_area_polygons(stored: Any) -> list[Polygon]:
    """Return a list of polygons from a stored polygon value.

    Handles legacy single-polygon rows and multi-polygon rows. Elements that
    are not valid polygons are dropped rather than failing the whole read.
    """

    return _valid_polygons(stored)


def to_stored_polygons(polygon: Any) -> list[Polygon]:
    """Ensure a value is written as a list of polygons.

    Accepts a single polygon or a list of polygons.
    """

    return _valid_polygons(polygon)


def _clean_color(value: Any) -> Optional[str]:
    if isinstance(value, str) and _HEX_COLOR.match(value.strip()):
        return value.strip()
    return None


def _clean_label(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def parse_zone_display(stored: Any) -> list[ZoneDisplay]:
    """Read the stored ``zone_display`` array; unusable entries become empty metadata."""

    if not isinstance(stored, (list, tuple)):
        return []
    entries: list[ZoneDisplay] = []
    for item in stored:
        if isinstance(item, ZoneDisplay):
            entries.append(ZoneDisplay(label=_clean_label(item.label), color=_clean_color(item.color)))
        elif isinstance(item, dict):
            entries.append(ZoneDisplay(label=_clean_label(item.get("label")), color=_clean_color(item.get("color"))))
        else:
            entries.append(ZoneDisplay())
    return entries


def align_zone_display(
    zone_display: Any,
    polygon_count: int,
    default_label: Optional[str] = None,
) -> list[ZoneDisplay]:
    """Zone metadata padded or truncated to exactly one entry per polygon."""

    entries = parse_zone_display(zone_display)[:polygon_count]
    entries.extend(ZoneDisplay() for _ in range(polygon_count - len(entries)))
    if default_label is not None:
        for entry in entries:
            if entry.label is None:
                entry.label = default_label
    return entries


def zone_display_to_stored(zone_display: Sequence[ZoneDisplay]) -> list[dict] | None:
    """Stored form of zone metadata, or None when no entry carries anything."""

    records = [entry.to_record() for entry in zone_display]
    if not any(records):
        return None
    return records
