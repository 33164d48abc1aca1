"""KML parsing for service-area polygons.

Only the parts of KML the service-area flow needs are read: ``<coordinates>``
blocks, the ``<name>`` of their placemark, and ``<NetworkLink>`` targets. No
XML parser is involved, so partially broken exports still yield whatever
polygons they contain.
"""

from __future__ import annotations

import html
import math
import re
from bisect import bisect_right
from dataclasses import dataclass, field
from typing import Optional

from ...models.domain import Polygon

_COORDINATES = re.compile(
    r"<(?:\w+:)?coordinates\b[^>]*>(.*?)</(?:\w+:)?coordinates>",
    re.DOTALL,
)
_PLACEMARK = re.compile(r"<(?:\w+:)?Placemark\b[^>]*>(.*?)</(?:\w+:)?Placemark>", re.DOTALL)
_NAME = re.compile(r"<(?:\w+:)?name\b[^>]*>(.*?)</(?:\w+:)?name>", re.DOTALL)
_NETWORK_LINK = re.compile(r"<(?:\w+:)?NetworkLink\b[^>]*>(.*?)</(?:\w+:)?NetworkLink>", re.DOTALL)
_NETWORK_LINK_OPEN = re.compile(r"<(?:\w+:)?NetworkLink\b")
_HREF = re.compile(r"<(?:\w+:)?href\b[^>]*>(.*?)</(?:\w+:)?href>", re.DOTALL)
_CDATA = re.compile(r"<!\[CDATA\[(.*?)\]\]>", re.DOTALL)

NETWORK_LINK_WITHOUT_TARGET = (
    "This KML file contains a NetworkLink but no target URL could be found in it. "
    "Export the map again, or upload the KML file that contains the polygon data."
)
NO_POLYGONS_FOUND = (
    "No valid polygon coordinates found in KML file. Please ensure the KML contains valid "
    "<Polygon> elements with <coordinates>. If you exported from Google Maps, make sure you "
    "downloaded the actual KML file (not a reference link)."
)


@dataclass(slots=True)
class KMLParseResult:
    """Outcome of parsing a KML document.

    Exactly one of ``polygons`` (non-empty), ``network_link`` or ``error`` is set.
    """

    polygons: list[Polygon] = field(default_factory=list)
    labels: list[Optional[str]] = field(default_factory=list)
    network_link: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def parse_coordinate_string(coord_string: str) -> Polygon:
    """Parse a KML coordinate string ("lon,lat[,alt] lon,lat[,alt] ...") into [lat, lng] pairs.

    Tokens that do not parse are skipped.
    """

    coordinates: Polygon = []
    for token in coord_string.split():
        parts = token.split(",")
        if len(parts) < 2:
            continue
        try:
            lng = float(parts[0])
            lat = float(parts[1])
        except ValueError:
            continue
        if not (math.isfinite(lat) and math.isfinite(lng)):
            continue
        # KML stores lon,lat; polygons are kept as [lat, lng]
        coordinates.append([lat, lng])
    return coordinates


def _placemark_spans(kml_content: str) -> list[tuple[int, int, Optional[str]]]:
    spans = []
    for match in _PLACEMARK.finditer(kml_content):
        body = match.group(1)
        # A placemark's own name precedes its geometry
        geometry_start = _COORDINATES.search(body)
        head = body[: geometry_start.start()] if geometry_start else body
        name_match = _NAME.search(head)
        name = None
        if name_match:
            name = _text_value(name_match.group(1)) or None
        spans.append((match.start(), match.end(), name))
    return spans


def _label_at(placemarks: list[tuple[int, int, Optional[str]]], starts: list[int], position: int) -> Optional[str]:
    # Placemark spans do not overlap and are ordered by start
    index = bisect_right(starts, position) - 1
    if index < 0:
        return None
    _, end, name = placemarks[index]
    return name if position < end else None


def _text_value(raw: str) -> str:
    cdata = _CDATA.search(raw)
    value = cdata.group(1) if cdata else raw
    return html.unescape(value).strip()


def extract_network_link(kml_content: str) -> Optional[str]:
    """Target URL of the first NetworkLink that has one, plain or CDATA-wrapped."""

    for match in _NETWORK_LINK.finditer(kml_content):
        href = _HREF.search(match.group(1))
        if href:
            url = _text_value(href.group(1))
            if url:
                return url
    return None


def parse_kml(kml_content: str) -> KMLParseResult:
    """Parse KML content and extract polygon coordinates.

    Returns polygons when any ``<coordinates>`` block has three or more valid
    points. Otherwise a NetworkLink target is returned if one exists, and
    failing that a descriptive error.
    """

    if not kml_content or not kml_content.strip():
        return KMLParseResult(error="KML content is empty.")

    placemarks = _placemark_spans(kml_content)
    starts = [start for start, _, _ in placemarks]
    polygons: list[Polygon] = []
    labels: list[Optional[str]] = []

    for match in _COORDINATES.finditer(kml_content):
        coordinates = parse_coordinate_string(match.group(1))
        if len(coordinates) < 3:
            continue
        polygons.append(coordinates)
        labels.append(_label_at(placemarks, starts, match.start()))

    # Polygon data wins over a NetworkLink in the same document
    if polygons:
        return KMLParseResult(polygons=polygons, labels=labels)

    if _NETWORK_LINK_OPEN.search(kml_content):
        url = extract_network_link(kml_content)
        if url:
            return KMLParseResult(network_link=url)
        return KMLParseResult(error=NETWORK_LINK_WITHOUT_TARGET)

    return KMLParseResult(error=NO_POLYGONS_FOUND)


def is_valid_kml(kml_content: str) -> bool:
    """Cheap structural check: a ``<kml`` root and at least one Polygon element."""

    return "<kml" in kml_content and ("<Polygon>" in kml_content or "<polygon>" in kml_content)
