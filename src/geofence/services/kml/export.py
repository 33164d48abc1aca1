"""KML export of service-area polygons.

Output is valid for Google My Maps import and parses back through
:func:`geofence.services.kml.parser.parse_kml`.
"""

from __future__ import annotations

import re
from typing import Optional, Sequence
from xml.sax.saxutils import escape

EMPTY_KML = '<?xml version="1.0" encoding="UTF-8"?>\n<kml xmlns="http://www.opengis.net/kml/2.2"><Document></Document></kml>'

_XML_ENTITIES = {'"': "&quot;", "'": "&apos;"}


def _escape_xml(value: str) -> str:
    return escape(value, _XML_ENTITIES)


def polygon_to_coordinates(polygon: Sequence[Sequence[float]]) -> str:
    """Convert a polygon to a KML coordinate string.

    Args:
        polygon: List of [lat, lng] pairs

    Returns:
        "lng,lat,0 ..." string with the ring closed
    """
    if not polygon or len(polygon) < 3:
        raise ValueError("Polygon must have at least 3 coordinates")

    points = list(polygon)
    if list(points[0]) != list(points[-1]):
        points.append(points[0])

    # KML uses lon,lat order
    return " ".join(f"{lng},{lat},0" for lat, lng in points)


def _polygon_fragment(polygon: Sequence[Sequence[float]]) -> str:
    return (
        "<Polygon>\n"
        "        <outerBoundaryIs>\n"
        "          <LinearRing>\n"
        f"            <coordinates>{polygon_to_coordinates(polygon)}</coordinates>\n"
        "          </LinearRing>\n"
        "        </outerBoundaryIs>\n"
        "      </Polygon>"
    )


def _document(body: str, name: Optional[str]) -> str:
    name_el = f"<name>{_escape_xml(name)}</name>" if name else ""
    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        '<kml xmlns="http://www.opengis.net/kml/2.2">\n'
        "  <Document>\n"
        "    <Placemark>\n"
        f"      {name_el}\n"
        f"      {body}\n"
        "    </Placemark>\n"
        "  </Document>\n"
        "</kml>"
    )


def polygon_to_kml(polygon: Sequence[Sequence[float]], name: Optional[str] = None) -> str:
    """Generate a KML document from a single polygon."""

    if not polygon or len(polygon) < 3:
        return EMPTY_KML
    return _document(_polygon_fragment(polygon), name)


def polygons_to_kml(polygons: Sequence[Sequence[Sequence[float]]], name: Optional[str] = None) -> str:
    """Generate a KML document with one MultiGeometry placemark holding every polygon."""

    valid = [polygon for polygon in polygons if polygon and len(polygon) >= 3]
    if not valid:
        return EMPTY_KML
    if len(valid) == 1:
        return polygon_to_kml(valid[0], name)
    fragments = "\n      ".join(_polygon_fragment(polygon) for polygon in valid)
    return _document(f"<MultiGeometry>\n      {fragments}\n      </MultiGeometry>", name)


def kml_filename(name: Optional[str]) -> str:
    """Filesystem-safe download name for a service area."""

    cleaned = re.sub(r"[^\w\s-]", "", name or "", flags=re.ASCII).strip()
    return f"{cleaned or 'service-area'}.kml"

