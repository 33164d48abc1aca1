"""Planar point-in-polygon helpers for service-area checks.

Polygons are lists of ``[lat, lng]`` pairs and are treated as implicitly
closed. All math is planar in degrees; no geodesic correction is applied.

Boundary behaviour of :func:`point_in_polygon`: the ray is cast toward
increasing longitude, so a point lying exactly on a southern (minimum
latitude) or western (minimum longitude) edge counts as inside while a point
on a northern or eastern edge counts as outside. Use
:func:`point_near_boundary` when edge points must be treated symmetrically.
"""

from __future__ import annotations

import math
from typing import Optional, Sequence

from shapely.geometry import MultiPolygon, Polygon

DEFAULT_BOUNDARY_TOLERANCE = 0.0001  # degrees, roughly 11 meters


def point_in_polygon(lat: float, lng: float, polygon: Sequence[Sequence[float]]) -> bool:
    """Return True if the point is inside the polygon denoted by (lat, lng) pairs."""

    n = len(polygon)
    if n < 3:
        return False

    inside = False
    j = n - 1
    for i in range(n):
        lat_i, lng_i = polygon[i][0], polygon[i][1]
        lat_j, lng_j = polygon[j][0], polygon[j][1]

        # Edge straddles the point's latitude and crosses east of the point
        if ((lat_i > lat) != (lat_j > lat)) and (
            lng < (lng_j - lng_i) * (lat - lat_i) / (lat_j - lat_i) + lng_i
        ):
            inside = not inside
        j = i

    return inside


def distance_to_segment(
    lat: float,
    lng: float,
    start: Sequence[float],
    end: Sequence[float],
) -> float:
    """Euclidean distance in degrees from the point to the segment start-end."""

    lat1, lng1 = start[0], start[1]
    lat2, lng2 = end[0], end[1]
    d_lat = lat2 - lat1
    d_lng = lng2 - lng1

    length_sq = d_lat * d_lat + d_lng * d_lng
    if length_sq == 0:
        # Degenerate segment (start == end)
        return math.hypot(lat - lat1, lng - lng1)

    t = ((lat - lat1) * d_lat + (lng - lng1) * d_lng) / length_sq
    t = max(0.0, min(1.0, t))

    closest_lat = lat1 + t * d_lat
    closest_lng = lng1 + t * d_lng
    return math.hypot(lat - closest_lat, lng - closest_lng)


def point_near_boundary(
    lat: float,
    lng: float,
    polygon: Sequence[Sequence[float]],
    tolerance: float = DEFAULT_BOUNDARY_TOLERANCE,
) -> bool:
    """Return True if the point lies within ``tolerance`` degrees of any polygon edge."""

    n = len(polygon)
    for i in range(n):
        start = polygon[i]
        end = polygon[(i + 1) % n]
        if distance_to_segment(lat, lng, start, end) <= tolerance:
            return True
    return False


def point_in_or_near_polygon(
    lat: float,
    lng: float,
    polygon: Sequence[Sequence[float]],
    tolerance: Optional[float] = None,
) -> bool:
    if point_in_polygon(lat, lng, polygon):
        return True
    if tolerance is None or len(polygon) < 3:
        return False
    return point_near_boundary(lat, lng, polygon, tolerance)


def matching_zone_indexes(
    lat: float,
    lng: float,
    polygons: Sequence[Sequence[Sequence[float]]],
    tolerance: Optional[float] = None,
) -> list[int]:
    """Indexes of every polygon that contains the point.

    Zones may overlap; choosing the first match or all of them is left to the
    caller.
    """

    return [
        index
        for index, polygon in enumerate(polygons)
        if point_in_or_near_polygon(lat, lng, polygon, tolerance)
    ]


def _to_shape(polygons: Sequence[Sequence[Sequence[float]]]) -> MultiPolygon | None:
    shapes = [Polygon([(lng, lat) for lat, lng in polygon]) for polygon in polygons if len(polygon) >= 3]
    if not shapes:
        return None
    return MultiPolygon(shapes)


def polygons_bounds(polygons: Sequence[Sequence[Sequence[float]]]) -> dict[str, float] | None:
    """Bounding box of all polygons as north/south/east/west degrees."""

    shape = _to_shape(polygons)
    if shape is None:
        return None
    min_lng, min_lat, max_lng, max_lat = shape.bounds
    return {"north": max_lat, "south": min_lat, "east": max_lng, "west": min_lng}


def polygons_center(polygons: Sequence[Sequence[Sequence[float]]]) -> dict[str, float] | None:
    """Centre of the polygons' envelope, suitable as a default map centre."""

    shape = _to_shape(polygons)
    if shape is None:
        return None
    centre = shape.envelope.centroid
    return {"lat": centre.y, "lng": centre.x}
