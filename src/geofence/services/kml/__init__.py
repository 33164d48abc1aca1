"""KML import and export."""

from .export import kml_filename, polygon_to_kml, polygons_to_kml
from .network import (
    NetworkKMLFetcher,
    NetworkKMLResult,
    clear_kml_cache,
    clear_kml_cache_for_url,
    fetch_and_parse_network_kml,
)
from .parser import KMLParseResult, is_valid_kml, parse_kml

__all__ = [
    "KMLParseResult",
    "NetworkKMLFetcher",
    "NetworkKMLResult",
    "clear_kml_cache",
    "clear_kml_cache_for_url",
    "fetch_and_parse_network_kml",
    "is_valid_kml",
    "kml_filename",
    "parse_kml",
    "polygon_to_kml",
    "polygons_to_kml",
]
