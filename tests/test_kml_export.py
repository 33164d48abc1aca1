import pytest

from geofence.services.kml.export import (
    EMPTY_KML,
    kml_filename,
    polygon_to_coordinates,
    polygon_to_kml,
    polygons_to_kml,
)
from geofence.services.kml.parser import parse_kml

from conftest import SQUARE


def test_polygon_to_coordinates_closes_ring_in_lng_lat_order() -> None:
    coords = polygon_to_coordinates([[1.5, 2.5], [1.5, 3.5], [2.5, 3.5]])
    assert coords == "2.5,1.5,0 3.5,1.5,0 3.5,2.5,0 2.5,1.5,0"


def test_polygon_to_coordinates_keeps_closed_ring() -> None:
    closed = SQUARE + [SQUARE[0]]
    assert len(polygon_to_coordinates(closed).split()) == 5


def test_polygon_to_coordinates_rejects_short_polygon() -> None:
    with pytest.raises(ValueError):
        polygon_to_coordinates([[0, 0], [1, 1]])


def test_single_polygon_document_parses_back() -> None:
    kml = polygon_to_kml(SQUARE, name="Zone A")

    assert kml.startswith('<?xml version="1.0" encoding="UTF-8"?>')
    assert "<name>Zone A</name>" in kml
    parsed = parse_kml(kml)
    assert parsed.labels == ["Zone A"]
    # Export closes the ring, so the parsed polygon has one extra vertex
    assert parsed.polygons == [SQUARE + [SQUARE[0]]]


def test_multiple_polygons_use_multigeometry() -> None:
    other = [[20.0, 20.0], [20.0, 21.0], [21.0, 21.0]]
    kml = polygons_to_kml([SQUARE, other], name="Coverage")

    assert kml.count("<MultiGeometry>") == 1
    assert kml.count("<Polygon>") == 2
    parsed = parse_kml(kml)
    assert [polygon[:-1] for polygon in parsed.polygons] == [SQUARE, other]


def test_invalid_polygons_are_skipped() -> None:
    kml = polygons_to_kml([[[0.0, 0.0]], SQUARE])
    assert "<MultiGeometry>" not in kml
    assert len(parse_kml(kml).polygons) == 1


def test_nothing_to_export_gives_empty_document() -> None:
    assert polygons_to_kml([]) == EMPTY_KML
    assert polygon_to_kml([[0.0, 0.0]]) == EMPTY_KML


def test_name_is_escaped() -> None:
    kml = polygon_to_kml(SQUARE, name='North & "East" <Zone>')
    assert "<name>North &amp; &quot;East&quot; &lt;Zone&gt;</name>" in kml
    assert parse_kml(kml).labels == ['North & "East" <Zone>']


def test_kml_filename() -> None:
    assert kml_filename("Raleigh / Durham: Zone 1") == "Raleigh  Durham Zone 1.kml"
    assert kml_filename("") == "service-area.kml"
    assert kml_filename(None) == "service-area.kml"
    assert kml_filename("???") == "service-area.kml"
    assert kml_filename("東京 Zone") == "Zone.kml"
    assert kml_filename("Café") == "Caf.kml"
    assert kml_filename("東京") == "service-area.kml"
