from datetime import datetime, timedelta, timezone

import httpx
import pytest

from geofence.models.domain import ZoneDisplay
from geofence.persistence.service_areas import InMemoryServiceAreaRepository, service_area_from_record
from geofence.schemas.service_areas import ServiceAreaCreate, ServiceAreaUpdate, ZoneDisplayModel
from geofence.services.cache import NullDocumentCache
from geofence.services.kml.network import NetworkKMLFetcher
from geofence.services.kml.parser import parse_kml
from geofence.services.service_areas import (
    ServiceAreaError,
    ServiceAreaNotFound,
    ServiceAreaService,
    ZipBatchTooLarge,
)
from geofence.services.zcta import CensusZCTAClient

from conftest import (
    RALEIGH_COORDS,
    SQUARE,
    RecordingHandler,
    kml_document,
    network_link,
    polygon_placemark,
)

ORG = "org-1"
LINK = "https://maps.example.com/kml?mid=abc"
RALEIGH_POINT = (35.75, -78.65)
OTHER_SQUARE = [[5.0, 5.0], [5.0, 15.0], [15.0, 15.0], [15.0, 5.0]]


class FixedNow:
    def __init__(self) -> None:
        self.value = datetime(2024, 6, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.value


@pytest.fixture
def now() -> FixedNow:
    return FixedNow()


@pytest.fixture
def repo() -> InMemoryServiceAreaRepository:
    return InMemoryServiceAreaRepository()


@pytest.fixture
def service(
    repo: InMemoryServiceAreaRepository,
    fetcher: NetworkKMLFetcher,
    zcta_client: CensusZCTAClient,
    now: FixedNow,
) -> ServiceAreaService:
    return ServiceAreaService(repository=repo, fetcher=fetcher, zcta_client=zcta_client, now=now)


def _row(area_id: str, name: str, polygon, **extra) -> dict:
    return {"id": area_id, "org_id": ORG, "name": name, "polygon": polygon, **extra}


# ---------------------------------------------------------------------------
# Ingestion
# ---------------------------------------------------------------------------


def test_create_from_single_drawn_polygon(service: ServiceAreaService, repo: InMemoryServiceAreaRepository) -> None:
    created = service.create_area(ORG, ServiceAreaCreate(name="  Downtown  ", polygon=SQUARE))

    area = created.area
    assert area.name == "Downtown"
    assert area.polygons == [SQUARE]
    assert area.network_link_url is None
    assert repo.raw_row(area.id)["polygon"] == [SQUARE]


def test_create_with_zone_display(service: ServiceAreaService) -> None:
    created = service.create_area(
        ORG,
        ServiceAreaCreate(
            name="Zones",
            polygon=[SQUARE, OTHER_SQUARE],
            zone_display=[ZoneDisplayModel(label="West", color="#ff0000")],
        ),
    )

    labels = [entry.label for entry in created.area.zone_display]
    assert labels == ["West", None]
    assert created.area.zone_label(1) == "Zones"


def test_create_from_kml_uses_placemark_names(service: ServiceAreaService) -> None:
    kml = kml_document(polygon_placemark(RALEIGH_COORDS, name="Raleigh"), polygon_placemark(RALEIGH_COORDS))
    area = service.create_area(ORG, ServiceAreaCreate(name="From KML", kml_content=kml)).area

    assert len(area.polygons) == 2
    assert [entry.label for entry in area.zone_display] == ["Raleigh", None]


def test_uploaded_network_link_is_followed(
    service: ServiceAreaService, kml_server: RecordingHandler, now: FixedNow
) -> None:
    kml = kml_document(network_link(LINK))
    area = service.create_area(ORG, ServiceAreaCreate(name="Linked", kml_content=kml)).area

    assert kml_server.calls == 1
    assert str(kml_server.requests[0].url) == LINK
    assert area.network_link_url == LINK
    assert area.network_link_fetched_at == now.value
    assert len(area.polygons) == 1


def test_uploaded_network_link_failure_is_explained(repo: InMemoryServiceAreaRepository, zcta_client) -> None:
    failing = NetworkKMLFetcher(
        cache=NullDocumentCache(),
        transport=httpx.MockTransport(lambda request: httpx.Response(403)),
    )
    service = ServiceAreaService(repository=repo, fetcher=failing, zcta_client=zcta_client)

    with pytest.raises(ServiceAreaError) as excinfo:
        service.create_area(ORG, ServiceAreaCreate(name="Linked", kml_content=kml_document(network_link(LINK))))

    assert str(excinfo.value) == "Failed to validate NetworkLink: Failed to fetch KML from URL: HTTP 403 Forbidden"
    assert repo.list_for_org(ORG) == []


def test_create_from_network_link_url(service: ServiceAreaService, now: FixedNow) -> None:
    area = service.create_area(ORG, ServiceAreaCreate(name="Remote", network_link_url=f"  {LINK} ")).area

    assert area.network_link_url == LINK
    assert area.network_link_fetched_at == now.value
    assert area.zone_display[0].label == "Raleigh"


def test_invalid_kml_is_rejected(service: ServiceAreaService) -> None:
    with pytest.raises(ServiceAreaError, match="No valid polygon coordinates"):
        service.create_area(ORG, ServiceAreaCreate(name="Bad", kml_content="<kml></kml>"))


def test_create_from_zip_codes(service: ServiceAreaService) -> None:
    created = service.create_area(
        ORG,
        ServiceAreaCreate(name="ZIPs", zip_codes=["27601", "99999", "27601-1111", "12"]),
    )

    assert len(created.area.polygons) == 1
    assert created.area.zone_display[0].label == "27601"
    assert created.failed_zip_codes == ["99999"]
    assert created.duplicate_zip_codes == 1
    assert created.invalid_zip_codes == ["12"]


def test_create_from_zip_text(service: ServiceAreaService, zcta_server: RecordingHandler) -> None:
    created = service.create_area(ORG, ServiceAreaCreate(name="CSV", zip_text="zip\n27601\n27601\n"))

    assert len(created.area.polygons) == 1
    assert zcta_server.calls == 1


def test_zip_batch_cap(repo, fetcher, zcta_client, zcta_server: RecordingHandler) -> None:
    service = ServiceAreaService(repository=repo, fetcher=fetcher, zcta_client=zcta_client, zip_batch_max=2)

    with pytest.raises(ZipBatchTooLarge):
        service.create_area(ORG, ServiceAreaCreate(name="Big", zip_codes=["10001", "10002", "10003"]))
    assert zcta_server.calls == 0


def test_no_zip_resolves(service: ServiceAreaService) -> None:
    with pytest.raises(ServiceAreaError, match="99998, 99999"):
        service.create_area(ORG, ServiceAreaCreate(name="Nope", zip_codes=["99998", "99999"]))


def test_no_valid_zip_codes(service: ServiceAreaService) -> None:
    with pytest.raises(ServiceAreaError, match="No valid 5-digit ZIP codes found."):
        service.create_area(ORG, ServiceAreaCreate(name="Nope", zip_text="no zips here"))


def test_only_one_source_allowed(service: ServiceAreaService) -> None:
    with pytest.raises(ServiceAreaError, match="Provide only one of"):
        service.create_area(ORG, ServiceAreaCreate(name="Both", polygon=SQUARE, network_link_url=LINK))


def test_polygon_without_valid_rings(service: ServiceAreaService) -> None:
    with pytest.raises(ServiceAreaError, match="3\\+ points"):
        service.create_area(ORG, ServiceAreaCreate(name="Short", polygon=[[0, 0], [1, 1]]))


def test_no_source(service: ServiceAreaService) -> None:
    with pytest.raises(ServiceAreaError, match="Provide polygon, kml_content, network_link_url or zip_codes"):
        service.create_area(ORG, ServiceAreaCreate(name="Empty"))


def test_draft_without_polygons(service: ServiceAreaService) -> None:
    area = service.create_area(ORG, ServiceAreaCreate(name="Draft", allow_empty=True)).area

    assert area.polygons == []
    assert service.get_area(ORG, area.id).polygons == []


# ---------------------------------------------------------------------------
# Update / delete
# ---------------------------------------------------------------------------


def test_update_name_keeps_polygons(service: ServiceAreaService) -> None:
    area = service.create_area(ORG, ServiceAreaCreate(name="Old", polygon=SQUARE)).area

    updated = service.update_area(ORG, area.id, ServiceAreaUpdate(name="New"))

    assert updated.name == "New"
    assert updated.polygons == [SQUARE]


def test_update_replaces_polygons_wholesale(service: ServiceAreaService) -> None:
    area = service.create_area(
        ORG,
        ServiceAreaCreate(name="Zones", polygon=[SQUARE], zone_display=[ZoneDisplayModel(label="A")]),
    ).area

    updated = service.update_area(ORG, area.id, ServiceAreaUpdate(polygon=[OTHER_SQUARE, SQUARE]))

    assert updated.polygons == [OTHER_SQUARE, SQUARE]
    assert updated.zone_display == [ZoneDisplay(), ZoneDisplay()]


def test_update_with_null_polygon_clears_area(service: ServiceAreaService) -> None:
    area = service.create_area(ORG, ServiceAreaCreate(name="Zones", polygon=SQUARE)).area

    updated = service.update_area(ORG, area.id, ServiceAreaUpdate.model_validate({"polygon": None}))

    assert updated.polygons == []


def test_update_network_link_resets_fetch_time(service: ServiceAreaService) -> None:
    area = service.create_area(ORG, ServiceAreaCreate(name="Remote", network_link_url=LINK)).area

    same = service.update_area(ORG, area.id, ServiceAreaUpdate(network_link_url=LINK))
    assert same.network_link_fetched_at is not None

    changed = service.update_area(ORG, area.id, ServiceAreaUpdate(network_link_url="https://maps.example.com/new"))
    assert changed.network_link_fetched_at is None


def test_update_unknown_area(service: ServiceAreaService) -> None:
    with pytest.raises(ServiceAreaNotFound):
        service.update_area(ORG, "missing", ServiceAreaUpdate(name="x"))


def test_delete(service: ServiceAreaService) -> None:
    area = service.create_area(ORG, ServiceAreaCreate(name="Gone", polygon=SQUARE)).area

    service.delete_area(ORG, area.id)

    with pytest.raises(ServiceAreaNotFound):
        service.get_area(ORG, area.id)
    with pytest.raises(ServiceAreaNotFound):
        service.delete_area(ORG, area.id)


def test_other_org_cannot_see_area(service: ServiceAreaService) -> None:
    area = service.create_area(ORG, ServiceAreaCreate(name="Mine", polygon=SQUARE)).area

    with pytest.raises(ServiceAreaNotFound):
        service.get_area("org-2", area.id)


# ---------------------------------------------------------------------------
# Network link refresh
# ---------------------------------------------------------------------------


def test_refresh_from_link_bypasses_cache(service: ServiceAreaService, kml_server: RecordingHandler, now: FixedNow) -> None:
    area = service.create_area(ORG, ServiceAreaCreate(name="Remote", network_link_url=LINK)).area
    now.value += timedelta(minutes=5)

    refreshed = service.refresh_from_link(ORG, area.id)

    assert kml_server.calls == 2
    assert refreshed.network_link_fetched_at == now.value


def test_refresh_without_link(service: ServiceAreaService) -> None:
    area = service.create_area(ORG, ServiceAreaCreate(name="Drawn", polygon=SQUARE)).area

    with pytest.raises(ServiceAreaError, match="no network link URL"):
        service.refresh_from_link(ORG, area.id)


def test_stale_link_is_refreshed_before_point_check(
    repo: InMemoryServiceAreaRepository, service: ServiceAreaService, kml_server: RecordingHandler, now: FixedNow
) -> None:
    fetched = (now.value - timedelta(hours=25)).isoformat()
    repo.insert(
        service_area_from_record(
            _row("linked", "Linked", SQUARE, network_link_url=LINK, network_link_fetched_at=fetched)
        )
    )

    result = service.check_point(ORG, *RALEIGH_POINT)

    assert kml_server.calls == 1
    assert result.in_service_area is True
    stored = service.get_area(ORG, "linked")
    assert stored.network_link_fetched_at == now.value
    assert len(stored.polygons[0]) == 5


def test_fresh_link_is_not_refetched(
    repo: InMemoryServiceAreaRepository, service: ServiceAreaService, kml_server: RecordingHandler, now: FixedNow
) -> None:
    fetched = (now.value - timedelta(hours=1)).isoformat()
    repo.insert(
        service_area_from_record(
            _row("linked", "Linked", SQUARE, network_link_url=LINK, network_link_fetched_at=fetched)
        )
    )

    result = service.check_point(ORG, *RALEIGH_POINT)

    assert kml_server.calls == 0
    assert result.in_service_area is False


def test_failed_refresh_falls_back_to_stored_polygons(repo: InMemoryServiceAreaRepository, zcta_client) -> None:
    failing = NetworkKMLFetcher(
        cache=NullDocumentCache(),
        transport=httpx.MockTransport(lambda request: httpx.Response(500)),
    )
    service = ServiceAreaService(repository=repo, fetcher=failing, zcta_client=zcta_client)
    repo.insert(service_area_from_record(_row("linked", "Linked", SQUARE, network_link_url=LINK)))

    result = service.check_point(ORG, 5, 5)

    assert result.in_service_area is True
    assert service.get_area(ORG, "linked").network_link_fetched_at is None


# ---------------------------------------------------------------------------
# Point checks
# ---------------------------------------------------------------------------


@pytest.fixture
def overlapping(repo: InMemoryServiceAreaRepository) -> InMemoryServiceAreaRepository:
    repo.insert(service_area_from_record(_row("a", "Alpha", SQUARE, zone_display=[{"label": "Core"}])))
    repo.insert(service_area_from_record(_row("b", "Beta", OTHER_SQUARE)))
    return repo


def test_first_match_stops_early(service: ServiceAreaService, overlapping) -> None:
    result = service.check_point(ORG, 7, 7)

    assert result.in_service_area is True
    assert [(m.service_area_id, m.zone_index, m.label) for m in result.matches] == [("a", 0, "Core")]


def test_all_matches(service: ServiceAreaService, overlapping) -> None:
    result = service.check_point(ORG, 7, 7, match="all")

    assert [(m.service_area_name, m.label) for m in result.matches] == [("Alpha", "Core"), ("Beta", "Beta")]


def test_area_ids_filter(service: ServiceAreaService, overlapping) -> None:
    result = service.check_point(ORG, 7, 7, area_ids=["b", "unknown"])

    assert [m.service_area_id for m in result.matches] == ["b"]


def test_outside_every_area(service: ServiceAreaService, overlapping) -> None:
    result = service.check_point(ORG, 40, 40)

    assert result.in_service_area is False
    assert result.near_boundary is False
    assert result.matches == []


def test_boundary_point_with_and_without_tolerance(service: ServiceAreaService, overlapping) -> None:
    strict = service.check_point(ORG, 10, 2)
    assert strict.in_service_area is False
    assert strict.near_boundary is True

    lenient = service.check_point(ORG, 10, 2, tolerance=0.001)
    assert lenient.in_service_area is True


@pytest.mark.parametrize("lat,lng", [(91, 0), (0, -181), (float("nan"), 0)])
def test_coordinates_out_of_range(service: ServiceAreaService, lat: float, lng: float) -> None:
    with pytest.raises(ServiceAreaError, match="Coordinates out of valid range."):
        service.check_point(ORG, lat, lng)


def test_org_without_areas(service: ServiceAreaService) -> None:
    assert service.check_point(ORG, 1, 1).in_service_area is False


# ---------------------------------------------------------------------------
# ZIP lookup, export, map data
# ---------------------------------------------------------------------------


def test_zip_to_polygon(service: ServiceAreaService) -> None:
    zip5, polygon = service.zip_to_polygon(" 27601-1234 ")

    assert zip5 == "27601"
    assert polygon[0] == polygon[-1]


def test_zip_to_polygon_errors(service: ServiceAreaService) -> None:
    with pytest.raises(ServiceAreaError, match="Valid 5-digit US ZIP code required"):
        service.zip_to_polygon("abc")
    with pytest.raises(ServiceAreaNotFound, match="99999"):
        service.zip_to_polygon("99999")


def test_download_kml(service: ServiceAreaService) -> None:
    area = service.create_area(ORG, ServiceAreaCreate(name="Down/Town", polygon=[SQUARE, OTHER_SQUARE])).area

    filename, kml = service.download_kml(ORG, area.id)

    assert filename == "DownTown.kml"
    assert len(parse_kml(kml).polygons) == 2


def test_download_kml_of_draft(service: ServiceAreaService) -> None:
    area = service.create_area(ORG, ServiceAreaCreate(name="Draft", allow_empty=True)).area

    with pytest.raises(ServiceAreaError, match="no polygon data"):
        service.download_kml(ORG, area.id)


def test_map_data_labels_default_to_area_name(service: ServiceAreaService, overlapping) -> None:
    areas = {item.area.id: item for item in service.map_data(ORG)}

    assert [entry.label for entry in areas["a"].zone_display] == ["Core"]
    assert [entry.label for entry in areas["b"].zone_display] == ["Beta"]
    assert areas["b"].bounds == {"north": 15.0, "south": 5.0, "east": 15.0, "west": 5.0}
    assert areas["b"].center == pytest.approx({"lat": 10.0, "lng": 10.0})


def test_clear_cache(service: ServiceAreaService, kml_server: RecordingHandler) -> None:
    service.create_area(ORG, ServiceAreaCreate(name="Remote", network_link_url=LINK))
    service.clear_cache(LINK)
    service.create_area(ORG, ServiceAreaCreate(name="Remote again", network_link_url=LINK))
    service.create_area(ORG, ServiceAreaCreate(name="Cached", network_link_url=LINK))
    service.clear_cache()
    service.create_area(ORG, ServiceAreaCreate(name="Refetched", network_link_url=LINK))

    assert kml_server.calls == 3
