from typing import Callable

import httpx
import pytest

from geofence.services.cache import TTLDocumentCache
from geofence.services.kml.network import NetworkKMLFetcher
from geofence.services.zcta import CensusZCTAClient

SQUARE = [[0.0, 0.0], [0.0, 10.0], [10.0, 10.0], [10.0, 0.0]]


def kml_document(*placemarks: str) -> str:
    body = "\n".join(placemarks)
    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        '<kml xmlns="http://www.opengis.net/kml/2.2"><Document>\n'
        f"{body}\n"
        "</Document></kml>"
    )


def polygon_placemark(coordinates: str, name: str | None = None) -> str:
    name_el = f"<name>{name}</name>" if name else ""
    return (
        f"<Placemark>{name_el}<Polygon><outerBoundaryIs><LinearRing>"
        f"<coordinates>{coordinates}</coordinates>"
        "</LinearRing></outerBoundaryIs></Polygon></Placemark>"
    )


def network_link(href: str) -> str:
    return f"<NetworkLink><name>Linked map</name><Link><href>{href}</href></Link></NetworkLink>"


# Square around Raleigh, NC in KML lon,lat order
RALEIGH_COORDS = "-78.70,35.70,0 -78.60,35.70,0 -78.60,35.80,0 -78.70,35.80,0 -78.70,35.70,0"


class FakeClock:
    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingHandler:
    """httpx.MockTransport handler that counts requests per URL."""

    def __init__(self, respond: Callable[[httpx.Request], httpx.Response]) -> None:
        self.respond = respond
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.respond(request)

    @property
    def calls(self) -> int:
        return len(self.requests)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache(clock: FakeClock) -> TTLDocumentCache:
    return TTLDocumentCache(ttl_seconds=3600, clock=clock)


@pytest.fixture
def kml_server() -> RecordingHandler:
    """Serves a one-polygon KML document for any URL."""

    document = kml_document(polygon_placemark(RALEIGH_COORDS, name="Raleigh"))
    return RecordingHandler(lambda request: httpx.Response(200, text=document))


@pytest.fixture
def fetcher(cache: TTLDocumentCache, kml_server: RecordingHandler) -> NetworkKMLFetcher:
    return NetworkKMLFetcher(cache=cache, transport=httpx.MockTransport(kml_server))


def zcta_feature_collection(ring: list[list[float]], geometry_type: str = "Polygon") -> dict:
    coordinates = [[ring]] if geometry_type == "MultiPolygon" else [ring]
    return {
        "type": "FeatureCollection",
        "features": [{"type": "Feature", "properties": {}, "geometry": {"type": geometry_type, "coordinates": coordinates}}],
    }


# lng, lat ring for a ZIP boundary, already closed
ZIP_27601_RING = [[-78.65, 35.77], [-78.63, 35.77], [-78.63, 35.79], [-78.65, 35.79], [-78.65, 35.77]]


def zcta_handler(known: dict[str, dict]) -> RecordingHandler:
    def respond(request: httpx.Request) -> httpx.Response:
        where = request.url.params.get("where", "")
        zip5 = where.split("'")[1] if "'" in where else ""
        if zip5 in known:
            return httpx.Response(200, json=known[zip5])
        return httpx.Response(200, json={"type": "FeatureCollection", "features": []})

    return RecordingHandler(respond)


@pytest.fixture
def zcta_server() -> RecordingHandler:
    return zcta_handler({"27601": zcta_feature_collection(ZIP_27601_RING)})


@pytest.fixture
def zcta_client(zcta_server: RecordingHandler) -> CensusZCTAClient:
    return CensusZCTAClient(base_url="https://zcta.test/query", transport=httpx.MockTransport(zcta_server))
