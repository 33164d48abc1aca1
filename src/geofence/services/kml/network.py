"""Fetch and parse KML from a NetworkLink URL, with a TTL cache."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional
from urllib.parse import urlparse

import httpx

from ...config import settings
from ...models.domain import Polygon
from ..cache import DocumentCache, TTLDocumentCache, copy_polygons
from .parser import parse_kml

KML_ACCEPT = "application/vnd.google-earth.kml+xml, application/xml;q=0.9, text/xml;q=0.9, */*;q=0.5"

logger = logging.getLogger(__name__)

# Process-wide cache shared by fetchers that are not given their own
default_cache = TTLDocumentCache(ttl_seconds=settings.network_link_cache_ttl_seconds)


@dataclass(slots=True)
class NetworkKMLResult:
    """Polygons fetched from a URL, or the reason they could not be."""

    polygons: list[Polygon] = field(default_factory=list)
    labels: list[Optional[str]] = field(default_factory=list)
    error: Optional[str] = None
    from_cache: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None


def validate_url(url: str) -> Optional[str]:
    """Return an error message when ``url`` is not a usable absolute http(s) URL."""

    if not url or not url.strip():
        return "URL is empty or invalid"
    try:
        parsed = urlparse(url)
    except ValueError:
        return f"Invalid URL format: {url}"
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return f"Invalid URL format: {url}"
    return None


class NetworkKMLFetcher:
    """Resolve a NetworkLink URL to polygons.

    A fetched document that is itself a NetworkLink is reported as an error:
    indirection is followed for exactly one hop so that two documents pointing
    at each other cannot loop.
    """

    def __init__(
        self,
        cache: DocumentCache | None = None,
        timeout: float | None = None,
        max_redirects: int | None = None,
        user_agent: str | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.cache = cache if cache is not None else default_cache
        self.timeout = timeout if timeout is not None else settings.network_link_timeout_seconds
        self.max_redirects = max_redirects if max_redirects is not None else settings.network_link_max_redirects
        self.user_agent = user_agent or settings.network_link_user_agent
        self._transport = transport

    def _get_client(self) -> httpx.Client:
        return httpx.Client(
            timeout=httpx.Timeout(self.timeout),
            follow_redirects=self.max_redirects > 0,
            max_redirects=self.max_redirects,
            headers={"User-Agent": self.user_agent, "Accept": KML_ACCEPT},
            transport=self._transport,
        )

    def fetch(self, url: str) -> NetworkKMLResult:
        """Fetch the KML at ``url`` and extract its polygons.

        Successful results are cached under the exact URL string.
        """

        invalid = validate_url(url)
        if invalid:
            return NetworkKMLResult(error=invalid)

        cached = self.cache.get(url)
        if cached is not None:
            logger.info(f"Using cached KML for {url}")
            return NetworkKMLResult(polygons=copy_polygons(cached.polygons), labels=list(cached.labels), from_cache=True)

        logger.info(f"Fetching KML from {url}")
        client = self._get_client()
        try:
            response = client.get(url)
        except httpx.TimeoutException as exc:
            logger.warning(f"Timed out fetching KML from {url}: {exc}")
            return NetworkKMLResult(
                error=f"Failed to fetch KML from URL: request timed out after {self.timeout:g}s"
            )
        except httpx.TooManyRedirects as exc:
            logger.warning(f"Too many redirects fetching KML from {url}: {exc}")
            return NetworkKMLResult(
                error=f"Failed to fetch KML from URL: more than {self.max_redirects} redirect(s)"
            )
        except httpx.HTTPError as exc:
            logger.warning(f"Error fetching KML from {url}: {exc}")
            return NetworkKMLResult(error=f"Failed to fetch KML from URL: {exc}")
        finally:
            client.close()

        if not response.is_success:
            return NetworkKMLResult(
                error=f"Failed to fetch KML from URL: HTTP {response.status_code} {response.reason_phrase}".rstrip()
            )

        kml_content = response.text
        if not kml_content.strip():
            return NetworkKMLResult(error="The fetched KML document is empty.")

        parsed = parse_kml(kml_content)
        if parsed.error:
            return NetworkKMLResult(error=f"Failed to parse fetched KML: {parsed.error}")

        if parsed.network_link:
            return NetworkKMLResult(
                error=(
                    "The fetched KML is itself a NetworkLink reference. "
                    "Please ensure the final URL points to actual polygon data."
                )
            )

        if not parsed.polygons:
            return NetworkKMLResult(error="No polygon coordinates found in the fetched KML file")

        self.cache.set(url, parsed.polygons, parsed.labels)
        logger.info(f"Fetched and cached KML with {len(parsed.polygons)} polygon(s) from {url}")
        return NetworkKMLResult(polygons=parsed.polygons, labels=parsed.labels)

    def clear_cache(self) -> None:
        self.cache.clear()
        logger.info("Cleared KML cache")

    def clear_cache_for_url(self, url: str) -> None:
        self.cache.delete(url)
        logger.info(f"Cleared KML cache for {url}")


def fetch_and_parse_network_kml(url: str) -> NetworkKMLResult:
    """Fetch ``url`` with the process-wide cache."""

    return NetworkKMLFetcher().fetch(url)


def clear_kml_cache() -> None:
    default_cache.clear()
    logger.info("Cleared KML cache")


def clear_kml_cache_for_url(url: str) -> None:
    default_cache.delete(url)
    logger.info(f"Cleared KML cache for {url}")
