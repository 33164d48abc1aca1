"""Time-bounded cache for parsed remote documents."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Protocol

from ..models.domain import Polygon


@dataclass(slots=True, frozen=True)
class CachedDocument:
    """Parsed polygons of one remote document and when they were fetched."""

    polygons: list[Polygon]
    fetched_at: float
    labels: list[Optional[str]] = field(default_factory=list)


def copy_polygons(polygons: list[Polygon]) -> list[Polygon]:
    return [[list(point) for point in polygon] for polygon in polygons]


class DocumentCache(Protocol):
    def get(self, key: str) -> CachedDocument | None:
        ...

    def set(self, key: str, polygons: list[Polygon], labels: list[Optional[str]] | None = None) -> CachedDocument:
        ...

    def delete(self, key: str) -> None:
        ...

    def clear(self) -> None:
        ...


class TTLDocumentCache:
    """In-memory cache whose entries expire ``ttl_seconds`` after they were stored.

    Entries are only ever replaced or evicted as a whole. No locking: two
    concurrent misses for the same key both fetch and the last write wins.
    """

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.time) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, CachedDocument] = {}

    def get(self, key: str) -> CachedDocument | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() - entry.fetched_at >= self.ttl_seconds:
            self._entries.pop(key, None)
            return None
        return entry

    def set(self, key: str, polygons: list[Polygon], labels: list[Optional[str]] | None = None) -> CachedDocument:
        entry = CachedDocument(polygons=copy_polygons(polygons), fetched_at=self._clock(), labels=list(labels or []))
        self._entries[key] = entry
        return entry

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None


class NullDocumentCache:
    """Cache that never stores anything; every lookup misses."""

    def get(self, key: str) -> CachedDocument | None:
        return None

    def set(self, key: str, polygons: list[Polygon], labels: list[Optional[str]] | None = None) -> CachedDocument:
        return CachedDocument(polygons=polygons, fetched_at=time.time(), labels=list(labels or []))

    def delete(self, key: str) -> None:
        return None

    def clear(self) -> None:
        return None
