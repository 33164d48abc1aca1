"""Service-area orchestration."""

from .service import (
    CreatedServiceArea,
    MapArea,
    PointCheck,
    ServiceAreaError,
    ServiceAreaNotFound,
    ServiceAreaService,
    ZipBatchTooLarge,
    ZoneMatch,
)

__all__ = [
    "CreatedServiceArea",
    "MapArea",
    "PointCheck",
    "ServiceAreaError",
    "ServiceAreaNotFound",
    "ServiceAreaService",
    "ZipBatchTooLarge",
    "ZoneMatch",
]
