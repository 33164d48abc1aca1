"""Domain models for service areas and their zones."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

# A polygon is an ordered list of [lat, lng] pairs; closure is implied.
LatLng = list[float]
Polygon = list[LatLng]


@dataclass(slots=True)
class ZoneDisplay:
    """Display metadata for one polygon of a service area."""

    label: Optional[str] = None
    color: Optional[str] = None

    def to_record(self) -> dict:
        record: dict = {}
        if self.label is not None:
            record["label"] = self.label
        if self.color is not None:
            record["color"] = self.color
        return record


@dataclass(slots=True)
class ServiceArea:
    """Coverage area owned by one organization.

    ``polygons`` is always the canonical list-of-polygons form; the ambiguous
    stored shape is resolved when the record is read.
    """

    id: str
    org_id: str
    name: str
    polygons: list[Polygon] = field(default_factory=list)
    zone_display: list[ZoneDisplay] = field(default_factory=list)
    network_link_url: Optional[str] = None
    network_link_fetched_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def point_count(self) -> int:
        return sum(len(polygon) for polygon in self.polygons)

    def zone_label(self, index: int) -> str:
        if index < len(self.zone_display) and self.zone_display[index].label:
            return self.zone_display[index].label
        return self.name
