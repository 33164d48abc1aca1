"""Route group exports."""

from . import health, service_areas

__all__ = ["health", "service_areas"]
