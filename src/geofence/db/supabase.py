"""Supabase client for the service-area store."""

import logging
from functools import lru_cache

from supabase import Client, create_client

from ..config import settings

logger = logging.getLogger(__name__)


@lru_cache()
def get_supabase_client() -> Client | None:
    """Shared Supabase client, or None when GEOFENCE_SUPABASE_URL/KEY are unset.

    Creating the client does not contact the server; the first query does.
    """
    if not settings.supabase_url or not settings.supabase_key:
        logger.warning("Supabase credentials not configured (missing URL or key)")
        return None

    try:
        return create_client(settings.supabase_url, settings.supabase_key)
    except Exception as e:
        logger.error(f"Failed to create Supabase client for table '{settings.service_areas_table}': {e}")
        return None
