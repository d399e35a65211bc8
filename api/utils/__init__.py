# Kinsync API Utilities
"""
Shared utility functions for Kinsync API services.
"""

from api.utils.datetime_utils import make_aware, parse_timestamp, utc_now, utc_now_iso
from api.utils.db_paths import get_sync_db_path

__all__ = ["make_aware", "parse_timestamp", "utc_now", "utc_now_iso", "get_sync_db_path"]
