"""
Database path utilities for Kinsync API services.
"""
from pathlib import Path

from config.settings import settings


def get_sync_db_path() -> str:
    """
    Get the path to the sync database.

    Creates the parent directory if it doesn't exist.

    Returns:
        Absolute path to the sync.db file
    """
    db_dir = Path(settings.data_path)
    db_dir.mkdir(parents=True, exist_ok=True)
    return str(settings.sync_db_path)
