"""
Cursor Tracker: per-connection watermarks for incremental sync.

Two directions per connection:
- served_outbox_id: highest local outbox id handed to the counterpart
  through its pull calls
- ingested_outbox_id: highest counterpart outbox id applied locally
  through run

Watermarks only move forward. Concurrent advances race harmlessly: the
worst case is a redundant re-pull, and apply is idempotent by UID.
"""
import logging
import sqlite3
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from api.utils.datetime_utils import utc_now_iso
from api.utils.db_paths import get_sync_db_path

logger = logging.getLogger(__name__)


@dataclass
class Cursor:
    connection_id: str
    user_id: str
    served_outbox_id: int = 0
    ingested_outbox_id: int = 0
    updated_at: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "connection_id": self.connection_id,
            "served_outbox_id": self.served_outbox_id,
            "ingested_outbox_id": self.ingested_outbox_id,
            "updated_at": self.updated_at,
        }


class CursorStore:
    """SQLite-backed watermark store."""

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = Path(db_path or get_sync_db_path())
        self._ensure_schema()

    def _get_conn(self) -> sqlite3.Connection:
        """Get a database connection."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self.db_path), timeout=10.0)
        conn.row_factory = sqlite3.Row
        return conn

    def _ensure_schema(self) -> None:
        """Create the cursors table if it doesn't exist."""
        conn = self._get_conn()
        conn.execute("""
            CREATE TABLE IF NOT EXISTS sync_cursors (
                connection_id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                served_outbox_id INTEGER NOT NULL DEFAULT 0,
                ingested_outbox_id INTEGER NOT NULL DEFAULT 0,
                updated_at TIMESTAMP
            )
        """)
        conn.commit()
        conn.close()

    def get(self, connection_id: str, user_id: str = "") -> Cursor:
        """Current watermarks (zeros if the connection never synced)."""
        conn = self._get_conn()
        row = conn.execute(
            "SELECT * FROM sync_cursors WHERE connection_id = ?", (connection_id,)
        ).fetchone()
        conn.close()
        if not row:
            return Cursor(connection_id=connection_id, user_id=user_id)
        return Cursor(
            connection_id=row["connection_id"],
            user_id=row["user_id"],
            served_outbox_id=row["served_outbox_id"],
            ingested_outbox_id=row["ingested_outbox_id"],
            updated_at=row["updated_at"],
        )

    def _advance(self, column: str, user_id: str, connection_id: str, outbox_id: int) -> Cursor:
        conn = self._get_conn()
        conn.execute(f"""
            INSERT INTO sync_cursors (connection_id, user_id, {column}, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(connection_id) DO UPDATE SET
                {column} = MAX({column}, excluded.{column}),
                updated_at = excluded.updated_at
        """, (connection_id, user_id, int(outbox_id), utc_now_iso()))
        conn.commit()
        conn.close()
        return self.get(connection_id, user_id)

    def advance_served(self, user_id: str, connection_id: str, outbox_id: int) -> Cursor:
        return self._advance("served_outbox_id", user_id, connection_id, outbox_id)

    def advance_ingested(self, user_id: str, connection_id: str, outbox_id: int) -> Cursor:
        return self._advance("ingested_outbox_id", user_id, connection_id, outbox_id)


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_cursor_store: Optional[CursorStore] = None
_cursor_store_lock = threading.Lock()


def get_cursor_store(db_path: Optional[str] = None) -> CursorStore:
    """Get or create the singleton CursorStore."""
    global _cursor_store
    if _cursor_store is None:
        with _cursor_store_lock:
            if _cursor_store is None:
                _cursor_store = CursorStore(db_path)
    return _cursor_store


def reset_cursor_store() -> None:
    """Reset the singleton (for testing)."""
    global _cursor_store
    _cursor_store = None
