"""
Person links: the durable local-person <-> remote-UID table per connection.

Invariant (strict 1:1 per connection):
- at most one link row per local person
- at most one *linked* row per remote UID

Excluded ("do not sync") rows share a sentinel UID and are disabled, so
they never take part in the remote-UID uniqueness.
"""
import logging
import sqlite3
import threading
import uuid
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Optional

from api.utils.datetime_utils import utc_now_iso
from api.utils.db_paths import get_sync_db_path

logger = logging.getLogger(__name__)

LINK_STATUS_LINKED = "linked"
LINK_STATUS_EXCLUDED = "excluded"

LINK_SOURCE_MANUAL = "manual"
LINK_SOURCE_SUGGESTED = "suggested"
LINK_SOURCE_IMPORT = "import"
LINK_SOURCES = (LINK_SOURCE_MANUAL, LINK_SOURCE_SUGGESTED, LINK_SOURCE_IMPORT)

# Placeholder counterpart for excluded people
EXCLUDED_SENTINEL_UID = "00000000-0000-0000-0000-000000000000"


@dataclass
class PersonLink:
    """Mapping between a local person and a remote person UID."""
    id: str
    user_id: str
    connection_id: str
    local_person_id: str
    remote_person_uid: str
    link_status: str = LINK_STATUS_LINKED
    link_source: str = LINK_SOURCE_MANUAL
    is_enabled: bool = True
    created_at: str = ""
    updated_at: str = ""

    @property
    def is_synced(self) -> bool:
        """Linked and enabled: changes to this person replicate."""
        return self.link_status == LINK_STATUS_LINKED and self.is_enabled

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "PersonLink":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            connection_id=row["connection_id"],
            local_person_id=row["local_person_id"],
            remote_person_uid=row["remote_person_uid"],
            link_status=row["link_status"],
            link_source=row["link_source"],
            is_enabled=bool(row["is_enabled"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


class PersonLinkStore:
    """SQLite-backed store for person links."""

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
        """Create the person links table if it doesn't exist."""
        conn = self._get_conn()
        conn.execute("""
            CREATE TABLE IF NOT EXISTS sync_person_links (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                connection_id TEXT NOT NULL,
                local_person_id TEXT NOT NULL,
                remote_person_uid TEXT NOT NULL,
                link_status TEXT NOT NULL DEFAULT 'linked',
                link_source TEXT NOT NULL DEFAULT 'manual',
                is_enabled INTEGER NOT NULL DEFAULT 1,
                created_at TIMESTAMP,
                updated_at TIMESTAMP,
                UNIQUE(connection_id, local_person_id)
            )
        """)
        conn.execute("""
            CREATE UNIQUE INDEX IF NOT EXISTS idx_sync_person_links_remote
            ON sync_person_links(connection_id, remote_person_uid)
            WHERE link_status = 'linked'
        """)
        conn.commit()
        conn.close()

    def _upsert(
        self,
        conn: sqlite3.Connection,
        user_id: str,
        connection_id: str,
        local_person_id: str,
        remote_person_uid: str,
        link_status: str,
        link_source: str,
        is_enabled: bool,
    ) -> None:
        now = utc_now_iso()
        conn.execute("""
            INSERT INTO sync_person_links
            (id, user_id, connection_id, local_person_id, remote_person_uid,
             link_status, link_source, is_enabled, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(connection_id, local_person_id) DO UPDATE SET
                remote_person_uid = excluded.remote_person_uid,
                link_status = excluded.link_status,
                link_source = excluded.link_source,
                is_enabled = excluded.is_enabled,
                updated_at = excluded.updated_at
        """, (
            str(uuid.uuid4()), user_id, connection_id, local_person_id, remote_person_uid,
            link_status, link_source, int(is_enabled), now, now,
        ))

    def upsert_link(
        self,
        user_id: str,
        connection_id: str,
        local_person_id: str,
        remote_person_uid: str,
        link_source: str = LINK_SOURCE_MANUAL,
        is_enabled: bool = True,
    ) -> tuple[PersonLink, list[PersonLink]]:
        """
        Link a local person to a remote UID, replacing the person's old link.

        Any other local person linked to the same remote UID on this
        connection is released in the same transaction.

        Returns:
            (the link, links released to keep the mapping 1:1)
        """
        if link_source not in LINK_SOURCES:
            raise ValueError(f"Unknown link source: {link_source}")

        conn = self._get_conn()
        try:
            rows = conn.execute("""
                SELECT * FROM sync_person_links
                WHERE connection_id = ? AND remote_person_uid = ?
                  AND link_status = ? AND local_person_id != ?
            """, (connection_id, remote_person_uid, LINK_STATUS_LINKED, local_person_id)).fetchall()
            released = [PersonLink.from_row(r) for r in rows]
            for link in released:
                conn.execute("DELETE FROM sync_person_links WHERE id = ?", (link.id,))

            self._upsert(
                conn, user_id, connection_id, local_person_id, remote_person_uid,
                LINK_STATUS_LINKED, link_source, is_enabled,
            )
            conn.commit()
        finally:
            conn.close()

        for link in released:
            logger.info(
                f"Released link {link.local_person_id[:8]} -> {remote_person_uid[:8]} "
                f"(now linked to {local_person_id[:8]})"
            )
        return self.get_for_person(connection_id, local_person_id), released

    def exclude(self, user_id: str, connection_id: str, local_person_id: str) -> PersonLink:
        """Mark a local person as do-not-sync on this connection."""
        conn = self._get_conn()
        try:
            self._upsert(
                conn, user_id, connection_id, local_person_id, EXCLUDED_SENTINEL_UID,
                LINK_STATUS_EXCLUDED, LINK_SOURCE_MANUAL, False,
            )
            conn.commit()
        finally:
            conn.close()
        return self.get_for_person(connection_id, local_person_id)

    def get(self, link_id: str) -> Optional[PersonLink]:
        conn = self._get_conn()
        row = conn.execute("SELECT * FROM sync_person_links WHERE id = ?", (link_id,)).fetchone()
        conn.close()
        return PersonLink.from_row(row) if row else None

    def get_for_person(self, connection_id: str, local_person_id: str) -> Optional[PersonLink]:
        conn = self._get_conn()
        row = conn.execute("""
            SELECT * FROM sync_person_links WHERE connection_id = ? AND local_person_id = ?
        """, (connection_id, local_person_id)).fetchone()
        conn.close()
        return PersonLink.from_row(row) if row else None

    def get_for_remote_uid(self, connection_id: str, remote_person_uid: str) -> Optional[PersonLink]:
        conn = self._get_conn()
        row = conn.execute("""
            SELECT * FROM sync_person_links
            WHERE connection_id = ? AND remote_person_uid = ? AND link_status = ?
        """, (connection_id, remote_person_uid, LINK_STATUS_LINKED)).fetchone()
        conn.close()
        return PersonLink.from_row(row) if row else None

    def list_for_connection(
        self,
        connection_id: str,
        link_status: Optional[str] = None,
        enabled_only: bool = False,
    ) -> list[PersonLink]:
        sql = "SELECT * FROM sync_person_links WHERE connection_id = ?"
        params: list = [connection_id]
        if link_status:
            sql += " AND link_status = ?"
            params.append(link_status)
        if enabled_only:
            sql += " AND is_enabled = 1"
        sql += " ORDER BY created_at"

        conn = self._get_conn()
        rows = conn.execute(sql, params).fetchall()
        conn.close()
        return [PersonLink.from_row(r) for r in rows]

    def enabled_links(self, connection_id: str) -> list[PersonLink]:
        """Linked and enabled links (the people that replicate)."""
        return self.list_for_connection(connection_id, LINK_STATUS_LINKED, enabled_only=True)

    def links_for_person(self, local_person_id: str) -> list[PersonLink]:
        """Links for a local person across all connections."""
        conn = self._get_conn()
        rows = conn.execute("""
            SELECT * FROM sync_person_links WHERE local_person_id = ?
        """, (local_person_id,)).fetchall()
        conn.close()
        return [PersonLink.from_row(r) for r in rows]

    def linked_remote_map(self, connection_id: str) -> dict[str, str]:
        """remote_person_uid -> local_person_id for linked rows."""
        return {
            link.remote_person_uid: link.local_person_id
            for link in self.list_for_connection(connection_id, LINK_STATUS_LINKED)
        }

    def set_enabled(self, user_id: str, link_id: str, enabled: bool) -> Optional[PersonLink]:
        conn = self._get_conn()
        cursor = conn.execute("""
            UPDATE sync_person_links SET is_enabled = ?, updated_at = ?
            WHERE id = ? AND user_id = ?
        """, (int(enabled), utc_now_iso(), link_id, user_id))
        conn.commit()
        updated = cursor.rowcount > 0
        conn.close()
        return self.get(link_id) if updated else None

    def delete(self, user_id: str, link_id: str) -> bool:
        """Detach a link (unlink or re-include an excluded person)."""
        conn = self._get_conn()
        cursor = conn.execute("""
            DELETE FROM sync_person_links WHERE id = ? AND user_id = ?
        """, (link_id, user_id))
        conn.commit()
        deleted = cursor.rowcount > 0
        conn.close()
        return deleted


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_person_link_store: Optional[PersonLinkStore] = None
_person_link_store_lock = threading.Lock()


def get_person_link_store(db_path: Optional[str] = None) -> PersonLinkStore:
    """Get or create the singleton PersonLinkStore."""
    global _person_link_store
    if _person_link_store is None:
        with _person_link_store_lock:
            if _person_link_store is None:
                _person_link_store = PersonLinkStore(db_path)
    return _person_link_store


def reset_person_link_store() -> None:
    """Reset the singleton (for testing)."""
    global _person_link_store
    _person_link_store = None
