"""
Conflict Resolver.

A conflict is recorded when an incoming moment change is older than the
local copy (the local side was edited after the counterpart's snapshot).
The write is skipped and both snapshots are kept until the user decides:

- keep_local: mark resolved, no write
- accept_remote: write the stored remote snapshot onto the local record,
  then mark resolved

The counterpart is never told about the outcome.
"""
import json
import logging
import sqlite3
import threading
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from api.services.sync_errors import NotFound, ValidationFailure
from api.utils.datetime_utils import utc_now_iso
from api.utils.db_paths import get_sync_db_path

logger = logging.getLogger(__name__)

RESOLUTION_KEEP_LOCAL = "keep_local"
RESOLUTION_ACCEPT_REMOTE = "accept_remote"
RESOLUTIONS = (RESOLUTION_KEEP_LOCAL, RESOLUTION_ACCEPT_REMOTE)

CONFLICT_REASON = "Both sides modified since last sync"


def _dump(payload: Optional[dict]) -> str:
    return json.dumps(payload or {}, sort_keys=True, default=str)


@dataclass
class Conflict:
    id: str
    user_id: str
    connection_id: str
    entity_type: str
    entity_uid: str
    local_payload: dict = field(default_factory=dict)
    remote_payload: dict = field(default_factory=dict)
    resolution: Optional[str] = None
    resolved_at: Optional[str] = None
    created_at: str = ""

    @property
    def is_open(self) -> bool:
        return self.resolution is None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "connection_id": self.connection_id,
            "entity_type": self.entity_type,
            "entity_uid": self.entity_uid,
            "local_payload": self.local_payload,
            "remote_payload": self.remote_payload,
            "resolution": self.resolution,
            "resolved_at": self.resolved_at,
            "created_at": self.created_at,
        }

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Conflict":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            connection_id=row["connection_id"],
            entity_type=row["entity_type"],
            entity_uid=row["entity_uid"],
            local_payload=json.loads(row["local_payload"]) if row["local_payload"] else {},
            remote_payload=json.loads(row["remote_payload"]) if row["remote_payload"] else {},
            resolution=row["resolution"],
            resolved_at=row["resolved_at"],
            created_at=row["created_at"],
        )


class ConflictStore:
    """SQLite-backed conflict queue."""

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
        """Create the conflicts table if it doesn't exist."""
        conn = self._get_conn()
        conn.execute("""
            CREATE TABLE IF NOT EXISTS sync_conflicts (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                connection_id TEXT NOT NULL,
                entity_type TEXT NOT NULL,
                entity_uid TEXT NOT NULL,
                local_payload TEXT,
                remote_payload TEXT,
                resolution TEXT,
                resolved_at TIMESTAMP,
                created_at TIMESTAMP
            )
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_sync_conflicts_user_open
            ON sync_conflicts(user_id, resolution)
        """)
        conn.commit()
        conn.close()

    def record(
        self,
        user_id: str,
        connection_id: str,
        entity_type: str,
        entity_uid: str,
        local_payload: dict,
        remote_payload: dict,
    ) -> tuple[Conflict, bool]:
        """
        Record a conflict, reusing an open one with the same remote snapshot.

        A redelivered event (at-least-once pull) must not queue the same
        conflict twice.

        Returns:
            (conflict, created)
        """
        remote_json = _dump(remote_payload)
        conn = self._get_conn()
        try:
            row = conn.execute("""
                SELECT * FROM sync_conflicts
                WHERE user_id = ? AND connection_id = ? AND entity_type = ? AND entity_uid = ?
                  AND resolution IS NULL AND remote_payload = ?
                LIMIT 1
            """, (user_id, connection_id, entity_type, entity_uid, remote_json)).fetchone()
            if row:
                return Conflict.from_row(row), False

            conflict = Conflict(
                id=str(uuid.uuid4()),
                user_id=user_id,
                connection_id=connection_id,
                entity_type=entity_type,
                entity_uid=entity_uid,
                local_payload=local_payload or {},
                remote_payload=remote_payload or {},
                created_at=utc_now_iso(),
            )
            conn.execute("""
                INSERT INTO sync_conflicts
                (id, user_id, connection_id, entity_type, entity_uid,
                 local_payload, remote_payload, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                conflict.id, user_id, connection_id, entity_type, entity_uid,
                _dump(local_payload), remote_json, conflict.created_at,
            ))
            conn.commit()
        finally:
            conn.close()

        logger.info(f"Recorded conflict {conflict.id[:8]} for {entity_type} {entity_uid[:8]}")
        return conflict, True

    def get(self, conflict_id: str) -> Optional[Conflict]:
        conn = self._get_conn()
        row = conn.execute("SELECT * FROM sync_conflicts WHERE id = ?", (conflict_id,)).fetchone()
        conn.close()
        return Conflict.from_row(row) if row else None

    def list_open(self, user_id: str, connection_id: Optional[str] = None) -> list[Conflict]:
        sql = "SELECT * FROM sync_conflicts WHERE user_id = ? AND resolution IS NULL"
        params: list = [user_id]
        if connection_id:
            sql += " AND connection_id = ?"
            params.append(connection_id)
        sql += " ORDER BY created_at"

        conn = self._get_conn()
        rows = conn.execute(sql, params).fetchall()
        conn.close()
        return [Conflict.from_row(r) for r in rows]

    def mark_resolved(self, conflict_id: str, resolution: str) -> bool:
        """Conditional update: only an open conflict can be resolved."""
        conn = self._get_conn()
        cursor = conn.execute("""
            UPDATE sync_conflicts SET resolution = ?, resolved_at = ?
            WHERE id = ? AND resolution IS NULL
        """, (resolution, utc_now_iso(), conflict_id))
        conn.commit()
        changed = cursor.rowcount > 0
        conn.close()
        return changed


class ConflictResolver:
    """Applies the user's decision to an open conflict."""

    def __init__(self, conflict_store: Optional[ConflictStore] = None, applier=None):
        self.store = conflict_store or get_conflict_store()
        self._applier = applier

    @property
    def applier(self):
        if self._applier is None:
            from api.services.sync_apply import EntityApplier
            self._applier = EntityApplier(conflict_store=self.store)
        return self._applier

    def list_open(self, user_id: str, connection_id: Optional[str] = None) -> list[Conflict]:
        return self.store.list_open(user_id, connection_id)

    def get(self, user_id: str, conflict_id: str) -> Conflict:
        conflict = self.store.get(conflict_id)
        if not conflict or conflict.user_id != user_id:
            raise NotFound(f"Conflict not found: {conflict_id}")
        return conflict

    def resolve(self, user_id: str, conflict_id: str, resolution: str) -> Conflict:
        """
        Resolve an open conflict.

        Raises:
            ValidationFailure: unknown resolution or already resolved
            NotFound: conflict absent or owned by another user
        """
        if resolution not in RESOLUTIONS:
            raise ValidationFailure(
                f"resolution must be one of: {', '.join(RESOLUTIONS)}"
            )
        conflict = self.get(user_id, conflict_id)
        if not conflict.is_open:
            raise ValidationFailure(f"Conflict already resolved ({conflict.resolution})")

        if resolution == RESOLUTION_ACCEPT_REMOTE:
            self.applier.force_apply(
                user_id=conflict.user_id,
                connection_id=conflict.connection_id,
                entity_type=conflict.entity_type,
                entity_uid=conflict.entity_uid,
                payload=conflict.remote_payload,
            )

        if not self.store.mark_resolved(conflict.id, resolution):
            raise ValidationFailure("Conflict already resolved")

        logger.info(f"Resolved conflict {conflict.id[:8]} with {resolution}")
        return self.store.get(conflict.id)


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_conflict_store: Optional[ConflictStore] = None
_conflict_store_lock = threading.Lock()


def get_conflict_store(db_path: Optional[str] = None) -> ConflictStore:
    """Get or create the singleton ConflictStore."""
    global _conflict_store
    if _conflict_store is None:
        with _conflict_store_lock:
            if _conflict_store is None:
                _conflict_store = ConflictStore(db_path)
    return _conflict_store


def reset_conflict_store() -> None:
    """Reset the singleton (for testing)."""
    global _conflict_store
    _conflict_store = None
