"""
Sync intents: persisted records of multi-step cross-system operations.

An intent is written before the first remote call, so a failure between
steps leaves a retryable record instead of silent inconsistency.
"""
import json
import logging
import sqlite3
import threading
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from api.utils.datetime_utils import utc_now_iso
from api.utils.db_paths import get_sync_db_path

logger = logging.getLogger(__name__)

INTENT_CREATE_REMOTE_PERSON = "create_remote_person"

STATUS_PENDING = "pending"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"


@dataclass
class SyncIntent:
    id: str
    user_id: str
    connection_id: str
    kind: str
    payload: dict = field(default_factory=dict)
    status: str = STATUS_PENDING
    error: Optional[str] = None
    attempts: int = 0
    created_at: str = ""
    updated_at: str = ""

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "connection_id": self.connection_id,
            "kind": self.kind,
            "payload": self.payload,
            "status": self.status,
            "error": self.error,
            "attempts": self.attempts,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "SyncIntent":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            connection_id=row["connection_id"],
            kind=row["kind"],
            payload=json.loads(row["payload"]) if row["payload"] else {},
            status=row["status"],
            error=row["error"],
            attempts=row["attempts"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


class IntentStore:
    """SQLite-backed store for sync intents."""

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
        """Create the intents table if it doesn't exist."""
        conn = self._get_conn()
        conn.execute("""
            CREATE TABLE IF NOT EXISTS sync_intents (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                connection_id TEXT NOT NULL,
                kind TEXT NOT NULL,
                payload TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending',
                error TEXT,
                attempts INTEGER NOT NULL DEFAULT 0,
                created_at TIMESTAMP,
                updated_at TIMESTAMP
            )
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_sync_intents_user_status
            ON sync_intents(user_id, status)
        """)
        conn.commit()
        conn.close()

    def create(self, user_id: str, connection_id: str, kind: str, payload: dict) -> SyncIntent:
        now = utc_now_iso()
        intent = SyncIntent(
            id=str(uuid.uuid4()),
            user_id=user_id,
            connection_id=connection_id,
            kind=kind,
            payload=payload,
            created_at=now,
            updated_at=now,
        )
        conn = self._get_conn()
        conn.execute("""
            INSERT INTO sync_intents
            (id, user_id, connection_id, kind, payload, status, attempts, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?)
        """, (
            intent.id, user_id, connection_id, kind, json.dumps(payload),
            STATUS_PENDING, now, now,
        ))
        conn.commit()
        conn.close()
        return intent

    def get(self, intent_id: str) -> Optional[SyncIntent]:
        conn = self._get_conn()
        row = conn.execute("SELECT * FROM sync_intents WHERE id = ?", (intent_id,)).fetchone()
        conn.close()
        return SyncIntent.from_row(row) if row else None

    def _finish_attempt(self, intent_id: str, status: str, error: Optional[str]) -> Optional[SyncIntent]:
        conn = self._get_conn()
        conn.execute("""
            UPDATE sync_intents
            SET status = ?, error = ?, attempts = attempts + 1, updated_at = ?
            WHERE id = ?
        """, (status, error, utc_now_iso(), intent_id))
        conn.commit()
        conn.close()
        return self.get(intent_id)

    def mark_completed(self, intent_id: str) -> Optional[SyncIntent]:
        return self._finish_attempt(intent_id, STATUS_COMPLETED, None)

    def mark_failed(self, intent_id: str, error: str) -> Optional[SyncIntent]:
        logger.warning(f"Sync intent {intent_id[:8]} failed: {error}")
        return self._finish_attempt(intent_id, STATUS_FAILED, error)

    def list_for_user(self, user_id: str, statuses: Optional[tuple[str, ...]] = None) -> list[SyncIntent]:
        sql = "SELECT * FROM sync_intents WHERE user_id = ?"
        params: list = [user_id]
        if statuses:
            sql += f" AND status IN ({','.join('?' for _ in statuses)})"
            params.extend(statuses)
        sql += " ORDER BY created_at"

        conn = self._get_conn()
        rows = conn.execute(sql, params).fetchall()
        conn.close()
        return [SyncIntent.from_row(r) for r in rows]

    def list_retryable(self, user_id: str) -> list[SyncIntent]:
        """Pending or failed intents."""
        return self.list_for_user(user_id, (STATUS_PENDING, STATUS_FAILED))


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_intent_store: Optional[IntentStore] = None
_intent_store_lock = threading.Lock()


def get_intent_store(db_path: Optional[str] = None) -> IntentStore:
    """Get or create the singleton IntentStore."""
    global _intent_store
    if _intent_store is None:
        with _intent_store_lock:
            if _intent_store is None:
                _intent_store = IntentStore(db_path)
    return _intent_store


def reset_intent_store() -> None:
    """Reset the singleton (for testing)."""
    global _intent_store
    _intent_store = None
