"""
Outbox Log: append-only per-connection record of entity mutations.

Events are immutable once written and get a monotonically increasing
integer id. Delivery is at-least-once; consumers apply events
idempotently by entity UID.

OutboxRecorder is the timeline change listener that fills the log for
linked entities.
"""
import json
import logging
import sqlite3
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from api.services.connection_store import ConnectionStore, get_connection_store
from api.services.person_links import PersonLink, PersonLinkStore, get_person_link_store
from api.services.timeline_store import (
    ENTITY_MOMENT,
    ENTITY_PERSON,
    OP_DELETE,
    OP_UPSERT,
    ChangeNotice,
    TimelineStore,
    get_timeline_store,
)
from api.utils.datetime_utils import utc_now_iso
from api.utils.db_paths import get_sync_db_path

logger = logging.getLogger(__name__)

ENTITY_TYPES = (ENTITY_PERSON, ENTITY_MOMENT)
OPERATIONS = (OP_UPSERT, OP_DELETE)


def counterpart_view(entity_type: str, entity_uid: str, payload: dict, link: PersonLink) -> tuple[str, dict]:
    """
    Rewrite person UIDs into the counterpart's namespace.

    A person linked to a remote person with a different UID is addressed
    by the remote UID on the wire, both as the person event's entity_uid
    and as the owner UID of its moments.
    """
    payload = dict(payload)
    remote_uid = link.remote_person_uid
    if entity_type == ENTITY_PERSON:
        payload["person_uid"] = remote_uid
        return remote_uid, payload
    if payload.get("person_uid"):
        payload["person_uid"] = remote_uid
    return entity_uid, payload


@dataclass
class OutboxEvent:
    """One replicated mutation."""
    id: int
    connection_id: str
    user_id: str
    entity_type: str
    entity_uid: str
    operation: str
    payload: dict
    created_at: str = ""

    @property
    def dedup_key(self) -> str:
        return f"{self.entity_type}:{self.entity_uid}"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "connection_id": self.connection_id,
            "entity_type": self.entity_type,
            "entity_uid": self.entity_uid,
            "operation": self.operation,
            "payload": self.payload,
            "created_at": self.created_at,
        }

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "OutboxEvent":
        try:
            payload = json.loads(row["payload"]) if row["payload"] else {}
        except json.JSONDecodeError:
            payload = {}
        return cls(
            id=row["id"],
            connection_id=row["connection_id"],
            user_id=row["user_id"],
            entity_type=row["entity_type"],
            entity_uid=row["entity_uid"],
            operation=row["operation"],
            payload=payload,
            created_at=row["created_at"],
        )


class OutboxStore:
    """SQLite-backed append-only outbox."""

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
        """Create the outbox table if it doesn't exist."""
        conn = self._get_conn()
        conn.execute("""
            CREATE TABLE IF NOT EXISTS sync_outbox (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                connection_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                entity_type TEXT NOT NULL,
                entity_uid TEXT NOT NULL,
                operation TEXT NOT NULL,
                payload TEXT NOT NULL,
                created_at TIMESTAMP
            )
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_sync_outbox_connection
            ON sync_outbox(connection_id, id)
        """)
        conn.commit()
        conn.close()

    @staticmethod
    def _validate(entity_type: str, operation: str) -> None:
        if entity_type not in ENTITY_TYPES:
            raise ValueError(f"Unknown entity type: {entity_type}")
        if operation not in OPERATIONS:
            raise ValueError(f"Unknown operation: {operation}")

    def append(
        self,
        connection_id: str,
        user_id: str,
        entity_type: str,
        entity_uid: str,
        operation: str,
        payload: dict,
    ) -> OutboxEvent:
        """Append one event."""
        self._validate(entity_type, operation)
        created_at = utc_now_iso()
        conn = self._get_conn()
        cursor = conn.execute("""
            INSERT INTO sync_outbox
            (connection_id, user_id, entity_type, entity_uid, operation, payload, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        """, (
            connection_id, user_id, entity_type, entity_uid, operation,
            json.dumps(payload, default=str), created_at,
        ))
        conn.commit()
        event_id = cursor.lastrowid
        conn.close()
        return OutboxEvent(
            id=event_id,
            connection_id=connection_id,
            user_id=user_id,
            entity_type=entity_type,
            entity_uid=entity_uid,
            operation=operation,
            payload=payload,
            created_at=created_at,
        )

    def append_many(self, connection_id: str, user_id: str, events: list[dict]) -> int:
        """
        Append a batch of events in one transaction.

        Each dict needs entity_type, entity_uid, operation, payload.
        """
        if not events:
            return 0
        for event in events:
            self._validate(event["entity_type"], event["operation"])
        created_at = utc_now_iso()
        conn = self._get_conn()
        conn.executemany("""
            INSERT INTO sync_outbox
            (connection_id, user_id, entity_type, entity_uid, operation, payload, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        """, [
            (
                connection_id, user_id, e["entity_type"], e["entity_uid"], e["operation"],
                json.dumps(e["payload"], default=str), created_at,
            )
            for e in events
        ])
        conn.commit()
        conn.close()
        return len(events)

    def list_since(self, connection_id: str, since_id: int, limit: int) -> list[OutboxEvent]:
        """Events with id > since_id, ascending, at most `limit`."""
        conn = self._get_conn()
        rows = conn.execute("""
            SELECT * FROM sync_outbox
            WHERE connection_id = ? AND id > ?
            ORDER BY id ASC
            LIMIT ?
        """, (connection_id, since_id, limit)).fetchall()
        conn.close()
        return [OutboxEvent.from_row(r) for r in rows]

    def existing_keys(self, connection_id: str) -> set[str]:
        """"entity_type:entity_uid" for every event already queued."""
        conn = self._get_conn()
        rows = conn.execute("""
            SELECT DISTINCT entity_type, entity_uid FROM sync_outbox WHERE connection_id = ?
        """, (connection_id,)).fetchall()
        conn.close()
        return {f"{r['entity_type']}:{r['entity_uid']}" for r in rows}

    def count(self, connection_id: str) -> int:
        conn = self._get_conn()
        row = conn.execute(
            "SELECT COUNT(*) AS n FROM sync_outbox WHERE connection_id = ?", (connection_id,)
        ).fetchone()
        conn.close()
        return row["n"]


class OutboxRecorder:
    """
    Timeline change listener that queues events for linked entities.

    A person change is queued on every active connection where the person
    is linked and enabled. A moment change is queued where its owning
    person is. Changes applied by sync from a connection are not queued
    back onto that same connection.
    """

    def __init__(
        self,
        outbox: Optional[OutboxStore] = None,
        connection_store: Optional[ConnectionStore] = None,
        link_store: Optional[PersonLinkStore] = None,
    ):
        self.outbox = outbox or get_outbox_store()
        self.connection_store = connection_store or get_connection_store()
        self.link_store = link_store or get_person_link_store()

    def __call__(self, notice: ChangeNotice) -> None:
        self.record(notice)

    def record(self, notice: ChangeNotice) -> int:
        """Queue the change where it applies. Returns events appended."""
        if not notice.person_id:
            return 0

        active = {
            c.id for c in self.connection_store.list_for_user(notice.user_id, active_only=True)
        }
        appended = 0
        for link in self.link_store.links_for_person(notice.person_id):
            if not link.is_synced or link.connection_id not in active:
                continue
            if link.connection_id == notice.origin_connection_id:
                continue
            entity_uid, payload = counterpart_view(
                notice.entity_type, notice.entity_uid, notice.payload, link,
            )
            self.outbox.append(
                connection_id=link.connection_id,
                user_id=notice.user_id,
                entity_type=notice.entity_type,
                entity_uid=entity_uid,
                operation=notice.operation,
                payload=payload,
            )
            appended += 1

        if appended:
            logger.debug(
                f"Queued {notice.entity_type} {notice.operation} {notice.entity_uid[:8]} "
                f"on {appended} connection(s)"
            )
        return appended


def install_outbox_recorder(
    timeline: Optional[TimelineStore] = None,
    recorder: Optional[OutboxRecorder] = None,
) -> OutboxRecorder:
    """Subscribe an OutboxRecorder to the timeline (once per timeline)."""
    timeline = timeline or get_timeline_store()
    for listener in timeline.listeners:
        if isinstance(listener, OutboxRecorder):
            return listener
    recorder = recorder or OutboxRecorder()
    timeline.add_change_listener(recorder)
    return recorder


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_outbox_store: Optional[OutboxStore] = None
_outbox_store_lock = threading.Lock()


def get_outbox_store(db_path: Optional[str] = None) -> OutboxStore:
    """Get or create the singleton OutboxStore."""
    global _outbox_store
    if _outbox_store is None:
        with _outbox_store_lock:
            if _outbox_store is None:
                _outbox_store = OutboxStore(db_path)
    return _outbox_store


def reset_outbox_store() -> None:
    """Reset the singleton (for testing)."""
    global _outbox_store
    _outbox_store = None
