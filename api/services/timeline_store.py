"""
Timeline Store: people and moments owned by local users.

This is the collaborator interface the sync core works through. It offers
read-by-UID, write-upsert, and a change-notification hook. Every mutation
calls the registered listeners with a ChangeNotice; the outbox recorder is
the main subscriber.

UIDs (person_uid, moment_uid) are stable across both applications and are
distinct from the local primary keys (id).
"""
import json
import logging
import sqlite3
import threading
import uuid
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Callable, Optional

from api.utils.datetime_utils import utc_now_iso
from api.utils.db_paths import get_sync_db_path

logger = logging.getLogger(__name__)

ENTITY_PERSON = "person"
ENTITY_MOMENT = "moment"

OP_UPSERT = "upsert"
OP_DELETE = "delete"

DEFAULT_IMPACT_LEVEL = 2
DEFAULT_MOMENT_STATUS = "unknown"


@dataclass
class Person:
    """A person record owned by one local user."""
    id: str
    user_id: str
    person_uid: str
    name: str
    relationship_label: Optional[str] = None
    merged_into_person_id: Optional[str] = None
    deleted_at: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""

    @property
    def is_active(self) -> bool:
        return self.deleted_at is None and self.merged_into_person_id is None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Person":
        return cls(**{k: row[k] for k in row.keys()})


@dataclass
class Moment:
    """A life-moment, optionally attached to an owning person."""
    id: str
    user_id: str
    moment_uid: str
    title: str
    person_id: Optional[str] = None
    description: Optional[str] = None
    happened_at: Optional[str] = None
    happened_end: Optional[str] = None
    impact_level: int = DEFAULT_IMPACT_LEVEL
    category: Optional[str] = None
    status: str = DEFAULT_MOMENT_STATUS
    attachments: Optional[list] = None
    source: Optional[str] = None
    deleted_at: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Moment":
        data = {k: row[k] for k in row.keys()}
        if data.get("attachments"):
            try:
                data["attachments"] = json.loads(data["attachments"])
            except json.JSONDecodeError:
                data["attachments"] = None
        return cls(**data)


@dataclass
class ChangeNotice:
    """Emitted after every person/moment mutation."""
    user_id: str
    entity_type: str
    entity_uid: str
    operation: str
    payload: dict
    # Connection whose sync apply caused this change (None for local edits)
    origin_connection_id: Optional[str] = None
    person_id: Optional[str] = None


ChangeListener = Callable[[ChangeNotice], None]

# Columns a moment update may touch
MOMENT_FIELDS = (
    "title", "description", "happened_at", "happened_end", "impact_level",
    "category", "status", "attachments", "person_id", "source",
)


class TimelineStore:
    """SQLite-backed store for people, moments and moment participants."""

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = Path(db_path or get_sync_db_path())
        self._listeners: list[ChangeListener] = []
        self._ensure_schema()

    def _get_conn(self) -> sqlite3.Connection:
        """Get a database connection."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self.db_path), timeout=10.0)
        conn.row_factory = sqlite3.Row
        return conn

    def _ensure_schema(self) -> None:
        """Create the people/moments tables if they don't exist."""
        conn = self._get_conn()
        conn.execute("""
            CREATE TABLE IF NOT EXISTS people (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                person_uid TEXT NOT NULL,
                name TEXT NOT NULL,
                relationship_label TEXT,
                merged_into_person_id TEXT,
                deleted_at TIMESTAMP,
                created_at TIMESTAMP,
                updated_at TIMESTAMP
            )
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_people_user_uid
            ON people(user_id, person_uid)
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS moments (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                moment_uid TEXT NOT NULL,
                person_id TEXT,
                title TEXT NOT NULL,
                description TEXT,
                happened_at TIMESTAMP,
                happened_end TIMESTAMP,
                impact_level INTEGER DEFAULT 2,
                category TEXT,
                status TEXT DEFAULT 'unknown',
                attachments TEXT,
                source TEXT,
                deleted_at TIMESTAMP,
                created_at TIMESTAMP,
                updated_at TIMESTAMP
            )
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_moments_user_uid
            ON moments(user_id, moment_uid)
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_moments_person
            ON moments(person_id)
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS moment_participants (
                moment_id TEXT NOT NULL,
                person_id TEXT NOT NULL,
                created_at TIMESTAMP,
                UNIQUE(moment_id, person_id)
            )
        """)
        conn.commit()
        conn.close()

    # ------------------------------------------------------------------
    # Change hook
    # ------------------------------------------------------------------

    def add_change_listener(self, listener: ChangeListener) -> None:
        """Register a callback invoked after every mutation."""
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_change_listener(self, listener: ChangeListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    @property
    def listeners(self) -> tuple[ChangeListener, ...]:
        return tuple(self._listeners)

    def _notify(self, notice: ChangeNotice) -> None:
        for listener in list(self._listeners):
            listener(notice)

    def _notify_person(self, person: Person, operation: str, origin: Optional[str]) -> None:
        self._notify(ChangeNotice(
            user_id=person.user_id,
            entity_type=ENTITY_PERSON,
            entity_uid=person.person_uid,
            operation=operation,
            payload=person_payload(person),
            origin_connection_id=origin,
            person_id=person.id,
        ))

    def _notify_moment(self, moment: Moment, operation: str, origin: Optional[str]) -> None:
        owner = self.get_person(moment.person_id) if moment.person_id else None
        self._notify(ChangeNotice(
            user_id=moment.user_id,
            entity_type=ENTITY_MOMENT,
            entity_uid=moment.moment_uid,
            operation=operation,
            payload=moment_payload(moment, owner.person_uid if owner else None),
            origin_connection_id=origin,
            person_id=moment.person_id,
        ))

    # ------------------------------------------------------------------
    # People
    # ------------------------------------------------------------------

    def create_person(
        self,
        user_id: str,
        name: str,
        relationship_label: Optional[str] = None,
        person_uid: Optional[str] = None,
        updated_at: Optional[str] = None,
        origin_connection_id: Optional[str] = None,
    ) -> Person:
        """Create a person. A fresh UID is minted unless one is supplied."""
        now = utc_now_iso()
        person = Person(
            id=str(uuid.uuid4()),
            user_id=user_id,
            person_uid=person_uid or str(uuid.uuid4()),
            name=name,
            relationship_label=relationship_label,
            created_at=now,
            updated_at=updated_at or now,
        )
        conn = self._get_conn()
        conn.execute("""
            INSERT INTO people (id, user_id, person_uid, name, relationship_label,
                                created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        """, (
            person.id, person.user_id, person.person_uid, person.name,
            person.relationship_label, person.created_at, person.updated_at,
        ))
        conn.commit()
        conn.close()

        self._notify_person(person, OP_UPSERT, origin_connection_id)
        return person

    def get_person(self, person_id: str) -> Optional[Person]:
        conn = self._get_conn()
        row = conn.execute("SELECT * FROM people WHERE id = ?", (person_id,)).fetchone()
        conn.close()
        return Person.from_row(row) if row else None

    def get_person_by_uid(self, user_id: str, person_uid: str) -> Optional[Person]:
        """Look up a user's person by stable UID (active records first)."""
        conn = self._get_conn()
        row = conn.execute("""
            SELECT * FROM people
            WHERE user_id = ? AND person_uid = ?
            ORDER BY deleted_at IS NOT NULL, created_at
            LIMIT 1
        """, (user_id, person_uid)).fetchone()
        conn.close()
        return Person.from_row(row) if row else None

    def list_people(self, user_id: str, limit: Optional[int] = None) -> list[Person]:
        """Active people (not merged, not deleted) ordered by name."""
        sql = """
            SELECT * FROM people
            WHERE user_id = ? AND deleted_at IS NULL AND merged_into_person_id IS NULL
            ORDER BY name COLLATE NOCASE
        """
        params: tuple = (user_id,)
        if limit:
            sql += " LIMIT ?"
            params = (user_id, limit)
        conn = self._get_conn()
        rows = conn.execute(sql, params).fetchall()
        conn.close()
        return [Person.from_row(r) for r in rows]

    def get_people_by_ids(self, user_id: str, person_ids: list[str]) -> list[Person]:
        if not person_ids:
            return []
        placeholders = ",".join("?" for _ in person_ids)
        conn = self._get_conn()
        rows = conn.execute(f"""
            SELECT * FROM people
            WHERE user_id = ? AND id IN ({placeholders}) AND deleted_at IS NULL
        """, (user_id, *person_ids)).fetchall()
        conn.close()
        return [Person.from_row(r) for r in rows]

    def update_person(
        self,
        person_id: str,
        name: Optional[str] = None,
        relationship_label: Optional[str] = None,
        updated_at: Optional[str] = None,
        origin_connection_id: Optional[str] = None,
    ) -> Optional[Person]:
        """Update a person's fields. updated_at defaults to now."""
        person = self.get_person(person_id)
        if not person:
            return None
        if name is not None:
            person.name = name
        if relationship_label is not None:
            person.relationship_label = relationship_label or None
        person.updated_at = updated_at or utc_now_iso()

        conn = self._get_conn()
        conn.execute("""
            UPDATE people SET name = ?, relationship_label = ?, updated_at = ?
            WHERE id = ?
        """, (person.name, person.relationship_label, person.updated_at, person.id))
        conn.commit()
        conn.close()

        self._notify_person(person, OP_UPSERT, origin_connection_id)
        return person

    # ------------------------------------------------------------------
    # Moments
    # ------------------------------------------------------------------

    def create_moment(
        self,
        user_id: str,
        title: str,
        person_id: Optional[str] = None,
        moment_uid: Optional[str] = None,
        updated_at: Optional[str] = None,
        origin_connection_id: Optional[str] = None,
        **fields,
    ) -> Moment:
        """Create a moment. Extra keyword fields must be in MOMENT_FIELDS."""
        unknown = set(fields) - set(MOMENT_FIELDS)
        if unknown:
            raise ValueError(f"Unknown moment fields: {sorted(unknown)}")

        now = utc_now_iso()
        moment = Moment(
            id=str(uuid.uuid4()),
            user_id=user_id,
            moment_uid=moment_uid or str(uuid.uuid4()),
            title=title,
            person_id=person_id,
            created_at=now,
            updated_at=updated_at or now,
        )
        for key, value in fields.items():
            setattr(moment, key, value)
        if moment.impact_level is None:
            moment.impact_level = DEFAULT_IMPACT_LEVEL
        if not moment.status:
            moment.status = DEFAULT_MOMENT_STATUS

        conn = self._get_conn()
        conn.execute("""
            INSERT INTO moments (id, user_id, moment_uid, person_id, title, description,
                                 happened_at, happened_end, impact_level, category, status,
                                 attachments, source, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            moment.id, moment.user_id, moment.moment_uid, moment.person_id, moment.title,
            moment.description, moment.happened_at, moment.happened_end, moment.impact_level,
            moment.category, moment.status,
            json.dumps(moment.attachments) if moment.attachments is not None else None,
            moment.source, moment.created_at, moment.updated_at,
        ))
        conn.commit()
        conn.close()

        self._notify_moment(moment, OP_UPSERT, origin_connection_id)
        return moment

    def get_moment(self, moment_id: str) -> Optional[Moment]:
        conn = self._get_conn()
        row = conn.execute("SELECT * FROM moments WHERE id = ?", (moment_id,)).fetchone()
        conn.close()
        return Moment.from_row(row) if row else None

    def get_moment_by_uid(self, user_id: str, moment_uid: str) -> Optional[Moment]:
        conn = self._get_conn()
        row = conn.execute("""
            SELECT * FROM moments WHERE user_id = ? AND moment_uid = ?
            LIMIT 1
        """, (user_id, moment_uid)).fetchone()
        conn.close()
        return Moment.from_row(row) if row else None

    def list_moments_for_people(self, user_id: str, person_ids: list[str]) -> list[Moment]:
        """Non-deleted moments owned by any of the given people."""
        if not person_ids:
            return []
        placeholders = ",".join("?" for _ in person_ids)
        conn = self._get_conn()
        rows = conn.execute(f"""
            SELECT * FROM moments
            WHERE user_id = ? AND person_id IN ({placeholders}) AND deleted_at IS NULL
            ORDER BY happened_at
        """, (user_id, *person_ids)).fetchall()
        conn.close()
        return [Moment.from_row(r) for r in rows]

    def update_moment(
        self,
        moment_id: str,
        updated_at: Optional[str] = None,
        origin_connection_id: Optional[str] = None,
        **fields,
    ) -> Optional[Moment]:
        """
        Update a moment's fields. updated_at defaults to now.

        Passing None for a field clears it; omitted fields are untouched.
        A moment that was soft-deleted is revived by an update.
        """
        unknown = set(fields) - set(MOMENT_FIELDS)
        if unknown:
            raise ValueError(f"Unknown moment fields: {sorted(unknown)}")

        moment = self.get_moment(moment_id)
        if not moment:
            return None
        for key, value in fields.items():
            setattr(moment, key, value)
        moment.deleted_at = None
        moment.updated_at = updated_at or utc_now_iso()

        conn = self._get_conn()
        conn.execute("""
            UPDATE moments SET person_id = ?, title = ?, description = ?, happened_at = ?,
                   happened_end = ?, impact_level = ?, category = ?, status = ?,
                   attachments = ?, source = ?, deleted_at = NULL, updated_at = ?
            WHERE id = ?
        """, (
            moment.person_id, moment.title, moment.description, moment.happened_at,
            moment.happened_end, moment.impact_level, moment.category, moment.status,
            json.dumps(moment.attachments) if moment.attachments is not None else None,
            moment.source, moment.updated_at, moment.id,
        ))
        conn.commit()
        conn.close()

        self._notify_moment(moment, OP_UPSERT, origin_connection_id)
        return moment

    def soft_delete_moment(
        self,
        moment_id: str,
        updated_at: Optional[str] = None,
        origin_connection_id: Optional[str] = None,
    ) -> Optional[Moment]:
        """Mark a moment deleted. Rows are never hard-deleted."""
        moment = self.get_moment(moment_id)
        if not moment:
            return None
        now = utc_now_iso()
        moment.deleted_at = now
        moment.updated_at = updated_at or now

        conn = self._get_conn()
        conn.execute("""
            UPDATE moments SET deleted_at = ?, updated_at = ? WHERE id = ?
        """, (moment.deleted_at, moment.updated_at, moment.id))
        conn.commit()
        conn.close()

        self._notify_moment(moment, OP_DELETE, origin_connection_id)
        return moment

    # ------------------------------------------------------------------
    # Participants
    # ------------------------------------------------------------------

    def add_participant(self, moment_id: str, person_id: str) -> bool:
        """Add a co-participant. Returns False if already present."""
        conn = self._get_conn()
        cursor = conn.execute("""
            INSERT OR IGNORE INTO moment_participants (moment_id, person_id, created_at)
            VALUES (?, ?, ?)
        """, (moment_id, person_id, utc_now_iso()))
        conn.commit()
        added = cursor.rowcount > 0
        conn.close()
        return added

    def list_participants(self, moment_id: str) -> list[str]:
        conn = self._get_conn()
        rows = conn.execute("""
            SELECT person_id FROM moment_participants WHERE moment_id = ?
            ORDER BY created_at
        """, (moment_id,)).fetchall()
        conn.close()
        return [r["person_id"] for r in rows]

    def list_participations(self, person_id: str) -> list[str]:
        """Moment ids the person co-participates in."""
        conn = self._get_conn()
        rows = conn.execute("""
            SELECT moment_id FROM moment_participants WHERE person_id = ?
        """, (person_id,)).fetchall()
        conn.close()
        return [r["moment_id"] for r in rows]


# ---------------------------------------------------------------------------
# Wire payloads
# ---------------------------------------------------------------------------

def person_payload(person: Person) -> dict:
    """Snapshot of a person as sent to the counterpart."""
    return {
        "person_uid": person.person_uid,
        "name": person.name,
        "relationship_label": person.relationship_label,
        "updated_at": person.updated_at,
    }


def moment_payload(moment: Moment, person_uid: Optional[str] = None) -> dict:
    """Snapshot of a moment as sent to the counterpart."""
    return {
        "moment_uid": moment.moment_uid,
        "title": moment.title,
        "description": moment.description,
        "happened_at": moment.happened_at,
        "happened_end": moment.happened_end,
        "impact_level": moment.impact_level,
        "category": moment.category,
        "status": moment.status,
        "attachments": moment.attachments,
        "person_uid": person_uid,
        "updated_at": moment.updated_at,
    }


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_timeline_store: Optional[TimelineStore] = None
_timeline_store_lock = threading.Lock()


def get_timeline_store(db_path: Optional[str] = None) -> TimelineStore:
    """Get or create the singleton TimelineStore."""
    global _timeline_store
    if _timeline_store is None:
        with _timeline_store_lock:
            if _timeline_store is None:
                _timeline_store = TimelineStore(db_path)
    return _timeline_store


def reset_timeline_store() -> None:
    """Reset the singleton (for testing)."""
    global _timeline_store
    _timeline_store = None
