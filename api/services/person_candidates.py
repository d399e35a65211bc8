"""
Person match candidates: persisted suggestions awaiting accept/reject.

A suggestion pass replaces the connection's open candidates with every
unlinked local/remote pair scoring at or above the suggestion threshold.
Accepting a candidate links the pair; rejecting only closes it.
"""
import logging
import sqlite3
import threading
import uuid
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Optional

from api.services.connection_store import ConnectionStore, get_connection_store
from api.services.person_links import (
    LINK_SOURCE_SUGGESTED,
    LINK_STATUS_EXCLUDED,
    LINK_STATUS_LINKED,
    PersonLink,
    PersonLinkStore,
    get_person_link_store,
)
from api.services.person_matching import SUGGESTION_THRESHOLD, name_similarity
from api.services.sync_errors import NotFound, ValidationFailure
from api.services.timeline_store import TimelineStore, get_timeline_store
from api.utils.datetime_utils import utc_now_iso
from api.utils.db_paths import get_sync_db_path

logger = logging.getLogger(__name__)

CANDIDATE_OPEN = "open"
CANDIDATE_ACCEPTED = "accepted"
CANDIDATE_REJECTED = "rejected"


@dataclass
class PersonCandidate:
    id: str
    user_id: str
    connection_id: str
    local_person_id: str
    remote_person_uid: str
    remote_person_name: str
    confidence: float
    reason: Optional[str] = None
    status: str = CANDIDATE_OPEN
    created_at: str = ""

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "PersonCandidate":
        return cls(**{k: row[k] for k in row.keys()})


class CandidateStore:
    """SQLite-backed store for match candidates."""

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
        conn = self._get_conn()
        conn.execute("""
            CREATE TABLE IF NOT EXISTS sync_person_candidates (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                connection_id TEXT NOT NULL,
                local_person_id TEXT NOT NULL,
                remote_person_uid TEXT NOT NULL,
                remote_person_name TEXT NOT NULL,
                confidence REAL NOT NULL,
                reason TEXT,
                status TEXT NOT NULL DEFAULT 'open',
                created_at TIMESTAMP
            )
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_sync_person_candidates_connection
            ON sync_person_candidates(connection_id, status)
        """)
        conn.commit()
        conn.close()

    def replace_open(self, connection_id: str, candidates: list[PersonCandidate]) -> int:
        """Drop the connection's open candidates and insert new ones atomically."""
        conn = self._get_conn()
        try:
            conn.execute("""
                DELETE FROM sync_person_candidates WHERE connection_id = ? AND status = ?
            """, (connection_id, CANDIDATE_OPEN))
            conn.executemany("""
                INSERT INTO sync_person_candidates
                (id, user_id, connection_id, local_person_id, remote_person_uid,
                 remote_person_name, confidence, reason, status, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, [
                (
                    c.id, c.user_id, c.connection_id, c.local_person_id, c.remote_person_uid,
                    c.remote_person_name, c.confidence, c.reason, c.status, c.created_at,
                )
                for c in candidates
            ])
            conn.commit()
        finally:
            conn.close()
        return len(candidates)

    def get(self, candidate_id: str) -> Optional[PersonCandidate]:
        conn = self._get_conn()
        row = conn.execute(
            "SELECT * FROM sync_person_candidates WHERE id = ?", (candidate_id,)
        ).fetchone()
        conn.close()
        return PersonCandidate.from_row(row) if row else None

    def list_for_connection(self, connection_id: str, status: Optional[str] = CANDIDATE_OPEN) -> list[PersonCandidate]:
        sql = "SELECT * FROM sync_person_candidates WHERE connection_id = ?"
        params: list = [connection_id]
        if status:
            sql += " AND status = ?"
            params.append(status)
        sql += " ORDER BY confidence DESC, created_at"

        conn = self._get_conn()
        rows = conn.execute(sql, params).fetchall()
        conn.close()
        return [PersonCandidate.from_row(r) for r in rows]

    def close(self, candidate_id: str, status: str) -> bool:
        """Move an open candidate to accepted/rejected."""
        conn = self._get_conn()
        cursor = conn.execute("""
            UPDATE sync_person_candidates SET status = ? WHERE id = ? AND status = ?
        """, (status, candidate_id, CANDIDATE_OPEN))
        conn.commit()
        changed = cursor.rowcount > 0
        conn.close()
        return changed


class CandidateService:
    """Suggest, accept and reject person match candidates."""

    def __init__(
        self,
        candidate_store: Optional[CandidateStore] = None,
        link_store: Optional[PersonLinkStore] = None,
        timeline: Optional[TimelineStore] = None,
        connection_store: Optional[ConnectionStore] = None,
    ):
        self.candidates = candidate_store or get_candidate_store()
        self.links = link_store or get_person_link_store()
        self.timeline = timeline or get_timeline_store()
        self.connections = connection_store or get_connection_store()

    def suggest(self, user_id: str, connection_id: str, remote_people: list[dict]) -> list[PersonCandidate]:
        """
        Score every unlinked local person against every unlinked remote one.

        Args:
            remote_people: [{"uid", "name", ...}] from the counterpart

        Returns:
            The new open candidates (previous open ones are replaced)
        """
        if not remote_people:
            raise ValidationFailure("Fetch remote people first")
        connection = self.connections.require_owned(user_id, connection_id)

        links = self.links.list_for_connection(connection.id)
        linked_remote = {l.remote_person_uid for l in links if l.link_status == LINK_STATUS_LINKED}
        skip_local = {
            l.local_person_id for l in links
            if l.link_status in (LINK_STATUS_LINKED, LINK_STATUS_EXCLUDED)
        }

        now = utc_now_iso()
        found: list[PersonCandidate] = []
        for local in self.timeline.list_people(user_id):
            if local.id in skip_local:
                continue
            for remote in remote_people:
                uid = remote.get("uid")
                if not uid or uid in linked_remote:
                    continue
                result = name_similarity(local.name, remote.get("name", ""))
                if result.score < SUGGESTION_THRESHOLD:
                    continue
                found.append(PersonCandidate(
                    id=str(uuid.uuid4()),
                    user_id=user_id,
                    connection_id=connection.id,
                    local_person_id=local.id,
                    remote_person_uid=uid,
                    remote_person_name=remote.get("name", ""),
                    confidence=result.score,
                    reason=result.reason,
                    created_at=now,
                ))

        if found:
            self.candidates.replace_open(connection.id, found)
        logger.info(f"Found {len(found)} potential matches on connection {connection.id[:8]}")
        return found

    def _require_open(self, user_id: str, candidate_id: str) -> PersonCandidate:
        candidate = self.candidates.get(candidate_id)
        if not candidate or candidate.user_id != user_id:
            raise NotFound(f"Candidate not found: {candidate_id}")
        if candidate.status != CANDIDATE_OPEN:
            raise ValidationFailure(f"Candidate already {candidate.status}")
        return candidate

    def accept(self, user_id: str, candidate_id: str) -> PersonLink:
        """Link the candidate pair and close the candidate."""
        candidate = self._require_open(user_id, candidate_id)
        self.connections.require_owned(user_id, candidate.connection_id)
        link, _ = self.links.upsert_link(
            user_id=user_id,
            connection_id=candidate.connection_id,
            local_person_id=candidate.local_person_id,
            remote_person_uid=candidate.remote_person_uid,
            link_source=LINK_SOURCE_SUGGESTED,
        )
        self.candidates.close(candidate.id, CANDIDATE_ACCEPTED)
        return link

    def reject(self, user_id: str, candidate_id: str) -> None:
        candidate = self._require_open(user_id, candidate_id)
        self.candidates.close(candidate.id, CANDIDATE_REJECTED)


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_candidate_store: Optional[CandidateStore] = None
_candidate_store_lock = threading.Lock()


def get_candidate_store(db_path: Optional[str] = None) -> CandidateStore:
    """Get or create the singleton CandidateStore."""
    global _candidate_store
    if _candidate_store is None:
        with _candidate_store_lock:
            if _candidate_store is None:
                _candidate_store = CandidateStore(db_path)
    return _candidate_store


def reset_candidate_store() -> None:
    """Reset the singleton (for testing)."""
    global _candidate_store
    _candidate_store = None
