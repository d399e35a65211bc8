"""
Merge Engine: folds a duplicate local person into a primary one.

merge(primary, merged), in one local SQLite transaction:
1. Repoint moments owned by merged to primary.
2. Repoint merged's participant rows; a row on a moment where primary is
   already a participant is a duplicate and is dropped.
3. Repoint merged's person links to primary. Where primary already has a
   link on the same connection, merged's link is removed instead (1:1).
4. Soft-delete merged (merged_into_person_id + deleted_at).
5. Write a MergeLog with names, UIDs, counts and every row id touched.

undo(merge_log) uses the recorded ids to move exactly those rows back,
re-inserts the dropped participant rows and removed links, and clears
merged's soft-delete markers.
"""
import json
import logging
import sqlite3
import threading
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from api.services.person_links import PersonLinkStore, get_person_link_store
from api.services.sync_errors import NotFound, ValidationFailure
from api.services.timeline_store import ENTITY_PERSON, Person, TimelineStore, get_timeline_store
from api.utils.datetime_utils import utc_now_iso

logger = logging.getLogger(__name__)


@dataclass
class MergeLog:
    id: str
    user_id: str
    primary_id: str
    merged_id: str
    entity_type: str = ENTITY_PERSON
    merge_payload: dict = field(default_factory=dict)
    created_at: str = ""
    undone_at: Optional[str] = None

    def to_dict(self) -> dict:
        payload = self.merge_payload
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "primary_id": self.primary_id,
            "merged_id": self.merged_id,
            "merged_name": payload.get("merged_name"),
            "primary_name": payload.get("primary_name"),
            "moments_moved": payload.get("moments_moved", 0),
            "participants_moved": payload.get("participants_moved", 0),
            "participants_dropped": payload.get("participants_dropped", 0),
            "created_at": self.created_at,
            "undone_at": self.undone_at,
        }

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "MergeLog":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            primary_id=row["primary_id"],
            merged_id=row["merged_id"],
            entity_type=row["entity_type"],
            merge_payload=json.loads(row["merge_payload"]) if row["merge_payload"] else {},
            created_at=row["created_at"],
            undone_at=row["undone_at"],
        )


def _placeholders(values: list) -> str:
    return ",".join("?" for _ in values)


class MergeEngine:
    """Merges and un-merges local people."""

    def __init__(
        self,
        timeline: Optional[TimelineStore] = None,
        link_store: Optional[PersonLinkStore] = None,
    ):
        self.timeline = timeline or get_timeline_store()
        self.links = link_store or get_person_link_store()
        # People, links and the merge log share one database file
        self.db_path = Path(self.timeline.db_path)
        if Path(self.links.db_path) != self.db_path:
            raise ValueError("Timeline and person links must share one database")
        self._ensure_schema()

    def _get_conn(self) -> sqlite3.Connection:
        """Get a database connection."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self.db_path), timeout=10.0)
        conn.row_factory = sqlite3.Row
        return conn

    def _ensure_schema(self) -> None:
        """Create the merge log table if it doesn't exist."""
        conn = self._get_conn()
        conn.execute("""
            CREATE TABLE IF NOT EXISTS sync_merge_log (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                entity_type TEXT NOT NULL DEFAULT 'person',
                primary_id TEXT NOT NULL,
                merged_id TEXT NOT NULL,
                merge_payload TEXT NOT NULL,
                created_at TIMESTAMP,
                undone_at TIMESTAMP
            )
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_sync_merge_log_user
            ON sync_merge_log(user_id, created_at)
        """)
        conn.commit()
        conn.close()

    def _require_active(self, user_id: str, person_id: str, role: str) -> Person:
        person = self.timeline.get_person(person_id)
        if not person or person.user_id != user_id or not person.is_active:
            raise NotFound(f"{role.capitalize()} person not found: {person_id}")
        return person

    # ------------------------------------------------------------------
    # Merge
    # ------------------------------------------------------------------

    def merge(self, user_id: str, primary_id: str, merged_id: str) -> MergeLog:
        """
        Merge `merged_id` into `primary_id`.

        Raises:
            ValidationFailure: missing ids or primary == merged
            NotFound: either person absent, inactive or owned by someone else
        """
        if not primary_id or not merged_id:
            raise ValidationFailure("primary_person_id and merged_person_id are required")
        if primary_id == merged_id:
            raise ValidationFailure("Cannot merge a person into itself")

        primary = self._require_active(user_id, primary_id, "primary")
        merged = self._require_active(user_id, merged_id, "merged")
        now = utc_now_iso()

        conn = self._get_conn()
        try:
            # 1. Moments
            moment_ids = [r["id"] for r in conn.execute(
                "SELECT id FROM moments WHERE person_id = ?", (merged.id,)
            ).fetchall()]
            if moment_ids:
                conn.execute(f"""
                    UPDATE moments SET person_id = ? WHERE id IN ({_placeholders(moment_ids)})
                """, (primary.id, *moment_ids))

            # 2. Participants
            primary_moments = {r["moment_id"] for r in conn.execute(
                "SELECT moment_id FROM moment_participants WHERE person_id = ?", (primary.id,)
            ).fetchall()}
            moved_participants: list[str] = []
            dropped_participants: list[dict] = []
            for row in conn.execute(
                "SELECT moment_id, created_at FROM moment_participants WHERE person_id = ?",
                (merged.id,),
            ).fetchall():
                if row["moment_id"] in primary_moments:
                    conn.execute("""
                        DELETE FROM moment_participants WHERE moment_id = ? AND person_id = ?
                    """, (row["moment_id"], merged.id))
                    dropped_participants.append(
                        {"moment_id": row["moment_id"], "created_at": row["created_at"]}
                    )
                else:
                    conn.execute("""
                        UPDATE moment_participants SET person_id = ?
                        WHERE moment_id = ? AND person_id = ?
                    """, (primary.id, row["moment_id"], merged.id))
                    moved_participants.append(row["moment_id"])

            # 3. Person links
            primary_connections = {r["connection_id"] for r in conn.execute(
                "SELECT connection_id FROM sync_person_links WHERE local_person_id = ?",
                (primary.id,),
            ).fetchall()}
            repointed_links: list[str] = []
            removed_links: list[dict] = []
            for row in conn.execute(
                "SELECT * FROM sync_person_links WHERE local_person_id = ?", (merged.id,)
            ).fetchall():
                if row["connection_id"] in primary_connections:
                    conn.execute("DELETE FROM sync_person_links WHERE id = ?", (row["id"],))
                    removed_links.append({k: row[k] for k in row.keys()})
                else:
                    conn.execute("""
                        UPDATE sync_person_links SET local_person_id = ?, updated_at = ?
                        WHERE id = ?
                    """, (primary.id, now, row["id"]))
                    repointed_links.append(row["id"])

            # 4. Soft-delete merged
            conn.execute("""
                UPDATE people SET merged_into_person_id = ?, deleted_at = ?, updated_at = ?
                WHERE id = ?
            """, (primary.id, now, now, merged.id))

            # 5. Merge log
            payload = {
                "merged_name": merged.name,
                "merged_person_uid": merged.person_uid,
                "primary_name": primary.name,
                "primary_person_uid": primary.person_uid,
                "moments_moved": len(moment_ids),
                "participants_moved": len(moved_participants),
                "participants_dropped": len(dropped_participants),
                "moved_moment_ids": moment_ids,
                "moved_participant_moment_ids": moved_participants,
                "dropped_participants": dropped_participants,
                "repointed_link_ids": repointed_links,
                "removed_links": removed_links,
                "merged_updated_at": merged.updated_at,
            }
            log = MergeLog(
                id=str(uuid.uuid4()),
                user_id=user_id,
                primary_id=primary.id,
                merged_id=merged.id,
                merge_payload=payload,
                created_at=now,
            )
            conn.execute("""
                INSERT INTO sync_merge_log
                (id, user_id, entity_type, primary_id, merged_id, merge_payload, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (
                log.id, user_id, log.entity_type, primary.id, merged.id,
                json.dumps(payload), now,
            ))
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

        logger.info(
            f"Merged '{merged.name}' into '{primary.name}': {len(moment_ids)} moments moved, "
            f"{len(moved_participants)} participants moved, "
            f"{len(dropped_participants)} duplicates dropped"
        )
        return log

    # ------------------------------------------------------------------
    # Undo
    # ------------------------------------------------------------------

    def get_log(self, user_id: str, merge_log_id: str) -> Optional[MergeLog]:
        conn = self._get_conn()
        row = conn.execute(
            "SELECT * FROM sync_merge_log WHERE id = ? AND user_id = ?", (merge_log_id, user_id)
        ).fetchone()
        conn.close()
        return MergeLog.from_row(row) if row else None

    def undo(self, user_id: str, merge_log_id: str) -> dict:
        """
        Reverse a merge exactly.

        Raises:
            NotFound: log absent, owned by someone else, or already undone
        """
        log = self.get_log(user_id, merge_log_id)
        if not log or log.undone_at:
            raise NotFound("Merge log not found or already undone")

        payload = log.merge_payload
        primary_id, merged_id = log.primary_id, log.merged_id
        now = utc_now_iso()
        restored = {"moments": 0, "participants": 0, "links": 0}

        conn = self._get_conn()
        try:
            cursor = conn.execute("""
                UPDATE sync_merge_log SET undone_at = ? WHERE id = ? AND undone_at IS NULL
            """, (now, log.id))
            if cursor.rowcount == 0:
                raise NotFound("Merge log not found or already undone")

            moment_ids = payload.get("moved_moment_ids") or []
            if moment_ids:
                cursor = conn.execute(f"""
                    UPDATE moments SET person_id = ?
                    WHERE person_id = ? AND id IN ({_placeholders(moment_ids)})
                """, (merged_id, primary_id, *moment_ids))
                restored["moments"] = cursor.rowcount

            for moment_id in payload.get("moved_participant_moment_ids") or []:
                cursor = conn.execute("""
                    UPDATE OR IGNORE moment_participants SET person_id = ?
                    WHERE moment_id = ? AND person_id = ?
                """, (merged_id, moment_id, primary_id))
                restored["participants"] += cursor.rowcount

            for dropped in payload.get("dropped_participants") or []:
                cursor = conn.execute("""
                    INSERT OR IGNORE INTO moment_participants (moment_id, person_id, created_at)
                    VALUES (?, ?, ?)
                """, (dropped["moment_id"], merged_id, dropped.get("created_at") or now))
                restored["participants"] += cursor.rowcount

            link_ids = payload.get("repointed_link_ids") or []
            if link_ids:
                cursor = conn.execute(f"""
                    UPDATE sync_person_links SET local_person_id = ?, updated_at = ?
                    WHERE local_person_id = ? AND id IN ({_placeholders(link_ids)})
                """, (merged_id, now, primary_id, *link_ids))
                restored["links"] += cursor.rowcount

            for link in payload.get("removed_links") or []:
                columns = list(link)
                cursor = conn.execute(f"""
                    INSERT OR IGNORE INTO sync_person_links ({', '.join(columns)})
                    VALUES ({_placeholders(columns)})
                """, [link[c] for c in columns])
                restored["links"] += cursor.rowcount

            conn.execute("""
                UPDATE people SET merged_into_person_id = NULL, deleted_at = NULL, updated_at = ?
                WHERE id = ?
            """, (payload.get("merged_updated_at") or now, merged_id))
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

        logger.info(
            f"Undid merge {log.id[:8]}: restored '{payload.get('merged_name')}' "
            f"({restored['moments']} moments, {restored['participants']} participants, "
            f"{restored['links']} links)"
        )
        return {
            "ok": True,
            "restored_person_id": merged_id,
            "moments_restored": restored["moments"],
            "participants_restored": restored["participants"],
            "links_restored": restored["links"],
        }

    def list_merges(self, user_id: str, include_undone: bool = False) -> list[MergeLog]:
        sql = "SELECT * FROM sync_merge_log WHERE user_id = ?"
        if not include_undone:
            sql += " AND undone_at IS NULL"
        sql += " ORDER BY created_at DESC"

        conn = self._get_conn()
        rows = conn.execute(sql, (user_id,)).fetchall()
        conn.close()
        return [MergeLog.from_row(r) for r in rows]


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_merge_engine: Optional[MergeEngine] = None
_merge_engine_lock = threading.Lock()


def get_merge_engine() -> MergeEngine:
    """Get or create the singleton MergeEngine."""
    global _merge_engine
    if _merge_engine is None:
        with _merge_engine_lock:
            if _merge_engine is None:
                _merge_engine = MergeEngine()
    return _merge_engine


def reset_merge_engine() -> None:
    """Reset the singleton (for testing)."""
    global _merge_engine
    _merge_engine = None
