"""
Connection Registry.

Durable record of each paired counterpart. A Connection is created on
successful pairing and only ever moves active -> revoked. Re-pairing
creates a new Connection.
"""
import logging
import sqlite3
import threading
import uuid
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

from api.services.secret_box import SecretBox, get_secret_box
from api.services.sync_errors import NotFound
from api.utils.datetime_utils import utc_now_iso
from api.utils.db_paths import get_sync_db_path

logger = logging.getLogger(__name__)


class ConnectionStatus(str, Enum):
    """Lifecycle of a connection."""
    ACTIVE = "active"
    REVOKED = "revoked"  # Terminal


@dataclass
class Connection:
    """A paired relationship between a local user and a counterpart app."""
    id: str
    user_id: str
    remote_app: str
    remote_base_url: str
    encrypted_secret: str
    status: str = ConnectionStatus.ACTIVE.value
    remote_connection_id: Optional[str] = None  # Counterpart's id for this connection
    created_at: str = ""
    revoked_at: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status == ConnectionStatus.ACTIVE.value

    @property
    def peer_address_id(self) -> str:
        """Id to send in x-sync-connection-id when calling the counterpart."""
        return self.remote_connection_id or self.id

    def to_dict(self) -> dict:
        """Public view. The secret never leaves the store."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "remote_app": self.remote_app,
            "remote_base_url": self.remote_base_url,
            "status": self.status,
            "remote_connection_id": self.remote_connection_id,
            "created_at": self.created_at,
            "revoked_at": self.revoked_at,
        }

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Connection":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            remote_app=row["remote_app"],
            remote_base_url=row["remote_base_url"],
            encrypted_secret=row["encrypted_secret"],
            status=row["status"],
            remote_connection_id=row["remote_connection_id"],
            created_at=row["created_at"],
            revoked_at=row["revoked_at"],
        )


def normalize_base_url(url: str) -> str:
    """Strip trailing slashes so paths can be appended."""
    return (url or "").strip().rstrip("/")


class ConnectionStore:
    """SQLite-backed store for sync connections."""

    def __init__(self, db_path: Optional[str] = None, secret_box: Optional[SecretBox] = None):
        self.db_path = Path(db_path or get_sync_db_path())
        self._secret_box = secret_box
        self._ensure_schema()

    @property
    def secret_box(self) -> SecretBox:
        if self._secret_box is None:
            self._secret_box = get_secret_box()
        return self._secret_box

    def _get_conn(self) -> sqlite3.Connection:
        """Get a database connection."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self.db_path), timeout=10.0)
        conn.row_factory = sqlite3.Row
        return conn

    def _ensure_schema(self) -> None:
        """Create the connections table if it doesn't exist."""
        conn = self._get_conn()
        conn.execute("""
            CREATE TABLE IF NOT EXISTS sync_connections (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                remote_app TEXT NOT NULL,
                remote_base_url TEXT NOT NULL,
                encrypted_secret TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'active',
                remote_connection_id TEXT,
                created_at TIMESTAMP,
                revoked_at TIMESTAMP
            )
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_sync_connections_user
            ON sync_connections(user_id, status)
        """)
        conn.commit()
        conn.close()

    def create(
        self,
        user_id: str,
        remote_app: str,
        remote_base_url: str,
        shared_secret: str,
        remote_connection_id: Optional[str] = None,
        connection_id: Optional[str] = None,
    ) -> Connection:
        """
        Persist a new active connection.

        Args:
            user_id: Owning local user
            remote_app: Counterpart application name
            remote_base_url: Counterpart base address
            shared_secret: Raw shared secret (encrypted before storage)
            remote_connection_id: Counterpart's id for this connection, if known
            connection_id: Pre-generated local id (defaults to a new uuid)
        """
        connection = Connection(
            id=connection_id or str(uuid.uuid4()),
            user_id=user_id,
            remote_app=remote_app,
            remote_base_url=normalize_base_url(remote_base_url),
            encrypted_secret=self.secret_box.encrypt(shared_secret),
            status=ConnectionStatus.ACTIVE.value,
            remote_connection_id=remote_connection_id,
            created_at=utc_now_iso(),
        )
        conn = self._get_conn()
        conn.execute("""
            INSERT INTO sync_connections
            (id, user_id, remote_app, remote_base_url, encrypted_secret, status,
             remote_connection_id, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            connection.id, connection.user_id, connection.remote_app,
            connection.remote_base_url, connection.encrypted_secret, connection.status,
            connection.remote_connection_id, connection.created_at,
        ))
        conn.commit()
        conn.close()

        logger.info(
            f"Created connection {connection.id[:8]} for user {user_id} -> "
            f"{remote_app} ({connection.remote_base_url})"
        )
        return connection

    def get(self, connection_id: str) -> Optional[Connection]:
        conn = self._get_conn()
        row = conn.execute(
            "SELECT * FROM sync_connections WHERE id = ?", (connection_id,)
        ).fetchone()
        conn.close()
        return Connection.from_row(row) if row else None

    def get_for_user(
        self,
        user_id: str,
        connection_id: Optional[str] = None,
        active_only: bool = False,
    ) -> Optional[Connection]:
        """
        Get a connection owned by the user.

        Without connection_id, returns the user's most recent connection.
        """
        sql = "SELECT * FROM sync_connections WHERE user_id = ?"
        params: list = [user_id]
        if connection_id:
            sql += " AND id = ?"
            params.append(connection_id)
        if active_only:
            sql += " AND status = ?"
            params.append(ConnectionStatus.ACTIVE.value)
        sql += " ORDER BY created_at DESC LIMIT 1"

        conn = self._get_conn()
        row = conn.execute(sql, params).fetchone()
        conn.close()
        return Connection.from_row(row) if row else None

    def require_owned(
        self,
        user_id: str,
        connection_id: Optional[str] = None,
        active_only: bool = True,
    ) -> Connection:
        """
        Like get_for_user, but raises NotFound when nothing matches.

        Connections of other users are reported as not found.
        """
        connection = self.get_for_user(user_id, connection_id, active_only=active_only)
        if not connection:
            state = "active connection" if active_only else "connection"
            raise NotFound(f"No {state} found" + (f": {connection_id}" if connection_id else ""))
        return connection

    def list_for_user(self, user_id: str, active_only: bool = False) -> list[Connection]:
        sql = "SELECT * FROM sync_connections WHERE user_id = ?"
        params: list = [user_id]
        if active_only:
            sql += " AND status = ?"
            params.append(ConnectionStatus.ACTIVE.value)
        sql += " ORDER BY created_at DESC"

        conn = self._get_conn()
        rows = conn.execute(sql, params).fetchall()
        conn.close()
        return [Connection.from_row(r) for r in rows]

    def list_active(self) -> list[Connection]:
        """All active connections across users (peer request authentication)."""
        conn = self._get_conn()
        rows = conn.execute(
            "SELECT * FROM sync_connections WHERE status = ? ORDER BY created_at",
            (ConnectionStatus.ACTIVE.value,),
        ).fetchall()
        conn.close()
        return [Connection.from_row(r) for r in rows]

    def revoke(self, connection_id: str) -> bool:
        """
        Revoke a connection.

        Single conditional update, so concurrent revocations are safe.

        Returns:
            True if this call moved the connection to revoked,
            False if it was already revoked (or doesn't exist)
        """
        conn = self._get_conn()
        cursor = conn.execute("""
            UPDATE sync_connections SET status = ?, revoked_at = ?
            WHERE id = ? AND status = ?
        """, (
            ConnectionStatus.REVOKED.value, utc_now_iso(),
            connection_id, ConnectionStatus.ACTIVE.value,
        ))
        conn.commit()
        changed = cursor.rowcount > 0
        conn.close()

        if changed:
            logger.info(f"Revoked connection {connection_id[:8]}")
        return changed

    def secret_for(self, connection: Connection) -> str:
        """Decrypt the raw shared secret of a connection."""
        return self.secret_box.decrypt(connection.encrypted_secret)


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_connection_store: Optional[ConnectionStore] = None
_connection_store_lock = threading.Lock()


def get_connection_store(db_path: Optional[str] = None) -> ConnectionStore:
    """Get or create the singleton ConnectionStore."""
    global _connection_store
    if _connection_store is None:
        with _connection_store_lock:
            if _connection_store is None:
                _connection_store = ConnectionStore(db_path)
    return _connection_store


def reset_connection_store() -> None:
    """Reset the singleton (for testing)."""
    global _connection_store
    _connection_store = None
