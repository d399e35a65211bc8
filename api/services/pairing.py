"""
Pairing Service.

Pairing links a local user to a counterpart user in three steps:

1. The counterpart user generates a short-lived, single-use code
   (generate_code) and reads it to the local user.
2. The local user submits the code (accept_code). This side mints a
   shared secret and its own connection id, and calls the counterpart's
   consume-pairing-code endpoint.
3. The counterpart consumes the code (consume_code) with one conditional
   update, creates its Connection, and returns its connection id.

Both sides end up with an active Connection holding the same raw secret
and each other's connection id, so later signed calls are addressed
directly.
"""
import logging
import secrets
import sqlite3
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Optional

from api.services.connection_store import Connection, ConnectionStore, get_connection_store
from api.services.signing import generate_secret
from api.services.sync_client import SyncClient, get_sync_client
from api.services.sync_errors import ValidationFailure
from api.utils.datetime_utils import utc_now
from api.utils.db_paths import get_sync_db_path
from config.settings import settings

logger = logging.getLogger(__name__)

# No I/O/0/1 to avoid misreading codes aloud
CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"

MAX_CODE_ATTEMPTS = 5

Clock = Callable[[], datetime]


def _iso(dt: datetime) -> str:
    return dt.isoformat(timespec="microseconds")


def generate_pairing_code(length: int) -> str:
    """Random uppercase alphanumeric code from the unambiguous alphabet."""
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


@dataclass
class PairingCode:
    """A single-use pairing code issued to a user."""
    id: str
    user_id: str
    code: str
    expires_at: str
    consumed_at: Optional[str] = None
    created_at: str = ""

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "expires_at": self.expires_at,
            "consumed_at": self.consumed_at,
        }

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "PairingCode":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            code=row["code"],
            expires_at=row["expires_at"],
            consumed_at=row["consumed_at"],
            created_at=row["created_at"],
        )


class PairingCodeStore:
    """SQLite-backed store for pairing codes."""

    def __init__(self, db_path: Optional[str] = None, clock: Clock = utc_now):
        self.db_path = Path(db_path or get_sync_db_path())
        self.clock = clock
        self._ensure_schema()

    def _get_conn(self) -> sqlite3.Connection:
        """Get a database connection."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self.db_path), timeout=10.0)
        conn.row_factory = sqlite3.Row
        return conn

    def _ensure_schema(self) -> None:
        """Create the pairing codes table if it doesn't exist."""
        conn = self._get_conn()
        conn.execute("""
            CREATE TABLE IF NOT EXISTS sync_pairing_codes (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                code TEXT NOT NULL,
                expires_at TIMESTAMP NOT NULL,
                consumed_at TIMESTAMP,
                created_at TIMESTAMP
            )
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_sync_pairing_codes_code
            ON sync_pairing_codes(code)
        """)
        conn.commit()
        conn.close()

    def _is_live(self, conn: sqlite3.Connection, code: str) -> bool:
        row = conn.execute("""
            SELECT 1 FROM sync_pairing_codes
            WHERE code = ? AND consumed_at IS NULL AND expires_at > ?
        """, (code, _iso(self.clock()))).fetchone()
        return row is not None

    def create(self, user_id: str, ttl_minutes: int, length: int) -> PairingCode:
        """Issue a new code, avoiding collisions with other live codes."""
        now = self.clock()
        conn = self._get_conn()
        try:
            for _ in range(MAX_CODE_ATTEMPTS):
                code = generate_pairing_code(length)
                if not self._is_live(conn, code):
                    break
            else:
                raise RuntimeError("Could not generate a unique pairing code")

            pairing_code = PairingCode(
                id=str(uuid.uuid4()),
                user_id=user_id,
                code=code,
                expires_at=_iso(now + timedelta(minutes=ttl_minutes)),
                created_at=_iso(now),
            )
            conn.execute("""
                INSERT INTO sync_pairing_codes (id, user_id, code, expires_at, created_at)
                VALUES (?, ?, ?, ?, ?)
            """, (
                pairing_code.id, pairing_code.user_id, pairing_code.code,
                pairing_code.expires_at, pairing_code.created_at,
            ))
            conn.commit()
        finally:
            conn.close()
        return pairing_code

    def consume(self, code: str) -> Optional[PairingCode]:
        """
        Consume a live code.

        The consuming write is a single conditional update guarded by
        "not consumed AND not expired". When two callers race, exactly one
        update matches a row; the other sees rowcount 0 and gets None.

        Returns:
            The consumed PairingCode, or None if invalid/expired/already used
        """
        code = (code or "").strip().upper()
        now = _iso(self.clock())
        conn = self._get_conn()
        try:
            row = conn.execute("""
                SELECT * FROM sync_pairing_codes
                WHERE code = ? AND consumed_at IS NULL AND expires_at > ?
                ORDER BY created_at DESC LIMIT 1
            """, (code, now)).fetchone()
            if not row:
                return None

            cursor = conn.execute("""
                UPDATE sync_pairing_codes SET consumed_at = ?
                WHERE id = ? AND consumed_at IS NULL AND expires_at > ?
            """, (now, row["id"], now))
            conn.commit()
            if cursor.rowcount == 0:
                return None
        finally:
            conn.close()

        pairing_code = PairingCode.from_row(row)
        pairing_code.consumed_at = now
        return pairing_code

    def get_by_code(self, code: str) -> Optional[PairingCode]:
        conn = self._get_conn()
        row = conn.execute("""
            SELECT * FROM sync_pairing_codes WHERE code = ?
            ORDER BY created_at DESC LIMIT 1
        """, (code.strip().upper(),)).fetchone()
        conn.close()
        return PairingCode.from_row(row) if row else None


class PairingService:
    """Issues, accepts and consumes pairing codes."""

    def __init__(
        self,
        code_store: Optional[PairingCodeStore] = None,
        connection_store: Optional[ConnectionStore] = None,
        client: Optional[SyncClient] = None,
        app_name: Optional[str] = None,
        public_base_url: Optional[str] = None,
    ):
        self.code_store = code_store or get_pairing_code_store()
        self.connection_store = connection_store or get_connection_store()
        self.client = client or get_sync_client()
        self.app_name = app_name or settings.app_name
        self.public_base_url = public_base_url or settings.public_base_url

    def generate_code(self, user_id: str) -> PairingCode:
        """Issue a single-use code for the requesting user."""
        pairing_code = self.code_store.create(
            user_id,
            ttl_minutes=settings.pairing_code_ttl_minutes,
            length=settings.pairing_code_length,
        )
        logger.info(f"Issued pairing code for user {user_id} (expires {pairing_code.expires_at})")
        return pairing_code

    async def accept_code(
        self,
        user_id: str,
        code: str,
        remote_base_url: Optional[str] = None,
        remote_app: Optional[str] = None,
    ) -> Connection:
        """
        Pair with the counterpart that issued `code`.

        Nothing is persisted locally unless the counterpart accepts.

        Raises:
            ValidationFailure: no code, or no counterpart address configured
            RemoteRejected: counterpart refused the code or is unreachable
        """
        if not code or not code.strip():
            raise ValidationFailure("code is required")

        base_url = remote_base_url or settings.remote_base_url
        if not base_url:
            raise ValidationFailure("Sync is not configured: no counterpart address")
        app = remote_app or settings.remote_app_name

        shared_secret = generate_secret()
        local_connection_id = str(uuid.uuid4())

        result = await self.client.consume_pairing_code(base_url, {
            "code": code.strip().upper(),
            "initiator_app": self.app_name,
            "initiator_base_url": self.public_base_url,
            "shared_secret": shared_secret,
            "initiator_connection_id": local_connection_id,
        })

        connection = self.connection_store.create(
            user_id=user_id,
            remote_app=app,
            remote_base_url=base_url,
            shared_secret=shared_secret,
            remote_connection_id=result.get("connection_id"),
            connection_id=local_connection_id,
        )
        logger.info(f"Paired user {user_id} with {app} (remote user {result.get('remote_user_id')})")
        return connection

    def consume_code(self, payload: dict) -> dict:
        """
        Handle the counterpart's consume-pairing-code call.

        Raises:
            ValidationFailure: missing fields, or invalid/expired/used code
        """
        required = ("code", "initiator_app", "initiator_base_url", "shared_secret")
        missing = [k for k in required if not payload.get(k)]
        if missing:
            raise ValidationFailure(
                "code, initiator_app, initiator_base_url, and shared_secret are required"
            )

        pairing_code = self.code_store.consume(payload["code"])
        if not pairing_code:
            raise ValidationFailure("Invalid or expired pairing code")

        connection = self.connection_store.create(
            user_id=pairing_code.user_id,
            remote_app=payload["initiator_app"],
            remote_base_url=payload["initiator_base_url"],
            shared_secret=payload["shared_secret"],
            remote_connection_id=payload.get("initiator_connection_id"),
        )
        return {
            "success": True,
            "remote_user_id": pairing_code.user_id,
            "connection_id": connection.id,
        }


# ---------------------------------------------------------------------------
# Singletons
# ---------------------------------------------------------------------------

_pairing_code_store: Optional[PairingCodeStore] = None
_pairing_code_store_lock = threading.Lock()


def get_pairing_code_store(db_path: Optional[str] = None) -> PairingCodeStore:
    """Get or create the singleton PairingCodeStore."""
    global _pairing_code_store
    if _pairing_code_store is None:
        with _pairing_code_store_lock:
            if _pairing_code_store is None:
                _pairing_code_store = PairingCodeStore(db_path)
    return _pairing_code_store


def reset_pairing_code_store() -> None:
    """Reset the singleton (for testing)."""
    global _pairing_code_store
    _pairing_code_store = None
