"""
Sync Transport.

Peer-facing handlers (called by the counterpart, authenticated by an
HMAC signature over the raw request body):
    pull, push, revoke_from_remote, list_people, create_person

User-facing operations (called by the local user, who is identified by
the API layer):
    run, disconnect, list_remote_people, backfill

Either side can run a sync: run() pulls the counterpart's outbox since our
ingested watermark and applies it with the same logic push() uses.
"""
import json
import logging
from typing import Optional

from api.services.connection_store import Connection, ConnectionStore, get_connection_store
from api.services.outbox import (
    OutboxRecorder,
    OutboxStore,
    counterpart_view,
    get_outbox_store,
    install_outbox_recorder,
)
from api.services.person_links import (
    LINK_SOURCE_IMPORT,
    LINK_STATUS_LINKED,
    PersonLinkStore,
    get_person_link_store,
)
from api.services.signing import authenticate_peer_request
from api.services.sync_apply import EntityApplier
from api.services.sync_client import SyncClient, get_sync_client
from api.services.sync_cursors import CursorStore, get_cursor_store
from api.services.sync_errors import RemoteRejected, ValidationFailure
from api.services.timeline_store import (
    ENTITY_MOMENT,
    ENTITY_PERSON,
    OP_UPSERT,
    TimelineStore,
    get_timeline_store,
    moment_payload,
    person_payload,
)
from config.settings import settings

logger = logging.getLogger(__name__)

MAX_PULL_LIMIT = 1000
REVOKE_REASON_USER = "user_disconnect"


def parse_json_body(body: bytes) -> dict:
    """Decode a peer request body (after its signature was checked)."""
    if not body:
        return {}
    try:
        data = json.loads(body)
    except (ValueError, UnicodeDecodeError):
        raise ValidationFailure("Request body must be JSON") from None
    if not isinstance(data, dict):
        raise ValidationFailure("Request body must be a JSON object")
    return data


def _int_field(data: dict, key: str, default: int) -> int:
    value = data.get(key)
    if value is None:
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationFailure(f"{key} must be an integer") from None


class SyncService:
    """Pull/push transport plus the user-triggered sync operations."""

    def __init__(
        self,
        connection_store: Optional[ConnectionStore] = None,
        outbox: Optional[OutboxStore] = None,
        cursors: Optional[CursorStore] = None,
        link_store: Optional[PersonLinkStore] = None,
        timeline: Optional[TimelineStore] = None,
        applier: Optional[EntityApplier] = None,
        client: Optional[SyncClient] = None,
    ):
        self.connections = connection_store or get_connection_store()
        self.outbox = outbox or get_outbox_store()
        self.cursors = cursors or get_cursor_store()
        self.links = link_store or get_person_link_store()
        self.timeline = timeline or get_timeline_store()
        self.applier = applier or EntityApplier(timeline=self.timeline, link_store=self.links)
        self.client = client or get_sync_client()
        install_outbox_recorder(
            self.timeline,
            OutboxRecorder(self.outbox, self.connections, self.links),
        )

    # ------------------------------------------------------------------
    # Peer authentication
    # ------------------------------------------------------------------

    def _secret_or_none(self, connection: Connection) -> Optional[str]:
        try:
            return self.connections.secret_for(connection)
        except ValueError as e:
            logger.warning(f"Cannot decrypt secret of connection {connection.id[:8]}: {e}")
            return None

    def authenticate(
        self,
        body: bytes,
        signature: Optional[str],
        connection_id_header: Optional[str],
    ) -> Connection:
        """Resolve the active local connection that signed this request."""
        return authenticate_peer_request(
            self.connections.list_active(),
            self._secret_or_none,
            connection_id_header,
            body,
            signature,
        )

    # ------------------------------------------------------------------
    # Peer handlers
    # ------------------------------------------------------------------

    def pull(self, body: bytes, signature: Optional[str], connection_id_header: Optional[str]) -> dict:
        """Hand out outbox events newer than since_outbox_id."""
        connection = self.authenticate(body, signature, connection_id_header)
        data = parse_json_body(body)
        since_id = max(0, _int_field(data, "since_outbox_id", 0))
        limit = _int_field(data, "limit", settings.pull_batch_limit)
        limit = max(1, min(limit, MAX_PULL_LIMIT))

        if not self.links.list_for_connection(connection.id, LINK_STATUS_LINKED):
            return {"events": [], "last_outbox_id": since_id}

        events = self.outbox.list_since(connection.id, since_id, limit)
        last_id = events[-1].id if events else since_id
        if events:
            self.cursors.advance_served(connection.user_id, connection.id, last_id)

        logger.debug(f"Served {len(events)} events on {connection.id[:8]} (since {since_id})")
        return {"events": [e.to_dict() for e in events], "last_outbox_id": last_id}

    def push(self, body: bytes, signature: Optional[str], connection_id_header: Optional[str]) -> dict:
        """Apply events sent by the counterpart."""
        connection = self.authenticate(body, signature, connection_id_header)
        data = parse_json_body(body)
        events = data.get("events")
        if not isinstance(events, list) or not events:
            return {"applied": 0, "conflicts": [], "errors": []}

        result = self.applier.apply_batch(connection.user_id, connection.id, events)
        logger.info(
            f"Push on {connection.id[:8]}: {result.applied} applied, "
            f"{len(result.conflicts)} conflicts, {len(result.errors)} errors"
        )
        return result.to_dict()

    def revoke_from_remote(
        self,
        body: bytes,
        signature: Optional[str],
        connection_id_header: Optional[str],
    ) -> dict:
        """The counterpart disconnected; revoke our side too."""
        if not self.connections.list_active():
            return {"ok": True, "already_revoked": True}

        connection = self.authenticate(body, signature, connection_id_header)
        reason = parse_json_body(body).get("reason")
        self.connections.revoke(connection.id)
        logger.info(f"Connection {connection.id[:8]} revoked by counterpart (reason: {reason})")
        return {"ok": True}

    def list_people(self, body: bytes, signature: Optional[str], connection_id_header: Optional[str]) -> dict:
        """Active people of the connection's owner, ordered by name."""
        connection = self.authenticate(body, signature, connection_id_header)
        data = parse_json_body(body)
        limit = max(1, _int_field(data, "limit", settings.list_people_limit))
        people = self.timeline.list_people(connection.user_id, limit=limit)
        return {
            "people": [
                {"uid": p.person_uid, "name": p.name, "relationship_label": p.relationship_label}
                for p in people
            ]
        }

    def create_person(self, body: bytes, signature: Optional[str], connection_id_header: Optional[str]) -> dict:
        """
        Create (or return) a local mirror of a counterpart person.

        The mirror keeps the counterpart's UID and is linked to it on this
        connection unless the person is already linked elsewhere.
        """
        connection = self.authenticate(body, signature, connection_id_header)
        data = parse_json_body(body)
        uid = data.get("uid") or data.get("person_uid")
        name = (data.get("name") or "").strip()
        if not uid or not name:
            raise ValidationFailure("uid and name are required")

        person = self.timeline.get_person_by_uid(connection.user_id, uid)
        if not person or not person.is_active:
            person = self.timeline.create_person(
                user_id=connection.user_id,
                name=name,
                relationship_label=data.get("relationship_label") or None,
                person_uid=uid,
                origin_connection_id=connection.id,
            )
            logger.info(f"Created person {uid[:8]} requested by counterpart on {connection.id[:8]}")

        if (
            not self.links.get_for_person(connection.id, person.id)
            and not self.links.get_for_remote_uid(connection.id, uid)
        ):
            self.links.upsert_link(
                connection.user_id, connection.id, person.id, uid, link_source=LINK_SOURCE_IMPORT,
            )

        return {
            "success": True,
            "person": {
                "id": person.id,
                "uid": person.person_uid,
                "name": person.name,
                "relationship_label": person.relationship_label,
            },
        }

    # ------------------------------------------------------------------
    # User operations
    # ------------------------------------------------------------------

    async def run(self, user_id: str, connection_id: Optional[str] = None) -> dict:
        """
        Pull the counterpart's new events and apply them locally.

        The ingested watermark only moves after the batch was applied, so a
        failed pull leaves it untouched.
        """
        connection = self.connections.require_owned(user_id, connection_id)
        cursor = self.cursors.get(connection.id, user_id)
        since_id = cursor.ingested_outbox_id

        result = await self.client.pull(
            connection,
            self.connections.secret_for(connection),
            since_outbox_id=since_id,
            limit=settings.pull_batch_limit,
        )
        events = result.get("events") or []
        if not isinstance(events, list):
            raise RemoteRejected("Counterpart returned malformed events", remote_body=str(result))

        applied = self.applier.apply_batch(user_id, connection.id, events)

        last_id = result.get("last_outbox_id")
        if isinstance(last_id, int) and last_id > since_id:
            self.cursors.advance_ingested(user_id, connection.id, last_id)

        summary = {
            "pulled": len(events),
            "applied": applied.applied,
            "conflicts": len(applied.conflicts),
            "errors": len(applied.errors),
            "last_outbox_id": max(since_id, last_id) if isinstance(last_id, int) else since_id,
        }
        logger.info(
            f"Sync run on {connection.id[:8]}: pulled {summary['pulled']}, "
            f"applied {summary['applied']}, conflicts {summary['conflicts']}"
        )
        return summary

    async def disconnect(self, user_id: str, connection_id: str) -> dict:
        """
        Revoke locally, then tell the counterpart (best effort).

        Local revocation stands whether or not the notice gets through.
        """
        connection = self.connections.require_owned(user_id, connection_id, active_only=False)
        self.connections.revoke(connection.id)

        remote_notified = False
        try:
            secret = self.connections.secret_for(connection)
            await self.client.revoke(connection, secret, REVOKE_REASON_USER)
            remote_notified = True
        except RemoteRejected as e:
            logger.warning(f"Revocation notice for {connection.id[:8]} not delivered: {e.message}")
        except ValueError as e:
            logger.warning(f"Revocation notice for {connection.id[:8]} not sent: {e}")

        return {"ok": True, "remote_notified": remote_notified}

    async def list_remote_people(
        self,
        user_id: str,
        connection_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[dict]:
        """The counterpart's people for the mapping screen."""
        connection = self.connections.require_owned(user_id, connection_id)
        result = await self.client.list_people(
            connection,
            self.connections.secret_for(connection),
            limit or settings.list_people_limit,
        )
        people = result.get("people") or []
        return [p for p in people if isinstance(p, dict) and p.get("uid")]

    def backfill(self, user_id: str, connection_id: Optional[str] = None) -> dict:
        """
        Queue historical people and moments of linked identities.

        Only entities with no event already queued on the connection are
        added, so repeated backfills queue nothing new.
        """
        if connection_id:
            connections = [self.connections.require_owned(user_id, connection_id)]
        else:
            connections = self.connections.list_for_user(user_id, active_only=True)

        totals = {"queued_people": 0, "queued_moments": 0}
        for connection in connections:
            link_by_person = {link.local_person_id: link for link in self.links.enabled_links(connection.id)}
            if not link_by_person:
                continue

            existing = self.outbox.existing_keys(connection.id)
            people = self.timeline.get_people_by_ids(user_id, list(link_by_person))
            uid_by_id = {p.id: p.person_uid for p in people}

            events: list[dict] = []

            def queue(entity_type, entity_uid, payload, link):
                entity_uid, payload = counterpart_view(entity_type, entity_uid, payload, link)
                key = f"{entity_type}:{entity_uid}"
                if key in existing:
                    return
                existing.add(key)
                events.append({
                    "entity_type": entity_type,
                    "entity_uid": entity_uid,
                    "operation": OP_UPSERT,
                    "payload": payload,
                })

            for person in people:
                queue(ENTITY_PERSON, person.person_uid, person_payload(person), link_by_person[person.id])
            queued_people = len(events)

            for moment in self.timeline.list_moments_for_people(user_id, list(uid_by_id)):
                queue(
                    ENTITY_MOMENT, moment.moment_uid,
                    moment_payload(moment, uid_by_id.get(moment.person_id)),
                    link_by_person[moment.person_id],
                )

            self.outbox.append_many(connection.id, user_id, events)
            totals["queued_people"] += queued_people
            totals["queued_moments"] += len(events) - queued_people
            logger.info(
                f"Backfill on {connection.id[:8]}: queued {queued_people} people, "
                f"{len(events) - queued_people} moments"
            )

        return totals


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_sync_service: Optional[SyncService] = None


def get_sync_service() -> SyncService:
    """Get or create the singleton SyncService."""
    global _sync_service
    if _sync_service is None:
        _sync_service = SyncService()
    return _sync_service


def reset_sync_service() -> None:
    """Reset the singleton (for testing)."""
    global _sync_service
    _sync_service = None
