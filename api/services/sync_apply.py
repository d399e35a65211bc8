"""
Entity Applier: applies inbound replicated events to the local timeline.

Used by both push (counterpart sends events) and run (we pull them).
Application is idempotent by entity UID, so redelivered events converge.

People:
- upsert: update when the incoming snapshot is strictly newer, create
  (same UID) when absent
- delete: ignored, people are never deleted through sync

Moments:
- when the local copy was modified strictly after the incoming snapshot,
  a Conflict is recorded and the write is skipped
- otherwise the change is applied (ties favor the counterpart)
- delete is a soft delete
"""
import logging
from dataclasses import dataclass, field
from typing import Optional

from api.services.conflicts import CONFLICT_REASON, ConflictStore, get_conflict_store
from api.services.person_links import PersonLinkStore, get_person_link_store
from api.services.timeline_store import (
    DEFAULT_IMPACT_LEVEL,
    DEFAULT_MOMENT_STATUS,
    ENTITY_MOMENT,
    ENTITY_PERSON,
    OP_DELETE,
    OP_UPSERT,
    Moment,
    TimelineStore,
    get_timeline_store,
    moment_payload,
)
from api.utils.datetime_utils import parse_timestamp

logger = logging.getLogger(__name__)

OUTCOME_APPLIED = "applied"
OUTCOME_CONFLICT = "conflict"

SYNC_SOURCE = "sync"


@dataclass
class ApplyResult:
    applied: int = 0
    conflicts: list[dict] = field(default_factory=list)
    errors: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"applied": self.applied, "conflicts": self.conflicts, "errors": self.errors}


class EntityApplier:
    """Applies events from one connection to one local user's data."""

    def __init__(
        self,
        timeline: Optional[TimelineStore] = None,
        link_store: Optional[PersonLinkStore] = None,
        conflict_store: Optional[ConflictStore] = None,
    ):
        self.timeline = timeline or get_timeline_store()
        self.links = link_store or get_person_link_store()
        self.conflicts = conflict_store or get_conflict_store()

    def apply_batch(self, user_id: str, connection_id: str, events) -> ApplyResult:
        """
        Apply events in order. One failing event never stops the batch.
        """
        result = ApplyResult()
        if not isinstance(events, list):
            return result

        for event in events:
            entity_type = event.get("entity_type") if isinstance(event, dict) else None
            entity_uid = event.get("entity_uid") if isinstance(event, dict) else None
            try:
                outcome, conflict_id = self.apply_event(user_id, connection_id, event)
            except Exception as e:
                logger.error(f"Failed to apply {entity_type} {entity_uid}: {e}")
                result.errors.append({
                    "entity_uid": entity_uid,
                    "entity_type": entity_type,
                    "error": str(e),
                })
                continue

            if outcome == OUTCOME_CONFLICT:
                result.conflicts.append({
                    "entity_uid": entity_uid,
                    "entity_type": entity_type,
                    "reason": CONFLICT_REASON,
                    "conflict_id": conflict_id,
                })
            else:
                result.applied += 1
        return result

    def apply_event(self, user_id: str, connection_id: str, event: dict) -> tuple[str, Optional[str]]:
        """
        Apply a single event.

        Returns:
            (outcome, conflict_id)

        Raises:
            ValueError: malformed event
        """
        if not isinstance(event, dict):
            raise ValueError("Event must be an object")
        entity_type = event.get("entity_type")
        entity_uid = event.get("entity_uid")
        operation = event.get("operation") or OP_UPSERT
        payload = event.get("payload") or {}
        if not entity_uid:
            raise ValueError("entity_uid is required")
        if operation not in (OP_UPSERT, OP_DELETE):
            raise ValueError(f"Unknown operation: {operation}")
        if not isinstance(payload, dict):
            raise ValueError("payload must be an object")

        if entity_type == ENTITY_PERSON:
            self._apply_person(user_id, connection_id, entity_uid, operation, payload)
            return OUTCOME_APPLIED, None
        if entity_type == ENTITY_MOMENT:
            return self._apply_moment(user_id, connection_id, entity_uid, operation, payload)
        raise ValueError(f"Unknown entity type: {entity_type}")

    # ------------------------------------------------------------------
    # People
    # ------------------------------------------------------------------

    def _find_person(self, user_id: str, connection_id: str, person_uid: str):
        """Local person for a counterpart UID: via link first, then same UID."""
        link = self.links.get_for_remote_uid(connection_id, person_uid)
        if link:
            person = self.timeline.get_person(link.local_person_id)
            if person and person.user_id == user_id:
                return person
        return self.timeline.get_person_by_uid(user_id, person_uid)

    def _apply_person(
        self,
        user_id: str,
        connection_id: str,
        person_uid: str,
        operation: str,
        payload: dict,
        force: bool = False,
    ) -> None:
        if operation == OP_DELETE:
            return

        existing = self._find_person(user_id, connection_id, person_uid)
        if existing:
            incoming = parse_timestamp(payload.get("updated_at"))
            local = parse_timestamp(existing.updated_at)
            if force or (incoming and (local is None or incoming > local)):
                self.timeline.update_person(
                    existing.id,
                    name=payload.get("name") or existing.name,
                    relationship_label=payload.get("relationship_label") or "",
                    updated_at=payload.get("updated_at"),
                    origin_connection_id=connection_id,
                )
            return

        self.timeline.create_person(
            user_id=user_id,
            name=payload.get("name") or "Unknown",
            relationship_label=payload.get("relationship_label") or None,
            person_uid=person_uid,
            updated_at=payload.get("updated_at"),
            origin_connection_id=connection_id,
        )

    # ------------------------------------------------------------------
    # Moments
    # ------------------------------------------------------------------

    def resolve_person_id(self, user_id: str, connection_id: str, person_uid: Optional[str]) -> Optional[str]:
        if not person_uid:
            return None
        person = self._find_person(user_id, connection_id, person_uid)
        return person.id if person else None

    def _moment_fields(self, user_id: str, connection_id: str, payload: dict, existing: Optional[Moment]) -> dict:
        person_id = self.resolve_person_id(user_id, connection_id, payload.get("person_uid"))
        if person_id is None and existing and payload.get("person_uid"):
            # Unknown owner on our side: keep the current one
            person_id = existing.person_id
        return {
            "title": payload.get("title") or (existing.title if existing else "Untitled"),
            "description": payload.get("description") or None,
            "happened_at": payload.get("happened_at"),
            "happened_end": payload.get("happened_end") or None,
            "impact_level": DEFAULT_IMPACT_LEVEL if payload.get("impact_level") is None else payload["impact_level"],
            "category": payload.get("category") or None,
            "status": payload.get("status") or DEFAULT_MOMENT_STATUS,
            "attachments": payload.get("attachments") or None,
            "person_id": person_id,
            "source": SYNC_SOURCE,
        }

    def _local_snapshot(self, moment: Moment) -> dict:
        owner = self.timeline.get_person(moment.person_id) if moment.person_id else None
        snapshot = moment_payload(moment, owner.person_uid if owner else None)
        snapshot["deleted_at"] = moment.deleted_at
        return snapshot

    def _apply_moment(
        self,
        user_id: str,
        connection_id: str,
        moment_uid: str,
        operation: str,
        payload: dict,
        force: bool = False,
    ) -> tuple[str, Optional[str]]:
        existing = self.timeline.get_moment_by_uid(user_id, moment_uid)

        if existing and not force:
            local = parse_timestamp(existing.updated_at)
            incoming = parse_timestamp(payload.get("updated_at"))
            if local and incoming and local > incoming:
                conflict, _ = self.conflicts.record(
                    user_id=user_id,
                    connection_id=connection_id,
                    entity_type=ENTITY_MOMENT,
                    entity_uid=moment_uid,
                    local_payload=self._local_snapshot(existing),
                    remote_payload=dict(payload, operation=operation),
                )
                return OUTCOME_CONFLICT, conflict.id

        if operation == OP_DELETE:
            if existing and existing.deleted_at is None:
                self.timeline.soft_delete_moment(
                    existing.id,
                    updated_at=payload.get("updated_at"),
                    origin_connection_id=connection_id,
                )
            return OUTCOME_APPLIED, None

        fields = self._moment_fields(user_id, connection_id, payload, existing)
        if existing:
            self.timeline.update_moment(
                existing.id,
                updated_at=payload.get("updated_at"),
                origin_connection_id=connection_id,
                **fields,
            )
        else:
            self.timeline.create_moment(
                user_id=user_id,
                moment_uid=moment_uid,
                updated_at=payload.get("updated_at"),
                origin_connection_id=connection_id,
                **fields,
            )
        return OUTCOME_APPLIED, None

    # ------------------------------------------------------------------
    # Conflict resolution
    # ------------------------------------------------------------------

    def force_apply(
        self,
        user_id: str,
        connection_id: str,
        entity_type: str,
        entity_uid: str,
        payload: dict,
    ) -> None:
        """Write a stored remote snapshot without the timestamp check."""
        payload = dict(payload or {})
        operation = payload.pop("operation", OP_UPSERT)
        if entity_type == ENTITY_MOMENT:
            self._apply_moment(user_id, connection_id, entity_uid, operation, payload, force=True)
        elif entity_type == ENTITY_PERSON:
            self._apply_person(user_id, connection_id, entity_uid, operation, payload, force=True)
        else:
            raise ValueError(f"Unknown entity type: {entity_type}")
