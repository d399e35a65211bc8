"""
Person Identity Mapper: staged mapping between local and remote people.

Every local person and every remote person is in exactly one state:

- LINKED to one specific counterpart (source manual/suggested/import)
- CREATE: mirror it on the other side on activation
- DO_NOT_SYNC

StagedMapping keeps both sides in one structure so the local-anchored and
remote-anchored views can never disagree. Changes go through reassign /
set_create / set_do_not_sync, which release displaced partners back to
CREATE and report each displacement as a user-visible notice.

MappingActivator turns a staged mapping into durable PersonLinks. Creating
a person on the counterpart then linking it is a saga with a persisted
SyncIntent, so a failed remote call leaves a retryable record and no link.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from api.services.connection_store import Connection, ConnectionStore, get_connection_store
from api.services.person_links import (
    LINK_SOURCE_IMPORT,
    LINK_SOURCE_MANUAL,
    LINK_SOURCE_SUGGESTED,
    LINK_SOURCES,
    LINK_STATUS_EXCLUDED,
    LINK_STATUS_LINKED,
    PersonLink,
    PersonLinkStore,
    get_person_link_store,
)
from api.services.person_matching import best_match
from api.services.sync_client import SyncClient, get_sync_client
from api.services.sync_errors import RemoteRejected, ValidationFailure
from api.services.sync_intents import (
    INTENT_CREATE_REMOTE_PERSON,
    IntentStore,
    SyncIntent,
    get_intent_store,
)
from api.services.timeline_store import Person, TimelineStore, get_timeline_store

logger = logging.getLogger(__name__)

SIDE_LOCAL = "local"
SIDE_REMOTE = "remote"


class MappingState(str, Enum):
    LINKED = "linked"
    CREATE = "create"
    DO_NOT_SYNC = "do_not_sync"


@dataclass
class MappingEntry:
    """One item's state as seen from its own side."""
    state: MappingState
    partner: Optional[str] = None
    source: Optional[str] = None
    confidence: Optional[float] = None
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "state": self.state.value,
            "partner": self.partner,
            "source": self.source,
            "confidence": self.confidence,
            "reason": self.reason,
        }


@dataclass
class _Pair:
    local_id: str
    remote_uid: str
    source: str = LINK_SOURCE_MANUAL
    confidence: Optional[float] = None
    reason: Optional[str] = None


class StagedMapping:
    """
    Bidirectional local <-> remote mapping.

    Pairs are indexed from both ends; every mutation updates both indexes
    together, so each local id maps to at most one remote uid and vice versa.
    """

    def __init__(
        self,
        local_ids: Optional[list[str]] = None,
        remote_uids: Optional[list[str]] = None,
        local_labels: Optional[dict[str, str]] = None,
        remote_labels: Optional[dict[str, str]] = None,
    ):
        self._local_state: dict[str, MappingState] = {}
        self._remote_state: dict[str, MappingState] = {}
        self._by_local: dict[str, _Pair] = {}
        self._by_remote: dict[str, _Pair] = {}
        self.local_labels: dict[str, str] = dict(local_labels or {})
        self.remote_labels: dict[str, str] = dict(remote_labels or {})
        for local_id in local_ids or []:
            self.add_local(local_id)
        for remote_uid in remote_uids or []:
            self.add_remote(remote_uid)

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    def add_local(self, local_id: str, label: Optional[str] = None) -> None:
        self._local_state.setdefault(local_id, MappingState.CREATE)
        if label:
            self.local_labels[local_id] = label

    def add_remote(self, remote_uid: str, label: Optional[str] = None) -> None:
        self._remote_state.setdefault(remote_uid, MappingState.CREATE)
        if label:
            self.remote_labels[remote_uid] = label

    def _label(self, side: str, key: str) -> str:
        labels = self.local_labels if side == SIDE_LOCAL else self.remote_labels
        return labels.get(key, key)

    def _require(self, side: str, key: str) -> None:
        if side not in (SIDE_LOCAL, SIDE_REMOTE):
            raise ValidationFailure(f"Unknown side: {side}")
        states = self._local_state if side == SIDE_LOCAL else self._remote_state
        if key not in states:
            raise ValidationFailure(f"Unknown {side} person: {key}")

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    def local_entry(self, local_id: str) -> MappingEntry:
        self._require(SIDE_LOCAL, local_id)
        pair = self._by_local.get(local_id)
        if pair:
            return MappingEntry(MappingState.LINKED, pair.remote_uid, pair.source, pair.confidence, pair.reason)
        return MappingEntry(self._local_state[local_id])

    def remote_entry(self, remote_uid: str) -> MappingEntry:
        self._require(SIDE_REMOTE, remote_uid)
        pair = self._by_remote.get(remote_uid)
        if pair:
            return MappingEntry(MappingState.LINKED, pair.local_id, pair.source, pair.confidence, pair.reason)
        return MappingEntry(self._remote_state[remote_uid])

    def local_view(self) -> dict[str, MappingEntry]:
        return {local_id: self.local_entry(local_id) for local_id in self._local_state}

    def remote_view(self) -> dict[str, MappingEntry]:
        return {remote_uid: self.remote_entry(remote_uid) for remote_uid in self._remote_state}

    def pairs(self) -> list[tuple[str, str]]:
        return [(p.local_id, p.remote_uid) for p in self._by_local.values()]

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def _release_local(self, local_id: str, notices: list[str], cause: str) -> None:
        pair = self._by_local.pop(local_id, None)
        if not pair:
            return
        del self._by_remote[pair.remote_uid]
        self._local_state[local_id] = MappingState.CREATE
        self._remote_state[pair.remote_uid] = MappingState.CREATE
        notices.append(
            f"{self._label(SIDE_REMOTE, pair.remote_uid)} is no longer linked to "
            f"{self._label(SIDE_LOCAL, local_id)} ({cause}) and will be created"
        )

    def reassign(
        self,
        local_id: str,
        remote_uid: str,
        source: str = LINK_SOURCE_MANUAL,
        confidence: Optional[float] = None,
        reason: Optional[str] = None,
    ) -> list[str]:
        """
        Link local_id to remote_uid.

        Whatever either item was linked to before is released to CREATE.

        Returns:
            Notices describing each displaced partner
        """
        self._require(SIDE_LOCAL, local_id)
        self._require(SIDE_REMOTE, remote_uid)
        if source not in LINK_SOURCES:
            raise ValidationFailure(f"Unknown link source: {source}")

        current = self._by_local.get(local_id)
        if current and current.remote_uid == remote_uid:
            current.source, current.confidence, current.reason = source, confidence, reason
            return []

        notices: list[str] = []
        cause = f"{self._label(SIDE_LOCAL, local_id)} linked to {self._label(SIDE_REMOTE, remote_uid)}"
        self._release_local(local_id, notices, cause)
        displaced = self._by_remote.get(remote_uid)
        if displaced:
            self._release_local(displaced.local_id, notices, cause)

        pair = _Pair(local_id, remote_uid, source, confidence, reason)
        self._by_local[local_id] = pair
        self._by_remote[remote_uid] = pair
        self._local_state[local_id] = MappingState.LINKED
        self._remote_state[remote_uid] = MappingState.LINKED
        return notices

    def _set_state(self, side: str, key: str, state: MappingState) -> list[str]:
        self._require(side, key)
        notices: list[str] = []
        cause = f"{self._label(side, key)} set to {state.value}"
        if side == SIDE_LOCAL:
            self._release_local(key, notices, cause)
            self._local_state[key] = state
        else:
            pair = self._by_remote.get(key)
            if pair:
                self._release_local(pair.local_id, notices, cause)
            self._remote_state[key] = state
        return notices

    def set_create(self, side: str, key: str) -> list[str]:
        return self._set_state(side, key, MappingState.CREATE)

    def set_do_not_sync(self, side: str, key: str) -> list[str]:
        return self._set_state(side, key, MappingState.DO_NOT_SYNC)

    def check_invariant(self) -> None:
        """Raise ValidationFailure unless the mapping is strictly 1:1."""
        if len(self._by_local) != len(self._by_remote):
            raise ValidationFailure("Mapping is not 1:1")
        for local_id, pair in self._by_local.items():
            if pair.local_id != local_id or self._by_remote.get(pair.remote_uid) is not pair:
                raise ValidationFailure(f"Mapping is not 1:1 at {local_id}")
            if self._local_state.get(local_id) != MappingState.LINKED:
                raise ValidationFailure(f"Linked person {local_id} has state {self._local_state.get(local_id)}")
            if self._remote_state.get(pair.remote_uid) != MappingState.LINKED:
                raise ValidationFailure(f"Linked remote {pair.remote_uid} is not marked linked")
        for side, states in ((SIDE_LOCAL, self._local_state), (SIDE_REMOTE, self._remote_state)):
            index = self._by_local if side == SIDE_LOCAL else self._by_remote
            for key, state in states.items():
                if state == MappingState.LINKED and key not in index:
                    raise ValidationFailure(f"{side} {key} is marked linked without a partner")

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> dict:
        return {
            "local": {k: v.to_dict() for k, v in self.local_view().items()},
            "remote": {k: v.to_dict() for k, v in self.remote_view().items()},
            "local_labels": self.local_labels,
            "remote_labels": self.remote_labels,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "StagedMapping":
        """
        Rebuild a mapping submitted by a client.

        Raises:
            ValidationFailure: unknown state, or the two sides disagree
        """
        local = data.get("local") or {}
        remote = data.get("remote") or {}
        mapping = cls(
            list(local), list(remote),
            local_labels=data.get("local_labels"),
            remote_labels=data.get("remote_labels"),
        )

        def parse_state(value) -> MappingState:
            try:
                return MappingState(value)
            except ValueError:
                raise ValidationFailure(f"Unknown mapping state: {value}") from None

        for local_id, entry in local.items():
            if not isinstance(entry, dict):
                raise ValidationFailure(f"Mapping entry for {local_id} must be an object")
            state = parse_state(entry.get("state"))
            if state == MappingState.LINKED:
                partner = entry.get("partner")
                if not partner:
                    raise ValidationFailure(f"Linked person {local_id} has no partner")
                if partner in mapping._by_remote:
                    raise ValidationFailure(f"Remote {partner} is linked more than once")
                mapping.add_remote(partner)
                mapping.reassign(
                    local_id, partner,
                    source=entry.get("source") or LINK_SOURCE_MANUAL,
                    confidence=entry.get("confidence"),
                    reason=entry.get("reason"),
                )
            else:
                mapping._local_state[local_id] = state

        for remote_uid, entry in remote.items():
            if not isinstance(entry, dict):
                raise ValidationFailure(f"Mapping entry for {remote_uid} must be an object")
            state = parse_state(entry.get("state"))
            pair = mapping._by_remote.get(remote_uid)
            if state == MappingState.LINKED:
                if not pair or pair.local_id != entry.get("partner"):
                    raise ValidationFailure(f"Remote {remote_uid} disagrees with the local side")
            elif pair:
                raise ValidationFailure(f"Remote {remote_uid} disagrees with the local side")
            else:
                mapping._remote_state[remote_uid] = state

        mapping.check_invariant()
        return mapping


def suggest_mapping(
    local_people: list[Person],
    remote_people: list[dict],
    links: list[PersonLink],
) -> StagedMapping:
    """
    Build a staged mapping from existing links plus name suggestions.

    Existing links are seeded first (linked stays linked, excluded becomes
    DO_NOT_SYNC). Each remaining local person is paired with the best
    remaining remote person scoring at least the suggestion threshold.
    Everything left over defaults to CREATE.
    """
    mapping = StagedMapping()
    for person in local_people:
        mapping.add_local(person.id, person.name)
    for remote in remote_people:
        if remote.get("uid"):
            mapping.add_remote(remote["uid"], remote.get("name"))

    local_ids = {p.id for p in local_people}
    seeded: set[str] = set()
    for link in links:
        if link.local_person_id not in local_ids:
            continue
        if link.link_status == LINK_STATUS_LINKED:
            mapping.add_remote(link.remote_person_uid)
            mapping.reassign(
                link.local_person_id, link.remote_person_uid,
                source=link.link_source or LINK_SOURCE_MANUAL,
            )
        elif link.link_status == LINK_STATUS_EXCLUDED:
            mapping.set_do_not_sync(SIDE_LOCAL, link.local_person_id)
        seeded.add(link.local_person_id)

    for person in local_people:
        if person.id in seeded:
            continue
        remaining = [
            (uid, mapping.remote_labels.get(uid, ""))
            for uid, entry in mapping.remote_view().items()
            if entry.state == MappingState.CREATE
        ]
        match = best_match(person.name, remaining)
        if match:
            uid, score = match
            mapping.reassign(
                person.id, uid,
                source=LINK_SOURCE_SUGGESTED,
                confidence=score.score,
                reason=score.reason,
            )

    return mapping


class MappingActivator:
    """Makes a staged mapping durable."""

    def __init__(
        self,
        link_store: Optional[PersonLinkStore] = None,
        timeline: Optional[TimelineStore] = None,
        connection_store: Optional[ConnectionStore] = None,
        intent_store: Optional[IntentStore] = None,
        client: Optional[SyncClient] = None,
    ):
        self.links = link_store or get_person_link_store()
        self.timeline = timeline or get_timeline_store()
        self.connections = connection_store or get_connection_store()
        self.intents = intent_store or get_intent_store()
        self.client = client or get_sync_client()

    async def activate(self, user_id: str, connection_id: str, mapping: StagedMapping) -> dict:
        """
        Persist the mapping as PersonLinks.

        Returns:
            Counts per action plus per-item errors from remote creation
        """
        connection = self.connections.require_owned(user_id, connection_id)
        mapping.check_invariant()

        result = {
            "linked": 0,
            "excluded": 0,
            "created_remote": 0,
            "created_local": 0,
            "detached": 0,
            "errors": [],
        }
        keep: set[str] = set()
        mirrored_uids: set[str] = set()
        local_view = mapping.local_view()

        for local_id, entry in local_view.items():
            person = self.timeline.get_person(local_id)
            if not person or person.user_id != user_id or not person.is_active:
                result["errors"].append({"local_person_id": local_id, "error": "Person not found"})
                keep.add(local_id)
                continue

            if entry.state == MappingState.LINKED:
                self.links.upsert_link(
                    user_id, connection.id, local_id, entry.partner,
                    link_source=entry.source or LINK_SOURCE_MANUAL,
                )
                result["linked"] += 1
                keep.add(local_id)
            elif entry.state == MappingState.DO_NOT_SYNC:
                self.links.exclude(user_id, connection.id, local_id)
                result["excluded"] += 1
                keep.add(local_id)
            else:
                intent = self.intents.create(
                    user_id, connection.id, INTENT_CREATE_REMOTE_PERSON,
                    {
                        "local_person_id": person.id,
                        "uid": person.person_uid,
                        "name": person.name,
                        "relationship_label": person.relationship_label,
                    },
                )
                try:
                    await self._drive_create_remote(connection, intent)
                except RemoteRejected as e:
                    result["errors"].append({"local_person_id": local_id, "error": e.message})
                    keep.add(local_id)
                    continue
                result["created_remote"] += 1
                mirrored_uids.add(person.person_uid)
                keep.add(local_id)

        satisfied = mirrored_uids | {
            e.partner for e in local_view.values() if e.state == MappingState.LINKED
        }
        for remote_uid, entry in mapping.remote_view().items():
            if entry.state != MappingState.CREATE or remote_uid in satisfied:
                continue
            person = self.timeline.get_person_by_uid(user_id, remote_uid)
            if person and person.is_active:
                if person.id in keep:
                    result["errors"].append({
                        "remote_person_uid": remote_uid,
                        "error": "UID already belongs to a mapped local person",
                    })
                    continue
                local_id = person.id
            else:
                person = self.timeline.create_person(
                    user_id=user_id,
                    name=mapping.remote_labels.get(remote_uid) or remote_uid,
                    person_uid=remote_uid,
                    origin_connection_id=connection.id,
                )
                local_id = person.id
                result["created_local"] += 1
            self.links.upsert_link(
                user_id, connection.id, local_id, remote_uid, link_source=LINK_SOURCE_IMPORT,
            )
            keep.add(local_id)

        for link in self.links.list_for_connection(connection.id):
            if link.local_person_id not in keep and self.links.delete(user_id, link.id):
                result["detached"] += 1

        logger.info(
            f"Activated mapping on {connection.id[:8]}: {result['linked']} linked, "
            f"{result['excluded']} excluded, {result['created_remote']} created remotely, "
            f"{result['created_local']} created locally, {result['detached']} detached, "
            f"{len(result['errors'])} errors"
        )
        return result

    async def _drive_create_remote(self, connection: Connection, intent: SyncIntent) -> PersonLink:
        """
        Run one create-remote-person intent to completion.

        The local link is written only after the counterpart confirms.
        """
        payload = intent.payload
        try:
            await self.client.create_person(
                connection,
                self.connections.secret_for(connection),
                uid=payload["uid"],
                name=payload["name"],
                relationship_label=payload.get("relationship_label"),
            )
        except RemoteRejected as e:
            self.intents.mark_failed(intent.id, e.message)
            raise

        link, _ = self.links.upsert_link(
            intent.user_id, connection.id, payload["local_person_id"], payload["uid"],
            link_source=LINK_SOURCE_MANUAL,
        )
        self.intents.mark_completed(intent.id)
        return link

    async def retry_pending_intents(self, user_id: str) -> dict:
        """Re-drive the user's pending or failed intents."""
        summary = {"retried": 0, "completed": 0, "failed": 0}
        for intent in self.intents.list_retryable(user_id):
            if intent.kind != INTENT_CREATE_REMOTE_PERSON:
                continue
            summary["retried"] += 1
            connection = self.connections.get_for_user(user_id, intent.connection_id, active_only=True)
            if not connection:
                self.intents.mark_failed(intent.id, "Connection is no longer active")
                summary["failed"] += 1
                continue
            try:
                await self._drive_create_remote(connection, intent)
            except RemoteRejected:
                summary["failed"] += 1
                continue
            summary["completed"] += 1
        return summary
