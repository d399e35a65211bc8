"""
Tests for applying inbound events, conflict detection and resolution.
"""
import pytest

from api.services.conflicts import RESOLUTION_ACCEPT_REMOTE, RESOLUTION_KEEP_LOCAL
from api.services.sync_apply import OUTCOME_APPLIED, OUTCOME_CONFLICT
from api.services.sync_cursors import CursorStore
from api.services.sync_errors import NotFound, ValidationFailure

pytestmark = pytest.mark.unit

T = "2025-03-01T12:00:00+00:00"
T_MINUS_1 = "2025-03-01T11:00:00+00:00"
T_PLUS_1 = "2025-03-01T13:00:00+00:00"

CONN = "conn-1"


@pytest.fixture
def app(stacks):
    temerio, _ = stacks
    return temerio


def moment_event(uid="moment-1", person_uid=None, updated_at=T, operation="upsert", **fields):
    payload = {
        "moment_uid": uid,
        "title": "Graduation",
        "happened_at": "2024-06-01T00:00:00+00:00",
        "impact_level": 3,
        "person_uid": person_uid,
        "updated_at": updated_at,
    }
    payload.update(fields)
    return {"entity_type": "moment", "entity_uid": uid, "operation": operation, "payload": payload}


def person_event(uid="person-1", name="Maria Garcia", updated_at=T, operation="upsert"):
    return {
        "entity_type": "person",
        "entity_uid": uid,
        "operation": operation,
        "payload": {"person_uid": uid, "name": name, "updated_at": updated_at},
    }


class TestApplyPeople:
    """Person events."""

    def test_unknown_person_created_with_same_uid(self, app):
        result = app.applier.apply_batch("alice", CONN, [person_event()])
        assert result.applied == 1
        person = app.timeline.get_person_by_uid("alice", "person-1")
        assert person.name == "Maria Garcia"

    def test_newer_snapshot_updates(self, app):
        app.timeline.create_person("alice", "Maria", person_uid="person-1", updated_at=T_MINUS_1)
        app.applier.apply_batch("alice", CONN, [person_event(name="Maria G.", updated_at=T)])
        assert app.timeline.get_person_by_uid("alice", "person-1").name == "Maria G."

    def test_older_snapshot_ignored(self, app):
        app.timeline.create_person("alice", "Maria", person_uid="person-1", updated_at=T_PLUS_1)
        result = app.applier.apply_batch("alice", CONN, [person_event(name="Stale", updated_at=T)])
        assert result.applied == 1
        assert result.conflicts == []
        assert app.timeline.get_person_by_uid("alice", "person-1").name == "Maria"

    def test_person_delete_ignored(self, app):
        person = app.timeline.create_person("alice", "Maria", person_uid="person-1")
        result = app.applier.apply_batch("alice", CONN, [person_event(operation="delete")])
        assert result.applied == 1
        assert app.timeline.get_person(person.id).is_active

    def test_linked_remote_uid_resolves_local_person(self, app):
        local = app.timeline.create_person("alice", "Maria", updated_at=T_MINUS_1)
        app.links.upsert_link("alice", CONN, local.id, "their-uid")

        app.applier.apply_batch("alice", CONN, [person_event(uid="their-uid", name="Maria G.")])

        assert app.timeline.get_person(local.id).name == "Maria G."
        assert app.timeline.get_person_by_uid("alice", "their-uid") is None


class TestApplyMoments:
    """Moment events and the timestamp rule."""

    def test_new_moment_created_under_owner(self, app):
        person = app.timeline.create_person("alice", "Maria", person_uid="person-1")
        app.applier.apply_batch("alice", CONN, [moment_event(person_uid="person-1")])

        moment = app.timeline.get_moment_by_uid("alice", "moment-1")
        assert moment.person_id == person.id
        assert moment.title == "Graduation"
        assert moment.impact_level == 3
        assert moment.source == "sync"

    def test_zero_impact_level_kept(self, app):
        app.applier.apply_batch("alice", CONN, [moment_event(impact_level=0)])
        assert app.timeline.get_moment_by_uid("alice", "moment-1").impact_level == 0

        app.applier.apply_batch("alice", CONN, [moment_event(uid="moment-2", impact_level=None)])
        assert app.timeline.get_moment_by_uid("alice", "moment-2").impact_level == 2

    def test_applying_twice_is_idempotent(self, app):
        app.timeline.create_person("alice", "Maria", person_uid="person-1")
        events = [moment_event(person_uid="person-1")]

        app.applier.apply_batch("alice", CONN, events)
        first = app.timeline.get_moment_by_uid("alice", "moment-1")
        second_result = app.applier.apply_batch("alice", CONN, events)
        second = app.timeline.get_moment_by_uid("alice", "moment-1")

        assert second_result.conflicts == []
        assert second.id == first.id
        assert second.title == first.title
        assert second.updated_at == first.updated_at

    def test_local_newer_records_conflict(self, app):
        """Local edit at T+1, remote edit at T: conflict, local copy unchanged."""
        local = app.timeline.create_moment(
            "alice", "Local title", moment_uid="moment-1", updated_at=T_PLUS_1,
        )

        result = app.applier.apply_batch("alice", CONN, [moment_event(title="Remote title", updated_at=T)])

        assert result.applied == 0
        assert len(result.conflicts) == 1
        entry = result.conflicts[0]
        assert entry["entity_uid"] == "moment-1"
        assert entry["reason"] == "Both sides modified since last sync"

        conflict = app.conflicts.get(entry["conflict_id"])
        assert conflict.local_payload["title"] == "Local title"
        assert conflict.remote_payload["title"] == "Remote title"
        assert app.timeline.get_moment(local.id).title == "Local title"

    def test_remote_newer_applied(self, app):
        """Local edit at T-1, remote edit at T: remote wins, no conflict."""
        app.timeline.create_moment("alice", "Local title", moment_uid="moment-1", updated_at=T_MINUS_1)

        result = app.applier.apply_batch("alice", CONN, [moment_event(title="Remote title", updated_at=T)])

        assert result.applied == 1
        assert result.conflicts == []
        assert app.timeline.get_moment_by_uid("alice", "moment-1").title == "Remote title"

    def test_equal_timestamps_favor_counterpart(self, app):
        app.timeline.create_moment("alice", "Local title", moment_uid="moment-1", updated_at=T)
        app.applier.apply_batch("alice", CONN, [moment_event(title="Remote title", updated_at=T)])
        assert app.timeline.get_moment_by_uid("alice", "moment-1").title == "Remote title"

    def test_redelivered_conflict_not_duplicated(self, app):
        app.timeline.create_moment("alice", "Local", moment_uid="moment-1", updated_at=T_PLUS_1)
        event = moment_event(title="Remote", updated_at=T)

        first = app.applier.apply_batch("alice", CONN, [event])
        second = app.applier.apply_batch("alice", CONN, [event])

        assert first.conflicts[0]["conflict_id"] == second.conflicts[0]["conflict_id"]
        assert len(app.conflicts.list_open("alice")) == 1

    def test_delete_is_soft(self, app):
        local = app.timeline.create_moment("alice", "Trip", moment_uid="moment-1", updated_at=T_MINUS_1)
        app.applier.apply_batch("alice", CONN, [moment_event(operation="delete", updated_at=T)])

        moment = app.timeline.get_moment(local.id)
        assert moment is not None
        assert moment.deleted_at is not None

    def test_unknown_owner_keeps_existing_owner(self, app):
        owner = app.timeline.create_person("alice", "Maria")
        local = app.timeline.create_moment(
            "alice", "Trip", person_id=owner.id, moment_uid="moment-1", updated_at=T_MINUS_1,
        )
        app.applier.apply_batch("alice", CONN, [moment_event(person_uid="nobody-here")])
        assert app.timeline.get_moment(local.id).person_id == owner.id

    def test_bad_events_reported_without_stopping_batch(self, app):
        events = [
            "not an object",
            {"entity_type": "moment", "operation": "upsert", "payload": {}},
            {"entity_type": "photo", "entity_uid": "x", "payload": {}},
            {"entity_type": "moment", "entity_uid": "m2", "operation": "explode", "payload": {}},
            moment_event(uid="good"),
        ]
        result = app.applier.apply_batch("alice", CONN, events)

        assert result.applied == 1
        assert len(result.errors) == 4
        assert result.errors[2]["entity_uid"] == "x"
        assert "Unknown entity type" in result.errors[2]["error"]
        assert app.timeline.get_moment_by_uid("alice", "good") is not None

    def test_apply_event_outcomes(self, app):
        outcome, conflict_id = app.applier.apply_event("alice", CONN, moment_event())
        assert (outcome, conflict_id) == (OUTCOME_APPLIED, None)

        app.timeline.update_moment(
            app.timeline.get_moment_by_uid("alice", "moment-1").id, updated_at=T_PLUS_1, title="Mine",
        )
        outcome, conflict_id = app.applier.apply_event("alice", CONN, moment_event(updated_at=T))
        assert outcome == OUTCOME_CONFLICT
        assert conflict_id


class TestConflictResolution:
    """Tests for ConflictResolver."""

    @pytest.fixture
    def conflict(self, app):
        app.timeline.create_moment("alice", "Local title", moment_uid="moment-1", updated_at=T_PLUS_1)
        result = app.applier.apply_batch("alice", CONN, [moment_event(title="Remote title", updated_at=T)])
        return app.conflicts.get(result.conflicts[0]["conflict_id"])

    def test_keep_local(self, app, conflict):
        resolved = app.resolver.resolve("alice", conflict.id, RESOLUTION_KEEP_LOCAL)
        assert resolved.resolution == RESOLUTION_KEEP_LOCAL
        assert resolved.resolved_at is not None
        assert app.timeline.get_moment_by_uid("alice", "moment-1").title == "Local title"
        assert app.resolver.list_open("alice") == []

    def test_accept_remote_overwrites(self, app, conflict):
        app.resolver.resolve("alice", conflict.id, RESOLUTION_ACCEPT_REMOTE)
        moment = app.timeline.get_moment_by_uid("alice", "moment-1")
        assert moment.title == "Remote title"
        assert moment.updated_at == T

    def test_accept_remote_delete(self, app):
        app.timeline.create_moment("alice", "Mine", moment_uid="moment-1", updated_at=T_PLUS_1)
        result = app.applier.apply_batch("alice", CONN, [moment_event(operation="delete", updated_at=T)])
        conflict_id = result.conflicts[0]["conflict_id"]

        app.resolver.resolve("alice", conflict_id, RESOLUTION_ACCEPT_REMOTE)
        assert app.timeline.get_moment_by_uid("alice", "moment-1").deleted_at is not None

    def test_unknown_resolution(self, app, conflict):
        with pytest.raises(ValidationFailure):
            app.resolver.resolve("alice", conflict.id, "merge_both")

    def test_already_resolved(self, app, conflict):
        app.resolver.resolve("alice", conflict.id, RESOLUTION_KEEP_LOCAL)
        with pytest.raises(ValidationFailure):
            app.resolver.resolve("alice", conflict.id, RESOLUTION_ACCEPT_REMOTE)

    def test_other_users_conflict_not_found(self, app, conflict):
        with pytest.raises(NotFound):
            app.resolver.resolve("mallory", conflict.id, RESOLUTION_KEEP_LOCAL)
        with pytest.raises(NotFound):
            app.resolver.resolve("alice", "missing", RESOLUTION_KEEP_LOCAL)


class TestCursors:
    """Watermarks never move backwards."""

    def test_defaults_to_zero(self, db_path):
        cursor = CursorStore(db_path).get("c1", "alice")
        assert cursor.served_outbox_id == 0
        assert cursor.ingested_outbox_id == 0

    def test_advance_is_monotonic(self, db_path):
        store = CursorStore(db_path)
        store.advance_ingested("alice", "c1", 10)
        store.advance_ingested("alice", "c1", 4)
        assert store.get("c1").ingested_outbox_id == 10

        store.advance_served("alice", "c1", 7)
        cursor = store.get("c1")
        assert cursor.served_outbox_id == 7
        assert cursor.ingested_outbox_id == 10
