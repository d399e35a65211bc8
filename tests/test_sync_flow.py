"""
Two-party sync flows: pairing, mapping, pull/push, conflicts, disconnect.

Both applications run in-process; peer calls travel through
httpx.MockTransport (see tests/fixtures/sync_stack.py).
"""
import pytest
from cryptography.fernet import Fernet

from api.services.conflicts import RESOLUTION_ACCEPT_REMOTE
from api.services.person_mapping import StagedMapping
from api.services.secret_box import SecretBox
from api.services.signing import compute_signature
from api.services.sync_client import encode_body
from api.services.sync_errors import AuthenticationFailure, NotFound, RemoteUnavailable, ValidationFailure
from tests.fixtures.sync_stack import pair

pytestmark = pytest.mark.integration

EARLIER = "2030-01-01T10:00:00+00:00"
LATER = "2030-01-01T11:00:00+00:00"


async def mirror_person(temerio, cherishly, name="Maria Garcia"):
    """Pair, create a person on temerio and mirror it to cherishly."""
    local, remote = await pair(temerio, cherishly)
    person = temerio.timeline.create_person("alice", name)
    result = await temerio.activator.activate("alice", local.id, StagedMapping([person.id], []))
    assert result["created_remote"] == 1
    mirror = cherishly.timeline.get_person_by_uid("bob", person.person_uid)
    return local, remote, person, mirror


def signed(stack, connection, payload):
    body = encode_body(payload)
    secret = stack.connections.secret_for(connection)
    return body, compute_signature(secret, body), connection.peer_address_id


class TestPullAndRun:

    @pytest.mark.asyncio
    async def test_moment_flows_both_ways(self, stacks):
        temerio, cherishly = stacks
        local, remote, person, mirror = await mirror_person(temerio, cherishly)

        moment = temerio.timeline.create_moment(
            "alice", "Graduation", person_id=person.id, impact_level=3,
        )
        summary = await cherishly.service.run("bob", remote.id)

        assert summary["pulled"] == 1
        assert summary["applied"] == 1
        copy = cherishly.timeline.get_moment_by_uid("bob", moment.moment_uid)
        assert copy.person_id == mirror.id
        assert copy.title == "Graduation"
        assert copy.impact_level == 3

        cherishly.timeline.update_moment(copy.id, title="Graduation day")
        summary = await temerio.service.run("alice", local.id)

        assert summary["applied"] == 1
        assert temerio.timeline.get_moment(moment.id).title == "Graduation day"

    @pytest.mark.asyncio
    async def test_applied_changes_not_echoed(self, stacks):
        temerio, cherishly = stacks
        local, remote, person, _ = await mirror_person(temerio, cherishly)
        temerio.timeline.create_moment("alice", "Trip", person_id=person.id)

        await cherishly.service.run("bob", remote.id)

        # Nothing cherishly applied from temerio is queued back to temerio
        assert cherishly.outbox.count(remote.id) == 0
        summary = await temerio.service.run("alice", local.id)
        assert summary["pulled"] == 0

    @pytest.mark.asyncio
    async def test_watermark_advances(self, stacks):
        temerio, cherishly = stacks
        local, remote, person, _ = await mirror_person(temerio, cherishly)
        temerio.timeline.create_moment("alice", "One", person_id=person.id)
        temerio.timeline.create_moment("alice", "Two", person_id=person.id)

        first = await cherishly.service.run("bob", remote.id)
        second = await cherishly.service.run("bob", remote.id)

        assert first["pulled"] == 2
        assert second["pulled"] == 0
        assert second["last_outbox_id"] == first["last_outbox_id"]
        assert cherishly.cursors.get(remote.id).ingested_outbox_id == first["last_outbox_id"]
        assert temerio.cursors.get(local.id).served_outbox_id == first["last_outbox_id"]

    @pytest.mark.asyncio
    async def test_pull_batches_respect_limit(self, stacks, monkeypatch):
        from config.settings import settings

        temerio, cherishly = stacks
        local, remote, person, _ = await mirror_person(temerio, cherishly)
        for i in range(5):
            temerio.timeline.create_moment("alice", f"Moment {i}", person_id=person.id)
        monkeypatch.setattr(settings, "pull_batch_limit", 2)

        pulled = []
        for _ in range(4):
            pulled.append((await cherishly.service.run("bob", remote.id))["pulled"])

        assert pulled == [2, 2, 1, 0]

    @pytest.mark.asyncio
    async def test_failed_pull_keeps_watermark(self, stacks, peer_router):
        temerio, cherishly = stacks
        local, remote, person, _ = await mirror_person(temerio, cherishly)
        temerio.timeline.create_moment("alice", "Trip", person_id=person.id)
        peer_router.down.add("temerio.test")

        with pytest.raises(RemoteUnavailable):
            await cherishly.service.run("bob", remote.id)
        assert cherishly.cursors.get(remote.id).ingested_outbox_id == 0

        peer_router.down.clear()
        assert (await cherishly.service.run("bob", remote.id))["applied"] == 1

    @pytest.mark.asyncio
    async def test_linked_person_with_different_uid(self, stacks):
        """Events for a person linked to a different remote UID land on that person."""
        temerio, cherishly = stacks
        local, remote = await pair(temerio, cherishly)
        theirs = cherishly.timeline.create_person("bob", "Maria G.")
        ours = temerio.timeline.create_person("alice", "Maria Garcia")
        mapping = StagedMapping([ours.id], [theirs.person_uid])
        mapping.reassign(ours.id, theirs.person_uid)
        await temerio.activator.activate("alice", local.id, mapping)

        # cherishly links its side too so it serves pulls for this person
        cherishly.links.upsert_link("bob", remote.id, theirs.id, ours.person_uid)
        moment = temerio.timeline.create_moment("alice", "Wedding", person_id=ours.id)

        await cherishly.service.run("bob", remote.id)

        copy = cherishly.timeline.get_moment_by_uid("bob", moment.moment_uid)
        assert copy.person_id == theirs.id
        assert cherishly.timeline.get_person_by_uid("bob", ours.person_uid) is None


class TestConflicts:

    @pytest.mark.asyncio
    async def test_concurrent_edit_becomes_conflict(self, stacks):
        temerio, cherishly = stacks
        local, remote, person, _ = await mirror_person(temerio, cherishly)
        moment = temerio.timeline.create_moment("alice", "Trip", person_id=person.id)
        await cherishly.service.run("bob", remote.id)
        copy = cherishly.timeline.get_moment_by_uid("bob", moment.moment_uid)

        cherishly.timeline.update_moment(copy.id, title="Their trip", updated_at=EARLIER)
        temerio.timeline.update_moment(moment.id, title="Our trip", updated_at=LATER)

        summary = await temerio.service.run("alice", local.id)

        assert summary["conflicts"] == 1
        assert temerio.timeline.get_moment(moment.id).title == "Our trip"
        conflicts = temerio.resolver.list_open("alice", local.id)
        assert len(conflicts) == 1

        temerio.resolver.resolve("alice", conflicts[0].id, RESOLUTION_ACCEPT_REMOTE)
        assert temerio.timeline.get_moment(moment.id).title == "Their trip"

    @pytest.mark.asyncio
    async def test_push_reports_conflicts_and_errors(self, stacks):
        temerio, cherishly = stacks
        local, remote, person, mirror = await mirror_person(temerio, cherishly)
        cherishly.timeline.create_moment(
            "bob", "Theirs", person_id=mirror.id, moment_uid="m-1", updated_at=LATER,
        )
        events = [
            {
                "entity_type": "moment",
                "entity_uid": "m-1",
                "operation": "upsert",
                "payload": {"title": "Ours", "person_uid": person.person_uid, "updated_at": EARLIER},
            },
            {"entity_type": "photo", "entity_uid": "x", "operation": "upsert", "payload": {}},
            {
                "entity_type": "moment",
                "entity_uid": "m-2",
                "operation": "upsert",
                "payload": {"title": "New", "person_uid": person.person_uid, "updated_at": EARLIER},
            },
        ]

        result = await temerio.client.push(local, temerio.connections.secret_for(local), events)

        assert result["applied"] == 1
        assert len(result["conflicts"]) == 1
        assert result["conflicts"][0]["entity_uid"] == "m-1"
        assert result["errors"][0]["entity_uid"] == "x"
        assert cherishly.timeline.get_moment_by_uid("bob", "m-2").person_id == mirror.id


class TestPeerAuthentication:

    @pytest.mark.asyncio
    async def test_tampered_body_rejected(self, stacks):
        temerio, cherishly = stacks
        local, remote = await pair(temerio, cherishly)
        body, signature, conn_id = signed(temerio, local, {"since_outbox_id": 0})

        with pytest.raises(AuthenticationFailure):
            cherishly.service.pull(body.replace(b"0", b"1"), signature, conn_id)

    @pytest.mark.asyncio
    async def test_push_found_by_signature_scan(self, stacks):
        """Push works even when the connection id header is the sender's own id."""
        temerio, cherishly = stacks
        local, remote = await pair(temerio, cherishly)
        body = encode_body({"events": []})
        signature = compute_signature(temerio.connections.secret_for(local), body)

        assert cherishly.service.push(body, signature, local.id) == {
            "applied": 0, "conflicts": [], "errors": [],
        }

    @pytest.mark.asyncio
    async def test_pull_without_links_is_empty(self, stacks):
        temerio, cherishly = stacks
        local, remote = await pair(temerio, cherishly)
        body, signature, conn_id = signed(temerio, local, {"since_outbox_id": 3})
        assert cherishly.service.pull(body, signature, conn_id) == {"events": [], "last_outbox_id": 3}

    @pytest.mark.asyncio
    async def test_bad_limit_rejected(self, stacks):
        temerio, cherishly = stacks
        local, remote = await pair(temerio, cherishly)
        body, signature, conn_id = signed(temerio, local, {"limit": "many"})
        with pytest.raises(ValidationFailure):
            cherishly.service.pull(body, signature, conn_id)

    @pytest.mark.asyncio
    async def test_list_remote_people(self, stacks):
        temerio, cherishly = stacks
        local, _ = await pair(temerio, cherishly)
        cherishly.timeline.create_person("bob", "Zoe")
        cherishly.timeline.create_person("bob", "Adam", relationship_label="brother")
        cherishly.timeline.create_person("someone-else", "Hidden")

        people = await temerio.service.list_remote_people("alice", local.id)

        assert [p["name"] for p in people] == ["Adam", "Zoe"]
        assert people[0]["relationship_label"] == "brother"


class TestBackfill:

    @pytest.mark.asyncio
    async def test_backfill_queues_history_once(self, stacks):
        temerio, cherishly = stacks
        local, _ = await pair(temerio, cherishly)
        person = temerio.timeline.create_person("alice", "Maria")
        kept = temerio.timeline.create_moment("alice", "Kept", person_id=person.id)
        gone = temerio.timeline.create_moment("alice", "Gone", person_id=person.id)
        temerio.timeline.soft_delete_moment(gone.id)
        temerio.links.upsert_link("alice", local.id, person.id, "their-maria")

        first = temerio.service.backfill("alice", local.id)
        second = temerio.service.backfill("alice", local.id)

        assert first == {"queued_people": 1, "queued_moments": 1}
        assert second == {"queued_people": 0, "queued_moments": 0}
        events = temerio.outbox.list_since(local.id, 0, 100)
        assert [e.entity_uid for e in events] == ["their-maria", kept.moment_uid]
        assert events[1].payload["person_uid"] == "their-maria"

    @pytest.mark.asyncio
    async def test_backfilled_history_reaches_counterpart(self, stacks):
        temerio, cherishly = stacks
        local, remote = await pair(temerio, cherishly)
        person = temerio.timeline.create_person("alice", "Maria")
        temerio.timeline.create_moment("alice", "Old", person_id=person.id)
        await temerio.activator.activate("alice", local.id, StagedMapping([person.id], []))

        temerio.service.backfill("alice", local.id)
        summary = await cherishly.service.run("bob", remote.id)

        assert summary["applied"] == 2
        mirror = cherishly.timeline.get_person_by_uid("bob", person.person_uid)
        titles = [m.title for m in cherishly.timeline.list_moments_for_people("bob", [mirror.id])]
        assert titles == ["Old"]


class TestDisconnect:

    @pytest.mark.asyncio
    async def test_disconnect_revokes_both_sides(self, stacks):
        temerio, cherishly = stacks
        local, remote = await pair(temerio, cherishly)

        result = await temerio.service.disconnect("alice", local.id)

        assert result == {"ok": True, "remote_notified": True}
        assert not temerio.connections.get(local.id).is_active
        assert not cherishly.connections.get(remote.id).is_active
        with pytest.raises(NotFound):
            await cherishly.service.run("bob", remote.id)

    @pytest.mark.asyncio
    async def test_disconnect_when_counterpart_down(self, stacks, peer_router):
        temerio, cherishly = stacks
        local, remote = await pair(temerio, cherishly)
        peer_router.down.add("cherishly.test")

        result = await temerio.service.disconnect("alice", local.id)

        assert result == {"ok": True, "remote_notified": False}
        assert not temerio.connections.get(local.id).is_active
        assert cherishly.connections.get(remote.id).is_active

    @pytest.mark.asyncio
    async def test_disconnect_with_unreadable_secret(self, stacks, peer_router, monkeypatch):
        temerio, cherishly = stacks
        local, remote = await pair(temerio, cherishly)
        monkeypatch.setattr(temerio.connections, "_secret_box", SecretBox(key=Fernet.generate_key().decode()))

        result = await temerio.service.disconnect("alice", local.id)

        assert result == {"ok": True, "remote_notified": False}
        assert not temerio.connections.get(local.id).is_active
        assert ("cherishly.test", "sync-revoke-connection") not in peer_router.calls

    @pytest.mark.asyncio
    async def test_revoked_connection_cannot_authenticate(self, stacks):
        temerio, cherishly = stacks
        local, remote = await pair(temerio, cherishly)
        cherishly.connections.revoke(remote.id)
        body, signature, conn_id = signed(temerio, local, {})
        with pytest.raises(AuthenticationFailure):
            cherishly.service.list_people(body, signature, conn_id)

    @pytest.mark.asyncio
    async def test_revoke_notice_is_idempotent(self, stacks):
        temerio, cherishly = stacks
        local, remote = await pair(temerio, cherishly)
        body, signature, conn_id = signed(temerio, local, {"reason": "user_disconnect"})

        assert cherishly.service.revoke_from_remote(body, signature, conn_id) == {"ok": True}
        again = cherishly.service.revoke_from_remote(body, signature, conn_id)
        assert again == {"ok": True, "already_revoked": True}
