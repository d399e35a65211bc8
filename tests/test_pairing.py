"""
Tests for pairing codes and the pairing handshake.
"""
import threading

import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from api.services.pairing import CODE_ALPHABET, PairingCodeStore, generate_pairing_code
from api.services.sync_errors import RemoteRejected, RemoteUnavailable, ValidationFailure
from tests.fixtures.sync_stack import pair

pytestmark = pytest.mark.unit


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock(datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def code_store(db_path, clock):
    return PairingCodeStore(db_path, clock=clock)


class TestPairingCodes:
    """Tests for PairingCodeStore."""

    def test_generated_code_uses_unambiguous_alphabet(self):
        for _ in range(20):
            code = generate_pairing_code(6)
            assert len(code) == 6
            assert all(c in CODE_ALPHABET for c in code)
        assert not set("IO01") & set(CODE_ALPHABET)

    def test_create_sets_expiry(self, code_store, clock):
        code = code_store.create("user-b", ttl_minutes=10, length=6)
        assert code.user_id == "user-b"
        assert code.consumed_at is None
        expires = datetime.fromisoformat(code.expires_at)
        assert expires == clock.now + timedelta(minutes=10)

    def test_code_expiry(self, code_store, clock):
        """A code created at T with a 10 minute ttl is valid at T+9 and invalid at T+11."""
        with patch("api.services.pairing.generate_pairing_code", return_value="A1B2C3"):
            code_store.create("user-b", ttl_minutes=10, length=6)

        clock.advance(minutes=11)
        assert code_store.consume("A1B2C3") is None

    def test_code_valid_before_expiry(self, code_store, clock):
        with patch("api.services.pairing.generate_pairing_code", return_value="A1B2C3"):
            code_store.create("user-b", ttl_minutes=10, length=6)

        clock.advance(minutes=9)
        consumed = code_store.consume("a1b2c3 ")
        assert consumed is not None
        assert consumed.user_id == "user-b"
        assert consumed.consumed_at is not None

    def test_code_is_single_use(self, code_store):
        code = code_store.create("user-b", ttl_minutes=10, length=6)
        assert code_store.consume(code.code) is not None
        assert code_store.consume(code.code) is None

    def test_concurrent_consumers_single_winner(self, db_path, code_store, clock):
        """Racing consumers on separate connections: exactly one gets the code."""
        code = code_store.create("user-b", ttl_minutes=10, length=6)
        stores = [PairingCodeStore(db_path, clock=clock) for _ in range(8)]
        barrier = threading.Barrier(len(stores))
        results = []
        lock = threading.Lock()

        def consume(store):
            barrier.wait()
            consumed = store.consume(code.code)
            with lock:
                results.append(consumed)

        threads = [threading.Thread(target=consume, args=(s,)) for s in stores]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        assert len(results) == len(stores)
        assert len([r for r in results if r is not None]) == 1

    def test_unknown_code(self, code_store):
        assert code_store.consume("ZZZZZZ") is None
        assert code_store.consume("") is None

    def test_get_by_code_shows_consumption(self, code_store):
        code = code_store.create("user-b", ttl_minutes=10, length=6)
        code_store.consume(code.code)
        stored = code_store.get_by_code(code.code)
        assert stored.consumed_at is not None


class TestConsumeCode:
    """Tests for the responder side of the handshake."""

    def test_missing_fields(self, stacks):
        _, cherishly = stacks
        with pytest.raises(ValidationFailure) as exc:
            cherishly.pairing.consume_code({"code": "ABCDEF"})
        assert "required" in exc.value.message

    def test_invalid_code(self, stacks):
        _, cherishly = stacks
        with pytest.raises(ValidationFailure) as exc:
            cherishly.pairing.consume_code({
                "code": "NOPE22",
                "initiator_app": "temerio",
                "initiator_base_url": "http://temerio.test",
                "shared_secret": "s" * 64,
            })
        assert exc.value.message == "Invalid or expired pairing code"
        assert exc.value.status_code == 400

    def test_consume_creates_connection(self, stacks):
        _, cherishly = stacks
        code = cherishly.pairing.generate_code("bob")
        result = cherishly.pairing.consume_code({
            "code": code.code,
            "initiator_app": "temerio",
            "initiator_base_url": "http://temerio.test/",
            "shared_secret": "raw-secret",
            "initiator_connection_id": "temerio-conn-1",
        })
        assert result["success"] is True
        assert result["remote_user_id"] == "bob"

        connection = cherishly.connections.get(result["connection_id"])
        assert connection.user_id == "bob"
        assert connection.remote_base_url == "http://temerio.test"
        assert connection.remote_connection_id == "temerio-conn-1"
        assert cherishly.connections.secret_for(connection) == "raw-secret"
        assert connection.encrypted_secret != "raw-secret"


class TestAcceptCode:
    """Tests for the full handshake between two stacks."""

    @pytest.mark.asyncio
    async def test_pairing_creates_matching_connections(self, stacks):
        temerio, cherishly = stacks
        local, remote = await pair(temerio, cherishly)

        assert local.user_id == "alice"
        assert remote.user_id == "bob"
        assert local.remote_connection_id == remote.id
        assert remote.remote_connection_id == local.id
        assert local.remote_base_url == cherishly.base_url
        assert remote.remote_base_url == temerio.base_url
        assert temerio.connections.secret_for(local) == cherishly.connections.secret_for(remote)

    @pytest.mark.asyncio
    async def test_reused_code_rejected(self, stacks):
        temerio, cherishly = stacks
        code = cherishly.pairing.generate_code("bob")
        await temerio.pairing.accept_code("alice", code.code, remote_base_url=cherishly.base_url)

        with pytest.raises(RemoteRejected) as exc:
            await temerio.pairing.accept_code("alice", code.code, remote_base_url=cherishly.base_url)
        assert exc.value.remote_status == 400
        assert len(temerio.connections.list_for_user("alice")) == 1

    @pytest.mark.asyncio
    async def test_nothing_persisted_when_counterpart_unreachable(self, stacks, peer_router):
        temerio, cherishly = stacks
        code = cherishly.pairing.generate_code("bob")
        peer_router.down.add("cherishly.test")

        with pytest.raises(RemoteUnavailable):
            await temerio.pairing.accept_code("alice", code.code, remote_base_url=cherishly.base_url)
        assert temerio.connections.list_for_user("alice") == []

    @pytest.mark.asyncio
    async def test_requires_code(self, stacks):
        temerio, cherishly = stacks
        with pytest.raises(ValidationFailure):
            await temerio.pairing.accept_code("alice", "  ", remote_base_url=cherishly.base_url)

    @pytest.mark.asyncio
    async def test_requires_counterpart_address(self, stacks, sync_settings):
        temerio, _ = stacks
        with pytest.raises(ValidationFailure) as exc:
            await temerio.pairing.accept_code("alice", "ABCDEF")
        assert "not configured" in exc.value.message
