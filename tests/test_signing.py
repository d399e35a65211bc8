"""
Tests for request signing and peer authentication.
"""
import pytest
from dataclasses import dataclass

from api.services.signing import (
    CONNECTION_ID_HEADER,
    SIGNATURE_HEADER,
    authenticate_peer_request,
    compute_signature,
    generate_secret,
    signed_headers,
    verify_signature,
)
from api.services.sync_errors import AuthenticationFailure

pytestmark = pytest.mark.unit


@dataclass
class FakeConnection:
    id: str
    secret: str


def _secret_for(conn: FakeConnection) -> str:
    return conn.secret


class TestSignatures:
    """Tests for HMAC computation and verification."""

    def test_signature_is_hex_sha256(self):
        sig = compute_signature("secret", b'{"a":1}')
        assert len(sig) == 64
        int(sig, 16)

    def test_signature_over_str_and_bytes_match(self):
        assert compute_signature("s", '{"x":1}') == compute_signature("s", b'{"x":1}')

    def test_verify_accepts_matching_signature(self):
        body = b'{"since_outbox_id":0,"limit":200}'
        assert verify_signature("k", body, compute_signature("k", body))

    def test_single_bit_flip_rejected(self):
        """Flipping one bit of the signature invalidates it."""
        body = b'{"events":[]}'
        sig = compute_signature("k", body)
        flipped = format(int(sig[-1], 16) ^ 1, "x")
        tampered = sig[:-1] + flipped
        assert tampered != sig
        assert not verify_signature("k", body, tampered)

    def test_single_bit_flip_in_body_rejected(self):
        body = bytearray(b'{"events":[]}')
        sig = compute_signature("k", bytes(body))
        body[2] ^= 1
        assert not verify_signature("k", bytes(body), sig)

    def test_length_mismatch_rejected(self):
        body = b"{}"
        sig = compute_signature("k", body)
        assert not verify_signature("k", body, sig[:-2])
        assert not verify_signature("k", body, sig + "00")

    def test_missing_signature_or_secret(self):
        assert not verify_signature("k", b"{}", None)
        assert not verify_signature("k", b"{}", "")
        assert not verify_signature("", b"{}", compute_signature("k", b"{}"))

    def test_wrong_secret_rejected(self):
        body = b"{}"
        assert not verify_signature("other", body, compute_signature("k", body))

    def test_generate_secret_is_random_hex(self):
        a, b = generate_secret(), generate_secret()
        assert a != b
        assert len(a) == 64

    def test_signed_headers(self):
        headers = signed_headers("k", b"{}", "conn-1")
        assert headers[SIGNATURE_HEADER] == compute_signature("k", b"{}")
        assert headers[CONNECTION_ID_HEADER] == "conn-1"


class TestAuthenticatePeerRequest:
    """Tests for resolving the signing connection."""

    def test_missing_headers_raise(self):
        conns = [FakeConnection("c1", "s1")]
        with pytest.raises(AuthenticationFailure):
            authenticate_peer_request(conns, _secret_for, None, b"{}", "abc")
        with pytest.raises(AuthenticationFailure):
            authenticate_peer_request(conns, _secret_for, "c1", b"{}", None)

    def test_addressed_connection_verified(self):
        conns = [FakeConnection("c1", "s1"), FakeConnection("c2", "s2")]
        body = b'{"limit":5}'
        found = authenticate_peer_request(conns, _secret_for, "c2", body, compute_signature("s2", body))
        assert found.id == "c2"

    def test_addressed_lookup_rejects_other_connections_secret(self):
        """A valid signature made with another connection's secret fails."""
        conns = [FakeConnection("c1", "s1"), FakeConnection("c2", "s2")]
        body = b'{"limit":5}'
        with pytest.raises(AuthenticationFailure):
            authenticate_peer_request(conns, _secret_for, "c2", body, compute_signature("s1", body))

    def test_unaddressed_falls_back_to_scan(self):
        conns = [FakeConnection("c1", "s1"), FakeConnection("c2", "s2")]
        body = b"{}"
        found = authenticate_peer_request(
            conns, _secret_for, "peer-own-id", body, compute_signature("s2", body)
        )
        assert found.id == "c2"

    def test_no_match_raises(self):
        conns = [FakeConnection("c1", "s1")]
        with pytest.raises(AuthenticationFailure) as exc:
            authenticate_peer_request(conns, _secret_for, "x", b"{}", compute_signature("nope", b"{}"))
        assert exc.value.status_code == 401

    def test_undecryptable_secret_skipped_in_scan(self):
        conns = [FakeConnection("c1", None), FakeConnection("c2", "s2")]
        body = b"{}"
        found = authenticate_peer_request(conns, _secret_for, "x", body, compute_signature("s2", body))
        assert found.id == "c2"
