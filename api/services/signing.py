"""
Request signing for server-to-server sync calls.

Every peer call carries two headers:
- x-sync-signature: hex HMAC-SHA256 over the exact raw body bytes,
  keyed by the connection's shared secret
- x-sync-connection-id: the receiver's id for the connection

The shared secret is the raw value exchanged at pairing time. It is
stored encrypted (see secret_box) and used directly as the HMAC key.
"""
import hashlib
import hmac
import logging
import secrets
from typing import Callable, Iterable, Optional, TypeVar, Union

from api.services.sync_errors import AuthenticationFailure

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-sync-signature"
CONNECTION_ID_HEADER = "x-sync-connection-id"

SECRET_BYTES = 32

C = TypeVar("C")


def _as_bytes(value: Union[str, bytes]) -> bytes:
    if isinstance(value, bytes):
        return value
    return value.encode("utf-8")


def generate_secret() -> str:
    """Generate a fresh random shared secret (64 hex chars)."""
    return secrets.token_hex(SECRET_BYTES)


def compute_signature(secret: str, body: Union[str, bytes]) -> str:
    """Hex HMAC-SHA256 of the raw body, keyed by the shared secret."""
    return hmac.new(_as_bytes(secret), _as_bytes(body), hashlib.sha256).hexdigest()


def verify_signature(secret: str, body: Union[str, bytes], signature: Optional[str]) -> bool:
    """
    Check a signature against the raw body.

    Signatures of the wrong length are rejected before any comparison;
    equal-length signatures are compared in constant time.
    """
    if not signature or not secret:
        return False
    expected = compute_signature(secret, body)
    if len(expected) != len(signature):
        return False
    return hmac.compare_digest(expected.encode("ascii"), signature.encode("utf-8"))


def signed_headers(secret: str, body: Union[str, bytes], connection_id: str) -> dict:
    """Headers for an outbound signed call."""
    return {
        "Content-Type": "application/json",
        SIGNATURE_HEADER: compute_signature(secret, body),
        CONNECTION_ID_HEADER: connection_id,
    }


def authenticate_peer_request(
    active_connections: Iterable[C],
    secret_for: Callable[[C], Optional[str]],
    connection_id_header: Optional[str],
    body: bytes,
    signature: Optional[str],
) -> C:
    """
    Find the local connection that signed an inbound peer request.

    When the header names one of our active connections, only that
    connection's secret is tried. Peers paired before connection ids were
    exchanged send their own id instead; for those every active
    connection's secret is tried in turn.

    Args:
        active_connections: Active local connections (objects with an ``id``)
        secret_for: Returns the raw shared secret of a connection
        connection_id_header: Value of x-sync-connection-id
        body: Exact raw request body
        signature: Value of x-sync-signature

    Returns:
        The matching connection

    Raises:
        AuthenticationFailure: headers missing or no connection verifies
    """
    if not signature or not connection_id_header:
        raise AuthenticationFailure(
            f"Missing {SIGNATURE_HEADER} or {CONNECTION_ID_HEADER}"
        )

    connections = list(active_connections)
    addressed = [c for c in connections if getattr(c, "id", None) == connection_id_header]
    if addressed:
        conn = addressed[0]
        if verify_signature(secret_for(conn), body, signature):
            return conn
        raise AuthenticationFailure("Invalid signature")

    for conn in connections:
        secret = secret_for(conn)
        if secret and verify_signature(secret, body, signature):
            logger.debug(f"Matched unaddressed peer request to connection {conn.id}")
            return conn

    raise AuthenticationFailure("Invalid signature")
