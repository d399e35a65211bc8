"""
HTTP client for calls to the counterpart application.

All calls are synchronous from the caller's point of view, single-attempt
and never retried. Failures surface to the initiating user:
- transport errors (refused, timeout) -> RemoteUnavailable
- non-2xx responses -> RemoteRejected (status and body are logged)
"""
import json
import logging
from typing import Optional

import httpx

from api.services.connection_store import Connection, normalize_base_url
from api.services.signing import signed_headers
from api.services.sync_errors import RemoteRejected, RemoteUnavailable
from config.settings import settings

logger = logging.getLogger(__name__)

# Peer endpoint names (appended to settings.sync_path_prefix)
EP_CONSUME_PAIRING_CODE = "consume-pairing-code"
EP_PULL = "sync-pull"
EP_PUSH = "sync-push"
EP_REVOKE = "sync-revoke-connection"
EP_LIST_PEOPLE = "sync-list-people"
EP_CREATE_PERSON = "sync-create-person"


def encode_body(payload: dict) -> bytes:
    """Serialize a request body once so the signed bytes are the sent bytes."""
    return json.dumps(payload, separators=(",", ":"), default=str).encode("utf-8")


class SyncClient:
    """Calls the counterpart's peer endpoints."""

    def __init__(
        self,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: Optional[float] = None,
        path_prefix: Optional[str] = None,
    ):
        self.transport = transport
        self.timeout = timeout if timeout is not None else settings.remote_timeout_seconds
        self.path_prefix = "/" + (path_prefix or settings.sync_path_prefix).strip("/")

    def endpoint_url(self, base_url: str, endpoint: str) -> str:
        return f"{normalize_base_url(base_url)}{self.path_prefix}/{endpoint}"

    async def _post(self, base_url: str, endpoint: str, body: bytes, headers: dict) -> dict:
        url = self.endpoint_url(base_url, endpoint)
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                resp = await client.post(url, content=body, headers=headers)
        except httpx.HTTPError as e:
            logger.error(f"Counterpart unreachable at {url}: {e}")
            raise RemoteUnavailable(f"Counterpart unreachable: {e}") from e

        if resp.status_code >= 400:
            logger.error(f"Counterpart {endpoint} failed: {resp.status_code} {resp.text}")
            raise RemoteRejected(
                f"Counterpart rejected {endpoint} ({resp.status_code})",
                remote_status=resp.status_code,
                remote_body=resp.text,
            )

        try:
            return resp.json()
        except ValueError as e:
            logger.error(f"Counterpart {endpoint} returned non-JSON body: {resp.text[:500]}")
            raise RemoteRejected(
                f"Counterpart returned an invalid response to {endpoint}",
                remote_status=resp.status_code,
                remote_body=resp.text,
            ) from e

    async def _signed_post(
        self,
        connection: Connection,
        secret: str,
        endpoint: str,
        payload: dict,
    ) -> dict:
        body = encode_body(payload)
        headers = signed_headers(secret, body, connection.peer_address_id)
        return await self._post(connection.remote_base_url, endpoint, body, headers)

    # ------------------------------------------------------------------
    # Peer calls
    # ------------------------------------------------------------------

    async def consume_pairing_code(self, base_url: str, payload: dict) -> dict:
        """Unsigned: the pairing code itself authenticates this call."""
        body = encode_body(payload)
        result = await self._post(
            base_url, EP_CONSUME_PAIRING_CODE, body, {"Content-Type": "application/json"}
        )
        if not result.get("success"):
            raise RemoteRejected("Counterpart did not accept the pairing code", remote_body=str(result))
        return result

    async def pull(self, connection: Connection, secret: str, since_outbox_id: int, limit: int) -> dict:
        return await self._signed_post(
            connection, secret, EP_PULL,
            {"since_outbox_id": since_outbox_id, "limit": limit},
        )

    async def push(self, connection: Connection, secret: str, events: list[dict]) -> dict:
        return await self._signed_post(connection, secret, EP_PUSH, {"events": events})

    async def revoke(self, connection: Connection, secret: str, reason: str) -> dict:
        return await self._signed_post(connection, secret, EP_REVOKE, {"reason": reason})

    async def list_people(self, connection: Connection, secret: str, limit: int) -> dict:
        return await self._signed_post(connection, secret, EP_LIST_PEOPLE, {"limit": limit})

    async def create_person(
        self,
        connection: Connection,
        secret: str,
        uid: str,
        name: str,
        relationship_label: Optional[str] = None,
    ) -> dict:
        return await self._signed_post(
            connection, secret, EP_CREATE_PERSON,
            {"uid": uid, "name": name, "relationship_label": relationship_label},
        )


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_sync_client: Optional[SyncClient] = None


def get_sync_client() -> SyncClient:
    """Get or create the singleton SyncClient."""
    global _sync_client
    if _sync_client is None:
        _sync_client = SyncClient()
    return _sync_client


def reset_sync_client() -> None:
    """Reset the singleton (for testing)."""
    global _sync_client
    _sync_client = None
