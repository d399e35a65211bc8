"""
Two-application test harness.

A SyncStack is one complete Kinsync service graph on its own database
file. PeerRouter is an httpx.MockTransport handler that dispatches peer
calls to whichever stack owns the request's host, so two stacks can pair
and sync in one process without a server.
"""
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import httpx
from cryptography.fernet import Fernet

from api.services.conflicts import ConflictResolver, ConflictStore
from api.services.connection_store import ConnectionStore
from api.services.merge_engine import MergeEngine
from api.services.outbox import OutboxStore
from api.services.pairing import PairingCodeStore, PairingService
from api.services.person_candidates import CandidateService, CandidateStore
from api.services.person_links import PersonLinkStore
from api.services.person_mapping import MappingActivator
from api.services.secret_box import SecretBox
from api.services.signing import CONNECTION_ID_HEADER, SIGNATURE_HEADER
from api.services.sync_apply import EntityApplier
from api.services.sync_client import SyncClient
from api.services.sync_cursors import CursorStore
from api.services.sync_errors import SyncError
from api.services.sync_intents import IntentStore
from api.services.sync_service import SyncService
from api.services.timeline_store import TimelineStore
from api.utils.datetime_utils import utc_now


@dataclass
class SyncStack:
    """Every store and service of one application."""
    name: str
    base_url: str
    timeline: TimelineStore
    connections: ConnectionStore
    outbox: OutboxStore
    cursors: CursorStore
    links: PersonLinkStore
    conflicts: ConflictStore
    intents: IntentStore
    candidates: CandidateStore
    codes: PairingCodeStore
    applier: EntityApplier
    client: SyncClient
    service: SyncService
    pairing: PairingService
    activator: MappingActivator
    candidate_service: CandidateService
    resolver: ConflictResolver
    merges: MergeEngine


def build_stack(
    name: str,
    data_dir: Path,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    clock=utc_now,
) -> SyncStack:
    """Build a stack on data_dir/<name>.db announcing itself as http://<name>.test."""
    db_path = str(Path(data_dir) / f"{name}.db")
    base_url = f"http://{name}.test"
    box = SecretBox(key=Fernet.generate_key().decode())

    timeline = TimelineStore(db_path)
    connections = ConnectionStore(db_path, secret_box=box)
    outbox = OutboxStore(db_path)
    cursors = CursorStore(db_path)
    links = PersonLinkStore(db_path)
    conflicts = ConflictStore(db_path)
    intents = IntentStore(db_path)
    candidates = CandidateStore(db_path)
    codes = PairingCodeStore(db_path, clock=clock)
    applier = EntityApplier(timeline=timeline, link_store=links, conflict_store=conflicts)
    client = SyncClient(transport=transport, timeout=5.0)

    service = SyncService(
        connection_store=connections,
        outbox=outbox,
        cursors=cursors,
        link_store=links,
        timeline=timeline,
        applier=applier,
        client=client,
    )
    return SyncStack(
        name=name,
        base_url=base_url,
        timeline=timeline,
        connections=connections,
        outbox=outbox,
        cursors=cursors,
        links=links,
        conflicts=conflicts,
        intents=intents,
        candidates=candidates,
        codes=codes,
        applier=applier,
        client=client,
        service=service,
        pairing=PairingService(
            code_store=codes,
            connection_store=connections,
            client=client,
            app_name=name,
            public_base_url=base_url,
        ),
        activator=MappingActivator(
            link_store=links,
            timeline=timeline,
            connection_store=connections,
            intent_store=intents,
            client=client,
        ),
        candidate_service=CandidateService(
            candidate_store=candidates,
            link_store=links,
            timeline=timeline,
            connection_store=connections,
        ),
        resolver=ConflictResolver(conflict_store=conflicts, applier=applier),
        merges=MergeEngine(timeline=timeline, link_store=links),
    )


class PeerRouter:
    """
    MockTransport handler routing peer calls by host.

    Calls to a host listed in `down` fail as if the counterpart were
    unreachable; `reject` maps an endpoint name to a forced error status.
    """

    def __init__(self):
        self.stacks: dict[str, SyncStack] = {}
        self.down: set[str] = set()
        self.reject: dict[str, int] = {}
        self.calls: list[tuple[str, str]] = []

    def register(self, stack: SyncStack) -> None:
        self.stacks[httpx.URL(stack.base_url).host] = stack

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        host = request.url.host
        endpoint = request.url.path.rsplit("/", 1)[-1]
        self.calls.append((host, endpoint))

        if host in self.down:
            raise httpx.ConnectError("Connection refused", request=request)
        if endpoint in self.reject:
            return httpx.Response(self.reject[endpoint], json={"error": "forced failure"})

        stack = self.stacks[host]
        body = request.content
        signature = request.headers.get(SIGNATURE_HEADER)
        connection_id = request.headers.get(CONNECTION_ID_HEADER)
        try:
            if endpoint == "consume-pairing-code":
                result = stack.pairing.consume_code(json.loads(body))
            elif endpoint == "sync-pull":
                result = stack.service.pull(body, signature, connection_id)
            elif endpoint == "sync-push":
                result = stack.service.push(body, signature, connection_id)
            elif endpoint == "sync-revoke-connection":
                result = stack.service.revoke_from_remote(body, signature, connection_id)
            elif endpoint == "sync-list-people":
                result = stack.service.list_people(body, signature, connection_id)
            elif endpoint == "sync-create-person":
                result = stack.service.create_person(body, signature, connection_id)
            else:
                return httpx.Response(404, json={"error": f"Unknown endpoint {endpoint}"})
        except SyncError as e:
            return httpx.Response(e.status_code, json=e.to_dict())
        return httpx.Response(200, json=result)


async def pair(initiator: SyncStack, responder: SyncStack, user_a: str = "alice", user_b: str = "bob"):
    """
    Pair user_a on initiator with user_b on responder.

    Returns:
        (initiator_connection, responder_connection)
    """
    code = responder.pairing.generate_code(user_b)
    local = await initiator.pairing.accept_code(user_a, code.code, remote_base_url=responder.base_url)
    remote = responder.connections.get(local.remote_connection_id)
    return local, remote
