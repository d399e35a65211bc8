"""
Sync API endpoints for the local user.

The caller is identified by the X-User-Id header (falls back to the
configured default user). Peer-facing endpoints live in sync_peer.py.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Header, Query
from pydantic import BaseModel

from api.services.conflicts import ConflictResolver
from api.services.connection_store import get_connection_store
from api.services.merge_engine import get_merge_engine
from api.services.pairing import PairingService
from api.services.person_candidates import CandidateService, get_candidate_store
from api.services.person_links import get_person_link_store
from api.services.person_mapping import (
    SIDE_LOCAL,
    MappingActivator,
    MappingState,
    StagedMapping,
    suggest_mapping,
)
from api.services.sync_errors import NotFound, ValidationFailure
from api.services.sync_intents import get_intent_store
from api.services.sync_service import get_sync_service
from api.services.timeline_store import get_timeline_store
from config.settings import settings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sync", tags=["sync"])


def current_user(x_user_id: Optional[str]) -> str:
    return (x_user_id or "").strip() or settings.default_user_id


# ============================================================================
# Request models
# ============================================================================

class AcceptCodeRequest(BaseModel):
    """Pair with the counterpart user who issued the code."""
    code: str
    remote_base_url: Optional[str] = None
    remote_app: Optional[str] = None


class ConnectionRequest(BaseModel):
    connection_id: Optional[str] = None


class ResolveConflictRequest(BaseModel):
    resolution: str


class ToggleLinkRequest(BaseModel):
    is_enabled: bool


class ReassignRequest(BaseModel):
    """Link one local person to one remote person inside a staged mapping."""
    mapping: dict
    local_id: str
    remote_uid: str


class MappingStateRequest(BaseModel):
    """Move one item of a staged mapping to CREATE or DO_NOT_SYNC."""
    mapping: dict
    side: str = SIDE_LOCAL
    key: str
    state: str


class ActivateRequest(BaseModel):
    mapping: dict


class MergeRequest(BaseModel):
    primary_id: str
    merged_id: str


# ============================================================================
# Pairing & connections
# ============================================================================

@router.post("/pairing-codes")
async def create_pairing_code(x_user_id: Optional[str] = Header(default=None)):
    """Issue a short-lived single-use pairing code."""
    pairing_code = PairingService().generate_code(current_user(x_user_id))
    return pairing_code.to_dict()


@router.post("/pairing/accept")
async def accept_pairing_code(
    request: AcceptCodeRequest,
    x_user_id: Optional[str] = Header(default=None),
):
    """Submit a code issued by the counterpart user."""
    connection = await PairingService().accept_code(
        current_user(x_user_id),
        request.code,
        remote_base_url=request.remote_base_url,
        remote_app=request.remote_app,
    )
    return {"success": True, "connection": connection.to_dict()}


@router.get("/connections")
async def list_connections(
    active_only: bool = Query(default=False),
    x_user_id: Optional[str] = Header(default=None),
):
    connections = get_connection_store().list_for_user(current_user(x_user_id), active_only=active_only)
    return {"connections": [c.to_dict() for c in connections], "count": len(connections)}


@router.get("/connections/{connection_id}")
async def get_connection(connection_id: str, x_user_id: Optional[str] = Header(default=None)):
    connection = get_connection_store().require_owned(
        current_user(x_user_id), connection_id, active_only=False,
    )
    return connection.to_dict()


@router.post("/connections/{connection_id}/disconnect")
async def disconnect(connection_id: str, x_user_id: Optional[str] = Header(default=None)):
    """Revoke the connection here and notify the counterpart."""
    return await get_sync_service().disconnect(current_user(x_user_id), connection_id)


# ============================================================================
# Sync runs
# ============================================================================

@router.post("/run")
async def run_sync(
    request: Optional[ConnectionRequest] = None,
    x_user_id: Optional[str] = Header(default=None),
):
    """Pull and apply the counterpart's new events."""
    connection_id = request.connection_id if request else None
    return await get_sync_service().run(current_user(x_user_id), connection_id)


@router.post("/backfill")
async def backfill(
    request: Optional[ConnectionRequest] = None,
    x_user_id: Optional[str] = Header(default=None),
):
    """Queue historical data of linked people."""
    connection_id = request.connection_id if request else None
    return get_sync_service().backfill(current_user(x_user_id), connection_id)


# ============================================================================
# Conflicts
# ============================================================================

@router.get("/conflicts")
async def list_conflicts(
    connection_id: Optional[str] = Query(default=None),
    x_user_id: Optional[str] = Header(default=None),
):
    conflicts = ConflictResolver().list_open(current_user(x_user_id), connection_id)
    return {"conflicts": [c.to_dict() for c in conflicts], "count": len(conflicts)}


@router.post("/conflicts/{conflict_id}/resolve")
async def resolve_conflict(
    conflict_id: str,
    request: ResolveConflictRequest,
    x_user_id: Optional[str] = Header(default=None),
):
    """Keep the local version or accept the counterpart's."""
    conflict = ConflictResolver().resolve(current_user(x_user_id), conflict_id, request.resolution)
    return {"success": True, "conflict": conflict.to_dict()}


# ============================================================================
# People links
# ============================================================================

@router.get("/connections/{connection_id}/remote-people")
async def remote_people(
    connection_id: str,
    limit: Optional[int] = Query(default=None, ge=1),
    x_user_id: Optional[str] = Header(default=None),
):
    people = await get_sync_service().list_remote_people(current_user(x_user_id), connection_id, limit)
    return {"people": people, "count": len(people)}


@router.get("/connections/{connection_id}/links")
async def list_links(connection_id: str, x_user_id: Optional[str] = Header(default=None)):
    connection = get_connection_store().require_owned(
        current_user(x_user_id), connection_id, active_only=False,
    )
    links = get_person_link_store().list_for_connection(connection.id)
    return {"links": [link.to_dict() for link in links], "count": len(links)}


@router.patch("/links/{link_id}")
async def toggle_link(
    link_id: str,
    request: ToggleLinkRequest,
    x_user_id: Optional[str] = Header(default=None),
):
    """Enable or pause sync for one linked person."""
    link = get_person_link_store().set_enabled(current_user(x_user_id), link_id, request.is_enabled)
    if not link:
        raise NotFound(f"Link not found: {link_id}")
    return link.to_dict()


@router.delete("/links/{link_id}")
async def delete_link(link_id: str, x_user_id: Optional[str] = Header(default=None)):
    if not get_person_link_store().delete(current_user(x_user_id), link_id):
        raise NotFound(f"Link not found: {link_id}")
    return {"success": True}


# ============================================================================
# Staged mapping
# ============================================================================

@router.post("/connections/{connection_id}/mapping/suggest")
async def suggest(connection_id: str, x_user_id: Optional[str] = Header(default=None)):
    """Build a staged mapping from existing links plus name matches."""
    user_id = current_user(x_user_id)
    connection = get_connection_store().require_owned(user_id, connection_id)
    remote = await get_sync_service().list_remote_people(user_id, connection.id)
    mapping = suggest_mapping(
        get_timeline_store().list_people(user_id),
        remote,
        get_person_link_store().list_for_connection(connection.id),
    )
    return {"mapping": mapping.to_dict()}


@router.post("/mapping/reassign")
async def reassign(request: ReassignRequest):
    """Apply one reassignment to a staged mapping (nothing is persisted)."""
    mapping = StagedMapping.from_dict(request.mapping)
    notices = mapping.reassign(request.local_id, request.remote_uid)
    return {"mapping": mapping.to_dict(), "notices": notices}


@router.post("/mapping/state")
async def set_mapping_state(request: MappingStateRequest):
    mapping = StagedMapping.from_dict(request.mapping)
    if request.state == MappingState.CREATE.value:
        notices = mapping.set_create(request.side, request.key)
    elif request.state == MappingState.DO_NOT_SYNC.value:
        notices = mapping.set_do_not_sync(request.side, request.key)
    else:
        raise ValidationFailure("state must be create or do_not_sync")
    return {"mapping": mapping.to_dict(), "notices": notices}


@router.post("/connections/{connection_id}/mapping/activate")
async def activate(
    connection_id: str,
    request: ActivateRequest,
    x_user_id: Optional[str] = Header(default=None),
):
    """Persist a staged mapping as person links."""
    mapping = StagedMapping.from_dict(request.mapping)
    return await MappingActivator().activate(current_user(x_user_id), connection_id, mapping)


# ============================================================================
# Candidates
# ============================================================================

@router.post("/connections/{connection_id}/candidates/suggest")
async def suggest_candidates(connection_id: str, x_user_id: Optional[str] = Header(default=None)):
    """Fetch the counterpart's people and store open match candidates."""
    user_id = current_user(x_user_id)
    remote = await get_sync_service().list_remote_people(user_id, connection_id)
    candidates = CandidateService().suggest(user_id, connection_id, remote)
    return {"candidates": [c.to_dict() for c in candidates], "count": len(candidates)}


@router.get("/connections/{connection_id}/candidates")
async def list_candidates(connection_id: str, x_user_id: Optional[str] = Header(default=None)):
    connection = get_connection_store().require_owned(
        current_user(x_user_id), connection_id, active_only=False,
    )
    candidates = get_candidate_store().list_for_connection(connection.id)
    return {"candidates": [c.to_dict() for c in candidates], "count": len(candidates)}


@router.post("/candidates/{candidate_id}/accept")
async def accept_candidate(candidate_id: str, x_user_id: Optional[str] = Header(default=None)):
    link = CandidateService().accept(current_user(x_user_id), candidate_id)
    return {"success": True, "link": link.to_dict()}


@router.post("/candidates/{candidate_id}/reject")
async def reject_candidate(candidate_id: str, x_user_id: Optional[str] = Header(default=None)):
    CandidateService().reject(current_user(x_user_id), candidate_id)
    return {"success": True}


# ============================================================================
# Intents
# ============================================================================

@router.get("/intents")
async def list_intents(x_user_id: Optional[str] = Header(default=None)):
    intents = get_intent_store().list_for_user(current_user(x_user_id))
    return {"intents": [i.to_dict() for i in intents], "count": len(intents)}


@router.post("/intents/retry")
async def retry_intents(x_user_id: Optional[str] = Header(default=None)):
    """Re-drive pending or failed create-remote-person operations."""
    return await MappingActivator().retry_pending_intents(current_user(x_user_id))


# ============================================================================
# Merge
# ============================================================================

@router.post("/merge")
async def merge_people(request: MergeRequest, x_user_id: Optional[str] = Header(default=None)):
    """Merge merged_id into primary_id."""
    merge_log = get_merge_engine().merge(current_user(x_user_id), request.primary_id, request.merged_id)
    return {"success": True, "merge": merge_log.to_dict()}


@router.post("/merges/{merge_log_id}/undo")
async def undo_merge(merge_log_id: str, x_user_id: Optional[str] = Header(default=None)):
    return get_merge_engine().undo(current_user(x_user_id), merge_log_id)


@router.get("/merges")
async def merge_history(
    include_undone: bool = Query(default=False),
    x_user_id: Optional[str] = Header(default=None),
):
    merges = get_merge_engine().list_merges(current_user(x_user_id), include_undone=include_undone)
    return {"merges": [m.to_dict() for m in merges], "count": len(merges)}
