"""
Peer endpoints called by the counterpart application.

Everything except consume-pairing-code is authenticated by an HMAC
signature over the raw request body, so handlers read the body bytes
themselves instead of letting FastAPI parse it.
"""
import logging

from fastapi import APIRouter, Request

from api.services.pairing import PairingService
from api.services.signing import CONNECTION_ID_HEADER, SIGNATURE_HEADER
from api.services.sync_service import get_sync_service, parse_json_body
from config.settings import settings

logger = logging.getLogger(__name__)

router = APIRouter(prefix=settings.sync_path_prefix, tags=["sync-peer"])


async def _signed(request: Request) -> tuple[bytes, str, str]:
    body = await request.body()
    return (
        body,
        request.headers.get(SIGNATURE_HEADER),
        request.headers.get(CONNECTION_ID_HEADER),
    )


@router.post("/consume-pairing-code")
async def consume_pairing_code(request: Request):
    """Consume a pairing code issued by one of our users (unsigned)."""
    payload = parse_json_body(await request.body())
    return PairingService().consume_code(payload)


@router.post("/sync-pull")
async def sync_pull(request: Request):
    return get_sync_service().pull(*await _signed(request))


@router.post("/sync-push")
async def sync_push(request: Request):
    return get_sync_service().push(*await _signed(request))


@router.post("/sync-revoke-connection")
async def sync_revoke_connection(request: Request):
    """The counterpart disconnected."""
    return get_sync_service().revoke_from_remote(*await _signed(request))


@router.post("/sync-list-people")
async def sync_list_people(request: Request):
    return get_sync_service().list_people(*await _signed(request))


@router.post("/sync-create-person")
async def sync_create_person(request: Request):
    """Mirror a person the counterpart chose to create on our side."""
    return get_sync_service().create_person(*await _signed(request))
