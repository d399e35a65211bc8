"""
People API endpoints for Kinsync.

Thin access to the local timeline: people and their moments. Writes go
through the timeline store, so linked people replicate automatically.
"""
from typing import Optional
import logging

from fastapi import APIRouter, Header, Query
from pydantic import BaseModel, Field

from api.routes.sync import current_user
from api.services.sync_errors import NotFound
from api.services.timeline_store import DEFAULT_IMPACT_LEVEL, get_timeline_store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/people", tags=["people"])


class PersonResponse(BaseModel):
    """Response model for a person."""
    id: str
    person_uid: str
    name: str
    relationship_label: Optional[str] = None
    updated_at: str = ""


class PeopleResponse(BaseModel):
    people: list[PersonResponse]
    count: int


class CreatePersonRequest(BaseModel):
    name: str = Field(..., min_length=1)
    relationship_label: Optional[str] = None


class UpdatePersonRequest(BaseModel):
    name: Optional[str] = None
    relationship_label: Optional[str] = None


class CreateMomentRequest(BaseModel):
    """A moment attached to the person in the URL."""
    title: str = Field(..., min_length=1)
    description: Optional[str] = None
    happened_at: Optional[str] = None
    happened_end: Optional[str] = None
    impact_level: int = DEFAULT_IMPACT_LEVEL
    category: Optional[str] = None
    status: Optional[str] = None


class UpdateMomentRequest(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    happened_at: Optional[str] = None
    happened_end: Optional[str] = None
    impact_level: Optional[int] = None
    category: Optional[str] = None
    status: Optional[str] = None


def _to_response(person) -> PersonResponse:
    return PersonResponse(
        id=person.id,
        person_uid=person.person_uid,
        name=person.name,
        relationship_label=person.relationship_label,
        updated_at=person.updated_at,
    )


def _require_person(user_id: str, person_id: str):
    person = get_timeline_store().get_person(person_id)
    if not person or person.user_id != user_id or not person.is_active:
        raise NotFound(f"Person not found: {person_id}")
    return person


@router.get("/list", response_model=PeopleResponse)
async def list_people(
    limit: int = Query(default=500, ge=1, le=5000, description="Max results"),
    x_user_id: Optional[str] = Header(default=None),
):
    """List active people, ordered by name."""
    people = get_timeline_store().list_people(current_user(x_user_id), limit=limit)
    return PeopleResponse(people=[_to_response(p) for p in people], count=len(people))


@router.post("", response_model=PersonResponse)
async def create_person(request: CreatePersonRequest, x_user_id: Optional[str] = Header(default=None)):
    person = get_timeline_store().create_person(
        user_id=current_user(x_user_id),
        name=request.name.strip(),
        relationship_label=request.relationship_label,
    )
    return _to_response(person)


@router.get("/{person_id}", response_model=PersonResponse)
async def get_person(person_id: str, x_user_id: Optional[str] = Header(default=None)):
    return _to_response(_require_person(current_user(x_user_id), person_id))


@router.patch("/{person_id}", response_model=PersonResponse)
async def update_person(
    person_id: str,
    request: UpdatePersonRequest,
    x_user_id: Optional[str] = Header(default=None),
):
    person = _require_person(current_user(x_user_id), person_id)
    updated = get_timeline_store().update_person(
        person.id,
        name=request.name or person.name,
        relationship_label=request.relationship_label,
    )
    return _to_response(updated)


@router.get("/{person_id}/moments")
async def list_moments(person_id: str, x_user_id: Optional[str] = Header(default=None)):
    """Moments owned by the person (deleted ones excluded)."""
    user_id = current_user(x_user_id)
    person = _require_person(user_id, person_id)
    moments = get_timeline_store().list_moments_for_people(user_id, [person.id])
    return {"moments": [m.to_dict() for m in moments], "count": len(moments)}


@router.post("/{person_id}/moments")
async def create_moment(
    person_id: str,
    request: CreateMomentRequest,
    x_user_id: Optional[str] = Header(default=None),
):
    user_id = current_user(x_user_id)
    person = _require_person(user_id, person_id)
    fields = request.model_dump(exclude_none=True)
    title = fields.pop("title")
    moment = get_timeline_store().create_moment(
        user_id=user_id,
        title=title,
        person_id=person.id,
        **fields,
    )
    return moment.to_dict()


def _require_moment(user_id: str, person_id: str, moment_id: str):
    moment = get_timeline_store().get_moment(moment_id)
    if not moment or moment.user_id != user_id or moment.person_id != person_id:
        raise NotFound(f"Moment not found: {moment_id}")
    return moment


@router.patch("/{person_id}/moments/{moment_id}")
async def update_moment(
    person_id: str,
    moment_id: str,
    request: UpdateMomentRequest,
    x_user_id: Optional[str] = Header(default=None),
):
    """Edit a moment. Only the fields sent are changed."""
    moment = _require_moment(current_user(x_user_id), person_id, moment_id)
    updated = get_timeline_store().update_moment(moment.id, **request.model_dump(exclude_unset=True))
    return updated.to_dict()


@router.delete("/{person_id}/moments/{moment_id}")
async def delete_moment(person_id: str, moment_id: str, x_user_id: Optional[str] = Header(default=None)):
    moment = _require_moment(current_user(x_user_id), person_id, moment_id)
    get_timeline_store().soft_delete_moment(moment.id)
    return {"success": True}
