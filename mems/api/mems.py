"""
Mem API routes.

This module provides:
- Mem creation, joining and join-code previews
- Mem details, ending a mem and the caller's mems
- Participants, membership checks and notes
- Pydantic request/response schemas
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field

from ..core.logging import get_logger
from ..services.errors import NotFoundError
from ..services.mems import MemService
from .deps import get_current_user_id, get_mem_service

router = APIRouter(prefix="/mems", tags=["Mems"])
logger = get_logger("api.mems")


class CreateMemRequest(BaseModel):
    """Create mem request schema."""
    name: str = Field(..., min_length=1, max_length=200, description="Mem name")
    description: Optional[str] = Field(None, max_length=2000, description="What the mem is about")
    place: Optional[str] = Field(None, max_length=500, description="Where it takes place")
    is_public: bool = Field(False, description="Listed publicly")


class CreateMemResponse(BaseModel):
    """Created mem with its shareable join link."""
    mem_id: str
    name: str
    join_code: str
    join_url: str


class JoinMemRequest(BaseModel):
    """Join mem request schema."""
    join_code: str = Field(..., min_length=1, max_length=16, description="Six character join code")


class JoinMemResponse(BaseModel):
    """Join mem response schema."""
    mem_id: str
    name: str
    already_member: bool


class MemPreviewResponse(BaseModel):
    """Public mem preview shown before joining."""
    id: str
    name: str
    description: Optional[str] = None
    place: Optional[str] = None


class MemResponse(BaseModel):
    """Mem details."""
    id: str
    name: str
    description: Optional[str] = None
    place: Optional[str] = None
    is_public: bool
    creator_id: str
    join_code: str
    join_url: Optional[str] = None
    created_at: str
    ended_at: Optional[str] = None


class UserMemResponse(BaseModel):
    """Mem in the caller's list, with activity counters."""
    id: str
    name: str
    description: Optional[str] = None
    place: Optional[str] = None
    join_code: str
    created_at: str
    ended_at: Optional[str] = None
    is_creator: bool
    joined_at: str
    media_count: int
    participant_count: int


class MembershipResponse(BaseModel):
    mem_id: str
    is_participant: bool


class ParticipantResponse(BaseModel):
    id: str
    mem_id: str
    user_id: str
    role: str
    joined_at: str


class NoteRequest(BaseModel):
    """Add note request schema."""
    content: str = Field(..., min_length=1, max_length=2000)


class NoteResponse(BaseModel):
    id: str
    mem_id: str
    user_id: str
    content: str
    created_at: str


@router.post("", response_model=CreateMemResponse, status_code=status.HTTP_201_CREATED)
def create_mem(
    request: CreateMemRequest,
    user_id: str = Depends(get_current_user_id),
    service: MemService = Depends(get_mem_service),
):
    """Create a mem; the caller becomes its creator."""
    return service.create_mem(
        user_id,
        name=request.name,
        description=request.description,
        place=request.place,
        is_public=request.is_public,
    )


@router.post("/join", response_model=JoinMemResponse)
def join_mem(
    request: JoinMemRequest,
    user_id: str = Depends(get_current_user_id),
    service: MemService = Depends(get_mem_service),
):
    """Join a mem by code; joining twice is harmless."""
    return service.join_mem(user_id, request.join_code)


@router.get("/join/{join_code}", response_model=MemPreviewResponse)
def get_mem_by_join_code(
    join_code: str,
    user_id: str = Depends(get_current_user_id),
    service: MemService = Depends(get_mem_service),
):
    preview = service.get_mem_by_join_code(join_code)
    if preview is None:
        raise NotFoundError("Mem not found")
    return preview


@router.get("/mine", response_model=list[UserMemResponse])
def get_user_top_mems(
    limit: int = Query(10, ge=1, le=100),
    user_id: str = Depends(get_current_user_id),
    service: MemService = Depends(get_mem_service),
):
    """Mems the caller belongs to, most recent activity first."""
    return service.get_user_top_mems(user_id, limit=limit)


@router.get("/{mem_id}", response_model=MemResponse)
def get_mem(
    mem_id: str,
    user_id: str = Depends(get_current_user_id),
    service: MemService = Depends(get_mem_service),
):
    mem = service.get_mem(mem_id)
    if mem is None:
        raise NotFoundError("Mem not found")
    return mem


@router.post("/{mem_id}/end", response_model=MemResponse)
def end_mem(
    mem_id: str,
    user_id: str = Depends(get_current_user_id),
    service: MemService = Depends(get_mem_service),
):
    """Stop accepting uploads (creator only)."""
    return service.end_mem(user_id, mem_id)


@router.get("/{mem_id}/membership", response_model=MembershipResponse)
def is_participant(
    mem_id: str,
    user_id: str = Depends(get_current_user_id),
    service: MemService = Depends(get_mem_service),
):
    return {"mem_id": mem_id, "is_participant": service.is_participant(user_id, mem_id)}


@router.get("/{mem_id}/participants", response_model=list[ParticipantResponse])
def list_participants(
    mem_id: str,
    user_id: str = Depends(get_current_user_id),
    service: MemService = Depends(get_mem_service),
):
    return service.list_participants(user_id, mem_id)


@router.post("/{mem_id}/notes", response_model=NoteResponse, status_code=status.HTTP_201_CREATED)
def add_note(
    mem_id: str,
    request: NoteRequest,
    user_id: str = Depends(get_current_user_id),
    service: MemService = Depends(get_mem_service),
):
    return service.add_note(user_id, mem_id, request.content)


@router.get("/{mem_id}/notes", response_model=list[NoteResponse])
def list_notes(
    mem_id: str,
    user_id: str = Depends(get_current_user_id),
    service: MemService = Depends(get_mem_service),
):
    """Notes of a mem, newest first."""
    return service.list_notes(user_id, mem_id)
