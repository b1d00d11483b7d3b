"""
Media API routes.

This module provides:
- Two-phase uploads (upload URL, commit)
- Media listing, download URLs and deletion
- Emoji reactions, comments and top media
- Pydantic request/response schemas
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field

from ..core.logging import get_logger
from ..services.emoji import get_emoji_options
from ..services.engagement import MAX_COMMENT_LENGTH, EngagementService
from ..services.uploads import UploadService
from .deps import get_current_user_id, get_engagement_service, get_upload_service

router = APIRouter(tags=["Media"])
logger = get_logger("api.media")


class UploadUrlRequest(BaseModel):
    """Upload slot request schema."""
    content_type: str = Field(..., min_length=1, max_length=100, description="MIME type of the file to upload")
    file_name: str = Field(..., min_length=1, max_length=500, description="Original file name")


class UploadUrlResponse(BaseModel):
    """Presigned upload target."""
    upload_url: str
    storage_key: str
    expires_in: int
    max_bytes: int
    content_type: str


class CommitUploadRequest(BaseModel):
    """Commit upload request schema."""
    storage_key: str = Field(..., min_length=1, max_length=1000)
    file_name: str = Field(..., min_length=1, max_length=500)
    content_type: str = Field(..., min_length=1, max_length=100)
    file_size: int = Field(..., ge=0, description="Size reported by the client; the stored object is authoritative")


class MediaResponse(BaseModel):
    """Media item."""
    id: str
    mem_id: str
    uploader_id: str
    storage_key: str
    file_name: str
    content_type: str
    file_size: int
    format: str
    reaction_counts: dict[str, int]
    score: int
    created_at: str


class MediaUrlResponse(BaseModel):
    media_id: str
    url: str
    expires_in: int


class DeleteMediaResponse(BaseModel):
    success: bool
    media_id: str


class ReactionRequest(BaseModel):
    """Toggle reaction request; emoji key or glyph."""
    emoji: str = Field(..., min_length=1, max_length=32)


class ReactionToggleResponse(BaseModel):
    media_id: str
    emoji: str
    active: bool
    reaction_counts: dict[str, int]
    score: int


class ReactionsResponse(BaseModel):
    media_id: str
    reaction_counts: dict[str, int]
    score: int
    user_reactions: list[str]


class CommentRequest(BaseModel):
    content: str = Field(..., min_length=1, max_length=MAX_COMMENT_LENGTH)


class CommentResponse(BaseModel):
    id: str
    media_id: str
    user_id: str
    content: str
    created_at: str


class EmojiOptionResponse(BaseModel):
    key: str
    emoji: str
    weight: int
    label: Optional[str] = None


@router.post("/mems/{mem_id}/media/upload-url", response_model=UploadUrlResponse)
async def request_upload_url(
    mem_id: str,
    request: UploadUrlRequest,
    user_id: str = Depends(get_current_user_id),
    service: UploadService = Depends(get_upload_service),
):
    """Issue a presigned PUT URL for one file."""
    target = await service.request_upload_slot(user_id, mem_id, request.content_type, request.file_name)
    return target.to_dict()


@router.post("/mems/{mem_id}/media", response_model=MediaResponse, status_code=status.HTTP_201_CREATED)
async def commit_upload(
    mem_id: str,
    request: CommitUploadRequest,
    user_id: str = Depends(get_current_user_id),
    service: UploadService = Depends(get_upload_service),
):
    """Record an uploaded object after re-validating it."""
    return await service.commit_upload(
        user_id,
        mem_id,
        storage_key=request.storage_key,
        file_name=request.file_name,
        content_type=request.content_type,
        file_size=request.file_size,
    )


@router.get("/mems/{mem_id}/media", response_model=list[MediaResponse])
def list_media(
    mem_id: str,
    sort: str = Query("recent", pattern="^(recent|score)$"),
    user_id: str = Depends(get_current_user_id),
    service: UploadService = Depends(get_upload_service),
):
    return service.list_media(user_id, mem_id, sort=sort)


@router.get("/mems/{mem_id}/media/top", response_model=list[MediaResponse])
def top_media(
    mem_id: str,
    limit: int = Query(10, ge=1, le=100),
    user_id: str = Depends(get_current_user_id),
    service: EngagementService = Depends(get_engagement_service),
):
    return service.top_media(user_id, mem_id, limit=limit)


@router.get("/media/{media_id}/url", response_model=MediaUrlResponse)
async def get_media_url(
    media_id: str,
    user_id: str = Depends(get_current_user_id),
    service: UploadService = Depends(get_upload_service),
):
    return await service.get_media_url(user_id, media_id)


@router.delete("/media/{media_id}", response_model=DeleteMediaResponse)
async def delete_media(
    media_id: str,
    user_id: str = Depends(get_current_user_id),
    service: UploadService = Depends(get_upload_service),
):
    """Delete media (uploader or mem creator)."""
    return await service.delete_media(user_id, media_id)


@router.post("/media/{media_id}/reactions", response_model=ReactionToggleResponse)
def toggle_reaction(
    media_id: str,
    request: ReactionRequest,
    user_id: str = Depends(get_current_user_id),
    service: EngagementService = Depends(get_engagement_service),
):
    return service.toggle_reaction(user_id, media_id, request.emoji)


@router.get("/media/{media_id}/reactions", response_model=ReactionsResponse)
def get_reactions(
    media_id: str,
    user_id: str = Depends(get_current_user_id),
    service: EngagementService = Depends(get_engagement_service),
):
    return service.get_reactions(user_id, media_id)


@router.post("/media/{media_id}/comments", response_model=CommentResponse, status_code=status.HTTP_201_CREATED)
def add_comment(
    media_id: str,
    request: CommentRequest,
    user_id: str = Depends(get_current_user_id),
    service: EngagementService = Depends(get_engagement_service),
):
    return service.add_comment(user_id, media_id, request.content)


@router.get("/media/{media_id}/comments", response_model=list[CommentResponse])
def list_comments(
    media_id: str,
    user_id: str = Depends(get_current_user_id),
    service: EngagementService = Depends(get_engagement_service),
):
    """Comments, oldest first."""
    return service.list_comments(user_id, media_id)


@router.get("/emoji", response_model=list[EmojiOptionResponse])
def list_emoji():
    """Supported reactions with their weights."""
    return get_emoji_options()
