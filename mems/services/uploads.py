"""
Upload service for Mems.

This module provides:
- UploadPolicy: allowed types, per-kind byte caps and media quota
- Upload slots backed by presigned PUT URLs
- Commit-time re-validation of the stored object
- Media listing, download URLs and deletion
"""

import mimetypes
import re
import uuid
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Any, Optional

from sqlalchemy.orm import Session

from ..adapters.storage_s3 import S3Storage, s3_storage
from ..core.config import MediaConfig, settings
from ..core.logging import audit_logger, get_logger, with_logging_context
from ..models.entities import MediaFormat, MemMedia
from ..models.repositories import MediaRepository, MemRepository, ParticipantRepository
from ..observability.metrics import metrics
from .errors import (
    MemEndedError,
    MemsError,
    NotFoundError,
    NotParticipantError,
    PermissionDeniedError,
    QuotaExceededError,
    StorageError,
    UnsupportedMediaTypeError,
    UploadRejectedError,
)
from .mems import parse_id

logger = get_logger("services.uploads")

_EXTENSION_PATTERN = re.compile(r"^\.[a-z0-9]{1,8}$")
MEDIA_SORTS = ("recent", "score")


@dataclass(frozen=True)
class UploadPolicy:
    """Server-side limits applied to every upload."""

    allowed_image_types: tuple[str, ...]
    allowed_video_types: tuple[str, ...]
    image_max_bytes: int
    video_max_bytes: int
    quota_mode: str = "per_participant"
    max_media_per_participant: int = 20
    max_media_per_mem: int = 50

    @classmethod
    def from_config(cls, config: MediaConfig = None) -> "UploadPolicy":
        config = config or settings.media
        return cls(
            allowed_image_types=tuple(t.lower() for t in config.allowed_image_types),
            allowed_video_types=tuple(t.lower() for t in config.allowed_video_types),
            image_max_bytes=config.image_max_bytes,
            video_max_bytes=config.video_max_bytes,
            quota_mode=config.quota_mode,
            max_media_per_participant=config.max_media_per_participant,
            max_media_per_mem=config.max_media_per_mem,
        )

    def format_for(self, content_type: str) -> Optional[MediaFormat]:
        """Media format of an allowed type, None when the type is not allowed."""
        content_type = (content_type or "").lower()
        if content_type in self.allowed_image_types:
            return MediaFormat.IMAGE
        if content_type in self.allowed_video_types:
            return MediaFormat.VIDEO
        return None

    def is_allowed(self, content_type: str) -> bool:
        return self.format_for(content_type) is not None

    def max_bytes_for(self, content_type: str) -> int:
        if self.format_for(content_type) is MediaFormat.VIDEO:
            return self.video_max_bytes
        return self.image_max_bytes

    def quota_for(self, participant_count: int) -> int:
        """Maximum number of media items a mem may hold."""
        if self.quota_mode == "per_mem":
            return self.max_media_per_mem
        return self.max_media_per_participant * max(participant_count, 1)


@dataclass
class UploadTarget:
    """Where and how the client should PUT its bytes."""

    upload_url: str
    storage_key: str
    expires_in: int
    max_bytes: int
    content_type: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def storage_prefix(mem_id: uuid.UUID) -> str:
    return f"mems/{mem_id}/"


def extension_for(file_name: str, content_type: str) -> str:
    """Object key extension from the file name, else guessed from the MIME type."""
    suffix = Path(file_name or "").suffix.lower()
    if _EXTENSION_PATTERN.match(suffix):
        return suffix
    return mimetypes.guess_extension(content_type or "") or ""


class UploadService:
    """Two-phase upload flow: request a slot, PUT the bytes, commit."""

    def __init__(self, session: Session, storage: S3Storage = None, policy: UploadPolicy = None):
        self.session = session
        self.storage = storage or s3_storage
        self.policy = policy or UploadPolicy.from_config()
        self.mems = MemRepository(session)
        self.participants = ParticipantRepository(session)
        self.media = MediaRepository(session)

    def _check_quota(self, mem_id: uuid.UUID) -> None:
        limit = self.policy.quota_for(self.participants.count_for_mem(mem_id))
        if self.media.count_for_mem(mem_id) >= limit:
            raise QuotaExceededError(f"Maximum of {limit} media files per mem")

    def _check_can_upload(self, user_id: str, mem_id: uuid.UUID, content_type: str) -> None:
        if not self.policy.is_allowed(content_type):
            raise UnsupportedMediaTypeError("Unsupported file type. Only images and videos are allowed.")

        mem = self.mems.get_by_id(mem_id)
        if mem is None:
            raise NotFoundError("Mem not found")
        if self.participants.get(mem_id, user_id) is None:
            raise NotParticipantError("Not a participant")
        if mem.is_ended:
            raise MemEndedError()

        self._check_quota(mem_id)

    async def request_upload_slot(
        self, user_id: str, mem_id: Any, content_type: str, file_name: str
    ) -> UploadTarget:
        """
        Issue a presigned upload URL for one file.

        Raises:
            UnsupportedMediaTypeError: If the type is not allowed
            NotParticipantError: If the caller is not in the mem
            MemEndedError: If the mem no longer accepts uploads
            QuotaExceededError: If the mem is full
            StorageError: If the URL could not be presigned
        """
        mem_uuid = parse_id(mem_id)
        content_type = (content_type or "").lower()
        self._check_can_upload(user_id, mem_uuid, content_type)

        storage_key = f"{storage_prefix(mem_uuid)}{uuid.uuid4()}{extension_for(file_name, content_type)}"
        expires_in = self.storage.config.upload_url_expiry
        upload_url = await self.storage.presigned_put_url(storage_key, expires_in)

        logger.info(
            "Upload slot issued",
            mem_id=str(mem_uuid),
            user_id=user_id,
            storage_key=storage_key,
            content_type=content_type,
        )
        return UploadTarget(
            upload_url=upload_url,
            storage_key=storage_key,
            expires_in=expires_in,
            max_bytes=self.policy.max_bytes_for(content_type),
            content_type=content_type,
        )

    async def _reject(self, error: MemsError, user_id: str, mem_id: uuid.UUID, storage_key: str,
                      delete_blob: bool = True):
        if delete_blob:
            await self.storage.delete_file(storage_key)
        reason = getattr(error, "reason", error.code)
        audit_logger.log_media_rejected(str(mem_id), user_id, storage_key, reason)
        metrics.track_upload_rejected(reason)
        raise error

    async def commit_upload(
        self,
        user_id: str,
        mem_id: Any,
        storage_key: str,
        file_name: str,
        content_type: str,
        file_size: int,
    ) -> dict:
        """
        Record an uploaded object as media of a mem.

        The stored object, not the client's report, decides the size. Any
        rejection deletes the uploaded blob before raising.
        """
        mem_uuid = parse_id(mem_id)
        content_type = (content_type or "").lower()

        with with_logging_context(user_id=user_id, mem_id=str(mem_uuid)):
            # Keys outside this mem's prefix are never deleted on behalf of the caller
            if not (storage_key or "").startswith(storage_prefix(mem_uuid)):
                await self._reject(
                    UploadRejectedError("Storage key does not belong to this mem", reason="foreign_key"),
                    user_id, mem_uuid, storage_key, delete_blob=False,
                )
            if self.media.get_by_storage_key(storage_key) is not None:
                await self._reject(
                    UploadRejectedError("Upload already committed", reason="duplicate", status_code=409),
                    user_id, mem_uuid, storage_key, delete_blob=False,
                )

            try:
                self._check_can_upload(user_id, mem_uuid, content_type)
            except MemsError as e:
                await self._reject(e, user_id, mem_uuid, storage_key)

            stored_size = await self.storage.stat_size(storage_key)
            cap = self.policy.max_bytes_for(content_type)
            if stored_size is None:
                await self._reject(
                    UploadRejectedError("Uploaded file not found", reason="missing"),
                    user_id, mem_uuid, storage_key, delete_blob=False,
                )
            if stored_size <= 0:
                await self._reject(
                    UploadRejectedError("Invalid file size", reason="empty"),
                    user_id, mem_uuid, storage_key,
                )
            if stored_size > cap:
                await self._reject(
                    UploadRejectedError(
                        f"File size exceeds limit of {cap} bytes", reason="too_large", status_code=413
                    ),
                    user_id, mem_uuid, storage_key,
                )
            if file_size != stored_size:
                logger.warning("Reported file size differs from stored object",
                               reported=file_size, stored=stored_size, storage_key=storage_key)

            media_format = self.policy.format_for(content_type)
            media = self.media.create(
                mem_id=mem_uuid,
                uploader_id=user_id,
                storage_key=storage_key,
                file_name=(file_name or Path(storage_key).name)[:500],
                content_type=content_type,
                file_size=stored_size,
                format=media_format,
                reaction_counts={},
                score=0,
            )

            audit_logger.log_media_committed(str(media.id), str(mem_uuid), user_id, content_type, stored_size)
            metrics.track_upload_committed(media_format.value, stored_size)
            return media.to_dict()

    def _get_media_for_participant(self, user_id: str, media_id: Any) -> MemMedia:
        media = self.media.get_by_id(parse_id(media_id, "Media"))
        if media is None:
            raise NotFoundError("Media not found")
        if self.participants.get(media.mem_id, user_id) is None:
            raise NotParticipantError("Not a participant")
        return media

    def list_media(self, user_id: str, mem_id: Any, sort: str = "recent") -> list[dict]:
        """Media of a mem, newest first or by score."""
        if sort not in MEDIA_SORTS:
            raise ValueError(f"sort must be one of: {', '.join(MEDIA_SORTS)}")
        mem_uuid = parse_id(mem_id)
        if self.participants.get(mem_uuid, user_id) is None:
            raise NotParticipantError("Not a participant")
        return [media.to_dict() for media in self.media.list_for_mem(mem_uuid, sort=sort)]

    async def get_media_url(self, user_id: str, media_id: Any) -> dict:
        """Presigned download URL for a media item."""
        media = self._get_media_for_participant(user_id, media_id)
        expires_in = self.storage.config.download_url_expiry
        url = await self.storage.presigned_get_url(media.storage_key, expires_in)
        return {"media_id": str(media.id), "url": url, "expires_in": expires_in}

    async def delete_media(self, user_id: str, media_id: Any) -> dict:
        """Delete a media item; allowed for its uploader and the mem creator."""
        media = self._get_media_for_participant(user_id, media_id)
        mem = self.mems.get_by_id(media.mem_id)
        if media.uploader_id != user_id and (mem is None or mem.creator_id != user_id):
            raise PermissionDeniedError("Not authorized to delete this media")

        if not await self.storage.delete_file(media.storage_key):
            raise StorageError("Could not delete the stored file")

        media_id_str, mem_id_str = str(media.id), str(media.mem_id)
        self.session.delete(media)
        self.session.flush()

        audit_logger.log_media_deleted(media_id_str, mem_id_str, user_id)
        return {"success": True, "media_id": media_id_str}
