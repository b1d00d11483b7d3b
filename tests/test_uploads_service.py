"""
Unit tests for the two-phase upload service.

Blob storage is an AsyncMock; the database is in-memory SQLite.
"""

import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest

from mems.core.config import DatabaseConfig, MediaConfig
from mems.models.db import DatabaseManager
from mems.models.entities import MediaFormat, MemMedia
from mems.services.errors import (
    MemEndedError,
    NotFoundError,
    NotParticipantError,
    PermissionDeniedError,
    QuotaExceededError,
    StorageError,
    UnsupportedMediaTypeError,
    UploadRejectedError,
)
from mems.services.mems import MemService
from mems.services.uploads import UploadPolicy, UploadService, extension_for

MB = 1024 * 1024


@pytest.fixture
def session():
    manager = DatabaseManager(DatabaseConfig(DATABASE_URL="sqlite://"))
    manager.create_all()
    with manager.get_sync_session() as db_session:
        yield db_session
    manager.dispose()


@pytest.fixture
def storage():
    mock_storage = MagicMock()
    mock_storage.config.upload_url_expiry = 900
    mock_storage.config.download_url_expiry = 3600
    mock_storage.presigned_put_url = AsyncMock(return_value="https://s3.test/upload?sig=1")
    mock_storage.presigned_get_url = AsyncMock(return_value="https://s3.test/download?sig=2")
    mock_storage.stat_size = AsyncMock(return_value=500 * 1024)
    mock_storage.delete_file = AsyncMock(return_value=True)
    return mock_storage


@pytest.fixture
def policy():
    return UploadPolicy(
        allowed_image_types=("image/jpeg", "image/png"),
        allowed_video_types=("video/mp4",),
        image_max_bytes=MB,
        video_max_bytes=2 * MB,
        quota_mode="per_participant",
        max_media_per_participant=2,
        max_media_per_mem=3,
    )


@pytest.fixture
def mem(session):
    mem_service = MemService(session)
    created = mem_service.create_mem("alice", "Festival")
    mem_service.join_mem("bob", created["join_code"])
    return created


@pytest.fixture
def service(session, storage, policy):
    return UploadService(session, storage, policy)


async def upload(service, mem, user_id="bob", content_type="image/jpeg", file_name="photo.jpg", size=500 * 1024):
    target = await service.request_upload_slot(user_id, mem["mem_id"], content_type, file_name)
    service.storage.stat_size.return_value = size
    return await service.commit_upload(
        user_id, mem["mem_id"], target.storage_key, file_name, content_type, size
    )


class TestUploadPolicy:
    """Test policy derivation and quota modes."""

    def test_from_config(self):
        policy = UploadPolicy.from_config(MediaConfig())

        assert policy.is_allowed("IMAGE/JPEG")
        assert policy.is_allowed("video/quicktime")
        assert not policy.is_allowed("application/pdf")
        assert policy.max_bytes_for("image/png") == MB
        assert policy.format_for("video/mp4") is MediaFormat.VIDEO

    def test_quota_modes(self, policy):
        assert policy.quota_for(0) == 2
        assert policy.quota_for(3) == 6

        flat = UploadPolicy(("image/jpeg",), (), MB, MB, quota_mode="per_mem", max_media_per_mem=3)
        assert flat.quota_for(10) == 3

    def test_extension_for(self):
        assert extension_for("IMG_1.JPG", "image/jpeg") == ".jpg"
        assert extension_for("no-extension", "image/png") == ".png"
        assert extension_for("weird.name with spaces", "video/mp4") == ".mp4"


class TestRequestUploadSlot:
    """Test issuing presigned upload targets."""

    @pytest.mark.asyncio
    async def test_slot_for_participant(self, service, mem, storage):
        target = await service.request_upload_slot("bob", mem["mem_id"], "image/JPEG", "beach.jpg")

        assert target.upload_url == "https://s3.test/upload?sig=1"
        assert target.storage_key.startswith(f"mems/{mem['mem_id']}/")
        assert target.storage_key.endswith(".jpg")
        assert target.max_bytes == MB
        assert target.content_type == "image/jpeg"
        assert target.to_dict()["expires_in"] == 900
        storage.presigned_put_url.assert_awaited_once_with(target.storage_key, 900)

    @pytest.mark.asyncio
    async def test_unsupported_type(self, service, mem):
        with pytest.raises(UnsupportedMediaTypeError) as exc_info:
            await service.request_upload_slot("bob", mem["mem_id"], "application/pdf", "menu.pdf")
        assert exc_info.value.status_code == 415

    @pytest.mark.asyncio
    async def test_non_participant(self, service, mem):
        with pytest.raises(NotParticipantError):
            await service.request_upload_slot("mallory", mem["mem_id"], "image/jpeg", "a.jpg")

    @pytest.mark.asyncio
    async def test_unknown_mem(self, service):
        with pytest.raises(NotFoundError):
            await service.request_upload_slot("bob", str(uuid.uuid4()), "image/jpeg", "a.jpg")

    @pytest.mark.asyncio
    async def test_ended_mem(self, service, mem, session):
        MemService(session).end_mem("alice", mem["mem_id"])

        with pytest.raises(MemEndedError):
            await service.request_upload_slot("bob", mem["mem_id"], "image/jpeg", "a.jpg")

    @pytest.mark.asyncio
    async def test_quota_scales_with_participants(self, service, mem):
        """Test that two participants with two uploads each fill the mem."""
        for _ in range(4):
            await upload(service, mem)

        with pytest.raises(QuotaExceededError):
            await service.request_upload_slot("alice", mem["mem_id"], "image/jpeg", "a.jpg")


class TestCommitUpload:
    """Test commit-time validation of the stored object."""

    @pytest.mark.asyncio
    async def test_commit_records_stored_size(self, service, mem, storage, session):
        target = await service.request_upload_slot("bob", mem["mem_id"], "image/jpeg", "beach.jpg")
        storage.stat_size.return_value = 400_000

        media = await service.commit_upload("bob", mem["mem_id"], target.storage_key, "beach.jpg", "image/jpeg", 123)

        assert media["file_size"] == 400_000
        assert media["format"] == "image"
        assert media["reaction_counts"] == {}
        assert media["score"] == 0
        assert media["uploader_id"] == "bob"
        assert session.query(MemMedia).count() == 1
        storage.delete_file.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_oversized_object_is_rejected_and_deleted(self, service, mem, storage, session):
        target = await service.request_upload_slot("bob", mem["mem_id"], "image/jpeg", "huge.jpg")
        storage.stat_size.return_value = MB + 1

        with pytest.raises(UploadRejectedError) as exc_info:
            await service.commit_upload("bob", mem["mem_id"], target.storage_key, "huge.jpg", "image/jpeg", 100)

        assert exc_info.value.status_code == 413
        assert exc_info.value.reason == "too_large"
        storage.delete_file.assert_awaited_once_with(target.storage_key)
        assert session.query(MemMedia).count() == 0

    @pytest.mark.asyncio
    async def test_video_uses_video_cap(self, service, mem, storage):
        target = await service.request_upload_slot("bob", mem["mem_id"], "video/mp4", "clip.mp4")
        storage.stat_size.return_value = int(1.5 * MB)

        media = await service.commit_upload("bob", mem["mem_id"], target.storage_key, "clip.mp4", "video/mp4", int(1.5 * MB))

        assert media["format"] == "video"

    @pytest.mark.asyncio
    async def test_empty_object_is_rejected_and_deleted(self, service, mem, storage):
        target = await service.request_upload_slot("bob", mem["mem_id"], "image/jpeg", "empty.jpg")
        storage.stat_size.return_value = 0

        with pytest.raises(UploadRejectedError) as exc_info:
            await service.commit_upload("bob", mem["mem_id"], target.storage_key, "empty.jpg", "image/jpeg", 0)

        assert exc_info.value.reason == "empty"
        storage.delete_file.assert_awaited_once_with(target.storage_key)

    @pytest.mark.asyncio
    async def test_missing_object_is_rejected(self, service, mem, storage):
        target = await service.request_upload_slot("bob", mem["mem_id"], "image/jpeg", "gone.jpg")
        storage.stat_size.return_value = None

        with pytest.raises(UploadRejectedError) as exc_info:
            await service.commit_upload("bob", mem["mem_id"], target.storage_key, "gone.jpg", "image/jpeg", 10)

        assert exc_info.value.reason == "missing"
        assert exc_info.value.status_code == 422

    @pytest.mark.asyncio
    async def test_disallowed_type_is_rejected_and_deleted(self, service, mem, storage):
        key = f"mems/{mem['mem_id']}/{uuid.uuid4()}.pdf"

        with pytest.raises(UnsupportedMediaTypeError):
            await service.commit_upload("bob", mem["mem_id"], key, "menu.pdf", "application/pdf", 10)

        storage.delete_file.assert_awaited_once_with(key)

    @pytest.mark.asyncio
    async def test_non_participant_commit_is_rejected_and_deleted(self, service, mem, storage):
        key = f"mems/{mem['mem_id']}/{uuid.uuid4()}.jpg"

        with pytest.raises(NotParticipantError):
            await service.commit_upload("mallory", mem["mem_id"], key, "a.jpg", "image/jpeg", 10)

        storage.delete_file.assert_awaited_once_with(key)
        storage.stat_size.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_quota_reached_commit_is_rejected_and_deleted(self, service, mem, storage):
        for _ in range(4):
            await upload(service, mem)
        key = f"mems/{mem['mem_id']}/{uuid.uuid4()}.jpg"

        with pytest.raises(QuotaExceededError):
            await service.commit_upload("bob", mem["mem_id"], key, "a.jpg", "image/jpeg", 10)

        storage.delete_file.assert_awaited_once_with(key)

    @pytest.mark.asyncio
    async def test_foreign_key_is_not_deleted(self, service, mem, storage):
        """Test that keys outside the mem's prefix are rejected without touching the blob."""
        other_key = f"mems/{uuid.uuid4()}/victim.jpg"

        with pytest.raises(UploadRejectedError) as exc_info:
            await service.commit_upload("bob", mem["mem_id"], other_key, "a.jpg", "image/jpeg", 10)

        assert exc_info.value.reason == "foreign_key"
        storage.delete_file.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_duplicate_commit_is_rejected(self, service, mem, storage):
        target = await service.request_upload_slot("bob", mem["mem_id"], "image/jpeg", "a.jpg")
        await service.commit_upload("bob", mem["mem_id"], target.storage_key, "a.jpg", "image/jpeg", 500 * 1024)

        with pytest.raises(UploadRejectedError) as exc_info:
            await service.commit_upload("bob", mem["mem_id"], target.storage_key, "a.jpg", "image/jpeg", 500 * 1024)

        assert exc_info.value.status_code == 409
        storage.delete_file.assert_not_awaited()


class TestMediaAccess:
    """Test listing, download URLs and deletion."""

    @pytest.mark.asyncio
    async def test_list_media(self, service, mem):
        first = await upload(service, mem, file_name="one.jpg")
        second = await upload(service, mem, file_name="two.jpg")

        recent = service.list_media("alice", mem["mem_id"])

        assert {item["id"] for item in recent} == {first["id"], second["id"]}
        with pytest.raises(ValueError):
            service.list_media("alice", mem["mem_id"], sort="random")
        with pytest.raises(NotParticipantError):
            service.list_media("mallory", mem["mem_id"])

    @pytest.mark.asyncio
    async def test_media_url(self, service, mem, storage):
        media = await upload(service, mem)

        result = await service.get_media_url("alice", media["id"])

        assert result == {"media_id": media["id"], "url": "https://s3.test/download?sig=2", "expires_in": 3600}
        storage.presigned_get_url.assert_awaited_once_with(media["storage_key"], 3600)

    @pytest.mark.asyncio
    async def test_media_url_unknown(self, service):
        with pytest.raises(NotFoundError):
            await service.get_media_url("alice", str(uuid.uuid4()))

    @pytest.mark.asyncio
    async def test_uploader_can_delete(self, service, mem, storage, session):
        media = await upload(service, mem, user_id="bob")

        result = await service.delete_media("bob", media["id"])

        assert result == {"success": True, "media_id": media["id"]}
        storage.delete_file.assert_awaited_once_with(media["storage_key"])
        assert session.query(MemMedia).count() == 0

    @pytest.mark.asyncio
    async def test_creator_can_delete(self, service, mem):
        media = await upload(service, mem, user_id="bob")

        result = await service.delete_media("alice", media["id"])

        assert result["success"] is True

    @pytest.mark.asyncio
    async def test_other_participant_cannot_delete(self, service, mem, session, storage):
        MemService(session).join_mem("carol", mem["join_code"])
        media = await upload(service, mem, user_id="bob")

        with pytest.raises(PermissionDeniedError):
            await service.delete_media("carol", media["id"])

        storage.delete_file.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_storage_failure_keeps_row(self, service, mem, storage, session):
        media = await upload(service, mem)
        storage.delete_file.return_value = False

        with pytest.raises(StorageError):
            await service.delete_media("bob", media["id"])

        assert session.query(MemMedia).count() == 1
