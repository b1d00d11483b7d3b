"""
Unit tests for the upload client.

The API is replaced by an in-memory backend for MediaUploader tests and by
httpx.MockTransport for HttpUploadBackend tests.
"""

import asyncio
import json
from unittest.mock import AsyncMock

import httpx
import pytest

from mems.media.models import MediaFile
from mems.services.media_uploader import (
    HttpUploadBackend,
    MediaUploader,
    UploadClientError,
    UploadState,
)
from mems.services.uploads import UploadPolicy

KB = 1024


class FakeBackend:
    """In-memory stand-in for the two-phase upload API."""

    def __init__(self, fail_for=(), delay=0.0):
        self.fail_for = set(fail_for)
        self.delay = delay
        self.put = {}
        self.committed = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def request_upload_slot(self, mem_id, content_type, file_name):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.in_flight -= 1
        if file_name in self.fail_for:
            raise UploadClientError("Upload limit reached for this mem", 409)
        return {"upload_url": f"https://s3.test/{file_name}", "storage_key": f"mems/{mem_id}/{file_name}"}

    async def put_bytes(self, upload_url, file):
        self.put[upload_url] = file.data

    async def commit_upload(self, mem_id, storage_key, file_name, content_type, file_size):
        self.committed.append((storage_key, file_name, content_type, file_size))
        return {"id": f"media-{len(self.committed)}"}


@pytest.fixture
def policy():
    return UploadPolicy(
        allowed_image_types=("image/jpeg", "image/png"),
        allowed_video_types=("video/mp4",),
        image_max_bytes=10 * KB,
        video_max_bytes=20 * KB,
    )


@pytest.fixture
def compressor():
    mock_compressor = AsyncMock()

    async def shrink(media_file, budget, on_progress=None):
        if on_progress:
            on_progress(100)
        return MediaFile(media_file.name, media_file.content_type, media_file.data[:budget // 2])

    mock_compressor.compress.side_effect = shrink
    return mock_compressor


class TestQueue:
    """Test queue management."""

    def test_unsupported_type_is_queued_failed(self, policy, compressor):
        uploader = MediaUploader(FakeBackend(), compressor, policy)

        items = uploader.add_files([
            MediaFile("a.jpg", "image/jpeg", b"x" * 100),
            MediaFile("menu.pdf", "application/pdf", b"%PDF"),
        ])

        assert items[0].state is UploadState.IDLE
        assert items[1].state is UploadState.ERROR
        assert items[1].error == "Unsupported file type: application/pdf"
        assert uploader.pending == [items[0]]

    def test_remove(self, policy, compressor):
        uploader = MediaUploader(FakeBackend(), compressor, policy)
        first, second = uploader.add_files([
            MediaFile("a.jpg", "image/jpeg", b"x"),
            MediaFile("b.jpg", "image/jpeg", b"y"),
        ])

        uploader.remove(first.id)

        assert uploader.items == [second]
        assert first.discarded is True
        assert second.discarded is False


class TestUploadItem:
    """Test the per-file compress and upload sequence."""

    @pytest.mark.asyncio
    async def test_small_file_uploaded_without_compression(self, policy, compressor):
        backend = FakeBackend()
        uploader = MediaUploader(backend, compressor, policy)
        item = uploader.add_files([MediaFile("a.jpg", "image/jpeg", b"x" * KB)])[0]

        await uploader.upload_item("mem-1", item)

        compressor.compress.assert_not_called()
        assert item.state is UploadState.SUCCESS
        assert item.progress == 100
        assert item.media_id == "media-1"
        assert item.compressed is False
        assert backend.committed == [("mems/mem-1/a.jpg", "a.jpg", "image/jpeg", KB)]

    @pytest.mark.asyncio
    async def test_oversized_file_is_compressed_to_its_budget(self, policy, compressor):
        """Test that the per-kind budget is passed to the compressor."""
        backend = FakeBackend()
        uploader = MediaUploader(backend, compressor, policy)
        image, video = uploader.add_files([
            MediaFile("big.jpg", "image/jpeg", b"x" * (40 * KB)),
            MediaFile("clip.mp4", "video/mp4", b"v" * (40 * KB)),
        ])

        await uploader.upload_item("mem-1", image)
        await uploader.upload_item("mem-1", video)

        budgets = [call.args[1] for call in compressor.compress.call_args_list]
        assert budgets == [10 * KB, 20 * KB]
        assert image.compressed is True
        assert image.file.size == 5 * KB
        assert image.compression_ratio == pytest.approx(5 / 40)
        assert backend.put["https://s3.test/big.jpg"] == b"x" * (5 * KB)

    @pytest.mark.asyncio
    async def test_compression_failure_marks_item_failed(self, policy, compressor):
        compressor.compress.side_effect = RuntimeError("decoder crashed")
        uploader = MediaUploader(FakeBackend(), compressor, policy)
        item = uploader.add_files([MediaFile("big.jpg", "image/jpeg", b"x" * (40 * KB))])[0]

        await uploader.upload_item("mem-1", item)

        assert item.state is UploadState.ERROR
        assert item.error == "decoder crashed"
        assert item.progress == 0

    @pytest.mark.asyncio
    async def test_non_idle_item_is_skipped(self, policy, compressor):
        backend = FakeBackend()
        uploader = MediaUploader(backend, compressor, policy)
        item = uploader.add_files([MediaFile("menu.pdf", "application/pdf", b"%PDF")])[0]

        await uploader.upload_item("mem-1", item)

        assert item.state is UploadState.ERROR
        assert backend.committed == []


class TestUploadAll:
    @pytest.mark.asyncio
    async def test_one_failure_does_not_affect_others(self, policy, compressor):
        backend = FakeBackend(fail_for={"b.jpg"})
        uploader = MediaUploader(backend, compressor, policy)
        uploader.add_files([MediaFile(name, "image/jpeg", b"x" * 100) for name in ("a.jpg", "b.jpg", "c.jpg")])

        results = await uploader.upload_all("mem-1")

        states = {item.file.name: item.state for item in results}
        assert states == {"a.jpg": UploadState.SUCCESS, "b.jpg": UploadState.ERROR, "c.jpg": UploadState.SUCCESS}
        assert results[1].error == "Upload limit reached for this mem"
        assert len(backend.committed) == 2

    @pytest.mark.asyncio
    async def test_files_upload_concurrently(self, policy, compressor):
        backend = FakeBackend(delay=0.01)
        uploader = MediaUploader(backend, compressor, policy)
        uploader.add_files([MediaFile(f"{i}.jpg", "image/jpeg", b"x") for i in range(4)])

        await uploader.upload_all("mem-1")

        assert backend.max_in_flight == 4
        assert uploader.pending == []

    @pytest.mark.asyncio
    async def test_item_removed_while_compressing_is_never_committed(self, policy, compressor):
        """Test that removing a file mid-compression drops its eventual result."""
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow_shrink(media_file, budget, on_progress=None):
            started.set()
            await release.wait()
            return MediaFile(media_file.name, media_file.content_type, media_file.data[:budget // 2])

        compressor.compress.side_effect = slow_shrink
        backend = FakeBackend()
        uploader = MediaUploader(backend, compressor, policy)
        big, small = uploader.add_files([
            MediaFile("big.jpg", "image/jpeg", b"x" * (40 * KB)),
            MediaFile("small.jpg", "image/jpeg", b"y" * KB),
        ])

        task = asyncio.ensure_future(uploader.upload_all("mem-1"))
        await started.wait()
        uploader.remove(big.id)
        release.set()
        results = await task

        assert results == [small]
        assert uploader.items == [small]
        assert big.state is not UploadState.SUCCESS
        assert big.media_id is None
        assert [entry[1] for entry in backend.committed] == ["small.jpg"]
        assert "https://s3.test/big.jpg" not in backend.put

    @pytest.mark.asyncio
    async def test_item_removed_during_put_is_not_committed(self, policy, compressor):
        backend = FakeBackend()
        uploader = MediaUploader(backend, compressor, policy)
        item = uploader.add_files([MediaFile("a.jpg", "image/jpeg", b"x" * KB)])[0]

        async def put_then_remove(upload_url, file):
            backend.put[upload_url] = file.data
            uploader.remove(item.id)

        backend.put_bytes = put_then_remove

        assert await uploader.upload_all("mem-1") == []
        assert backend.committed == []
        assert item.state is UploadState.UPLOADING


class TestHttpUploadBackend:
    """Test the HTTP contract with a mocked transport."""

    @pytest.mark.asyncio
    async def test_two_phase_requests(self):
        requests = []

        def handler(request):
            requests.append(request)
            if request.url.path.endswith("/upload-url"):
                return httpx.Response(200, json={"upload_url": "https://s3.test/put", "storage_key": "mems/m/k.jpg"})
            if request.method == "PUT":
                return httpx.Response(200)
            return httpx.Response(201, json={"id": "media-9"})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        backend = HttpUploadBackend("https://api.test/", "token-1", client=client)
        media_file = MediaFile("k.jpg", "image/jpeg", b"jpeg-bytes")

        slot = await backend.request_upload_slot("m", "image/jpeg", "k.jpg")
        await backend.put_bytes(slot["upload_url"], media_file)
        media = await backend.commit_upload("m", slot["storage_key"], "k.jpg", "image/jpeg", media_file.size)
        await backend.aclose()

        assert media == {"id": "media-9"}
        assert str(requests[0].url) == "https://api.test/api/v1/mems/m/media/upload-url"
        assert requests[0].headers["Authorization"] == "Bearer token-1"
        assert requests[1].content == b"jpeg-bytes"
        assert requests[1].headers["Content-Type"] == "image/jpeg"
        assert json.loads(requests[2].content)["file_size"] == len(b"jpeg-bytes")

    @pytest.mark.asyncio
    async def test_error_message_comes_from_envelope(self):
        def handler(request):
            return httpx.Response(409, json={"error": "mem_ended", "message": "This mem has ended", "request_id": "r"})

        backend = HttpUploadBackend("https://api.test", "t", client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))

        with pytest.raises(UploadClientError) as exc_info:
            await backend.request_upload_slot("m", "image/jpeg", "a.jpg")

        assert str(exc_info.value) == "This mem has ended"
        assert exc_info.value.status_code == 409

    @pytest.mark.asyncio
    async def test_non_json_error_uses_body_text(self):
        def handler(request):
            return httpx.Response(403, text="AccessDenied")

        backend = HttpUploadBackend("https://api.test", "t", client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))

        with pytest.raises(UploadClientError, match="AccessDenied"):
            await backend.put_bytes("https://s3.test/put", MediaFile("a.jpg", "image/jpeg", b"x"))

    @pytest.mark.asyncio
    async def test_put_retries_transport_errors(self):
        attempts = []

        def handler(request):
            attempts.append(request)
            if len(attempts) == 1:
                raise httpx.ConnectError("connection reset", request=request)
            return httpx.Response(200)

        backend = HttpUploadBackend("https://api.test", "t", client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))

        await backend.put_bytes("https://s3.test/put", MediaFile("a.jpg", "image/jpeg", b"x"))

        assert len(attempts) == 2
