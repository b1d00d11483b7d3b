"""
Upload client for Mems.

This module provides:
- UploadItem / UploadState: per-file queue entries with progress
- MediaUploader: validate, compress and upload a batch of files
- HttpUploadBackend: the two-phase upload contract over HTTP with httpx

Files in a batch are processed concurrently; one file failing never
affects the others.
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Optional, Protocol

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..core.logging import get_logger
from ..media.compression import MediaCompressor, media_compressor
from ..media.models import MediaFile
from .uploads import UploadPolicy

logger = get_logger("services.media_uploader")


class UploadState(str, Enum):
    """Lifecycle of a queued file."""
    IDLE = "idle"
    COMPRESSING = "compressing"
    UPLOADING = "uploading"
    SUCCESS = "success"
    ERROR = "error"


@dataclass
class UploadItem:
    original: MediaFile
    file: MediaFile
    state: UploadState = UploadState.IDLE
    progress: int = 0
    error: Optional[str] = None
    media_id: Optional[str] = None
    compressed: bool = False
    compression_ratio: Optional[float] = None
    discarded: bool = False
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def fail(self, message: str) -> None:
        self.state = UploadState.ERROR
        self.error = message
        self.progress = 0


class UploadClientError(Exception):
    """The API refused an upload step."""

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.status_code = status_code


class UploadBackend(Protocol):
    async def request_upload_slot(self, mem_id: str, content_type: str, file_name: str) -> dict: ...

    async def put_bytes(self, upload_url: str, file: MediaFile) -> None: ...

    async def commit_upload(
        self, mem_id: str, storage_key: str, file_name: str, content_type: str, file_size: int
    ) -> dict: ...


class HttpUploadBackend:
    """Talks to the Mems API and uploads bytes to presigned URLs."""

    def __init__(self, base_url: str, token: str, client: httpx.AsyncClient = None, timeout: float = 60.0):
        self.base_url = base_url.rstrip("/")
        self.http_client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))
        self.headers = {"Authorization": f"Bearer {token}"}

    async def aclose(self) -> None:
        await self.http_client.aclose()

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        if response.is_success:
            return
        try:
            message = response.json().get("message") or response.text
        except ValueError:
            message = response.text
        raise UploadClientError(message or f"HTTP {response.status_code}", response.status_code)

    async def request_upload_slot(self, mem_id: str, content_type: str, file_name: str) -> dict:
        response = await self.http_client.post(
            f"{self.base_url}/api/v1/mems/{mem_id}/media/upload-url",
            json={"content_type": content_type, "file_name": file_name},
            headers=self.headers,
        )
        self._raise_for_status(response)
        return response.json()

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def put_bytes(self, upload_url: str, file: MediaFile) -> None:
        response = await self.http_client.put(
            upload_url, content=file.data, headers={"Content-Type": file.content_type}
        )
        self._raise_for_status(response)

    async def commit_upload(
        self, mem_id: str, storage_key: str, file_name: str, content_type: str, file_size: int
    ) -> dict:
        response = await self.http_client.post(
            f"{self.base_url}/api/v1/mems/{mem_id}/media",
            json={
                "storage_key": storage_key,
                "file_name": file_name,
                "content_type": content_type,
                "file_size": file_size,
            },
            headers=self.headers,
        )
        self._raise_for_status(response)
        return response.json()


class MediaUploader:
    """Queue of selected files uploaded into one mem."""

    def __init__(
        self,
        backend: UploadBackend,
        compressor: MediaCompressor = None,
        policy: UploadPolicy = None,
    ):
        self.backend = backend
        self.compressor = compressor or media_compressor
        self.policy = policy or UploadPolicy.from_config()
        self.items: list[UploadItem] = []

    def add_files(self, files: Iterable[MediaFile]) -> list[UploadItem]:
        """Queue files; unsupported types are queued already failed."""
        added = []
        for media_file in files:
            item = UploadItem(original=media_file, file=media_file)
            if not self.policy.is_allowed(media_file.content_type):
                item.fail(f"Unsupported file type: {media_file.content_type or 'unknown'}")
            added.append(item)
        self.items.extend(added)
        return added

    def remove(self, item_id: str) -> None:
        """Drop an item; an in-flight run for it stops before anything is committed."""
        for item in self.items:
            if item.id == item_id:
                item.discarded = True
        self.items = [item for item in self.items if item.id != item_id]

    @property
    def pending(self) -> list[UploadItem]:
        return [item for item in self.items if item.state is UploadState.IDLE]

    async def compress_item(self, item: UploadItem) -> None:
        """Compress an item when it exceeds its kind's budget."""
        budget = self.policy.max_bytes_for(item.original.content_type)
        if item.original.size <= budget:
            return

        item.state = UploadState.COMPRESSING
        item.progress = 0

        def on_progress(value: int) -> None:
            item.progress = value

        result = await self.compressor.compress(item.original, budget, on_progress)
        item.file = result
        item.compressed = result.size < item.original.size
        item.compression_ratio = result.size / item.original.size if item.original.size else None
        item.progress = 0

    @staticmethod
    def _dropped(item: UploadItem) -> bool:
        if item.discarded:
            logger.info("Discarding removed upload", file_name=item.original.name, state=item.state.value)
        return item.discarded

    async def upload_item(self, mem_id: str, item: UploadItem) -> UploadItem:
        """Compress if needed, then request a slot, PUT the bytes and commit."""
        if item.state is not UploadState.IDLE or item.discarded:
            return item

        try:
            await self.compress_item(item)
            if self._dropped(item):
                return item

            item.state = UploadState.UPLOADING
            item.progress = 10
            slot = await self.backend.request_upload_slot(mem_id, item.file.content_type, item.file.name)
            item.progress = 30

            await self.backend.put_bytes(slot["upload_url"], item.file)
            item.progress = 70

            # an uncommitted object never becomes visible in the mem
            if self._dropped(item):
                return item
            media = await self.backend.commit_upload(
                mem_id, slot["storage_key"], item.file.name, item.file.content_type, item.file.size
            )
        except Exception as e:
            logger.warning("Upload failed", file_name=item.original.name, error=str(e))
            item.fail(str(e) or e.__class__.__name__)
            return item

        item.media_id = str(media.get("id"))
        item.state = UploadState.SUCCESS
        item.progress = 100
        logger.info("Upload succeeded", file_name=item.file.name, media_id=item.media_id, size=item.file.size)
        return item

    async def upload_all(self, mem_id: str) -> list[UploadItem]:
        """Upload every pending item concurrently; items removed meanwhile are left out."""
        pending = self.pending
        await asyncio.gather(*(self.upload_item(mem_id, item) for item in pending))
        return [item for item in pending if not item.discarded]
