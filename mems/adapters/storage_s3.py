"""
S3 Storage Adapter for Mems.

Provides presigned upload/download URLs and object inspection on
S3-compatible storage (MinIO). Clients upload bytes directly with the
presigned PUT URL; the API only stats and deletes objects.
"""

import asyncio
import time
from datetime import timedelta
from urllib.parse import urlparse

from minio import Minio
from minio.error import S3Error, ServerError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..core.config import S3Config, settings
from ..core.logging import get_logger, performance_logger
from ..observability.metrics import track_storage_time
from ..services.errors import StorageError

logger = get_logger("adapters.storage_s3")

_MISSING_OBJECT_CODES = {"NoSuchKey", "NoSuchObject", "NotFound", "ResourceNotFound"}

storage_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
    retry=retry_if_exception_type((ServerError, ConnectionError, TimeoutError)),
    reraise=True,
)


class S3Storage:
    """S3-compatible storage adapter using MinIO."""

    def __init__(self, config: S3Config = None, client: Minio = None):
        """Initialize S3 storage adapter."""
        self.config = config or settings.s3
        self.endpoint = self.config.endpoint
        self.bucket = self.config.bucket_name
        self._client = client
        logger.info("S3Storage initialized", endpoint=self.endpoint, bucket=self.bucket)

    def _get_client(self) -> Minio:
        """Get or create MinIO client."""
        if self._client is None:
            parsed = urlparse(self.endpoint)
            self._client = Minio(
                parsed.netloc or parsed.path,
                access_key=self.config.access_key,
                secret_key=self.config.secret_key.get_secret_value(),
                secure=parsed.scheme == "https",
                region=self.config.region,
            )
        return self._client

    async def _run(self, operation: str, func):
        """Run a blocking client call in the executor with timing."""
        start = time.time()
        success = False
        try:
            with track_storage_time(operation):
                result = await asyncio.get_running_loop().run_in_executor(None, func)
            success = True
            return result
        finally:
            performance_logger.log_storage_call(operation, time.time() - start, success)

    async def ensure_bucket(self) -> None:
        """Create the media bucket if it does not exist yet."""
        client = self._get_client()

        def _ensure():
            if not client.bucket_exists(self.bucket):
                client.make_bucket(self.bucket)
                logger.info(f"Created bucket: {self.bucket}")

        try:
            await self._run("ensure_bucket", _ensure)
        except (S3Error, ServerError) as e:
            raise StorageError(f"Failed to ensure bucket {self.bucket}: {e}") from e

    @storage_retry
    async def presigned_put_url(self, s3_key: str, expires_seconds: int = None) -> str:
        """
        Presign a direct PUT upload for an object key.

        Args:
            s3_key: S3 object key
            expires_seconds: URL lifetime (configured default if None)

        Returns:
            Presigned upload URL
        """
        expires = timedelta(seconds=expires_seconds or self.config.upload_url_expiry)
        client = self._get_client()
        try:
            return await self._run(
                "presign_put", lambda: client.presigned_put_object(self.bucket, s3_key, expires=expires)
            )
        except (S3Error, ValueError) as e:
            logger.error(f"Failed to presign upload for {s3_key}: {e}")
            raise StorageError(f"Could not create upload URL: {e}") from e

    @storage_retry
    async def presigned_get_url(self, s3_key: str, expires_seconds: int = None) -> str:
        """Presign a download URL for an object key."""
        expires = timedelta(seconds=expires_seconds or self.config.download_url_expiry)
        client = self._get_client()
        try:
            return await self._run(
                "presign_get", lambda: client.presigned_get_object(self.bucket, s3_key, expires=expires)
            )
        except (S3Error, ValueError) as e:
            logger.error(f"Failed to presign download for {s3_key}: {e}")
            raise StorageError(f"Could not create download URL: {e}") from e

    @storage_retry
    async def stat_size(self, s3_key: str) -> int | None:
        """Size in bytes of a stored object, or None when it does not exist."""
        client = self._get_client()
        try:
            stat = await self._run("stat", lambda: client.stat_object(self.bucket, s3_key))
        except S3Error as e:
            if e.code in _MISSING_OBJECT_CODES:
                return None
            raise StorageError(f"Could not stat {s3_key}: {e}") from e
        return stat.size

    @storage_retry
    async def _remove_object(self, s3_key: str) -> None:
        client = self._get_client()
        await self._run("delete", lambda: client.remove_object(self.bucket, s3_key))

    async def delete_file(self, s3_key: str) -> bool:
        """Delete file from S3. False when storage refused or kept failing."""
        try:
            await self._remove_object(s3_key)
        except (S3Error, ServerError) as e:
            logger.error(f"Failed to delete {s3_key}: {e}")
            return False
        logger.info(f"Deleted {s3_key}")
        return True


# Global instance
s3_storage = S3Storage()
