"""
Compression orchestrator for Mems.

This module provides:
- MediaCompressor: dispatch by media kind under a byte budget
- Per-kind budgets from configuration
- Estimated compression ratios for UI hints
- Engine preloading and availability checks
"""

import time
from typing import Optional

from ..core.config import settings
from ..core.logging import get_logger, performance_logger
from ..observability.metrics import metrics
from .ffmpeg_wrapper import FFmpegWrapper, ffmpeg_wrapper
from .frame_extractor import FrameExtractor
from .image_compressor import ImageCompressor
from .models import MediaFile, MediaKind
from .progress import ProgressCallback, ProgressReporter
from .video_compressor import VideoCompressor

logger = get_logger("media.compression")

_ESTIMATED_RATIOS = {
    "image/png": 0.2,
    "image/gif": 0.3,
    "image/webp": 0.4,
}


class MediaCompressor:
    """Entry point of the compression pipeline."""

    def __init__(
        self,
        image_compressor: ImageCompressor = None,
        video_compressor: VideoCompressor = None,
    ):
        self.image_compressor = image_compressor or ImageCompressor()
        self.video_compressor = video_compressor or VideoCompressor(
            frame_extractor=FrameExtractor(self.image_compressor)
        )

    async def compress(
        self,
        file: MediaFile,
        max_bytes: int,
        on_progress: Optional[ProgressCallback] = None,
    ) -> MediaFile:
        """
        Reduce a file to fit max_bytes, best effort.

        Args:
            file: Source file; never mutated
            max_bytes: Positive byte budget
            on_progress: Receives non-decreasing integer percentages ending at 100

        Returns:
            The input itself when it already fits or is neither image nor
            video, otherwise the compressed output (a video may come back as
            a JPEG frame)

        Raises:
            ValueError: If max_bytes < 1
            CompressionError: If an image cannot be decoded or encoded
            DecodeError: If a video's fallback frame cannot be decoded
        """
        if max_bytes < 1:
            raise ValueError("max_bytes must be a positive integer")

        progress = ProgressReporter(on_progress)
        kind = file.kind

        if file.size <= max_bytes:
            progress.complete()
            metrics.track_compression(kind.value, "passthrough", "within_budget", 0.0)
            return file

        if kind is MediaKind.OTHER:
            logger.info("Unsupported media type, passing through", content_type=file.content_type)
            progress.complete()
            metrics.track_compression(kind.value, "passthrough", "unsupported", 0.0)
            return file

        start_time = time.time()
        strategy = "image_tiers" if kind is MediaKind.IMAGE else "video_tiers"
        logger.info(
            "Compression started",
            file_name=file.name,
            content_type=file.content_type,
            input_size=file.size,
            max_bytes=max_bytes,
        )

        try:
            if kind is MediaKind.IMAGE:
                result = await self.image_compressor.compress(file, max_bytes, progress)
            else:
                result = await self.video_compressor.compress(file, max_bytes, progress)
        except Exception:
            metrics.track_compression(kind.value, strategy, "error", time.time() - start_time)
            logger.error("Compression failed", file_name=file.name, exc_info=True)
            raise

        duration = time.time() - start_time
        if kind is MediaKind.VIDEO and result.kind is MediaKind.IMAGE:
            strategy = "frame_extraction"
        outcome = "within_budget" if result.size <= max_bytes else "best_effort"

        metrics.track_compression(kind.value, strategy, outcome, duration, file.size, result.size)
        performance_logger.log_compression(
            media_kind=kind.value,
            strategy=strategy,
            input_size=file.size,
            output_size=result.size,
            execution_time=duration,
            outcome=outcome,
        )

        progress.complete()
        return result


# Global compressor instance
media_compressor = MediaCompressor()


async def compress_file(
    file: MediaFile,
    max_bytes: int = None,
    on_progress: Optional[ProgressCallback] = None,
) -> MediaFile:
    """Compress with the global compressor; budget defaults to the configured cap for the kind."""
    if max_bytes is None:
        max_bytes = budget_for(file.content_type)
    return await media_compressor.compress(file, max_bytes, on_progress)


def budget_for(content_type: str) -> int:
    """Configured byte budget for a MIME type."""
    if MediaKind.from_content_type(content_type) is MediaKind.VIDEO:
        return settings.media.video_max_bytes
    return settings.media.image_max_bytes


def get_estimated_compression_ratio(content_type: str) -> float:
    """Expected output/input size ratio, for display before compressing."""
    content_type = (content_type or "").lower()
    if content_type in _ESTIMATED_RATIOS:
        return _ESTIMATED_RATIOS[content_type]
    kind = MediaKind.from_content_type(content_type)
    if kind is MediaKind.IMAGE:
        return 0.25
    if kind is MediaKind.VIDEO:
        return 0.3
    return 1.0


async def preload_engine(engine: FFmpegWrapper = None) -> bool:
    """Initialize the transcoding engine ahead of the first video."""
    return await (engine or ffmpeg_wrapper).initialize()


def is_video_compression_available(engine: FFmpegWrapper = None) -> bool:
    """True once the transcoding engine has initialized successfully."""
    return (engine or ffmpeg_wrapper).is_ready
