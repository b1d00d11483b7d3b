"""
Tiered video compression with frame-extraction fallback.

Tiers are tried from highest to lowest quality; the first transcode within
budget is returned as video. When every tier is over budget, or the engine
cannot run, one representative frame is extracted and compressed as an
image instead.
"""

import tempfile
from pathlib import Path

from ..core.logging import get_logger
from ..observability.metrics import metrics
from .ffmpeg_wrapper import FFmpegError, FFmpegWrapper, ffmpeg_wrapper
from .frame_extractor import FrameExtractor
from .models import (
    Accepted,
    AttemptStatus,
    Exhausted,
    MediaFile,
    TierAttempt,
    VideoTier,
)
from .progress import ProgressReporter

logger = get_logger("media.video_compressor")

DEFAULT_VIDEO_TIERS: tuple[VideoTier, ...] = (
    VideoTier("720p", 720, 1_000_000, 96_000),
    VideoTier("480p", 480, 500_000, 64_000),
    VideoTier("360p", 360, 250_000, 48_000),
    VideoTier("240p", 240, 125_000, 32_000),
)

_SETUP_END = 20
_TIERS_END = 90


class VideoCompressor:
    """Transcodes videos through decreasing bitrate tiers."""

    def __init__(
        self,
        engine: FFmpegWrapper = None,
        frame_extractor: FrameExtractor = None,
        tiers: tuple[VideoTier, ...] = DEFAULT_VIDEO_TIERS,
    ):
        self.engine = engine or ffmpeg_wrapper
        self.frame_extractor = frame_extractor or FrameExtractor()
        self.tiers = tiers

    async def run_tiers(
        self, file: MediaFile, max_bytes: int, progress: ProgressReporter
    ) -> Accepted | Exhausted:
        """
        Transcode tier by tier inside a temporary directory.

        A tier whose encode exits non-zero is recorded as failed and the next
        tier is tried; engine errors end the run as Exhausted.
        """
        attempts: list[TierAttempt] = []

        try:
            profile = await self.engine.ensure_ready()
        except FFmpegError as e:
            return Exhausted(f"engine unavailable: {e}", attempts)

        with tempfile.TemporaryDirectory(prefix="mems_video_") as work_dir:
            source_path = file.write_to(work_dir, f"source{Path(file.name).suffix or '.bin'}")

            try:
                probe = await self.engine.probe(str(source_path))
            except FFmpegError as e:
                logger.warning("Video probe failed", error=str(e))
                return Exhausted(f"probe failed: {e}", attempts)

            progress.report(_SETUP_END)
            span = (_TIERS_END - _SETUP_END) / len(self.tiers)

            for index, tier in enumerate(self.tiers):
                tier_progress = progress.scoped(_SETUP_END + span * index, _SETUP_END + span * (index + 1))
                output_path = Path(work_dir) / f"{tier.name}{profile.extension}"

                try:
                    result = await self.engine.transcode(
                        str(source_path), str(output_path), tier, probe, on_progress=tier_progress.report
                    )
                except FFmpegError as e:
                    attempts.append(TierAttempt(tier.name, AttemptStatus.FAILED, error=str(e)))
                    metrics.track_tier_attempt("video", tier.name, AttemptStatus.FAILED.value)
                    logger.warning("Transcoding engine failed", tier=tier.name, error=str(e))
                    return Exhausted(f"engine failed: {e}", attempts)

                tier_progress.complete()

                if not result.success:
                    attempts.append(TierAttempt(tier.name, AttemptStatus.FAILED, error=result.error_message))
                    metrics.track_tier_attempt("video", tier.name, AttemptStatus.FAILED.value)
                    continue

                if result.output_size <= max_bytes:
                    attempts.append(TierAttempt(tier.name, AttemptStatus.ACCEPTED, result.output_size))
                    metrics.track_tier_attempt("video", tier.name, AttemptStatus.ACCEPTED.value)
                    output = MediaFile(
                        name=f"{file.stem}{profile.extension}",
                        content_type=profile.content_type,
                        data=output_path.read_bytes(),
                    )
                    return Accepted(output, tier.name, attempts)

                attempts.append(TierAttempt(tier.name, AttemptStatus.OVER_BUDGET, result.output_size))
                metrics.track_tier_attempt("video", tier.name, AttemptStatus.OVER_BUDGET.value)
                logger.debug(
                    "Video tier over budget", tier=tier.name, output_size=result.output_size, max_bytes=max_bytes
                )

        return Exhausted("no tier fits the budget", attempts)

    async def compress(
        self, file: MediaFile, max_bytes: int, progress: ProgressReporter = None
    ) -> MediaFile:
        """
        Compress a video to fit max_bytes.

        Returns:
            The first tier within budget as video, otherwise a JPEG of a
            representative frame

        Raises:
            DecodeError: If the fallback frame cannot be decoded
            CompressionError: If the extracted frame cannot be encoded
        """
        progress = progress or ProgressReporter()

        if file.size <= max_bytes:
            progress.complete()
            return file

        progress.report(5)
        outcome = await self.run_tiers(file, max_bytes, progress)

        if isinstance(outcome, Accepted):
            logger.info(
                "Video compressed",
                tier=outcome.tier,
                input_size=file.size,
                output_size=outcome.file.size,
            )
            progress.complete()
            return outcome.file

        logger.warning(
            "Falling back to frame extraction",
            reason=outcome.reason,
            attempts=[(attempt.tier, attempt.status.value) for attempt in outcome.attempts],
        )
        return await self.frame_extractor.extract(file, max_bytes, progress.scoped(progress.last, 100))
