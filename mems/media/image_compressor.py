"""
Tiered image compression with Pillow.

Each tier re-encodes the decoded image at a lower quality and/or smaller
longest edge; the first candidate within budget wins. When no tier fits,
the smallest candidate is returned (never larger than the input).
"""

import asyncio
import io
from pathlib import Path

from PIL import Image, ImageOps, UnidentifiedImageError

from ..core.logging import get_logger
from ..observability.metrics import metrics
from .models import (
    Accepted,
    AttemptStatus,
    CompressionError,
    Exhausted,
    ImageTier,
    MediaFile,
    TierAttempt,
)
from .progress import ProgressReporter

logger = get_logger("media.image_compressor")

# Formats Pillow can re-encode losslessly enough to keep as the output type
REENCODABLE_FORMATS = {
    "JPEG": ("image/jpeg", ".jpg"),
    "PNG": ("image/png", ".png"),
    "WEBP": ("image/webp", ".webp"),
}
_FORMAT_BY_CONTENT_TYPE = {content_type: fmt for fmt, (content_type, _) in REENCODABLE_FORMATS.items()}

DEFAULT_IMAGE_TIERS: tuple[ImageTier, ...] = (
    ImageTier("source_format", 1920, 0.8, content_type=None),
    ImageTier("jpeg_default", 1920, 0.8),
    ImageTier("jpeg_reduced", 1280, 0.6),
    ImageTier("jpeg_aggressive", 800, 0.4),
)


def _flatten_for_jpeg(image: Image.Image) -> Image.Image:
    """Composite transparency on white and convert to RGB."""
    if image.mode in ("RGBA", "LA") or (image.mode == "P" and "transparency" in image.info):
        rgba = image.convert("RGBA")
        background = Image.new("RGB", rgba.size, (255, 255, 255))
        background.paste(rgba, mask=rgba.getchannel("A"))
        return background
    if image.mode != "RGB":
        return image.convert("RGB")
    return image


def _decode(data: bytes) -> tuple[Image.Image, str | None]:
    try:
        with Image.open(io.BytesIO(data)) as opened:
            source_format = opened.format
            opened.load()
            image = ImageOps.exif_transpose(opened)
            if image is opened:
                image = opened.copy()
        return image, source_format
    except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError) as e:
        raise CompressionError(f"Could not decode image: {e}") from e


def _encode(image: Image.Image, fmt: str, tier: ImageTier) -> bytes:
    resized = image.copy()
    resized.thumbnail((tier.max_dimension, tier.max_dimension), Image.Resampling.LANCZOS)

    buffer = io.BytesIO()
    try:
        if fmt == "JPEG":
            _flatten_for_jpeg(resized).save(
                buffer, format="JPEG", quality=tier.encoder_quality, optimize=True, progressive=True
            )
        elif fmt == "WEBP":
            if resized.mode not in ("RGB", "RGBA"):
                resized = resized.convert("RGBA" if "transparency" in resized.info else "RGB")
            resized.save(buffer, format="WEBP", quality=tier.encoder_quality, method=4)
        else:
            if resized.mode not in ("1", "L", "LA", "P", "RGB", "RGBA"):
                resized = resized.convert("RGBA")
            resized.save(buffer, format="PNG", optimize=True)
    except (OSError, ValueError) as e:
        raise CompressionError(f"Could not encode image as {fmt}: {e}") from e
    return buffer.getvalue()


class ImageCompressor:
    """Re-encodes images through decreasing quality tiers."""

    def __init__(self, tiers: tuple[ImageTier, ...] = DEFAULT_IMAGE_TIERS):
        self.tiers = tiers

    async def run_tiers(
        self, file: MediaFile, max_bytes: int, progress: ProgressReporter
    ) -> Accepted | Exhausted:
        """Evaluate tiers in order and return the tagged outcome."""
        loop = asyncio.get_running_loop()
        image, source_format = await loop.run_in_executor(None, _decode, file.data)
        if source_format is None:
            source_format = _FORMAT_BY_CONTENT_TYPE.get(file.content_type)

        attempts: list[TierAttempt] = []
        smallest: MediaFile | None = None
        total = len(self.tiers)

        for index, tier in enumerate(self.tiers):
            fmt = source_format if tier.content_type is None else _FORMAT_BY_CONTENT_TYPE.get(tier.content_type)
            if fmt not in REENCODABLE_FORMATS:
                logger.debug("Skipping image tier", tier=tier.name, source_format=source_format)
                progress.report(10 + 80 * (index + 1) / total)
                continue

            data = await loop.run_in_executor(None, _encode, image, fmt, tier)
            content_type, extension = REENCODABLE_FORMATS[fmt]
            candidate = MediaFile(name=f"{Path(file.name).stem or 'image'}{extension}", content_type=content_type, data=data)

            if smallest is None or candidate.size < smallest.size:
                smallest = candidate

            progress.report(10 + 80 * (index + 1) / total)

            if candidate.size <= max_bytes:
                attempts.append(TierAttempt(tier.name, AttemptStatus.ACCEPTED, candidate.size))
                metrics.track_tier_attempt("image", tier.name, AttemptStatus.ACCEPTED.value)
                return Accepted(candidate, tier.name, attempts)

            attempts.append(TierAttempt(tier.name, AttemptStatus.OVER_BUDGET, candidate.size))
            metrics.track_tier_attempt("image", tier.name, AttemptStatus.OVER_BUDGET.value)
            logger.debug("Image tier over budget", tier=tier.name, output_size=candidate.size, max_bytes=max_bytes)

        return Exhausted("no tier fits the budget", attempts, smallest)

    async def compress(
        self, file: MediaFile, max_bytes: int, progress: ProgressReporter = None
    ) -> MediaFile:
        """
        Compress an image to fit max_bytes, best effort.

        Args:
            file: Source image
            max_bytes: Byte budget
            progress: Reporter receiving 10..100

        Returns:
            First tier output within budget, otherwise the smallest output
            produced, or the original when it is smaller still

        Raises:
            CompressionError: If the image cannot be decoded or encoded
        """
        progress = progress or ProgressReporter()
        progress.report(10)

        outcome = await self.run_tiers(file, max_bytes, progress)

        if isinstance(outcome, Accepted):
            result = outcome.file
            logger.info("Image compressed", tier=outcome.tier, input_size=file.size, output_size=result.size)
        else:
            result = outcome.smallest
            if result is None or result.size >= file.size:
                result = file
            logger.warning(
                "Image could not reach budget, returning smallest output",
                input_size=file.size,
                output_size=result.size,
                max_bytes=max_bytes,
                attempts=[attempt.tier for attempt in outcome.attempts],
            )

        progress.complete()
        return result
