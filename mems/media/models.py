"""
Data types for the media compression pipeline.

This module provides:
- MediaFile: immutable in-memory file (name, MIME type, bytes)
- Quality tier descriptors for images and video
- Tagged tier outcomes (Accepted / Exhausted) with per-tier attempt records
- Pipeline exception hierarchy
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class MediaKind(str, Enum):
    """Media kind derived from the declared MIME prefix."""
    IMAGE = "image"
    VIDEO = "video"
    OTHER = "other"

    @classmethod
    def from_content_type(cls, content_type: str | None) -> "MediaKind":
        content_type = (content_type or "").lower()
        if content_type.startswith("image/"):
            return cls.IMAGE
        if content_type.startswith("video/"):
            return cls.VIDEO
        return cls.OTHER


@dataclass(frozen=True)
class MediaFile:
    """A user-supplied or produced file held in memory."""

    name: str
    content_type: str
    data: bytes = field(repr=False)

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def kind(self) -> MediaKind:
        return MediaKind.from_content_type(self.content_type)

    @property
    def stem(self) -> str:
        return Path(self.name).stem or "media"

    @classmethod
    def from_path(cls, path: str | Path, content_type: str, name: str = None) -> "MediaFile":
        path = Path(path)
        return cls(name=name or path.name, content_type=content_type, data=path.read_bytes())

    def write_to(self, directory: str | Path, name: str = None) -> Path:
        """Write the bytes into a directory and return the path."""
        target = Path(directory) / (name or Path(self.name).name or "media")
        target.write_bytes(self.data)
        return target


@dataclass(frozen=True)
class ImageTier:
    """Image encode settings. content_type None means keep the source format."""

    name: str
    max_dimension: int
    quality: float
    content_type: str | None = "image/jpeg"

    @property
    def encoder_quality(self) -> int:
        return int(round(self.quality * 100))


@dataclass(frozen=True)
class VideoTier:
    """Video encode settings; bitrates in bits per second."""

    name: str
    max_dimension: int
    video_bitrate: int
    audio_bitrate: int


class AttemptStatus(str, Enum):
    """Outcome of a single tier attempt."""
    ACCEPTED = "accepted"
    OVER_BUDGET = "over_budget"
    FAILED = "failed"


@dataclass
class TierAttempt:
    tier: str
    status: AttemptStatus
    output_size: int | None = None
    error: str | None = None


@dataclass
class Accepted:
    """A tier produced output within budget."""
    file: MediaFile
    tier: str
    attempts: list[TierAttempt] = field(default_factory=list)


@dataclass
class Exhausted:
    """No tier produced output within budget."""
    reason: str
    attempts: list[TierAttempt] = field(default_factory=list)
    smallest: MediaFile | None = None


class MediaProcessingError(Exception):
    """Base class for media pipeline errors."""
    pass


class UnsupportedTypeError(MediaProcessingError):
    """Media type is neither image nor video."""
    pass


class CompressionError(MediaProcessingError):
    """Image could not be decoded or encoded."""
    pass


class DecodeError(MediaProcessingError):
    """Video frame could not be decoded."""
    pass


class BudgetUnreachableError(MediaProcessingError):
    """Output could not be brought under the byte budget.

    Not raised by the pipeline: the smallest output is returned instead and
    the upload service enforces the cap.
    """
    pass


def fit_within(width: int, height: int, max_dimension: int) -> tuple[int, int]:
    """Scale (width, height) so the longest edge is at most max_dimension, never upscaling."""
    longest = max(width, height)
    if longest <= max_dimension:
        return width, height
    scale = max_dimension / longest
    return max(1, round(width * scale)), max(1, round(height * scale))
