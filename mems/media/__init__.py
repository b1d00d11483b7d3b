"""
Media compression pipeline for Mems.

This module reduces user-selected images and videos to fit an upload budget:
- MediaCompressor: dispatch by media kind, budget contract, progress
- ImageCompressor: tiered Pillow re-encoding
- VideoCompressor: tiered ffmpeg transcoding with frame-extraction fallback
- FrameExtractor: OpenCV mid-duration frame capture
- FFmpegWrapper: lazily initialized transcoding engine
"""

from .models import (
    MediaFile,
    MediaKind,
    ImageTier,
    VideoTier,
    AttemptStatus,
    TierAttempt,
    Accepted,
    Exhausted,
    MediaProcessingError,
    UnsupportedTypeError,
    CompressionError,
    DecodeError,
    BudgetUnreachableError,
)

from .progress import ProgressReporter

from .ffmpeg_wrapper import (
    FFmpegWrapper,
    ffmpeg_wrapper,
    EngineState,
    VideoProbe,
    TranscodeResult,
    FFmpegError,
    FFmpegTimeoutError,
    EngineUnavailableError,
)

from .image_compressor import ImageCompressor, DEFAULT_IMAGE_TIERS
from .frame_extractor import FrameExtractor
from .video_compressor import VideoCompressor, DEFAULT_VIDEO_TIERS

from .compression import (
    MediaCompressor,
    media_compressor,
    compress_file,
    budget_for,
    get_estimated_compression_ratio,
    preload_engine,
    is_video_compression_available,
)


__all__ = [
    # Data types
    "MediaFile",
    "MediaKind",
    "ImageTier",
    "VideoTier",
    "AttemptStatus",
    "TierAttempt",
    "Accepted",
    "Exhausted",
    "ProgressReporter",
    # Errors
    "MediaProcessingError",
    "UnsupportedTypeError",
    "CompressionError",
    "DecodeError",
    "BudgetUnreachableError",
    "FFmpegError",
    "FFmpegTimeoutError",
    "EngineUnavailableError",
    # Engine
    "FFmpegWrapper",
    "ffmpeg_wrapper",
    "EngineState",
    "VideoProbe",
    "TranscodeResult",
    # Compressors
    "ImageCompressor",
    "DEFAULT_IMAGE_TIERS",
    "FrameExtractor",
    "VideoCompressor",
    "DEFAULT_VIDEO_TIERS",
    # Orchestrator
    "MediaCompressor",
    "media_compressor",
    "compress_file",
    "budget_for",
    "get_estimated_compression_ratio",
    "preload_engine",
    "is_video_compression_available",
]
