"""
Representative frame extraction with OpenCV.

Used when a video cannot be brought under budget: the mid-duration frame
is decoded, capped at 720px on its longest edge, encoded as JPEG and then
passed through the image compressor with the same budget.
"""

import asyncio
import io
import tempfile
from pathlib import Path

import cv2
import numpy as np
from PIL import Image

from ..core.logging import get_logger
from .image_compressor import ImageCompressor
from .models import DecodeError, MediaFile
from .progress import ProgressReporter

logger = get_logger("media.frame_extractor")

FRAME_MAX_DIMENSION = 720
FRAME_JPEG_QUALITY = 80


def _read_middle_frame(video_path: str) -> np.ndarray:
    capture = cv2.VideoCapture(video_path)
    try:
        if not capture.isOpened():
            raise DecodeError("Video could not be opened")

        fps = capture.get(cv2.CAP_PROP_FPS) or 0
        frame_count = int(capture.get(cv2.CAP_PROP_FRAME_COUNT) or 0)
        if fps <= 0 or frame_count <= 0:
            raise DecodeError("Video has no decodable duration")

        capture.set(cv2.CAP_PROP_POS_FRAMES, frame_count // 2)
        ok, frame = capture.read()
        if not ok or frame is None:
            raise DecodeError("Could not read frame at mid duration")
        return frame
    finally:
        capture.release()


def _encode_frame(frame: np.ndarray) -> bytes:
    image = Image.fromarray(cv2.cvtColor(frame, cv2.COLOR_BGR2RGB))
    image.thumbnail((FRAME_MAX_DIMENSION, FRAME_MAX_DIMENSION), Image.Resampling.LANCZOS)
    buffer = io.BytesIO()
    image.save(buffer, format="JPEG", quality=FRAME_JPEG_QUALITY)
    return buffer.getvalue()


class FrameExtractor:
    """Turns a video into a single compressed JPEG frame."""

    def __init__(self, image_compressor: ImageCompressor = None):
        self.image_compressor = image_compressor or ImageCompressor()

    def _extract_sync(self, file: MediaFile) -> bytes:
        with tempfile.TemporaryDirectory(prefix="mems_frame_") as work_dir:
            video_path = file.write_to(work_dir, f"source{Path(file.name).suffix or '.bin'}")
            frame = _read_middle_frame(str(video_path))
        return _encode_frame(frame)

    async def extract(
        self, file: MediaFile, max_bytes: int, progress: ProgressReporter = None
    ) -> MediaFile:
        """
        Extract the mid-duration frame and compress it to fit max_bytes.

        Raises:
            DecodeError: If the video cannot be opened, has no frames or the
                seek/read fails
        """
        progress = progress or ProgressReporter()

        data = await asyncio.get_running_loop().run_in_executor(None, self._extract_sync, file)
        frame_file = MediaFile(name=f"{file.stem}.jpg", content_type="image/jpeg", data=data)
        logger.info("Extracted representative frame", source=file.name, frame_size=frame_file.size)
        progress.report(40)

        image_progress = progress.scoped(40, 100)
        if frame_file.size <= max_bytes:
            image_progress.complete()
            return frame_file
        return await self.image_compressor.compress(frame_file, max_bytes, image_progress)
