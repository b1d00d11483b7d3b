"""
Unit tests for representative frame extraction.

cv2.VideoCapture is mocked; frame encoding runs for real.
"""

import io
from unittest.mock import AsyncMock, MagicMock, patch

import cv2
import numpy as np
import pytest
from PIL import Image

from mems.media.frame_extractor import FRAME_MAX_DIMENSION, FrameExtractor, _encode_frame, _read_middle_frame
from mems.media.models import DecodeError, MediaFile
from mems.media.progress import ProgressReporter


def make_frame(width=1920, height=1080, seed=3):
    rng = np.random.default_rng(seed)
    return rng.integers(0, 256, (height, width, 3), dtype=np.uint8)


def make_capture(opened=True, fps=30.0, frame_count=300, frame=None, read_ok=True):
    capture = MagicMock()
    capture.isOpened.return_value = opened
    properties = {cv2.CAP_PROP_FPS: fps, cv2.CAP_PROP_FRAME_COUNT: frame_count}
    capture.get.side_effect = lambda prop: properties.get(prop, 0)
    capture.read.return_value = (read_ok, frame if frame is not None else make_frame())
    return capture


class TestReadMiddleFrame:
    """Test seeking and decoding the mid-duration frame."""

    def test_seeks_to_middle(self):
        capture = make_capture(frame_count=301)
        with patch("mems.media.frame_extractor.cv2.VideoCapture", return_value=capture):
            frame = _read_middle_frame("/tmp/video.mp4")

        capture.set.assert_called_once_with(cv2.CAP_PROP_POS_FRAMES, 150)
        capture.release.assert_called_once()
        assert frame.shape == (1080, 1920, 3)

    def test_unopenable_video_raises(self):
        capture = make_capture(opened=False)
        with patch("mems.media.frame_extractor.cv2.VideoCapture", return_value=capture):
            with pytest.raises(DecodeError):
                _read_middle_frame("/tmp/video.mp4")
        capture.release.assert_called_once()

    @pytest.mark.parametrize("fps,frame_count", [(0, 300), (30.0, 0), (-1, -1)])
    def test_missing_duration_raises(self, fps, frame_count):
        capture = make_capture(fps=fps, frame_count=frame_count)
        with patch("mems.media.frame_extractor.cv2.VideoCapture", return_value=capture):
            with pytest.raises(DecodeError):
                _read_middle_frame("/tmp/video.mp4")

    def test_failed_read_raises(self):
        capture = make_capture(read_ok=False)
        with patch("mems.media.frame_extractor.cv2.VideoCapture", return_value=capture):
            with pytest.raises(DecodeError):
                _read_middle_frame("/tmp/video.mp4")
        capture.release.assert_called_once()


class TestEncodeFrame:
    def test_frame_is_capped_and_converted(self):
        """Test that frames are downscaled to 720px and BGR becomes RGB."""
        frame = np.zeros((1080, 1920, 3), dtype=np.uint8)
        frame[:, :, 0] = 255  # pure blue in BGR

        image = Image.open(io.BytesIO(_encode_frame(frame)))

        assert image.format == "JPEG"
        assert max(image.size) == FRAME_MAX_DIMENSION
        red, green, blue = image.convert("RGB").getpixel((10, 10))
        assert blue > 200 and red < 50


class TestFrameExtractor:
    """Test extraction followed by image compression."""

    @pytest.mark.asyncio
    async def test_small_frame_skips_image_compression(self):
        image_compressor = AsyncMock()
        extractor = FrameExtractor(image_compressor)
        video = MediaFile("beach.mp4", "video/mp4", b"\x00" * 5000)
        seen = []

        with patch("mems.media.frame_extractor.cv2.VideoCapture", return_value=make_capture(frame=make_frame(320, 240))):
            result = await extractor.extract(video, 1024 * 1024, ProgressReporter(seen.append))

        assert result.name == "beach.jpg"
        assert result.content_type == "image/jpeg"
        assert result.size <= 1024 * 1024
        image_compressor.compress.assert_not_awaited()
        assert seen == [40, 100]

    @pytest.mark.asyncio
    async def test_large_frame_is_compressed_with_same_budget(self):
        compressed = MediaFile("beach.jpg", "image/jpeg", b"\xff\xd8" + b"\x00" * 100)
        image_compressor = AsyncMock()
        image_compressor.compress.return_value = compressed
        extractor = FrameExtractor(image_compressor)
        video = MediaFile("beach.mp4", "video/mp4", b"\x00" * 5000)

        with patch("mems.media.frame_extractor.cv2.VideoCapture", return_value=make_capture()):
            result = await extractor.extract(video, 1000)

        assert result is compressed
        frame_file, budget = image_compressor.compress.await_args.args[:2]
        assert frame_file.content_type == "image/jpeg"
        assert budget == 1000

    @pytest.mark.asyncio
    async def test_decode_error_propagates(self):
        extractor = FrameExtractor(AsyncMock())
        video = MediaFile("broken.mp4", "video/mp4", b"\x00" * 10)

        with patch("mems.media.frame_extractor.cv2.VideoCapture", return_value=make_capture(opened=False)):
            with pytest.raises(DecodeError):
                await extractor.extract(video, 1000)
