"""
End-to-end tests for the compression orchestrator.

Scenarios:
- A: large JPEG under a 200 KB budget
- B: large video, first fitting tier returned as video
- C: transcoding engine unavailable, single JPEG frame returned
- D: unsupported type passes through unchanged
- E: corrupt image raises CompressionError
"""

import io
from pathlib import Path
from unittest.mock import patch

import numpy as np
import pytest
from PIL import Image

from mems.media import (
    CompressionError,
    FrameExtractor,
    ImageCompressor,
    MediaCompressor,
    MediaFile,
    MediaKind,
    VideoCompressor,
    budget_for,
    get_estimated_compression_ratio,
    is_video_compression_available,
    preload_engine,
)
from mems.media.ffmpeg_wrapper import H264_PROFILE, EngineUnavailableError, TranscodeResult, VideoProbe

MB = 1024 * 1024


def noisy_jpeg(width, height, quality=95, noise=40, seed=11):
    rng = np.random.default_rng(seed)
    base = np.linspace(0, 255 - noise, width, dtype=np.float32)[None, :, None]
    pixels = np.clip(base + rng.integers(0, noise + 1, (height, width, 3)), 0, 255).astype(np.uint8)
    buffer = io.BytesIO()
    Image.fromarray(pixels).save(buffer, format="JPEG", quality=quality)
    return buffer.getvalue()


class ScriptedEngine:
    """Engine double returning fixed output sizes per tier."""

    def __init__(self, sizes, ready=True):
        self.sizes = sizes
        self.ready = ready
        self.transcoded = []
        self.is_ready = ready

    async def initialize(self):
        return self.ready

    async def ensure_ready(self):
        if not self.ready:
            raise EngineUnavailableError("Transcoding engine is not available")
        return H264_PROFILE

    async def probe(self, file_path):
        return VideoProbe(duration=30.0, width=1920, height=1080, has_audio=True)

    async def transcode(self, input_path, output_path, tier, probe, on_progress=None):
        self.transcoded.append(tier.name)
        size = self.sizes[tier.name]
        Path(output_path).write_bytes(b"\x00" * size)
        if on_progress:
            on_progress(100.0)
        return TranscodeResult(True, output_path, size, 0.5, 0)


def make_compressor(engine):
    image_compressor = ImageCompressor()
    video_compressor = VideoCompressor(engine=engine, frame_extractor=FrameExtractor(image_compressor))
    return MediaCompressor(image_compressor=image_compressor, video_compressor=video_compressor)


class TestCompressionScenarios:
    """Test the documented end-to-end scenarios."""

    @pytest.mark.asyncio
    async def test_scenario_a_large_jpeg(self):
        source = MediaFile("IMG_0001.jpg", "image/jpeg", noisy_jpeg(3000, 2000))
        seen = []

        result = await MediaCompressor().compress(source, 200 * 1024, seen.append)

        assert result.kind is MediaKind.IMAGE
        assert result.size < source.size
        assert result.size <= 200 * 1024
        assert seen == sorted(set(seen))
        assert seen[-1] == 100

    @pytest.mark.asyncio
    async def test_scenario_b_video_first_fitting_tier(self):
        engine = ScriptedEngine({"720p": 4 * MB, "480p": 1536 * 1024, "360p": 700 * 1024, "240p": 300 * 1024})
        source = MediaFile("concert.mp4", "video/mp4", b"\x00" * (10 * MB))
        seen = []

        result = await make_compressor(engine).compress(source, MB, seen.append)

        assert engine.transcoded == ["720p", "480p", "360p"]
        assert result.content_type == "video/mp4"
        assert result.size == 700 * 1024
        assert seen == sorted(set(seen))
        assert seen.count(100) == 1

    @pytest.mark.asyncio
    async def test_scenario_c_engine_unavailable_yields_frame(self):
        """Test that a video comes back as one JPEG frame when the engine cannot load."""
        engine = ScriptedEngine({}, ready=False)
        source = MediaFile("dance.mov", "video/quicktime", b"\x00" * (2 * MB))
        frame = np.random.default_rng(5).integers(0, 256, (1080, 1920, 3), dtype=np.uint8)

        with patch("mems.media.frame_extractor._read_middle_frame", return_value=frame):
            result = await make_compressor(engine).compress(source, MB)

        assert result.content_type == "image/jpeg"
        assert result.name == "dance.jpg"
        assert result.size <= MB
        assert max(Image.open(io.BytesIO(result.data)).size) <= 720

    @pytest.mark.asyncio
    async def test_scenario_d_unsupported_type_passes_through(self):
        source = MediaFile("menu.pdf", "application/pdf", b"%PDF" + b"\x00" * 5000)
        seen = []

        result = await MediaCompressor().compress(source, 1000, seen.append)

        assert result is source
        assert seen == [100]

    @pytest.mark.asyncio
    async def test_scenario_e_corrupt_image(self):
        source = MediaFile("broken.png", "image/png", b"definitely not a png" * 100)

        with pytest.raises(CompressionError):
            await MediaCompressor().compress(source, 100)


class TestMediaCompressor:
    """Test orchestrator contracts."""

    @pytest.mark.asyncio
    async def test_within_budget_is_identity(self):
        source = MediaFile("small.jpg", "image/jpeg", noisy_jpeg(64, 64))
        seen = []

        result = await MediaCompressor().compress(source, MB, seen.append)

        assert result is source
        assert seen == [100]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("budget", [0, -1])
    async def test_invalid_budget(self, budget):
        with pytest.raises(ValueError):
            await MediaCompressor().compress(MediaFile("a.jpg", "image/jpeg", b"x"), budget)

    @pytest.mark.asyncio
    async def test_input_is_not_mutated(self):
        data = noisy_jpeg(800, 600)
        source = MediaFile("a.jpg", "image/jpeg", data)

        await MediaCompressor().compress(source, 20 * 1024)

        assert source.data == data


class TestHelpers:
    def test_budget_for_uses_configured_caps(self):
        with patch("mems.media.compression.settings") as mock_settings:
            mock_settings.media.image_max_bytes = 111
            mock_settings.media.video_max_bytes = 222
            assert budget_for("image/png") == 111
            assert budget_for("video/mp4") == 222
            assert budget_for("application/pdf") == 111

    def test_estimated_ratios(self):
        assert get_estimated_compression_ratio("image/png") == 0.2
        assert get_estimated_compression_ratio("image/gif") == 0.3
        assert get_estimated_compression_ratio("image/webp") == 0.4
        assert get_estimated_compression_ratio("image/jpeg") == 0.25
        assert get_estimated_compression_ratio("video/mp4") == 0.3
        assert get_estimated_compression_ratio("application/pdf") == 1.0

    @pytest.mark.asyncio
    async def test_preload_and_availability(self):
        engine = ScriptedEngine({}, ready=True)
        assert await preload_engine(engine) is True
        assert is_video_compression_available(engine) is True
        assert is_video_compression_available(ScriptedEngine({}, ready=False)) is False
