"""
FFmpeg Wrapper for Mems.

This module provides an asyncio wrapper around the ffmpeg/ffprobe binaries
used to shrink videos before upload:
- Lazy, explicit engine initialization with encoder detection
- Media probing (duration, dimensions, audio presence)
- Bitrate/resolution-capped transcodes with progress from `-progress`
- Timeouts that kill the child process
"""

import asyncio
import json
import os
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

import ffmpeg

from ..core.config import settings
from ..core.logging import get_logger, with_logging_context
from ..observability.metrics import metrics
from .models import VideoTier, fit_within

logger = get_logger("media.ffmpeg_wrapper")


class EngineState(str, Enum):
    """Lifecycle of the transcoding engine."""

    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    FAILED = "failed"


@dataclass(frozen=True)
class EncoderProfile:
    """Web-playable output container and codecs."""

    name: str
    extension: str
    content_type: str
    video_codec: str
    audio_codec: str | None
    extra_args: dict[str, Any] = field(default_factory=dict)


H264_PROFILE = EncoderProfile(
    name="h264",
    extension=".mp4",
    content_type="video/mp4",
    video_codec="libx264",
    audio_codec="aac",
    extra_args={"preset": "veryfast", "pix_fmt": "yuv420p", "movflags": "+faststart"},
)

VP8_PROFILE = EncoderProfile(
    name="vp8",
    extension=".webm",
    content_type="video/webm",
    video_codec="libvpx",
    audio_codec="libvorbis",
    extra_args={"deadline": "realtime", "cpu-used": 5, "pix_fmt": "yuv420p"},
)


@dataclass
class VideoProbe:
    """Stream information reported by ffprobe."""

    duration: float
    width: int
    height: int
    video_codec: str | None = None
    has_audio: bool = False


@dataclass
class TranscodeResult:
    """Result of a single transcode run."""

    success: bool
    output_path: str
    output_size: int
    execution_time: float
    returncode: int | None
    stderr: str = ""
    error_message: str | None = None


class FFmpegError(Exception):
    """Custom exception for FFmpeg operations."""

    pass


class FFmpegTimeoutError(FFmpegError):
    """Exception raised when FFmpeg operation times out."""

    pass


class EngineUnavailableError(FFmpegError):
    """Raised when the engine could not be initialized."""

    pass


_ENCODER_LINE = re.compile(r"^\s*[VAS][\w.]{5}\s+(\w[\w-]*)", re.MULTILINE)
_PROGRESS_TIME_KEYS = ("out_time_us", "out_time_ms")


def parse_encoders(output: str) -> set[str]:
    """Encoder names listed by `ffmpeg -encoders`."""
    return set(_ENCODER_LINE.findall(output))


def parse_progress_line(line: str, duration: float) -> float | None:
    """Convert one `-progress` line into a 0-100 percentage, if it carries time."""
    key, _, value = line.strip().partition("=")
    if key == "progress" and value == "end":
        return 100.0
    if key not in _PROGRESS_TIME_KEYS or duration <= 0:
        return None
    try:
        # Both keys carry microseconds
        elapsed = int(value) / 1_000_000
    except ValueError:
        return None
    return max(0.0, min(100.0, elapsed / duration * 100))


def even_dimensions(width: int, height: int, max_dimension: int) -> tuple[int, int]:
    """Target size within max_dimension, rounded down to even numbers for yuv420p."""
    target_w, target_h = fit_within(width, height, max_dimension)
    return max(2, target_w - target_w % 2), max(2, target_h - target_h % 2)


class FFmpegWrapper:
    """Asyncio wrapper around the ffmpeg and ffprobe binaries."""

    def __init__(
        self,
        ffmpeg_binary: str = None,
        ffprobe_binary: str = None,
        timeout_seconds: int = None,
        probe_timeout_seconds: int = None,
    ):
        """Initialize FFmpeg wrapper. No process is started until initialize()."""
        self.ffmpeg_binary = ffmpeg_binary or settings.media.ffmpeg_binary
        self.ffprobe_binary = ffprobe_binary or settings.media.ffprobe_binary
        self.timeout_seconds = timeout_seconds or settings.media.transcode_timeout
        self.probe_timeout_seconds = probe_timeout_seconds or settings.media.probe_timeout

        self._state = EngineState.UNINITIALIZED
        self._profile: Optional[EncoderProfile] = None
        # (loop, lock) pairs; created on first use inside the running loop
        self._init_lock: Optional[tuple] = None
        self._engine_lock: Optional[tuple] = None

    def _loop_lock(self, attr: str) -> asyncio.Lock:
        """Lock bound to the running event loop, recreated when the loop changes."""
        loop = asyncio.get_running_loop()
        bound = getattr(self, attr)
        if bound is None or bound[0] is not loop:
            bound = (loop, asyncio.Lock())
            setattr(self, attr, bound)
        return bound[1]

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def profile(self) -> Optional[EncoderProfile]:
        return self._profile

    @property
    def is_ready(self) -> bool:
        return self._state is EngineState.READY

    def _set_state(self, state: EngineState) -> None:
        self._state = state
        metrics.update_engine_state(state.value)

    def reset(self) -> None:
        """Return to the uninitialized state so initialize() probes again."""
        self._profile = None
        self._set_state(EngineState.UNINITIALIZED)

    async def _run(self, command: list[str], timeout: float) -> tuple[int, bytes, bytes]:
        """Run a short-lived command and collect its output."""
        process = await asyncio.create_subprocess_exec(
            *command, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE
        )
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            await self._kill(process)
            raise FFmpegTimeoutError(f"{command[0]} timed out after {timeout}s")
        except BaseException:
            await self._kill(process)
            raise
        return process.returncode, stdout, stderr

    @staticmethod
    async def _kill(process) -> None:
        """Kill a child that is still running and reap it."""
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
        # reaped even if the caller is cancelled again
        await asyncio.shield(process.wait())

    async def initialize(self) -> bool:
        """
        Detect the ffmpeg binary and pick an encoder profile.

        Concurrent callers share one initialization. Prefers H.264/AAC in MP4
        and falls back to VP8 in WebM.

        Returns:
            True when the engine is ready
        """
        if self._state is EngineState.READY:
            return True

        async with self._loop_lock("_init_lock"):
            if self._state in (EngineState.READY, EngineState.FAILED):
                return self._state is EngineState.READY

            self._set_state(EngineState.INITIALIZING)
            logger.info("Initializing transcoding engine", binary=self.ffmpeg_binary)

            try:
                returncode, stdout, stderr = await self._run(
                    [self.ffmpeg_binary, "-hide_banner", "-encoders"], self.probe_timeout_seconds
                )
            except (OSError, FFmpegError) as e:
                logger.warning("Transcoding engine unavailable", error=str(e))
                self._set_state(EngineState.FAILED)
                return False

            if returncode != 0:
                logger.warning(
                    "Transcoding engine failed to list encoders",
                    returncode=returncode,
                    stderr=stderr.decode("utf-8", errors="replace")[-500:],
                )
                self._set_state(EngineState.FAILED)
                return False

            encoders = parse_encoders(stdout.decode("utf-8", errors="replace"))
            if "libx264" in encoders:
                self._profile = H264_PROFILE
            elif "libvpx" in encoders:
                audio_codec = next((codec for codec in ("libvorbis", "libopus") if codec in encoders), None)
                self._profile = EncoderProfile(
                    name=VP8_PROFILE.name,
                    extension=VP8_PROFILE.extension,
                    content_type=VP8_PROFILE.content_type,
                    video_codec=VP8_PROFILE.video_codec,
                    audio_codec=audio_codec,
                    extra_args=VP8_PROFILE.extra_args,
                )
            else:
                logger.warning("No web-playable video encoder available", encoders=len(encoders))
                self._set_state(EngineState.FAILED)
                return False

            self._set_state(EngineState.READY)
            logger.info("Transcoding engine ready", profile=self._profile.name)
            return True

    async def ensure_ready(self) -> EncoderProfile:
        """Initialize if needed and return the active profile."""
        if not await self.initialize():
            raise EngineUnavailableError("Transcoding engine is not available")
        return self._profile

    async def probe(self, file_path: str) -> VideoProbe:
        """
        Probe a media file with ffprobe.

        Raises:
            FFmpegError: If ffprobe fails or the file has no video stream
        """
        command = [
            self.ffprobe_binary,
            "-v", "error",
            "-print_format", "json",
            "-show_format",
            "-show_streams",
            file_path,
        ]
        try:
            returncode, stdout, stderr = await self._run(command, self.probe_timeout_seconds)
        except OSError as e:
            raise FFmpegError(f"Could not run ffprobe: {e}") from e

        if returncode != 0:
            raise FFmpegError(f"ffprobe failed with exit code {returncode}: {stderr.decode('utf-8', errors='replace')}")

        try:
            info = json.loads(stdout.decode("utf-8", errors="replace") or "{}")
        except json.JSONDecodeError as e:
            raise FFmpegError(f"Unreadable ffprobe output: {e}") from e

        streams = info.get("streams", [])
        video = next((s for s in streams if s.get("codec_type") == "video"), None)
        if video is None:
            raise FFmpegError(f"No video stream in {file_path}")

        duration = video.get("duration") or info.get("format", {}).get("duration") or 0
        try:
            duration = float(duration)
        except (TypeError, ValueError):
            duration = 0.0

        return VideoProbe(
            duration=duration,
            width=int(video.get("width") or 0),
            height=int(video.get("height") or 0),
            video_codec=video.get("codec_name"),
            has_audio=any(s.get("codec_type") == "audio" for s in streams),
        )

    def build_transcode_command(
        self, input_path: str, output_path: str, tier: VideoTier, probe: VideoProbe, profile: EncoderProfile = None
    ) -> list[str]:
        """Build the ffmpeg command line for one tier."""
        profile = profile or self._profile
        if profile is None:
            raise EngineUnavailableError("Transcoding engine is not initialized")

        output_args: dict[str, Any] = {
            "c:v": profile.video_codec,
            "b:v": tier.video_bitrate,
            "maxrate": tier.video_bitrate,
            "bufsize": tier.video_bitrate * 2,
            **profile.extra_args,
        }
        if probe.width and probe.height:
            width, height = even_dimensions(probe.width, probe.height, tier.max_dimension)
            output_args["vf"] = f"scale={width}:{height}"

        if probe.has_audio and profile.audio_codec:
            output_args["c:a"] = profile.audio_codec
            output_args["b:a"] = tier.audio_bitrate
        else:
            output_args["an"] = None

        stream = (
            ffmpeg.input(input_path)
            .output(output_path, **output_args)
            .global_args("-hide_banner", "-nostats", "-progress", "pipe:1")
            .overwrite_output()
        )
        return stream.compile(cmd=self.ffmpeg_binary)

    async def _consume_progress(
        self, process, duration: float, on_progress: Optional[Callable[[float], None]]
    ) -> None:
        async for raw_line in process.stdout:
            percent = parse_progress_line(raw_line.decode("utf-8", errors="replace"), duration)
            if percent is not None and on_progress is not None:
                on_progress(percent)
        await process.wait()

    async def transcode(
        self,
        input_path: str,
        output_path: str,
        tier: VideoTier,
        probe: VideoProbe,
        on_progress: Optional[Callable[[float], None]] = None,
    ) -> TranscodeResult:
        """
        Transcode a file at one quality tier.

        A non-zero exit is reported in the result; only failures to run the
        process or timeouts raise.

        Raises:
            EngineUnavailableError: If the engine is not ready
            FFmpegError: If the process could not be started
            FFmpegTimeoutError: If the transcode exceeded its timeout
        """
        profile = await self.ensure_ready()
        command = self.build_transcode_command(input_path, output_path, tier, probe, profile)
        correlation_id = f"ffmpeg_{tier.name}_{int(time.time())}"

        async with self._loop_lock("_engine_lock"):
            with with_logging_context(correlation_id=correlation_id):
                logger.debug("Executing FFmpeg command", command=" ".join(command))
                start_time = time.time()

                try:
                    process = await asyncio.create_subprocess_exec(
                        *command, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE
                    )
                except OSError as e:
                    raise FFmpegError(f"Could not start ffmpeg: {e}") from e

                stderr_task = asyncio.ensure_future(process.stderr.read())
                try:
                    await asyncio.wait_for(
                        self._consume_progress(process, probe.duration, on_progress), timeout=self.timeout_seconds
                    )
                except asyncio.TimeoutError:
                    await self._kill(process)
                    stderr_task.cancel()
                    logger.error("Transcode timed out", tier=tier.name, timeout=self.timeout_seconds)
                    raise FFmpegTimeoutError(f"Transcode timed out after {self.timeout_seconds}s")
                except BaseException:
                    await self._kill(process)
                    stderr_task.cancel()
                    logger.warning("Transcode aborted", tier=tier.name)
                    raise

                stderr = (await stderr_task).decode("utf-8", errors="replace")
                execution_time = time.time() - start_time
                success = process.returncode == 0 and os.path.exists(output_path)

                error_message = None
                if process.returncode != 0:
                    error_message = f"FFmpeg failed with exit code {process.returncode}: {stderr[-500:]}"
                elif not success:
                    error_message = f"Output file was not created: {output_path}"

                result = TranscodeResult(
                    success=success,
                    output_path=output_path,
                    output_size=os.path.getsize(output_path) if success else 0,
                    execution_time=execution_time,
                    returncode=process.returncode,
                    stderr=stderr,
                    error_message=error_message,
                )

                if success:
                    logger.info(
                        "Transcode completed",
                        tier=tier.name,
                        output_size=result.output_size,
                        execution_time=round(execution_time, 3),
                    )
                else:
                    logger.warning("Transcode failed", tier=tier.name, error=error_message)

                return result


# Global wrapper instance; initialized lazily by the video compressor
ffmpeg_wrapper = FFmpegWrapper()
