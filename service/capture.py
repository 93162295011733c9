"""Real-time capture of rendered frames plus an audio track through ffmpeg."""

from __future__ import annotations

from dataclasses import dataclass
import logging
import math
import re
from pathlib import Path
import shutil
import subprocess
import threading
from typing import Sequence, Tuple

from domain.timecard import (
    AUDIO_DECODE_CODE,
    CAPTURE_FAILED_CODE,
    FFMPEG_EXEC_CODE,
    FFMPEG_NOT_FOUND_CODE,
    CaptureError,
    CaptureUnsupportedError,
    FrameSize,
    TimecardPipelineError,
)

LOGGER = logging.getLogger("render_timecard_video.capture")

CAPTURE_FPS = 30
STOP_TIMEOUT_SECONDS = 60.0
READ_CHUNK_SIZE = 64 * 1024
AUDIO_FILE_NAME = "speech.mp3"
ENCODER_FLAGS_PATTERN = re.compile(r"[VAS][A-Z.]{5}")


@dataclass(frozen=True)
class ContainerFormat:
    """A capture container with the encoders it needs."""

    name: str
    mime_type: str
    extension: str
    video_encoder: str
    audio_encoder: str
    muxer_args: Tuple[str, ...]
    is_target: bool


MP4_CONTAINER = ContainerFormat(
    name="mp4",
    mime_type="video/mp4;codecs=avc1.42E01E,mp4a.40.2",
    extension="mp4",
    video_encoder="libx264",
    audio_encoder="aac",
    muxer_args=(
        "-profile:v",
        "baseline",
        "-pix_fmt",
        "yuv420p",
        "-movflags",
        "frag_keyframe+empty_moov+default_base_moof",
        "-f",
        "mp4",
    ),
    is_target=True,
)

WEBM_CONTAINER = ContainerFormat(
    name="webm",
    mime_type="video/webm;codecs=vp9,opus",
    extension="webm",
    video_encoder="libvpx-vp9",
    audio_encoder="libopus",
    muxer_args=(
        "-deadline",
        "realtime",
        "-pix_fmt",
        "yuv420p",
        "-f",
        "webm",
    ),
    is_target=False,
)

CONTAINER_PREFERENCES = (MP4_CONTAINER, WEBM_CONTAINER)


@dataclass(frozen=True)
class AudioTrack:
    """Decoded speech ready for playback into a capture."""

    path: Path
    duration_seconds: float


def require_binary(name: str) -> str:
    """Return the path to an ffmpeg-suite binary or raise."""
    binary_path = shutil.which(name)
    if not binary_path:
        raise TimecardPipelineError(FFMPEG_NOT_FOUND_CODE, f"{name} not on PATH")
    return binary_path


def probe_duration_seconds(audio_path: Path) -> float:
    """Return the duration of an audio file via ffprobe."""
    ffprobe_path = require_binary("ffprobe")
    result = subprocess.run(
        [
            ffprobe_path,
            "-v",
            "error",
            "-show_entries",
            "format=duration",
            "-of",
            "default=noprint_wrappers=1:nokey=1",
            str(audio_path),
        ],
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        check=False,
    )
    if result.returncode != 0:
        raise CaptureError(
            AUDIO_DECODE_CODE, f"ffprobe failed for speech audio: {result.stderr.strip()}"
        )
    try:
        duration_seconds = float(result.stdout.strip())
    except ValueError as exc:
        raise CaptureError(AUDIO_DECODE_CODE, "speech audio duration unavailable") from exc
    if duration_seconds <= 0:
        raise CaptureError(AUDIO_DECODE_CODE, "speech audio duration invalid")
    return duration_seconds


def decode_audio(audio_bytes: bytes, workdir: Path) -> AudioTrack:
    """Store synthesized audio in the session directory and probe its length."""
    audio_path = workdir / AUDIO_FILE_NAME
    audio_path.write_bytes(audio_bytes)
    return AudioTrack(path=audio_path, duration_seconds=probe_duration_seconds(audio_path))


def list_ffmpeg_encoders() -> str:
    """Return ffmpeg's encoder listing."""
    ffmpeg_path = require_binary("ffmpeg")
    try:
        result = subprocess.run(
            [ffmpeg_path, "-hide_banner", "-encoders"],
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            check=True,
        )
    except (OSError, subprocess.CalledProcessError) as exc:
        raise TimecardPipelineError(
            FFMPEG_EXEC_CODE, "ffmpeg exists but could not list encoders"
        ) from exc
    return result.stdout


def parse_encoder_names(listing: str) -> frozenset[str]:
    """Return the encoder names from an ``ffmpeg -encoders`` listing."""
    names = set()
    for line in listing.splitlines():
        parts = line.split()
        if len(parts) >= 2 and ENCODER_FLAGS_PATTERN.fullmatch(parts[0]):
            names.add(parts[1])
    return frozenset(names)


def frame_count_for(duration_seconds: float, fps: int) -> int:
    """Number of frame ticks covering the audio duration."""
    return max(1, math.ceil(duration_seconds * fps))


class FfmpegRecorder:
    """Append-only capture of raw RGBA frames muxed with an audio track.

    ffmpeg writes the container to stdout; a reader thread appends each
    chunk so frame writes never block on a full pipe.
    """

    def __init__(
        self,
        command: Sequence[str],
        container: ContainerFormat,
        stop_timeout_seconds: float = STOP_TIMEOUT_SECONDS,
    ) -> None:
        self.command = list(command)
        self.container = container
        self.stop_timeout_seconds = stop_timeout_seconds
        self.chunks: list[bytes] = []
        self._process: subprocess.Popen[bytes] | None = None
        self._reader: threading.Thread | None = None

    def start(self) -> None:
        try:
            self._process = subprocess.Popen(
                self.command,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise TimecardPipelineError(FFMPEG_NOT_FOUND_CODE, "ffmpeg not found") from exc
        self._reader = threading.Thread(target=self._drain_output, daemon=True)
        self._reader.start()

    def _drain_output(self) -> None:
        stdout = self._process.stdout if self._process else None
        if stdout is None:
            return
        while True:
            chunk = stdout.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            self.chunks.append(chunk)

    def write_frame(self, frame_bytes: bytes) -> None:
        if self._process is None or self._process.stdin is None:
            raise CaptureError(CAPTURE_FAILED_CODE, "recorder is not running")
        try:
            self._process.stdin.write(frame_bytes)
        except (BrokenPipeError, ValueError) as exc:
            raise CaptureError(
                CAPTURE_FAILED_CODE, f"recorder closed early: {self._stderr_text()}"
            ) from exc

    def _stderr_text(self) -> str:
        if self._process is None or self._process.stderr is None:
            return ""
        if self._process.poll() is None:
            return ""
        return self._process.stderr.read().decode("utf-8", errors="replace").strip()

    def stop(self) -> bytes:
        """Signal end of stream and return the flushed container bytes."""
        process = self._process
        if process is None:
            raise CaptureError(CAPTURE_FAILED_CODE, "recorder was never started")
        if process.stdin and not process.stdin.closed:
            process.stdin.close()
        try:
            return_code = process.wait(timeout=self.stop_timeout_seconds)
        except subprocess.TimeoutExpired as exc:
            raise CaptureError(
                CAPTURE_FAILED_CODE,
                f"recorder did not finish within {self.stop_timeout_seconds:g}s",
            ) from exc
        if self._reader is not None:
            self._reader.join(timeout=self.stop_timeout_seconds)
        stderr_bytes = process.stderr.read() if process.stderr else b""
        if return_code != 0:
            stderr_text = stderr_bytes.decode("utf-8", errors="replace").strip()
            raise CaptureError(
                CAPTURE_FAILED_CODE,
                f"ffmpeg capture failed with exit code {return_code}. {stderr_text}",
            )
        return b"".join(self.chunks)

    def abort(self) -> None:
        """Release the recorder; safe to call after stop."""
        process = self._process
        if process is None:
            return
        self._process = None
        try:
            if process.stdin and not process.stdin.closed:
                process.stdin.close()
        except OSError as exc:
            LOGGER.warning("render_timecard_video.capture.cleanup: %s", exc)
        if process.poll() is None:
            process.kill()
            process.wait()
        for stream in (process.stdout, process.stderr):
            if stream is not None:
                stream.close()


class CaptureFacility:
    """Negotiates a capture container and opens recorders for it."""

    def __init__(
        self,
        preferences: Sequence[ContainerFormat] = CONTAINER_PREFERENCES,
        fps: int = CAPTURE_FPS,
    ) -> None:
        self.preferences = tuple(preferences)
        self.fps = fps
        self._encoders: frozenset[str] | None = None

    def is_type_supported(self, container: ContainerFormat) -> bool:
        if self._encoders is None:
            self._encoders = parse_encoder_names(list_ffmpeg_encoders())
        return (
            container.video_encoder in self._encoders
            and container.audio_encoder in self._encoders
        )

    def negotiate(self) -> ContainerFormat:
        """Return the first supported container in preference order.

        A host without a usable ffmpeg has no capture facility at all and is
        reported the same way as one lacking the encoders.
        """
        names = ", ".join(container.name for container in self.preferences)
        try:
            for container in self.preferences:
                if self.is_type_supported(container):
                    return container
        except TimecardPipelineError as exc:
            raise CaptureUnsupportedError(
                f"no capture facility for {names}: {exc}"
            ) from exc
        raise CaptureUnsupportedError(f"no supported capture container among: {names}")

    def build_command(
        self, frame_size: FrameSize, audio_track: AudioTrack, container: ContainerFormat
    ) -> list[str]:
        width, height = frame_size
        return [
            require_binary("ffmpeg"),
            "-hide_banner",
            "-loglevel",
            "error",
            "-f",
            "rawvideo",
            "-pix_fmt",
            "rgba",
            "-s",
            f"{width}x{height}",
            "-r",
            str(self.fps),
            "-i",
            "-",
            "-i",
            str(audio_track.path),
            "-map",
            "0:v:0",
            "-map",
            "1:a:0",
            "-c:v",
            container.video_encoder,
            "-c:a",
            container.audio_encoder,
            *container.muxer_args,
            "pipe:1",
        ]

    def open(
        self, frame_size: FrameSize, audio_track: AudioTrack, container: ContainerFormat
    ) -> FfmpegRecorder:
        """Start a recorder for the frame size and audio track."""
        recorder = FfmpegRecorder(
            self.build_command(frame_size, audio_track, container), container
        )
        recorder.start()
        return recorder
