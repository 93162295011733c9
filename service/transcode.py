"""Lazily initialised, reusable ffmpeg transcoder producing MP4."""

from __future__ import annotations

import functools
import logging
from pathlib import Path
import shutil
import subprocess
import tempfile
import threading

from domain.timecard import FFMPEG_EXEC_CODE, TimecardPipelineError, TranscodeError
from service.capture import require_binary

LOGGER = logging.getLogger("render_timecard_video.transcode")

INPUT_FILE_NAME = "in.webm"
OUTPUT_FILE_NAME = "out.mp4"
OUTPUT_MIME_TYPE = "video/mp4"
TRANSCODE_TIMEOUT_SECONDS = 300.0
H264_CODEC = "libx264"
H264_PRESET = "veryfast"
H264_PIXEL_FORMAT = "yuv420p"
OUTPUT_FPS = "30"
AUDIO_CODEC = "aac"
AUDIO_BITRATE = "192k"


def build_transcode_args(input_name: str, output_name: str) -> list[str]:
    """Fixed recipe: H.264 at 30 fps, AAC 192k, faststart MP4."""
    return [
        "-i",
        input_name,
        "-c:v",
        H264_CODEC,
        "-preset",
        H264_PRESET,
        "-pix_fmt",
        H264_PIXEL_FORMAT,
        "-r",
        OUTPUT_FPS,
        "-c:a",
        AUDIO_CODEC,
        "-b:a",
        AUDIO_BITRATE,
        "-movflags",
        "+faststart",
        output_name,
    ]


class EngineHandle:
    """Initialised transcoder: a verified ffmpeg binary and a private directory."""

    def __init__(self, ffmpeg_path: str, workdir: Path) -> None:
        self.ffmpeg_path = ffmpeg_path
        self.workdir = workdir

    def write_file(self, name: str, data: bytes) -> None:
        (self.workdir / name).write_bytes(data)

    def read_file(self, name: str) -> bytes:
        return (self.workdir / name).read_bytes()

    def delete_file(self, name: str) -> None:
        (self.workdir / name).unlink(missing_ok=True)

    def exec(self, args: list[str], timeout_seconds: float) -> subprocess.CompletedProcess[bytes]:
        return subprocess.run(
            [self.ffmpeg_path, "-hide_banner", "-loglevel", "error", "-y", *args],
            cwd=self.workdir,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
            timeout=timeout_seconds,
            check=False,
        )


def initialize_engine() -> EngineHandle:
    """Verify ffmpeg runs and create the engine's working directory."""
    ffmpeg_path = require_binary("ffmpeg")
    try:
        subprocess.run(
            [ffmpeg_path, "-version"],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            check=True,
        )
    except (OSError, subprocess.CalledProcessError) as exc:
        raise TimecardPipelineError(
            FFMPEG_EXEC_CODE, "ffmpeg exists but could not be executed"
        ) from exc
    workdir = Path(tempfile.mkdtemp(prefix="timecard-transcode-"))
    return EngineHandle(ffmpeg_path, workdir)


class TranscodeEngine:
    """Converts a captured container into MP4; initialised on first use."""

    def __init__(self, timeout_seconds: float = TRANSCODE_TIMEOUT_SECONDS) -> None:
        self.timeout_seconds = timeout_seconds
        self._handle: EngineHandle | None = None
        self._lock = threading.Lock()

    @property
    def is_initialized(self) -> bool:
        return self._handle is not None

    def ensure(self) -> EngineHandle:
        with self._lock:
            if self._handle is None:
                LOGGER.info("render_timecard_video.transcode.init: loading ffmpeg")
                self._handle = initialize_engine()
            return self._handle

    def transcode(self, input_blob: bytes) -> bytes:
        """Return MP4 bytes for a captured blob or raise TranscodeError."""
        try:
            handle = self.ensure()
        except TimecardPipelineError as exc:
            raise TranscodeError(str(exc)) from exc

        try:
            handle.write_file(INPUT_FILE_NAME, input_blob)
            result = handle.exec(
                build_transcode_args(INPUT_FILE_NAME, OUTPUT_FILE_NAME),
                self.timeout_seconds,
            )
            if result.returncode != 0:
                stderr_text = result.stderr.decode("utf-8", errors="replace").strip()
                raise TranscodeError(
                    f"ffmpeg failed with exit code {result.returncode}. {stderr_text}"
                )
            return handle.read_file(OUTPUT_FILE_NAME)
        except subprocess.TimeoutExpired as exc:
            raise TranscodeError(
                f"transcode did not finish within {self.timeout_seconds:g}s"
            ) from exc
        except OSError as exc:
            raise TranscodeError(f"transcode I/O failed: {exc}") from exc
        finally:
            for name in (INPUT_FILE_NAME, OUTPUT_FILE_NAME):
                try:
                    handle.delete_file(name)
                except OSError as exc:
                    LOGGER.warning("render_timecard_video.transcode.cleanup: %s", exc)

    def close(self) -> None:
        with self._lock:
            handle = self._handle
            self._handle = None
        if handle is not None:
            shutil.rmtree(handle.workdir, ignore_errors=True)


@functools.lru_cache(maxsize=None)
def shared_transcode_engine() -> TranscodeEngine:
    """Process-wide engine reused across pipeline runs."""
    return TranscodeEngine()
