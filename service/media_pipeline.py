"""Capture/encode state machine: speech, real-time capture, optional transcode."""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import os
from pathlib import Path
import shutil
import tempfile
import threading
import time
from typing import Callable, Sequence

from domain.timecard import (
    EMPTY_TEXT_CODE,
    INVALID_TRANSITION_CODE,
    MISSING_IMAGE_CODE,
    AspectProfile,
    CaptureStatus,
    MissingInputError,
    OverlayStyle,
    TimecardPipelineError,
)
from service.capture import (
    CAPTURE_FPS,
    AudioTrack,
    ContainerFormat,
    decode_audio,
    frame_count_for,
)
from service.compositor import FrameCompositor
from service.transcode import OUTPUT_MIME_TYPE
from service.viewport import ViewportController

LOGGER = logging.getLogger("render_timecard_video.pipeline")

ARTIFACT_SUFFIX = ".mp4"

ALLOWED_TRANSITIONS = {
    CaptureStatus.IDLE: frozenset({CaptureStatus.GENERATING_AUDIO}),
    CaptureStatus.GENERATING_AUDIO: frozenset({CaptureStatus.RECORDING}),
    CaptureStatus.RECORDING: frozenset({CaptureStatus.TRANSCODING, CaptureStatus.READY}),
    CaptureStatus.TRANSCODING: frozenset({CaptureStatus.READY}),
    CaptureStatus.READY: frozenset({CaptureStatus.IDLE}),
}

AudioDecoder = Callable[[bytes, Path], AudioTrack]
StatusListener = Callable[[CaptureStatus], None]


@dataclass(frozen=True)
class GenerationRequest:
    """Everything one run needs: style, output profile and the bound viewport."""

    style: OverlayStyle
    profile: AspectProfile
    viewport: ViewportController


@dataclass
class VideoArtifact:
    """Final video; ``path`` is the temporary file held for download or preview."""

    data: bytes
    mime_type: str
    path: Path | None = None

    def save(self, destination: Path) -> Path:
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_bytes(self.data)
        return destination

    def release(self) -> None:
        """Drop the temporary file; failures are logged, not raised."""
        path = self.path
        self.path = None
        if path is None:
            return
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            LOGGER.warning("render_timecard_video.pipeline.cleanup: %s", exc)


@dataclass
class CaptureSession:
    """Transient resources of one generation run."""

    workdir: Path
    audio_track: AudioTrack | None = None
    recorder: object | None = None
    container: ContainerFormat | None = None
    final_artifact: VideoArtifact | None = None
    released: bool = field(default=False)

    @property
    def accumulated_chunks(self) -> Sequence[bytes]:
        return getattr(self.recorder, "chunks", ())

    def release(self) -> None:
        """Release the recorder and working directory exactly once."""
        if self.released:
            return
        self.released = True
        recorder = self.recorder
        self.recorder = None
        if recorder is not None:
            recorder.abort()
        self.audio_track = None
        shutil.rmtree(self.workdir, ignore_errors=True)


def validate_request(request: GenerationRequest) -> None:
    """Reject a request without a bound image or visible text."""
    if request.viewport.image is None:
        raise MissingInputError(MISSING_IMAGE_CODE, "upload an image or select a preset")
    if not request.style.has_text:
        raise MissingInputError(EMPTY_TEXT_CODE, "enter some text for the overlay")


def publish_artifact(data: bytes, mime_type: str) -> VideoArtifact:
    """Write the final video to a temporary file and wrap it."""
    file_descriptor, file_name = tempfile.mkstemp(prefix="timecard-", suffix=ARTIFACT_SUFFIX)
    with os.fdopen(file_descriptor, "wb") as file_handle:
        file_handle.write(data)
    return VideoArtifact(data=data, mime_type=mime_type, path=Path(file_name))


class MediaPipeline:
    """Runs generation requests one at a time.

    ``generate`` blocks through speech synthesis, the capture window and
    the optional transcode. Any failure reverts the status to idle,
    releases the run's resources and propagates. Concurrent requests are
    serialised; each new run first releases the previous artifact.
    """

    def __init__(
        self,
        compositor: FrameCompositor,
        speech_client,
        capture_facility,
        transcode_engine,
        audio_decoder: AudioDecoder = decode_audio,
        fps: int = CAPTURE_FPS,
        pace_realtime: bool = False,
        status_listener: StatusListener | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.compositor = compositor
        self.speech_client = speech_client
        self.capture_facility = capture_facility
        self.transcode_engine = transcode_engine
        self.audio_decoder = audio_decoder
        self.fps = fps
        self.pace_realtime = pace_realtime
        self.status_listener = status_listener
        self.clock = clock
        self.sleep = sleep
        self.history: list[CaptureStatus] = [CaptureStatus.IDLE]
        self.session: CaptureSession | None = None
        self._status = CaptureStatus.IDLE
        self._artifact: VideoArtifact | None = None
        self._run_lock = threading.Lock()

    @property
    def status(self) -> CaptureStatus:
        return self._status

    @property
    def artifact(self) -> VideoArtifact | None:
        return self._artifact

    def _set_status(self, status: CaptureStatus) -> None:
        self._status = status
        self.history.append(status)
        LOGGER.info("render_timecard_video.pipeline.status: %s", status.value)
        if self.status_listener is not None:
            self.status_listener(status)

    def _transition(self, status: CaptureStatus) -> None:
        if status not in ALLOWED_TRANSITIONS[self._status]:
            raise TimecardPipelineError(
                INVALID_TRANSITION_CODE,
                f"cannot move from {self._status.value} to {status.value}",
            )
        self._set_status(status)

    def _revert_to_idle(self) -> None:
        if self._status is not CaptureStatus.IDLE:
            self._set_status(CaptureStatus.IDLE)

    def _release_artifact(self) -> None:
        artifact = self._artifact
        self._artifact = None
        if artifact is not None:
            artifact.release()
        if self._status is CaptureStatus.READY:
            self._transition(CaptureStatus.IDLE)

    def start_over(self) -> None:
        """Release the finished artifact and return to idle."""
        with self._run_lock:
            self._release_artifact()

    def _render_tick(self, request: GenerationRequest) -> bytes:
        viewport = request.viewport
        return self.compositor.render_frame_bytes(
            viewport.image, request.style, viewport.state.snapshot()
        )

    def _record(self, session: CaptureSession, request: GenerationRequest) -> bytes:
        total_frames = frame_count_for(session.audio_track.duration_seconds, self.fps)
        LOGGER.info(
            "render_timecard_video.pipeline.capture: %s, %d frames at %d fps",
            session.container.name,
            total_frames,
            self.fps,
        )
        started_at = self.clock()
        for frame_index in range(total_frames):
            if self.pace_realtime:
                delay = started_at + frame_index / self.fps - self.clock()
                if delay > 0:
                    self.sleep(delay)
            session.recorder.write_frame(self._render_tick(request))
        return session.recorder.stop()

    def generate(self, request: GenerationRequest) -> VideoArtifact:
        """Run one capture session and return the final MP4 artifact."""
        with self._run_lock:
            validate_request(request)
            self._release_artifact()
            self.history = [self._status]
            session = CaptureSession(workdir=Path(tempfile.mkdtemp(prefix="timecard-session-")))
            self.session = session
            try:
                return self._run(session, request)
            finally:
                session.release()
                if self._status is not CaptureStatus.READY:
                    self._revert_to_idle()

    def _run(self, session: CaptureSession, request: GenerationRequest) -> VideoArtifact:
        self._transition(CaptureStatus.GENERATING_AUDIO)
        audio_bytes = self.speech_client.synthesize(request.style.spoken_text)
        session.audio_track = self.audio_decoder(audio_bytes, session.workdir)

        resolution = request.profile.resolution
        self.compositor.resize(resolution)
        request.viewport.select_frame(resolution)
        # Paint the surface once at the capture resolution before recording starts.
        self.compositor.render_frame(
            request.viewport.image, request.style, request.viewport.state.snapshot()
        )

        self._transition(CaptureStatus.RECORDING)
        session.container = self.capture_facility.negotiate()
        session.recorder = self.capture_facility.open(
            resolution, session.audio_track, session.container
        )
        captured = self._record(session, request)

        if session.container.is_target:
            artifact = publish_artifact(captured, session.container.mime_type)
        else:
            self._transition(CaptureStatus.TRANSCODING)
            artifact = publish_artifact(
                self.transcode_engine.transcode(captured), OUTPUT_MIME_TYPE
            )

        session.final_artifact = artifact
        self._artifact = artifact
        self._transition(CaptureStatus.READY)
        return artifact
