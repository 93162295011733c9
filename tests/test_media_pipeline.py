"""State machine tests for the capture/encode pipeline using fake collaborators."""

from __future__ import annotations

import threading
import time
from pathlib import Path

import pytest
from PIL import Image

import service.media_pipeline as media_pipeline
from domain.timecard import (
    AUDIO_DECODE_CODE,
    CAPTURE_FAILED_CODE,
    EMPTY_TEXT_CODE,
    INVALID_TRANSITION_CODE,
    MISSING_IMAGE_CODE,
    AspectProfile,
    CaptureError,
    CaptureStatus,
    CaptureUnsupportedError,
    MissingInputError,
    OverlayStyle,
    SpeechSynthesisError,
    TimecardPipelineError,
    TranscodeError,
)
from service.capture import MP4_CONTAINER, WEBM_CONTAINER, AudioTrack, CaptureFacility
from service.compositor import FrameCompositor
from service.media_pipeline import GenerationRequest, MediaPipeline
from service.viewport import ViewportController

PROFILE = AspectProfile("test", 4, 3, (64, 48))
FRAME_BYTES = 64 * 48 * 4
AUDIO_SECONDS = 0.09

IDLE = CaptureStatus.IDLE
GENERATING = CaptureStatus.GENERATING_AUDIO
RECORDING = CaptureStatus.RECORDING
TRANSCODING = CaptureStatus.TRANSCODING
READY = CaptureStatus.READY


class FakeSpeech:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.calls: list[str] = []

    def synthesize(self, text_value: str) -> bytes:
        self.calls.append(text_value)
        if self.error is not None:
            raise self.error
        return b"ID3fake"


class FakeRecorder:
    def __init__(
        self,
        output: bytes,
        gate: threading.Event | None = None,
        frame_error: Exception | None = None,
    ) -> None:
        self.output = output
        self.gate = gate
        self.frame_error = frame_error
        self.started = threading.Event()
        self.chunks: list[bytes] = []
        self.frames: list[bytes] = []
        self.aborted = 0

    def write_frame(self, frame_bytes: bytes) -> None:
        self.started.set()
        if self.gate is not None:
            assert self.gate.wait(timeout=10.0)
        if self.frame_error is not None and self.frames:
            raise self.frame_error
        self.frames.append(frame_bytes)

    def stop(self) -> bytes:
        self.chunks.append(self.output)
        return self.output

    def abort(self) -> None:
        self.aborted += 1


class FakeCapture:
    def __init__(self, container=MP4_CONTAINER, gates=(), frame_error=None) -> None:
        self.container = container
        self.gates = list(gates)
        self.frame_error = frame_error
        self.recorders: list[FakeRecorder] = []
        self.opened_sizes: list[tuple[int, int]] = []

    def negotiate(self):
        if self.container is None:
            raise CaptureUnsupportedError("no supported capture container among: mp4, webm")
        return self.container

    def open(self, frame_size, audio_track, container) -> FakeRecorder:
        self.opened_sizes.append(frame_size)
        gate = self.gates.pop(0) if self.gates else None
        recorder = FakeRecorder(
            f"{container.name}-{len(self.recorders)}".encode(), gate, self.frame_error
        )
        self.recorders.append(recorder)
        return recorder


class FakeTranscoder:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.inputs: list[bytes] = []

    def transcode(self, input_blob: bytes) -> bytes:
        self.inputs.append(input_blob)
        if self.error is not None:
            raise self.error
        return b"mp4:" + input_blob


def fake_decoder(audio_bytes: bytes, workdir: Path) -> AudioTrack:
    audio_path = workdir / "speech.mp3"
    audio_path.write_bytes(audio_bytes)
    return AudioTrack(path=audio_path, duration_seconds=AUDIO_SECONDS)


def make_pipeline(
    speech: FakeSpeech | None = None,
    capture: FakeCapture | None = None,
    transcoder: FakeTranscoder | None = None,
    audio_decoder=fake_decoder,
    **kwargs,
) -> MediaPipeline:
    return MediaPipeline(
        compositor=FrameCompositor((32, 32)),
        speech_client=speech or FakeSpeech(),
        capture_facility=capture or FakeCapture(),
        transcode_engine=transcoder or FakeTranscoder(),
        audio_decoder=audio_decoder,
        **kwargs,
    )


def make_request(text_value: str = "Meanwhile\nback at the lab", with_image: bool = True):
    viewport = ViewportController((100, 100))
    if with_image:
        viewport.bind_image(Image.new("RGBA", (32, 24), (30, 90, 200, 255)))
    style = OverlayStyle(text=text_value, font_size_px=12)
    return GenerationRequest(style=style, profile=PROFILE, viewport=viewport)


@pytest.mark.parametrize(
    "request_kwargs,code",
    [
        ({"with_image": False}, MISSING_IMAGE_CODE),
        ({"text_value": " \n "}, EMPTY_TEXT_CODE),
    ],
)
def test_missing_input_is_rejected_before_any_work(request_kwargs, code) -> None:
    """Missing image or text fails immediately without leaving idle."""
    speech = FakeSpeech()
    pipeline = make_pipeline(speech=speech)

    with pytest.raises(MissingInputError) as excinfo:
        pipeline.generate(make_request(**request_kwargs))

    assert excinfo.value.code == code
    assert pipeline.history == [IDLE]
    assert speech.calls == []


def test_speech_failure_reverts_to_idle() -> None:
    """A speech error returns to idle without ever recording."""
    capture = FakeCapture()
    pipeline = make_pipeline(
        speech=FakeSpeech(SpeechSynthesisError("Invalid API key", status_code=401)),
        capture=capture,
    )

    with pytest.raises(SpeechSynthesisError, match="Invalid API key"):
        pipeline.generate(make_request())

    assert pipeline.history == [IDLE, GENERATING, IDLE]
    assert pipeline.status is IDLE
    assert pipeline.artifact is None
    assert capture.recorders == []
    assert not pipeline.session.workdir.exists()


def test_mp4_capture_skips_transcode() -> None:
    """A native MP4 capture goes straight to ready."""
    observed: list[CaptureStatus] = []
    capture = FakeCapture(MP4_CONTAINER)
    transcoder = FakeTranscoder()
    speech = FakeSpeech()
    pipeline = make_pipeline(
        speech=speech, capture=capture, transcoder=transcoder, status_listener=observed.append
    )

    artifact = pipeline.generate(make_request())
    try:
        assert pipeline.history == [IDLE, GENERATING, RECORDING, READY]
        assert observed == [GENERATING, RECORDING, READY]
        assert speech.calls == ["Meanwhile back at the lab"]
        assert transcoder.inputs == []
        assert artifact.data == b"mp4-0"
        assert artifact.mime_type == MP4_CONTAINER.mime_type
        assert artifact.path.read_bytes() == b"mp4-0"
        assert pipeline.artifact is artifact

        recorder = capture.recorders[0]
        assert capture.opened_sizes == [(64, 48)]
        assert len(recorder.frames) == 3
        assert all(len(frame) == FRAME_BYTES for frame in recorder.frames)
        assert recorder.aborted == 1
        assert not pipeline.session.workdir.exists()
    finally:
        pipeline.start_over()


def test_webm_capture_is_transcoded() -> None:
    """A non-target capture passes through transcoding."""
    transcoder = FakeTranscoder()
    pipeline = make_pipeline(capture=FakeCapture(WEBM_CONTAINER), transcoder=transcoder)

    artifact = pipeline.generate(make_request())
    try:
        assert pipeline.history == [IDLE, GENERATING, RECORDING, TRANSCODING, READY]
        assert transcoder.inputs == [b"webm-0"]
        assert artifact.data == b"mp4:webm-0"
        assert artifact.mime_type == "video/mp4"
    finally:
        pipeline.start_over()


def test_transcode_failure_reverts_to_idle() -> None:
    """A failed transcode publishes nothing and returns to idle."""
    pipeline = make_pipeline(
        capture=FakeCapture(WEBM_CONTAINER),
        transcoder=FakeTranscoder(TranscodeError("ffmpeg failed with exit code 1.")),
    )

    with pytest.raises(TranscodeError):
        pipeline.generate(make_request())

    assert pipeline.history == [IDLE, GENERATING, RECORDING, TRANSCODING, IDLE]
    assert pipeline.artifact is None


def test_unsupported_capture_reverts_to_idle() -> None:
    """No usable container is reported after entering recording."""
    pipeline = make_pipeline(capture=FakeCapture(None))

    with pytest.raises(CaptureUnsupportedError):
        pipeline.generate(make_request())

    assert pipeline.history == [IDLE, GENERATING, RECORDING, IDLE]
    assert not pipeline.session.workdir.exists()


def test_missing_ffmpeg_is_capture_unsupported(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    """A host without ffmpeg reports capture as unsupported."""
    monkeypatch.setenv("PATH", str(tmp_path / "empty-bin"))
    pipeline = make_pipeline(capture=CaptureFacility())

    with pytest.raises(CaptureUnsupportedError) as excinfo:
        pipeline.generate(make_request())

    assert excinfo.value.code == "render_timecard_video.capture.unsupported"
    assert isinstance(excinfo.value.__cause__, TimecardPipelineError)
    assert pipeline.history == [IDLE, GENERATING, RECORDING, IDLE]
    assert pipeline.artifact is None
    assert not pipeline.session.workdir.exists()


def test_recorder_failure_releases_session() -> None:
    """A recorder error mid-capture aborts the recorder once and reverts to idle."""
    capture = FakeCapture(
        frame_error=CaptureError(CAPTURE_FAILED_CODE, "recorder closed early")
    )
    transcoder = FakeTranscoder()
    pipeline = make_pipeline(capture=capture, transcoder=transcoder)

    with pytest.raises(CaptureError, match="recorder closed early"):
        pipeline.generate(make_request())

    recorder = capture.recorders[0]
    assert pipeline.history == [IDLE, GENERATING, RECORDING, IDLE]
    assert len(recorder.frames) == 1
    assert recorder.aborted == 1
    assert transcoder.inputs == []
    assert pipeline.artifact is None
    assert not pipeline.session.workdir.exists()


def test_audio_decode_failure_releases_session() -> None:
    """Undecodable speech audio never opens a recorder and reverts to idle."""

    def broken_decoder(audio_bytes: bytes, workdir: Path) -> AudioTrack:
        (workdir / "speech.mp3").write_bytes(audio_bytes)
        raise CaptureError(AUDIO_DECODE_CODE, "speech audio duration unavailable")

    capture = FakeCapture()
    pipeline = make_pipeline(capture=capture, audio_decoder=broken_decoder)

    with pytest.raises(CaptureError) as excinfo:
        pipeline.generate(make_request())

    assert excinfo.value.code == AUDIO_DECODE_CODE
    assert pipeline.history == [IDLE, GENERATING, IDLE]
    assert capture.recorders == []
    assert pipeline.artifact is None
    assert not pipeline.session.workdir.exists()


def test_start_over_releases_artifact() -> None:
    """Starting over deletes the temporary file and returns to idle."""
    pipeline = make_pipeline()
    artifact = pipeline.generate(make_request())
    artifact_path = artifact.path

    pipeline.start_over()

    assert pipeline.status is IDLE
    assert pipeline.artifact is None
    assert artifact.path is None
    assert not artifact_path.exists()
    pipeline.start_over()
    assert pipeline.status is IDLE


def test_validation_failure_keeps_previous_artifact() -> None:
    """A rejected request leaves the finished video available."""
    pipeline = make_pipeline()
    artifact = pipeline.generate(make_request())
    try:
        with pytest.raises(MissingInputError):
            pipeline.generate(make_request(text_value=""))
        assert pipeline.status is READY
        assert pipeline.artifact is artifact
        assert artifact.path.exists()
    finally:
        pipeline.start_over()


def test_new_run_supersedes_previous_artifact() -> None:
    """A second run releases the first artifact before starting."""
    pipeline = make_pipeline()
    first = pipeline.generate(make_request())
    first_path = first.path

    second = pipeline.generate(make_request())
    try:
        assert not first_path.exists()
        assert pipeline.artifact is second
        assert pipeline.history == [IDLE, GENERATING, RECORDING, READY]
    finally:
        pipeline.start_over()


def test_concurrent_requests_run_one_at_a_time(monkeypatch: pytest.MonkeyPatch) -> None:
    """A second request waits for the first and then supersedes it."""
    published_paths: list[Path] = []
    original_publish = media_pipeline.publish_artifact

    def recording_publish(data: bytes, mime_type: str):
        artifact = original_publish(data, mime_type)
        published_paths.append(artifact.path)
        return artifact

    monkeypatch.setattr(media_pipeline, "publish_artifact", recording_publish)
    gate = threading.Event()
    speech = FakeSpeech()
    capture = FakeCapture(gates=[gate])
    pipeline = make_pipeline(speech=speech, capture=capture)
    errors: list[BaseException] = []

    def run() -> None:
        try:
            pipeline.generate(make_request())
        except BaseException as exc:  # surfaced through the errors list
            errors.append(exc)

    first = threading.Thread(target=run)
    second = threading.Thread(target=run)
    first.start()
    while not capture.recorders:
        time.sleep(0.01)
    assert capture.recorders[0].started.wait(timeout=10.0)
    second.start()
    time.sleep(0.05)
    assert len(speech.calls) == 1

    gate.set()
    first.join(timeout=10.0)
    second.join(timeout=10.0)
    try:
        assert errors == []
        assert len(speech.calls) == 2
        assert len(published_paths) == 2
        assert not published_paths[0].exists()
        assert published_paths[1].exists()
        assert pipeline.status is READY
    finally:
        pipeline.start_over()


def test_realtime_pacing_waits_for_each_frame() -> None:
    """Paced capture sleeps until each frame's slot."""
    sleeps: list[float] = []
    pipeline = make_pipeline(
        pace_realtime=True, clock=lambda: 100.0, sleep=sleeps.append
    )

    pipeline.generate(make_request())
    try:
        assert sleeps == pytest.approx([1 / 30, 2 / 30])
    finally:
        pipeline.start_over()


def test_illegal_transition_is_rejected() -> None:
    """The state machine only allows the documented moves."""
    pipeline = make_pipeline()
    with pytest.raises(TimecardPipelineError) as excinfo:
        pipeline._transition(READY)
    assert excinfo.value.code == INVALID_TRANSITION_CODE
    assert pipeline.status is IDLE


def test_capture_uses_profile_resolution() -> None:
    """The compositor and viewport switch to the output resolution."""
    pipeline = make_pipeline()
    request = make_request()

    pipeline.generate(request)
    try:
        assert request.viewport.frame_size == (64, 48)
        assert pipeline.compositor.frame_size == (64, 48)
    finally:
        pipeline.start_over()


def test_surface_is_painted_before_recording() -> None:
    """The surface shows the first frame at capture size before any recorder opens."""
    capture = FakeCapture(None)
    pipeline = make_pipeline(capture=capture)

    with pytest.raises(CaptureUnsupportedError):
        pipeline.generate(make_request(text_value="x"))

    assert capture.recorders == []
    assert pipeline.compositor.frame_size == (64, 48)
    assert pipeline.compositor.surface.getpixel((0, 0)) == (30, 90, 200, 255)
