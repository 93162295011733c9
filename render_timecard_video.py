#!/usr/bin/env -S uv run
# /// script
# requires-python = ">=3.11"
# dependencies = [
#   "pillow>=10.1",
#   "requests>=2.31",
# ]
# ///
"""Render a still image with styled overlay text into a narrated MP4."""

from __future__ import annotations

import argparse
import logging
from dataclasses import dataclass
from pathlib import Path
import sys
from typing import Sequence, Tuple

from PIL import Image

from domain.timecard import (
    DEFAULT_ASPECT,
    DEFAULT_FONT_SIZE,
    DEFAULT_OVERLAY_TEXT,
    DEFAULT_SHADOW_BLUR,
    DEFAULT_SHADOW_OFFSET,
    DEFAULT_WAVE_AMPLITUDE,
    DEFAULT_WAVE_LENGTH,
    DEFAULT_WAVE_SKEW,
    INPUT_FILE_CODE,
    INVALID_CONFIG_CODE,
    SOURCE_IMAGE_CODE,
    AspectProfile,
    OverlayStyle,
    TimecardPipelineError,
    TimecardValidationError,
    parse_aspect_profile,
    parse_hex_color_to_rgba,
)
from service.capture import MP4_CONTAINER, WEBM_CONTAINER, CaptureFacility, ContainerFormat
from service.compositor import FrameCompositor
from service.media_pipeline import GenerationRequest, MediaPipeline, validate_request
from service.speech import SpeechClient, load_speech_config
from service.transcode import shared_transcode_engine
from service.viewport import ViewportController

LOGGER = logging.getLogger("render_timecard_video")

CAPTURE_PREFERENCES = {
    "mp4": (MP4_CONTAINER, WEBM_CONTAINER),
    "webm": (WEBM_CONTAINER, MP4_CONTAINER),
}


@dataclass(frozen=True)
class TimecardRequest:
    """Parsed CLI request and runtime options."""

    style: OverlayStyle
    profile: AspectProfile
    image_path: str | None
    font_file: str | None
    output_video_file: str
    preview_frame: str | None
    zoom_steps: int
    zoom_at: Tuple[float, float] | None
    pan: Tuple[float, float] | None
    capture_preferences: Tuple[ContainerFormat, ...]
    pace_realtime: bool
    voice_id: str | None
    model_id: str | None
    speech_timeout: float | None

    def __post_init__(self) -> None:
        if not self.output_video_file.lower().endswith(".mp4"):
            raise TimecardValidationError(
                INVALID_CONFIG_CODE, "output_video_file must end with .mp4"
            )
        if self.preview_frame is not None and not self.preview_frame.strip():
            raise TimecardValidationError(
                INVALID_CONFIG_CODE, "preview_frame must be non-empty"
            )


def configure_logging() -> None:
    """Configure logging for CLI output."""
    logging.basicConfig(level=logging.INFO, format="%(message)s")


def read_utf8_text_strict(file_path: str) -> str:
    """Read a UTF-8 file with strict decoding."""
    try:
        with open(file_path, "rb") as file_handle:
            file_bytes = file_handle.read()
    except FileNotFoundError as exc:
        raise TimecardValidationError(
            INPUT_FILE_CODE, f"input text file not found: {file_path}"
        ) from exc

    try:
        return file_bytes.decode("utf-8", errors="strict")
    except UnicodeDecodeError as exc:
        raise TimecardValidationError(
            INPUT_FILE_CODE,
            f"input text file is not valid UTF-8 at byte offset {exc.start}",
        ) from exc


def load_source_image(image_path: str) -> Image.Image:
    """Load a source image as RGBA."""
    try:
        image = Image.open(image_path)
        image.load()
    except FileNotFoundError as exc:
        raise TimecardValidationError(
            SOURCE_IMAGE_CODE, f"source image not found: {image_path}"
        ) from exc
    except Exception as exc:
        raise TimecardValidationError(
            SOURCE_IMAGE_CODE, f"failed to read source image: {image_path}"
        ) from exc
    if image.mode != "RGBA":
        image = image.convert("RGBA")
    return image


def parse_point(value: str | None, option_name: str) -> Tuple[float, float] | None:
    """Parse an "X,Y" option value."""
    if value is None:
        return None
    parts = value.split(",")
    if len(parts) != 2:
        raise TimecardValidationError(
            INVALID_CONFIG_CODE, f"{option_name} must look like X,Y: {value!r}"
        )
    try:
        return (float(parts[0]), float(parts[1]))
    except ValueError as exc:
        raise TimecardValidationError(
            INVALID_CONFIG_CODE, f"{option_name} must be numeric: {value!r}"
        ) from exc


def parse_args(argv: Sequence[str]) -> TimecardRequest:
    """Parse CLI arguments into a TimecardRequest."""
    parser = argparse.ArgumentParser(prog="render_timecard_video.py", add_help=True)
    text_group = parser.add_mutually_exclusive_group()
    text_group.add_argument("--text", default=None, help="overlay text; \\n starts a new line")
    text_group.add_argument("--input-text-file", default=None)
    parser.add_argument("--image", default=None)
    parser.add_argument("--aspect", default=DEFAULT_ASPECT, help="16:9, 9:16 or 4:3")
    parser.add_argument("--text-color", default="#EDE607")
    parser.add_argument("--shadow-color", default="#C723C2")
    parser.add_argument("--font-size", type=int, default=DEFAULT_FONT_SIZE)
    parser.add_argument("--font-file", default=None)
    parser.add_argument("--wavy", action="store_true")
    parser.add_argument("--wave-amplitude", type=float, default=DEFAULT_WAVE_AMPLITUDE)
    parser.add_argument("--wave-length", type=float, default=DEFAULT_WAVE_LENGTH)
    parser.add_argument("--wave-skew", type=float, default=DEFAULT_WAVE_SKEW)
    parser.add_argument("--custom-shadow", action="store_true")
    parser.add_argument("--shadow-offset", type=int, default=DEFAULT_SHADOW_OFFSET)
    parser.add_argument("--shadow-blur", type=int, default=DEFAULT_SHADOW_BLUR)
    parser.add_argument("--zoom", type=int, default=0, help="wheel steps; negative zooms out")
    parser.add_argument("--zoom-at", default=None, help="pointer X,Y in frame pixels")
    parser.add_argument("--pan", default=None, help="drag delta DX,DY in frame pixels")
    parser.add_argument("--preview-frame", default=None, help="write one PNG frame and exit")
    parser.add_argument("--output-video-file", default="timecard.mp4")
    parser.add_argument("--capture-format", choices=sorted(CAPTURE_PREFERENCES), default="mp4")
    parser.add_argument("--realtime", action="store_true", help="pace capture to wall clock")
    parser.add_argument("--voice-id", default=None)
    parser.add_argument("--model-id", default=None)
    parser.add_argument("--speech-timeout", type=float, default=None)

    parsed = parser.parse_args(argv)
    if parsed.input_text_file is not None:
        text_value = read_utf8_text_strict(parsed.input_text_file).replace("\r\n", "\n")
    elif parsed.text is not None:
        text_value = parsed.text.replace("\\n", "\n")
    else:
        text_value = DEFAULT_OVERLAY_TEXT

    style = OverlayStyle(
        text=text_value,
        text_color=parse_hex_color_to_rgba(parsed.text_color),
        shadow_color=parse_hex_color_to_rgba(parsed.shadow_color),
        font_size_px=parsed.font_size,
        wavy=parsed.wavy,
        wave_amplitude_px=parsed.wave_amplitude,
        wave_length_px=parsed.wave_length,
        wave_skew_radians=parsed.wave_skew,
        custom_shadow=parsed.custom_shadow,
        shadow_offset_px=parsed.shadow_offset,
        shadow_blur_px=parsed.shadow_blur,
    )

    return TimecardRequest(
        style=style,
        profile=parse_aspect_profile(parsed.aspect),
        image_path=parsed.image,
        font_file=parsed.font_file,
        output_video_file=parsed.output_video_file,
        preview_frame=parsed.preview_frame,
        zoom_steps=parsed.zoom,
        zoom_at=parse_point(parsed.zoom_at, "--zoom-at"),
        pan=parse_point(parsed.pan, "--pan"),
        capture_preferences=CAPTURE_PREFERENCES[parsed.capture_format],
        pace_realtime=parsed.realtime,
        voice_id=parsed.voice_id,
        model_id=parsed.model_id,
        speech_timeout=parsed.speech_timeout,
    )


def apply_view_gestures(viewport: ViewportController, request: TimecardRequest) -> None:
    """Replay the requested zoom and pan gestures on the viewport."""
    width, height = viewport.frame_size
    pointer_x, pointer_y = request.zoom_at or (width / 2.0, height / 2.0)
    direction = 1 if request.zoom_steps > 0 else -1
    for _ in range(abs(request.zoom_steps)):
        viewport.zoom_at(pointer_x, pointer_y, direction)
    if request.pan is not None:
        viewport.begin_drag(0.0, 0.0)
        viewport.drag_to(*request.pan)
        viewport.end_drag()


def write_preview_frame(
    compositor: FrameCompositor,
    viewport: ViewportController,
    request: TimecardRequest,
) -> Path:
    """Render a single frame to a PNG file."""
    frame = compositor.render_frame(viewport.image, request.style, viewport.state.snapshot())
    preview_path = Path(request.preview_frame)
    preview_path.parent.mkdir(parents=True, exist_ok=True)
    frame.save(preview_path, format="PNG")
    return preview_path


def generate_video(
    compositor: FrameCompositor,
    viewport: ViewportController,
    request: TimecardRequest,
) -> Path:
    """Run the media pipeline and save the final MP4."""
    generation_request = GenerationRequest(
        style=request.style, profile=request.profile, viewport=viewport
    )
    validate_request(generation_request)
    speech_config = load_speech_config(
        voice_id=request.voice_id,
        model_id=request.model_id,
        timeout_seconds=request.speech_timeout,
    )
    engine = shared_transcode_engine()
    pipeline = MediaPipeline(
        compositor=compositor,
        speech_client=SpeechClient(speech_config),
        capture_facility=CaptureFacility(request.capture_preferences),
        transcode_engine=engine,
        pace_realtime=request.pace_realtime,
    )
    try:
        artifact = pipeline.generate(generation_request)
        output_path = artifact.save(Path(request.output_video_file))
        pipeline.start_over()
        return output_path
    finally:
        engine.close()


def main() -> int:
    """CLI entrypoint."""
    configure_logging()

    try:
        request = parse_args(sys.argv[1:])
        source_image = load_source_image(request.image_path) if request.image_path else None
        viewport = ViewportController(request.profile.resolution)
        viewport.bind_image(source_image)
        apply_view_gestures(viewport, request)
        compositor = FrameCompositor(request.profile.resolution, request.font_file)

        if request.preview_frame is not None:
            preview_path = write_preview_frame(compositor, viewport, request)
            LOGGER.info("render_timecard_video.output.preview_written: %s", preview_path)
            return 0

        output_path = generate_video(compositor, viewport, request)
        LOGGER.info("render_timecard_video.output.video_written: %s", output_path)
        return 0
    except TimecardValidationError as exc:
        LOGGER.error("%s: %s", exc.code, str(exc).strip())
        return 1
    except TimecardPipelineError as exc:
        LOGGER.error("%s: %s", exc.code, str(exc).strip())
        return 1
    except Exception as exc:
        LOGGER.error("render_timecard_video.unhandled_error: %s", str(exc).strip())
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
