"""Domain types and parsing for render_timecard_video."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import re
from typing import Tuple

INVALID_COLOR_CODE = "render_timecard_video.input.invalid_color"
INVALID_CONFIG_CODE = "render_timecard_video.input.invalid_config"
INVALID_ASPECT_CODE = "render_timecard_video.input.invalid_aspect"
INVALID_STYLE_CODE = "render_timecard_video.input.invalid_style"
MISSING_IMAGE_CODE = "render_timecard_video.input.missing_image"
EMPTY_TEXT_CODE = "render_timecard_video.input.empty_text"
SOURCE_IMAGE_CODE = "render_timecard_video.input.source_image"
INPUT_FILE_CODE = "render_timecard_video.input.file_error"
FONT_LOAD_CODE = "render_timecard_video.input.font_unloadable"
SPEECH_CONFIG_CODE = "render_timecard_video.input.speech_config"

SPEECH_FAILED_CODE = "render_timecard_video.speech.failed"
CAPTURE_UNSUPPORTED_CODE = "render_timecard_video.capture.unsupported"
CAPTURE_FAILED_CODE = "render_timecard_video.capture.failed"
AUDIO_DECODE_CODE = "render_timecard_video.capture.audio_decode"
TRANSCODE_FAILED_CODE = "render_timecard_video.transcode.failed"
INVALID_TRANSITION_CODE = "render_timecard_video.pipeline.invalid_transition"
FFMPEG_NOT_FOUND_CODE = "render_timecard_video.ffmpeg.not_found"
FFMPEG_EXEC_CODE = "render_timecard_video.ffmpeg.exec_error"

HEX_COLOR_PATTERN = re.compile(r"#([0-9a-fA-F]{6})")

DEFAULT_OVERLAY_TEXT = "A few moments\n later..."
DEFAULT_TEXT_COLOR = (237, 230, 7, 255)
DEFAULT_SHADOW_COLOR = (199, 35, 194, 255)
DEFAULT_FONT_SIZE = 130
DEFAULT_WAVE_AMPLITUDE = 18.0
DEFAULT_WAVE_LENGTH = 180.0
DEFAULT_WAVE_SKEW = 0.15
DEFAULT_SHADOW_OFFSET = 7
DEFAULT_SHADOW_BLUR = 0
DEFAULT_ASPECT = "9:16"
MIN_VIEW_SCALE = 1.0
MAX_VIEW_SCALE = 8.0

RGBA = Tuple[int, int, int, int]
FrameSize = Tuple[int, int]


class TimecardValidationError(ValueError):
    """Validation error with a stable error code."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code


class MissingInputError(TimecardValidationError):
    """Generation requested without a source image or overlay text."""


class TimecardPipelineError(RuntimeError):
    """Runtime error with a stable error code."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code


class SpeechSynthesisError(TimecardPipelineError):
    """The speech service rejected the request or could not be reached."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(SPEECH_FAILED_CODE, message)
        self.status_code = status_code


class CaptureUnsupportedError(TimecardPipelineError):
    """No container in the preference list can be captured on this host."""

    def __init__(self, message: str) -> None:
        super().__init__(CAPTURE_UNSUPPORTED_CODE, message)


class CaptureError(TimecardPipelineError):
    """The capture session failed while recording."""


class TranscodeError(TimecardPipelineError):
    """The software transcoder failed."""

    def __init__(self, message: str) -> None:
        super().__init__(TRANSCODE_FAILED_CODE, message)


class CaptureStatus(str, Enum):
    """Media pipeline states reported to callers."""

    IDLE = "idle"
    GENERATING_AUDIO = "generating-audio"
    RECORDING = "recording"
    TRANSCODING = "transcoding"
    READY = "ready"


@dataclass(frozen=True)
class AspectProfile:
    """Output frame ratio and its fixed capture resolution."""

    name: str
    width_ratio: int
    height_ratio: int
    resolution: FrameSize

    def __post_init__(self) -> None:
        if self.width_ratio <= 0 or self.height_ratio <= 0:
            raise TimecardValidationError(
                INVALID_ASPECT_CODE, "aspect ratio terms must be positive"
            )
        width, height = self.resolution
        if width <= 0 or height <= 0:
            raise TimecardValidationError(
                INVALID_ASPECT_CODE, "aspect resolution must be positive"
            )


ASPECT_PROFILES = {
    "16:9": AspectProfile("16:9", 16, 9, (1920, 1080)),
    "9:16": AspectProfile("9:16", 9, 16, (1080, 1920)),
    "4:3": AspectProfile("4:3", 4, 3, (1600, 1200)),
}


@dataclass(frozen=True)
class OverlayStyle:
    """Overlay text and its styling; read-only for renderers."""

    text: str = DEFAULT_OVERLAY_TEXT
    text_color: RGBA = DEFAULT_TEXT_COLOR
    shadow_color: RGBA = DEFAULT_SHADOW_COLOR
    font_size_px: int = DEFAULT_FONT_SIZE
    wavy: bool = False
    wave_amplitude_px: float = DEFAULT_WAVE_AMPLITUDE
    wave_length_px: float = DEFAULT_WAVE_LENGTH
    wave_skew_radians: float = DEFAULT_WAVE_SKEW
    custom_shadow: bool = False
    shadow_offset_px: int = DEFAULT_SHADOW_OFFSET
    shadow_blur_px: int = DEFAULT_SHADOW_BLUR

    def __post_init__(self) -> None:
        if self.font_size_px <= 0:
            raise TimecardValidationError(
                INVALID_STYLE_CODE, "font_size_px must be positive"
            )
        if self.wave_length_px <= 0:
            raise TimecardValidationError(
                INVALID_STYLE_CODE, "wave_length_px must be positive"
            )
        if self.shadow_blur_px < 0:
            raise TimecardValidationError(
                INVALID_STYLE_CODE, "shadow_blur_px must be non-negative"
            )
        for color in (self.text_color, self.shadow_color):
            if len(color) != 4 or any(channel < 0 or channel > 255 for channel in color):
                raise TimecardValidationError(
                    INVALID_COLOR_CODE, f"color out of range: {color!r}"
                )

    @property
    def lines(self) -> Tuple[str, ...]:
        """Text split on explicit line breaks."""
        return tuple(self.text.split("\n"))

    @property
    def has_text(self) -> bool:
        return bool(self.text.strip())

    @property
    def spoken_text(self) -> str:
        """Text collapsed to a single line for speech synthesis."""
        return self.text.replace("\n", " ")


@dataclass
class ViewState:
    """Mutable pan/zoom state owned by a ViewportController."""

    scale: float = 1.0
    min_scale: float = MIN_VIEW_SCALE
    max_scale: float = MAX_VIEW_SCALE
    offset_x: float = 0.0
    offset_y: float = 0.0
    dragging: bool = False
    last_pointer_x: float = 0.0
    last_pointer_y: float = 0.0

    def snapshot(self) -> "ViewState":
        """Return an independent copy for rendering."""
        return ViewState(
            scale=self.scale,
            min_scale=self.min_scale,
            max_scale=self.max_scale,
            offset_x=self.offset_x,
            offset_y=self.offset_y,
            dragging=self.dragging,
            last_pointer_x=self.last_pointer_x,
            last_pointer_y=self.last_pointer_y,
        )


def parse_hex_color_to_rgba(color_value: str) -> RGBA:
    """Parse a #RRGGBB token into an opaque RGBA tuple."""
    normalized = color_value.strip()
    match_value = HEX_COLOR_PATTERN.fullmatch(normalized)
    if not match_value:
        raise TimecardValidationError(
            INVALID_COLOR_CODE,
            f"invalid color value: {color_value!r}",
        )

    rgb_hex = match_value.group(1)
    red_value = int(rgb_hex[0:2], 16)
    green_value = int(rgb_hex[2:4], 16)
    blue_value = int(rgb_hex[4:6], 16)
    return (red_value, green_value, blue_value, 255)


def parse_aspect_profile(value: str) -> AspectProfile:
    """Look up an aspect profile by its ratio name."""
    profile = ASPECT_PROFILES.get(value.strip())
    if profile is None:
        choices = ", ".join(sorted(ASPECT_PROFILES))
        raise TimecardValidationError(
            INVALID_ASPECT_CODE, f"invalid aspect ratio {value!r}; expected one of {choices}"
        )
    return profile
