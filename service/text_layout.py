"""Overlay text layout: stacked lines and static wave placement."""

from __future__ import annotations

from dataclasses import dataclass
import math
from typing import Callable, Tuple

from domain.timecard import (
    DEFAULT_SHADOW_BLUR,
    DEFAULT_SHADOW_OFFSET,
    RGBA,
    FrameSize,
    OverlayStyle,
)

LINE_HEIGHT_RATIO = 1.1

MeasureText = Callable[[str], float]


@dataclass(frozen=True)
class GlyphPlacement:
    """Text painted centered on (x, y) and rotated clockwise by rotation radians."""

    text: str
    x: float
    y: float
    rotation: float = 0.0


@dataclass(frozen=True)
class ShadowStyle:
    """Drop shadow applied under every glyph."""

    color: RGBA
    offset: int
    blur: int


@dataclass(frozen=True)
class OverlayLayout:
    """Draw instructions for one overlay."""

    glyphs: Tuple[GlyphPlacement, ...]
    fill_color: RGBA
    shadow: ShadowStyle
    font_size: int

    @property
    def is_empty(self) -> bool:
        return not self.glyphs


def resolve_shadow(style: OverlayStyle) -> ShadowStyle:
    """Return the effective shadow; fixed offset and no blur unless customized."""
    if style.custom_shadow:
        return ShadowStyle(
            color=style.shadow_color,
            offset=style.shadow_offset_px,
            blur=style.shadow_blur_px,
        )
    return ShadowStyle(
        color=style.shadow_color,
        offset=DEFAULT_SHADOW_OFFSET,
        blur=DEFAULT_SHADOW_BLUR,
    )


def compute_line_positions(
    line_count: int, font_size: int, frame_height: int
) -> Tuple[float, ...]:
    """Compute middle-anchored y positions for a block centered on the frame."""
    line_height = font_size * LINE_HEIGHT_RATIO
    start_y = frame_height / 2.0 - (line_count - 1) * line_height / 2.0
    return tuple(start_y + index * line_height for index in range(line_count))


def wave_offset(center_x: float, amplitude: float, wave_length: float) -> float:
    return amplitude * math.sin(center_x / wave_length)


def wave_rotation(center_x: float, skew: float, wave_length: float) -> float:
    # Quarter-phase companion of the vertical wave.
    return skew * math.sin(center_x / wave_length + math.pi / 2.0)


def layout_wave_line(
    line: str,
    line_y: float,
    frame_width: int,
    style: OverlayStyle,
    measure_text: MeasureText,
) -> Tuple[GlyphPlacement, ...]:
    """Place each character of a line on the static sine wave."""
    cursor_x = frame_width / 2.0 - measure_text(line) / 2.0
    glyphs: list[GlyphPlacement] = []
    for character in line:
        advance = measure_text(character)
        center_x = cursor_x + advance / 2.0
        if not character.isspace():
            glyphs.append(
                GlyphPlacement(
                    text=character,
                    x=center_x,
                    y=line_y
                    + wave_offset(
                        center_x, style.wave_amplitude_px, style.wave_length_px
                    ),
                    rotation=wave_rotation(
                        center_x, style.wave_skew_radians, style.wave_length_px
                    ),
                )
            )
        cursor_x += advance
    return tuple(glyphs)


def layout_overlay(
    style: OverlayStyle, frame_size: FrameSize, measure_text: MeasureText
) -> OverlayLayout:
    """Lay out overlay text for a frame.

    Flat mode yields one placement per line, centered horizontally. Wave
    mode yields one placement per visible character. Whitespace-only text
    yields an empty layout.
    """
    frame_width, frame_height = frame_size
    glyphs: list[GlyphPlacement] = []
    if style.has_text:
        lines = style.lines
        positions = compute_line_positions(len(lines), style.font_size_px, frame_height)
        for line, line_y in zip(lines, positions):
            if style.wavy:
                glyphs.extend(
                    layout_wave_line(line, line_y, frame_width, style, measure_text)
                )
            elif line.strip():
                glyphs.append(GlyphPlacement(text=line, x=frame_width / 2.0, y=line_y))

    return OverlayLayout(
        glyphs=tuple(glyphs),
        fill_color=style.text_color,
        shadow=resolve_shadow(style),
        font_size=style.font_size_px,
    )
