"""Frame composition: background image or grid, then the styled overlay."""

from __future__ import annotations

import math
from typing import Tuple

from PIL import Image, ImageChops, ImageDraw, ImageFilter, ImageFont

from domain.timecard import (
    FONT_LOAD_CODE,
    RGBA,
    FrameSize,
    OverlayStyle,
    TimecardValidationError,
    ViewState,
)
from service.text_layout import GlyphPlacement, OverlayLayout, layout_overlay
from service.viewport import compute_image_transform, is_degenerate

BASE_COLOR = (0, 0, 0, 255)
GRID_COLOR = (31, 41, 55, 255)
GRID_CELL_SIZE = 40
GLYPH_SPRITE_RATIO = 2.0

FontHandle = ImageFont.FreeTypeFont | ImageFont.ImageFont


def load_overlay_font(
    font_file_path: str | None,
    font_size: int,
    cache: dict[Tuple[str | None, int], FontHandle],
) -> FontHandle:
    """Load the overlay font and cache by path and size."""
    cache_key = (font_file_path, font_size)
    cached_font = cache.get(cache_key)
    if cached_font is not None:
        return cached_font
    try:
        if font_file_path is None:
            font = ImageFont.load_default(size=font_size)
        else:
            font = ImageFont.truetype(font_file_path, size=font_size)
    except Exception as exc:
        raise TimecardValidationError(
            FONT_LOAD_CODE,
            f"failed to load font {font_file_path or '<default>'} at size {font_size}",
        ) from exc
    cache[cache_key] = font
    return font


def draw_placeholder_grid(surface: Image.Image) -> None:
    """Draw the neutral grid shown when no image is bound."""
    width, height = surface.size
    draw_context = ImageDraw.Draw(surface)
    for x_value in range(0, width, GRID_CELL_SIZE):
        draw_context.line([(x_value, 0), (x_value, height)], fill=GRID_COLOR, width=1)
    for y_value in range(0, height, GRID_CELL_SIZE):
        draw_context.line([(0, y_value), (width, y_value)], fill=GRID_COLOR, width=1)


def draw_source_image(
    surface: Image.Image, source_image: Image.Image, view_state: ViewState
) -> None:
    """Draw the image centered on the frame, offset and scaled by the view."""
    if source_image.mode != "RGBA":
        source_image = source_image.convert("RGBA")
    transform = compute_image_transform(surface.size, source_image.size, view_state)
    layer = source_image.transform(
        surface.size,
        Image.Transform.AFFINE,
        transform.affine_inverse(source_image.size),
        resample=Image.Resampling.BICUBIC,
    )
    surface.alpha_composite(layer)


def stamp_rotated_glyph(
    mask: Image.Image, glyph: GlyphPlacement, font: FontHandle, font_size: int
) -> None:
    """Rasterise one glyph rotated about its anchor into the coverage mask."""
    side = max(1, int(math.ceil(font_size * GLYPH_SPRITE_RATIO)))
    sprite = Image.new("L", (side, side), 0)
    ImageDraw.Draw(sprite).text(
        (side / 2.0, side / 2.0), glyph.text, font=font, fill=255, anchor="mm"
    )
    # Pillow rotates counter-clockwise; placements rotate clockwise in frame space.
    rotated = sprite.rotate(
        -math.degrees(glyph.rotation),
        resample=Image.Resampling.BICUBIC,
        center=(side / 2.0, side / 2.0),
    )
    left = int(round(glyph.x - side / 2.0))
    top = int(round(glyph.y - side / 2.0))
    box = (left, top, left + side, top + side)
    mask.paste(ImageChops.lighter(mask.crop(box), rotated), box)


def build_coverage_mask(
    size: FrameSize, layout: OverlayLayout, font: FontHandle
) -> Image.Image:
    """Build an 8-bit coverage mask of every glyph in the layout."""
    mask = Image.new("L", size, 0)
    draw_context = ImageDraw.Draw(mask)
    for glyph in layout.glyphs:
        if glyph.rotation == 0.0:
            draw_context.text(
                (glyph.x, glyph.y), glyph.text, font=font, fill=255, anchor="mm"
            )
        else:
            stamp_rotated_glyph(mask, glyph, font, layout.font_size)
    return mask


def colored_layer(size: FrameSize, color: RGBA, alpha_mask: Image.Image) -> Image.Image:
    """Fill a layer with a color, using the mask (scaled by color alpha) as alpha."""
    layer = Image.new("RGBA", size, color)
    if color[3] == 255:
        layer.putalpha(alpha_mask)
    else:
        layer.putalpha(ImageChops.multiply(alpha_mask, Image.new("L", size, color[3])))
    return layer


def paint_overlay(surface: Image.Image, layout: OverlayLayout, font: FontHandle) -> None:
    """Paint the shadow, then the fill-colored text."""
    if layout.is_empty:
        return
    mask = build_coverage_mask(surface.size, layout, font)

    shadow_mask = Image.new("L", surface.size, 0)
    shadow_mask.paste(mask, (layout.shadow.offset, layout.shadow.offset))
    if layout.shadow.blur > 0:
        shadow_mask = shadow_mask.filter(ImageFilter.GaussianBlur(layout.shadow.blur / 2.0))

    surface.alpha_composite(colored_layer(surface.size, layout.shadow.color, shadow_mask))
    surface.alpha_composite(colored_layer(surface.size, layout.fill_color, mask))


class FrameCompositor:
    """Owns the rendering surface and produces frames on demand."""

    def __init__(self, frame_size: FrameSize, font_file_path: str | None = None) -> None:
        self.font_file_path = font_file_path
        self._font_cache: dict[Tuple[str | None, int], FontHandle] = {}
        self.surface = Image.new("RGBA", frame_size, BASE_COLOR)

    @property
    def frame_size(self) -> FrameSize:
        return self.surface.size

    def resize(self, frame_size: FrameSize) -> None:
        if frame_size != self.surface.size:
            self.surface = Image.new("RGBA", frame_size, BASE_COLOR)

    def font_for(self, font_size: int) -> FontHandle:
        return load_overlay_font(self.font_file_path, font_size, self._font_cache)

    def render_frame(
        self,
        source_image: Image.Image | None,
        style: OverlayStyle,
        view_state: ViewState,
    ) -> Image.Image:
        """Render one frame into the surface and return it."""
        surface = self.surface
        surface.paste(BASE_COLOR, (0, 0, surface.size[0], surface.size[1]))

        if source_image is not None and not is_degenerate(source_image.size):
            draw_source_image(surface, source_image, view_state)
        else:
            draw_placeholder_grid(surface)

        if style.has_text:
            font = self.font_for(style.font_size_px)
            layout = layout_overlay(style, surface.size, font.getlength)
            paint_overlay(surface, layout, font)
        return surface

    def render_frame_bytes(
        self,
        source_image: Image.Image | None,
        style: OverlayStyle,
        view_state: ViewState,
    ) -> bytes:
        """Render one frame and return raw RGBA bytes."""
        return self.render_frame(source_image, style, view_state).tobytes()
