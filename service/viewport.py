"""Pan/zoom viewport mapping a source image onto a fixed output frame."""

from __future__ import annotations

from dataclasses import dataclass
import math
from typing import Tuple

from PIL import Image

from domain.timecard import FrameSize, ViewState

ZOOM_STEP = 0.08


@dataclass(frozen=True)
class ImageTransform:
    """Placement of the source image inside the frame."""

    draw_scale: float
    center_x: float
    center_y: float

    def affine_inverse(self, image_size: FrameSize) -> Tuple[float, ...]:
        """Return Pillow AFFINE data mapping frame pixels back to image pixels."""
        image_width, image_height = image_size
        inverse = 1.0 / self.draw_scale
        return (
            inverse,
            0.0,
            image_width / 2.0 - self.center_x * inverse,
            0.0,
            inverse,
            image_height / 2.0 - self.center_y * inverse,
        )


def is_degenerate(size: FrameSize | None) -> bool:
    """Return True for a missing or zero-sized extent."""
    return size is None or size[0] <= 0 or size[1] <= 0


def cover_scale(frame_size: FrameSize, image_size: FrameSize) -> float:
    """Scale making the image fully cover the frame, cropping overflow."""
    frame_width, frame_height = frame_size
    image_width, image_height = image_size
    return max(frame_width / image_width, frame_height / image_height)


def clamp(value: float, min_value: float, max_value: float) -> float:
    """Clamp a float between min and max."""
    return max(min_value, min(max_value, value))


def clamp_view(state: ViewState, frame_size: FrameSize, image_size: FrameSize) -> None:
    """Clamp scale to its bounds and offsets so the image leaves no gaps."""
    state.scale = clamp(state.scale, state.min_scale, state.max_scale)
    draw_scale = cover_scale(frame_size, image_size) * state.scale
    max_x = max(0.0, (image_size[0] * draw_scale - frame_size[0]) / 2.0)
    max_y = max(0.0, (image_size[1] * draw_scale - frame_size[1]) / 2.0)
    state.offset_x = clamp(state.offset_x, -max_x, max_x)
    state.offset_y = clamp(state.offset_y, -max_y, max_y)


def compute_image_transform(
    frame_size: FrameSize, image_size: FrameSize, state: ViewState
) -> ImageTransform:
    """Compute the frame-space transform for a view state."""
    return ImageTransform(
        draw_scale=cover_scale(frame_size, image_size) * state.scale,
        center_x=frame_size[0] / 2.0 + state.offset_x,
        center_y=frame_size[1] / 2.0 + state.offset_y,
    )


class ViewportController:
    """Owns the view state for one source image against one output frame.

    All mutation goes through ``pan``, ``zoom_at``, ``reset`` and
    ``fit_cover``. Callers redraw after each call. Operations are no-ops
    while no image is bound or either extent is zero-sized.
    """

    def __init__(self, frame_size: FrameSize, state: ViewState | None = None) -> None:
        self.frame_size = frame_size
        self.state = state if state is not None else ViewState()
        self.image: Image.Image | None = None

    @property
    def image_size(self) -> FrameSize | None:
        if self.image is None:
            return None
        return self.image.size

    def _is_active(self) -> bool:
        return not is_degenerate(self.frame_size) and not is_degenerate(self.image_size)

    def bind_image(self, image: Image.Image | None) -> None:
        """Replace the source image and start from a fresh cover fit."""
        self.image = image
        self.reset()

    def select_frame(self, frame_size: FrameSize) -> None:
        """Resize the output frame, resetting the view when the size changes."""
        if frame_size != self.frame_size:
            self.frame_size = frame_size
            self.reset()
            return
        self.fit_cover()

    def base_scale(self) -> float:
        if not self._is_active():
            return 1.0
        return cover_scale(self.frame_size, self.image_size)

    def draw_scale(self) -> float:
        return self.base_scale() * self.state.scale

    def fit_cover(self) -> None:
        if not self._is_active():
            return
        clamp_view(self.state, self.frame_size, self.image_size)

    def reset(self) -> None:
        self.state.scale = 1.0
        self.state.offset_x = 0.0
        self.state.offset_y = 0.0
        self.fit_cover()

    def pan(self, dx: float, dy: float) -> None:
        if not self._is_active():
            return
        self.state.offset_x += dx
        self.state.offset_y += dy
        self.fit_cover()

    def to_image_space(self, x: float, y: float) -> Tuple[float, float]:
        """Map a frame-space point to image space relative to the image center."""
        scale = self.draw_scale()
        return (
            (x - self.frame_size[0] / 2.0 - self.state.offset_x) / scale,
            (y - self.frame_size[1] / 2.0 - self.state.offset_y) / scale,
        )

    def zoom_at(self, x: float, y: float, direction: int) -> None:
        """Zoom one step toward (direction > 0) or away from the pointer."""
        if not self._is_active() or direction == 0:
            return
        before_x, before_y = self.to_image_space(x, y)
        step = ZOOM_STEP if direction > 0 else -ZOOM_STEP
        self.state.scale = clamp(
            self.state.scale * math.exp(step),
            self.state.min_scale,
            self.state.max_scale,
        )
        after_x, after_y = self.to_image_space(x, y)
        scale = self.draw_scale()
        self.state.offset_x += (after_x - before_x) * scale
        self.state.offset_y += (after_y - before_y) * scale
        self.fit_cover()

    def zoom_from_wheel(self, x: float, y: float, delta_y: float) -> None:
        """Apply a wheel event; a positive delta scrolls down and zooms out."""
        self.zoom_at(x, y, -1 if delta_y > 0 else 1)

    def begin_drag(self, x: float, y: float) -> None:
        self.state.dragging = True
        self.state.last_pointer_x = x
        self.state.last_pointer_y = y

    def drag_to(self, x: float, y: float) -> None:
        if not self.state.dragging:
            return
        dx = x - self.state.last_pointer_x
        dy = y - self.state.last_pointer_y
        self.state.last_pointer_x = x
        self.state.last_pointer_y = y
        self.pan(dx, dy)

    def end_drag(self) -> None:
        self.state.dragging = False

    def image_transform(self) -> ImageTransform | None:
        if not self._is_active():
            return None
        return compute_image_transform(self.frame_size, self.image_size, self.state)

    def image_rect(self) -> Tuple[float, float, float, float] | None:
        """Return the drawn image bounds (left, top, right, bottom) in frame space."""
        transform = self.image_transform()
        if transform is None:
            return None
        half_width = self.image_size[0] * transform.draw_scale / 2.0
        half_height = self.image_size[1] * transform.draw_scale / 2.0
        return (
            transform.center_x - half_width,
            transform.center_y - half_height,
            transform.center_x + half_width,
            transform.center_y + half_height,
        )
