"""Image-space geometry helpers: clamping, region gestures and crop windows."""

from __future__ import annotations

import math
from dataclasses import dataclass


def round_half_up(value: float) -> int:
    """Round to the nearest integer with halves rounding up (``2.5 -> 3``).

    Python's ``round`` rounds halves to even.
    """
    return int(math.floor(value + 0.5))


def clamp(value: float, low: float, high: float) -> float:
    """Clamp *value* into ``[low, high]``. If ``high < low``, returns *low*."""
    return max(low, min(high, value))


def clamp_point(x: float, y: float, width: float, height: float) -> tuple[float, float]:
    """Clamp a point into ``[0, width] x [0, height]``."""
    return clamp(x, 0, width), clamp(y, 0, height)


def clamp_region(
    x: float, y: float, w: float, h: float, image_width: float, image_height: float
) -> tuple[float, float, float, float]:
    """Clamp a region's anchor into the image and shrink it to fit.

    The anchor (top-left) is clamped first; width/height are then limited to
    the space remaining to the right of / below the anchor.
    """
    x, y = clamp_point(x, y, image_width, image_height)
    w = min(w, image_width - x)
    h = min(h, image_height - y)
    return x, y, w, h


def region_from_corners(
    x0: float, y0: float, x1: float, y1: float
) -> tuple[float, float, float, float]:
    """Normalise a drag gesture (press corner, release corner) to ``(x, y, w, h)``."""
    return min(x0, x1), min(y0, y1), abs(x1 - x0), abs(y1 - y0)


def point_in_rect(
    px: float, py: float, x: float, y: float, w: float, h: float, tolerance: float = 0.0
) -> bool:
    """Whether a point lies inside a rectangle (edges inclusive)."""
    return (
        x - tolerance <= px <= x + w + tolerance
        and y - tolerance <= py <= y + h + tolerance
    )


# ---------------------------------------------------------------------------
# Crop windows
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CropWindow:
    """Image-space rectangle shown by the reference preview.

    ``size`` is the nominal crop side; ``width``/``height`` are the actual
    extents after clipping at the image border.
    """

    x: int
    y: int
    size: int
    width: int
    height: int

    def contains(self, px: float, py: float) -> bool:
        return point_in_rect(px, py, self.x, self.y, self.width, self.height)

    def scale_to(self, viewport_width: int, viewport_height: int) -> tuple[float, float]:
        """(sx, sy) mapping image pixels to viewport pixels."""
        sx = viewport_width / self.width if self.width else 0.0
        sy = viewport_height / self.height if self.height else 0.0
        return sx, sy

    def to_viewport(
        self, px: float, py: float, viewport_width: int, viewport_height: int
    ) -> tuple[float, float]:
        """Map an image-space point into viewport coordinates."""
        sx, sy = self.scale_to(viewport_width, viewport_height)
        return (px - self.x) * sx, (py - self.y) * sy


def crop_size_for_zoom(zoom: float, base_crop_size: int = 200) -> int:
    """Nominal crop side for a zoom level: ``round(base / zoom)``, at least 1."""
    if zoom <= 0:
        raise ValueError(f"zoom must be positive, got {zoom}")
    return max(1, round_half_up(base_crop_size / zoom))


def compute_crop_window(
    cx: float,
    cy: float,
    image_width: int,
    image_height: int,
    zoom: float,
    base_crop_size: int = 200,
) -> CropWindow:
    """Crop window centred on ``(cx, cy)``, clamped to the image.

    The window is shifted (never shrunk) to stay inside the image, unless the
    image is smaller than the crop, in which case it is clipped.
    """
    size = crop_size_for_zoom(zoom, base_crop_size)
    half = size / 2
    x = round_half_up(max(0, min(image_width - size, cx - half)))
    y = round_half_up(max(0, min(image_height - size, cy - half)))
    width = min(size, image_width - x)
    height = min(size, image_height - y)
    return CropWindow(x=x, y=y, size=size, width=width, height=height)
