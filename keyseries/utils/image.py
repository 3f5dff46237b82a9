"""Image I/O and drawing helpers for preview rendering."""

from __future__ import annotations

import math
from pathlib import Path

import cv2
import numpy as np
from PIL import Image

from keyseries.utils.geometry import CropWindow


# ---------------------------------------------------------------------------
# Image I/O
# ---------------------------------------------------------------------------


def load_image(path: Path) -> np.ndarray:
    """Decode a series frame as a BGR array (the layout the preview draws on)."""
    img = cv2.imread(str(path), cv2.IMREAD_COLOR)
    if img is None:
        raise FileNotFoundError(f"Cannot decode series frame: {path}")
    return img


def get_image_dimensions(path: Path) -> tuple[int, int]:
    """Get (width, height) of an image without fully loading it (header-only)."""
    with Image.open(path) as img:
        return img.size


def save_image(path: Path, image: np.ndarray) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    if not cv2.imwrite(str(path), image):
        raise OSError(f"Cannot write image: {path}")


# ---------------------------------------------------------------------------
# Colours
# ---------------------------------------------------------------------------


def hex_to_bgr(color: str) -> tuple[int, int, int]:
    """Convert ``#rrggbb`` (or ``#rgb``) to an OpenCV BGR tuple."""
    value = color.lstrip("#")
    if len(value) == 3:
        value = "".join(c * 2 for c in value)
    if len(value) != 6:
        raise ValueError(f"Invalid hex colour: {color!r}")
    r, g, b = (int(value[i:i + 2], 16) for i in (0, 2, 4))
    return (b, g, r)


# ---------------------------------------------------------------------------
# Crop + drawing
# ---------------------------------------------------------------------------


def crop_to_viewport(
    image: np.ndarray, window: CropWindow, viewport_width: int, viewport_height: int
) -> np.ndarray:
    """Cut *window* out of *image* and scale it to the viewport size."""
    patch = image[window.y:window.y + window.height, window.x:window.x + window.width]
    if patch.size == 0:
        return np.zeros((viewport_height, viewport_width, 3), dtype=np.uint8)
    if patch.ndim == 2:
        patch = cv2.cvtColor(patch, cv2.COLOR_GRAY2BGR)
    return cv2.resize(patch, (viewport_width, viewport_height), interpolation=cv2.INTER_LINEAR)


def draw_dashed_circle(
    canvas: np.ndarray,
    center: tuple[int, int],
    radius: int,
    color: tuple[int, int, int],
    thickness: int = 1,
    segments: int = 16,
) -> None:
    """Draw a circle as alternating arc segments (OpenCV has no dash style)."""
    step = 360 / segments
    for i in range(0, segments, 2):
        start = i * step
        cv2.ellipse(
            canvas, center, (radius, radius), 0, start, start + step, color, thickness, cv2.LINE_AA
        )


def draw_direction_arrow(
    canvas: np.ndarray,
    origin: tuple[int, int],
    angle_deg: float,
    length: int,
    color: tuple[int, int, int],
    thickness: int = 2,
) -> None:
    """Draw an arrow from *origin* pointing at *angle_deg* (0 = right, 90 = down)."""
    rad = math.radians(angle_deg)
    tip = (
        int(round(origin[0] + length * math.cos(rad))),
        int(round(origin[1] + length * math.sin(rad))),
    )
    cv2.arrowedLine(canvas, origin, tip, color, thickness, cv2.LINE_AA, tipLength=0.3)


def draw_badge(
    canvas: np.ndarray,
    text: str,
    color: tuple[int, int, int] = (255, 255, 255),
    background: tuple[int, int, int] = (0, 0, 0),
    margin: int = 4,
) -> None:
    """Draw a small text badge in the top-right corner."""
    font = cv2.FONT_HERSHEY_SIMPLEX
    scale = 0.4
    (tw, th), baseline = cv2.getTextSize(text, font, scale, 1)
    h, w = canvas.shape[:2]
    x1 = max(0, w - tw - 2 * margin)
    y2 = th + baseline + 2 * margin
    cv2.rectangle(canvas, (x1, 0), (w - 1, y2), background, -1)
    cv2.putText(canvas, text, (x1 + margin, th + margin), font, scale, color, 1, cv2.LINE_AA)
