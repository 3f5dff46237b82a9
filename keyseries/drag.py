"""Drag-reposition state machine for existing annotations.

States: ``idle -> dragging -> committed | cancelled``. The controller moves
the *live* record it was given, so the caller sees the marker follow the
pointer; ``cancel_drag`` puts the original geometry back.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass

from keyseries.errors import ValidationError
from keyseries.types import Annotation, CustomRegionAnnotation
from keyseries.utils.geometry import clamp_point, clamp_region

logger = logging.getLogger(__name__)


class DragState(str, enum.Enum):
    idle = "idle"
    dragging = "dragging"
    committed = "committed"
    cancelled = "cancelled"


@dataclass(frozen=True)
class Geometry:
    """Position (and size, for regions) of an annotation."""

    x: float
    y: float
    width: float | None = None
    height: float | None = None

    @classmethod
    def of(cls, annotation: Annotation) -> Geometry:
        if isinstance(annotation, CustomRegionAnnotation):
            return cls(annotation.x, annotation.y, annotation.width, annotation.height)
        return cls(annotation.x, annotation.y)

    def apply_to(self, annotation: Annotation) -> None:
        annotation.x = self.x
        annotation.y = self.y
        if isinstance(annotation, CustomRegionAnnotation) and self.width is not None:
            annotation.width = self.width
            annotation.height = self.height


@dataclass
class DragResult:
    """Outcome of ``finish_drag``."""

    annotation: Annotation
    moved: bool
    start: Geometry
    end: Geometry


class DragController:
    """Tracks one drag gesture at a time.

    Pointer positions are in view (screen) space; ``scale`` is view pixels
    per image pixel, so an image-space delta is ``pointer_delta / scale``.
    """

    def __init__(self, move_threshold: float = 1.0) -> None:
        self.move_threshold = move_threshold
        self.state = DragState.idle
        self._annotation: Annotation | None = None
        self._start: Geometry | None = None
        self._pointer_start: tuple[float, float] = (0.0, 0.0)
        self._scale = 1.0
        self._image_size: tuple[float, float] | None = None

    @property
    def is_dragging(self) -> bool:
        return self.state == DragState.dragging

    @property
    def annotation(self) -> Annotation | None:
        """The record being dragged, or None."""
        return self._annotation if self.is_dragging else None

    @property
    def start_geometry(self) -> Geometry | None:
        return self._start if self.is_dragging else None

    def start_drag(
        self,
        annotation: Annotation,
        pointer: tuple[float, float],
        scale: float = 1.0,
        image_size: tuple[float, float] | None = None,
    ) -> None:
        """Begin dragging *annotation* from view position *pointer*.

        Raises:
            ValidationError: a drag is already active, or scale is not positive.
        """
        if self.is_dragging:
            raise ValidationError("A drag is already in progress")
        if scale <= 0:
            raise ValidationError(f"View scale must be positive, got {scale}")
        self._annotation = annotation
        self._start = Geometry.of(annotation)
        self._pointer_start = (float(pointer[0]), float(pointer[1]))
        self._scale = scale
        self._image_size = image_size
        self.state = DragState.dragging
        logger.debug("Drag started on %s at %s", annotation.id, pointer)

    def update_drag(self, pointer: tuple[float, float], scale: float | None = None) -> bool:
        """Move the dragged record to follow *pointer*. Returns False when idle."""
        if not self.is_dragging or self._annotation is None or self._start is None:
            return False
        if scale is not None and scale > 0:
            self._scale = scale

        dx = (pointer[0] - self._pointer_start[0]) / self._scale
        dy = (pointer[1] - self._pointer_start[1]) / self._scale
        x = self._start.x + dx
        y = self._start.y + dy
        width, height = self._start.width, self._start.height

        if self._image_size is not None:
            img_w, img_h = self._image_size
            if width is not None and height is not None:
                x, y, width, height = clamp_region(x, y, width, height, img_w, img_h)
            else:
                x, y = clamp_point(x, y, img_w, img_h)

        Geometry(x, y, width, height).apply_to(self._annotation)
        return True

    def finish_drag(self) -> DragResult | None:
        """Commit the gesture. Returns None if no drag was active."""
        if not self.is_dragging or self._annotation is None or self._start is None:
            return None
        end = Geometry.of(self._annotation)
        moved = (
            abs(end.x - self._start.x) > self.move_threshold
            or abs(end.y - self._start.y) > self.move_threshold
        )
        result = DragResult(annotation=self._annotation, moved=moved, start=self._start, end=end)
        self.state = DragState.committed
        self._clear()
        logger.debug("Drag finished on %s (moved=%s)", result.annotation.id, moved)
        return result

    def cancel_drag(self) -> Geometry | None:
        """Restore the original geometry. A no-op returning None when idle."""
        if not self.is_dragging or self._annotation is None or self._start is None:
            return None
        start = self._start
        start.apply_to(self._annotation)
        logger.debug("Drag cancelled on %s", self._annotation.id)
        self.state = DragState.cancelled
        self._clear()
        return start

    def _clear(self) -> None:
        self._annotation = None
        self._start = None
        self._image_size = None
