"""Reference preview: where the next keypoint landed on the previous image.

For the image being annotated, the engine works out the next order the
active scope will assign, finds the annotation with that order on the
previous image of the same series, and plans a zoomed crop around it.
``render`` rasterises a plan with OpenCV.

Previous-image data (image handle, decoded pixels, annotation list) is kept
in a ``TTLCache`` owned by the engine, so zoom changes re-plan without
fetching anything.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Any

import cv2
import numpy as np

from keyseries.cache import TTLCache
from keyseries.config import PreviewConfig
from keyseries.errors import CollaboratorError
from keyseries.ordering import next_order_in_scope
from keyseries.providers import ImageSource, SeriesProvider
from keyseries.types import (
    REGULAR_SCOPE,
    Annotation,
    CustomRegionAnnotation,
    ImageRef,
    RegularAnnotation,
    Scope,
)
from keyseries.utils.geometry import CropWindow, compute_crop_window
from keyseries.utils.image import (
    crop_to_viewport,
    draw_badge,
    draw_dashed_circle,
    draw_direction_arrow,
    hex_to_bgr,
)

logger = logging.getLogger(__name__)

REASON_NO_CONTEXT = "no image selected"
REASON_FIRST_IMAGE = "first image"
REASON_NO_ANNOTATIONS = "previous image has no annotations"

_TARGET_RADIUS = 5
_DRAGGED_RADIUS = 6
_NEIGHBOR_RADIUS = 3
_ARROW_LENGTH = 15


class PreviewStatus(str, enum.Enum):
    ready = "ready"
    no_reference = "no_reference"
    error = "error"


class MarkerStyle(str, enum.Enum):
    target = "target"
    dragged = "dragged"
    neighbor = "neighbor"


@dataclass(frozen=True)
class PreviewMarker:
    """One annotation placed in viewport coordinates."""

    annotation_id: str
    order: int
    x: float
    y: float
    style: MarkerStyle
    color: str
    radius: int
    angles: tuple[float, ...] = ()
    width: float | None = None
    height: float | None = None

    @property
    def is_highlighted(self) -> bool:
        return self.style != MarkerStyle.neighbor


@dataclass
class PreviewPlan:
    """Everything needed to draw one preview."""

    source_image: ImageRef
    target_order: int
    scope: Scope
    zoom: float
    window: CropWindow
    viewport_width: int
    viewport_height: int
    markers: list[PreviewMarker] = field(default_factory=list)

    @property
    def zoom_label(self) -> str:
        return f"{self.zoom:g}x"

    @property
    def target(self) -> PreviewMarker | None:
        return next((m for m in self.markers if m.is_highlighted), None)

    def to_dict(self) -> dict[str, Any]:
        return {
            "sourceImage": self.source_image.id,
            "targetOrder": self.target_order,
            "scope": self.scope.label,
            "zoom": self.zoom,
            "crop": {
                "x": self.window.x,
                "y": self.window.y,
                "size": self.window.size,
                "width": self.window.width,
                "height": self.window.height,
            },
            "viewport": [self.viewport_width, self.viewport_height],
            "markers": [
                {
                    "id": m.annotation_id,
                    "order": m.order,
                    "x": m.x,
                    "y": m.y,
                    "style": m.style.value,
                }
                for m in self.markers
            ],
        }


@dataclass
class PreviewResult:
    status: PreviewStatus
    target_order: int | None = None
    reason: str | None = None
    plan: PreviewPlan | None = None
    target: Annotation | None = None

    @property
    def ok(self) -> bool:
        return self.status == PreviewStatus.ready


@dataclass(frozen=True)
class ExpectedPosition:
    """Where an order sits on the previous image (for auto-panning)."""

    x: float
    y: float
    order: int
    source_image: ImageRef


@dataclass(frozen=True)
class PreviewContext:
    image: ImageRef
    index: int


@dataclass
class _CachedImage:
    ref: ImageRef
    annotations: list[Annotation]
    pixels: np.ndarray | None = None


@dataclass(frozen=True)
class _Request:
    order: int
    scope: Scope
    style: MarkerStyle


def missing_order_reason(order: int, scope: Scope) -> str:
    noun = "keypoint" if scope.is_regular else f"{scope.custom_type_id!r} marker"
    return f"previous image has no {noun} #{order}"


class ReferencePreviewEngine:
    """Plans and renders the reference preview for the current image."""

    def __init__(
        self,
        series: SeriesProvider,
        image_source: ImageSource,
        config: PreviewConfig | None = None,
        cache: TTLCache | None = None,
    ) -> None:
        self.series = series
        self.image_source = image_source
        self.config = config or PreviewConfig()
        self.cache = cache or TTLCache(
            ttl_seconds=self.config.cache_ttl_seconds,
            max_entries=self.config.cache_max_entries,
        )
        self._zoom = self.config.clamp_zoom(self.config.zoom_level)
        self._context: PreviewContext | None = None
        self._request: _Request | None = None
        self._normal_request: _Request | None = None
        self._last: PreviewResult | None = None

    # -- context -------------------------------------------------------------

    @property
    def context(self) -> PreviewContext | None:
        return self._context

    @property
    def zoom(self) -> float:
        return self._zoom

    @property
    def last_result(self) -> PreviewResult | None:
        return self._last

    @property
    def in_specific_mode(self) -> bool:
        return self._request is not None and self._request.style == MarkerStyle.dragged

    def set_context(self, image: ImageRef, index: int) -> bool:
        """Point the engine at the image being annotated (its series position).

        Changing image or plant drops cached data and the last render.
        Returns True if the context changed.
        """
        current = self._context
        changed = (
            current is None
            or current.image.id != image.id
            or current.image.plant_id != image.plant_id
            or current.image.view_angle != image.view_angle
        )
        self._context = PreviewContext(image=image, index=index)
        if changed:
            self.cache.clear()
            self._last = None
            self._request = None
            self._normal_request = None
            logger.debug("Preview context -> %s (index %d)", image.id, index)
        return changed

    def reset(self) -> None:
        self._context = None
        self._request = None
        self._normal_request = None
        self._last = None
        self.cache.clear()

    def invalidate(self, image_id: str | None = None) -> None:
        """Drop cached data for one image (or everything)."""
        if image_id is None:
            self.cache.clear()
        else:
            self.cache.invalidate(image_id)

    # -- preview requests ----------------------------------------------------

    def update(
        self, current_annotations: list[Annotation], scope: Scope = REGULAR_SCOPE
    ) -> PreviewResult:
        """Preview the next order *scope* would assign on the current image."""
        target_order = next_order_in_scope(current_annotations, scope)
        self._normal_request = _Request(target_order, scope, MarkerStyle.target)
        self._request = self._normal_request
        return self._run(self._request)

    def show_specific_order(self, order: int, scope: Scope = REGULAR_SCOPE) -> PreviewResult:
        """Preview an explicit order (e.g. the one being dragged)."""
        self._request = _Request(order, scope, MarkerStyle.dragged)
        return self._run(self._request)

    def restore_normal_preview(self) -> PreviewResult | None:
        """Go back to the next-unused preview shown before ``show_specific_order``."""
        self._request = self._normal_request
        if self._request is None:
            self._last = None
            return None
        return self._run(self._request)

    def set_zoom(self, zoom: float) -> PreviewResult | None:
        """Change zoom (clamped) and re-plan the active request from cache."""
        self._zoom = self.config.clamp_zoom(zoom)
        if self._request is None:
            return None
        return self._run(self._request)

    def expected_position(
        self, order: int, scope: Scope = REGULAR_SCOPE
    ) -> ExpectedPosition | None:
        """Position of *order* on the previous image, or None."""
        previous = self._previous_image()
        if previous is None:
            return None
        try:
            cached = self._fetch(previous, need_pixels=False)
        except CollaboratorError as e:
            logger.warning("Expected position unavailable: %s", e)
            return None
        target = _find(cached.annotations, order, scope)
        if target is None:
            return None
        return ExpectedPosition(x=target.x, y=target.y, order=order, source_image=cached.ref)

    def status(self) -> dict[str, Any]:
        ctx = self._context
        previous = self._previous_image() if ctx else None
        return {
            "imageId": ctx.image.id if ctx else None,
            "plantId": ctx.image.plant_id if ctx else None,
            "viewAngle": ctx.image.view_angle if ctx else None,
            "previousImageId": previous.id if previous else None,
            "zoom": self._zoom,
            "mode": "specific" if self.in_specific_mode else "normal",
            "cachedImages": self.cache.keys(),
            "lastStatus": self._last.status.value if self._last else None,
        }

    # -- core algorithm ------------------------------------------------------

    def _previous_image(self) -> ImageRef | None:
        ctx = self._context
        if ctx is None:
            return None
        return self.series.previous_image(ctx.image.plant_id, ctx.image.view_angle, ctx.index)

    def _fetch(self, ref: ImageRef, need_pixels: bool = True) -> _CachedImage:
        cached = self.cache.get(ref.id)
        if cached is None:
            annotations = [a.copy() for a in self.series.image_annotations(ref.id)]
            cached = _CachedImage(ref=ref, annotations=annotations)
            self.cache.set(ref.id, cached)
        if need_pixels and cached.pixels is None:
            cached.pixels = self.image_source.load_image(ref)
            logger.debug("Decoded preview source %s", ref.id)
        return cached

    def _run(self, request: _Request) -> PreviewResult:
        result = self._plan(request)
        if result.status != PreviewStatus.ready:
            logger.debug("Preview unavailable: %s", result.reason)
        self._last = result
        return result

    def _plan(self, request: _Request) -> PreviewResult:
        order, scope = request.order, request.scope
        if self._context is None:
            return PreviewResult(PreviewStatus.no_reference, order, REASON_NO_CONTEXT)
        try:
            previous = self._previous_image()
            if previous is None:
                return PreviewResult(PreviewStatus.no_reference, order, REASON_FIRST_IMAGE)
            cached = self._fetch(previous, need_pixels=False)
            if not cached.annotations:
                return PreviewResult(PreviewStatus.no_reference, order, REASON_NO_ANNOTATIONS)
            target = _find(cached.annotations, order, scope)
            if target is None:
                return PreviewResult(
                    PreviewStatus.no_reference, order, missing_order_reason(order, scope)
                )
            cached = self._fetch(previous, need_pixels=True)
        except CollaboratorError as e:
            logger.warning("Preview failed: %s", e)
            return PreviewResult(PreviewStatus.error, order, f"preview failed: {e}")

        height, width = cached.pixels.shape[:2]
        window = compute_crop_window(
            target.x, target.y, width, height, self._zoom, self.config.base_crop_size
        )
        plan = PreviewPlan(
            source_image=cached.ref,
            target_order=order,
            scope=scope,
            zoom=self._zoom,
            window=window,
            viewport_width=self.config.viewport_width,
            viewport_height=self.config.viewport_height,
        )
        plan.markers = self._markers(cached.annotations, target, window, request.style)
        return PreviewResult(PreviewStatus.ready, order, plan=plan, target=target.copy())

    def _markers(
        self,
        annotations: list[Annotation],
        target: Annotation,
        window: CropWindow,
        target_style: MarkerStyle,
    ) -> list[PreviewMarker]:
        """Neighbours first (drawn underneath), target last."""
        vw, vh = self.config.viewport_width, self.config.viewport_height
        neighbours: list[PreviewMarker] = []
        for ann in annotations:
            if ann.id == target.id or not window.contains(ann.x, ann.y):
                continue
            angles = _angles(ann)
            color = self.config.directed_neighbor_color if angles else self.config.neighbor_color
            neighbours.append(self._marker(ann, window, vw, vh, MarkerStyle.neighbor, color))

        if target_style == MarkerStyle.dragged:
            color, radius = self.config.dragged_color, _DRAGGED_RADIUS
        else:
            color, radius = self.config.target_color, _TARGET_RADIUS
        target_marker = self._marker(target, window, vw, vh, target_style, color, radius)
        return neighbours + [target_marker]

    @staticmethod
    def _marker(
        ann: Annotation,
        window: CropWindow,
        vw: int,
        vh: int,
        style: MarkerStyle,
        color: str,
        radius: int = _NEIGHBOR_RADIUS,
    ) -> PreviewMarker:
        px, py = window.to_viewport(ann.x, ann.y, vw, vh)
        width = height = None
        if isinstance(ann, CustomRegionAnnotation):
            sx, sy = window.scale_to(vw, vh)
            width, height = ann.width * sx, ann.height * sy
        return PreviewMarker(
            annotation_id=ann.id,
            order=ann.order,
            x=px,
            y=py,
            style=style,
            color=color,
            radius=radius,
            angles=tuple(_angles(ann)),
            width=width,
            height=height,
        )

    # -- rendering -----------------------------------------------------------

    def render(self, plan: PreviewPlan | None = None) -> np.ndarray:
        """Rasterise *plan* (default: the last ready plan) into a BGR image.

        Raises:
            ValueError: there is nothing to render.
            CollaboratorError: the source image could not be decoded.
        """
        if plan is None:
            if self._last is None or self._last.plan is None:
                raise ValueError("No preview to render")
            plan = self._last.plan
        pixels = self._fetch(plan.source_image, need_pixels=True).pixels
        canvas = crop_to_viewport(pixels, plan.window, plan.viewport_width, plan.viewport_height)
        arrow_color = hex_to_bgr(self.config.arrow_color)
        white = (255, 255, 255)

        for marker in plan.markers:
            center = (int(round(marker.x)), int(round(marker.y)))
            color = hex_to_bgr(marker.color)
            if marker.width is not None and marker.height is not None:
                corner = (int(round(marker.x + marker.width)), int(round(marker.y + marker.height)))
                cv2.rectangle(canvas, center, corner, color, 2 if marker.is_highlighted else 1)
            for angle in marker.angles:
                draw_direction_arrow(canvas, center, angle, _ARROW_LENGTH, arrow_color)
            cv2.circle(canvas, center, marker.radius, color, -1, cv2.LINE_AA)
            cv2.circle(canvas, center, marker.radius, white, 1, cv2.LINE_AA)
            if marker.style == MarkerStyle.target:
                ring = hex_to_bgr(self.config.target_ring_color)
                draw_dashed_circle(canvas, center, marker.radius + 4, ring, 2)
            elif marker.style == MarkerStyle.dragged:
                cv2.circle(canvas, center, marker.radius + 5, color, 2, cv2.LINE_AA)
            if marker.is_highlighted:
                cv2.putText(
                    canvas,
                    str(marker.order),
                    (center[0] + marker.radius + 3, center[1] - marker.radius - 3),
                    cv2.FONT_HERSHEY_SIMPLEX,
                    0.4,
                    white,
                    1,
                    cv2.LINE_AA,
                )

        draw_badge(canvas, plan.zoom_label)
        return canvas


def _find(annotations: list[Annotation], order: int, scope: Scope) -> Annotation | None:
    return next((a for a in annotations if a.order == order and a.scope == scope), None)


def _angles(annotation: Annotation) -> list[float]:
    if isinstance(annotation, RegularAnnotation):
        return annotation.angles
    return []
