"""Interaction glue: routes pointer gestures to the right collection.

An ``AnnotationSession`` wires one persistence provider, the regular keypoint
store, the custom annotation manager and the reference preview engine around
a single "current image". Every mutation goes through the owning collection,
is persisted there, and drops the preview cache entry for the image.
"""

from __future__ import annotations

import logging
from typing import Any

from keyseries.collection import AnnotationCollection
from keyseries.config import KeySeriesConfig
from keyseries.drag import DragResult
from keyseries.errors import KeySeriesError, NotFoundError, ValidationError
from keyseries.events import (
    AnnotationCreated,
    AnnotationDeleted,
    AnnotationsReordered,
    AnnotationUpdated,
    EventBus,
)
from keyseries.keypoints import RegularKeypointStore
from keyseries.manager import AnnotationMode, CustomAnnotationManager, InputResult
from keyseries.preview import PreviewResult, ReferencePreviewEngine
from keyseries.providers import ImageSource, PersistenceProvider, SyncBridge, TypeStore
from keyseries.types import REGULAR_SCOPE, Annotation, ImageRef, Scope

logger = logging.getLogger(__name__)


class AnnotationSession:
    """State of one annotator working through a series.

    Args:
        series: Series provider; ``index_of`` is used when ``open_image`` is
            called without an explicit index.
        type_store: Where custom types are persisted. Defaults to
            *persistence* when it also implements the type store methods.
    """

    def __init__(
        self,
        persistence: PersistenceProvider,
        series: Any,
        image_source: ImageSource,
        config: KeySeriesConfig | None = None,
        sync_bridge: SyncBridge | None = None,
        type_store: TypeStore | None = None,
        fill_gaps: bool = False,
    ) -> None:
        self.config = config or KeySeriesConfig.default()
        self.persistence = persistence
        self.series = series
        self.events = EventBus()
        if type_store is None and isinstance(persistence, TypeStore):
            type_store = persistence

        self.keypoints = RegularKeypointStore(
            persistence=persistence,
            events=self.events,
            sync_bridge=sync_bridge,
            move_threshold=self.config.drag.move_threshold,
            fill_gaps=fill_gaps,
        )
        self.manager = CustomAnnotationManager(
            limits=self.config.limits,
            persistence=persistence,
            sync_bridge=sync_bridge,
            companion=self.keypoints,
            events=self.events,
            drag_config=self.config.drag,
            type_store=type_store,
        )
        self.keypoints.companion = self.manager
        if type_store is not None:
            self.manager.reload_types()

        self.preview = ReferencePreviewEngine(series, image_source, self.config.preview)
        for event_type in (AnnotationCreated, AnnotationUpdated, AnnotationDeleted):
            self.events.on(event_type, self._on_annotation_changed)
        self.events.on(AnnotationsReordered, self._on_reordered)

        self.image: ImageRef | None = None
        self.index: int | None = None
        self.view_scale = 1.0
        self._region_start: tuple[float, float] | None = None
        self._region_current: tuple[float, float] | None = None
        self._moving: AnnotationCollection | None = None

    # -- cache invalidation --------------------------------------------------

    def _on_annotation_changed(self, event: Any) -> None:
        image_id = event.annotation.image_id
        if image_id is not None:
            self.preview.invalidate(image_id)

    def _on_reordered(self, event: AnnotationsReordered) -> None:
        self.preview.invalidate(event.image_id)

    # -- image navigation ----------------------------------------------------

    @property
    def image_id(self) -> str:
        if self.image is None:
            raise ValidationError("No image is open")
        return self.image.id

    @property
    def context(self) -> dict[str, Any]:
        """Sync context for operations on the current image."""
        if self.image is None:
            return {}
        return {"plantId": self.image.plant_id, "viewAngle": self.image.view_angle}

    def open_image(self, image: ImageRef, index: int | None = None) -> PreviewResult:
        """Make *image* current: load its annotations and refresh the preview."""
        self._reset_gestures("image changed")
        if index is None:
            index = self.series.index_of(image.id)
        annotations = self.persistence.load_annotations(image.id)
        self.keypoints.load_image(image.id, annotations)
        self.manager.load_image(image.id, annotations)
        self.image = image
        self.index = index
        self.preview.set_context(image, index)
        logger.info(
            "Opened %s (%d regular, %d custom)",
            image.id,
            len(self.keypoints.annotations_for_image(image.id)),
            len(self.manager.annotations_for_image(image.id)),
        )
        return self.refresh_preview()

    def set_view_scale(self, scale: float) -> None:
        """View pixels per image pixel for drag conversion."""
        if scale <= 0:
            raise ValidationError(f"View scale must be positive, got {scale}")
        self.view_scale = scale

    def annotations(self) -> list[Annotation]:
        """Copies of the current image's records (regular first)."""
        image_id = self.image_id
        return self.keypoints.annotations_for_image(image_id) + self.manager.annotations_for_image(
            image_id
        )

    # -- mode ----------------------------------------------------------------

    @property
    def mode(self) -> AnnotationMode:
        return self.manager.mode

    @property
    def active_scope(self) -> Scope:
        type_id = self.manager.mode.type_id
        return Scope.custom(type_id) if type_id else REGULAR_SCOPE

    def set_mode(self, type_id: str | None) -> PreviewResult | None:
        """Switch annotation mode, interrupting any gesture in progress."""
        if type_id is not None and self.manager.get_type(type_id) is None:
            raise NotFoundError("custom type", type_id)
        self._reset_gestures("mode switch")
        self.manager.set_mode(type_id)
        return self.refresh_preview() if self.image is not None else None

    def _reset_gestures(self, reason: str) -> None:
        if self._region_start is not None:
            logger.info("Pending region gesture discarded: %s", reason)
        self._region_start = None
        self._region_current = None
        if self._moving is not None:
            self._moving.interrupt_drag(reason)
            self._moving = None
            self.preview.restore_normal_preview()

    # -- creation gestures ---------------------------------------------------

    def click(self, x: float, y: float) -> InputResult:
        """A click: a regular keypoint in Normal mode, a point marker in custom mode."""
        image_id = self.image_id
        if self.mode.is_custom:
            result = self.manager.handle_click(x, y, image_id, context=self.context)
        else:
            try:
                created = self.keypoints.add_keypoint(image_id, x, y, context=self.context)
            except ValidationError as e:
                return InputResult(success=False, reason=str(e))
            result = InputResult(success=True, annotation=created)
        if result.success:
            self.refresh_preview()
        return result

    def begin_region(self, x: float, y: float) -> None:
        self._region_start = (x, y)
        self._region_current = (x, y)

    def update_region(self, x: float, y: float) -> tuple[float, float, float, float] | None:
        """Track the pointer; returns the rubber-band rectangle ``(x, y, w, h)``."""
        if self._region_start is None:
            return None
        self._region_current = (x, y)
        sx, sy = self._region_start
        return min(sx, x), min(sy, y), abs(x - sx), abs(y - sy)

    def end_region(self, x: float, y: float) -> InputResult:
        """Release: create a region marker from the gesture."""
        start = self._region_start
        self._region_start = None
        self._region_current = None
        if start is None:
            return InputResult(success=False, reason="No region gesture in progress")
        result = self.manager.handle_region(start, (x, y), self.image_id, context=self.context)
        if result.success:
            self.refresh_preview()
        return result

    # -- drag reposition -----------------------------------------------------

    def _owner(self, annotation_id: str) -> AnnotationCollection:
        if annotation_id in self.keypoints:
            return self.keypoints
        if annotation_id in self.manager:
            return self.manager
        raise NotFoundError("annotation", annotation_id)

    def begin_move(self, annotation_id: str, pointer: tuple[float, float]) -> PreviewResult:
        """Start dragging an annotation; previews its order on the previous image."""
        owner = self._owner(annotation_id)
        if self._moving is not None:
            raise ValidationError("A drag is already in progress")
        image_size = self.image.size if self.image is not None else None
        annotation = owner.start_drag(
            annotation_id, pointer, scale=self.view_scale, image_size=image_size
        )
        self._moving = owner
        return self.preview.show_specific_order(annotation.order, annotation.scope)

    def move_to(self, pointer: tuple[float, float]) -> bool:
        if self._moving is None:
            return False
        return self._moving.update_drag(pointer, scale=self.view_scale)

    def end_move(self) -> DragResult | None:
        owner, self._moving = self._moving, None
        if owner is None:
            return None
        try:
            result = owner.finish_drag(context=self.context)
        finally:
            self.preview.restore_normal_preview()
        self.refresh_preview()
        return result

    def cancel_move(self) -> bool:
        owner, self._moving = self._moving, None
        if owner is None:
            return False
        cancelled = owner.cancel_drag()
        self.preview.restore_normal_preview()
        return cancelled

    # -- other edits ---------------------------------------------------------

    def delete_annotation(self, annotation_id: str) -> Annotation:
        owner = self._owner(annotation_id)
        if self._moving is owner and owner.drag.annotation is not None:
            if owner.drag.annotation.id == annotation_id:
                self._moving = None
                self.preview.restore_normal_preview()
        removed = owner.delete_annotation(annotation_id, context=self.context)
        self.refresh_preview()
        return removed

    def update_order(self, annotation_id: str, new_order: int) -> Annotation:
        owner = self._owner(annotation_id)
        updated = owner.update_annotation_order(annotation_id, new_order, context=self.context)
        self.refresh_preview()
        return updated

    def renumber(self) -> int:
        """Close gaps in every scope of the current image."""
        image_id = self.image_id
        changed = self.keypoints.renumber(image_id) + self.manager.reorder_annotations(image_id)
        self.refresh_preview()
        return changed

    # -- preview -------------------------------------------------------------

    def refresh_preview(self) -> PreviewResult:
        """Recompute the next-unused preview for the active scope."""
        if self.image is None:
            raise KeySeriesError("No image is open")
        return self.preview.update(self.annotations(), self.active_scope)

    def set_zoom(self, zoom: float) -> PreviewResult | None:
        return self.preview.set_zoom(zoom)
