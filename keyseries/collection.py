"""Shared machinery for the per-image annotation collections.

``CustomAnnotationManager`` (custom markers) and ``RegularKeypointStore``
(regular keypoints) each own one kind of record. Both persist the *union* of
an image's records through the same persistence provider, so each holds a
reference to the other as its ``companion``.

Every mutation here is all-or-nothing: in-memory state is snapshotted, the
change is applied and persisted, and the snapshot is restored if persistence
raises ``CollaboratorError``.
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any, Protocol

from keyseries.drag import DragController, DragResult
from keyseries.errors import CollaboratorError, NotFoundError
from keyseries.events import (
    AnnotationDeleted,
    AnnotationUpdated,
    DragInterrupted,
    EventBus,
    KeySeriesEvent,
)
from keyseries.ordering import check_order_update
from keyseries.providers import PersistenceProvider, SyncBridge, SyncEvent, SyncEventKind
from keyseries.types import Annotation, AnnotationKind

logger = logging.getLogger(__name__)


class AnnotationSource(Protocol):
    """Anything that can hand out copies of an image's annotations."""

    def annotations_for_image(self, image_id: str) -> list[Annotation]: ...


class AnnotationCollection:
    """Per-image lists of one annotation kind plus persistence and drag hosting."""

    kind: AnnotationKind

    def __init__(
        self,
        persistence: PersistenceProvider | None = None,
        events: EventBus | None = None,
        sync_bridge: SyncBridge | None = None,
        companion: AnnotationSource | None = None,
        move_threshold: float = 1.0,
    ) -> None:
        self.persistence = persistence
        self.events = events or EventBus()
        self.sync_bridge = sync_bridge
        self.companion = companion
        self.drag = DragController(move_threshold=move_threshold)
        self._by_image: dict[str, list[Annotation]] = {}
        self._drag_image_id: str | None = None
        self._drag_before: Annotation | None = None

    # -- hydration / read access ---------------------------------------------

    def accepts(self, annotation: Annotation) -> bool:
        return annotation.annotation_type == self.kind

    def load_image(self, image_id: str, annotations: list[Annotation]) -> int:
        """Replace this collection's records for *image_id*. Returns count kept.

        Records of the other kind are ignored (the companion loads those).
        """
        kept = []
        for ann in annotations:
            if not self.accepts(ann):
                continue
            record = ann.copy()
            if record.image_id is None:
                record.image_id = image_id
            kept.append(record)
        self._by_image[image_id] = kept
        return len(kept)

    def unload_image(self, image_id: str) -> None:
        self._by_image.pop(image_id, None)

    def image_ids(self) -> list[str]:
        return list(self._by_image)

    def annotations_for_image(self, image_id: str) -> list[Annotation]:
        """Copies of the records of an image, in list order."""
        return [a.copy() for a in self._by_image.get(image_id, [])]

    def all_annotations(self) -> Iterator[Annotation]:
        """Copies of every record, images in insertion order."""
        for image_id in self._by_image:
            yield from self.annotations_for_image(image_id)

    def get(self, annotation_id: str) -> Annotation | None:
        for records in self._by_image.values():
            for ann in records:
                if ann.id == annotation_id:
                    return ann.copy()
        return None

    def __contains__(self, annotation_id: object) -> bool:
        return any(
            ann.id == annotation_id for records in self._by_image.values() for ann in records
        )

    def _locate(self, annotation_id: str) -> tuple[str, Annotation]:
        """(image id, live record) for *annotation_id*."""
        for image_id, records in self._by_image.items():
            for ann in records:
                if ann.id == annotation_id:
                    return image_id, ann
        raise NotFoundError("annotation", annotation_id)

    # -- persistence ---------------------------------------------------------

    def _union(self, image_id: str) -> list[Annotation]:
        """Regular records first, then custom, each in list order."""
        own = list(self._by_image.get(image_id, []))
        other = self.companion.annotations_for_image(image_id) if self.companion else []
        merged = own + other
        return sorted(merged, key=lambda a: a.annotation_type != AnnotationKind.regular)

    def _persist(self, image_id: str) -> None:
        if self.persistence is None:
            return
        self.persistence.save_annotations(image_id, self._union(image_id))

    @contextmanager
    def _transaction(self, *image_ids: str) -> Iterator[None]:
        """Snapshot *image_ids*, run the block, persist; roll back on failure."""
        snapshot = {i: copy.deepcopy(self._by_image.get(i)) for i in image_ids}
        persisted: list[str] = []
        try:
            yield
            for image_id in image_ids:
                self._persist(image_id)
                persisted.append(image_id)
        except Exception:
            for image_id, records in snapshot.items():
                if records is None:
                    self._by_image.pop(image_id, None)
                else:
                    self._by_image[image_id] = records
            for image_id in persisted:
                # Put already-written images back to their previous contents
                try:
                    self._persist(image_id)
                except CollaboratorError:
                    logger.error("Could not restore persisted state of %s", image_id)
            raise

    # -- notification --------------------------------------------------------

    def _emit(self, event: KeySeriesEvent) -> None:
        self.events.emit(event)

    @staticmethod
    def _context(image_id: str | None, context: dict[str, Any] | None) -> dict[str, Any]:
        merged: dict[str, Any] = {"imageId": image_id}
        if context:
            merged.update(context)
        return merged

    def _notify_sync(
        self, kind: SyncEventKind, payload: dict[str, Any], context: dict[str, Any]
    ) -> None:
        """Fire-and-forget; bridge failures are logged, never raised."""
        if self.sync_bridge is None:
            return
        try:
            self.sync_bridge.notify(SyncEvent(kind=kind, payload=payload, context=dict(context)))
        except Exception:
            logger.warning("Sync bridge failed for %s", kind.value, exc_info=True)

    # -- shared mutations ----------------------------------------------------

    def delete_annotation(
        self, annotation_id: str, context: dict[str, Any] | None = None
    ) -> Annotation:
        """Remove exactly one record. Raises ``NotFoundError`` if unknown."""
        image_id, live = self._locate(annotation_id)
        if self.drag.is_dragging and self.drag.annotation is live:
            self.interrupt_drag("annotation deleted")
        with self._transaction(image_id):
            self._by_image[image_id] = [a for a in self._by_image[image_id] if a is not live]
        removed = live.copy()
        ctx = self._context(image_id, context)
        self._emit(AnnotationDeleted(annotation=removed, context=ctx))
        self._notify_sync(SyncEventKind.annotation_delete, removed.to_dict(), ctx)
        logger.info("Deleted annotation %s from %s", annotation_id, image_id)
        return removed

    def update_annotation_order(
        self, annotation_id: str, new_order: int, context: dict[str, Any] | None = None
    ) -> Annotation:
        """Give a record a new order within its scope.

        Collisions are rejected with ``ValidationError``; gaps are left as-is
        (use ``reorder_annotations``/``renumber`` to close them).
        """
        image_id, _ = self._locate(annotation_id)
        live = check_order_update(self._by_image[image_id], annotation_id, new_order)
        if live.order == new_order:
            return live.copy()
        previous = live.copy()
        with self._transaction(image_id):
            live.order = new_order
            live.touch()
        updated = live.copy()
        ctx = self._context(image_id, context)
        self._emit(AnnotationUpdated(annotation=updated, previous=previous, context=ctx))
        self._notify_sync(SyncEventKind.annotation_update, updated.to_dict(), ctx)
        return updated

    def _apply_update(
        self,
        annotation_id: str,
        change: Callable[[Annotation], None],
        context: dict[str, Any] | None = None,
    ) -> Annotation:
        image_id, live = self._locate(annotation_id)
        previous = live.copy()
        with self._transaction(image_id):
            change(live)
            live.touch()
        updated = live.copy()
        ctx = self._context(image_id, context)
        self._emit(AnnotationUpdated(annotation=updated, previous=previous, context=ctx))
        self._notify_sync(SyncEventKind.annotation_update, updated.to_dict(), ctx)
        return updated

    # -- drag hosting --------------------------------------------------------

    @property
    def dragging(self) -> Annotation | None:
        """Copy of the record being dragged, or None."""
        live = self.drag.annotation
        return live.copy() if live is not None else None

    def start_drag(
        self,
        annotation_id: str,
        pointer: tuple[float, float],
        scale: float = 1.0,
        image_size: tuple[float, float] | None = None,
    ) -> Annotation:
        """Begin repositioning a record. Returns a copy of it."""
        image_id, live = self._locate(annotation_id)
        self.drag.start_drag(live, pointer, scale=scale, image_size=image_size)
        self._drag_image_id = image_id
        self._drag_before = live.copy()
        return live.copy()

    def update_drag(self, pointer: tuple[float, float], scale: float | None = None) -> bool:
        return self.drag.update_drag(pointer, scale=scale)

    def finish_drag(self, context: dict[str, Any] | None = None) -> DragResult | None:
        """Commit the drag; persist and emit ``AnnotationUpdated`` only if moved."""
        image_id, before = self._drag_image_id, self._drag_before
        live = self.drag.annotation
        result = self.drag.finish_drag()
        self._drag_image_id = None
        self._drag_before = None
        if result is None or live is None or image_id is None:
            return None
        if not result.moved:
            return DragResult(live.copy(), moved=False, start=result.start, end=result.end)

        try:
            with self._transaction(image_id):
                live.touch()
        except CollaboratorError:
            _, restored = self._locate(live.id)
            result.start.apply_to(restored)
            raise
        updated = live.copy()
        ctx = self._context(image_id, context)
        self._emit(AnnotationUpdated(annotation=updated, previous=before, context=ctx))
        self._notify_sync(SyncEventKind.annotation_update, updated.to_dict(), ctx)
        return DragResult(annotation=updated, moved=True, start=result.start, end=result.end)

    def cancel_drag(self) -> bool:
        """Restore the dragged record. Idempotent; returns False when idle."""
        restored = self.drag.cancel_drag()
        self._drag_image_id = None
        self._drag_before = None
        return restored is not None

    def interrupt_drag(self, reason: str) -> bool:
        """Cancel an in-progress drag on behalf of another action and log it."""
        live = self.drag.annotation
        if live is None:
            return False
        self.cancel_drag()
        logger.warning("Drag of %s interrupted: %s", live.id, reason)
        self._emit(DragInterrupted(annotation=live.copy(), reason=reason))
        return True
