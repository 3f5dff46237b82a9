"""Store for regular (sequentially numbered) keypoints."""

from __future__ import annotations

import logging
from typing import Any

from keyseries.collection import AnnotationCollection
from keyseries.errors import ValidationError
from keyseries.events import AnnotationCreated, AnnotationsReordered
from keyseries.ordering import first_missing_order, next_order, renumber
from keyseries.providers import SyncEventKind
from keyseries.types import (
    MAX_DIRECTIONS,
    AnnotationKind,
    RegularAnnotation,
    generate_annotation_id,
    utc_now,
)

logger = logging.getLogger(__name__)


class RegularKeypointStore(AnnotationCollection):
    """Owns the regular keypoints of every loaded image.

    New keypoints append after the highest order in use. With
    ``fill_gaps=True`` they take the lowest free order instead.
    """

    kind = AnnotationKind.regular

    def __init__(self, *args: Any, fill_gaps: bool = False, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.fill_gaps = fill_gaps

    def next_order(self, image_id: str) -> int:
        records = self._by_image.get(image_id, [])
        if self.fill_gaps:
            return first_missing_order(records)
        return next_order(records)

    def add_keypoint(
        self,
        image_id: str,
        x: float,
        y: float,
        direction: float | None = None,
        directions: list[float] | None = None,
        order: int | None = None,
        metadata: dict[str, Any] | None = None,
        context: dict[str, Any] | None = None,
    ) -> RegularAnnotation:
        """Create a keypoint. An explicit *order* must be free in the scope."""
        records = self._by_image.get(image_id, [])
        if order is None:
            order = self.next_order(image_id)
        elif order < 1 or any(a.order == order for a in records):
            raise ValidationError(f"Order {order} is not available on {image_id}")
        if directions and len(directions) > MAX_DIRECTIONS:
            raise ValidationError(f"At most {MAX_DIRECTIONS} directions allowed")

        now = utc_now()
        keypoint = RegularAnnotation(
            id=generate_annotation_id("kp"),
            x=x,
            y=y,
            order=order,
            image_id=image_id,
            direction=direction,
            directions=list(directions or []),
            metadata=dict(metadata or {}),
            created_at=now,
            updated_at=now,
        )
        with self._transaction(image_id):
            self._by_image.setdefault(image_id, []).append(keypoint)

        created = keypoint.copy()
        ctx = self._context(image_id, context)
        self._emit(AnnotationCreated(annotation=created, context=ctx))
        self._notify_sync(SyncEventKind.annotation_create, created.to_dict(), ctx)
        logger.debug("Added keypoint %s (order %d) to %s", keypoint.id, order, image_id)
        return created

    def move_keypoint(
        self, annotation_id: str, x: float, y: float, context: dict[str, Any] | None = None
    ) -> RegularAnnotation:
        def change(ann: Any) -> None:
            ann.x = x
            ann.y = y

        return self._apply_update(annotation_id, change, context)

    def set_directions(
        self,
        annotation_id: str,
        directions: list[float],
        context: dict[str, Any] | None = None,
    ) -> RegularAnnotation:
        """Replace a keypoint's direction angles (0 to 8 of them)."""
        if len(directions) > MAX_DIRECTIONS:
            raise ValidationError(f"At most {MAX_DIRECTIONS} directions allowed")

        def change(ann: Any) -> None:
            ann.directions = list(directions)

        return self._apply_update(annotation_id, change, context)

    def renumber(self, image_id: str) -> int:
        """Close order gaps among the image's keypoints. Returns records changed."""
        records = self._by_image.get(image_id)
        if not records:
            return 0
        with self._transaction(image_id):
            changed = renumber(records)
        if changed:
            self._emit(AnnotationsReordered(image_id=image_id, type_ids=(), changed=changed))
        return changed
