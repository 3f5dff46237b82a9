"""Custom annotation manager: custom types, custom markers and input mode.

The manager is the single writer of every image's custom markers. It enforces
the creation rules (type exists, region size, per-image cap), numbers markers
independently per custom type, hosts the drag-reposition state machine and
publishes typed events on its ``EventBus``.

Callers pass ``image_id`` and any extra sync context (plant, view angle)
explicitly; the manager never looks up ambient application state.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import Any

from keyseries.collection import AnnotationCollection, AnnotationSource
from keyseries.config import DragConfig, LimitsConfig
from keyseries.errors import CollaboratorError, NotFoundError, ValidationError
from keyseries.events import (
    AnnotationCreated,
    AnnotationDeleted,
    AnnotationsReordered,
    AnnotationUpdated,
    EventBus,
    ModeChanged,
    TypeCreated,
    TypeDeleted,
    TypeUpdated,
)
from keyseries.migration import migrate_record
from keyseries.ordering import group_by_scope, in_scope, next_order_for_type, renumber
from keyseries.providers import PersistenceProvider, SyncBridge, SyncEventKind, TypeStore
from keyseries.registry import CustomTypeRegistry, TypeUpdate
from keyseries.types import (
    Annotation,
    AnnotationKind,
    AnnotationType,
    CustomAnnotation,
    CustomPointAnnotation,
    CustomRegionAnnotation,
    MarkerKind,
    Scope,
    generate_annotation_id,
    utc_now,
)
from keyseries.utils.geometry import region_from_corners

logger = logging.getLogger(__name__)

EXPORT_VERSION = "1.0"


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AnnotationMode:
    """``Normal`` when ``type_id`` is None, else ``Custom(type_id)``."""

    type_id: str | None = None

    @property
    def is_custom(self) -> bool:
        return self.type_id is not None

    def __str__(self) -> str:
        return f"Custom({self.type_id})" if self.is_custom else "Normal"


NORMAL_MODE = AnnotationMode()


@dataclass
class InputResult:
    """Outcome of routing a pointer gesture in custom mode."""

    success: bool
    annotation: Annotation | None = None
    reason: str | None = None


@dataclass
class TypeStats:
    type_id: str
    type_name: str
    color: str
    kind: str
    count: int = 0
    min_order: int | None = None
    max_order: int | None = None
    gaps: list[int] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "count": self.count,
            "typeName": self.type_name,
            "typeColor": self.color,
            "kind": self.kind,
            "orderRange": [self.min_order, self.max_order],
            "gaps": list(self.gaps),
        }


@dataclass
class ImageAnnotationStats:
    image_id: str
    total: int = 0
    by_type: dict[str, TypeStats] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "imageId": self.image_id,
            "total": self.total,
            "byType": {k: v.to_dict() for k, v in self.by_type.items()},
        }


@dataclass
class ImportResult:
    types_added: int = 0
    types_skipped: int = 0
    annotations_added: int = 0
    annotations_skipped: int = 0
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "typesAdded": self.types_added,
            "typesSkipped": self.types_skipped,
            "annotationsAdded": self.annotations_added,
            "annotationsSkipped": self.annotations_skipped,
            "warnings": list(self.warnings),
        }


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


class CustomAnnotationManager(AnnotationCollection):
    """Owns custom types and the custom markers of every loaded image."""

    kind = AnnotationKind.custom

    def __init__(
        self,
        limits: LimitsConfig | None = None,
        registry: CustomTypeRegistry | None = None,
        persistence: PersistenceProvider | None = None,
        sync_bridge: SyncBridge | None = None,
        companion: AnnotationSource | None = None,
        events: EventBus | None = None,
        drag_config: DragConfig | None = None,
        type_store: TypeStore | None = None,
    ) -> None:
        self.limits = limits or LimitsConfig()
        drag_config = drag_config or DragConfig()
        super().__init__(
            persistence=persistence,
            events=events,
            sync_bridge=sync_bridge,
            companion=companion,
            move_threshold=drag_config.move_threshold,
        )
        self.registry = registry or CustomTypeRegistry(max_types=self.limits.max_custom_types)
        self.type_store = type_store
        self._mode = NORMAL_MODE

    # -----------------------------------------------------------------------
    # Mode
    # -----------------------------------------------------------------------

    @property
    def mode(self) -> AnnotationMode:
        return self._mode

    @property
    def active_type(self) -> AnnotationType | None:
        if self._mode.type_id is None:
            return None
        return self.registry.get(self._mode.type_id)

    def set_mode(self, type_id: str | None) -> AnnotationMode:
        """Switch to ``Custom(type_id)``, or to ``Normal`` when *type_id* is None.

        Any drag in progress is cancelled first. Raises ``NotFoundError`` if
        the type does not exist (the mode is left unchanged).
        """
        if type_id is not None and type_id not in self.registry:
            raise NotFoundError("custom type", type_id)
        return self._switch_mode(AnnotationMode(type_id), reason="mode switch")

    def exit_custom_mode(self) -> AnnotationMode:
        return self._switch_mode(NORMAL_MODE, reason="mode switch")

    def _switch_mode(self, new_mode: AnnotationMode, reason: str) -> AnnotationMode:
        if new_mode == self._mode:
            return self._mode
        self.interrupt_drag(reason)
        previous = self._mode
        self._mode = new_mode
        logger.info("Annotation mode %s -> %s", previous, new_mode)
        self._emit(ModeChanged(previous_type_id=previous.type_id, type_id=new_mode.type_id))
        return new_mode

    # -----------------------------------------------------------------------
    # Custom types
    # -----------------------------------------------------------------------

    def create_type(
        self,
        id: str,
        name: str,
        kind: MarkerKind | str,
        color: str,
        description: str = "",
        metadata: dict[str, Any] | None = None,
    ) -> AnnotationType:
        created = self.registry.create(
            id=id, name=name, kind=kind, color=color, description=description, metadata=metadata
        )
        try:
            self._persist_types()
        except CollaboratorError:
            self.registry.remove(created.id)
            raise
        self._emit(TypeCreated(annotation_type=created))
        self._notify_sync(SyncEventKind.type_create, created.to_dict(), {})
        return created

    def update_type(self, type_id: str, changes: dict[str, Any]) -> TypeUpdate:
        """Merge *changes*; ``id``/``kind`` changes are ignored with a warning."""
        before = self.registry.require(type_id)
        result = self.registry.update(type_id, changes)
        try:
            self._persist_types()
        except CollaboratorError:
            self.registry.remove(type_id)
            self.registry.add_existing(before)
            raise
        self._emit(TypeUpdated(annotation_type=result.type, warnings=tuple(result.warnings)))
        self._notify_sync(SyncEventKind.type_update, result.type.to_dict(), {})
        return result

    def get_type(self, type_id: str) -> AnnotationType | None:
        return self.registry.get(type_id)

    def types(self) -> list[AnnotationType]:
        return self.registry.all()

    def delete_type(self, type_id: str, context: dict[str, Any] | None = None) -> list[Annotation]:
        """Delete a type and cascade to every marker that references it.

        Emits one ``AnnotationDeleted`` per removed marker (images in
        insertion order, markers in list order), then ``TypeDeleted``, then
        ``ModeChanged`` if the active mode used the type.
        """
        removed_type = self.registry.require(type_id)
        dragging = self.drag.annotation
        if dragging is not None and getattr(dragging, "custom_type_id", None) == type_id:
            self.interrupt_drag("custom type deleted")

        affected = [
            image_id
            for image_id, records in self._by_image.items()
            if any(a.custom_type_id == type_id for a in records)
        ]
        removed: list[tuple[str, Annotation]] = []
        registry_snapshot = self.registry.all()
        try:
            with self._transaction(*affected):
                for image_id in affected:
                    kept = []
                    for ann in self._by_image[image_id]:
                        if ann.custom_type_id == type_id:
                            removed.append((image_id, ann.copy()))
                        else:
                            kept.append(ann)
                    self._by_image[image_id] = kept
                self.registry.remove(type_id)
                self._persist_types()
        except Exception:
            self.registry.load(registry_snapshot)
            raise

        for image_id, ann in removed:
            ctx = self._context(image_id, context)
            self._emit(AnnotationDeleted(annotation=ann, cascade_type_id=type_id, context=ctx))
            self._notify_sync(SyncEventKind.annotation_delete, ann.to_dict(), ctx)
        self._emit(
            TypeDeleted(
                annotation_type=removed_type,
                removed_annotation_ids=tuple(a.id for _, a in removed),
            )
        )
        self._notify_sync(SyncEventKind.type_delete, removed_type.to_dict(), {})
        logger.info("Deleted custom type %s and %d annotation(s)", type_id, len(removed))

        if self._mode.type_id == type_id:
            self._switch_mode(NORMAL_MODE, reason="custom type deleted")
        return [a for _, a in removed]

    def reload_types(self, types: list[AnnotationType] | None = None) -> None:
        """Replace the type list (from the type store when *types* is None).

        The type list is invalidated, so the mode returns to ``Normal``.
        """
        if types is None:
            types = self.type_store.load_custom_types() if self.type_store else []
        self.registry.load(types)
        self._switch_mode(NORMAL_MODE, reason="custom types reloaded")

    def _persist_types(self) -> None:
        if self.type_store is not None:
            self.type_store.save_custom_types(self.registry.all())

    # -----------------------------------------------------------------------
    # Markers
    # -----------------------------------------------------------------------

    def create_annotation(
        self,
        type_id: str,
        x: float,
        y: float,
        image_id: str,
        width: float | None = None,
        height: float | None = None,
        metadata: dict[str, Any] | None = None,
        context: dict[str, Any] | None = None,
    ) -> CustomAnnotation:
        """Validate, number, append and persist a new custom marker.

        Raises:
            NotFoundError: unknown type.
            ValidationError: undersized region or per-image cap reached.
            CollaboratorError: persistence failed (nothing is changed).
        """
        annotation_type = self.registry.get(type_id)
        if annotation_type is None:
            raise NotFoundError("custom type", type_id)

        records = self._by_image.get(image_id, [])
        if len(records) >= self.limits.max_annotations_per_image:
            raise ValidationError(
                "Maximum number of annotations per image "
                f"({self.limits.max_annotations_per_image}) reached"
            )

        now = utc_now()
        common: dict[str, Any] = {
            "id": self._new_id(),
            "x": x,
            "y": y,
            "order": next_order_for_type(records, type_id),
            "image_id": image_id,
            "custom_type_id": type_id,
            "metadata": copy.deepcopy(metadata or {}),
            "created_at": now,
            "updated_at": now,
        }
        annotation: CustomAnnotation
        if annotation_type.kind == MarkerKind.region:
            if width is None or height is None:
                raise ValidationError("Region annotations require width and height")
            min_size = self.limits.min_region_size
            if width < min_size or height < min_size:
                raise ValidationError(f"Region size must be at least {min_size:g}px")
            annotation = CustomRegionAnnotation(width=width, height=height, **common)
        else:
            annotation = CustomPointAnnotation(**common)

        with self._transaction(image_id):
            self._by_image.setdefault(image_id, []).append(annotation)

        created = annotation.copy()
        ctx = self._context(image_id, context)
        self._emit(AnnotationCreated(annotation=created, context=ctx))
        self._notify_sync(SyncEventKind.annotation_create, created.to_dict(), ctx)
        logger.debug(
            "Created %s annotation %s (order %d) on %s",
            type_id,
            created.id,
            created.order,
            image_id,
        )
        return created

    def _new_id(self) -> str:
        while True:
            candidate = generate_annotation_id("custom_ann")
            if candidate not in self:
                return candidate

    def handle_click(
        self, x: float, y: float, image_id: str, context: dict[str, Any] | None = None
    ) -> InputResult:
        """Route a click in custom mode: creates a point marker."""
        annotation_type, reason = self._active_type_for(MarkerKind.point)
        if annotation_type is None:
            return InputResult(success=False, reason=reason)
        return self._create_from_input(annotation_type.id, x, y, image_id, context=context)

    def handle_region(
        self,
        start: tuple[float, float],
        end: tuple[float, float],
        image_id: str,
        context: dict[str, Any] | None = None,
    ) -> InputResult:
        """Route a press/move/release gesture in custom mode: creates a region."""
        annotation_type, reason = self._active_type_for(MarkerKind.region)
        if annotation_type is None:
            return InputResult(success=False, reason=reason)
        x, y, w, h = region_from_corners(start[0], start[1], end[0], end[1])
        return self._create_from_input(annotation_type.id, x, y, image_id, w, h, context)

    def _active_type_for(self, kind: MarkerKind) -> tuple[AnnotationType | None, str | None]:
        if not self._mode.is_custom:
            return None, "Not in custom mode"
        annotation_type = self.active_type
        if annotation_type is None:
            return None, "No custom type selected"
        if annotation_type.kind != kind:
            return None, f"Selected type is not a {kind.value} type"
        return annotation_type, None

    def _create_from_input(
        self,
        type_id: str,
        x: float,
        y: float,
        image_id: str,
        width: float | None = None,
        height: float | None = None,
        context: dict[str, Any] | None = None,
    ) -> InputResult:
        try:
            created = self.create_annotation(
                type_id, x, y, image_id, width=width, height=height, context=context
            )
        except (ValidationError, NotFoundError) as e:
            logger.info("Custom input rejected: %s", e)
            return InputResult(success=False, reason=str(e))
        return InputResult(success=True, annotation=created)

    def update_annotation(
        self,
        annotation_id: str,
        x: float | None = None,
        y: float | None = None,
        width: float | None = None,
        height: float | None = None,
        metadata: dict[str, Any] | None = None,
        context: dict[str, Any] | None = None,
    ) -> CustomAnnotation:
        """Edit geometry or metadata. Type, id and order are not changed here."""
        _, live = self._locate(annotation_id)
        if width is not None or height is not None:
            if not isinstance(live, CustomRegionAnnotation):
                raise ValidationError(f"Annotation {annotation_id} is not a region")
            min_size = self.limits.min_region_size
            new_w = live.width if width is None else width
            new_h = live.height if height is None else height
            if new_w < min_size or new_h < min_size:
                raise ValidationError(f"Region size must be at least {min_size:g}px")

        def change(ann: Any) -> None:
            if x is not None:
                ann.x = x
            if y is not None:
                ann.y = y
            if width is not None:
                ann.width = width
            if height is not None:
                ann.height = height
            if metadata is not None:
                ann.metadata = copy.deepcopy(metadata)

        return self._apply_update(annotation_id, change, context)

    def annotations_for_type(self, image_id: str, type_id: str) -> list[Annotation]:
        return [a.copy() for a in in_scope(self._by_image.get(image_id, []), Scope.custom(type_id))]

    def reorder_annotations(self, image_id: str, type_id: str | None = None) -> int:
        """Renumber one type's scope (or every type scope) densely.

        Returns the number of records whose order changed.
        """
        if type_id is not None:
            self.registry.require(type_id)
        records = self._by_image.get(image_id)
        if not records:
            return 0
        changed = 0
        with self._transaction(image_id):
            for scope, members in group_by_scope(records).items():
                if type_id is None or scope.custom_type_id == type_id:
                    changed += renumber(members)
        type_ids = (type_id,) if type_id else tuple(
            s.custom_type_id for s in group_by_scope(records) if s.custom_type_id
        )
        self._emit(AnnotationsReordered(image_id=image_id, type_ids=type_ids, changed=changed))
        logger.debug("Reordered %s on %s (%d changed)", type_ids, image_id, changed)
        return changed

    # -----------------------------------------------------------------------
    # Statistics
    # -----------------------------------------------------------------------

    def annotation_stats(self, image_id: str) -> ImageAnnotationStats:
        """Per-type counts, order ranges and gaps for one image."""
        records = self._by_image.get(image_id, [])
        stats = ImageAnnotationStats(image_id=image_id, total=len(records))
        for scope, members in group_by_scope(records).items():
            type_id = scope.custom_type_id or ""
            annotation_type = self.registry.get(type_id)
            orders = sorted(a.order for a in members)
            present = set(orders)
            stats.by_type[type_id] = TypeStats(
                type_id=type_id,
                type_name=annotation_type.name if annotation_type else "Unknown",
                color=annotation_type.color if annotation_type else "#000000",
                kind=annotation_type.kind.value if annotation_type else "unknown",
                count=len(members),
                min_order=orders[0],
                max_order=orders[-1],
                gaps=[o for o in range(orders[0], orders[-1] + 1) if o not in present],
            )
        return stats

    def stats(self) -> dict[str, Any]:
        """Totals across every loaded image."""
        by_type: dict[str, int] = {t: 0 for t in self.registry.ids()}
        total = 0
        for records in self._by_image.values():
            for ann in records:
                by_type[ann.custom_type_id] = by_type.get(ann.custom_type_id, 0) + 1
                total += 1
        return {
            "totalTypes": len(self.registry),
            "totalAnnotations": total,
            "imagesWithAnnotations": sum(1 for r in self._by_image.values() if r),
            "byType": by_type,
            "mode": str(self._mode),
        }

    # -----------------------------------------------------------------------
    # Bulk interchange
    # -----------------------------------------------------------------------

    def export_data(self) -> dict[str, Any]:
        """Bulk export of every type and marker (images in insertion order)."""
        return {
            "version": EXPORT_VERSION,
            "exportTime": utc_now(),
            "customTypes": [t.to_dict() for t in self.registry.all()],
            "customAnnotations": [a.to_dict() for a in self.all_annotations()],
        }

    def import_data(self, payload: dict[str, Any]) -> ImportResult:
        """Import a bulk export. Existing type and annotation ids are skipped."""
        result = ImportResult()
        version = payload.get("version")
        if version != EXPORT_VERSION:
            logger.warning("Importing data with version %r (expected %s)", version, EXPORT_VERSION)

        registry_snapshot = self.registry.all()
        new_types = 0
        try:
            for raw in payload.get("customTypes") or []:
                try:
                    annotation_type = AnnotationType.from_dict(raw)
                except (KeyError, ValueError) as e:
                    result.types_skipped += 1
                    result.warnings.append(f"Invalid custom type {raw.get('id')!r}: {e}")
                    continue
                if self.registry.add_existing(annotation_type):
                    new_types += 1
                else:
                    result.types_skipped += 1
        except ValidationError:
            self.registry.load(registry_snapshot)
            raise

        staged: list[tuple[str, Annotation]] = []
        seen_ids: set[str] = set()
        for raw in payload.get("customAnnotations") or []:
            record, _ = migrate_record(raw)
            try:
                annotation = Annotation.from_dict(record)
            except (KeyError, TypeError, ValueError) as e:
                result.annotations_skipped += 1
                result.warnings.append(f"Invalid annotation {raw.get('id')!r}: {e}")
                continue
            skip_reason = self._import_skip_reason(annotation, seen_ids, staged)
            if skip_reason:
                result.annotations_skipped += 1
                if skip_reason != "duplicate id":
                    result.warnings.append(f"{annotation.id}: {skip_reason}")
                continue
            seen_ids.add(annotation.id)
            staged.append((annotation.image_id, annotation))

        affected = list(dict.fromkeys(image_id for image_id, _ in staged))
        try:
            with self._transaction(*affected):
                for image_id, annotation in staged:
                    self._by_image.setdefault(image_id, []).append(annotation)
                if new_types:
                    self._persist_types()
        except Exception:
            self.registry.load(registry_snapshot)
            raise

        result.types_added = new_types
        result.annotations_added = len(staged)
        for image_id, annotation in staged:
            ctx = self._context(image_id, {"source": "import"})
            self._emit(AnnotationCreated(annotation=annotation.copy(), context=ctx))
        for message in result.warnings:
            logger.warning("Import: %s", message)
        logger.info(
            "Imported %d type(s) and %d annotation(s), skipped %d",
            result.types_added,
            result.annotations_added,
            result.annotations_skipped,
        )
        return result

    def _import_skip_reason(
        self,
        annotation: Annotation,
        seen_ids: set[str],
        staged: list[tuple[str, Annotation]],
    ) -> str | None:
        if not isinstance(annotation, CustomAnnotation):
            return "not a custom annotation"
        if annotation.id in seen_ids or annotation.id in self:
            return "duplicate id"
        if annotation.custom_type_id not in self.registry:
            return f"unknown custom type {annotation.custom_type_id!r}"
        if annotation.image_id is None:
            return "missing imageId"
        pending = sum(1 for image_id, _ in staged if image_id == annotation.image_id)
        current = len(self._by_image.get(annotation.image_id, []))
        if current + pending >= self.limits.max_annotations_per_image:
            return f"image {annotation.image_id} is full"
        return None

    # -----------------------------------------------------------------------
    # Inbound sync
    # -----------------------------------------------------------------------

    def apply_remote_create(self, annotation: Annotation | dict[str, Any]) -> bool:
        """Add a marker created by another client. Returns False if skipped.

        Skips ids already present and markers of unknown types. Does not
        notify the sync bridge.
        """
        incoming = self._coerce(annotation)
        if not isinstance(incoming, CustomAnnotation) or incoming.image_id is None:
            logger.warning("Remote create ignored: %s has no custom type or image", incoming.id)
            return False
        if incoming.id in self:
            logger.debug("Remote create ignored: %s already exists", incoming.id)
            return False
        if incoming.custom_type_id not in self.registry:
            logger.warning(
                "Remote create ignored: unknown type %s for %s",
                incoming.custom_type_id,
                incoming.id,
            )
            return False
        image_id = incoming.image_id
        with self._transaction(image_id):
            self._by_image.setdefault(image_id, []).append(incoming)
        ctx = self._context(image_id, {"remote": True})
        self._emit(AnnotationCreated(annotation=incoming.copy(), context=ctx))
        return True

    def apply_remote_update(self, annotation: Annotation | dict[str, Any]) -> bool:
        """Merge a remote edit into an existing marker. Returns False if unknown."""
        incoming = self._coerce(annotation)
        if incoming.id not in self:
            logger.debug("Remote update ignored: %s not found", incoming.id)
            return False
        image_id, live = self._locate(incoming.id)
        previous = live.copy()
        with self._transaction(image_id):
            live.x = incoming.x
            live.y = incoming.y
            live.order = incoming.order
            live.metadata = copy.deepcopy(incoming.metadata)
            if isinstance(live, CustomRegionAnnotation) and isinstance(
                incoming, CustomRegionAnnotation
            ):
                live.width = incoming.width
                live.height = incoming.height
            live.updated_at = incoming.updated_at
        ctx = self._context(image_id, {"remote": True})
        self._emit(AnnotationUpdated(annotation=live.copy(), previous=previous, context=ctx))
        return True

    def apply_remote_delete(self, annotation_id: str) -> bool:
        if annotation_id not in self:
            return False
        image_id, live = self._locate(annotation_id)
        if self.drag.annotation is live:
            self.interrupt_drag("annotation deleted remotely")
        with self._transaction(image_id):
            self._by_image[image_id] = [a for a in self._by_image[image_id] if a is not live]
        ctx = self._context(image_id, {"remote": True})
        self._emit(AnnotationDeleted(annotation=live.copy(), context=ctx))
        return True

    @staticmethod
    def _coerce(annotation: Annotation | dict[str, Any]) -> Annotation:
        if isinstance(annotation, Annotation):
            return annotation.copy()
        record, _ = migrate_record(annotation)
        return Annotation.from_dict(record)
