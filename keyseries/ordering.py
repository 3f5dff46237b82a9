"""Sequence-number rules for per-image annotation collections.

Orders are unique within a ``Scope``: all regular keypoints of an image share
one scope, and each custom type has its own. Functions here are pure apart
from ``renumber``, which rewrites ``order``/``updated_at`` in place.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from keyseries.errors import NotFoundError, ValidationError
from keyseries.types import REGULAR_SCOPE, Annotation, AnnotationKind, Scope


def scope_of(annotation: Annotation) -> Scope:
    return annotation.scope


def in_scope(annotations: Iterable[Annotation], scope: Scope) -> list[Annotation]:
    """Annotations that belong to *scope*, in list order."""
    return [a for a in annotations if a.scope == scope]


def group_by_scope(annotations: Iterable[Annotation]) -> dict[Scope, list[Annotation]]:
    """Partition annotations by scope, keeping first-seen scope order."""
    groups: dict[Scope, list[Annotation]] = {}
    for ann in annotations:
        groups.setdefault(ann.scope, []).append(ann)
    return groups


# ---------------------------------------------------------------------------
# Next order
# ---------------------------------------------------------------------------


def next_order(scope_annotations: Sequence[Annotation]) -> int:
    """1 for an empty scope, else ``max(order) + 1``. Gaps are never filled."""
    if not scope_annotations:
        return 1
    return max(a.order for a in scope_annotations) + 1


def next_order_for_type(all_annotations: Iterable[Annotation], type_id: str) -> int:
    return next_order(in_scope(all_annotations, Scope.custom(type_id)))


def next_regular_order(all_annotations: Iterable[Annotation]) -> int:
    return next_order(in_scope(all_annotations, REGULAR_SCOPE))


def next_order_in_scope(all_annotations: Iterable[Annotation], scope: Scope) -> int:
    return next_order(in_scope(all_annotations, scope))


def first_missing_order(scope_annotations: Iterable[Annotation]) -> int:
    """Smallest positive order not in use (fills gaps, unlike ``next_order``)."""
    used = {a.order for a in scope_annotations}
    order = 1
    while order in used:
        order += 1
    return order


# ---------------------------------------------------------------------------
# Density
# ---------------------------------------------------------------------------


def detect_gaps(scope_annotations: Iterable[Annotation]) -> list[int]:
    """Integers missing between the scope's min and max order."""
    orders = {a.order for a in scope_annotations}
    if not orders:
        return []
    return [o for o in range(min(orders), max(orders) + 1) if o not in orders]


def renumber(scope_annotations: list[Annotation]) -> int:
    """Reassign dense orders ``1..N`` by current order.

    The sort is stable, so ties keep their list position. The list itself is
    reordered to match. Only records whose order actually changes get a new
    ``updated_at``. Returns the number of records changed.
    """
    ranked = sorted(scope_annotations, key=lambda a: a.order)
    changed = 0
    for new_order, ann in enumerate(ranked, start=1):
        if ann.order != new_order:
            ann.order = new_order
            ann.touch()
            changed += 1
    scope_annotations[:] = ranked
    return changed


def renumber_all(annotations: list[Annotation]) -> int:
    """Renumber every scope in a mixed collection. Returns records changed.

    The mixed list keeps its original positions; each scope is renumbered
    independently.
    """
    changed = 0
    for members in group_by_scope(annotations).values():
        changed += renumber(members)
    return changed


def check_order_update(
    all_annotations: Iterable[Annotation], annotation_id: str, new_order: int
) -> Annotation:
    """Validate moving *annotation_id* to *new_order*; return the record.

    Raises:
        NotFoundError: no annotation with that id.
        ValidationError: order is not a positive int or is taken in the scope.
    """
    annotations = list(all_annotations)
    target = next((a for a in annotations if a.id == annotation_id), None)
    if target is None:
        raise NotFoundError("annotation", annotation_id)
    if isinstance(new_order, bool) or not isinstance(new_order, int) or new_order < 1:
        raise ValidationError(f"Order must be a positive integer, got {new_order!r}")
    for other in in_scope(annotations, target.scope):
        if other.id != annotation_id and other.order == new_order:
            raise ValidationError(
                f"Order {new_order} is already used by {other.id} in scope {target.scope.label}"
            )
    return target


# ---------------------------------------------------------------------------
# Statistics
# ---------------------------------------------------------------------------


@dataclass
class ScopeStats:
    """Summary of one scope's numbering."""

    scope: Scope
    count: int = 0
    min_order: int | None = None
    max_order: int | None = None
    gaps: list[int] = field(default_factory=list)
    duplicates: list[int] = field(default_factory=list)

    @property
    def is_dense(self) -> bool:
        return not self.gaps and not self.duplicates and (self.min_order in (None, 1))

    def to_dict(self) -> dict:
        return {
            "scope": self.scope.label,
            "count": self.count,
            "minOrder": self.min_order,
            "maxOrder": self.max_order,
            "gaps": list(self.gaps),
            "duplicates": list(self.duplicates),
        }


def scope_stats(annotations: Iterable[Annotation]) -> dict[Scope, ScopeStats]:
    """Count, order range, gaps and duplicate orders per scope."""
    result: dict[Scope, ScopeStats] = {}
    for scope, members in group_by_scope(annotations).items():
        orders = [a.order for a in members]
        seen: set[int] = set()
        dupes: set[int] = set()
        for o in orders:
            if o in seen:
                dupes.add(o)
            seen.add(o)
        result[scope] = ScopeStats(
            scope=scope,
            count=len(members),
            min_order=min(orders),
            max_order=max(orders),
            gaps=detect_gaps(members),
            duplicates=sorted(dupes),
        )
    return result


def count_by_kind(annotations: Iterable[Annotation]) -> dict[AnnotationKind, int]:
    counts = {kind: 0 for kind in AnnotationKind}
    for ann in annotations:
        counts[ann.annotation_type] += 1
    return counts
