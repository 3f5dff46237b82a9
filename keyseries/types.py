"""Core data types for KeySeries.

Every module in the library produces/consumes these types:
- ``Annotation`` variants (regular keypoints, custom points, custom regions)
- ``AnnotationType`` descriptors for user-defined marker kinds
- ``Scope`` keys that partition an image's annotations for numbering
- ``ImageRef`` handles describing one image of a time series

Records serialize to the camelCase JSON shape used by annotation files
(``to_dict``/``from_dict``); Python attributes are snake_case.
"""

from __future__ import annotations

import copy
import enum
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, ClassVar

# Multi-direction keypoints carry at most this many angles
MAX_DIRECTIONS = 8


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class AnnotationKind(str, enum.Enum):
    """Top-level tag of an annotation record (``annotationType`` in JSON)."""

    regular = "regular"
    custom = "custom"


class MarkerKind(str, enum.Enum):
    """Geometry of a custom annotation type."""

    point = "point"
    region = "region"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def utc_now() -> str:
    """Current time as an ISO-8601 UTC string."""
    return datetime.now(timezone.utc).isoformat()


def generate_annotation_id(prefix: str = "ann") -> str:
    """Unique, sortable-enough annotation id."""
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


def normalize_direction(direction: Any) -> float | None:
    """Convert a legacy direction value to an angle in degrees.

    ``"left"`` is 180, ``"right"`` is 0, numbers pass through. Anything else
    (including ``None``) yields ``None``.
    """
    if isinstance(direction, bool):
        return None
    if isinstance(direction, (int, float)):
        return direction
    if direction == "left":
        return 180
    if direction == "right":
        return 0
    return None


def _parse_directions(raw: Any) -> list[float]:
    """Accept plain angles or ``{"angle": ..}`` dicts (older multi-direction files)."""
    if not raw:
        return []
    angles: list[float] = []
    for item in raw:
        if isinstance(item, dict):
            angle = normalize_direction(item.get("angle"))
        else:
            angle = normalize_direction(item)
        if angle is not None:
            angles.append(angle)
    return angles


# ---------------------------------------------------------------------------
# Scope
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Scope:
    """Partition of an image's annotations within which orders are unique.

    All regular annotations form one scope; each custom type forms its own.
    """

    annotation_type: AnnotationKind
    custom_type_id: str | None = None

    @classmethod
    def regular(cls) -> Scope:
        return cls(AnnotationKind.regular)

    @classmethod
    def custom(cls, type_id: str) -> Scope:
        return cls(AnnotationKind.custom, type_id)

    @property
    def is_regular(self) -> bool:
        return self.annotation_type == AnnotationKind.regular

    @property
    def label(self) -> str:
        """Short human-readable label: ``regular`` or ``custom:<type id>``."""
        if self.is_regular:
            return "regular"
        return f"custom:{self.custom_type_id}"


REGULAR_SCOPE = Scope.regular()


# ---------------------------------------------------------------------------
# Custom type descriptor
# ---------------------------------------------------------------------------


@dataclass
class AnnotationType:
    """A user-defined marker kind (special keypoint or key region)."""

    id: str
    name: str
    kind: MarkerKind
    color: str
    description: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "kind": self.kind.value,
            "color": self.color,
            "description": self.description,
            "metadata": copy.deepcopy(self.metadata),
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AnnotationType:
        """Parse a type record. Older exports store the kind under ``type``."""
        kind = data.get("kind", data.get("type"))
        now = utc_now()
        return cls(
            id=data["id"],
            name=data["name"],
            kind=MarkerKind(kind),
            color=data["color"],
            description=data.get("description", ""),
            metadata=copy.deepcopy(data.get("metadata") or {}),
            created_at=data.get("createdAt", now),
            updated_at=data.get("updatedAt", now),
        )


# ---------------------------------------------------------------------------
# Annotation records (tagged variants)
# ---------------------------------------------------------------------------


@dataclass(kw_only=True)
class Annotation:
    """Fields shared by every annotation variant.

    Use one of the concrete subclasses; ``annotation_type`` is the tag that
    ordering and validation dispatch on.
    """

    annotation_type: ClassVar[AnnotationKind]

    id: str
    x: float
    y: float
    order: int
    image_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)

    @property
    def scope(self) -> Scope:
        raise NotImplementedError

    @property
    def is_custom(self) -> bool:
        return self.annotation_type == AnnotationKind.custom

    def touch(self) -> None:
        """Refresh ``updated_at``."""
        self.updated_at = utc_now()

    def copy(self) -> Annotation:
        """Deep copy, so readers never share a live record."""
        return copy.deepcopy(self)

    def _base_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "x": self.x,
            "y": self.y,
            "order": self.order,
            "annotationType": self.annotation_type.value,
        }
        if self.image_id is not None:
            data["imageId"] = self.image_id
        if self.metadata:
            data["metadata"] = copy.deepcopy(self.metadata)
        data["createdAt"] = self.created_at
        data["updatedAt"] = self.updated_at
        return data

    def to_dict(self) -> dict[str, Any]:
        return self._base_dict()

    @staticmethod
    def from_dict(data: dict[str, Any], image_id: str | None = None) -> Annotation:
        """Build the right variant for a JSON record.

        Records without ``annotationType`` are read as regular keypoints.
        Loaders run ``keyseries.migration.migrate_records`` first so the
        fallback is logged; this method only applies it.
        """
        tag = data.get("annotationType") or AnnotationKind.regular.value
        now = utc_now()
        common: dict[str, Any] = {
            "id": str(data["id"]),
            "x": data["x"],
            "y": data["y"],
            "order": data.get("order") or 0,
            "image_id": data.get("imageId", image_id),
            "metadata": copy.deepcopy(data.get("metadata") or {}),
            "created_at": data.get("createdAt", data.get("timestamp", now)),
            "updated_at": data.get("updatedAt", data.get("timestamp", now)),
        }
        if tag == AnnotationKind.regular.value:
            return RegularAnnotation(
                direction=normalize_direction(data.get("direction")),
                directions=_parse_directions(data.get("directions")),
                **common,
            )
        if tag != AnnotationKind.custom.value:
            raise ValueError(f"Unknown annotationType: {tag!r}")

        type_id = data.get("customTypeId", data.get("typeId"))
        if not type_id:
            raise ValueError(f"Custom annotation {data['id']!r} has no customTypeId")
        if data.get("width") is not None and data.get("height") is not None:
            return CustomRegionAnnotation(
                custom_type_id=type_id,
                width=data["width"],
                height=data["height"],
                **common,
            )
        return CustomPointAnnotation(custom_type_id=type_id, **common)


@dataclass(kw_only=True)
class RegularAnnotation(Annotation):
    """A sequentially numbered keypoint (branch point) not tied to a custom type."""

    annotation_type: ClassVar[AnnotationKind] = AnnotationKind.regular

    direction: float | None = None
    directions: list[float] = field(default_factory=list)

    def __post_init__(self) -> None:
        if len(self.directions) > MAX_DIRECTIONS:
            raise ValueError(
                f"At most {MAX_DIRECTIONS} directions allowed, got {len(self.directions)}"
            )

    @property
    def scope(self) -> Scope:
        return REGULAR_SCOPE

    @property
    def angles(self) -> list[float]:
        """All direction angles, falling back to the single legacy direction."""
        if self.directions:
            return list(self.directions)
        if self.direction is not None:
            return [self.direction]
        return []

    def add_direction(self, angle: float) -> None:
        if len(self.directions) >= MAX_DIRECTIONS:
            raise ValueError(f"Keypoint already has {MAX_DIRECTIONS} directions")
        self.directions.append(angle)
        self.touch()

    def to_dict(self) -> dict[str, Any]:
        data = self._base_dict()
        if self.direction is not None:
            data["direction"] = self.direction
        if self.directions:
            data["directions"] = list(self.directions)
        return data


@dataclass(kw_only=True)
class CustomAnnotation(Annotation):
    """Base for markers that belong to a user-defined ``AnnotationType``."""

    annotation_type: ClassVar[AnnotationKind] = AnnotationKind.custom
    marker_kind: ClassVar[MarkerKind]

    custom_type_id: str

    @property
    def scope(self) -> Scope:
        return Scope.custom(self.custom_type_id)

    def _custom_dict(self) -> dict[str, Any]:
        data = self._base_dict()
        data["customTypeId"] = self.custom_type_id
        return data


@dataclass(kw_only=True)
class CustomPointAnnotation(CustomAnnotation):
    """A custom special keypoint."""

    marker_kind: ClassVar[MarkerKind] = MarkerKind.point

    def to_dict(self) -> dict[str, Any]:
        return self._custom_dict()


@dataclass(kw_only=True)
class CustomRegionAnnotation(CustomAnnotation):
    """A custom rectangular key region anchored at its top-left corner."""

    marker_kind: ClassVar[MarkerKind] = MarkerKind.region

    width: float
    height: float

    @property
    def area(self) -> float:
        return self.width * self.height

    def to_dict(self) -> dict[str, Any]:
        data = self._custom_dict()
        data["width"] = self.width
        data["height"] = self.height
        return data


# ---------------------------------------------------------------------------
# Series image handle
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ImageRef:
    """One image of a time series (one plant seen from one view angle)."""

    id: str
    plant_id: str
    view_angle: str
    captured_at: datetime | None = None
    path: Path | None = None
    width: int | None = None
    height: int | None = None

    @property
    def size(self) -> tuple[int, int] | None:
        """(width, height) if known."""
        if self.width is None or self.height is None:
            return None
        return (self.width, self.height)

    @property
    def time_label(self) -> str:
        if self.captured_at is None:
            return "unknown time"
        return self.captured_at.isoformat(sep=" ", timespec="minutes")
