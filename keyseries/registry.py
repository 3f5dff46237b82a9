"""Registry of user-defined custom annotation types."""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import Any

from keyseries.errors import NotFoundError, ValidationError
from keyseries.types import AnnotationType, MarkerKind, utc_now

logger = logging.getLogger(__name__)

_REQUIRED_FIELDS = ("id", "name", "kind", "color")
_MUTABLE_FIELDS = ("name", "color", "description", "metadata")
_IMMUTABLE_FIELDS = ("id", "kind")


@dataclass
class TypeUpdate:
    """Result of ``CustomTypeRegistry.update``."""

    type: AnnotationType
    warnings: list[str] = field(default_factory=list)


class CustomTypeRegistry:
    """Stores custom type descriptors keyed by id, in creation order.

    Returned descriptors are copies; mutate through ``update``.
    """

    def __init__(self, max_types: int = 20) -> None:
        self.max_types = max_types
        self._types: dict[str, AnnotationType] = {}

    def __len__(self) -> int:
        return len(self._types)

    def __contains__(self, type_id: object) -> bool:
        return type_id in self._types

    # -- queries ------------------------------------------------------------

    def get(self, type_id: str) -> AnnotationType | None:
        found = self._types.get(type_id)
        return copy.deepcopy(found) if found is not None else None

    def require(self, type_id: str) -> AnnotationType:
        """Like ``get`` but raises ``NotFoundError`` for unknown ids."""
        found = self.get(type_id)
        if found is None:
            raise NotFoundError("custom type", type_id)
        return found

    def all(self) -> list[AnnotationType]:
        return [copy.deepcopy(t) for t in self._types.values()]

    def ids(self) -> list[str]:
        return list(self._types)

    # -- mutations ----------------------------------------------------------

    def create(
        self,
        id: str,
        name: str,
        kind: MarkerKind | str,
        color: str,
        description: str = "",
        metadata: dict[str, Any] | None = None,
    ) -> AnnotationType:
        """Validate and register a new type.

        Raises:
            ValidationError: missing field, bad kind, duplicate id or cap reached.
        """
        values = {"id": id, "name": name, "kind": kind, "color": color}
        missing = [f for f in _REQUIRED_FIELDS if not values[f]]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")
        try:
            marker_kind = MarkerKind(kind)
        except ValueError:
            raise ValidationError('Invalid kind: must be "point" or "region"') from None
        if id in self._types:
            raise ValidationError(f'Custom type with id "{id}" already exists')
        if len(self._types) >= self.max_types:
            raise ValidationError(f"Maximum number of custom types ({self.max_types}) reached")

        now = utc_now()
        created = AnnotationType(
            id=id,
            name=name,
            kind=marker_kind,
            color=color,
            description=description or "",
            metadata=copy.deepcopy(metadata or {}),
            created_at=now,
            updated_at=now,
        )
        self._types[id] = created
        logger.info("Created custom type %s (%s)", id, marker_kind.value)
        return copy.deepcopy(created)

    def create_from_dict(self, data: dict[str, Any]) -> AnnotationType:
        """``create`` from a JSON-style record (accepts legacy ``type`` for kind)."""
        return self.create(
            id=data.get("id", ""),
            name=data.get("name", ""),
            kind=data.get("kind", data.get("type", "")),
            color=data.get("color", ""),
            description=data.get("description", ""),
            metadata=data.get("metadata"),
        )

    def update(self, type_id: str, changes: dict[str, Any]) -> TypeUpdate:
        """Merge *changes* into a type. ``id`` and ``kind`` cannot change.

        Attempts to change them, and unknown keys, are ignored and reported in
        ``TypeUpdate.warnings``.
        """
        current = self._types.get(type_id)
        if current is None:
            raise NotFoundError("custom type", type_id)

        warnings: list[str] = []
        updated = copy.deepcopy(current)
        for key, value in changes.items():
            if key in _IMMUTABLE_FIELDS:
                existing = getattr(current, key)
                if key == "kind":
                    existing = existing.value
                if value != existing:
                    warnings.append(f"Field {key!r} is immutable; change ignored")
                continue
            if key not in _MUTABLE_FIELDS:
                warnings.append(f"Unknown field {key!r} ignored")
                continue
            if key in ("name", "color") and not value:
                raise ValidationError(f"Field {key!r} must not be empty")
            setattr(updated, key, copy.deepcopy(value))

        updated.updated_at = utc_now()
        self._types[type_id] = updated
        for message in warnings:
            logger.warning("Custom type %s: %s", type_id, message)
        return TypeUpdate(type=copy.deepcopy(updated), warnings=warnings)

    def remove(self, type_id: str) -> AnnotationType:
        """Unregister a type. Cascading to annotations is the manager's job."""
        removed = self._types.pop(type_id, None)
        if removed is None:
            raise NotFoundError("custom type", type_id)
        logger.info("Removed custom type %s", type_id)
        return removed

    def add_existing(self, annotation_type: AnnotationType) -> bool:
        """Register an already-built type (import / remote sync).

        Returns False and leaves the registry unchanged if the id exists.
        Raises ``ValidationError`` when the cap is reached.
        """
        if annotation_type.id in self._types:
            return False
        if len(self._types) >= self.max_types:
            raise ValidationError(f"Maximum number of custom types ({self.max_types}) reached")
        self._types[annotation_type.id] = copy.deepcopy(annotation_type)
        return True

    def load(self, types: list[AnnotationType]) -> None:
        """Replace the registry contents (e.g. from persisted ``custom_types.json``)."""
        if len(types) > self.max_types:
            raise ValidationError(f"Maximum number of custom types ({self.max_types}) reached")
        loaded: dict[str, AnnotationType] = {}
        for t in types:
            if t.id in loaded:
                raise ValidationError(f'Custom type with id "{t.id}" already exists')
            loaded[t.id] = copy.deepcopy(t)
        self._types = loaded

    def clear(self) -> None:
        self._types.clear()
