"""Protocols for the collaborators the annotation core depends on."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

import numpy as np

from keyseries.types import Annotation, AnnotationType, ImageRef, utc_now


@runtime_checkable
class PersistenceProvider(Protocol):
    """Per-image annotation storage.

    Implementations: JsonAnnotationStore, InMemoryAnnotationStore.
    """

    def load_annotations(self, image_id: str) -> list[Annotation]:
        """Load every annotation (regular and custom) of an image.

        An image with nothing stored yields an empty list, not an error.

        Raises:
            CollaboratorError: the backing store could not be read.
        """
        ...

    def save_annotations(self, image_id: str, annotations: list[Annotation]) -> None:
        """Replace the stored annotations of an image.

        Raises:
            CollaboratorError: the backing store could not be written.
        """
        ...


@runtime_checkable
class TypeStore(Protocol):
    """Storage for the custom type registry."""

    def load_custom_types(self) -> list[AnnotationType]: ...

    def save_custom_types(self, types: list[AnnotationType]) -> None: ...


@runtime_checkable
class SeriesProvider(Protocol):
    """Navigation within a time series of images.

    Implementations: ManifestSeriesProvider.
    """

    def previous_image(
        self, plant_id: str, view_angle: str, current_index: int
    ) -> ImageRef | None:
        """The image captured just before position *current_index*, or None if first."""
        ...

    def image_annotations(self, image_id: str) -> list[Annotation]:
        """Annotations of any image in the series (empty if none)."""
        ...


@runtime_checkable
class ImageSource(Protocol):
    """Decodes series images into BGR arrays."""

    def load_image(self, image_ref: ImageRef) -> np.ndarray:
        """Decode the image.

        Raises:
            CollaboratorError: the image could not be read or decoded.
        """
        ...


class SyncEventKind(str, enum.Enum):
    annotation_create = "annotation_create"
    annotation_update = "annotation_update"
    annotation_delete = "annotation_delete"
    type_create = "type_create"
    type_update = "type_update"
    type_delete = "type_delete"


@dataclass(frozen=True)
class SyncEvent:
    """Outbound change notification for another client or a remote store."""

    kind: SyncEventKind
    payload: dict[str, Any]
    context: dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "payload": self.payload,
            "context": self.context,
            "timestamp": self.timestamp,
        }


@runtime_checkable
class SyncBridge(Protocol):
    """Optional fire-and-forget change feed. The core works without one."""

    def notify(self, event: SyncEvent) -> None: ...
