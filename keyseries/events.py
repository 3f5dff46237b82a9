"""Typed lifecycle events and a small in-process event bus.

Lets the manager notify storage sync, the preview engine and UI refresh code
without depending on any of them. Payloads carry copies of the records, so
listeners cannot mutate the manager's collections.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from keyseries.types import Annotation, AnnotationType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class KeySeriesEvent:
    """Base class of every event. Subscribe to it to receive all events."""


@dataclass(frozen=True)
class AnnotationCreated(KeySeriesEvent):
    annotation: Annotation
    context: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AnnotationUpdated(KeySeriesEvent):
    annotation: Annotation
    previous: Annotation | None = None
    context: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AnnotationDeleted(KeySeriesEvent):
    annotation: Annotation
    cascade_type_id: str | None = None
    context: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AnnotationsReordered(KeySeriesEvent):
    image_id: str
    type_ids: tuple[str, ...]
    changed: int


@dataclass(frozen=True)
class ModeChanged(KeySeriesEvent):
    previous_type_id: str | None
    type_id: str | None

    @property
    def is_custom(self) -> bool:
        return self.type_id is not None


@dataclass(frozen=True)
class TypeCreated(KeySeriesEvent):
    annotation_type: AnnotationType


@dataclass(frozen=True)
class TypeUpdated(KeySeriesEvent):
    annotation_type: AnnotationType
    warnings: tuple[str, ...] = ()


@dataclass(frozen=True)
class TypeDeleted(KeySeriesEvent):
    annotation_type: AnnotationType
    removed_annotation_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class DragInterrupted(KeySeriesEvent):
    """An in-progress drag was cancelled by a mode switch or type deletion."""

    annotation: Annotation
    reason: str


Listener = Callable[[Any], None]


class EventBus:
    """Simple pub/sub keyed by event class.

    Listeners registered for a base class also receive its subclasses, so
    ``bus.on(KeySeriesEvent, cb)`` observes everything.
    """

    def __init__(self) -> None:
        self._listeners: dict[type, list[Listener]] = {}

    def on(self, event_type: type, callback: Listener) -> None:
        """Subscribe to an event type."""
        self._listeners.setdefault(event_type, []).append(callback)

    def off(self, event_type: type, callback: Listener) -> None:
        """Unsubscribe from an event type. Unknown callbacks are ignored."""
        listeners = self._listeners.get(event_type)
        if listeners and callback in listeners:
            listeners.remove(callback)

    def emit(self, event: KeySeriesEvent) -> None:
        """Deliver *event* to every subscriber of its class or a base class."""
        for cls in type(event).__mro__:
            for callback in list(self._listeners.get(cls, ())):
                try:
                    callback(event)
                except Exception:
                    # Log but don't crash on listener errors
                    logger.exception("Error in %s listener", type(event).__name__)

    def clear(self) -> None:
        """Clear all event listeners."""
        self._listeners.clear()


class EventRecorder:
    """Collects every emitted event in order. Handy for auditing and tests."""

    def __init__(self, bus: EventBus) -> None:
        self.events: list[KeySeriesEvent] = []
        bus.on(KeySeriesEvent, self.events.append)

    def of_type(self, event_type: type) -> list[Any]:
        return [e for e in self.events if isinstance(e, event_type)]

    def clear(self) -> None:
        self.events.clear()
