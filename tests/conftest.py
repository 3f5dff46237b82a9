"""Shared test fixtures for KeySeries."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path

import cv2
import numpy as np
import pytest

from keyseries.config import LimitsConfig
from keyseries.events import EventBus, EventRecorder
from keyseries.keypoints import RegularKeypointStore
from keyseries.manager import CustomAnnotationManager
from keyseries.series import ManifestSeriesProvider
from keyseries.storage import InMemoryAnnotationStore, JsonAnnotationStore
from keyseries.types import (
    CustomPointAnnotation,
    CustomRegionAnnotation,
    ImageRef,
    RegularAnnotation,
)

IMAGE_SIZE = 1000


@pytest.fixture
def make_regular():
    """Factory for regular keypoints: ``make_regular(order, x=.., y=..)``."""
    counter = iter(range(1, 10_000))

    def _make(order: int, x: float = 0.0, y: float = 0.0, image_id: str = "img", **kwargs):
        return RegularAnnotation(
            id=kwargs.pop("id", f"r{next(counter)}"),
            x=x,
            y=y,
            order=order,
            image_id=image_id,
            **kwargs,
        )

    return _make


@pytest.fixture
def make_custom():
    """Factory for custom point markers (regions when width/height are given)."""
    counter = iter(range(1, 10_000))

    def _make(
        type_id: str,
        order: int,
        x: float = 0.0,
        y: float = 0.0,
        image_id: str = "img",
        width: float | None = None,
        height: float | None = None,
        **kwargs,
    ):
        ann_id = kwargs.pop("id", f"c{next(counter)}")
        if width is not None and height is not None:
            return CustomRegionAnnotation(
                id=ann_id, x=x, y=y, order=order, image_id=image_id,
                custom_type_id=type_id, width=width, height=height, **kwargs,
            )
        return CustomPointAnnotation(
            id=ann_id, x=x, y=y, order=order, image_id=image_id,
            custom_type_id=type_id, **kwargs,
        )

    return _make


@pytest.fixture
def memory_store() -> InMemoryAnnotationStore:
    return InMemoryAnnotationStore()


@pytest.fixture
def json_store(tmp_path) -> JsonAnnotationStore:
    return JsonAnnotationStore(tmp_path / "annotations")


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def recorder(bus) -> EventRecorder:
    return EventRecorder(bus)


@pytest.fixture
def keypoints(memory_store, bus) -> RegularKeypointStore:
    return RegularKeypointStore(persistence=memory_store, events=bus)


@pytest.fixture
def manager(memory_store, bus, keypoints) -> CustomAnnotationManager:
    """Manager with a point type ``leaf`` and a region type ``lesion``."""
    mgr = CustomAnnotationManager(
        limits=LimitsConfig(),
        persistence=memory_store,
        companion=keypoints,
        events=bus,
        type_store=memory_store,
    )
    keypoints.companion = mgr
    mgr.create_type(id="leaf", name="Leaf tip", kind="point", color="#00ff00")
    mgr.create_type(id="lesion", name="Lesion", kind="region", color="#ff0000")
    return mgr


# ---------------------------------------------------------------------------
# Series on disk: three 1000x1000 images A, B, C of one plant
# ---------------------------------------------------------------------------


def _write_image(path: Path, value: int) -> None:
    img = np.full((IMAGE_SIZE, IMAGE_SIZE, 3), value, dtype=np.uint8)
    cv2.imwrite(str(path), img)


@pytest.fixture
def series_dir(tmp_path) -> Path:
    """Directory with ``series.yaml``, three PNGs and an ``annotations/`` store.

    Image B carries regular keypoints 1-3, order 3 sitting at (120, 80).
    Image C carries keypoints 1-2, so its next regular order is 3.
    """
    root = tmp_path / "series"
    images = root / "images"
    images.mkdir(parents=True)
    for name, value in (("a", 40), ("b", 90), ("c", 140)):
        _write_image(images / f"{name}.png", value)

    (root / "series.yaml").write_text(
        "plant_id: plant-1\n"
        "view_angle: front\n"
        "images:\n"
        "  - id: C\n"
        "    path: images/c.png\n"
        "    captured_at: 2024-05-03T10:00:00\n"
        "  - id: A\n"
        "    path: images/a.png\n"
        "    captured_at: 2024-05-01T10:00:00\n"
        "  - id: B\n"
        "    path: images/b.png\n"
        "    captured_at: 2024-05-02T10:00:00\n"
    )

    store = JsonAnnotationStore(root / "annotations")
    store.save_annotations("B", [
        RegularAnnotation(id="b1", x=500, y=500, order=1, image_id="B"),
        RegularAnnotation(id="b2", x=150, y=100, order=2, image_id="B", directions=[90.0]),
        RegularAnnotation(id="b3", x=120, y=80, order=3, image_id="B"),
        RegularAnnotation(id="b4", x=900, y=900, order=4, image_id="B"),
    ])
    store.save_annotations("C", [
        RegularAnnotation(id="c1", x=510, y=505, order=1, image_id="C"),
        RegularAnnotation(id="c2", x=155, y=102, order=2, image_id="C"),
    ])
    return root


@pytest.fixture
def series_store(series_dir) -> JsonAnnotationStore:
    return JsonAnnotationStore(series_dir / "annotations")


@pytest.fixture
def series_provider(series_dir, series_store) -> ManifestSeriesProvider:
    return ManifestSeriesProvider.from_manifest(series_dir / "series.yaml", store=series_store)


@pytest.fixture
def image_refs() -> dict[str, ImageRef]:
    """In-memory refs (no files) for A, B, C captured on consecutive days."""
    return {
        name: ImageRef(
            id=name,
            plant_id="plant-1",
            view_angle="front",
            captured_at=datetime(2024, 5, day, 10),
            width=IMAGE_SIZE,
            height=IMAGE_SIZE,
        )
        for name, day in (("A", 1), ("B", 2), ("C", 3))
    }
