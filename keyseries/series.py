"""Time-series manifests, series navigation and image decoding.

A ``series.yaml`` manifest lists the images of one or more plants::

    plant_id: plant-7          # optional defaults for every entry
    view_angle: front
    images:
      - id: plant-7_2024-05-01
        path: images/0501.png  # relative to the manifest
        captured_at: 2024-05-01T10:00:00
      - id: plant-7_2024-05-02
        path: images/0502.png
        captured_at: 2024-05-02T10:00:00
        width: 1000            # optional; read from the file header if absent
        height: 1000
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from pathlib import Path
from typing import Any

import cv2
import numpy as np
import yaml

from keyseries.errors import CollaboratorError
from keyseries.providers import PersistenceProvider
from keyseries.types import Annotation, ImageRef
from keyseries.utils.image import get_image_dimensions, load_image

logger = logging.getLogger(__name__)


def _parse_timestamp(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    try:
        return datetime.fromisoformat(str(value))
    except ValueError as e:
        raise ValueError(f"Invalid captured_at: {value!r}") from e


def load_series_manifest(manifest_path: Path, read_dimensions: bool = True) -> list[ImageRef]:
    """Parse a series manifest into ``ImageRef`` handles.

    Relative image paths resolve against the manifest's directory. Missing
    width/height are read from the image header when the file exists.
    """
    manifest_path = Path(manifest_path).resolve()
    with open(manifest_path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict) or not isinstance(data.get("images"), list):
        raise ValueError(f"{manifest_path}: expected a mapping with an 'images' list")

    base_dir = manifest_path.parent
    default_plant = data.get("plant_id")
    default_view = data.get("view_angle", "default")
    refs: list[ImageRef] = []
    seen: set[str] = set()

    for i, entry in enumerate(data["images"]):
        if not isinstance(entry, dict) or "id" not in entry:
            raise ValueError(f"{manifest_path}: image entry {i} has no 'id'")
        image_id = str(entry["id"])
        if image_id in seen:
            raise ValueError(f"{manifest_path}: duplicate image id {image_id!r}")
        seen.add(image_id)

        plant_id = entry.get("plant_id", default_plant)
        if plant_id is None:
            raise ValueError(f"{manifest_path}: image {image_id!r} has no plant_id")

        path = None
        if entry.get("path"):
            path = Path(entry["path"])
            if not path.is_absolute():
                path = (base_dir / path).resolve()

        width, height = entry.get("width"), entry.get("height")
        if read_dimensions and (width is None or height is None) and path is not None:
            if path.is_file():
                width, height = get_image_dimensions(path)
            else:
                logger.warning("Image %s not found at %s; dimensions unknown", image_id, path)

        refs.append(
            ImageRef(
                id=image_id,
                plant_id=str(plant_id),
                view_angle=str(entry.get("view_angle", default_view)),
                captured_at=_parse_timestamp(entry.get("captured_at")),
                path=path,
                width=width,
                height=height,
            )
        )

    logger.info("Loaded %d image(s) from %s", len(refs), manifest_path)
    return refs


def _capture_key(ref: ImageRef) -> tuple:
    # Untimed images sort after timed ones, then by id
    return (ref.captured_at is None, ref.captured_at or datetime.min, ref.id)


class ManifestSeriesProvider:
    """Series navigation over a fixed list of images.

    Annotations are read through *store* (any ``PersistenceProvider``).
    """

    def __init__(self, images: list[ImageRef], store: PersistenceProvider | None = None) -> None:
        self.store = store
        self._images: dict[str, ImageRef] = {ref.id: ref for ref in images}
        self._series: dict[tuple[str, str], list[ImageRef]] = {}
        for ref in images:
            self._series.setdefault((ref.plant_id, ref.view_angle), []).append(ref)
        for refs in self._series.values():
            refs.sort(key=_capture_key)

    @classmethod
    def from_manifest(
        cls, manifest_path: Path, store: PersistenceProvider | None = None
    ) -> ManifestSeriesProvider:
        return cls(load_series_manifest(manifest_path), store=store)

    def __len__(self) -> int:
        return len(self._images)

    def get(self, image_id: str) -> ImageRef | None:
        return self._images.get(image_id)

    def images(self) -> list[ImageRef]:
        return list(self._images.values())

    def series(self, plant_id: str, view_angle: str) -> list[ImageRef]:
        """Images of one plant/view in capture order."""
        return list(self._series.get((plant_id, view_angle), []))

    def index_of(self, image_id: str) -> int:
        """Position of an image within its own series."""
        ref = self._images.get(image_id)
        if ref is None:
            raise KeyError(image_id)
        series = self._series[(ref.plant_id, ref.view_angle)]
        return next(i for i, r in enumerate(series) if r.id == image_id)

    def previous_image(
        self, plant_id: str, view_angle: str, current_index: int
    ) -> ImageRef | None:
        series = self._series.get((plant_id, view_angle), [])
        if current_index <= 0 or not series:
            return None
        return series[min(current_index, len(series)) - 1]

    def previous_of(self, image_id: str) -> ImageRef | None:
        ref = self._images[image_id]
        return self.previous_image(ref.plant_id, ref.view_angle, self.index_of(image_id))

    def image_annotations(self, image_id: str) -> list[Annotation]:
        if self.store is None:
            return []
        return self.store.load_annotations(image_id)


class FileImageSource:
    """Decodes series images from disk with OpenCV."""

    name = "image-source"

    def load_image(self, image_ref: ImageRef) -> np.ndarray:
        if image_ref.path is None:
            raise CollaboratorError(self.name, f"Image {image_ref.id} has no path")
        try:
            return load_image(image_ref.path)
        except (FileNotFoundError, OSError, cv2.error) as e:
            raise CollaboratorError(self.name, f"Cannot decode {image_ref.path}: {e}") from e
