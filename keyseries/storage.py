"""Annotation persistence backends.

``JsonAnnotationStore`` layout::

    <root>/
        custom_types.json       # {"version": "1.0", "customTypes": [...]}
        <image id>.json         # {"imageId": ..., "annotations": [...]}

Raw records pass through ``keyseries.migration.migrate_records`` on read.
"""

from __future__ import annotations

import copy
import json
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Any

from keyseries.errors import CollaboratorError
from keyseries.migration import migrate_records
from keyseries.types import Annotation, AnnotationType

logger = logging.getLogger(__name__)

FORMAT_VERSION = "1.0"

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def sanitize_image_id(image_id: str) -> str:
    """File-name-safe form of an image id."""
    safe = _UNSAFE_CHARS.sub("_", image_id).strip(".")
    if not safe:
        raise ValueError(f"Image id {image_id!r} has no usable characters")
    return safe


def _parse_records(
    raw: list[dict[str, Any]], image_id: str, collaborator: str
) -> list[Annotation]:
    """Migrate and parse raw records, converting bad data into CollaboratorError."""
    records = migrate_records(raw, image_id=image_id)
    try:
        return [Annotation.from_dict(r, image_id=image_id) for r in records]
    except (KeyError, TypeError, ValueError) as e:
        message = f"Invalid annotation record in {image_id}: {e}"
        raise CollaboratorError(collaborator, message) from e


class JsonAnnotationStore:
    """One JSON file per image under *root*, written atomically."""

    name = "json-store"

    def __init__(
        self,
        root: Path,
        indent: int | None = 2,
        custom_types_filename: str = "custom_types.json",
    ) -> None:
        self.root = Path(root)
        self.indent = indent
        self.custom_types_filename = custom_types_filename

    def path_for(self, image_id: str) -> Path:
        return self.root / f"{sanitize_image_id(image_id)}.json"

    @property
    def custom_types_path(self) -> Path:
        return self.root / self.custom_types_filename

    # -- PersistenceProvider --------------------------------------------------

    def load_annotations(self, image_id: str) -> list[Annotation]:
        return _parse_records(self.load_raw(image_id), image_id, self.name)

    def save_annotations(self, image_id: str, annotations: list[Annotation]) -> None:
        self.save_raw(image_id, [a.to_dict() for a in annotations])

    # -- raw access -----------------------------------------------------------

    def image_ids(self) -> list[str]:
        """Ids of every image with a stored annotation file, sorted."""
        if not self.root.is_dir():
            return []
        ids = []
        for path in sorted(self.root.glob("*.json")):
            if path.name == self.custom_types_filename:
                continue
            data = self._read_json(path)
            image_id = data.get("imageId") if isinstance(data, dict) else None
            ids.append(image_id or path.stem)
        return sorted(ids)

    def load_raw(self, image_id: str) -> list[dict[str, Any]]:
        """Raw (unmigrated) records of an image; ``[]`` if no file exists."""
        path = self.path_for(image_id)
        if not path.exists():
            return []
        data = self._read_json(path)
        # Older files hold a bare list of records
        records = data.get("annotations", []) if isinstance(data, dict) else data
        if not isinstance(records, list):
            raise CollaboratorError(self.name, f"{path}: 'annotations' is not a list")
        return records

    def save_raw(self, image_id: str, records: list[dict[str, Any]]) -> None:
        payload = {"imageId": image_id, "annotations": records}
        self._write_json(self.path_for(image_id), payload)

    def delete(self, image_id: str) -> bool:
        path = self.path_for(image_id)
        if not path.exists():
            return False
        try:
            path.unlink()
        except OSError as e:
            raise CollaboratorError(self.name, f"Cannot delete {path}: {e}", retryable=True) from e
        return True

    # -- TypeStore ------------------------------------------------------------

    def load_custom_types(self) -> list[AnnotationType]:
        path = self.custom_types_path
        if not path.exists():
            return []
        data = self._read_json(path)
        raw = data.get("customTypes", []) if isinstance(data, dict) else data
        try:
            return [AnnotationType.from_dict(t) for t in raw]
        except (KeyError, TypeError, ValueError) as e:
            raise CollaboratorError(self.name, f"Invalid custom type in {path}: {e}") from e

    def save_custom_types(self, types: list[AnnotationType]) -> None:
        payload = {"version": FORMAT_VERSION, "customTypes": [t.to_dict() for t in types]}
        self._write_json(self.custom_types_path, payload)

    # -- file helpers ---------------------------------------------------------

    def _read_json(self, path: Path) -> Any:
        try:
            with open(path, encoding="utf-8") as f:
                return json.load(f)
        except json.JSONDecodeError as e:
            raise CollaboratorError(self.name, f"Malformed JSON in {path}: {e}") from e
        except OSError as e:
            raise CollaboratorError(self.name, f"Cannot read {path}: {e}", retryable=True) from e

    def _write_json(self, path: Path, payload: Any) -> None:
        """Write via a temp file in the same directory, then replace."""
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(payload, f, indent=self.indent, ensure_ascii=False)
                    f.write("\n")
                os.replace(tmp_name, path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise CollaboratorError(self.name, f"Cannot write {path}: {e}", retryable=True) from e
        logger.debug("Wrote %s", path)


class InMemoryAnnotationStore:
    """Dict-backed store with the same contract as ``JsonAnnotationStore``.

    Records are kept in their serialized form, so callers never share objects
    with the store.
    """

    name = "memory-store"

    def __init__(self) -> None:
        self._records: dict[str, list[dict[str, Any]]] = {}
        self._types: list[dict[str, Any]] = []
        self.save_count = 0

    def load_annotations(self, image_id: str) -> list[Annotation]:
        return _parse_records(self.load_raw(image_id), image_id, self.name)

    def save_annotations(self, image_id: str, annotations: list[Annotation]) -> None:
        self.save_raw(image_id, [a.to_dict() for a in annotations])

    def image_ids(self) -> list[str]:
        return sorted(self._records)

    def load_raw(self, image_id: str) -> list[dict[str, Any]]:
        return copy.deepcopy(self._records.get(image_id, []))

    def save_raw(self, image_id: str, records: list[dict[str, Any]]) -> None:
        self._records[image_id] = copy.deepcopy(records)
        self.save_count += 1

    def delete(self, image_id: str) -> bool:
        return self._records.pop(image_id, None) is not None

    def load_custom_types(self) -> list[AnnotationType]:
        return [AnnotationType.from_dict(t) for t in self._types]

    def save_custom_types(self, types: list[AnnotationType]) -> None:
        self._types = [t.to_dict() for t in types]
