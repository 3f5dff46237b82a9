"""Legacy annotation record repair.

Older annotation files were written before custom markers existed and before
directions were stored as angles. Loaders run ``migrate_records`` on every
raw record they read; the repair is logged and applied in memory only.
``repair_store`` (the ``migrate`` CLI command) writes it back.

Repairs, each reported as one change string:
- missing ``annotationType``: ``custom`` if the record names a type, else ``regular``
- legacy ``typeId`` renamed to ``customTypeId``
- ``direction`` ``"left"``/``"right"`` converted to 180/0 degrees
- ``directions`` entries of the form ``{"angle": a}`` flattened to ``a``

Migration is idempotent: a migrated record reports no changes.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from keyseries.types import normalize_direction

if TYPE_CHECKING:
    from keyseries.storage import InMemoryAnnotationStore, JsonAnnotationStore

logger = logging.getLogger(__name__)


def migrate_record(record: dict[str, Any]) -> tuple[dict[str, Any], list[str]]:
    """Return a repaired copy of *record* and the list of changes applied."""
    data = copy.deepcopy(record)
    changes: list[str] = []

    if "typeId" in data:
        type_id = data.pop("typeId")
        if not data.get("customTypeId"):
            data["customTypeId"] = type_id
        changes.append("typeId -> customTypeId")

    if not data.get("annotationType"):
        kind = "custom" if data.get("customTypeId") else "regular"
        data["annotationType"] = kind
        changes.append(f"annotationType missing -> {kind}")

    direction = data.get("direction")
    if isinstance(direction, str):
        angle = normalize_direction(direction)
        if angle is None:
            data.pop("direction")
            changes.append(f"direction {direction!r} dropped")
        else:
            data["direction"] = angle
            changes.append(f"direction {direction!r} -> {angle}")

    directions = data.get("directions")
    if isinstance(directions, list) and any(
        isinstance(d, (dict, str)) for d in directions
    ):
        angles = []
        for item in directions:
            raw = item.get("angle") if isinstance(item, dict) else item
            angle = normalize_direction(raw)
            if angle is not None:
                angles.append(angle)
        data["directions"] = angles
        changes.append("directions -> angles")

    return data, changes


def needs_migration(record: dict[str, Any]) -> bool:
    return bool(migrate_record(record)[1])


def migrate_records(
    records: list[dict[str, Any]], image_id: str | None = None
) -> list[dict[str, Any]]:
    """Repair a list of raw records, logging every fallback applied."""
    migrated: list[dict[str, Any]] = []
    for record in records:
        fixed, changes = migrate_record(record)
        if changes:
            logger.info(
                "Legacy record %s on image %s: %s",
                record.get("id", "?"),
                image_id or "?",
                "; ".join(changes),
            )
        migrated.append(fixed)
    return migrated


# ---------------------------------------------------------------------------
# Explicit store repair
# ---------------------------------------------------------------------------


@dataclass
class MigrationReport:
    """What ``repair_store`` changed (or would change, in a dry run)."""

    dry_run: bool = False
    images_scanned: int = 0
    records_changed: int = 0
    changes: dict[str, list[str]] = field(default_factory=dict)

    @property
    def images_changed(self) -> int:
        return len(self.changes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "dryRun": self.dry_run,
            "imagesScanned": self.images_scanned,
            "imagesChanged": self.images_changed,
            "recordsChanged": self.records_changed,
            "changes": self.changes,
        }


def repair_store(
    store: JsonAnnotationStore | InMemoryAnnotationStore, dry_run: bool = False
) -> MigrationReport:
    """Apply ``migrate_record`` to every stored record and write results back."""
    report = MigrationReport(dry_run=dry_run)
    for image_id in store.image_ids():
        report.images_scanned += 1
        raw = store.load_raw(image_id)
        fixed: list[dict[str, Any]] = []
        image_changes: list[str] = []
        for record in raw:
            repaired, changes = migrate_record(record)
            fixed.append(repaired)
            if changes:
                report.records_changed += 1
                image_changes.extend(f"{record.get('id', '?')}: {c}" for c in changes)
        if not image_changes:
            continue
        report.changes[image_id] = image_changes
        if not dry_run:
            store.save_raw(image_id, fixed)
            logger.info("Migrated %d change(s) in %s", len(image_changes), image_id)
    return report
