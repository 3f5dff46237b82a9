"""Tests for keyseries.manager."""

from __future__ import annotations

import pytest

from keyseries.config import LimitsConfig
from keyseries.errors import CollaboratorError, NotFoundError, ValidationError
from keyseries.events import (
    AnnotationCreated,
    AnnotationDeleted,
    AnnotationUpdated,
    DragInterrupted,
    ModeChanged,
    TypeDeleted,
    TypeUpdated,
)
from keyseries.keypoints import RegularKeypointStore
from keyseries.manager import NORMAL_MODE, CustomAnnotationManager
from keyseries.providers import SyncEventKind
from keyseries.storage import InMemoryAnnotationStore
from keyseries.types import (
    AnnotationKind,
    CustomPointAnnotation,
    CustomRegionAnnotation,
)


class FailingStore(InMemoryAnnotationStore):
    """Memory store whose writes can be switched off."""

    def __init__(self) -> None:
        super().__init__()
        self.fail = False

    def save_annotations(self, image_id, annotations):
        if self.fail:
            raise CollaboratorError(self.name, "disk full", retryable=True)
        super().save_annotations(image_id, annotations)

    def save_custom_types(self, types):
        if self.fail:
            raise CollaboratorError(self.name, "disk full", retryable=True)
        super().save_custom_types(types)


class RecordingBridge:
    def __init__(self) -> None:
        self.events = []

    def notify(self, event) -> None:
        self.events.append(event)


class BrokenBridge:
    def notify(self, event) -> None:
        raise ConnectionError("offline")


@pytest.fixture
def failing_store() -> FailingStore:
    return FailingStore()


@pytest.fixture
def failing_manager(failing_store, bus) -> CustomAnnotationManager:
    mgr = CustomAnnotationManager(persistence=failing_store, type_store=failing_store, events=bus)
    mgr.create_type(id="leaf", name="Leaf", kind="point", color="#0f0")
    return mgr


class TestMode:
    def test_starts_normal(self, manager):
        assert manager.mode == NORMAL_MODE
        assert str(manager.mode) == "Normal"
        assert manager.active_type is None

    def test_set_and_exit(self, manager, recorder):
        assert str(manager.set_mode("leaf")) == "Custom(leaf)"
        assert manager.active_type.id == "leaf"
        manager.exit_custom_mode()
        assert manager.mode == NORMAL_MODE
        changes = recorder.of_type(ModeChanged)
        pairs = [(e.previous_type_id, e.type_id) for e in changes]
        assert pairs == [(None, "leaf"), ("leaf", None)]

    def test_unknown_type_leaves_mode(self, manager):
        manager.set_mode("leaf")
        with pytest.raises(NotFoundError):
            manager.set_mode("nope")
        assert manager.mode.type_id == "leaf"

    def test_switch_interrupts_drag(self, manager, recorder):
        ann = manager.create_annotation("leaf", 100, 100, "img")
        manager.start_drag(ann.id, pointer=(0, 0))
        manager.update_drag((20, 20))
        manager.set_mode("lesion")
        assert manager.dragging is None
        assert manager.get(ann.id).x == 100
        assert recorder.of_type(DragInterrupted)[0].reason == "mode switch"


class TestTypes:
    def test_types_are_persisted(self, manager, memory_store):
        assert [t.id for t in memory_store.load_custom_types()] == ["leaf", "lesion"]

    def test_update_type(self, manager, recorder):
        result = manager.update_type("leaf", {"color": "#00aa00", "kind": "region"})
        assert result.type.color == "#00aa00"
        assert manager.get_type("leaf").kind.value == "point"
        assert recorder.of_type(TypeUpdated)[0].warnings == (
            "Field 'kind' is immutable; change ignored",
        )

    def test_create_type_rolls_back_on_store_failure(self, failing_manager, failing_store):
        failing_store.fail = True
        with pytest.raises(CollaboratorError):
            failing_manager.create_type(id="x", name="X", kind="point", color="#fff")
        assert failing_manager.get_type("x") is None

    def test_update_type_rolls_back_on_store_failure(self, failing_manager, failing_store):
        failing_store.fail = True
        with pytest.raises(CollaboratorError):
            failing_manager.update_type("leaf", {"name": "Changed"})
        assert failing_manager.get_type("leaf").name == "Leaf"

    def test_reload_resets_mode(self, manager, memory_store):
        manager.set_mode("leaf")
        manager.reload_types()
        assert manager.mode == NORMAL_MODE
        assert [t.id for t in manager.types()] == ["leaf", "lesion"]


class TestCreateAnnotation:
    def test_point_numbering_per_type(self, manager):
        a = manager.create_annotation("leaf", 10, 10, "img")
        b = manager.create_annotation("leaf", 20, 20, "img")
        c = manager.create_annotation("lesion", 0, 0, "img", width=10, height=10)
        assert (a.order, b.order, c.order) == (1, 2, 1)
        assert isinstance(a, CustomPointAnnotation)
        assert isinstance(c, CustomRegionAnnotation)
        assert a.id.startswith("custom_ann_")

    def test_independent_of_regular_keypoints(self, manager, keypoints, memory_store):
        keypoints.add_keypoint("img", 1, 1)
        keypoints.add_keypoint("img", 2, 2)
        marker = manager.create_annotation("leaf", 5, 5, "img")
        assert marker.order == 1
        assert keypoints.next_order("img") == 3
        stored = memory_store.load_annotations("img")
        assert [a.annotation_type for a in stored] == [
            AnnotationKind.regular,
            AnnotationKind.regular,
            AnnotationKind.custom,
        ]

    def test_unknown_type(self, manager):
        with pytest.raises(NotFoundError):
            manager.create_annotation("nope", 0, 0, "img")

    def test_region_too_small(self, manager):
        with pytest.raises(ValidationError, match="Region size must be at least 10px"):
            manager.create_annotation("lesion", 0, 0, "img", width=5, height=20)
        assert manager.annotations_for_image("img") == []

    def test_region_requires_size(self, manager):
        with pytest.raises(ValidationError, match="require width and height"):
            manager.create_annotation("lesion", 0, 0, "img")

    def test_per_image_cap(self, memory_store):
        mgr = CustomAnnotationManager(limits=LimitsConfig(max_annotations_per_image=2),
                                      persistence=memory_store)
        mgr.create_type(id="leaf", name="Leaf", kind="point", color="#0f0")
        mgr.create_annotation("leaf", 0, 0, "img")
        mgr.create_annotation("leaf", 0, 0, "img")
        with pytest.raises(ValidationError, match=r"per image \(2\)"):
            mgr.create_annotation("leaf", 0, 0, "img")
        mgr.create_annotation("leaf", 0, 0, "other")

    def test_rolls_back_on_persistence_failure(self, failing_manager, failing_store, recorder):
        failing_store.fail = True
        with pytest.raises(CollaboratorError):
            failing_manager.create_annotation("leaf", 0, 0, "img")
        assert failing_manager.annotations_for_image("img") == []
        assert recorder.of_type(AnnotationCreated) == []


class TestInput:
    def test_click_in_normal_mode(self, manager):
        result = manager.handle_click(1, 1, "img")
        assert not result.success
        assert result.reason == "Not in custom mode"

    def test_click_creates_point(self, manager):
        manager.set_mode("leaf")
        result = manager.handle_click(1, 2, "img")
        assert result.success
        assert (result.annotation.x, result.annotation.y) == (1, 2)

    def test_click_with_region_type(self, manager):
        manager.set_mode("lesion")
        result = manager.handle_click(1, 1, "img")
        assert result.reason == "Selected type is not a point type"

    def test_region_gesture(self, manager):
        manager.set_mode("lesion")
        result = manager.handle_region((50, 60), (20, 10), "img")
        ann = result.annotation
        assert (ann.x, ann.y, ann.width, ann.height) == (20, 10, 30, 50)

    def test_small_region_gesture_rejected(self, manager):
        manager.set_mode("lesion")
        result = manager.handle_region((0, 0), (5, 50), "img")
        assert not result.success
        assert "at least 10px" in result.reason


class TestEdits:
    def test_update_region_size(self, manager):
        region = manager.create_annotation("lesion", 0, 0, "img", width=20, height=20)
        updated = manager.update_annotation(region.id, width=40, metadata={"grade": 2})
        assert (updated.width, updated.height) == (40, 20)
        assert updated.metadata == {"grade": 2}
        with pytest.raises(ValidationError):
            manager.update_annotation(region.id, height=3)

    def test_resize_point_rejected(self, manager):
        point = manager.create_annotation("leaf", 0, 0, "img")
        with pytest.raises(ValidationError):
            manager.update_annotation(point.id, width=20)

    def test_reorder_one_type(self, manager):
        a = manager.create_annotation("leaf", 0, 0, "img")
        manager.create_annotation("leaf", 0, 0, "img")
        manager.create_annotation("leaf", 0, 0, "img")
        manager.delete_annotation(a.id)
        assert manager.reorder_annotations("img", "leaf") == 2
        assert [x.order for x in manager.annotations_for_type("img", "leaf")] == [1, 2]

    def test_reorder_unknown_type_on_empty_image(self, manager):
        with pytest.raises(NotFoundError):
            manager.reorder_annotations("empty", "ghost")
        assert manager.reorder_annotations("empty", "leaf") == 0

    def test_order_update_collision(self, manager):
        a = manager.create_annotation("leaf", 0, 0, "img")
        manager.create_annotation("leaf", 0, 0, "img")
        manager.create_annotation("lesion", 0, 0, "img", width=10, height=10)
        with pytest.raises(ValidationError):
            manager.update_annotation_order(a.id, 2)
        # Order 1 in the lesion scope does not collide with leaf
        manager.update_annotation_order(a.id, 3)


class TestDeleteType:
    def test_cascade(self, manager, recorder, memory_store):
        for image_id in ("a", "a", "b"):
            manager.create_annotation("leaf", 0, 0, image_id)
        kept = manager.create_annotation("lesion", 0, 0, "a", width=10, height=10)
        manager.set_mode("leaf")
        recorder.clear()

        removed = manager.delete_type("leaf")

        assert len(removed) == 3
        kinds = [type(e) for e in recorder.events]
        assert kinds == [AnnotationDeleted] * 3 + [TypeDeleted, ModeChanged]
        assert all(e.cascade_type_id == "leaf" for e in recorder.of_type(AnnotationDeleted))
        assert manager.mode == NORMAL_MODE
        assert manager.get_type("leaf") is None
        assert [a.id for a in manager.all_annotations()] == [kept.id]
        assert memory_store.load_annotations("b") == []
        assert [t.id for t in memory_store.load_custom_types()] == ["lesion"]

    def test_cascade_rolls_back(self, failing_manager, failing_store):
        failing_manager.create_annotation("leaf", 0, 0, "img")
        failing_store.fail = True
        with pytest.raises(CollaboratorError):
            failing_manager.delete_type("leaf")
        assert failing_manager.get_type("leaf") is not None
        assert len(failing_manager.annotations_for_image("img")) == 1

    def test_unknown_type(self, manager):
        with pytest.raises(NotFoundError):
            manager.delete_type("nope")


class TestStats:
    def test_annotation_stats(self, manager):
        manager.create_annotation("leaf", 0, 0, "img")
        second = manager.create_annotation("leaf", 0, 0, "img")
        manager.create_annotation("leaf", 0, 0, "img")
        manager.delete_annotation(second.id)
        stats = manager.annotation_stats("img")
        assert stats.total == 2
        leaf = stats.by_type["leaf"]
        assert (leaf.min_order, leaf.max_order, leaf.gaps) == (1, 3, [2])
        assert stats.to_dict()["byType"]["leaf"]["typeName"] == "Leaf tip"

    def test_totals(self, manager):
        manager.create_annotation("leaf", 0, 0, "a")
        manager.create_annotation("leaf", 0, 0, "b")
        totals = manager.stats()
        assert totals["totalTypes"] == 2
        assert totals["totalAnnotations"] == 2
        assert totals["byType"] == {"leaf": 2, "lesion": 0}


class TestInterchange:
    def test_export_import_round_trip(self, manager):
        manager.create_annotation("leaf", 1, 2, "a")
        manager.create_annotation("lesion", 3, 4, "b", width=12, height=15)
        payload = manager.export_data()
        assert payload["version"] == "1.0"

        target = CustomAnnotationManager(persistence=InMemoryAnnotationStore())
        result = target.import_data(payload)
        assert (result.types_added, result.annotations_added) == (2, 2)
        assert [a.to_dict() for a in target.all_annotations()] == payload["customAnnotations"]

        again = target.import_data(payload)
        assert again.annotations_added == 0
        assert again.annotations_skipped == 2
        assert again.types_skipped == 2

    def test_import_skips_unknown_type(self, manager):
        payload = {
            "version": "1.0",
            "customTypes": [],
            "customAnnotations": [
                {"id": "x1", "x": 0, "y": 0, "order": 1, "annotationType": "custom",
                 "customTypeId": "ghost", "imageId": "img"},
                {"id": "x2", "x": 0, "y": 0, "order": 1, "annotationType": "custom",
                 "customTypeId": "leaf"},
            ],
        }
        result = manager.import_data(payload)
        assert result.annotations_skipped == 2
        assert len(result.warnings) == 2

    def test_import_over_type_cap_changes_nothing(self, memory_store):
        mgr = CustomAnnotationManager(
            limits=LimitsConfig(max_custom_types=2),
            persistence=memory_store,
            type_store=memory_store,
        )
        mgr.create_type(id="a", name="A", kind="point", color="#111")
        payload = {
            "version": "1.0",
            "customTypes": [
                {"id": "b", "name": "B", "kind": "point", "color": "#222"},
                {"id": "c", "name": "C", "kind": "point", "color": "#333"},
            ],
            "customAnnotations": [
                {"id": "x1", "x": 0, "y": 0, "order": 1, "annotationType": "custom",
                 "customTypeId": "b", "imageId": "img"},
            ],
        }
        with pytest.raises(ValidationError, match=r"custom types \(2\)"):
            mgr.import_data(payload)
        assert [t.id for t in mgr.types()] == ["a"]
        assert [t.id for t in memory_store.load_custom_types()] == ["a"]
        assert mgr.annotations_for_image("img") == []

    def test_import_emits_created(self, manager, recorder):
        payload = {
            "version": "0.9",
            "customAnnotations": [
                {"id": "x1", "x": 0, "y": 0, "order": 1, "typeId": "leaf", "imageId": "img"},
            ],
        }
        assert manager.import_data(payload).annotations_added == 1
        event = recorder.of_type(AnnotationCreated)[-1]
        assert event.context == {"imageId": "img", "source": "import"}


class TestSync:
    def test_local_changes_notify(self, memory_store):
        bridge = RecordingBridge()
        mgr = CustomAnnotationManager(persistence=memory_store, sync_bridge=bridge)
        mgr.create_type(id="leaf", name="Leaf", kind="point", color="#0f0")
        ann = mgr.create_annotation("leaf", 0, 0, "img", context={"plantId": "p"})
        mgr.delete_annotation(ann.id)
        kinds = [e.kind for e in bridge.events]
        assert kinds == [
            SyncEventKind.type_create,
            SyncEventKind.annotation_create,
            SyncEventKind.annotation_delete,
        ]
        assert bridge.events[1].context == {"imageId": "img", "plantId": "p"}

    def test_broken_bridge_does_not_fail_edit(self, memory_store):
        mgr = CustomAnnotationManager(persistence=memory_store, sync_bridge=BrokenBridge())
        mgr.create_type(id="leaf", name="Leaf", kind="point", color="#0f0")
        assert mgr.create_annotation("leaf", 0, 0, "img").order == 1

    def test_remote_changes_do_not_echo(self, memory_store, recorder, bus):
        bridge = RecordingBridge()
        mgr = CustomAnnotationManager(persistence=memory_store, sync_bridge=bridge, events=bus)
        mgr.create_type(id="leaf", name="Leaf", kind="point", color="#0f0")
        bridge.events.clear()
        record = {"id": "remote1", "x": 5, "y": 5, "order": 1, "annotationType": "custom",
                  "customTypeId": "leaf", "imageId": "img"}

        assert mgr.apply_remote_create(record) is True
        assert mgr.apply_remote_create(record) is False
        assert mgr.apply_remote_update({**record, "x": 50}) is True
        assert mgr.get("remote1").x == 50
        assert mgr.apply_remote_delete("remote1") is True
        assert mgr.apply_remote_delete("remote1") is False

        assert bridge.events == []
        assert recorder.of_type(AnnotationCreated)[0].context["remote"] is True
        assert len(recorder.of_type(AnnotationUpdated)) == 1

    def test_remote_create_unknown_type(self, manager):
        record = {"id": "r", "x": 0, "y": 0, "order": 1, "annotationType": "custom",
                  "customTypeId": "ghost", "imageId": "img"}
        assert manager.apply_remote_create(record) is False


def test_companion_union_on_keypoint_edit(memory_store, bus):
    keypoints = RegularKeypointStore(persistence=memory_store, events=bus)
    mgr = CustomAnnotationManager(persistence=memory_store, companion=keypoints, events=bus)
    keypoints.companion = mgr
    mgr.create_type(id="leaf", name="Leaf", kind="point", color="#0f0")
    mgr.create_annotation("leaf", 0, 0, "img")
    keypoints.add_keypoint("img", 1, 1)
    stored = memory_store.load_annotations("img")
    assert [a.annotation_type for a in stored] == [AnnotationKind.regular, AnnotationKind.custom]
