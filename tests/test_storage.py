"""Tests for keyseries.storage."""

from __future__ import annotations

import json

import pytest

from keyseries.errors import CollaboratorError
from keyseries.providers import PersistenceProvider, TypeStore
from keyseries.storage import (
    InMemoryAnnotationStore,
    JsonAnnotationStore,
    sanitize_image_id,
)
from keyseries.types import (
    AnnotationType,
    CustomRegionAnnotation,
    MarkerKind,
    RegularAnnotation,
)


class TestSanitize:
    def test_unsafe_characters_replaced(self):
        assert sanitize_image_id("plant 1/day:3") == "plant_1_day_3"

    def test_empty_rejected(self):
        with pytest.raises(ValueError):
            sanitize_image_id("..")


class TestJsonAnnotationStore:
    def test_satisfies_protocols(self, json_store):
        assert isinstance(json_store, PersistenceProvider)
        assert isinstance(json_store, TypeStore)

    def test_missing_image_is_empty(self, json_store):
        assert json_store.load_annotations("nothing") == []
        assert json_store.image_ids() == []

    def test_save_and_load(self, json_store, make_regular, make_custom):
        records = [
            make_regular(1, x=10, y=20, image_id="img-1", directions=[45.0]),
            make_custom("lesion", 1, x=5, y=6, image_id="img-1", width=12, height=14),
        ]
        json_store.save_annotations("img-1", records)
        loaded = json_store.load_annotations("img-1")
        assert [a.to_dict() for a in loaded] == [a.to_dict() for a in records]
        assert isinstance(loaded[0], RegularAnnotation)
        assert isinstance(loaded[1], CustomRegionAnnotation)

    def test_file_layout(self, json_store, make_regular):
        json_store.save_annotations("img 1", [make_regular(1, image_id="img 1")])
        path = json_store.path_for("img 1")
        assert path.name == "img_1.json"
        data = json.loads(path.read_text())
        assert data["imageId"] == "img 1"
        assert len(data["annotations"]) == 1
        assert json_store.image_ids() == ["img 1"]

    def test_no_temp_files_left(self, json_store, make_regular):
        json_store.save_annotations("a", [make_regular(1)])
        json_store.save_annotations("a", [make_regular(1), make_regular(2)])
        assert [p.name for p in json_store.root.iterdir()] == ["a.json"]

    def test_bare_list_file_accepted(self, json_store):
        json_store.root.mkdir(parents=True)
        (json_store.root / "old.json").write_text(
            json.dumps([{"id": "k", "x": 1, "y": 2, "order": 1, "direction": "left"}])
        )
        loaded = json_store.load_annotations("old")
        assert loaded[0].direction == 180
        assert loaded[0].image_id == "old"

    def test_malformed_json(self, json_store):
        json_store.root.mkdir(parents=True)
        (json_store.root / "bad.json").write_text("{not json")
        with pytest.raises(CollaboratorError) as exc:
            json_store.load_annotations("bad")
        assert exc.value.collaborator == "json-store"
        assert not exc.value.retryable

    def test_invalid_record(self, json_store):
        json_store.save_raw("bad", [{"id": "k", "x": 1, "y": 2, "order": 1,
                                     "annotationType": "blob"}])
        with pytest.raises(CollaboratorError):
            json_store.load_annotations("bad")

    def test_custom_types_round_trip(self, json_store):
        types = [AnnotationType(id="leaf", name="Leaf", kind=MarkerKind.point, color="#0f0")]
        json_store.save_custom_types(types)
        data = json.loads(json_store.custom_types_path.read_text())
        assert data["version"] == "1.0"
        assert json_store.load_custom_types() == types
        # The types file is not an image
        assert json_store.image_ids() == []

    def test_delete(self, json_store, make_regular):
        json_store.save_annotations("a", [make_regular(1)])
        assert json_store.delete("a") is True
        assert json_store.delete("a") is False


class TestInMemoryAnnotationStore:
    def test_records_are_isolated(self, memory_store, make_regular):
        ann = make_regular(1, image_id="a")
        memory_store.save_annotations("a", [ann])
        ann.x = 500
        assert memory_store.load_annotations("a")[0].x == 0
        assert memory_store.save_count == 1

    def test_image_ids_sorted(self, memory_store, make_regular):
        memory_store.save_annotations("b", [make_regular(1)])
        memory_store.save_annotations("a", [make_regular(1)])
        assert memory_store.image_ids() == ["a", "b"]

    def test_satisfies_protocols(self):
        store = InMemoryAnnotationStore()
        assert isinstance(store, PersistenceProvider)
        assert isinstance(store, TypeStore)


def test_json_store_root_is_path(tmp_path):
    store = JsonAnnotationStore(str(tmp_path))
    assert store.root == tmp_path
