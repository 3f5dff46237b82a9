"""Tests for keyseries.session."""

from __future__ import annotations

import pytest

from keyseries.errors import KeySeriesError, NotFoundError, ValidationError
from keyseries.events import DragInterrupted, EventRecorder
from keyseries.preview import MarkerStyle
from keyseries.series import FileImageSource
from keyseries.session import AnnotationSession
from keyseries.types import AnnotationKind, Scope


@pytest.fixture
def session(series_store, series_provider) -> AnnotationSession:
    s = AnnotationSession(series_store, series_provider, FileImageSource())
    s.manager.create_type(id="leaf", name="Leaf tip", kind="point", color="#00ff00")
    s.manager.create_type(id="lesion", name="Lesion", kind="region", color="#ff0000")
    return s


@pytest.fixture
def image_c(series_provider):
    return series_provider.get("C")


class TestOpenImage:
    def test_open_loads_and_previews(self, session, image_c):
        result = session.open_image(image_c)
        assert session.index == 2
        assert [a.id for a in session.annotations()] == ["c1", "c2"]
        assert result.ok
        assert result.target.id == "b3"

    def test_first_image_has_no_reference(self, session, series_provider):
        result = session.open_image(series_provider.get("A"))
        assert result.reason == "first image"

    def test_no_image_open(self, session):
        with pytest.raises(ValidationError):
            session.click(1, 1)
        with pytest.raises(KeySeriesError):
            session.refresh_preview()
        assert session.context == {}

    def test_types_reloaded_from_store(self, session, series_store, series_provider):
        again = AnnotationSession(series_store, series_provider, FileImageSource())
        assert [t.id for t in again.manager.types()] == ["leaf", "lesion"]


class TestCreation:
    def test_click_adds_keypoint_and_advances_preview(self, session, image_c, series_store):
        session.open_image(image_c)
        result = session.click(300, 300)
        assert result.success
        assert result.annotation.order == 3
        assert [a.order for a in series_store.load_annotations("C")] == [1, 2, 3]
        assert session.preview.last_result.target.id == "b4"

    def test_custom_click(self, session, image_c, series_store):
        session.open_image(image_c)
        preview = session.set_mode("leaf")
        assert preview.reason == "previous image has no 'leaf' marker #1"
        assert session.active_scope == Scope.custom("leaf")
        result = session.click(5, 5)
        assert result.annotation.order == 1
        stored = series_store.load_annotations("C")
        assert [a.annotation_type for a in stored] == [
            AnnotationKind.regular,
            AnnotationKind.regular,
            AnnotationKind.custom,
        ]

    def test_region_gesture(self, session, image_c):
        session.open_image(image_c)
        session.set_mode("lesion")
        session.begin_region(40, 30)
        assert session.update_region(10, 10) == (10, 10, 30, 20)
        result = session.end_region(10, 10)
        assert result.success
        region = result.annotation
        assert (region.x, region.y, region.width, region.height) == (10, 10, 30, 20)

    def test_end_region_without_begin(self, session, image_c):
        session.open_image(image_c)
        assert session.end_region(1, 1).success is False

    def test_mode_switch_discards_region(self, session, image_c):
        session.open_image(image_c)
        session.set_mode("lesion")
        session.begin_region(0, 0)
        session.set_mode(None)
        assert session.update_region(50, 50) is None

    def test_unknown_mode(self, session, image_c):
        session.open_image(image_c)
        with pytest.raises(NotFoundError):
            session.set_mode("ghost")
        assert not session.mode.is_custom


class TestMove:
    def test_move_shows_dragged_order_then_restores(self, session, image_c, series_store):
        session.open_image(image_c)
        preview = session.begin_move("c2", (0, 0))
        assert preview.target.id == "b2"
        assert preview.plan.target.style == MarkerStyle.dragged

        session.move_to((10, 0))
        result = session.end_move()
        assert result.moved
        assert series_store.load_annotations("C")[1].x == 165
        assert not session.preview.in_specific_mode
        assert session.preview.last_result.target.id == "b3"

    def test_view_scale(self, session, image_c):
        session.open_image(image_c)
        session.set_view_scale(2.0)
        session.begin_move("c1", (0, 0))
        session.move_to((20, 0))
        session.end_move()
        assert session.keypoints.get("c1").x == 520

    def test_cancel(self, session, image_c):
        session.open_image(image_c)
        session.begin_move("c1", (0, 0))
        session.move_to((100, 100))
        assert session.cancel_move() is True
        assert session.keypoints.get("c1").x == 510
        assert session.cancel_move() is False

    def test_mode_switch_interrupts_move(self, session, image_c):
        recorder = EventRecorder(session.events)
        session.open_image(image_c)
        session.begin_move("c1", (0, 0))
        session.move_to((100, 100))
        session.set_mode("leaf")
        assert session.keypoints.get("c1").x == 510
        assert session.end_move() is None
        assert recorder.of_type(DragInterrupted)[0].reason == "mode switch"

    def test_unknown_annotation(self, session, image_c):
        session.open_image(image_c)
        with pytest.raises(NotFoundError):
            session.begin_move("ghost", (0, 0))


class TestEdits:
    def test_delete_and_renumber(self, session, image_c, series_store):
        session.open_image(image_c)
        session.click(1, 1)
        session.delete_annotation("c2")
        assert [a.order for a in session.annotations()] == [1, 3]
        # Next order appends after the max, so the preview targets #4
        assert session.preview.last_result.target_order == 4

        assert session.renumber() == 1
        assert [a.order for a in series_store.load_annotations("C")] == [1, 2]
        assert session.preview.last_result.target.id == "b3"

    def test_update_order(self, session, image_c):
        session.open_image(image_c)
        with pytest.raises(ValidationError):
            session.update_order("c1", 2)
        assert session.update_order("c1", 5).order == 5

    def test_zoom(self, session, image_c):
        session.open_image(image_c)
        result = session.set_zoom(4)
        assert result.plan.window.size == 50
