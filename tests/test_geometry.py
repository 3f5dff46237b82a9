"""Tests for keyseries.utils.geometry."""

from __future__ import annotations

import pytest

from keyseries.utils.geometry import (
    clamp_point,
    clamp_region,
    compute_crop_window,
    crop_size_for_zoom,
    point_in_rect,
    region_from_corners,
    round_half_up,
)


class TestClamping:
    def test_clamp_point(self):
        assert clamp_point(-5, 50, 100, 100) == (0, 50)
        assert clamp_point(150, 120, 100, 100) == (100, 100)

    def test_clamp_region_shrinks_to_fit(self):
        assert clamp_region(95, 10, 20, 20, 100, 100) == (95, 10, 5, 20)

    def test_clamp_region_anchor_outside(self):
        x, y, w, h = clamp_region(-10, -10, 20, 20, 100, 100)
        assert (x, y) == (0, 0)
        assert (w, h) == (20, 20)

    def test_region_from_corners_normalises(self):
        assert region_from_corners(50, 60, 20, 10) == (20, 10, 30, 50)

    def test_point_in_rect_edges_inclusive(self):
        assert point_in_rect(10, 10, 10, 10, 5, 5)
        assert point_in_rect(15, 15, 10, 10, 5, 5)
        assert not point_in_rect(15.1, 15, 10, 10, 5, 5)


class TestCropWindow:
    def test_round_half_up(self):
        assert round_half_up(2.5) == 3
        assert round_half_up(2.4) == 2

    def test_crop_size_for_zoom(self):
        assert crop_size_for_zoom(2) == 100
        assert crop_size_for_zoom(1) == 200
        assert crop_size_for_zoom(3) == 67

    def test_non_positive_zoom_rejected(self):
        with pytest.raises(ValueError):
            crop_size_for_zoom(0)

    def test_clamped_at_origin(self):
        window = compute_crop_window(0, 0, 1000, 1000, zoom=2)
        assert (window.x, window.y) == (0, 0)
        assert window.size == 100

    def test_centered(self):
        window = compute_crop_window(120, 80, 1000, 1000, zoom=2)
        assert (window.x, window.y) == (70, 30)
        assert (window.width, window.height) == (100, 100)

    def test_clamped_at_far_edge(self):
        window = compute_crop_window(990, 995, 1000, 1000, zoom=2)
        assert (window.x, window.y) == (900, 900)

    def test_image_smaller_than_crop(self):
        window = compute_crop_window(30, 30, 60, 50, zoom=1)
        assert (window.x, window.y) == (0, 0)
        assert (window.width, window.height) == (60, 50)

    def test_contains_and_viewport_mapping(self):
        window = compute_crop_window(120, 80, 1000, 1000, zoom=2)
        assert window.contains(120, 80)
        assert not window.contains(500, 500)
        assert window.to_viewport(120, 80, 200, 200) == (100.0, 100.0)
        assert window.to_viewport(70, 30, 200, 200) == (0.0, 0.0)
