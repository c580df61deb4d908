"""Tests for point and rectangle helpers."""

from __future__ import annotations

import pytest

from facepipe.ml.geometry import Point, Rect, center_point


class TestPoint:
    def test_arithmetic(self) -> None:
        assert Point(1, 2).add(Point(3, 4)) == Point(4, 6)
        assert Point(1, 2).sub(Point(3, 4)) == Point(-2, -2)
        assert Point(3, 4).magnitude() == pytest.approx(5.0)

    def test_center_point(self) -> None:
        assert center_point([Point(0, 0), Point(2, 0), Point(1, 3)]) == Point(1, 1)


class TestRect:
    def test_inside_box_is_only_floored(self) -> None:
        assert Rect(10.7, 20.2, 30.5, 40.9).clip_at_image_borders(200, 200) == Rect(10, 20, 31, 41)

    def test_box_past_the_edges_is_clamped(self) -> None:
        assert Rect(-5, -5, 50, 50).clip_at_image_borders(30, 40) == Rect(0, 0, 30, 40)

    def test_degenerate_box_keeps_one_pixel(self) -> None:
        clipped = Rect(120, 5, 10, 0).clip_at_image_borders(100, 100)
        assert clipped == Rect(99, 5, 1, 1)

    def test_floor(self) -> None:
        assert Rect(1.9, 2.1, 3.5, 4.99).floor() == Rect(1, 2, 3, 4)
