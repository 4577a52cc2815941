"""Tests for lon/lat bounding boxes."""

from __future__ import annotations

import pytest

from mapsync.geo.bounds import Bounds


class TestBounds:
    def test_from_coordinates(self):
        b = Bounds.from_coordinates([(35.0, 31.5), (35.4, 31.2), (35.2, 32.0)])
        assert b.as_tuple == (35.0, 31.2, 35.4, 32.0)
        assert b.center == pytest.approx((35.2, 31.6))

    def test_single_point(self):
        b = Bounds.from_coordinates([(35.0, 31.5)])
        assert b.is_point
        assert b.contains((35.0, 31.5))

    def test_empty_raises(self):
        with pytest.raises(ValueError):
            Bounds.from_coordinates([])

    def test_contains_edges(self):
        b = Bounds(35.0, 31.0, 36.0, 32.0)
        assert b.contains((35.0, 32.0))
        assert not b.contains((34.99, 31.5))

    def test_union(self):
        a = Bounds(35.0, 31.0, 35.5, 31.5)
        b = Bounds(35.2, 30.8, 36.0, 31.2)
        assert a.union(b).as_tuple == (35.0, 30.8, 36.0, 31.5)
