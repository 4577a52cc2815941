"""
Geographic bounding boxes for camera fits.

Bounds are kept in lon/lat (WGS84).  Padding is *not* applied here: it is
a fraction of the viewport and only the projector knows the viewport, so
``camera_for_bounds`` applies it in screen space.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Tuple

from shapely.geometry import MultiPoint

from .feature import Coordinate


@dataclass(frozen=True)
class Bounds:
    """Axis-aligned lon/lat box: (west, south, east, north)."""

    west: float
    south: float
    east: float
    north: float

    @classmethod
    def from_coordinates(cls, coords: Iterable[Coordinate]) -> "Bounds":
        pts = list(coords)
        if not pts:
            raise ValueError("Cannot build bounds from an empty coordinate list")
        minx, miny, maxx, maxy = MultiPoint(pts).bounds
        return cls(minx, miny, maxx, maxy)

    @property
    def as_tuple(self) -> Tuple[float, float, float, float]:
        return (self.west, self.south, self.east, self.north)

    @property
    def center(self) -> Coordinate:
        return ((self.west + self.east) / 2.0, (self.south + self.north) / 2.0)

    @property
    def is_point(self) -> bool:
        return self.west == self.east and self.south == self.north

    def contains(self, coord: Coordinate) -> bool:
        """True if *coord* lies inside or on the edge of the box."""
        lon, lat = coord
        return self.west <= lon <= self.east and self.south <= lat <= self.north

    def union(self, other: "Bounds") -> "Bounds":
        return Bounds(
            min(self.west, other.west), min(self.south, other.south),
            max(self.east, other.east), max(self.north, other.north),
        )
