"""Points and axis-aligned rectangles in pixel space."""

from __future__ import annotations

import math
from dataclasses import dataclass


@dataclass(frozen=True)
class Point:
    x: float
    y: float

    def add(self, other: Point) -> Point:
        return Point(self.x + other.x, self.y + other.y)

    def sub(self, other: Point) -> Point:
        return Point(self.x - other.x, self.y - other.y)

    def magnitude(self) -> float:
        return math.hypot(self.x, self.y)


def center_point(points: list[Point]) -> Point:
    """Return the mean of a non-empty list of points."""
    total = Point(0.0, 0.0)
    for pt in points:
        total = total.add(pt)
    return Point(total.x / len(points), total.y / len(points))


@dataclass(frozen=True)
class Rect:
    """Rectangle given by its top-left corner and size."""

    x: float
    y: float
    width: float
    height: float

    @property
    def right(self) -> float:
        return self.x + self.width

    @property
    def bottom(self) -> float:
        return self.y + self.height

    def floor(self) -> Rect:
        return Rect(math.floor(self.x), math.floor(self.y), math.floor(self.width), math.floor(self.height))

    def clip_at_image_borders(self, image_width: int, image_height: int) -> Rect:
        """Clamp to the image, keeping at least one pixel in each dimension."""
        x = min(max(0, math.floor(self.x)), image_width - 1)
        y = min(max(0, math.floor(self.y)), image_height - 1)
        right = min(max(x + 1, math.floor(self.right)), image_width)
        bottom = min(max(y + 1, math.floor(self.bottom)), image_height)
        return Rect(x, y, right - x, bottom - y)
