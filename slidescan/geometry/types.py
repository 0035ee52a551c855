"""Points, quadrilaterals and image sizes tagged with the space they live in.

Display-space and source-space polygons are distinct classes. Converting one
into the other goes through ``slidescan.geometry.coordinates``; the mapper
functions reject a polygon from the wrong space.
"""

from dataclasses import dataclass
from typing import Iterable, NamedTuple, Sequence, Tuple

import numpy as np

from slidescan.errors import InvalidPolygon

CORNER_NAMES = ("top-left", "top-right", "bottom-right", "bottom-left")


class Point(NamedTuple):
    """A 2D coordinate. Carries no space of its own."""

    x: float
    y: float


class Size(NamedTuple):
    """Image dimensions in pixels."""

    width: int
    height: int


def _coerce_points(points: Iterable[Sequence[float]]) -> Tuple[Point, ...]:
    coerced = []
    for pt in points:
        if len(pt) != 2:
            raise InvalidPolygon(f"Corner must have 2 coordinates, got {len(pt)}")
        x, y = float(pt[0]), float(pt[1])
        if not (np.isfinite(x) and np.isfinite(y)):
            raise InvalidPolygon(f"Corner has non-finite coordinates: ({x}, {y})")
        coerced.append(Point(x, y))
    return tuple(coerced)


@dataclass(frozen=True)
class _Quad:
    """Four corners ordered top-left, top-right, bottom-right, bottom-left."""

    points: Tuple[Point, Point, Point, Point]

    def __post_init__(self) -> None:
        points = _coerce_points(self.points)
        if len(points) != 4:
            raise InvalidPolygon(f"Polygon must have exactly 4 corners, got {len(points)}")
        object.__setattr__(self, "points", points)

    @classmethod
    def from_array(cls, arr: np.ndarray):
        """Build from an array-like of shape (4, 2)."""
        arr = np.asarray(arr, dtype=np.float64)
        if arr.ndim != 2 or arr.shape[1] != 2:
            raise InvalidPolygon(f"Expected an (N, 2) array of corners, got shape {arr.shape}")
        return cls(tuple(Point(float(x), float(y)) for x, y in arr))

    def as_array(self) -> np.ndarray:
        """Corners as a float32 array of shape (4, 2)."""
        return np.array(self.points, dtype=np.float32)

    def as_list(self) -> list:
        return [[p.x, p.y] for p in self.points]

    def replace(self, index: int, point: Point):
        """Return a copy with one corner replaced."""
        if not 0 <= index < 4:
            raise IndexError(f"Corner index must be 0-3, got {index}")
        points = list(self.points)
        points[index] = Point(float(point[0]), float(point[1]))
        return type(self)(tuple(points))

    def __iter__(self):
        return iter(self.points)

    def __len__(self) -> int:
        return 4

    def __getitem__(self, index: int) -> Point:
        return self.points[index]


@dataclass(frozen=True)
class SourcePolygon(_Quad):
    """Document corners in native pixel coordinates of the source image."""


@dataclass(frozen=True)
class DisplayPolygon(_Quad):
    """Document corners in viewport coordinates of the rendered image."""


def order_corners(points: Sequence[Sequence[float]]) -> np.ndarray:
    """Order four corner points as: top-left, top-right, bottom-right, bottom-left.

    Args:
        points: Four (x, y) points in any order.

    Returns:
        Ordered float32 array of shape (4, 2).

    Raises:
        InvalidPolygon: If there are not exactly four points.
    """
    pts = np.asarray(points, dtype=np.float32)
    if pts.shape != (4, 2):
        raise InvalidPolygon(f"Expected 4 corner points, got array of shape {pts.shape}")

    s = pts.sum(axis=1)
    d = np.diff(pts, axis=1).flatten()

    ordered = np.zeros((4, 2), dtype=np.float32)
    ordered[0] = pts[np.argmin(s)]   # top-left
    ordered[1] = pts[np.argmin(d)]   # top-right
    ordered[2] = pts[np.argmax(s)]   # bottom-right
    ordered[3] = pts[np.argmax(d)]   # bottom-left

    return ordered


def default_polygon(
    size: Size,
    inset_x: float = 0.1,
    inset_y: float = 0.1,
) -> SourcePolygon:
    """Inset rectangle used when no corners were detected.

    Args:
        size: Source image size.
        inset_x: Horizontal inset as a fraction of the width, per side.
        inset_y: Vertical inset as a fraction of the height, per side.

    Returns:
        SourcePolygon of the inset rectangle.
    """
    if not (0.0 <= inset_x < 0.5 and 0.0 <= inset_y < 0.5):
        raise ValueError(f"Inset fractions must be in [0, 0.5), got ({inset_x}, {inset_y})")

    left = size.width * inset_x
    right = size.width * (1.0 - inset_x)
    top = size.height * inset_y
    bottom = size.height * (1.0 - inset_y)

    return SourcePolygon((
        Point(left, top),
        Point(right, top),
        Point(right, bottom),
        Point(left, bottom),
    ))
