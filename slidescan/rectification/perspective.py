"""Perspective correction via homographic transform.

Takes document corners and warps the image to a fronto-parallel rectangle. The
output height is the shorter of the two vertical edges, so perspective skew is
never amplified into an oversized output, and the width follows from a fixed
aspect ratio (16:9 by default, matching slide capture).
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Sequence, Tuple, Union

import cv2
import numpy as np

from slidescan.errors import InvalidPolygon, TransformFailure
from slidescan.geometry.types import SourcePolygon
from slidescan.preprocessing.loader import ImageBuffer

logger = logging.getLogger(__name__)

DEFAULT_ASPECT_RATIO = 16.0 / 9.0

# Quads with less area than this (px^2) cannot produce a usable homography.
_MIN_AREA = 1.0

# Homographies with a condition number above this are treated as singular.
_MAX_CONDITION = 1e12


class DegeneratePolygon(InvalidPolygon, TransformFailure):
    """Four corners that do not form a simple convex quadrilateral."""


@dataclass
class RectificationResult:
    """Rectified image plus the source-space corners that produced it."""

    image: ImageBuffer
    polygon: SourcePolygon
    homography: np.ndarray = field(repr=False)
    elapsed: float = 0.0

    @property
    def width(self) -> int:
        return self.image.width

    @property
    def height(self) -> int:
        return self.image.height


def _signed_area(corners: np.ndarray) -> float:
    x = corners[:, 0].astype(np.float64)
    y = corners[:, 1].astype(np.float64)
    return 0.5 * float(np.dot(x, np.roll(y, -1)) - np.dot(y, np.roll(x, -1)))


def check_polygon(polygon: Union[SourcePolygon, Sequence, np.ndarray]) -> SourcePolygon:
    """Validate corners before any native call.

    Args:
        polygon: SourcePolygon or four (x, y) points ordered TL, TR, BR, BL.

    Returns:
        The corners as a SourcePolygon.

    Raises:
        InvalidPolygon: Wrong point count or non-finite coordinates.
        DegeneratePolygon: Near-zero area, self-intersecting or non-convex quad.
    """
    if not isinstance(polygon, SourcePolygon):
        polygon = SourcePolygon.from_array(np.asarray(polygon, dtype=np.float64))

    corners = polygon.as_array().astype(np.float64)

    area = _signed_area(corners)
    if abs(area) < _MIN_AREA:
        raise DegeneratePolygon(f"Polygon area {abs(area):.3f}px^2 is too small to rectify")

    # Every turn must go the same way for a simple convex quad.
    edges = np.roll(corners, -1, axis=0) - corners
    next_edges = np.roll(edges, -1, axis=0)
    cross = edges[:, 0] * next_edges[:, 1] - edges[:, 1] * next_edges[:, 0]
    if not (np.all(cross > 0) or np.all(cross < 0)):
        raise DegeneratePolygon("Corners do not form a convex quadrilateral")

    return polygon


def compute_output_dimensions(
    corners: np.ndarray,
    aspect_ratio: float = DEFAULT_ASPECT_RATIO,
) -> Tuple[int, int]:
    """Compute output rectangle dimensions from corner points.

    Args:
        corners: Ordered corner points (4, 2) as [TL, TR, BR, BL].
        aspect_ratio: Output width divided by height.

    Returns:
        (width, height) in pixels.
    """
    if aspect_ratio <= 0:
        raise ValueError(f"Aspect ratio must be positive, got {aspect_ratio}")

    tl, tr, br, bl = np.asarray(corners, dtype=np.float64)

    height_left = np.linalg.norm(bl - tl)
    height_right = np.linalg.norm(br - tr)
    height = min(height_left, height_right)

    return int(round(height * aspect_ratio)), int(round(height))


def _solve_homography(src: np.ndarray, width: int, height: int) -> np.ndarray:
    dst = np.array([
        [0, 0],
        [width, 0],
        [width, height],
        [0, height],
    ], dtype=np.float32)

    try:
        matrix = cv2.getPerspectiveTransform(src.astype(np.float32), dst)
    except cv2.error as e:
        raise TransformFailure(f"Could not solve homography: {e}") from e

    if not np.all(np.isfinite(matrix)) or abs(np.linalg.det(matrix)) < 1e-12:
        raise TransformFailure("Homography is singular")
    if np.linalg.cond(matrix) > _MAX_CONDITION:
        raise TransformFailure("Homography is numerically unstable")

    return matrix


def rectify(
    image: ImageBuffer,
    corners: Union[SourcePolygon, Sequence, np.ndarray],
    aspect_ratio: float = DEFAULT_ASPECT_RATIO,
) -> RectificationResult:
    """Warp the quadrilateral defined by corners into an upright rectangle.

    Args:
        image: Source image, uint8 RGB or RGBA.
        corners: Source-space corners ordered TL, TR, BR, BL.
        aspect_ratio: Output width divided by height.

    Returns:
        RectificationResult with a newly allocated image.

    Raises:
        InvalidPolygon: If the corners are not exactly four finite points.
        TransformFailure: If the quad is degenerate, the homography is singular,
            or OpenCV fails during the warp.
    """
    start = time.time()
    polygon = check_polygon(corners)
    src = polygon.as_array()

    width, height = compute_output_dimensions(src, aspect_ratio)
    if width < 1 or height < 1:
        raise TransformFailure(f"Output would be empty ({width}x{height})")

    matrix = _solve_homography(src, width, height)

    try:
        warped = cv2.warpPerspective(
            np.ascontiguousarray(image.pixels),
            matrix,
            (width, height),
            flags=cv2.INTER_LINEAR,
            borderMode=cv2.BORDER_CONSTANT,
            borderValue=0,
        )
    except cv2.error as e:
        raise TransformFailure(f"Perspective warp failed: {e}") from e

    elapsed = time.time() - start
    logger.info(
        f"Perspective corrected: {image.width}x{image.height} -> {width}x{height} "
        f"in {elapsed:.3f}s"
    )

    return RectificationResult(
        image=ImageBuffer(pixels=warped, reference=None, format="RAW"),
        polygon=polygon,
        homography=matrix,
        elapsed=elapsed,
    )
