"""Corner extraction from the point-regression model."""

import logging
from typing import List

import numpy as np

from slidescan.geometry.types import Point, Size

logger = logging.getLogger(__name__)

PRESENCE_THRESHOLD = 0.4


def postprocess_points(
    points: np.ndarray,
    has_obj: np.ndarray,
    original_size: Size,
    presence_threshold: float = PRESENCE_THRESHOLD,
) -> List[Point]:
    """Scale normalized (x, y) pairs to source pixels, gated by presence score.

    Args:
        points: Eight normalized coordinates, any shape flattening to (8,).
        has_obj: Object presence score, any shape whose first element is the score.
        original_size: Source image size.
        presence_threshold: Scores at or below this mean "no document".

    Returns:
        Four source-space points, or an empty list on a miss.
    """
    score = float(np.asarray(has_obj, dtype=np.float32).ravel()[0])
    if score <= presence_threshold:
        logger.debug(f"Point model presence score {score:.3f} <= {presence_threshold}")
        return []

    flat = np.asarray(points, dtype=np.float32).ravel()
    if flat.size != 8:
        logger.warning(f"Expected 8 coordinate values (4 points), got {flat.size}")
        return []

    return [
        Point(float(flat[i * 2]) * original_size.width, float(flat[i * 2 + 1]) * original_size.height)
        for i in range(4)
    ]
