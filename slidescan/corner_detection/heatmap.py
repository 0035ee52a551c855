"""Corner extraction from per-corner heatmaps.

Each of the four channels is upsampled to the source resolution, thresholded,
and the centroid of its largest external contour becomes that corner.
"""

import logging
from typing import List, Optional

import cv2
import numpy as np

from slidescan.errors import TransformFailure
from slidescan.geometry.types import Point, Size

logger = logging.getLogger(__name__)

HEATMAP_THRESHOLD = 0.3


def _channel_peak(channel: np.ndarray, size: Size, threshold: float) -> Optional[Point]:
    resized = cv2.resize(
        channel.astype(np.float32),
        (size.width, size.height),
        interpolation=cv2.INTER_LINEAR,
    )
    _, thresh = cv2.threshold(resized, threshold, 1.0, cv2.THRESH_BINARY)
    binary = (thresh * 255).astype(np.uint8)

    contours, _ = cv2.findContours(binary, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)
    if not contours:
        return None

    largest = max(contours, key=cv2.contourArea)
    if cv2.contourArea(largest) <= 0:
        return None

    m = cv2.moments(largest)
    if m["m00"] == 0:
        return None

    return Point(m["m10"] / m["m00"], m["m01"] / m["m00"])


def postprocess_heatmap(
    heatmap: np.ndarray,
    original_size: Size,
    threshold: float = HEATMAP_THRESHOLD,
) -> List[Point]:
    """Turn a corner heatmap into source-space corner points.

    Args:
        heatmap: Network output of shape (1, 4, H, W) or (4, H, W).
        original_size: Source image size the corners are scaled to.
        threshold: Confidence above which a pixel belongs to a corner blob.

    Returns:
        One point per channel that produced a contour, in channel order. Fewer
        than four points means the heatmap path missed.
    """
    heatmap = np.asarray(heatmap, dtype=np.float32)
    if heatmap.ndim == 4:
        heatmap = heatmap[0]
    if heatmap.ndim != 3:
        raise TransformFailure(f"Unexpected heatmap shape {heatmap.shape}")

    points = []
    try:
        for c, channel in enumerate(heatmap):
            peak = _channel_peak(channel, original_size, threshold)
            if peak is None:
                logger.debug(f"Heatmap channel {c}: no region above {threshold}")
                continue
            points.append(peak)
    except cv2.error as e:
        raise TransformFailure(f"Heatmap postprocessing failed: {e}") from e

    return points
