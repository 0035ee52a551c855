"""QR code extraction from rectified (or original) images."""

import logging
from dataclasses import dataclass
from typing import Optional

import cv2
import numpy as np

from slidescan.errors import InvalidPolygon
from slidescan.geometry.types import SourcePolygon
from slidescan.preprocessing.loader import ImageBuffer

logger = logging.getLogger(__name__)


@dataclass
class CodeResult:
    """Outcome of a QR scan. Corners are in the scanned image's pixel space."""

    found: bool
    text: str = ""
    corners: Optional[SourcePolygon] = None


def extract_code(image: ImageBuffer) -> CodeResult:
    """Detect and decode a QR code.

    Args:
        image: Image to scan, uint8 RGB or RGBA.

    Returns:
        CodeResult. Never raises for a missing or undecodable code.
    """
    gray = cv2.cvtColor(np.ascontiguousarray(image.rgb()), cv2.COLOR_RGB2GRAY)
    detector = cv2.QRCodeDetector()

    try:
        text, points, _ = detector.detectAndDecode(gray)
    except cv2.error as e:
        logger.debug(f"QR detection failed: {e}")
        return CodeResult(found=False)

    if not text:
        logger.debug("No QR code found")
        return CodeResult(found=False)

    corners = None
    if points is not None:
        pts = np.asarray(points, dtype=np.float64).reshape(-1, 2)
        if pts.shape == (4, 2):
            try:
                corners = SourcePolygon.from_array(pts)
            except InvalidPolygon:
                corners = None

    logger.info(f"QR code found: {text!r}")
    return CodeResult(found=True, text=text, corners=corners)
