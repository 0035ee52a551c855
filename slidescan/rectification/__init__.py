"""Perspective rectification of document quadrilaterals."""

from slidescan.rectification.perspective import (
    DEFAULT_ASPECT_RATIO,
    DegeneratePolygon,
    RectificationResult,
    check_polygon,
    compute_output_dimensions,
    rectify,
)

__all__ = [
    "DEFAULT_ASPECT_RATIO",
    "DegeneratePolygon",
    "RectificationResult",
    "check_polygon",
    "compute_output_dimensions",
    "rectify",
]
