"""Neural corner detection with heatmap and point models."""

from slidescan.corner_detection.detector import (
    CornerDetector,
    DetectionResult,
    ModelKind,
    draw_detection,
)
from slidescan.corner_detection.models import (
    HEATMAP_MODEL,
    MODEL_FILES,
    POINT_MODEL,
    ModelRegistry,
    install_models,
)

__all__ = [
    "CornerDetector",
    "DetectionResult",
    "HEATMAP_MODEL",
    "MODEL_FILES",
    "ModelKind",
    "ModelRegistry",
    "POINT_MODEL",
    "draw_detection",
    "install_models",
]
