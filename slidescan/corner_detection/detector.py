"""Detect the four corners of a document (slide, page, whiteboard) in a photo.

Two models compete, tried in fixed priority order:
- "heatmap": one confidence map per corner. Precise when it fires.
- "point": direct regression of four normalized (x, y) pairs plus a presence
  score. Coarser, but fires more often.

The point model only runs when the heatmap path yields fewer than four corners.
If neither yields four, the result carries no polygon and callers seed the
default inset rectangle instead.
"""

import enum
import logging
import time
from dataclasses import dataclass, field
from typing import Any, List, Optional

import cv2
import numpy as np

from slidescan.corner_detection.heatmap import HEATMAP_THRESHOLD, postprocess_heatmap
from slidescan.corner_detection.models import HEATMAP_MODEL, POINT_MODEL, ModelRegistry
from slidescan.corner_detection.points import PRESENCE_THRESHOLD, postprocess_points
from slidescan.errors import InitializationError, InvalidPolygon, TransformFailure
from slidescan.geometry.types import Point, SourcePolygon, default_polygon
from slidescan.preprocessing.loader import ImageBuffer
from slidescan.preprocessing.tensor import MODEL_INPUT_SIZE, PreprocessResult, preprocess

logger = logging.getLogger(__name__)

INPUT_NAME = "img"


class ModelKind(enum.Enum):
    """Which model produced the corners."""

    HEATMAP = "heatmap"
    POINT = "point"
    NONE = "none"


@dataclass
class DetectionResult:
    """Result of corner detection."""

    polygon: Optional[SourcePolygon]
    model_used: ModelKind = ModelKind.NONE
    elapsed: float = field(default=0.0)  # seconds

    @property
    def found(self) -> bool:
        return self.polygon is not None

    def polygon_or_default(self, image: ImageBuffer, inset_x: float = 0.1, inset_y: float = 0.1) -> SourcePolygon:
        """Detected corners, or the inset rectangle when detection missed."""
        if self.polygon is not None:
            return self.polygon
        return default_polygon(image.size, inset_x, inset_y)


class CornerDetector:
    """Runs the heatmap model, then the point model, over one image at a time."""

    def __init__(
        self,
        registry: ModelRegistry,
        heatmap_model: str = HEATMAP_MODEL,
        point_model: str = POINT_MODEL,
        input_size: int = MODEL_INPUT_SIZE,
        heatmap_threshold: float = HEATMAP_THRESHOLD,
        presence_threshold: float = PRESENCE_THRESHOLD,
    ) -> None:
        self.registry = registry
        self.heatmap_model = heatmap_model
        self.point_model = point_model
        self.input_size = input_size
        self.heatmap_threshold = heatmap_threshold
        self.presence_threshold = presence_threshold

    def _run(self, model: str, output_names: List[str], prepared: PreprocessResult) -> List[Any]:
        session = self.registry.get(model)
        return session.run(output_names, {INPUT_NAME: prepared.batched()})

    def _heatmap_corners(self, prepared: PreprocessResult) -> List[Point]:
        (heatmap,) = self._run(self.heatmap_model, ["heatmap"], prepared)
        return postprocess_heatmap(heatmap, prepared.original_size, self.heatmap_threshold)

    def _point_corners(self, prepared: PreprocessResult) -> List[Point]:
        points, has_obj = self._run(self.point_model, ["points", "has_obj"], prepared)
        return postprocess_points(points, has_obj, prepared.original_size, self.presence_threshold)

    def _attempt(self, kind: ModelKind, prepared: PreprocessResult) -> Optional[SourcePolygon]:
        runner = self._heatmap_corners if kind is ModelKind.HEATMAP else self._point_corners
        try:
            corners = runner(prepared)
        except InitializationError:
            raise
        except TransformFailure as e:
            logger.warning(f"{kind.value} postprocessing failed: {e}")
            return None
        except Exception as e:
            logger.warning(f"{kind.value} inference failed: {e}")
            return None

        if len(corners) != 4:
            logger.debug(f"{kind.value} model produced {len(corners)} corner(s)")
            return None

        try:
            return SourcePolygon(tuple(corners))
        except InvalidPolygon as e:
            logger.debug(f"{kind.value} corners rejected: {e}")
            return None

    def detect(self, image: ImageBuffer) -> DetectionResult:
        """Locate the document corners in an image.

        Args:
            image: Source image.

        Returns:
            DetectionResult. ``polygon`` is None and ``model_used`` is
            ``ModelKind.NONE`` when neither model found four corners.

        Raises:
            InitializationError: If a model file is missing or unloadable.
        """
        start = time.time()
        prepared = preprocess(image, self.input_size)

        for kind in (ModelKind.HEATMAP, ModelKind.POINT):
            polygon = self._attempt(kind, prepared)
            if polygon is not None:
                elapsed = time.time() - start
                logger.info(f"Corners detected via {kind.value} model in {elapsed:.3f}s")
                return DetectionResult(polygon=polygon, model_used=kind, elapsed=elapsed)

            if kind is ModelKind.HEATMAP:
                logger.debug("Heatmap model missed; trying point model")

        elapsed = time.time() - start
        logger.info(f"No document corners detected ({elapsed:.3f}s)")
        return DetectionResult(polygon=None, model_used=ModelKind.NONE, elapsed=elapsed)


def draw_detection(
    image: ImageBuffer,
    polygon: SourcePolygon,
    label: Optional[str] = None,
) -> np.ndarray:
    """Draw a corner polygon overlay on an image for debugging.

    Args:
        image: Image the polygon belongs to.
        polygon: Corners in the image's pixel space.
        label: Optional text drawn in the top-left corner.

    Returns:
        New uint8 RGB array with the overlay.
    """
    canvas = np.ascontiguousarray(image.rgb()).copy()
    corners = np.round(polygon.as_array()).astype(np.int32)
    thickness = max(2, int(min(image.width, image.height) * 0.004))

    for i in range(4):
        pt1 = tuple(int(v) for v in corners[i])
        pt2 = tuple(int(v) for v in corners[(i + 1) % 4])
        cv2.line(canvas, pt1, pt2, (0, 255, 0), thickness)

    for i, corner in enumerate(corners):
        center = tuple(int(v) for v in corner)
        cv2.circle(canvas, center, thickness * 3, (255, 0, 0), -1)
        cv2.putText(
            canvas, str(i), (center[0] + thickness * 3, center[1] - thickness * 3),
            cv2.FONT_HERSHEY_SIMPLEX, 1.0, (255, 0, 0), 2,
        )

    if label:
        cv2.putText(canvas, label, (20, 40), cv2.FONT_HERSHEY_SIMPLEX, 1.0, (0, 255, 0), 2)

    return canvas
