"""Model input preparation: resize, scale to [0, 1], repack HWC to CHW."""

import logging
from dataclasses import dataclass

import cv2
import numpy as np

from slidescan.errors import TransformFailure
from slidescan.geometry.types import Size
from slidescan.preprocessing.loader import ImageBuffer

logger = logging.getLogger(__name__)

MODEL_INPUT_SIZE = 256


@dataclass
class PreprocessResult:
    """Network input for one image."""

    tensor: np.ndarray   # (3, S, S) float32, CHW, values in [0, 1]
    original_size: Size  # size before resizing, for rescaling detected corners

    def batched(self) -> np.ndarray:
        """Tensor with a leading batch axis, shape (1, 3, S, S)."""
        return self.tensor[np.newaxis, ...]


def preprocess(image: ImageBuffer, input_size: int = MODEL_INPUT_SIZE) -> PreprocessResult:
    """Prepare an image for the corner models.

    Args:
        image: Source image, uint8 RGB or RGBA.
        input_size: Square side length the models expect.

    Returns:
        PreprocessResult with a fresh float32 CHW tensor and the original size.
    """
    try:
        resized = cv2.resize(
            image.rgb(),
            (input_size, input_size),
            interpolation=cv2.INTER_LINEAR,
        )
    except cv2.error as e:
        raise TransformFailure(f"Resize to model input failed: {e}") from e

    chw = np.transpose(resized, (2, 0, 1)).astype(np.float32) / 255.0
    tensor = np.ascontiguousarray(chw, dtype=np.float32)

    logger.debug(
        f"Preprocessed {image.width}x{image.height} -> tensor {tensor.shape}"
    )

    return PreprocessResult(tensor=tensor, original_size=image.size)
