"""Debug visualization and output utilities."""

import logging
from pathlib import Path
from typing import List, Optional, Union

import cv2
import numpy as np

logger = logging.getLogger(__name__)


def _to_rgb_uint8(image: np.ndarray) -> np.ndarray:
    if image.dtype in (np.float32, np.float64):
        image = (np.clip(image, 0.0, 1.0) * 255).astype(np.uint8)

    if image.ndim == 2:
        return cv2.cvtColor(image, cv2.COLOR_GRAY2RGB)
    if image.shape[2] == 4:
        return cv2.cvtColor(image, cv2.COLOR_RGBA2RGB)
    if image.shape[2] == 3:
        return image
    raise ValueError(f"Unsupported number of channels: {image.shape[2]}")


def save_debug_image(
    image: np.ndarray,
    output_path: Union[str, Path],
    description: Optional[str] = None,
    quality: int = 95
) -> Path:
    """Save debug image, always as JPEG for easy viewing.

    Args:
        image: Image array as uint8 RGB(A) [0,255] or float32 RGB [0,1]
        output_path: Path to save debug image (should include step number prefix)
        description: Optional description to log
        quality: JPEG quality (0-100)

    Returns:
        Path actually written (extension forced to .jpg).
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    img_bgr = cv2.cvtColor(_to_rgb_uint8(image), cv2.COLOR_RGB2BGR)

    if output_path.suffix.lower() not in ['.jpg', '.jpeg']:
        output_path = output_path.with_suffix('.jpg')

    cv2.imwrite(
        str(output_path),
        img_bgr,
        [cv2.IMWRITE_JPEG_QUALITY, quality]
    )

    if description:
        logger.debug(f"Saved debug image: {output_path} - {description}")
    else:
        logger.debug(f"Saved debug image: {output_path}")

    return output_path


def create_comparison_image(
    images: List[np.ndarray],
    max_width: int = 1920
) -> np.ndarray:
    """Create side-by-side comparison of multiple images.

    Args:
        images: List of images as uint8 RGB(A) or float32 RGB [0,1]
        max_width: Maximum width for the combined image

    Returns:
        Combined comparison image as uint8 RGB
    """
    if not images:
        raise ValueError("No images provided")

    processed_images = [_to_rgb_uint8(img) for img in images]

    # Same height for all, preserving aspect ratio
    max_height = max(img.shape[0] for img in processed_images)

    resized_images = []
    for img in processed_images:
        if img.shape[0] != max_height:
            scale = max_height / img.shape[0]
            new_width = max(1, int(img.shape[1] * scale))
            img = cv2.resize(img, (new_width, max_height), interpolation=cv2.INTER_AREA)
        resized_images.append(img)

    combined = np.hstack(resized_images)

    if combined.shape[1] > max_width:
        scale = max_width / combined.shape[1]
        new_height = max(1, int(combined.shape[0] * scale))
        combined = cv2.resize(combined, (max_width, new_height), interpolation=cv2.INTER_AREA)

    return combined
