"""Shared fixtures: synthetic images and fake inference sessions."""

import threading
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pytest

from slidescan.corner_detection.models import HEATMAP_MODEL, POINT_MODEL, ModelRegistry
from slidescan.preprocessing.loader import ImageBuffer


class FakeSession:
    """Stands in for an onnxruntime session: returns fixed outputs by name."""

    def __init__(self, outputs: Dict[str, np.ndarray], gate: Optional[threading.Event] = None) -> None:
        self.outputs = outputs
        self.calls: List[Dict[str, np.ndarray]] = []
        self.gate = gate
        self._lock = threading.Lock()

    def run(self, output_names: Sequence[str], feeds: Dict[str, np.ndarray]) -> List[np.ndarray]:
        with self._lock:
            self.calls.append(feeds)
            first_call = len(self.calls) == 1
        # Only the first call blocks, so a later request can overtake it.
        if self.gate is not None and first_call:
            self.gate.wait(timeout=5)
        return [self.outputs[name] for name in output_names]


def make_document_image(
    width: int = 640,
    height: int = 480,
    doc_box: Tuple[int, int, int, int] = (100, 80, 540, 400),
    bg: int = 40,
    doc: int = 230,
) -> ImageBuffer:
    """Light axis-aligned document (x1, y1, x2, y2) on a dark background."""
    pixels = np.full((height, width, 3), bg, dtype=np.uint8)
    x1, y1, x2, y2 = doc_box
    pixels[y1:y2, x1:x2] = doc
    return ImageBuffer(pixels=pixels, reference=None, format="RAW")


def make_heatmap(
    corners: Sequence[Tuple[float, float]],
    source_size: Tuple[int, int],
    resolution: int = 128,
    sigma: float = 2.0,
    missing: Sequence[int] = (),
) -> np.ndarray:
    """Gaussian blob per corner, placed so upsampling lands it on the source corner."""
    width, height = source_size
    heatmap = np.zeros((1, 4, resolution, resolution), dtype=np.float32)
    yy, xx = np.mgrid[0:resolution, 0:resolution].astype(np.float32)

    for c, (x, y) in enumerate(corners):
        if c in missing:
            continue
        # Inverse of cv2.resize's pixel-center mapping.
        hx = (x + 0.5) * resolution / width - 0.5
        hy = (y + 0.5) * resolution / height - 0.5
        heatmap[0, c] = np.exp(-((xx - hx) ** 2 + (yy - hy) ** 2) / (2 * sigma ** 2))

    return heatmap


def make_point_outputs(
    corners: Sequence[Tuple[float, float]],
    source_size: Tuple[int, int],
    has_obj: float = 0.9,
) -> Dict[str, np.ndarray]:
    width, height = source_size
    flat = []
    for x, y in corners:
        flat.extend([x / width, y / height])
    return {
        "points": np.array([flat], dtype=np.float32),
        "has_obj": np.array([[has_obj]], dtype=np.float32),
    }


@pytest.fixture
def models_dir(tmp_path: Path) -> Path:
    """Models directory holding placeholder model files."""
    directory = tmp_path / "models"
    directory.mkdir()
    (directory / HEATMAP_MODEL).write_bytes(b"heat")
    (directory / POINT_MODEL).write_bytes(b"point")
    return directory


def fake_registry(models_dir: Path, heatmap: FakeSession, point: FakeSession) -> ModelRegistry:
    sessions = {HEATMAP_MODEL: heatmap, POINT_MODEL: point}
    return ModelRegistry(models_dir, session_factory=lambda path: sessions[path.name])


DOC_CORNERS = [(100.0, 80.0), (540.0, 80.0), (540.0, 400.0), (100.0, 400.0)]
