"""Configuration for the scanning pipeline.

Values come from an optional ``slidescan.json`` file, then environment variables,
then the dataclass defaults. File values win over the environment.
"""

import json
import logging
import math
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

from slidescan.corner_detection.heatmap import HEATMAP_THRESHOLD
from slidescan.corner_detection.models import HEATMAP_MODEL, POINT_MODEL
from slidescan.corner_detection.points import PRESENCE_THRESHOLD
from slidescan.preprocessing.loader import OUTPUT_FORMATS
from slidescan.preprocessing.tensor import MODEL_INPUT_SIZE
from slidescan.rectification.perspective import DEFAULT_ASPECT_RATIO

logger = logging.getLogger(__name__)

_CONFIG_FILE = Path("slidescan.json")

_ENV_VARS = {
    "models_dir": "SLIDESCAN_MODELS_DIR",
    "bundle_dir": "SLIDESCAN_BUNDLE_DIR",
    "aspect_ratio": "SLIDESCAN_ASPECT_RATIO",
    "default_inset": "SLIDESCAN_DEFAULT_INSET",
    "output_format": "SLIDESCAN_OUTPUT_FORMAT",
}


@dataclass
class ScanConfig:
    """All tunable parameters in one place."""

    # Model assets
    models_dir: str = "models"
    bundle_dir: Optional[str] = None
    heatmap_model: str = HEATMAP_MODEL
    point_model: str = POINT_MODEL

    # Detection
    input_size: int = MODEL_INPUT_SIZE
    heatmap_threshold: float = HEATMAP_THRESHOLD
    presence_threshold: float = PRESENCE_THRESHOLD

    # Fallback corners: per-side inset fractions (x, y)
    default_inset: Tuple[float, float] = (0.1, 0.1)
    slide_inset: Tuple[float, float] = (0.05, 0.2)
    use_slide_inset: bool = False

    # Rectification
    aspect_ratio: float = DEFAULT_ASPECT_RATIO

    # Output
    output_format: str = "png"
    jpeg_quality: int = 92

    def __post_init__(self) -> None:
        if not (math.isfinite(self.aspect_ratio) and self.aspect_ratio > 0):
            raise ValueError(f"Aspect ratio must be finite and positive, got {self.aspect_ratio}")
        for name in ("default_inset", "slide_inset"):
            inset = getattr(self, name)
            if len(inset) != 2 or not all(0.0 <= v < 0.5 for v in inset):
                raise ValueError(f"{name} fractions must be in [0, 0.5), got {inset}")
        ext = "." + self.output_format.lower().lstrip(".")
        if ext not in OUTPUT_FORMATS:
            raise ValueError(f"Unsupported output format {self.output_format!r}")

    @property
    def fallback_inset(self) -> Tuple[float, float]:
        return self.slide_inset if self.use_slide_inset else self.default_inset


def parse_ratio(value: str) -> float:
    """Parse "16:9", "16/9" or "1.777" into a float."""
    for sep in (":", "/"):
        if sep in value:
            num, den = value.split(sep, 1)
            return float(num) / float(den)
    return float(value)


def _parse_inset(value: Any) -> Tuple[float, float]:
    if isinstance(value, (list, tuple)):
        x, y = value
        return float(x), float(y)
    parts = [p for p in str(value).replace(",", " ").split() if p]
    if len(parts) == 1:
        return float(parts[0]), float(parts[0])
    x, y = parts
    return float(x), float(y)


_PARSERS = {
    "aspect_ratio": lambda v: parse_ratio(str(v)),
    "default_inset": _parse_inset,
    "slide_inset": _parse_inset,
    "input_size": int,
    "jpeg_quality": int,
    "heatmap_threshold": float,
    "presence_threshold": float,
    "use_slide_inset": lambda v: v if isinstance(v, bool) else str(v).lower() in ("1", "true", "yes"),
}


def _coerce(name: str, value: Any) -> Any:
    parser = _PARSERS.get(name, str)
    return parser(value)


def load_config(
    config_path: Optional[Union[str, Path]] = None,
    **overrides: Any,
) -> ScanConfig:
    """Load configuration from slidescan.json, falling back to environment variables.

    Priority: keyword overrides > slidescan.json > environment > defaults.

    Args:
        config_path: Path to a JSON config file. Defaults to ./slidescan.json.
        **overrides: Explicit values, e.g. from CLI options. None values are ignored.

    Returns:
        ScanConfig.
    """
    path = Path(config_path) if config_path else _CONFIG_FILE
    data: Dict[str, Any] = {}

    if path.exists():
        try:
            loaded = json.loads(path.read_text(encoding="utf-8"))
            if not isinstance(loaded, dict):
                raise ValueError("top level must be an object")
            data = loaded
            logger.debug(f"Loaded config from {path}")
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to read config at {path}: {e}")

    known = {f.name for f in fields(ScanConfig)}
    values: Dict[str, Any] = {}

    for name, env_var in _ENV_VARS.items():
        raw = os.getenv(env_var, "").strip()
        if raw:
            values[name] = (raw, env_var)

    for name, raw in data.items():
        if name not in known:
            logger.warning(f"Ignoring unknown config key {name!r} in {path}")
            continue
        values[name] = (raw, str(path))

    for name, raw in overrides.items():
        if raw is not None and name in known:
            values[name] = (raw, "override")

    # ScanConfig validates itself, so a bad value leaves the previous one in place
    config = ScanConfig()
    for name, (raw, origin) in values.items():
        try:
            config = replace(config, **{name: _coerce(name, raw)})
        except (TypeError, ValueError, ZeroDivisionError) as e:
            logger.warning(f"Ignoring malformed {name}={raw!r} from {origin}: {e}")

    return config
