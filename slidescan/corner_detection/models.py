"""Model asset installation and the inference session registry.

Model files are copied once from an application bundle into a models directory,
then opened as onnxruntime sessions. Sessions are created at most once per model
name and live until the registry is closed.
"""

import logging
import shutil
import threading
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from slidescan.errors import InitializationError

logger = logging.getLogger(__name__)

POINT_MODEL = "model_point.onnx"
HEATMAP_MODEL = "model_heat.onnx"
MODEL_FILES = (POINT_MODEL, HEATMAP_MODEL)

SessionFactory = Callable[[Path], Any]


def _onnx_session(path: Path) -> Any:
    import onnxruntime as ort

    return ort.InferenceSession(str(path), providers=["CPUExecutionProvider"])


def install_models(
    bundle_dir: Optional[Union[str, Path]],
    models_dir: Union[str, Path],
    names: Iterable[str] = MODEL_FILES,
) -> List[Path]:
    """Populate the models directory from the bundle on first run.

    Files already present in ``models_dir`` are left alone.

    Args:
        bundle_dir: Directory shipping the model files. May be None when the
            models directory is expected to be populated already.
        models_dir: Directory sessions are loaded from.
        names: Model file names to install.

    Returns:
        Paths of the installed model files.

    Raises:
        InitializationError: If a model is neither installed nor in the bundle,
            or copying fails.
    """
    models_dir = Path(models_dir)
    try:
        models_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise InitializationError(f"Cannot create models directory {models_dir}: {e}") from e

    installed = []
    for name in names:
        target = models_dir / name
        if target.exists():
            installed.append(target)
            continue

        if bundle_dir is None:
            raise InitializationError(
                f"Model file {name} not found in {models_dir} and no bundle directory configured"
            )

        source = Path(bundle_dir) / name
        if not source.is_file():
            raise InitializationError(f"Model file {name} not found in bundle {bundle_dir}")

        try:
            shutil.copy2(source, target)
        except OSError as e:
            raise InitializationError(f"Failed to copy {source} to {target}: {e}") from e

        logger.info(f"Installed model {name} into {models_dir}")
        installed.append(target)

    return installed


class ModelRegistry:
    """Owns the inference sessions, keyed by model file name."""

    def __init__(
        self,
        models_dir: Union[str, Path],
        session_factory: Optional[SessionFactory] = None,
    ) -> None:
        self.models_dir = Path(models_dir)
        self._session_factory = session_factory or _onnx_session
        self._sessions: Dict[str, Any] = {}
        self._lock = threading.Lock()
        self._closed = False

    def get(self, name: str) -> Any:
        """Return the session for ``name``, creating it on first use.

        Raises:
            InitializationError: If the model file is missing or cannot be loaded.
        """
        with self._lock:
            if self._closed:
                raise InitializationError("Model registry has been closed")

            session = self._sessions.get(name)
            if session is not None:
                return session

            path = self.models_dir / name
            if not path.is_file():
                raise InitializationError(f"Model file not found: {path}")

            try:
                session = self._session_factory(path)
            except InitializationError:
                raise
            except Exception as e:
                raise InitializationError(f"Failed to load model {path}: {e}") from e

            self._sessions[name] = session
            logger.info(f"Loaded inference session for {name}")
            return session

    def load_all(self, names: Iterable[str] = MODEL_FILES) -> None:
        """Create every session up front so missing assets fail at startup."""
        for name in names:
            self.get(name)

    @property
    def loaded(self) -> List[str]:
        with self._lock:
            return sorted(self._sessions)

    def close(self) -> None:
        """Release all sessions."""
        with self._lock:
            released = len(self._sessions)
            self._sessions.clear()
            self._closed = True
        logger.debug(f"Released {released} inference session(s)")

    def __enter__(self) -> "ModelRegistry":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()
