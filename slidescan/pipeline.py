"""Orchestrator for detection, corner editing, rectification and QR extraction.

``DocumentScanner`` is the boundary the UI talks to:

1. ``detect_and_seed`` - detect corners and open an editing session.
2. ``CornerEditingSession.move_corner`` - per-drag updates.
3. ``commit`` - rectify and persist, returning a file reference.
4. ``extract_code`` - QR extraction.

Detection, rectification and extraction run in the default executor. For each
image key only the newest request's result is delivered; superseded results
are dropped and the call returns None.
"""

import asyncio
import functools
import itertools
import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, TypeVar, Union

from slidescan.code_extraction.qr import CodeResult, extract_code
from slidescan.config import ScanConfig
from slidescan.corner_detection.detector import CornerDetector, DetectionResult, ModelKind
from slidescan.corner_detection.models import ModelRegistry, install_models
from slidescan.editing.session import CornerEditingSession
from slidescan.errors import InitializationError, SessionStateError
from slidescan.geometry.coordinates import Viewport
from slidescan.geometry.types import SourcePolygon
from slidescan.preprocessing.loader import ImageBuffer, ImageSource, open_image, save_image
from slidescan.rectification.perspective import RectificationResult, rectify

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RequestTracker:
    """Last-request-wins bookkeeping per image key."""

    def __init__(self) -> None:
        self._counter = itertools.count(1)
        self._latest: Dict[str, int] = {}
        self._lock = threading.Lock()

    def begin(self, key: str) -> int:
        with self._lock:
            token = next(self._counter)
            self._latest[key] = token
            return token

    def is_current(self, key: str, token: int) -> bool:
        with self._lock:
            return self._latest.get(key) == token

    def finish(self, key: str, token: int) -> bool:
        """Return True if ``token`` is still the newest request for ``key``."""
        with self._lock:
            current = self._latest.get(key) == token
            if current:
                del self._latest[key]
            return current


@dataclass
class TransformRecord:
    """Last committed transform, kept so a re-edit can reuse its corners."""

    original_reference: Optional[str]
    output_reference: str
    corners: SourcePolygon
    timestamp: float = field(default_factory=time.time)
    detected_urls: List[str] = field(default_factory=list)


@dataclass
class ScanResult:
    """Result of the one-shot detect-and-transform flow."""

    detection: DetectionResult
    corners: SourcePolygon
    rectified: Optional[RectificationResult] = None
    output_reference: Optional[str] = None
    code: Optional[CodeResult] = None
    step_times: Dict[str, float] = field(default_factory=dict)


class DocumentScanner:
    """Owns the model registry and runs the scanning flows asynchronously."""

    def __init__(
        self,
        config: Optional[ScanConfig] = None,
        registry: Optional[ModelRegistry] = None,
    ) -> None:
        self.config = config or ScanConfig()
        self.registry = registry or ModelRegistry(self.config.models_dir)
        self.detector = CornerDetector(
            self.registry,
            heatmap_model=self.config.heatmap_model,
            point_model=self.config.point_model,
            input_size=self.config.input_size,
            heatmap_threshold=self.config.heatmap_threshold,
            presence_threshold=self.config.presence_threshold,
        )
        self.requests = RequestTracker()
        self.last_transform: Optional[TransformRecord] = None
        self._initialized = False
        self._init_lock: Optional[asyncio.Lock] = None

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    async def _run(self, func: Callable[..., T], *args: Any) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(func, *args))

    def _initialize_sync(self) -> None:
        names = (self.config.point_model, self.config.heatmap_model)
        install_models(self.config.bundle_dir, self.registry.models_dir, names)
        self.registry.load_all(names)

    async def initialize(self) -> None:
        """Install model assets and open both sessions, once.

        Raises:
            InitializationError: If either model is missing or cannot be loaded.
        """
        if self._initialized:
            return
        if self._init_lock is None:
            self._init_lock = asyncio.Lock()

        async with self._init_lock:
            if self._initialized:
                return
            try:
                await self._run(self._initialize_sync)
            except InitializationError as e:
                logger.error(f"Failed to initialize models: {e}")
                raise
            self._initialized = True
            logger.info(f"Models ready in {self.registry.models_dir}")

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise InitializationError("Models are not initialized")

    async def _latest(self, key: str, func: Callable[..., T], *args: Any) -> Optional[T]:
        """Run ``func`` in the executor; None if a newer request for ``key`` began meanwhile."""
        token = self.requests.begin(key)
        try:
            result = await self._run(func, *args)
        finally:
            current = self.requests.finish(key, token)

        if not current:
            logger.debug(f"Dropping stale result for {key}")
            return None
        return result

    async def _detect_latest(self, image: ImageBuffer) -> Optional[DetectionResult]:
        return await self._latest(f"detect:{self._key(image)}", self.detector.detect, image)

    async def detect(self, source: Union[ImageSource, ImageBuffer]) -> Optional[DetectionResult]:
        """Detect corners; None if a newer request for the same image superseded this one."""
        self._require_initialized()
        image = await self._run(open_image, source)
        return await self._detect_latest(image)

    async def detect_and_seed(
        self,
        source: Union[ImageSource, ImageBuffer],
        viewport: Viewport,
    ) -> Optional[CornerEditingSession]:
        """Detect corners and open an editing session seeded in display space.

        Falls back to the inset rectangle when detection misses. Returns None
        if a newer request for the same image superseded this one.
        """
        self._require_initialized()
        image = await self._run(open_image, source)
        detection = await self._detect_latest(image)
        if detection is None:
            return None

        inset_x, inset_y = self.config.fallback_inset
        return CornerEditingSession.seed(
            image,
            viewport,
            detection,
            inset_x=inset_x,
            inset_y=inset_y,
            aspect_ratio=self.config.aspect_ratio,
        )

    def reopen(self, image: ImageBuffer, viewport: Viewport) -> CornerEditingSession:
        """Open a new session on the corners of the last commit, without redetection."""
        if self.last_transform is None:
            raise SessionStateError("No previous transform to re-edit")
        return CornerEditingSession(
            image,
            viewport,
            self.last_transform.corners,
            aspect_ratio=self.config.aspect_ratio,
        )

    def _output_path(self, output_dir: Union[str, Path], image: ImageBuffer) -> Path:
        stem = Path(image.reference).stem if image.reference else "scan"
        suffix = self.config.output_format.lower().lstrip(".")
        return Path(output_dir) / f"{stem}_rectified_{int(time.time() * 1000)}.{suffix}"

    def _save(self, result: RectificationResult, output_path: Path) -> str:
        saved = save_image(result.image, output_path, self.config.jpeg_quality)
        result.image = saved
        return saved.reference

    async def _persist(self, result: RectificationResult, output_path: Path) -> str:
        return await self._run(self._save, result, output_path)

    async def commit(
        self,
        session: CornerEditingSession,
        output_dir: Union[str, Path],
    ) -> RectificationResult:
        """Commit an editing session and write the rectified image to disk.

        The write is part of the commit: if it fails the session returns to
        EDITING and no transform is recorded. The returned result's image
        carries the written file as its reference.
        """
        output_path = self._output_path(output_dir, session.image)
        persist = functools.partial(self._save, output_path=output_path)
        result = await session.commit(persist=persist)

        self.last_transform = TransformRecord(
            original_reference=session.image.reference,
            output_reference=result.image.reference,
            corners=result.polygon,
        )
        return result

    async def transform_with_corners(
        self,
        source: Union[ImageSource, ImageBuffer],
        corners: Any,
        output_dir: Union[str, Path],
    ) -> Optional[RectificationResult]:
        """Rectify with caller-supplied source corners and persist the result.

        Returns None if a newer transform of the same image started meanwhile.
        A stale result is not recorded, and is not written if it was already
        superseded when the warp finished.
        """
        image = await self._run(open_image, source)
        key = f"transform:{self._key(image)}"
        token = self.requests.begin(key)
        try:
            result = await self._run(rectify, image, corners, self.config.aspect_ratio)
            if self.requests.is_current(key, token):
                reference = await self._persist(result, self._output_path(output_dir, image))
        finally:
            current = self.requests.finish(key, token)

        if not current:
            logger.debug(f"Dropping stale transform for {key}")
            return None

        self.last_transform = TransformRecord(
            original_reference=image.reference,
            output_reference=reference,
            corners=result.polygon,
        )
        return result

    async def extract_code(self, source: Union[ImageSource, ImageBuffer]) -> Optional[CodeResult]:
        """Scan an image (usually the rectified one) for a QR code.

        Returns None if a newer extraction for the same image superseded this one.
        """
        image = await self._run(open_image, source)
        code = await self._latest(f"code:{self._key(image)}", extract_code, image)
        if code is None:
            return None

        if code.found and self.last_transform is not None and (
            image.reference == self.last_transform.output_reference
        ):
            self.last_transform.detected_urls.append(code.text)
        return code

    async def scan(
        self,
        source: Union[ImageSource, ImageBuffer],
        output_dir: Optional[Union[str, Path]] = None,
        read_code: bool = False,
        rectify_default: bool = False,
    ) -> Optional[ScanResult]:
        """Detect, then rectify immediately when four corners were found.

        Without a detection the default inset corners are returned, and they are
        only rectified when ``rectify_default`` is set. Returns None if a newer
        scan of the same image started meanwhile; a superseded scan records no
        transform.
        """
        self._require_initialized()
        step_times: Dict[str, float] = {}

        step_start = time.time()
        image = await self._run(open_image, source)
        step_times['load'] = time.time() - step_start

        key = f"scan:{self._key(image)}"
        token = self.requests.begin(key)
        try:
            result = await self._scan_steps(image, output_dir, read_code, rectify_default, step_times)
        finally:
            current = self.requests.finish(key, token)

        if not current:
            logger.debug(f"Dropping stale scan for {key}")
            return None

        if result.output_reference is not None:
            self.last_transform = TransformRecord(
                original_reference=image.reference,
                output_reference=result.output_reference,
                corners=result.corners,
            )
            if result.code is not None and result.code.found:
                self.last_transform.detected_urls.append(result.code.text)

        return result

    async def _scan_steps(
        self,
        image: ImageBuffer,
        output_dir: Optional[Union[str, Path]],
        read_code: bool,
        rectify_default: bool,
        step_times: Dict[str, float],
    ) -> ScanResult:
        step_start = time.time()
        detection = await self._run(self.detector.detect, image)
        step_times['detect'] = time.time() - step_start
        logger.info(f"Detection time: {step_times['detect']:.3f}s")

        inset_x, inset_y = self.config.fallback_inset
        corners = detection.polygon_or_default(image, inset_x, inset_y)
        result = ScanResult(detection=detection, corners=corners, step_times=step_times)

        if detection.model_used is ModelKind.NONE and not rectify_default:
            return result

        step_start = time.time()
        result.rectified = await self._run(rectify, image, corners, self.config.aspect_ratio)
        step_times['rectify'] = time.time() - step_start
        logger.info(f"Rectify time: {step_times['rectify']:.3f}s")

        if output_dir is not None:
            result.output_reference = await self._persist(
                result.rectified, self._output_path(output_dir, image)
            )

        if read_code:
            step_start = time.time()
            result.code = await self._run(extract_code, result.rectified.image)
            step_times['qr'] = time.time() - step_start

        return result

    @staticmethod
    def _key(image: ImageBuffer) -> str:
        return image.reference or f"buffer:{image.token}"

    def close(self) -> None:
        """Release the inference sessions."""
        self.registry.close()
        self._initialized = False

    def __enter__(self) -> "DocumentScanner":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()
