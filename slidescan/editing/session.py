"""Interactive corner adjustment for one image.

The session keeps the live corners in display space, next to the layout they were
computed against. Drags replace exactly one corner. On commit the corners are
converted to source space and the rectifier runs off the event loop; a failed
commit returns the session to editing with its corners untouched.

States::

    SEEDED -> EDITING -> COMMITTING -> COMMITTED
       |         |           |
       |         |           +-> EDITING   (transform or save failed)
       +---------+-----------------> CANCELLED
"""

import asyncio
import enum
import functools
import logging
from typing import Callable, Optional

from slidescan.corner_detection.detector import DetectionResult, ModelKind
from slidescan.errors import ScanError, SessionStateError
from slidescan.geometry.coordinates import (
    DisplayLayout,
    Viewport,
    fit_contain,
    layout_to_display,
    layout_to_source,
)
from slidescan.geometry.types import DisplayPolygon, Point, SourcePolygon, default_polygon
from slidescan.preprocessing.loader import ImageBuffer
from slidescan.rectification.perspective import (
    DEFAULT_ASPECT_RATIO,
    RectificationResult,
    rectify,
)

logger = logging.getLogger(__name__)

Rectifier = Callable[[ImageBuffer, SourcePolygon, float], RectificationResult]
Persister = Callable[[RectificationResult], None]


class SessionState(enum.Enum):
    SEEDED = "seeded"
    EDITING = "editing"
    COMMITTING = "committing"
    COMMITTED = "committed"
    CANCELLED = "cancelled"


_EDITABLE = (SessionState.SEEDED, SessionState.EDITING)

# The layout may follow the viewport while a commit is in flight; corners may not.
_RELAYOUT = _EDITABLE + (SessionState.COMMITTING,)


class CornerEditingSession:
    """Display-space corner state for one image, from seeding to commit."""

    def __init__(
        self,
        image: ImageBuffer,
        viewport: Viewport,
        source_polygon: SourcePolygon,
        model_used: ModelKind = ModelKind.NONE,
        aspect_ratio: float = DEFAULT_ASPECT_RATIO,
        rectifier: Rectifier = rectify,
    ) -> None:
        self.image = image
        self.model_used = model_used
        self.aspect_ratio = aspect_ratio
        self._rectifier = rectifier
        self._layout = fit_contain(viewport, image.size)
        self._polygon = layout_to_display(source_polygon, self._layout)
        self._state = SessionState.SEEDED
        self._dirty = False
        self.result: Optional[RectificationResult] = None

    @classmethod
    def seed(
        cls,
        image: ImageBuffer,
        viewport: Viewport,
        detection: Optional[DetectionResult] = None,
        inset_x: float = 0.1,
        inset_y: float = 0.1,
        **kwargs,
    ) -> "CornerEditingSession":
        """Start a session from a detection, or the inset rectangle on a miss."""
        if detection is not None and detection.polygon is not None:
            return cls(image, viewport, detection.polygon, model_used=detection.model_used, **kwargs)

        logger.warning("No detected corners, seeding default inset rectangle")
        return cls(image, viewport, default_polygon(image.size, inset_x, inset_y), **kwargs)

    @classmethod
    def from_result(
        cls,
        image: ImageBuffer,
        viewport: Viewport,
        result: RectificationResult,
        **kwargs,
    ) -> "CornerEditingSession":
        """Re-enter editing on the original image with the corners of a previous commit."""
        return cls(image, viewport, result.polygon, **kwargs)

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def dirty(self) -> bool:
        """True once any corner has moved since seeding."""
        return self._dirty

    @property
    def layout(self) -> DisplayLayout:
        return self._layout

    @property
    def display_polygon(self) -> DisplayPolygon:
        return self._polygon

    @property
    def source_polygon(self) -> SourcePolygon:
        return layout_to_source(self._polygon, self._layout)

    def _require_state(self, action: str, allowed) -> None:
        if self._state not in allowed:
            raise SessionStateError(f"Cannot {action} while session is {self._state.value}")

    def _require_editable(self, action: str) -> None:
        self._require_state(action, _EDITABLE)

    def move_corner(self, index: int, point: Point) -> DisplayPolygon:
        """Replace one corner with a dragged display-space position.

        No ordering or convexity is enforced here; the rectifier rejects bad
        quads at commit time.
        """
        self._require_editable("move a corner")
        self._polygon = self._polygon.replace(index, Point(float(point[0]), float(point[1])))
        self._dirty = True
        self._state = SessionState.EDITING
        logger.debug(f"Corner {index} moved to ({point[0]:.1f}, {point[1]:.1f})")
        return self._polygon

    def update_viewport(self, viewport: Viewport) -> DisplayPolygon:
        """Reproject the corners after the viewport changed (resize, rotation)."""
        self._require_state("change the viewport", _RELAYOUT)
        source = self.source_polygon
        self._layout = fit_contain(viewport, self.image.size)
        self._polygon = layout_to_display(source, self._layout)
        return self._polygon

    def reset(self, source_polygon: SourcePolygon) -> DisplayPolygon:
        """Discard edits and start over from the given source corners."""
        self._require_editable("reset corners")
        self._polygon = layout_to_display(source_polygon, self._layout)
        self._dirty = False
        self._state = SessionState.SEEDED
        return self._polygon

    async def commit(self, persist: Optional[Persister] = None) -> RectificationResult:
        """Convert the corners to source space and rectify the image.

        Args:
            persist: Optional callable run on the result before the session
                counts as committed, e.g. writing it to disk. It may replace
                ``result.image``. If it raises, the commit fails like a
                transform failure.

        Returns:
            RectificationResult for the committed corners.

        Raises:
            SessionStateError: If a commit is already in flight, or the session
                is no longer editable or was cancelled during the commit.
            InvalidPolygon, TransformFailure: If the corners cannot be
                rectified or the result cannot be persisted. The session goes
                back to EDITING.
        """
        self._require_editable("commit")
        self._state = SessionState.COMMITTING
        logger.debug("Session committing")

        try:
            source = self.source_polygon
            loop = asyncio.get_running_loop()
            result = await loop.run_in_executor(
                None,
                functools.partial(self._rectifier, self.image, source, self.aspect_ratio),
            )
            self._check_not_cancelled()
            if persist is not None:
                await loop.run_in_executor(None, persist, result)
                self._check_not_cancelled()
        except SessionStateError:
            raise
        except ScanError as e:
            logger.warning(f"Commit failed, back to editing: {e}")
            self._revert_commit()
            raise
        except (Exception, asyncio.CancelledError):
            self._revert_commit()
            raise

        self.result = result
        self._state = SessionState.COMMITTED
        logger.debug("Session committed")
        return result

    def _check_not_cancelled(self) -> None:
        if self._state is not SessionState.COMMITTING:
            raise SessionStateError("Session was cancelled during commit")

    def _revert_commit(self) -> None:
        if self._state is SessionState.COMMITTING:
            self._state = SessionState.EDITING

    def cancel(self) -> None:
        """Drop all edits. Nothing is persisted."""
        if self._state is SessionState.COMMITTED:
            raise SessionStateError("Cannot cancel a committed session")
        self._state = SessionState.CANCELLED
        logger.debug("Session cancelled")
