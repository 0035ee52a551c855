"""Mapping between display space and source space under contain fit.

A source image rendered inside a viewport with "contain" semantics is scaled by
``min(vw / sw, vh / sh)`` and centered on the unconstrained axis. Points move
between the two spaces with that scale and offset.
"""

import logging
from dataclasses import dataclass

from slidescan.geometry.types import DisplayPolygon, Point, Size, SourcePolygon

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Viewport:
    """Rectangle the image is rendered into, in display coordinates."""

    x: float = 0.0
    y: float = 0.0
    width: float = 0.0
    height: float = 0.0

    @property
    def is_degenerate(self) -> bool:
        return self.width <= 0 or self.height <= 0


@dataclass(frozen=True)
class DisplayLayout:
    """Where the source image actually lands inside a viewport."""

    viewport: Viewport
    source_size: Size
    scale: float
    x: float       # left edge of the rendered image, display space
    y: float       # top edge of the rendered image, display space
    width: float   # rendered image width
    height: float  # rendered image height

    @property
    def is_degenerate(self) -> bool:
        return self.scale <= 0.0

    @property
    def offset(self) -> Point:
        """Centering offset relative to the viewport origin."""
        return Point(self.x - self.viewport.x, self.y - self.viewport.y)


def fit_contain(viewport: Viewport, source_size: Size) -> DisplayLayout:
    """Compute the contain-fit layout of an image inside a viewport.

    Args:
        viewport: Rectangle available for rendering.
        source_size: Native pixel size of the image.

    Returns:
        DisplayLayout. Its scale is 0 when the viewport or the source size is
        empty (e.g. before the first layout pass).
    """
    if viewport.is_degenerate or source_size.width <= 0 or source_size.height <= 0:
        return DisplayLayout(
            viewport=viewport,
            source_size=source_size,
            scale=0.0,
            x=viewport.x,
            y=viewport.y,
            width=0.0,
            height=0.0,
        )

    scale = min(viewport.width / source_size.width, viewport.height / source_size.height)
    width = source_size.width * scale
    height = source_size.height * scale

    return DisplayLayout(
        viewport=viewport,
        source_size=source_size,
        scale=scale,
        x=viewport.x + (viewport.width - width) / 2.0,
        y=viewport.y + (viewport.height - height) / 2.0,
        width=width,
        height=height,
    )


def point_to_display(point: Point, layout: DisplayLayout) -> Point:
    if layout.is_degenerate:
        return Point(point.x, point.y)
    return Point(point.x * layout.scale + layout.x, point.y * layout.scale + layout.y)


def point_to_source(point: Point, layout: DisplayLayout) -> Point:
    if layout.is_degenerate:
        return Point(point.x, point.y)
    return Point((point.x - layout.x) / layout.scale, (point.y - layout.y) / layout.scale)


def layout_to_display(polygon: SourcePolygon, layout: DisplayLayout) -> DisplayPolygon:
    """Project a source-space polygon into display space for a given layout."""
    if not isinstance(polygon, SourcePolygon):
        raise TypeError(f"Expected a SourcePolygon, got {type(polygon).__name__}")
    if layout.is_degenerate:
        logger.debug("Degenerate layout, passing corners through unchanged")
    return DisplayPolygon(tuple(point_to_display(p, layout) for p in polygon))


def layout_to_source(polygon: DisplayPolygon, layout: DisplayLayout) -> SourcePolygon:
    """Project a display-space polygon back into source space for a given layout."""
    if not isinstance(polygon, DisplayPolygon):
        raise TypeError(f"Expected a DisplayPolygon, got {type(polygon).__name__}")
    if layout.is_degenerate:
        logger.debug("Degenerate layout, passing corners through unchanged")
    return SourcePolygon(tuple(point_to_source(p, layout) for p in polygon))


def to_display(
    polygon: SourcePolygon,
    source_size: Size,
    viewport: Viewport,
) -> DisplayPolygon:
    """Convert source-space corners to display space.

    Args:
        polygon: Corners in source pixel coordinates.
        source_size: Native size of the source image.
        viewport: Rectangle the image is rendered into.

    Returns:
        Corners in display coordinates. With an empty viewport the coordinates
        are returned unchanged.
    """
    return layout_to_display(polygon, fit_contain(viewport, source_size))


def to_source(
    polygon: DisplayPolygon,
    source_size: Size,
    viewport: Viewport,
) -> SourcePolygon:
    """Convert display-space corners to source space. Inverse of ``to_display``."""
    return layout_to_source(polygon, fit_contain(viewport, source_size))
