"""Geometry primitives and display/source coordinate mapping."""

from slidescan.geometry.coordinates import (
    DisplayLayout,
    Viewport,
    fit_contain,
    layout_to_display,
    layout_to_source,
    to_display,
    to_source,
)
from slidescan.geometry.types import (
    DisplayPolygon,
    Point,
    Size,
    SourcePolygon,
    default_polygon,
    order_corners,
)

__all__ = [
    'DisplayLayout',
    'DisplayPolygon',
    'Point',
    'Size',
    'SourcePolygon',
    'Viewport',
    'default_polygon',
    'fit_contain',
    'layout_to_display',
    'layout_to_source',
    'order_corners',
    'to_display',
    'to_source',
]
