"""Tests for polygon types and display/source coordinate mapping."""

import numpy as np
import pytest

from slidescan.errors import InvalidPolygon
from slidescan.geometry.coordinates import (
    Viewport,
    fit_contain,
    layout_to_display,
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


PORTRAIT_VIEW = Viewport(0, 0, 390, 844)
PHOTO_SIZE = Size(3000, 4000)


def _full_frame(size: Size) -> SourcePolygon:
    return SourcePolygon((
        (0, 0), (size.width, 0), (size.width, size.height), (0, size.height),
    ))


class TestFitContain:
    """Tests for the contain-fit layout."""

    def test_portrait_phone_viewport(self) -> None:
        layout = fit_contain(PORTRAIT_VIEW, PHOTO_SIZE)

        assert layout.scale == pytest.approx(0.13)
        assert layout.width == pytest.approx(390.0)
        assert layout.height == pytest.approx(520.0)
        assert layout.x == pytest.approx(0.0)
        assert layout.y == pytest.approx(162.0)

    def test_landscape_image_centered_vertically(self) -> None:
        layout = fit_contain(Viewport(0, 0, 1000, 1000), Size(2000, 1000))

        assert layout.scale == pytest.approx(0.5)
        assert layout.offset == (pytest.approx(0.0), pytest.approx(250.0))

    def test_tall_image_centered_horizontally(self) -> None:
        layout = fit_contain(Viewport(10, 20, 1000, 500), Size(500, 1000))

        assert layout.scale == pytest.approx(0.5)
        assert layout.x == pytest.approx(10 + 375.0)
        assert layout.y == pytest.approx(20.0)

    def test_degenerate_viewport(self) -> None:
        layout = fit_contain(Viewport(0, 0, 0, 844), PHOTO_SIZE)
        assert layout.is_degenerate


class TestMapping:
    """Tests for to_display / to_source."""

    def test_image_corners_land_on_rendered_rect(self) -> None:
        display = to_display(_full_frame(PHOTO_SIZE), PHOTO_SIZE, PORTRAIT_VIEW)

        assert isinstance(display, DisplayPolygon)
        np.testing.assert_allclose(display.as_array()[0], [0.0, 162.0], atol=1e-3)
        np.testing.assert_allclose(display.as_array()[2], [390.0, 682.0], atol=1e-3)

    def test_round_trip(self) -> None:
        polygon = SourcePolygon(((312.5, 401.0), (2710.2, 388.9), (2801.0, 3650.3), (150.7, 3702.8)))

        for viewport in (PORTRAIT_VIEW, Viewport(0, 0, 1024, 768), Viewport(50, 80, 333, 333)):
            back = to_source(to_display(polygon, PHOTO_SIZE, viewport), PHOTO_SIZE, viewport)
            np.testing.assert_allclose(back.as_array(), polygon.as_array(), atol=1e-3)

    def test_degenerate_viewport_passes_through(self) -> None:
        polygon = SourcePolygon(((1, 2), (3, 4), (5, 6), (7, 8)))

        display = to_display(polygon, PHOTO_SIZE, Viewport())

        assert display.as_list() == polygon.as_list()

    def test_wrong_space_rejected(self) -> None:
        display = DisplayPolygon(((0, 0), (10, 0), (10, 10), (0, 10)))
        layout = fit_contain(PORTRAIT_VIEW, PHOTO_SIZE)

        with pytest.raises(TypeError):
            layout_to_display(display, layout)
        with pytest.raises(TypeError):
            to_source(_full_frame(PHOTO_SIZE), PHOTO_SIZE, PORTRAIT_VIEW)


class TestPolygonTypes:
    """Tests for the quad types and helpers."""

    def test_requires_four_points(self) -> None:
        with pytest.raises(InvalidPolygon):
            SourcePolygon(((0, 0), (1, 0), (1, 1)))

    def test_rejects_non_finite(self) -> None:
        with pytest.raises(InvalidPolygon):
            SourcePolygon(((0, 0), (float("nan"), 0), (1, 1), (0, 1)))

    def test_replace_returns_new_polygon(self) -> None:
        polygon = SourcePolygon(((0, 0), (10, 0), (10, 10), (0, 10)))

        moved = polygon.replace(2, Point(12, 11))

        assert moved[2] == Point(12.0, 11.0)
        assert polygon[2] == Point(10.0, 10.0)
        assert isinstance(moved, SourcePolygon)

    def test_replace_bad_index(self) -> None:
        polygon = SourcePolygon(((0, 0), (10, 0), (10, 10), (0, 10)))
        with pytest.raises(IndexError):
            polygon.replace(4, Point(0, 0))

    def test_order_corners(self) -> None:
        shuffled = [(540, 400), (100, 80), (100, 400), (540, 80)]

        ordered = order_corners(shuffled)

        np.testing.assert_array_equal(
            ordered, np.array([[100, 80], [540, 80], [540, 400], [100, 400]], dtype=np.float32)
        )

    def test_default_polygon(self) -> None:
        polygon = default_polygon(Size(1000, 500), 0.1, 0.2)

        assert polygon.as_list() == [[100.0, 100.0], [900.0, 100.0], [900.0, 400.0], [100.0, 400.0]]

    def test_default_polygon_bad_inset(self) -> None:
        with pytest.raises(ValueError):
            default_polygon(Size(100, 100), 0.5, 0.1)
