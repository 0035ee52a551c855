"""Tests for the corner editing session."""

import asyncio
import threading

import numpy as np
import pytest

from slidescan.corner_detection.detector import DetectionResult, ModelKind
from slidescan.editing.session import CornerEditingSession, SessionState
from slidescan.errors import InvalidPolygon, SessionStateError, TransformFailure
from slidescan.geometry.coordinates import Viewport
from slidescan.geometry.types import Point, SourcePolygon
from slidescan.preprocessing.loader import ImageBuffer
from slidescan.rectification.perspective import rectify

VIEWPORT = Viewport(0, 0, 390, 844)  # 300x400 image renders at scale 1.3, 162px from the top
DETECTED = SourcePolygon(((30, 40), (270, 40), (270, 360), (30, 360)))


def _create_synthetic_image(width: int = 300, height: int = 400) -> ImageBuffer:
    pixels = np.full((height, width, 3), 200, dtype=np.uint8)
    return ImageBuffer(pixels=pixels, reference="photo.jpg", format="JPEG")


def _seeded(**kwargs) -> CornerEditingSession:
    detection = DetectionResult(polygon=DETECTED, model_used=ModelKind.HEATMAP)
    return CornerEditingSession.seed(_create_synthetic_image(), VIEWPORT, detection, **kwargs)


def _gated_rectifier(gate: threading.Event):
    def rectifier(image, corners, aspect_ratio):
        gate.wait(timeout=5)
        return rectify(image, corners, aspect_ratio)
    return rectifier


async def _wait_for_state(session: CornerEditingSession, state: SessionState) -> None:
    for _ in range(100):
        if session.state is state:
            return
        await asyncio.sleep(0)
    raise AssertionError(f"session never reached {state}")


class TestSeeding:
    """Tests for session construction."""

    def test_seeded_from_detection(self) -> None:
        session = _seeded()

        assert session.state is SessionState.SEEDED
        assert not session.dirty
        assert session.model_used is ModelKind.HEATMAP
        np.testing.assert_allclose(session.display_polygon.as_array()[0], [39.0, 214.0], atol=1e-3)
        np.testing.assert_allclose(session.source_polygon.as_array(), DETECTED.as_array(), atol=1e-3)

    def test_default_inset_on_miss(self) -> None:
        session = CornerEditingSession.seed(
            _create_synthetic_image(), VIEWPORT, DetectionResult(polygon=None)
        )

        assert session.model_used is ModelKind.NONE
        np.testing.assert_allclose(
            session.source_polygon.as_array(),
            np.array([[30, 40], [270, 40], [270, 360], [30, 360]], dtype=np.float32),
            atol=1e-3,
        )

    def test_slide_inset_on_miss(self) -> None:
        session = CornerEditingSession.seed(
            _create_synthetic_image(), VIEWPORT, None, inset_x=0.05, inset_y=0.2
        )
        np.testing.assert_allclose(session.source_polygon.as_array()[0], [15.0, 80.0], atol=1e-3)


class TestEditing:
    """Tests for corner moves and viewport changes."""

    def test_move_corner_replaces_exactly_one(self) -> None:
        session = _seeded()
        before = session.display_polygon

        after = session.move_corner(1, Point(300.0, 250.0))

        assert session.state is SessionState.EDITING
        assert session.dirty
        assert after[1] == Point(300.0, 250.0)
        for i in (0, 2, 3):
            assert after[i] == before[i]

    def test_move_corner_bad_index(self) -> None:
        with pytest.raises(IndexError):
            _seeded().move_corner(4, Point(0, 0))

    def test_update_viewport_keeps_source_corners(self) -> None:
        session = _seeded()
        session.move_corner(0, Point(52.0, 240.0))
        source_before = session.source_polygon

        session.update_viewport(Viewport(0, 0, 844, 390))

        np.testing.assert_allclose(
            session.source_polygon.as_array(), source_before.as_array(), atol=1e-3
        )
        assert session.layout.scale == pytest.approx(390 / 400)

    def test_reset(self) -> None:
        session = _seeded()
        session.move_corner(0, Point(1.0, 1.0))

        session.reset(DETECTED)

        assert session.state is SessionState.SEEDED
        assert not session.dirty


class TestCommit:
    """Tests for commit, failure recovery and cancellation."""

    def test_commit_rectifies_source_corners(self) -> None:
        session = _seeded()

        result = asyncio.run(session.commit())

        assert session.state is SessionState.COMMITTED
        assert session.result is result
        assert result.height == 320
        assert result.width == round(320 * 16 / 9)
        np.testing.assert_allclose(result.polygon.as_array(), DETECTED.as_array(), atol=1e-3)

    def test_commit_uses_aspect_ratio(self) -> None:
        result = asyncio.run(_seeded(aspect_ratio=4 / 3).commit())
        assert (result.width, result.height) == (427, 320)

    def test_failed_commit_returns_to_editing(self) -> None:
        session = _seeded()
        for i in range(4):
            session.move_corner(i, Point(100.0, 300.0))
        moved = session.display_polygon

        with pytest.raises(TransformFailure):
            asyncio.run(session.commit())

        assert session.state is SessionState.EDITING
        assert session.display_polygon == moved
        assert session.result is None

    def test_rectifier_error_propagates(self) -> None:
        def rectifier(image, corners, aspect_ratio):
            raise InvalidPolygon("bad corners")

        session = _seeded(rectifier=rectifier)

        with pytest.raises(InvalidPolygon):
            asyncio.run(session.commit())
        assert session.state is SessionState.EDITING

    def test_no_edits_while_committing(self) -> None:
        gate = threading.Event()
        session = _seeded(rectifier=_gated_rectifier(gate))

        async def scenario():
            task = asyncio.ensure_future(session.commit())
            try:
                await _wait_for_state(session, SessionState.COMMITTING)
                with pytest.raises(SessionStateError):
                    await session.commit()
                with pytest.raises(SessionStateError):
                    session.move_corner(0, Point(0, 0))
            finally:
                gate.set()
            return await task

        result = asyncio.run(scenario())

        assert result is session.result
        assert session.state is SessionState.COMMITTED

    def test_cancel_during_commit(self) -> None:
        gate = threading.Event()
        session = _seeded(rectifier=_gated_rectifier(gate))

        async def scenario():
            task = asyncio.ensure_future(session.commit())
            try:
                await _wait_for_state(session, SessionState.COMMITTING)
                session.cancel()
            finally:
                gate.set()
            await task

        with pytest.raises(SessionStateError):
            asyncio.run(scenario())
        assert session.state is SessionState.CANCELLED
        assert session.result is None

    def test_cancel_after_commit(self) -> None:
        session = _seeded()
        asyncio.run(session.commit())

        with pytest.raises(SessionStateError):
            session.cancel()

    def test_cancelled_session_rejects_edits(self) -> None:
        session = _seeded()
        session.cancel()

        with pytest.raises(SessionStateError):
            session.move_corner(0, Point(0, 0))

    def test_reenter_from_result(self) -> None:
        image = _create_synthetic_image()
        session = _seeded()
        result = asyncio.run(session.commit())

        again = CornerEditingSession.from_result(image, VIEWPORT, result)

        assert again.state is SessionState.SEEDED
        np.testing.assert_allclose(again.source_polygon.as_array(), DETECTED.as_array(), atol=1e-3)

    def test_viewport_change_while_committing(self) -> None:
        gate = threading.Event()
        session = _seeded(rectifier=_gated_rectifier(gate))

        async def scenario():
            task = asyncio.ensure_future(session.commit())
            try:
                await _wait_for_state(session, SessionState.COMMITTING)
                session.update_viewport(Viewport(0, 0, 844, 390))
            finally:
                gate.set()
            return await task

        result = asyncio.run(scenario())

        assert session.state is SessionState.COMMITTED
        assert session.layout.scale == pytest.approx(390 / 400)
        np.testing.assert_allclose(result.polygon.as_array(), DETECTED.as_array(), atol=1e-3)

    def test_persist_runs_before_committed(self) -> None:
        seen = []
        session = _seeded()

        def persist(result):
            seen.append(session.state)

        asyncio.run(session.commit(persist=persist))

        assert seen == [SessionState.COMMITTING]
        assert session.state is SessionState.COMMITTED

    def test_failed_persist_returns_to_editing(self) -> None:
        session = _seeded()

        def persist(result):
            raise TransformFailure("disk full")

        with pytest.raises(TransformFailure):
            asyncio.run(session.commit(persist=persist))

        assert session.state is SessionState.EDITING
        assert session.result is None
        result = asyncio.run(session.commit())
        assert session.state is SessionState.COMMITTED
        assert session.result is result
