"""Tests for the command-line interface."""

import json
from pathlib import Path

import numpy as np
import pytest
from click.testing import CliRunner

from conftest import DOC_CORNERS, FakeSession, make_document_image, make_heatmap, make_point_outputs
from slidescan.cli import main
from slidescan.corner_detection.models import HEATMAP_MODEL, MODEL_FILES, POINT_MODEL
from slidescan.preprocessing.loader import save_image

CORNERS = "100,80 540,80 540,400 100,400"


@pytest.fixture(autouse=True)
def _isolated(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    for var in ("SLIDESCAN_MODELS_DIR", "SLIDESCAN_BUNDLE_DIR", "SLIDESCAN_ASPECT_RATIO",
                "SLIDESCAN_DEFAULT_INSET", "SLIDESCAN_OUTPUT_FORMAT"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def slide_path(tmp_path: Path) -> str:
    return save_image(make_document_image(), tmp_path / "slide.png").reference


def _use_fake_models(monkeypatch: pytest.MonkeyPatch, hit: bool) -> None:
    size = (640, 480)
    if hit:
        heat = FakeSession({"heatmap": make_heatmap(DOC_CORNERS, size)})
        point = FakeSession(make_point_outputs(DOC_CORNERS, size))
    else:
        heat = FakeSession({"heatmap": np.zeros((1, 4, 128, 128), dtype=np.float32)})
        point = FakeSession(make_point_outputs(DOC_CORNERS, size, has_obj=0.05))
    sessions = {HEATMAP_MODEL: heat, POINT_MODEL: point}
    monkeypatch.setattr("slidescan.corner_detection.models._onnx_session", lambda path: sessions[path.name])


def _json_output(output: str) -> dict:
    return json.loads(output[output.index("{"):output.rindex("}") + 1])


def test_rectify_writes_output(slide_path: str, tmp_path: Path) -> None:
    out = tmp_path / "out"

    result = CliRunner().invoke(main, ["rectify", slide_path, "--corners", CORNERS, "-o", str(out)])

    assert result.exit_code == 0, result.output
    assert "Saved 569x320" in result.output
    assert len(list(out.glob("slide_rectified_*.png"))) == 1


def test_rectify_aspect_ratio_and_order(slide_path: str, tmp_path: Path) -> None:
    shuffled = "540,400 100,80 100,400 540,80"

    result = CliRunner().invoke(main, [
        "rectify", slide_path, "--corners", shuffled, "--order",
        "--aspect-ratio", "4:3", "-o", str(tmp_path / "out"),
    ])

    assert result.exit_code == 0, result.output
    assert "Saved 427x320" in result.output


def test_rectify_bad_corners(slide_path: str) -> None:
    result = CliRunner().invoke(main, ["rectify", slide_path, "--corners", "1,2 3,4"])

    assert result.exit_code == 2
    assert "Expected 4 corners" in result.output


def test_rectify_degenerate_corners(slide_path: str, tmp_path: Path) -> None:
    result = CliRunner().invoke(main, [
        "rectify", slide_path, "--corners", "0,0 100,100 200,200 300,300", "-o", str(tmp_path / "out"),
    ])

    assert result.exit_code == 1


def test_detect_without_models(slide_path: str, tmp_path: Path) -> None:
    result = CliRunner().invoke(main, ["--models-dir", str(tmp_path / "empty"), "detect", slide_path])

    assert result.exit_code == 1


def test_detect_json_with_viewport(slide_path: str, models_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _use_fake_models(monkeypatch, hit=False)

    result = CliRunner().invoke(main, [
        "--models-dir", str(models_dir), "detect", slide_path, "--json", "--viewport", "390x844",
    ])

    assert result.exit_code == 0, result.output
    payload = _json_output(result.output)
    assert payload["model"] == "none"
    assert payload["found"] is False
    assert payload["source_size"] == [640, 480]
    assert payload["corners"][0] == [64.0, 48.0]
    assert payload["viewport"] == [390.0, 844.0]
    assert payload["display_corners"][0] == pytest.approx([39.0, 305.0])


def test_detect_finds_document(slide_path: str, models_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _use_fake_models(monkeypatch, hit=True)

    result = CliRunner().invoke(main, ["--models-dir", str(models_dir), "detect", slide_path])

    assert result.exit_code == 0, result.output
    assert "Model: heatmap (found=True)" in result.output


def test_scan_rectifies_detection(
    slide_path: str, models_dir: Path, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    _use_fake_models(monkeypatch, hit=True)
    out = tmp_path / "out"

    result = CliRunner().invoke(main, [
        "--models-dir", str(models_dir), "scan", slide_path, "-o", str(out), "--no-qr",
    ])

    assert result.exit_code == 0, result.output
    assert "slide.png: heatmap ->" in result.output
    assert "Processed 1/1 file(s)" in result.output
    assert len(list(out.glob("slide_rectified_*.png"))) == 1


def test_scan_falls_back_to_default_rectangle(
    slide_path: str, models_dir: Path, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    _use_fake_models(monkeypatch, hit=False)
    out = tmp_path / "out"

    result = CliRunner().invoke(main, [
        "--models-dir", str(models_dir), "scan", slide_path, "-o", str(out), "--no-qr",
    ])

    assert result.exit_code == 0, result.output
    assert "slide.png: none -> 683x384" in result.output
    assert len(list(out.glob("slide_rectified_*.png"))) == 1


def test_rectify_non_finite_aspect_ratio(slide_path: str) -> None:
    result = CliRunner().invoke(main, ["rectify", slide_path, "--corners", CORNERS, "--aspect-ratio", "nan"])

    assert result.exit_code == 2


def test_qr_no_code(slide_path: str) -> None:
    result = CliRunner().invoke(main, ["qr", slide_path])

    assert result.exit_code == 0, result.output
    assert "No QR code found" in result.output


def test_install_models(tmp_path: Path) -> None:
    bundle = tmp_path / "bundle"
    bundle.mkdir()
    for name in MODEL_FILES:
        (bundle / name).write_bytes(b"onnx")
    models = tmp_path / "models"

    result = CliRunner().invoke(main, ["--models-dir", str(models), "install-models", "--bundle", str(bundle)])

    assert result.exit_code == 0, result.output
    assert result.output.count("Installed:") == 2
    assert sorted(p.name for p in models.iterdir()) == sorted(MODEL_FILES)


def test_install_models_incomplete_bundle(tmp_path: Path) -> None:
    bundle = tmp_path / "bundle"
    bundle.mkdir()

    result = CliRunner().invoke(main, ["--models-dir", str(tmp_path / "models"), "install-models", "--bundle", str(bundle)])

    assert result.exit_code == 1
