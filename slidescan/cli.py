"""Command-line interface for slide and document scanning."""

import asyncio
import json
import logging
import re
import sys
from dataclasses import replace
from pathlib import Path
from typing import List, Optional, Tuple

import click
from dotenv import load_dotenv

from slidescan.config import ScanConfig, load_config, parse_ratio
from slidescan.corner_detection.detector import draw_detection
from slidescan.corner_detection.models import install_models
from slidescan.errors import ScanError
from slidescan.geometry.coordinates import Viewport, to_display
from slidescan.geometry.types import order_corners
from slidescan.pipeline import DocumentScanner
from slidescan.preprocessing.loader import load_image
from slidescan.utils.debug import create_comparison_image, save_debug_image

# Load environment variables from .env
load_dotenv()

logger = logging.getLogger(__name__)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%H:%M:%S'
    )


def _parse_corners(value: str) -> List[Tuple[float, float]]:
    """Parse "x,y x,y x,y x,y" (spaces or semicolons between points)."""
    points = []
    for chunk in re.split(r"[;\s]+", value.strip()):
        if not chunk:
            continue
        parts = chunk.split(",")
        if len(parts) != 2:
            raise click.BadParameter(f"Corner {chunk!r} is not of the form x,y")
        try:
            points.append((float(parts[0]), float(parts[1])))
        except ValueError as e:
            raise click.BadParameter(f"Corner {chunk!r} is not numeric") from e
    if len(points) != 4:
        raise click.BadParameter(f"Expected 4 corners, got {len(points)}")
    return points


def _parse_viewport(value: Optional[str]) -> Optional[Viewport]:
    if not value:
        return None
    match = re.fullmatch(r"\s*(\d+(?:\.\d+)?)[xX](\d+(?:\.\d+)?)\s*", value)
    if not match:
        raise click.BadParameter(f"Viewport {value!r} is not of the form WIDTHxHEIGHT")
    return Viewport(0.0, 0.0, float(match.group(1)), float(match.group(2)))


async def _ready_scanner(config: ScanConfig) -> DocumentScanner:
    scanner = DocumentScanner(config)
    await scanner.initialize()
    return scanner


@click.group()
@click.version_option(version='0.1.0')
@click.option('--config', 'config_path', type=click.Path(), help='Path to slidescan.json')
@click.option('--models-dir', type=click.Path(), help='Directory holding the ONNX models')
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose logging')
@click.pass_context
def main(ctx: click.Context, config_path: Optional[str], models_dir: Optional[str], verbose: bool) -> None:
    """Slidescan - find slide and document corners in photos and straighten them."""
    _configure_logging(verbose)
    ctx.obj = load_config(config_path, models_dir=models_dir)


@main.command()
@click.argument('image_path', type=click.Path(exists=True))
@click.option('--viewport', type=str, help='Also print display-space corners for a WIDTHxHEIGHT viewport')
@click.option('--json', 'as_json', is_flag=True, help='Print the result as JSON')
@click.pass_obj
def detect(config: ScanConfig, image_path: str, viewport: Optional[str], as_json: bool) -> None:
    """Detect document corners in IMAGE_PATH."""
    view = _parse_viewport(viewport)

    async def run():
        with await _ready_scanner(config) as scanner:
            image = load_image(image_path)
            return image, await scanner.detect(image)

    try:
        image, detection = asyncio.run(run())
    except ScanError as e:
        logger.error(f"Detection failed: {e}")
        sys.exit(1)

    inset_x, inset_y = config.fallback_inset
    corners = detection.polygon_or_default(image, inset_x, inset_y)
    payload = {
        "model": detection.model_used.value,
        "found": detection.found,
        "source_size": [image.width, image.height],
        "corners": corners.as_list(),
    }
    if view is not None:
        payload["viewport"] = [view.width, view.height]
        payload["display_corners"] = to_display(corners, image.size, view).as_list()

    if as_json:
        click.echo(json.dumps(payload, indent=2))
        return

    click.echo(f"Model: {payload['model']} (found={payload['found']})")
    for name, (x, y) in zip(("TL", "TR", "BR", "BL"), payload["corners"]):
        click.echo(f"  {name}: ({x:.1f}, {y:.1f})")
    if view is not None:
        click.echo(f"Display corners in {view.width:.0f}x{view.height:.0f} viewport:")
        for name, (x, y) in zip(("TL", "TR", "BR", "BL"), payload["display_corners"]):
            click.echo(f"  {name}: ({x:.1f}, {y:.1f})")


@main.command()
@click.argument('image_path', type=click.Path(exists=True))
@click.option('--corners', required=True, help='Four source corners "x,y x,y x,y x,y"')
@click.option('--order/--no-order', default=False, help='Sort corners into TL, TR, BR, BL first')
@click.option('--aspect-ratio', type=str, help='Output width:height, e.g. 16:9 or 1.414')
@click.option('--output', '-o', 'output_dir', type=click.Path(), default='./output',
              help='Output directory for the rectified image')
@click.pass_obj
def rectify(
    config: ScanConfig,
    image_path: str,
    corners: str,
    order: bool,
    aspect_ratio: Optional[str],
    output_dir: str,
) -> None:
    """Rectify IMAGE_PATH using manually supplied corners."""
    points = _parse_corners(corners)
    if order:
        points = order_corners(points).tolist()
    if aspect_ratio:
        try:
            ratio = parse_ratio(aspect_ratio)
        except (ValueError, ZeroDivisionError) as e:
            raise click.BadParameter(f"Aspect ratio {aspect_ratio!r} is not valid") from e
        try:
            config = replace(config, aspect_ratio=ratio)
        except ValueError as e:
            raise click.BadParameter(str(e)) from e

    async def run():
        scanner = DocumentScanner(config)
        return await scanner.transform_with_corners(image_path, points, output_dir)

    try:
        result = asyncio.run(run())
    except ScanError as e:
        logger.error(f"Rectification failed: {e}")
        sys.exit(1)

    if result is None:
        click.echo("Superseded by a newer request, nothing saved")
        return
    click.echo(f"Saved {result.width}x{result.height}: {result.image.reference}")


@main.command()
@click.argument('input_paths', nargs=-1, required=True, type=click.Path(exists=True))
@click.option('--output', '-o', 'output_dir', type=click.Path(), default='./output',
              help='Output directory for processed images')
@click.option('--qr/--no-qr', 'read_code', default=True, help='Look for a QR code in the result')
@click.option('--debug', is_flag=True, help='Save corner overlays and before/after images')
@click.pass_obj
def scan(config: ScanConfig, input_paths: Tuple[str, ...], output_dir: str, read_code: bool, debug: bool) -> None:
    """Detect corners and rectify each image in INPUT_PATHS."""
    output_path = Path(output_dir)
    output_path.mkdir(parents=True, exist_ok=True)
    debug_dir = Path('./debug') if debug else None

    async def run():
        results = []
        with await _ready_scanner(config) as scanner:
            for input_path in input_paths:
                try:
                    image = load_image(input_path)
                    result = await scanner.scan(
                        image, output_path, read_code=read_code, rectify_default=True
                    )
                except ScanError as e:
                    logger.error(f"Error processing {input_path}: {e}")
                    continue
                if result is not None:
                    results.append((input_path, image, result))
        return results

    try:
        results = asyncio.run(run())
    except ScanError as e:
        logger.error(f"Scanner unavailable: {e}")
        sys.exit(1)

    for input_path, image, result in results:
        name = Path(input_path).name
        if not result.detection.found:
            logger.warning(f"No document found in {name}, rectified the default rectangle")
        click.echo(
            f"{name}: {result.detection.model_used.value} -> "
            f"{result.rectified.width}x{result.rectified.height} {result.output_reference}"
        )
        if result.code is not None and result.code.found:
            click.echo(f"  QR: {result.code.text}")

        if debug_dir is not None:
            stem = Path(input_path).stem
            overlay = draw_detection(image, result.corners, label=result.detection.model_used.value)
            save_debug_image(overlay, debug_dir / stem / "01_corners.jpg", "Detected corners")
            if result.rectified is not None:
                save_debug_image(
                    create_comparison_image([overlay, result.rectified.image.pixels]),
                    debug_dir / stem / "02_rectified.jpg",
                    "Before/after rectification",
                )

    click.echo(f"Processed {len(results)}/{len(input_paths)} file(s)")


@main.command()
@click.argument('image_path', type=click.Path(exists=True))
@click.pass_obj
def qr(config: ScanConfig, image_path: str) -> None:
    """Look for a QR code in IMAGE_PATH."""
    try:
        code = asyncio.run(DocumentScanner(config).extract_code(image_path))
    except ScanError as e:
        logger.error(f"QR extraction failed: {e}")
        sys.exit(1)

    if code is None or not code.found:
        click.echo("No QR code found")
        return
    click.echo(f"QR: {code.text}")
    if code.corners is not None:
        click.echo("Corners: " + " ".join(f"{p.x:.1f},{p.y:.1f}" for p in code.corners))


@main.command('install-models')
@click.option('--bundle', 'bundle_dir', type=click.Path(exists=True, file_okay=False), required=True,
              help='Directory shipping model_point.onnx and model_heat.onnx')
@click.pass_obj
def install_models_command(config: ScanConfig, bundle_dir: str) -> None:
    """Copy the models from a bundle into the models directory."""
    try:
        installed = install_models(bundle_dir, config.models_dir, (config.point_model, config.heatmap_model))
    except ScanError as e:
        logger.error(f"{e}")
        sys.exit(1)

    for path in installed:
        click.echo(f"Installed: {path}")


if __name__ == '__main__':
    main()
