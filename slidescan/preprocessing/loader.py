"""Image loading and saving with support for HEIC, JPEG, PNG, TIFF and WebP.

Images travel through the pipeline as ``ImageBuffer``: uint8 RGB or RGBA pixels
plus the reference they were loaded from. Source buffers are read-only.
"""

import io
import itertools
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Union

import numpy as np
from PIL import ExifTags, Image, UnidentifiedImageError

from slidescan.errors import DecodeError, TransformFailure
from slidescan.geometry.types import Size

logger = logging.getLogger(__name__)

_HEIF_EXTENSIONS = ('.heic', '.heif')
_STANDARD_EXTENSIONS = ('.jpg', '.jpeg', '.png', '.tiff', '.tif', '.webp', '.bmp')

# Output file extension -> Pillow format name
OUTPUT_FORMATS = {
    '.jpg': 'JPEG', '.jpeg': 'JPEG', '.png': 'PNG', '.webp': 'WEBP',
    '.tif': 'TIFF', '.tiff': 'TIFF', '.bmp': 'BMP',
}

_buffer_ids = itertools.count(1)


def _next_token() -> int:
    return next(_buffer_ids)


ImageSource = Union[str, Path, bytes, bytearray]


@dataclass(frozen=True)
class ImageBuffer:
    """Decoded pixels plus the reference usable for re-loading them."""

    pixels: np.ndarray            # (H, W, 3|4) uint8, RGB(A)
    reference: Optional[str] = None
    format: str = "RAW"
    # Unique per buffer for the life of the process, unlike id(pixels)
    token: int = field(default_factory=_next_token, compare=False, repr=False)

    def __post_init__(self) -> None:
        if self.pixels.ndim != 3 or self.pixels.shape[2] not in (3, 4):
            raise DecodeError(
                f"Image buffer must be (H, W, 3) or (H, W, 4), got {self.pixels.shape}"
            )
        if self.pixels.dtype != np.uint8:
            raise DecodeError(f"Image buffer must be uint8, got {self.pixels.dtype}")

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def channels(self) -> int:
        return int(self.pixels.shape[2])

    @property
    def size(self) -> Size:
        return Size(self.width, self.height)

    def rgb(self) -> np.ndarray:
        """Pixels without the alpha channel."""
        return self.pixels[:, :, :3]


def _apply_exif_orientation(img: Image.Image) -> Image.Image:
    """Apply EXIF orientation to PIL Image."""
    try:
        exif = img.getexif()
        if not exif:
            return img

        orientation_key = None
        for tag, name in ExifTags.TAGS.items():
            if name == 'Orientation':
                orientation_key = tag
                break

        if orientation_key is None:
            return img

        orientation = exif.get(orientation_key)

        if orientation is None or orientation == 1:
            return img

        if orientation == 2:
            img = img.transpose(Image.Transpose.FLIP_LEFT_RIGHT)
        elif orientation == 3:
            img = img.rotate(180, expand=True)
        elif orientation == 4:
            img = img.rotate(180, expand=True).transpose(Image.Transpose.FLIP_LEFT_RIGHT)
        elif orientation == 5:
            img = img.rotate(-90, expand=True).transpose(Image.Transpose.FLIP_LEFT_RIGHT)
        elif orientation == 6:
            img = img.rotate(-90, expand=True)
        elif orientation == 7:
            img = img.rotate(90, expand=True).transpose(Image.Transpose.FLIP_LEFT_RIGHT)
        elif orientation == 8:
            img = img.rotate(90, expand=True)

        logger.debug(f"Applied EXIF orientation: {orientation}")

    except (AttributeError, KeyError, IndexError) as e:
        logger.debug(f"Could not read EXIF orientation: {e}")

    return img


def _register_heif() -> None:
    try:
        from pillow_heif import register_heif_opener
        register_heif_opener()
    except ImportError as e:
        raise ImportError(
            "pillow-heif is required for HEIC support. "
            "Install with: pip install pillow-heif"
        ) from e


def _to_pixels(img: Image.Image) -> np.ndarray:
    """Convert any PIL mode to uint8 RGB, keeping alpha when present."""
    has_alpha = img.mode in ('RGBA', 'LA') or (
        img.mode == 'P' and 'transparency' in img.info
    )
    img = img.convert('RGBA' if has_alpha else 'RGB')
    arr = np.array(img, dtype=np.uint8)
    arr.flags.writeable = False
    return arr


def _decode(img: Image.Image, reference: Optional[str]) -> ImageBuffer:
    format_name = img.format or "RAW"
    try:
        img.load()
    except OSError as e:
        raise DecodeError(f"Could not decode image {reference or '<buffer>'}: {e}") from e

    img = _apply_exif_orientation(img)
    pixels = _to_pixels(img)

    logger.info(
        f"Loaded {format_name}: {reference or '<buffer>'} ({pixels.shape[1]}x{pixels.shape[0]})"
    )
    return ImageBuffer(pixels=pixels, reference=reference, format=format_name)


def decode_image(data: Union[bytes, bytearray], reference: Optional[str] = None) -> ImageBuffer:
    """Decode an in-memory encoded image (JPEG, PNG, HEIC, ...).

    Args:
        data: Encoded image bytes.
        reference: Optional reference recorded on the returned buffer.

    Returns:
        ImageBuffer with read-only uint8 RGB(A) pixels.

    Raises:
        DecodeError: If the bytes are empty or not a decodable image.
    """
    if not data:
        raise DecodeError("Empty image buffer")

    _register_heif()
    try:
        img = Image.open(io.BytesIO(bytes(data)))
    except (UnidentifiedImageError, OSError) as e:
        raise DecodeError(f"Could not decode image buffer: {e}") from e

    return _decode(img, reference)


def load_image(path: Union[str, Path]) -> ImageBuffer:
    """Load image from any supported format.

    Args:
        path: Path to image file

    Returns:
        ImageBuffer with read-only uint8 RGB(A) pixels and the path as reference.

    Raises:
        DecodeError: If the file does not exist, has an unsupported extension,
            or cannot be decoded.
    """
    path_obj = Path(path)

    if not path_obj.exists():
        raise DecodeError(f"Image file not found: {path}")

    ext = path_obj.suffix.lower()

    if ext in _HEIF_EXTENSIONS:
        _register_heif()
    elif ext not in _STANDARD_EXTENSIONS:
        raise DecodeError(f"Unsupported image format: {ext}")

    try:
        img = Image.open(path_obj)
    except (UnidentifiedImageError, OSError) as e:
        raise DecodeError(f"Could not decode image {path}: {e}") from e

    return _decode(img, str(path_obj))


def open_image(source: Union[ImageSource, ImageBuffer]) -> ImageBuffer:
    """Accept a file reference, encoded bytes or an already decoded buffer."""
    if isinstance(source, ImageBuffer):
        return source
    if isinstance(source, (bytes, bytearray)):
        return decode_image(source)
    return load_image(source)


def encode_image(image: ImageBuffer, format: str = "PNG", quality: int = 95) -> bytes:
    """Encode pixels to an image file format in memory."""
    buf = io.BytesIO()
    pil_image = Image.fromarray(np.ascontiguousarray(image.pixels))
    if format.upper() in ("JPEG", "JPG"):
        pil_image.convert('RGB').save(buf, format="JPEG", quality=quality)
    else:
        pil_image.save(buf, format=format.upper())
    return buf.getvalue()


def save_image(
    image: ImageBuffer,
    output_path: Union[str, Path],
    quality: int = 95,
) -> ImageBuffer:
    """Write an image to disk and return it tagged with the new file reference.

    Args:
        image: Image to save.
        output_path: Destination file. The format follows its extension.
        quality: JPEG quality (0-100), ignored for lossless formats.

    Returns:
        The same pixels with ``reference`` set to the written path.

    Raises:
        TransformFailure: If the extension is not a supported output format,
            or encoding or writing the file fails.
    """
    output_path = Path(output_path)

    ext = output_path.suffix.lower()
    format_name = OUTPUT_FORMATS.get(ext)
    if format_name is None:
        raise TransformFailure(f"Unsupported output format: {ext}")

    try:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_bytes(encode_image(image, format_name, quality))
    except (OSError, ValueError) as e:
        raise TransformFailure(f"Could not write {output_path}: {e}") from e

    logger.debug(f"Saved image: {output_path} ({image.width}x{image.height})")

    return ImageBuffer(pixels=image.pixels, reference=str(output_path), format=format_name)
