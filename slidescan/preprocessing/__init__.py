"""Image decoding and model input preparation."""

from slidescan.preprocessing.loader import (
    ImageBuffer,
    decode_image,
    encode_image,
    load_image,
    open_image,
    save_image,
)
from slidescan.preprocessing.tensor import MODEL_INPUT_SIZE, PreprocessResult, preprocess

__all__ = [
    'ImageBuffer',
    'MODEL_INPUT_SIZE',
    'PreprocessResult',
    'decode_image',
    'encode_image',
    'load_image',
    'open_image',
    'preprocess',
    'save_image',
]
