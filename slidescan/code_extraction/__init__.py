"""Embedded code extraction."""

from slidescan.code_extraction.qr import CodeResult, extract_code

__all__ = ["CodeResult", "extract_code"]
