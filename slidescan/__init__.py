"""Slide and document corner detection with perspective correction."""

__version__ = "0.1.0"
