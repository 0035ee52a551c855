"""Error taxonomy for the corner detection and rectification pipeline.

Library exceptions (cv2.error, onnxruntime failures, PIL decode errors) are caught
at module boundaries and re-raised as one of these classes. Detection misses and
missing QR codes are ordinary results, not errors.
"""


class ScanError(Exception):
    """Base class for all pipeline errors."""


class InitializationError(ScanError):
    """Model assets are missing, corrupt, or could not be installed."""


class DecodeError(ScanError, ValueError):
    """An image reference or buffer could not be decoded."""


class InvalidPolygon(ScanError, ValueError):
    """A polygon is not a usable 4-corner document quadrilateral."""


class TransformFailure(ScanError):
    """The perspective transform could not be computed or applied."""


class SessionStateError(ScanError):
    """An editing session received an action its current state does not allow."""
