"""Corner editing session."""

from slidescan.editing.session import CornerEditingSession, SessionState

__all__ = ["CornerEditingSession", "SessionState"]
