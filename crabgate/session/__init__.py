"""Session management module."""

from crabgate.session.manager import Session, SessionManager, Turn

__all__ = ["Session", "SessionManager", "Turn"]
