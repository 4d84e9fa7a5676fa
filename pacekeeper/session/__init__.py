"""Session validity, cookie persistence, and detection tracking."""

from pacekeeper.session.guard import SessionGuard
from pacekeeper.session.types import Cookie, PageSignal, Session

__all__ = ["Cookie", "PageSignal", "Session", "SessionGuard"]
