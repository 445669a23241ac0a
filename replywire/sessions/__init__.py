"""Per-tenant channel session lifecycle."""

from .manager import SessionManager
from .models import TERMINAL_STATES, TRANSITIONS, Session, SessionState

__all__ = [
    "Session",
    "SessionManager",
    "SessionState",
    "TERMINAL_STATES",
    "TRANSITIONS",
]
