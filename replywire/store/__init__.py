"""Durable storage for session status, inbound messages and reply tasks."""

from .base import (
    CHANGE_ADDED,
    CHANGE_MODIFIED,
    CHANGE_REMOVED,
    ChangeCallback,
    ChangeEvent,
    MessageStore,
    SessionStore,
    Subscription,
)
from .models import InboundMessage, SessionStatus, SessionStatusValue
from .sqlite import SqliteStore

__all__ = [
    # Models
    "InboundMessage",
    "SessionStatus",
    "SessionStatusValue",
    # Contracts
    "ChangeCallback",
    "ChangeEvent",
    "MessageStore",
    "SessionStore",
    "Subscription",
    "CHANGE_ADDED",
    "CHANGE_MODIFIED",
    "CHANGE_REMOVED",
    # Implementation
    "SqliteStore",
]
