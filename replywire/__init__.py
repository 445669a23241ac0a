"""replywire - multi-tenant chat-channel sessions with queued AI replies."""

__version__ = "1.0.0"
