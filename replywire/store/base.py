"""Store contracts consumed by the session manager, filter and dispatcher.

The session store is a document-per-tenant projection of session status
with merge semantics. The message store is a durable log of inbound
messages whose reply-task fields are mutable, with a live change-feed
over pending reply tasks.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional

from .models import InboundMessage, SessionStatus


CHANGE_ADDED = "added"
CHANGE_MODIFIED = "modified"
CHANGE_REMOVED = "removed"


@dataclass
class ChangeEvent:
    """One change observed on a live query.

    Attributes:
        type: "added", "modified" or "removed".
        message: Row as last seen. For "removed" this is the last
            snapshot before the row left the query.
    """
    type: str
    message: InboundMessage


ChangeCallback = Callable[[List[ChangeEvent]], Awaitable[None]]


class Subscription(ABC):
    """Handle to a live change-feed."""

    @abstractmethod
    async def close(self) -> None:
        """Stop delivering changes."""


class SessionStore(ABC):
    """Durable projection of session status for external observers."""

    @abstractmethod
    async def set_status(self, tenant_id: str, **fields: Any) -> None:
        """Merge-upsert the status document for a tenant.

        Only the given fields are written; unspecified fields keep
        their stored value.
        """

    @abstractmethod
    async def get_status(self, tenant_id: str) -> Optional[SessionStatus]:
        """Read the status document for a tenant."""


class MessageStore(ABC):
    """Append-only inbound log with mutable reply-task fields."""

    @abstractmethod
    async def append(self, message: InboundMessage) -> int:
        """Persist an inbound message and return its row id.

        Idempotent on (tenant_id, source_message_id): re-delivery of a
        message already stored returns the existing id without writing.
        """

    @abstractmethod
    async def get(self, message_id: int) -> Optional[InboundMessage]:
        """Fetch a row by id."""

    @abstractmethod
    async def update(self, message_id: int, **fields: Any) -> bool:
        """Partially update a row. Returns False if it does not exist."""

    @abstractmethod
    async def set_reply_task(self, message_id: int, reply_text: str) -> bool:
        """Attach a generated reply and mark it pending (external writer)."""

    @abstractmethod
    async def list_pending(self, tenant_id: Optional[str] = None) -> List[InboundMessage]:
        """Rows with reply_pending set, optionally for one tenant."""

    @abstractmethod
    async def watch_pending(
        self,
        callback: ChangeCallback,
        poll_interval: float = 2.0,
        poll_timeout: float = 10.0,
    ) -> Subscription:
        """Subscribe to added/modified/removed changes on pending rows."""
