"""Channel adapter contract.

A channel adapter speaks the external chat protocol for exactly one
tenant. The session manager builds one through a factory, passing the
tenant's persistent profile directory and the event callbacks it
wants, then calls ``open()`` to begin the handshake. Readiness, QR
challenges, inbound messages and failures arrive through the callbacks.
"""

import os
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

import structlog
from pydantic import BaseModel

from ..exceptions import HandshakeError

logger = structlog.get_logger("replywire.sessions")

_TENANT_ID_PATTERN = re.compile(r"^[A-Za-z0-9_.-]{1,128}$")


class RawMessage(BaseModel):
    """An inbound message as delivered by the channel."""

    id: str
    from_address: str
    to_address: Optional[str] = None
    body: Optional[str] = None
    type: str = "chat"
    from_me: bool = False
    is_group: bool = False
    timestamp: Optional[int] = None

    @classmethod
    def from_bridge(cls, data: dict) -> "RawMessage":
        """Build from a bridge ``message`` payload (chat-web field names)."""
        msg_id = data.get("id")
        if isinstance(msg_id, dict):
            msg_id = msg_id.get("_serialized") or msg_id.get("id")
        return cls(
            id=str(msg_id or ""),
            from_address=data.get("from", ""),
            to_address=data.get("to"),
            body=data.get("body"),
            type=data.get("type", "chat"),
            from_me=bool(data.get("fromMe", False)),
            is_group=bool(data.get("isGroup", False)),
            timestamp=data.get("timestamp"),
        )


@dataclass
class AdapterEvents:
    """Async callbacks an adapter invokes as the channel reports events.

    Attributes:
        on_qr: Handshake challenge issued (QR token to scan).
        on_ready: Handshake complete; argument is the account identity.
        on_message: Inbound message.
        on_disconnected: Connection lost or logged out; argument is the reason.
        on_auth_failure: Stored credentials rejected; argument is the detail.
    """
    on_qr: Callable[[str], Awaitable[None]]
    on_ready: Callable[[Optional[str]], Awaitable[None]]
    on_message: Callable[[RawMessage], Awaitable[None]]
    on_disconnected: Callable[[str], Awaitable[None]]
    on_auth_failure: Callable[[str], Awaitable[None]]


class ChannelAdapter(ABC):
    """One tenant's connection to the chat channel."""

    def __init__(self, tenant_id: str, profile_path: Path, events: AdapterEvents):
        self.tenant_id = tenant_id
        self.profile_path = profile_path
        self.events = events

    @abstractmethod
    async def open(self) -> None:
        """Connect and start the handshake. Returns before readiness."""

    @abstractmethod
    async def send(self, address: str, text: str) -> None:
        """Send a text message. Raises ChannelSendError on failure."""

    @abstractmethod
    async def logout(self) -> None:
        """Log the account out, invalidating the stored profile."""

    @abstractmethod
    async def destroy(self) -> None:
        """Release every resource held by the adapter."""


AdapterFactory = Callable[[str, Path, AdapterEvents], ChannelAdapter]


def validate_tenant_id(tenant_id: Any) -> str:
    """Reject tenant ids that are empty or unsafe as a directory name."""
    if not isinstance(tenant_id, str) or not _TENANT_ID_PATTERN.match(tenant_id):
        raise ValueError(f"Invalid tenant id: {tenant_id!r}")
    if tenant_id in (".", ".."):
        raise ValueError(f"Invalid tenant id: {tenant_id!r}")
    return tenant_id


def prepare_profile_dir(auth_root: Path, tenant_id: str) -> Path:
    """Create and check the tenant's persistent profile directory.

    Returns:
        The writable ``<auth_root>/session-<tenant_id>`` path.

    Raises:
        HandshakeError: If the directory cannot be created, escapes the
            auth root, or is not writable.
    """
    root = auth_root.expanduser().resolve()
    path = (root / f"session-{tenant_id}").resolve()
    if root not in path.parents:
        raise HandshakeError(
            "Profile path escapes the auth directory", tenant_id=tenant_id
        )
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise HandshakeError(
            f"Cannot create profile directory: {e}",
            tenant_id=tenant_id,
            path=str(path),
        ) from e
    if not os.access(path, os.W_OK):
        raise HandshakeError(
            "Profile directory is not writable", tenant_id=tenant_id, path=str(path)
        )
    return path
