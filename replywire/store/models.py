"""Pydantic models for the session and message stores."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class SessionStatusValue(str, Enum):
    """Status strings projected into the session store for observers."""
    INITIALIZING = "initializing"
    AWAITING_SCAN = "awaiting_scan"
    ACTIVE = "active"
    DISCONNECTED = "disconnected"
    AUTH_FAILED = "error"
    TIMED_OUT = "qr_timeout"
    INITIALIZATION_FAILED = "initialization_failed"
    STOPPED = "stopped"


class SessionStatus(BaseModel):
    """Per-tenant status document."""

    tenant_id: str
    status: Optional[str] = None
    qr_token: Optional[str] = None
    connected: bool = False
    phone_identity: Optional[str] = None
    updated_at: datetime = Field(default_factory=datetime.now)


class InboundMessage(BaseModel):
    """A stored inbound message plus its reply-task queue fields.

    A reply task is a row with ``reply_pending`` set and a non-null
    ``auto_reply_text``.
    """

    id: Optional[int] = None
    tenant_id: str
    phone_number: Optional[str] = Field(None, description="Tenant's own number")
    sender_address: str
    recipient_address: Optional[str] = None
    message_type: str = "chat"
    encrypted_body: Optional[str] = None
    iv: Optional[str] = None
    auth_tag: Optional[str] = None
    body: Optional[str] = Field(None, description="Plaintext fallback, unused when encrypted")
    is_group: bool = False
    source_message_id: str
    received_at: datetime = Field(default_factory=datetime.now)

    # AI processor queue fields
    processed: bool = False
    is_lead: Optional[bool] = None
    reply_pending: bool = False
    auto_reply_text: Optional[str] = None
    reply_sent_at: Optional[datetime] = None
    reply_attempts: int = 0
    last_reply_error: Optional[str] = None
    reply_failed_at: Optional[datetime] = None

    revision: int = 0

    @property
    def is_reply_task(self) -> bool:
        """Whether this row is a pending reply task."""
        return self.reply_pending and self.auto_reply_text is not None
