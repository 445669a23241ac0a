"""Inbound message filter.

Classifies each raw channel message as ignorable or storable; storable
messages are encrypted and appended to the message store with their
reply-task fields defaulted. Handling never raises back into the
adapter's event loop: persistence failures are logged and the message
is dropped.
"""

import asyncio
import uuid
from datetime import datetime
from typing import Optional

import structlog

from .channel.base import RawMessage
from .encryption import MessageCipher
from .logging_config import mask_address
from .store.base import MessageStore
from .store.models import InboundMessage

logger = structlog.get_logger("replywire.inbound")

# Address classes that are never one-to-one conversations
GROUP_LIKE_SUFFIXES = (
    "@g.us",          # groups and communities
    "@broadcast",     # status@broadcast and broadcast lists
    "@newsletter",    # channels
    "@temp",          # ephemeral temp addresses
)

MEDIA_TYPES = frozenset({
    "sticker",
    "location",
    "audio",
    "ptt",  # voice note
    "video",
    "image",
})

SKIP_GROUP = "group_or_broadcast"
SKIP_SELF = "from_self"
SKIP_EMPTY = "empty_body"
SKIP_MEDIA = "media_type"


def _local_part(address: Optional[str]) -> str:
    if not address:
        return ""
    return address.split("@", 1)[0]


def is_group_like(address: Optional[str]) -> bool:
    return bool(address) and address.lower().endswith(GROUP_LIKE_SUFFIXES)


def skip_reason(raw: RawMessage, own_identity: Optional[str] = None) -> Optional[str]:
    """Return why a message should be ignored, or None to store it.

    Checks run in precedence order: group/broadcast origin, own echo,
    empty body, non-text media.
    """
    if raw.is_group or is_group_like(raw.from_address):
        return SKIP_GROUP
    if raw.from_me:
        return SKIP_SELF
    if own_identity and _local_part(raw.from_address) == _local_part(own_identity):
        return SKIP_SELF
    if not raw.body or not raw.body.strip():
        return SKIP_EMPTY
    if raw.type in MEDIA_TYPES:
        return SKIP_MEDIA
    return None


class InboundFilter:
    """Filters, encrypts and persists inbound messages for all tenants."""

    def __init__(
        self,
        store: MessageStore,
        cipher: MessageCipher,
        store_timeout: float = 10,
    ):
        self.store = store
        self.cipher = cipher
        self.store_timeout = store_timeout

    async def handle(
        self,
        raw: RawMessage,
        tenant_id: str,
        own_identity: Optional[str] = None,
    ) -> Optional[int]:
        """Store ``raw`` for ``tenant_id`` unless it is ignorable.

        Returns:
            The stored row id, or None if skipped or not persisted.
        """
        reason = skip_reason(raw, own_identity)
        if reason:
            logger.debug(
                "inbound_skipped",
                tenant_id=tenant_id,
                reason=reason,
                sender=mask_address(raw.from_address),
            )
            return None

        try:
            encrypted = self.cipher.encrypt(raw.body)
            message = InboundMessage(
                tenant_id=tenant_id,
                phone_number=_local_part(raw.to_address) or "unknown",
                sender_address=raw.from_address,
                recipient_address=raw.to_address,
                message_type=raw.type,
                encrypted_body=encrypted.ciphertext,
                iv=encrypted.iv,
                auth_tag=encrypted.auth_tag,
                is_group=False,
                # Without a channel id there is nothing to dedupe on
                source_message_id=raw.id or f"local-{uuid.uuid4().hex}",
                received_at=(
                    datetime.fromtimestamp(raw.timestamp) if raw.timestamp else datetime.now()
                ),
            )
            row_id = await asyncio.wait_for(
                self.store.append(message), timeout=self.store_timeout
            )
        except Exception as e:
            logger.error(
                "inbound_persist_failed",
                tenant_id=tenant_id,
                sender=mask_address(raw.from_address),
                error=str(e),
                exc_type=type(e).__name__,
            )
            return None

        logger.info(
            "inbound_saved",
            tenant_id=tenant_id,
            message_id=row_id,
            sender=mask_address(raw.from_address),
        )
        return row_id
