"""Tests for the inbound message filter."""

import os
from unittest.mock import AsyncMock, MagicMock

import pytest

from replywire.channel.base import RawMessage
from replywire.encryption import EncryptedBody, MessageCipher
from replywire.inbound import (
    SKIP_EMPTY,
    SKIP_GROUP,
    SKIP_MEDIA,
    SKIP_SELF,
    InboundFilter,
    skip_reason,
)


def _raw(**overrides) -> RawMessage:
    fields = {
        "id": "false_15551230000@c.us_ABC123",
        "from_address": "15551230000@c.us",
        "to_address": "15559990000@c.us",
        "body": "Hi, is this still available?",
        "type": "chat",
    }
    fields.update(overrides)
    return RawMessage(**fields)


def _make_filter(append=None):
    store = MagicMock()
    store.append = append or AsyncMock(return_value=42)
    cipher = MessageCipher(os.urandom(32))
    return InboundFilter(store=store, cipher=cipher, store_timeout=1), store, cipher


class TestSkipReason:
    """Classification rules and their precedence."""

    @pytest.mark.parametrize("address", [
        "120363000000000000@g.us",
        "status@broadcast",
        "120363000000000000@newsletter",
        "123456@temp",
    ])
    def test_group_like_addresses_skipped(self, address):
        assert skip_reason(_raw(from_address=address)) == SKIP_GROUP

    def test_is_group_flag_skipped(self):
        assert skip_reason(_raw(is_group=True)) == SKIP_GROUP

    def test_from_me_skipped(self):
        assert skip_reason(_raw(from_me=True)) == SKIP_SELF

    def test_own_identity_echo_skipped(self):
        raw = _raw(from_address="15559990000@c.us")
        assert skip_reason(raw, own_identity="15559990000") == SKIP_SELF

    @pytest.mark.parametrize("body", [None, "", "   ", "\n\t"])
    def test_empty_body_skipped(self, body):
        assert skip_reason(_raw(body=body)) == SKIP_EMPTY

    @pytest.mark.parametrize("msg_type", ["sticker", "location", "audio", "ptt", "video", "image"])
    def test_media_types_skipped(self, msg_type):
        assert skip_reason(_raw(type=msg_type, body="caption")) == SKIP_MEDIA

    def test_group_takes_precedence_over_empty(self):
        assert skip_reason(_raw(from_address="1@g.us", body="")) == SKIP_GROUP

    def test_self_takes_precedence_over_media(self):
        assert skip_reason(_raw(from_me=True, type="image")) == SKIP_SELF

    def test_plain_text_is_stored(self):
        assert skip_reason(_raw()) is None


class TestInboundFilter:
    """Persistence side effects of InboundFilter.handle."""

    @pytest.mark.asyncio
    async def test_group_message_not_stored(self):
        inbound, store, _ = _make_filter()
        result = await inbound.handle(_raw(from_address="1203@g.us"), "t1")
        assert result is None
        store.append.assert_not_called()

    @pytest.mark.asyncio
    async def test_empty_body_not_stored(self):
        inbound, store, _ = _make_filter()
        result = await inbound.handle(_raw(body="   "), "t1")
        assert result is None
        store.append.assert_not_called()

    @pytest.mark.asyncio
    async def test_text_message_stored_once_encrypted(self):
        inbound, store, cipher = _make_filter()
        result = await inbound.handle(_raw(), "t1", "15559990000")

        assert result == 42
        store.append.assert_awaited_once()
        row = store.append.await_args.args[0]
        assert row.tenant_id == "t1"
        assert row.sender_address == "15551230000@c.us"
        assert row.recipient_address == "15559990000@c.us"
        assert row.phone_number == "15559990000"
        assert row.source_message_id == "false_15551230000@c.us_ABC123"
        assert row.encrypted_body and row.iv and row.auth_tag
        assert row.body is None
        assert row.reply_pending is False
        assert row.auto_reply_text is None
        assert row.processed is False
        assert row.is_lead is None

        decrypted = cipher.decrypt(
            EncryptedBody(ciphertext=row.encrypted_body, iv=row.iv, auth_tag=row.auth_tag)
        )
        assert decrypted == "Hi, is this still available?"

    @pytest.mark.asyncio
    async def test_store_failure_is_swallowed(self):
        inbound, store, _ = _make_filter(append=AsyncMock(side_effect=RuntimeError("db down")))
        result = await inbound.handle(_raw(), "t1")
        assert result is None
        store.append.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_missing_channel_id_gets_local_id(self):
        inbound, store, _ = _make_filter()
        await inbound.handle(_raw(id=""), "t1")
        row = store.append.await_args.args[0]
        assert row.source_message_id.startswith("local-")

    @pytest.mark.asyncio
    async def test_channel_timestamp_used_for_received_at(self):
        inbound, store, _ = _make_filter()
        await inbound.handle(_raw(timestamp=1700000000), "t1")
        row = store.append.await_args.args[0]
        assert int(row.received_at.timestamp()) == 1700000000
