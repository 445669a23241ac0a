"""Tests for the channel adapter contract and the bridge adapter."""

import asyncio
import json
from unittest.mock import AsyncMock

import pytest
from aiohttp import WSMsgType, test_utils, web

from replywire.channel.base import (
    AdapterEvents,
    RawMessage,
    prepare_profile_dir,
    validate_tenant_id,
)
from replywire.channel.bridge import BridgeChannelAdapter
from replywire.exceptions import ChannelSendError, HandshakeError


def _events() -> AdapterEvents:
    return AdapterEvents(
        on_qr=AsyncMock(),
        on_ready=AsyncMock(),
        on_message=AsyncMock(),
        on_disconnected=AsyncMock(),
        on_auth_failure=AsyncMock(),
    )


async def _wait_for_call(mock, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not mock.await_count:
        if loop.time() > deadline:
            raise AssertionError("callback not invoked in time")
        await asyncio.sleep(0.01)


def _bridge_app(received):
    """A minimal bridge that authenticates immediately and acks requests."""

    async def handler(request):
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        async for msg in ws:
            if msg.type != WSMsgType.TEXT:
                continue
            data = json.loads(msg.data)
            received.append(data)
            kind = data["type"]
            if kind == "init":
                await ws.send_json({"type": "qr", "qr": "qr-token"})
                await ws.send_json({"type": "ready", "phone": "15559990000"})
                await ws.send_json({"type": "message", "message": {
                    "id": {"_serialized": "false_1555@c.us_X"},
                    "from": "15551230000@c.us",
                    "to": "15559990000@c.us",
                    "body": "hi",
                    "type": "chat",
                    "fromMe": False,
                }})
            elif kind == "send":
                ok = data["text"] != "fail"
                await ws.send_json({
                    "type": "ack",
                    "requestId": data["requestId"],
                    "ok": ok,
                    "error": None if ok else "number not on channel",
                })
            elif kind == "logout":
                await ws.send_json({"type": "ack", "requestId": data["requestId"], "ok": True})
            elif kind == "drop":
                await ws.close()
        return ws

    app = web.Application()
    app.router.add_get("/ws", handler)
    return app


class TestRawMessage:

    def test_from_bridge_payload(self):
        raw = RawMessage.from_bridge({
            "id": {"_serialized": "false_1@c.us_ABC", "id": "ABC"},
            "from": "1@c.us",
            "to": "2@c.us",
            "body": "hello",
            "type": "chat",
            "fromMe": True,
            "isGroup": False,
            "timestamp": 1700000000,
        })
        assert raw.id == "false_1@c.us_ABC"
        assert raw.from_address == "1@c.us"
        assert raw.to_address == "2@c.us"
        assert raw.from_me is True
        assert raw.timestamp == 1700000000

    def test_missing_fields_default(self):
        raw = RawMessage.from_bridge({"from": "1@c.us"})
        assert raw.id == ""
        assert raw.body is None
        assert raw.type == "chat"
        assert raw.is_group is False


class TestTenantPaths:
    """Tenant id validation and profile directory isolation."""

    @pytest.mark.parametrize("tenant_id", ["abc", "user_42", "org.team-1", "A" * 128])
    def test_valid_ids(self, tenant_id):
        assert validate_tenant_id(tenant_id) == tenant_id

    @pytest.mark.parametrize("tenant_id", ["", ".", "..", "a/b", "a b", "A" * 129, None, 42])
    def test_invalid_ids(self, tenant_id):
        with pytest.raises(ValueError):
            validate_tenant_id(tenant_id)

    def test_profile_dir_created_per_tenant(self, tmp_path):
        path = prepare_profile_dir(tmp_path / "auth", "tenant-a")
        assert path.is_dir()
        assert path.name == "session-tenant-a"
        assert path.parent == (tmp_path / "auth").resolve()

    def test_unwritable_root_fails(self, tmp_path):
        blocker = tmp_path / "auth"
        blocker.write_text("not a directory")
        with pytest.raises(HandshakeError, match="Cannot create profile directory"):
            prepare_profile_dir(blocker, "tenant-a")


class TestBridgeChannelAdapter:
    """Adapter against an in-process bridge."""

    @pytest.mark.asyncio
    async def test_handshake_events_and_send(self, tmp_path):
        received = []
        async with test_utils.TestServer(_bridge_app(received)) as server:
            events = _events()
            adapter = BridgeChannelAdapter(
                "tenant-a", tmp_path, events, bridge_url=str(server.make_url("/ws")), call_timeout=2
            )
            await adapter.open()
            await _wait_for_call(events.on_message)

            events.on_qr.assert_awaited_once_with("qr-token")
            events.on_ready.assert_awaited_once_with("15559990000")
            raw = events.on_message.await_args.args[0]
            assert raw.id == "false_1555@c.us_X"
            assert raw.body == "hi"

            await adapter.send("15551230000@c.us", "hello")
            await adapter.logout()
            await adapter.destroy()

        assert received[0] == {"type": "init", "tenantId": "tenant-a", "profilePath": str(tmp_path)}
        send = next(f for f in received if f["type"] == "send")
        assert send["to"] == "15551230000@c.us"
        assert send["text"] == "hello"
        events.on_disconnected.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rejected_send_raises(self, tmp_path):
        async with test_utils.TestServer(_bridge_app([])) as server:
            events = _events()
            adapter = BridgeChannelAdapter(
                "tenant-a", tmp_path, events, bridge_url=str(server.make_url("/ws")), call_timeout=2
            )
            await adapter.open()
            try:
                with pytest.raises(ChannelSendError, match="number not on channel"):
                    await adapter.send("15551230000@c.us", "fail")
            finally:
                await adapter.destroy()

    @pytest.mark.asyncio
    async def test_lost_connection_reports_disconnect(self, tmp_path):
        async with test_utils.TestServer(_bridge_app([])) as server:
            events = _events()
            adapter = BridgeChannelAdapter(
                "tenant-a", tmp_path, events, bridge_url=str(server.make_url("/ws")), call_timeout=2
            )
            await adapter.open()
            await adapter._ws.send_json({"type": "drop"})
            await _wait_for_call(events.on_disconnected)

            events.on_disconnected.assert_awaited_once_with("bridge_connection_lost")
            with pytest.raises(ChannelSendError, match="not connected"):
                await adapter.send("1@c.us", "hello")
            await adapter.destroy()

    @pytest.mark.asyncio
    async def test_unreachable_bridge(self, tmp_path):
        adapter = BridgeChannelAdapter(
            "tenant-a", tmp_path, _events(), bridge_url="ws://127.0.0.1:1/ws", call_timeout=2
        )
        with pytest.raises(HandshakeError, match="Bridge connection failed"):
            await adapter.open()

    @pytest.mark.asyncio
    async def test_send_before_open(self, tmp_path):
        adapter = BridgeChannelAdapter("tenant-a", tmp_path, _events(), bridge_url="ws://unused")
        with pytest.raises(ChannelSendError):
            await adapter.send("1@c.us", "hello")
