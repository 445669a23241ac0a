"""WebSocket client for the headless chat-web bridge.

The bridge is a separate process that drives a browser-backed chat
client per tenant. Each adapter holds its own WebSocket to the bridge
and exchanges JSON frames:

    → {"type": "init", "tenantId": ..., "profilePath": ...}
    → {"type": "send", "requestId": ..., "to": ..., "text": ...}
    → {"type": "logout", "requestId": ...}
    → {"type": "destroy"}
    ← {"type": "qr", "qr": ...}
    ← {"type": "ready", "phone": ...}
    ← {"type": "message", "message": {...}}
    ← {"type": "disconnected", "reason": ...}
    ← {"type": "auth_failure", "error": ...}
    ← {"type": "ack", "requestId": ..., "ok": bool, "error": ...}
"""

import asyncio
import json
import uuid
from pathlib import Path
from typing import Dict, Optional

import aiohttp
import structlog

from ..exceptions import AdapterTeardownError, ChannelSendError, HandshakeError
from ..logging_config import mask_address
from .base import AdapterEvents, ChannelAdapter, RawMessage

logger = structlog.get_logger("replywire.sessions")


class BridgeChannelAdapter(ChannelAdapter):
    """Channel adapter backed by one bridge WebSocket."""

    def __init__(
        self,
        tenant_id: str,
        profile_path: Path,
        events: AdapterEvents,
        bridge_url: str,
        call_timeout: float = 15,
    ):
        super().__init__(tenant_id, profile_path, events)
        self.bridge_url = bridge_url
        self.call_timeout = call_timeout
        self._session: Optional[aiohttp.ClientSession] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._reader: Optional[asyncio.Task] = None
        self._pending: Dict[str, asyncio.Future] = {}
        self._closing = False

    async def open(self) -> None:
        self._session = aiohttp.ClientSession()
        try:
            self._ws = await asyncio.wait_for(
                self._session.ws_connect(self.bridge_url, heartbeat=30),
                timeout=self.call_timeout,
            )
            await self._ws.send_json({
                "type": "init",
                "tenantId": self.tenant_id,
                "profilePath": str(self.profile_path),
            })
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            await self._session.close()
            self._session = None
            raise HandshakeError(
                f"Bridge connection failed: {e}", tenant_id=self.tenant_id
            ) from e

        self._reader = asyncio.create_task(self._read_loop())
        logger.info("bridge_connected", tenant_id=self.tenant_id, url=self.bridge_url)

    async def send(self, address: str, text: str) -> None:
        ack = await self._request({"type": "send", "to": address, "text": text})
        if not ack.get("ok"):
            raise ChannelSendError(
                ack.get("error") or "Bridge rejected send",
                tenant_id=self.tenant_id,
                to=mask_address(address),
            )

    async def logout(self) -> None:
        try:
            ack = await self._request({"type": "logout"})
        except ChannelSendError as e:
            raise AdapterTeardownError(
                f"Logout failed: {e.message}", tenant_id=self.tenant_id
            ) from e
        if not ack.get("ok"):
            raise AdapterTeardownError(
                ack.get("error") or "Bridge rejected logout", tenant_id=self.tenant_id
            )

    async def destroy(self) -> None:
        self._closing = True
        errors = []
        if self._ws is not None and not self._ws.closed:
            try:
                await self._ws.send_json({"type": "destroy"})
            except (aiohttp.ClientError, ConnectionError, RuntimeError) as e:
                errors.append(str(e))
            try:
                await self._ws.close()
            except (aiohttp.ClientError, ConnectionError) as e:
                errors.append(str(e))
        if (
            self._reader
            and not self._reader.done()
            and self._reader is not asyncio.current_task()
        ):
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
        self._fail_pending("adapter destroyed")
        if self._session is not None:
            await self._session.close()
            self._session = None
        self._ws = None
        logger.info("bridge_closed", tenant_id=self.tenant_id)
        if errors:
            raise AdapterTeardownError(
                "; ".join(errors), tenant_id=self.tenant_id
            )

    async def _request(self, payload: dict) -> dict:
        """Send a frame carrying a requestId and wait for its ack."""
        if self._ws is None or self._ws.closed:
            raise ChannelSendError("Bridge not connected", tenant_id=self.tenant_id)

        request_id = uuid.uuid4().hex
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self._ws.send_json({**payload, "requestId": request_id})
            return await asyncio.wait_for(future, timeout=self.call_timeout)
        except asyncio.TimeoutError:
            raise ChannelSendError(
                f"No ack within {self.call_timeout}s",
                tenant_id=self.tenant_id,
                request=payload["type"],
            ) from None
        except (aiohttp.ClientError, ConnectionError) as e:
            raise ChannelSendError(str(e), tenant_id=self.tenant_id) from e
        finally:
            self._pending.pop(request_id, None)

    def _fail_pending(self, reason: str) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_result({"ok": False, "error": reason})
        self._pending.clear()

    async def _read_loop(self) -> None:
        ws = self._ws
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    try:
                        data = json.loads(msg.data)
                    except json.JSONDecodeError:
                        logger.warning("invalid_json", tenant_id=self.tenant_id, data=msg.data[:100])
                        continue
                    await self._handle_frame(data)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    logger.error("websocket_error", tenant_id=self.tenant_id, error=str(ws.exception()))
                    break
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("websocket_exception", tenant_id=self.tenant_id, error=str(e))

        self._fail_pending("bridge connection closed")
        if not self._closing:
            logger.warning("bridge_connection_lost", tenant_id=self.tenant_id)
            await self._emit(self.events.on_disconnected, "bridge_connection_lost")

    async def _handle_frame(self, data: dict) -> None:
        frame_type = data.get("type")

        if frame_type == "ack":
            future = self._pending.get(data.get("requestId", ""))
            if future and not future.done():
                future.set_result(data)
        elif frame_type == "qr":
            await self._emit(self.events.on_qr, data.get("qr", ""))
        elif frame_type == "ready":
            await self._emit(self.events.on_ready, data.get("phone"))
        elif frame_type == "message":
            payload = data.get("message") or {}
            try:
                raw = RawMessage.from_bridge(payload)
            except ValueError as e:
                logger.warning("invalid_message_frame", tenant_id=self.tenant_id, error=str(e))
                return
            await self._emit(self.events.on_message, raw)
        elif frame_type == "disconnected":
            await self._emit(self.events.on_disconnected, data.get("reason") or "unknown")
        elif frame_type == "auth_failure":
            await self._emit(self.events.on_auth_failure, data.get("error") or "auth_failure")
        elif frame_type == "error":
            logger.error("bridge_error", tenant_id=self.tenant_id, error=data.get("error"))
        else:
            logger.debug("unknown_bridge_frame", tenant_id=self.tenant_id, frame_type=frame_type)

    async def _emit(self, callback, arg) -> None:
        """Invoke an event callback; never let it break the read loop."""
        try:
            await callback(arg)
        except Exception as e:
            logger.error(
                "adapter_event_handler_error",
                tenant_id=self.tenant_id,
                handler=getattr(callback, "__name__", repr(callback)),
                error=str(e),
                exc_type=type(e).__name__,
            )


def bridge_adapter_factory(bridge_url: str, call_timeout: float = 15):
    """Return an AdapterFactory building BridgeChannelAdapter instances."""
    def factory(tenant_id: str, profile_path: Path, events: AdapterEvents) -> ChannelAdapter:
        return BridgeChannelAdapter(
            tenant_id,
            profile_path,
            events,
            bridge_url=bridge_url,
            call_timeout=call_timeout,
        )
    return factory
