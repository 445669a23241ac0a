"""Tests for the reply dispatcher."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from replywire.dispatcher import RETRY_MAX_DELAY, ReplyDispatcher, retry_delay
from replywire.exceptions import ChannelSendError
from replywire.sessions.manager import SessionManager
from replywire.sessions.models import Session, SessionState
from replywire.store.models import InboundMessage
from replywire.store.sqlite import SqliteStore


def _active_session(tenant_id="t1", send=None) -> Session:
    adapter = MagicMock()
    adapter.send = send or AsyncMock()
    return Session(tenant_id=tenant_id, state=SessionState.ACTIVE, adapter=adapter)


def _sessions(session=None):
    sessions = MagicMock()
    sessions.lookup = MagicMock(return_value=session)
    return sessions


async def _open_store(tmp_path) -> SqliteStore:
    store = SqliteStore(tmp_path / "replywire.db")
    await store.initialize()
    return store


async def _reply_task(store, source_id="m1", tenant_id="t1", sender="123@x", text="hello") -> int:
    row_id = await store.append(InboundMessage(
        tenant_id=tenant_id,
        sender_address=sender,
        source_message_id=source_id,
    ))
    await store.set_reply_task(row_id, text)
    return row_id


async def _wait_until(predicate, timeout=3.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not await predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.02)


class TestRetryDelay:
    """Exponential backoff schedule."""

    def test_first_retry_uses_base_delay(self):
        assert retry_delay(1) == 5

    def test_doubles_per_attempt(self):
        assert [retry_delay(n) for n in (1, 2, 3, 4)] == [5, 10, 20, 40]

    def test_capped(self):
        assert retry_delay(20) == RETRY_MAX_DELAY


class TestDispatch:
    """End-to-end dispatch against a real store."""

    @pytest.mark.asyncio
    async def test_sends_and_marks_complete(self, tmp_path):
        store = await _open_store(tmp_path)
        session = _active_session()
        dispatcher = ReplyDispatcher(store, _sessions(session), poll_interval=0.05)
        try:
            row_id = await _reply_task(store)
            await dispatcher.start()

            async def done():
                row = await store.get(row_id)
                return not row.reply_pending

            await _wait_until(done)
            row = await store.get(row_id)
            assert row.reply_sent_at is not None
            assert row.last_reply_error is None
            session.adapter.send.assert_awaited_once_with("123@x", "hello")
            assert dispatcher.stats.sent == 1
        finally:
            await dispatcher.stop()
            await store.close()

    @pytest.mark.asyncio
    async def test_no_session_leaves_task_pending(self, tmp_path):
        store = await _open_store(tmp_path)
        dispatcher = ReplyDispatcher(store, _sessions(None), poll_interval=0.05)
        try:
            row_id = await _reply_task(store)
            await dispatcher.start()
            await asyncio.sleep(0.2)
            await dispatcher.wait_idle()

            row = await store.get(row_id)
            assert row.reply_pending is True
            assert row.reply_attempts == 0
            assert row.reply_sent_at is None
            assert dispatcher.stats.skipped_offline >= 1
        finally:
            await dispatcher.stop()
            await store.close()

    @pytest.mark.asyncio
    async def test_handshaking_session_treated_as_offline(self, tmp_path):
        store = await _open_store(tmp_path)
        session = _active_session()
        session.state = SessionState.AWAITING_SCAN
        dispatcher = ReplyDispatcher(store, _sessions(session), poll_interval=0.05)
        try:
            row_id = await _reply_task(store)
            await dispatcher.start()
            await asyncio.sleep(0.2)
            await dispatcher.wait_idle()

            session.adapter.send.assert_not_awaited()
            assert (await store.get(row_id)).reply_pending is True
        finally:
            await dispatcher.stop()
            await store.close()

    @pytest.mark.asyncio
    async def test_ready_session_sweeps_pending(self, tmp_path):
        store = await _open_store(tmp_path)
        sessions = _sessions(None)
        dispatcher = ReplyDispatcher(store, sessions, poll_interval=5)
        try:
            row_id = await _reply_task(store)
            await dispatcher.start()
            await asyncio.sleep(0.1)
            await dispatcher.wait_idle()

            session = _active_session()
            sessions.lookup.return_value = session
            await dispatcher._on_session_ready(session)
            await dispatcher.wait_idle()

            session.adapter.send.assert_awaited_once_with("123@x", "hello")
            assert (await store.get(row_id)).reply_pending is False
        finally:
            await dispatcher.stop()
            await store.close()

    @pytest.mark.asyncio
    async def test_send_failure_records_attempt(self, tmp_path):
        store = await _open_store(tmp_path)
        send = AsyncMock(side_effect=ChannelSendError("not connected", tenant_id="t1"))
        dispatcher = ReplyDispatcher(store, _sessions(_active_session(send=send)), poll_interval=0.05)
        try:
            row_id = await _reply_task(store)
            await dispatcher.start()

            async def failed_once():
                return (await store.get(row_id)).reply_attempts == 1

            await _wait_until(failed_once)
            row = await store.get(row_id)
            assert row.reply_pending is True
            assert "not connected" in row.last_reply_error
            assert row.reply_failed_at is None
            # Backing off: the modified echo from the feed is not re-sent
            await asyncio.sleep(0.2)
            assert send.await_count == 1
        finally:
            await dispatcher.stop()
            await store.close()

    @pytest.mark.asyncio
    async def test_dead_letter_after_max_attempts(self, tmp_path):
        store = await _open_store(tmp_path)
        send = AsyncMock(side_effect=ChannelSendError("rejected", tenant_id="t1"))
        dispatcher = ReplyDispatcher(
            store, _sessions(_active_session(send=send)), poll_interval=0.05, max_attempts=1
        )
        try:
            row_id = await _reply_task(store)
            await dispatcher.start()

            async def dead():
                return (await store.get(row_id)).reply_failed_at is not None

            await _wait_until(dead)
            row = await store.get(row_id)
            assert row.reply_pending is False
            assert row.reply_sent_at is None
            assert row.reply_attempts == 1
            assert dispatcher.stats.dead_lettered == 1
        finally:
            await dispatcher.stop()
            await store.close()

    @pytest.mark.asyncio
    async def test_one_send_at_a_time_per_tenant(self, tmp_path):
        store = await _open_store(tmp_path)
        in_flight = 0
        peak = 0

        async def slow_send(address, text):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.05)
            in_flight -= 1

        session = _active_session(send=AsyncMock(side_effect=slow_send))
        dispatcher = ReplyDispatcher(store, _sessions(session), poll_interval=0.05)
        try:
            ids = [await _reply_task(store, source_id=f"m{i}") for i in range(3)]
            await dispatcher.start()

            async def all_sent():
                rows = [await store.get(i) for i in ids]
                return all(not r.reply_pending for r in rows)

            await _wait_until(all_sent)
            assert peak == 1
            assert session.adapter.send.await_count == 3
        finally:
            await dispatcher.stop()
            await store.close()


class TestEnqueue:
    """Intake rules for reply tasks."""

    @pytest.mark.asyncio
    async def test_duplicate_enqueue_ignored(self):
        store = MagicMock()
        store.watch_pending = AsyncMock()
        dispatcher = ReplyDispatcher(store, _sessions(None))
        await dispatcher.start()
        message = InboundMessage(
            id=7, tenant_id="t1", sender_address="1@x", source_message_id="m",
            reply_pending=True, auto_reply_text="hi",
        )
        try:
            # Stand-in worker so the queued id is not consumed
            dispatcher._workers["t1"] = asyncio.create_task(asyncio.sleep(10))
            assert dispatcher.enqueue(message) is True
            assert dispatcher.enqueue(message) is False
            assert dispatcher.queued_count == 1
        finally:
            await dispatcher.stop()

    @pytest.mark.asyncio
    async def test_incomplete_task_rejected(self):
        store = MagicMock()
        store.watch_pending = AsyncMock()
        dispatcher = ReplyDispatcher(store, _sessions(None))
        await dispatcher.start()
        try:
            message = InboundMessage(
                id=7, tenant_id="t1", sender_address="1@x", source_message_id="m",
                reply_pending=True, auto_reply_text=None,
            )
            assert dispatcher.enqueue(message) is False
        finally:
            await dispatcher.stop()

    @pytest.mark.asyncio
    async def test_restart_registers_ready_listener_once(self, tmp_path):
        store = MagicMock()
        store.watch_pending = AsyncMock()
        sessions = SessionManager(
            session_store=MagicMock(), adapter_factory=MagicMock(), auth_dir=tmp_path
        )
        dispatcher = ReplyDispatcher(store, sessions)

        await dispatcher.start()
        await dispatcher.stop()
        assert sessions._ready_listeners == []

        await dispatcher.start()
        try:
            assert sessions._ready_listeners == [dispatcher._on_session_ready]
        finally:
            await dispatcher.stop()

    def test_not_running_rejects(self):
        dispatcher = ReplyDispatcher(MagicMock(), _sessions(None))
        message = InboundMessage(
            id=7, tenant_id="t1", sender_address="1@x", source_message_id="m",
            reply_pending=True, auto_reply_text="hi",
        )
        assert dispatcher.enqueue(message) is False
