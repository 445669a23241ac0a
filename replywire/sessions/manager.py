"""Session manager: the owned registry of per-tenant channel sessions.

Owns the table of live sessions and is the only code that adds or
removes entries. All table mutations happen under one asyncio lock so
that create, destroy and event-driven eviction stay linearizable: at
most one session per tenant exists at any time.

A create runs the adapter handshake against a fixed deadline. Concurrent
creates for the same tenant share one in-flight handshake. Adapter
events drive explicit state transitions and a fire-and-forget status
projection into the session store.
"""

import asyncio
from functools import partial
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional

import structlog

from ..channel.base import (
    AdapterEvents,
    AdapterFactory,
    RawMessage,
    prepare_profile_dir,
    validate_tenant_id,
)
from ..config import DEFAULT_HANDSHAKE_TIMEOUT
from ..exceptions import (
    AdapterTeardownError,
    AuthFailedError,
    HandshakeError,
    QrTimeoutError,
    SessionAlreadyExistsError,
    SessionError,
)
from ..store.base import SessionStore
from ..store.models import SessionStatusValue
from ..tasks import spawn
from .models import Session, SessionState

logger = structlog.get_logger("replywire.sessions")

MessageHandler = Callable[[RawMessage, str, Optional[str]], Awaitable[object]]
ReadyListener = Callable[[Session], Awaitable[None]]


class SessionManager:
    """Creates, tracks and tears down per-tenant sessions.

    Args:
        session_store: Where status projections are written.
        adapter_factory: Builds a ChannelAdapter for a tenant.
        auth_dir: Root of the per-tenant persistent profile directories.
        message_handler: Async ``(raw, tenant_id, own_identity)`` callback
            for inbound messages; expected never to raise.
        handshake_timeout: Seconds allowed for open + authenticate.
        adapter_call_timeout: Bound on each logout/destroy call.
        store_timeout: Bound on each status write.
    """

    def __init__(
        self,
        session_store: SessionStore,
        adapter_factory: AdapterFactory,
        auth_dir: Path,
        message_handler: Optional[MessageHandler] = None,
        handshake_timeout: float = DEFAULT_HANDSHAKE_TIMEOUT,
        adapter_call_timeout: float = 15,
        store_timeout: float = 10,
    ):
        self._store = session_store
        self._adapter_factory = adapter_factory
        self.auth_dir = auth_dir
        self._message_handler = message_handler
        self.handshake_timeout = handshake_timeout
        self.adapter_call_timeout = adapter_call_timeout
        self.store_timeout = store_timeout

        self._sessions: Dict[str, Session] = {}
        self._creating: Dict[str, asyncio.Task] = {}
        self._lock = asyncio.Lock()
        self._status_writes: Dict[str, asyncio.Task] = {}
        self._ready_listeners: List[ReadyListener] = []

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def set_message_handler(self, handler: MessageHandler) -> None:
        self._message_handler = handler

    def add_ready_listener(self, listener: ReadyListener) -> None:
        """Register a callback fired each time a session becomes active."""
        if listener not in self._ready_listeners:
            self._ready_listeners.append(listener)

    def remove_ready_listener(self, listener: ReadyListener) -> None:
        if listener in self._ready_listeners:
            self._ready_listeners.remove(listener)

    def lookup(self, tenant_id: str) -> Optional[Session]:
        """Return the tenant's session (in any live state), or None."""
        return self._sessions.get(tenant_id)

    def tenants(self) -> List[str]:
        return list(self._sessions)

    @property
    def session_count(self) -> int:
        """Sessions in the table, including ones still handshaking."""
        return len(self._sessions)

    @property
    def active_count(self) -> int:
        """Sessions that completed the handshake."""
        return sum(1 for s in self._sessions.values() if s.is_active)

    async def create(self, tenant_id: str) -> Session:
        """Get or create the tenant's session.

        Returns the existing session if one is live; joins the in-flight
        handshake if one is running; otherwise starts a new handshake
        and waits for it.

        Raises:
            QrTimeoutError: Handshake did not complete before the deadline.
            AuthFailedError: The channel rejected the credentials.
            HandshakeError: The adapter could not be opened.
            ValueError: ``tenant_id`` is not a valid identifier.
        """
        validate_tenant_id(tenant_id)
        async with self._lock:
            try:
                task = self._claim(tenant_id)
            except SessionAlreadyExistsError as e:
                logger.info("session_already_exists", tenant_id=tenant_id)
                return e.session
        # Shielded: a caller giving up must not abort a shared handshake
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled():
                # The handshake itself was cancelled by destroy/stop_all
                raise HandshakeError(
                    "Session was stopped during the handshake", tenant_id=tenant_id
                ) from None
            raise

    async def destroy(self, tenant_id: str) -> bool:
        """Log out and tear down the tenant's session.

        The table entry is always evicted, even if logout or teardown
        fail; a leaked adapter is preferable to a stale entry blocking
        re-creation.

        Returns:
            False if the tenant had no session.

        Raises:
            AdapterTeardownError: After eviction, if logout or destroy failed.
        """
        async with self._lock:
            session = self._sessions.pop(tenant_id, None)
            creating = self._creating.get(tenant_id)

        if session is None:
            return False

        if creating is not None and not creating.done():
            # Handshake still running: cancelling it tears the adapter down
            creating.cancel()
            try:
                await creating
            except (asyncio.CancelledError, SessionError):
                pass
            self._project(tenant_id, status=SessionStatusValue.STOPPED.value,
                          connected=False, qr_token=None, phone_identity=None)
            logger.info("session_stopped_during_handshake", tenant_id=tenant_id)
            return True

        session.transition(SessionState.DISCONNECTED)
        self._project(tenant_id, status=SessionStatusValue.STOPPED.value,
                      connected=False, qr_token=None, phone_identity=None)
        logger.info("session_stopping", tenant_id=tenant_id)
        await self._teardown(session, logout=True)
        logger.info("session_stopped", tenant_id=tenant_id)
        return True

    async def stop_all(self) -> None:
        """Tear down every session without logging out (process shutdown).

        Stored profiles survive, so tenants reconnect without a new scan.
        """
        async with self._lock:
            creating = list(self._creating.values())
            sessions = list(self._sessions.values())
            self._sessions.clear()

        for task in creating:
            task.cancel()
        if creating:
            await asyncio.gather(*creating, return_exceptions=True)

        for session in sessions:
            try:
                await self._teardown(session, logout=False)
            except AdapterTeardownError:
                pass  # already logged
        await self.flush_status()
        logger.info("all_sessions_stopped", count=len(sessions))

    async def flush_status(self) -> None:
        """Wait for queued status projections to finish."""
        pending = [t for t in self._status_writes.values() if not t.done()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def _claim(self, tenant_id: str) -> asyncio.Task:
        """Return the handshake task to await for ``tenant_id``.

        Must be called under ``self._lock``.

        Raises:
            SessionAlreadyExistsError: A live, non-handshaking session exists.
        """
        task = self._creating.get(tenant_id)
        if task is not None:
            logger.info("session_handshake_joined", tenant_id=tenant_id)
            return task

        existing = self._sessions.get(tenant_id)
        if existing is not None and not existing.is_terminal:
            raise SessionAlreadyExistsError(
                "Session already exists", tenant_id=tenant_id, session=existing
            )

        session = Session(tenant_id=tenant_id)
        session.handshake = asyncio.get_running_loop().create_future()
        # Provisional entry: lookups see the handshaking session
        self._sessions[tenant_id] = session
        task = asyncio.create_task(self._establish(session))
        self._creating[tenant_id] = task
        task.add_done_callback(partial(self._creation_done, tenant_id))
        return task

    def _creation_done(self, tenant_id: str, task: asyncio.Task) -> None:
        if self._creating.get(tenant_id) is task:
            del self._creating[tenant_id]
        if not task.cancelled():
            # Retrieved here so a failed handshake nobody awaited is not reported twice
            task.exception()

    async def _establish(self, session: Session) -> Session:
        tenant_id = session.tenant_id
        logger.info("session_creating", tenant_id=tenant_id, timeout=self.handshake_timeout)
        self._project_state(session, connected=False, qr_token=None, phone_identity=None)
        try:
            await asyncio.wait_for(self._handshake(session), timeout=self.handshake_timeout)

        except asyncio.TimeoutError:
            session.transition(SessionState.TIMED_OUT)
            logger.warning("session_qr_timeout", tenant_id=tenant_id, timeout=self.handshake_timeout)
            self._project_state(session, connected=False, qr_token=None)
            await self._abandon(session)
            raise QrTimeoutError(
                f"QR code was not scanned within {self.handshake_timeout}s",
                tenant_id=tenant_id,
                timeout=self.handshake_timeout,
            ) from None

        except AuthFailedError:
            session.transition(SessionState.AUTH_FAILED)
            self._project_state(session, connected=False, qr_token=None)
            await self._abandon(session)
            raise

        except asyncio.CancelledError:
            session.transition(SessionState.DISCONNECTED)
            await self._abandon(session)
            raise

        except Exception as e:
            # False when a disconnected event already ended and projected the session
            if session.transition(SessionState.DISCONNECTED):
                logger.error(
                    "session_initialization_failed",
                    tenant_id=tenant_id,
                    error=str(e),
                    exc_type=type(e).__name__,
                )
                self._project(tenant_id, status=SessionStatusValue.INITIALIZATION_FAILED.value,
                              connected=False, qr_token=None, phone_identity=None)
            await self._abandon(session)
            if isinstance(e, HandshakeError):
                raise
            raise HandshakeError(
                f"Adapter initialization failed: {e}", tenant_id=tenant_id
            ) from e

        logger.info("session_created", tenant_id=tenant_id)
        return session

    async def _handshake(self, session: Session) -> None:
        """Open the adapter and wait for its ready event."""
        profile_path = await asyncio.to_thread(
            prepare_profile_dir, self.auth_dir, session.tenant_id
        )
        adapter = self._adapter_factory(
            session.tenant_id, profile_path, self._bind_events(session)
        )
        session.adapter = adapter
        await adapter.open()
        await session.handshake

    async def _abandon(self, session: Session) -> None:
        """Tear down a failed handshake and evict its provisional entry."""
        try:
            await self._teardown(session, logout=False)
        except AdapterTeardownError:
            pass  # already logged
        await self._evict(session)

    # ------------------------------------------------------------------
    # Adapter events
    # ------------------------------------------------------------------

    def _bind_events(self, session: Session) -> AdapterEvents:
        return AdapterEvents(
            on_qr=partial(self._on_qr, session),
            on_ready=partial(self._on_ready, session),
            on_message=partial(self._on_message, session),
            on_disconnected=partial(self._on_disconnected, session),
            on_auth_failure=partial(self._on_auth_failure, session),
        )

    async def _on_qr(self, session: Session, token: str) -> None:
        if not session.transition(SessionState.AWAITING_SCAN):
            return
        session.qr_token = token
        logger.info("session_qr_generated", tenant_id=session.tenant_id)
        self._project_state(session, qr_token=token, connected=False, phone_identity=None)

    async def _on_ready(self, session: Session, identity: Optional[str]) -> None:
        if self._sessions.get(session.tenant_id) is not session:
            logger.debug("ready_after_eviction_ignored", tenant_id=session.tenant_id)
            return
        if not session.transition(SessionState.ACTIVE):
            return
        session.phone_identity = identity
        logger.info("session_ready", tenant_id=session.tenant_id, phone=identity or "")
        self._project_state(session, qr_token=None, connected=True, phone_identity=identity)
        if session.handshake is not None and not session.handshake.done():
            session.handshake.set_result(identity)
        for listener in self._ready_listeners:
            spawn(listener(session))

    async def _on_message(self, session: Session, raw: RawMessage) -> None:
        if not session.is_active or self._sessions.get(session.tenant_id) is not session:
            logger.debug("message_for_inactive_session_ignored", tenant_id=session.tenant_id)
            return
        if self._message_handler is None:
            return
        await self._message_handler(raw, session.tenant_id, session.phone_identity)

    async def _on_disconnected(self, session: Session, reason: str) -> None:
        was_active = session.is_active
        if not session.transition(SessionState.DISCONNECTED):
            return
        logger.warning("session_disconnected", tenant_id=session.tenant_id, reason=reason)
        self._project_state(session, qr_token=None, connected=False)
        if not was_active and session.handshake and not session.handshake.done():
            # _establish owns teardown while the handshake is running
            session.handshake.set_exception(HandshakeError(
                f"Disconnected during handshake: {reason}", tenant_id=session.tenant_id
            ))
            return
        await self._evict(session)
        spawn(self._teardown_quietly(session))

    async def _on_auth_failure(self, session: Session, detail: str) -> None:
        was_active = session.is_active
        if not session.transition(SessionState.AUTH_FAILED):
            return
        logger.error("session_auth_failure", tenant_id=session.tenant_id, detail=detail)
        if not was_active and session.handshake and not session.handshake.done():
            session.handshake.set_exception(AuthFailedError(
                f"Authentication failed: {detail}", tenant_id=session.tenant_id
            ))
            return
        self._project_state(session, qr_token=None, connected=False)
        await self._evict(session)
        spawn(self._teardown_quietly(session))

    # ------------------------------------------------------------------
    # Teardown and eviction
    # ------------------------------------------------------------------

    async def _evict(self, session: Session) -> None:
        async with self._lock:
            if self._sessions.get(session.tenant_id) is session:
                del self._sessions[session.tenant_id]
                logger.info("session_evicted", tenant_id=session.tenant_id, state=session.state.value)

    async def _teardown(self, session: Session, logout: bool) -> None:
        """Release the session's adapter exactly once.

        Raises:
            AdapterTeardownError: If logout or destroy failed.
        """
        if session.torn_down:
            return
        session.torn_down = True
        adapter = session.adapter
        if adapter is None:
            return

        errors = []
        if logout:
            try:
                await asyncio.wait_for(adapter.logout(), timeout=self.adapter_call_timeout)
            except Exception as e:
                errors.append(f"logout: {e or type(e).__name__}")
        try:
            await asyncio.wait_for(adapter.destroy(), timeout=self.adapter_call_timeout)
        except Exception as e:
            errors.append(f"destroy: {e or type(e).__name__}")

        if errors:
            logger.warning(
                "adapter_teardown_failed",
                tenant_id=session.tenant_id,
                errors=errors,
            )
            raise AdapterTeardownError(
                "; ".join(errors), tenant_id=session.tenant_id
            )
        logger.debug("adapter_released", tenant_id=session.tenant_id)

    async def _teardown_quietly(self, session: Session) -> None:
        try:
            await self._teardown(session, logout=False)
        except AdapterTeardownError:
            pass  # already logged

    # ------------------------------------------------------------------
    # Status projection
    # ------------------------------------------------------------------

    def _project_state(self, session: Session, **fields) -> None:
        self._project(session.tenant_id, status=session.status_value, **fields)

    def _project(self, tenant_id: str, **fields) -> None:
        """Queue a status write; writes for one tenant apply in order."""
        previous = self._status_writes.get(tenant_id)
        task = asyncio.create_task(self._write_status(tenant_id, fields, previous))
        self._status_writes[tenant_id] = task
        task.add_done_callback(partial(self._status_write_done, tenant_id))

    async def _write_status(
        self, tenant_id: str, fields: dict, previous: Optional[asyncio.Task]
    ) -> None:
        if previous is not None and not previous.done():
            await asyncio.wait({previous})
        try:
            await asyncio.wait_for(
                self._store.set_status(tenant_id, **fields), timeout=self.store_timeout
            )
            logger.debug("status_projected", tenant_id=tenant_id, status=fields.get("status"))
        except Exception as e:
            logger.error(
                "status_projection_failed",
                tenant_id=tenant_id,
                status=fields.get("status"),
                error=str(e),
                exc_type=type(e).__name__,
            )

    def _status_write_done(self, tenant_id: str, task: asyncio.Task) -> None:
        if self._status_writes.get(tenant_id) is task:
            del self._status_writes[tenant_id]
