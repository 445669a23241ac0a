"""Reply dispatcher: delivers AI-generated replies through live sessions.

Watches the message store's pending-reply change-feed. Each observed
task is queued on its tenant's worker; one worker per tenant runs
"resolve session -> send -> mark complete" for one row at a time, so
overlapping notifications for the same tenant never race on a row or
send twice concurrently.

Retry policy:
    - Tenant offline: the row stays pending and is swept again when the
      tenant's session becomes active.
    - Send failed: ``reply_attempts`` is incremented, the error recorded,
      and the row retried after an exponential backoff.
    - ``max_attempts`` failures: the row is dead-lettered
      (``reply_pending`` cleared, ``reply_failed_at`` stamped).
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Set

import structlog

from .logging_config import mask_address
from .sessions.manager import SessionManager
from .sessions.models import Session
from .store.base import CHANGE_ADDED, CHANGE_MODIFIED, ChangeEvent, MessageStore, Subscription
from .store.models import InboundMessage
from .tasks import spawn

logger = structlog.get_logger("replywire.dispatch")

RETRY_BASE_DELAY = 5  # seconds
RETRY_MAX_DELAY = 300
WORKER_IDLE_TIMEOUT = 60


@dataclass
class DispatchStats:
    """Counters since start."""
    sent: int = 0
    failed: int = 0
    dead_lettered: int = 0
    skipped_offline: int = 0


def retry_delay(attempts: int) -> float:
    """Backoff before the next attempt, after ``attempts`` failures."""
    return min(RETRY_BASE_DELAY * 2 ** max(attempts - 1, 0), RETRY_MAX_DELAY)


class ReplyDispatcher:
    """Consumes pending reply tasks and sends them via tenant sessions.

    Args:
        store: Message store holding reply tasks.
        sessions: Session registry used to resolve live adapters.
        poll_interval: Change-feed poll interval in seconds.
        send_timeout: Bound on one channel send.
        store_timeout: Bound on each store read/update.
        max_attempts: Failed sends before a task is dead-lettered.
    """

    def __init__(
        self,
        store: MessageStore,
        sessions: SessionManager,
        poll_interval: float = 2,
        send_timeout: float = 30,
        store_timeout: float = 10,
        max_attempts: int = 5,
        idle_timeout: float = WORKER_IDLE_TIMEOUT,
    ):
        self.store = store
        self.sessions = sessions
        self.poll_interval = poll_interval
        self.send_timeout = send_timeout
        self.store_timeout = store_timeout
        self.max_attempts = max_attempts
        self.idle_timeout = idle_timeout
        self.stats = DispatchStats()

        self._subscription: Optional[Subscription] = None
        self._queues: Dict[str, asyncio.Queue] = {}
        self._workers: Dict[str, asyncio.Task] = {}
        # Row ids queued or in flight; a row is never queued twice
        self._queued: Set[int] = set()
        # Row ids waiting out a retry backoff
        self._backoff: Dict[int, asyncio.TimerHandle] = {}
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def queued_count(self) -> int:
        return len(self._queued)

    async def start(self) -> None:
        """Subscribe to the pending-reply change-feed."""
        if self._running:
            return
        self._running = True
        self.sessions.add_ready_listener(self._on_session_ready)
        self._subscription = await self.store.watch_pending(
            self._on_changes,
            poll_interval=self.poll_interval,
            poll_timeout=self.store_timeout,
        )
        logger.info("reply_dispatcher_started", poll_interval=self.poll_interval)

    async def stop(self) -> None:
        """Close the feed, cancel retry timers and stop all workers."""
        if not self._running:
            return
        self._running = False
        self.sessions.remove_ready_listener(self._on_session_ready)
        if self._subscription is not None:
            await self._subscription.close()
            self._subscription = None
        for handle in self._backoff.values():
            handle.cancel()
        self._backoff.clear()

        workers = list(self._workers.values())
        for worker in workers:
            worker.cancel()
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)
        self._workers.clear()
        self._queues.clear()
        self._queued.clear()
        logger.info("reply_dispatcher_stopped", **self.stats.__dict__)

    async def wait_idle(self) -> None:
        """Wait until every queued task has been processed."""
        for queue in list(self._queues.values()):
            await queue.join()

    # ------------------------------------------------------------------
    # Intake
    # ------------------------------------------------------------------

    async def _on_changes(self, events: List[ChangeEvent]) -> None:
        for event in events:
            if event.type in (CHANGE_ADDED, CHANGE_MODIFIED):
                self.enqueue(event.message)

    async def _on_session_ready(self, session: Session) -> None:
        """Sweep tasks that waited while the tenant was offline."""
        if not self._running:
            return
        pending = await asyncio.wait_for(
            self.store.list_pending(session.tenant_id), timeout=self.store_timeout
        )
        if pending:
            logger.info("pending_replies_swept", tenant_id=session.tenant_id, count=len(pending))
        for message in pending:
            self.enqueue(message)

    def enqueue(self, message: InboundMessage) -> bool:
        """Queue a reply task on its tenant's worker.

        Returns:
            False if the row is incomplete, already queued, or backing off.
        """
        if not self._running:
            return False
        if not message.auto_reply_text or not message.sender_address or not message.tenant_id:
            logger.debug("reply_task_incomplete", message_id=message.id)
            return False
        if message.id is None or message.id in self._queued or message.id in self._backoff:
            return False

        tenant_id = message.tenant_id
        queue = self._queues.get(tenant_id)
        if queue is None:
            queue = asyncio.Queue()
            self._queues[tenant_id] = queue
        self._queued.add(message.id)
        queue.put_nowait(message.id)

        worker = self._workers.get(tenant_id)
        if worker is None or worker.done():
            self._workers[tenant_id] = asyncio.create_task(self._worker(tenant_id, queue))
        return True

    # ------------------------------------------------------------------
    # Per-tenant worker
    # ------------------------------------------------------------------

    async def _worker(self, tenant_id: str, queue: asyncio.Queue) -> None:
        logger.debug("dispatch_worker_started", tenant_id=tenant_id)
        while True:
            try:
                message_id = await asyncio.wait_for(queue.get(), timeout=self.idle_timeout)
            except asyncio.TimeoutError:
                if queue.empty():
                    # No await between the check and removal, so enqueue
                    # cannot slip an item into an orphaned queue
                    if self._workers.get(tenant_id) is asyncio.current_task():
                        del self._workers[tenant_id]
                        self._queues.pop(tenant_id, None)
                    logger.debug("dispatch_worker_idle_exit", tenant_id=tenant_id)
                    return
                continue

            try:
                await self._dispatch(tenant_id, message_id)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    "dispatch_error",
                    tenant_id=tenant_id,
                    message_id=message_id,
                    error=str(e),
                    exc_type=type(e).__name__,
                )
            finally:
                self._queued.discard(message_id)
                queue.task_done()

    async def _dispatch(self, tenant_id: str, message_id: int) -> None:
        # Re-read: the row may have completed since it was observed
        message = await asyncio.wait_for(self.store.get(message_id), timeout=self.store_timeout)
        if message is None or not message.is_reply_task or message.tenant_id != tenant_id:
            logger.debug("reply_task_no_longer_pending", tenant_id=tenant_id, message_id=message_id)
            return

        session = self.sessions.lookup(tenant_id)
        if session is None or not session.is_active or session.adapter is None:
            self.stats.skipped_offline += 1
            logger.info("dispatch_no_session", tenant_id=tenant_id, message_id=message_id)
            return

        try:
            await asyncio.wait_for(
                session.adapter.send(message.sender_address, message.auto_reply_text),
                timeout=self.send_timeout,
            )
        except Exception as e:
            await self._record_failure(message, e)
            return

        self.stats.sent += 1
        try:
            await asyncio.wait_for(
                self.store.update(
                    message_id,
                    reply_pending=False,
                    reply_sent_at=datetime.now(),
                    last_reply_error=None,
                ),
                timeout=self.store_timeout,
            )
        except Exception as e:
            # Row stays pending; a later change may resend it
            logger.error(
                "reply_mark_complete_failed",
                tenant_id=tenant_id,
                message_id=message_id,
                error=str(e),
            )
            return
        logger.info(
            "reply_sent",
            tenant_id=tenant_id,
            message_id=message_id,
            to=mask_address(message.sender_address),
        )

    async def _record_failure(self, message: InboundMessage, error: Exception) -> None:
        attempts = message.reply_attempts + 1
        detail = str(error) or type(error).__name__
        self.stats.failed += 1
        fields = {"reply_attempts": attempts, "last_reply_error": detail[:500]}
        dead = attempts >= self.max_attempts
        if dead:
            fields["reply_pending"] = False
            fields["reply_failed_at"] = datetime.now()
            self.stats.dead_lettered += 1
            logger.error(
                "reply_dead_lettered",
                tenant_id=message.tenant_id,
                message_id=message.id,
                attempts=attempts,
                error=detail,
            )
        else:
            delay = retry_delay(attempts)
            logger.warning(
                "reply_send_failed",
                tenant_id=message.tenant_id,
                message_id=message.id,
                attempts=attempts,
                retry_in=delay,
                error=detail,
            )
            # Set before the update so the feed's "modified" echo is ignored
            self._schedule_retry(message.id, delay)

        try:
            await asyncio.wait_for(
                self.store.update(message.id, **fields), timeout=self.store_timeout
            )
        except Exception as e:
            logger.error(
                "reply_failure_record_failed",
                tenant_id=message.tenant_id,
                message_id=message.id,
                error=str(e),
            )

    def _schedule_retry(self, message_id: int, delay: float) -> None:
        loop = asyncio.get_running_loop()
        self._backoff[message_id] = loop.call_later(delay, self._retry, message_id)

    def _retry(self, message_id: int) -> None:
        self._backoff.pop(message_id, None)
        if self._running:
            spawn(self._requeue(message_id))

    async def _requeue(self, message_id: int) -> None:
        try:
            message = await asyncio.wait_for(self.store.get(message_id), timeout=self.store_timeout)
        except Exception as e:
            logger.error("reply_retry_lookup_failed", message_id=message_id, error=str(e))
            return
        if message is not None and message.is_reply_task:
            self.enqueue(message)
