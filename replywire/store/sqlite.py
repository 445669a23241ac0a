"""SQLite implementation of the session and message stores.

All blocking sqlite3 calls run through ``asyncio.to_thread`` on a single
shared connection guarded by a lock. The pending-reply change-feed polls
the ``reply_pending = 1`` query and diffs row revisions between polls;
writes made through this store wake subscribers immediately.
"""

import asyncio
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

import structlog

from ..exceptions import StorePersistError
from .base import (
    CHANGE_ADDED,
    CHANGE_MODIFIED,
    CHANGE_REMOVED,
    ChangeCallback,
    ChangeEvent,
    MessageStore,
    SessionStore,
    Subscription,
)
from .models import InboundMessage, SessionStatus

logger = structlog.get_logger("replywire.store")

SCHEMA_VERSION = 1

_STATUS_FIELDS = {"status", "qr_token", "connected", "phone_identity"}

_MESSAGE_COLUMNS = (
    "tenant_id",
    "phone_number",
    "sender_address",
    "recipient_address",
    "message_type",
    "encrypted_body",
    "iv",
    "auth_tag",
    "body",
    "is_group",
    "source_message_id",
    "received_at",
    "processed",
    "is_lead",
    "reply_pending",
    "auto_reply_text",
    "reply_sent_at",
    "reply_attempts",
    "last_reply_error",
    "reply_failed_at",
)

# Fields an update() may touch. Identity and body fields are immutable.
_MUTABLE_FIELDS = {
    "processed",
    "is_lead",
    "reply_pending",
    "auto_reply_text",
    "reply_sent_at",
    "reply_attempts",
    "last_reply_error",
    "reply_failed_at",
}


def _to_db(value: Any) -> Any:
    """Convert a Python value to its SQLite representation."""
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _parse_timestamp(ts_str: Optional[str]) -> Optional[datetime]:
    """Parse a stored timestamp."""
    if not ts_str:
        return None
    try:
        return datetime.fromisoformat(ts_str)
    except ValueError:
        try:
            return datetime.strptime(ts_str, "%Y-%m-%d %H:%M:%S")
        except ValueError:
            return None


def _row_to_message(row: sqlite3.Row) -> InboundMessage:
    is_lead = row["is_lead"]
    return InboundMessage(
        id=row["id"],
        tenant_id=row["tenant_id"],
        phone_number=row["phone_number"],
        sender_address=row["sender_address"],
        recipient_address=row["recipient_address"],
        message_type=row["message_type"],
        encrypted_body=row["encrypted_body"],
        iv=row["iv"],
        auth_tag=row["auth_tag"],
        body=row["body"],
        is_group=bool(row["is_group"]),
        source_message_id=row["source_message_id"],
        received_at=_parse_timestamp(row["received_at"]) or datetime.now(),
        processed=bool(row["processed"]),
        is_lead=None if is_lead is None else bool(is_lead),
        reply_pending=bool(row["reply_pending"]),
        auto_reply_text=row["auto_reply_text"],
        reply_sent_at=_parse_timestamp(row["reply_sent_at"]),
        reply_attempts=row["reply_attempts"],
        last_reply_error=row["last_reply_error"],
        reply_failed_at=_parse_timestamp(row["reply_failed_at"]),
        revision=row["revision"],
    )


class _PollingSubscription(Subscription):
    """Change-feed over pending reply rows.

    The first poll reports every pending row as "added", like the
    initial snapshot of a live query. Later polls report only rows
    whose revision changed or that entered/left the query.
    """

    def __init__(
        self,
        store: "SqliteStore",
        callback: ChangeCallback,
        poll_interval: float,
        poll_timeout: float,
    ):
        self._store = store
        self._callback = callback
        self._poll_interval = poll_interval
        self._poll_timeout = poll_timeout
        self._seen: Dict[int, InboundMessage] = {}
        self._wake = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        self._task = asyncio.create_task(self._run())

    def notify(self) -> None:
        """Poll again without waiting for the interval."""
        self._wake.set()

    async def close(self) -> None:
        self._store._subscriptions.discard(self)
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None

    def _diff(self, rows: List[InboundMessage]) -> List[ChangeEvent]:
        current = {row.id: row for row in rows}
        events: List[ChangeEvent] = []
        for row_id, row in current.items():
            previous = self._seen.get(row_id)
            if previous is None:
                events.append(ChangeEvent(type=CHANGE_ADDED, message=row))
            elif previous.revision != row.revision:
                events.append(ChangeEvent(type=CHANGE_MODIFIED, message=row))
        for row_id, previous in self._seen.items():
            if row_id not in current:
                events.append(ChangeEvent(type=CHANGE_REMOVED, message=previous))
        self._seen = current
        return events

    async def _run(self) -> None:
        while True:
            # Cleared before the read so a write during the poll triggers another
            self._wake.clear()
            try:
                rows = await asyncio.wait_for(
                    self._store.list_pending(), timeout=self._poll_timeout
                )
                events = self._diff(rows)
                if events:
                    await self._callback(events)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("change_feed_poll_error", error=str(e), exc_type=type(e).__name__)

            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self._poll_interval)
            except asyncio.TimeoutError:
                pass


class SqliteStore(SessionStore, MessageStore):
    """Session status and message storage on one SQLite database."""

    def __init__(self, db_path: Path):
        self.db_path = db_path
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()
        self._subscriptions: Set[_PollingSubscription] = set()

    async def initialize(self) -> None:
        """Open the database and create the schema."""
        await asyncio.to_thread(self._initialize_sync)

    def _initialize_sync(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA busy_timeout=5000")
        self._create_schema()
        logger.info("database_initialized", path=str(self.db_path))

    def _create_schema(self) -> None:
        cursor = self._conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS whatsapp_sessions (
                tenant_id TEXT PRIMARY KEY,
                status TEXT,
                qr_token TEXT,
                connected INTEGER DEFAULT 0,
                phone_identity TEXT,
                updated_at TIMESTAMP
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS raw_messages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                tenant_id TEXT NOT NULL,
                phone_number TEXT,
                sender_address TEXT NOT NULL,
                recipient_address TEXT,
                message_type TEXT,
                encrypted_body TEXT,
                iv TEXT,
                auth_tag TEXT,
                body TEXT,
                is_group INTEGER DEFAULT 0,
                source_message_id TEXT NOT NULL,
                received_at TIMESTAMP,
                processed INTEGER DEFAULT 0,
                is_lead INTEGER,
                reply_pending INTEGER DEFAULT 0,
                auto_reply_text TEXT,
                reply_sent_at TIMESTAMP,
                reply_attempts INTEGER DEFAULT 0,
                last_reply_error TEXT,
                reply_failed_at TIMESTAMP,
                revision INTEGER DEFAULT 0,
                UNIQUE(tenant_id, source_message_id)
            )
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_raw_messages_pending
            ON raw_messages(reply_pending, tenant_id)
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY
            )
        """)
        cursor.execute(
            "INSERT OR IGNORE INTO schema_version (version) VALUES (?)",
            (SCHEMA_VERSION,),
        )
        self._conn.commit()

    async def close(self) -> None:
        """Stop all change-feeds and close the connection."""
        for sub in list(self._subscriptions):
            await sub.close()
        if self._conn:
            conn = self._conn
            self._conn = None
            await asyncio.to_thread(conn.close)
            logger.info("database_closed")

    async def _run(self, operation: str, table: str, fn, *args):
        """Run a sync DB function in a thread, wrapping sqlite errors."""
        if self._conn is None:
            raise StorePersistError(
                "Store is not initialized", operation=operation, table=table
            )

        def locked():
            with self._lock:
                return fn(*args)

        try:
            return await asyncio.to_thread(locked)
        except sqlite3.Error as e:
            raise StorePersistError(
                str(e), operation=operation, table=table
            ) from e

    def _notify_subscribers(self) -> None:
        for sub in self._subscriptions:
            sub.notify()

    # ========== Session status ==========

    async def set_status(self, tenant_id: str, **fields: Any) -> None:
        unknown = set(fields) - _STATUS_FIELDS
        if unknown:
            raise ValueError(f"Unknown session status fields: {sorted(unknown)}")
        await self._run("set_status", "whatsapp_sessions", self._set_status_sync, tenant_id, fields)

    def _set_status_sync(self, tenant_id: str, fields: Dict[str, Any]) -> None:
        values = {k: _to_db(v) for k, v in fields.items()}
        values["updated_at"] = datetime.now().isoformat()
        columns = ["tenant_id", *values.keys()]
        placeholders = ", ".join("?" for _ in columns)
        assignments = ", ".join(f"{col} = excluded.{col}" for col in values)
        self._conn.execute(
            f"INSERT INTO whatsapp_sessions ({', '.join(columns)}) VALUES ({placeholders}) "
            f"ON CONFLICT(tenant_id) DO UPDATE SET {assignments}",
            [tenant_id, *values.values()],
        )
        self._conn.commit()

    async def get_status(self, tenant_id: str) -> Optional[SessionStatus]:
        row = await self._run("get_status", "whatsapp_sessions", self._get_status_sync, tenant_id)
        if row is None:
            return None
        return SessionStatus(
            tenant_id=row["tenant_id"],
            status=row["status"],
            qr_token=row["qr_token"],
            connected=bool(row["connected"]),
            phone_identity=row["phone_identity"],
            updated_at=_parse_timestamp(row["updated_at"]) or datetime.now(),
        )

    def _get_status_sync(self, tenant_id: str) -> Optional[sqlite3.Row]:
        return self._conn.execute(
            "SELECT * FROM whatsapp_sessions WHERE tenant_id = ?", (tenant_id,)
        ).fetchone()

    # ========== Messages ==========

    async def append(self, message: InboundMessage) -> int:
        return await self._run("append", "raw_messages", self._append_sync, message)

    def _append_sync(self, message: InboundMessage) -> int:
        data = message.model_dump()
        values = [_to_db(data[col]) for col in _MESSAGE_COLUMNS]
        placeholders = ", ".join("?" for _ in _MESSAGE_COLUMNS)
        cursor = self._conn.execute(
            f"INSERT INTO raw_messages ({', '.join(_MESSAGE_COLUMNS)}) VALUES ({placeholders}) "
            "ON CONFLICT(tenant_id, source_message_id) DO NOTHING",
            values,
        )
        self._conn.commit()
        if cursor.rowcount:
            return cursor.lastrowid

        row = self._conn.execute(
            "SELECT id FROM raw_messages WHERE tenant_id = ? AND source_message_id = ?",
            (message.tenant_id, message.source_message_id),
        ).fetchone()
        logger.debug(
            "duplicate_message_skipped",
            tenant_id=message.tenant_id,
            message_id=row["id"],
        )
        return row["id"]

    async def get(self, message_id: int) -> Optional[InboundMessage]:
        row = await self._run("get", "raw_messages", self._get_sync, message_id)
        return _row_to_message(row) if row else None

    def _get_sync(self, message_id: int) -> Optional[sqlite3.Row]:
        return self._conn.execute(
            "SELECT * FROM raw_messages WHERE id = ?", (message_id,)
        ).fetchone()

    async def update(self, message_id: int, **fields: Any) -> bool:
        unknown = set(fields) - _MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields cannot be updated: {sorted(unknown)}")
        if not fields:
            return False
        updated = await self._run("update", "raw_messages", self._update_sync, message_id, fields)
        if updated:
            self._notify_subscribers()
        return updated

    def _update_sync(self, message_id: int, fields: Dict[str, Any]) -> bool:
        assignments = ", ".join(f"{col} = ?" for col in fields)
        cursor = self._conn.execute(
            f"UPDATE raw_messages SET {assignments}, revision = revision + 1 WHERE id = ?",
            [*(_to_db(v) for v in fields.values()), message_id],
        )
        self._conn.commit()
        return cursor.rowcount > 0

    async def set_reply_task(self, message_id: int, reply_text: str) -> bool:
        return await self.update(
            message_id,
            auto_reply_text=reply_text,
            reply_pending=True,
            processed=True,
            reply_attempts=0,
            last_reply_error=None,
            reply_failed_at=None,
        )

    async def list_pending(self, tenant_id: Optional[str] = None) -> List[InboundMessage]:
        rows = await self._run("list_pending", "raw_messages", self._list_pending_sync, tenant_id)
        return [_row_to_message(row) for row in rows]

    def _list_pending_sync(self, tenant_id: Optional[str]) -> List[sqlite3.Row]:
        if tenant_id is None:
            return self._conn.execute(
                "SELECT * FROM raw_messages WHERE reply_pending = 1 ORDER BY id"
            ).fetchall()
        return self._conn.execute(
            "SELECT * FROM raw_messages WHERE reply_pending = 1 AND tenant_id = ? ORDER BY id",
            (tenant_id,),
        ).fetchall()

    async def watch_pending(
        self,
        callback: ChangeCallback,
        poll_interval: float = 2.0,
        poll_timeout: float = 10.0,
    ) -> Subscription:
        sub = _PollingSubscription(self, callback, poll_interval, poll_timeout)
        self._subscriptions.add(sub)
        sub.start()
        logger.info("change_feed_started", poll_interval=poll_interval)
        return sub
