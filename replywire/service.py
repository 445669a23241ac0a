"""Service wiring for replywire.

Builds every subsystem from the Config and manages their lifecycle:
store, inbound filter, session manager, reply dispatcher and control
server.

Key classes:
    ReplyService: Owns all subsystem instances; ``start()`` brings them
        up in dependency order and ``stop()`` tears them down in reverse.
"""

from typing import Optional

import structlog

from .channel.base import AdapterFactory
from .channel.bridge import bridge_adapter_factory
from .config import Config
from .control import ControlServer, create_app
from .dispatcher import ReplyDispatcher
from .encryption import MessageCipher
from .inbound import InboundFilter
from .sessions.manager import SessionManager
from .store.sqlite import SqliteStore

logger = structlog.get_logger("replywire")


class ReplyService:
    """Multi-tenant channel sessions plus the reply dispatcher.

    Args:
        config: Loaded configuration.
        adapter_factory: Overrides the bridge adapter (tests, other channels).

    Raises:
        EncryptionConfigError: If the message encryption key is missing or
            malformed. Raised before any session can be created.
    """

    def __init__(self, config: Config, adapter_factory: Optional[AdapterFactory] = None):
        self.config = config
        self.cipher = MessageCipher.from_hex(config.encryption_key)
        self.store = SqliteStore(config.store_path)
        self.inbound = InboundFilter(
            store=self.store,
            cipher=self.cipher,
            store_timeout=config.store_timeout,
        )
        self.sessions = SessionManager(
            session_store=self.store,
            adapter_factory=adapter_factory or bridge_adapter_factory(
                config.bridge_url, call_timeout=config.adapter_call_timeout
            ),
            auth_dir=config.auth_dir,
            message_handler=self.inbound.handle,
            handshake_timeout=config.handshake_timeout,
            adapter_call_timeout=config.adapter_call_timeout,
            store_timeout=config.store_timeout,
        )
        self.dispatcher = ReplyDispatcher(
            store=self.store,
            sessions=self.sessions,
            poll_interval=config.dispatch_poll_interval,
            send_timeout=config.dispatch_send_timeout,
            store_timeout=config.store_timeout,
            max_attempts=config.dispatch_max_attempts,
        )
        self.control = ControlServer(
            create_app(self.sessions, self.dispatcher, cors_origin=config.cors_origin),
            host=config.control_host,
            port=config.control_port,
        )
        self.running = False

    async def start(self) -> None:
        """Initialize storage, start dispatching, then accept control requests."""
        await self.store.initialize()
        await self.dispatcher.start()
        await self.control.start()
        self.running = True
        logger.info(
            "service_started",
            port=self.config.control_port,
            cors_origin=self.config.cors_origin,
            auth_dir=str(self.config.auth_dir),
        )

    async def stop(self) -> None:
        """Stop accepting requests, drain the dispatcher, close sessions and store."""
        if not self.running:
            return
        self.running = False
        await self.control.stop()
        await self.dispatcher.stop()
        await self.sessions.stop_all()
        await self.store.close()
        logger.info("service_stopped")
