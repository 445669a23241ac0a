"""Session entity and lifecycle state machine.

Flow:
    INITIALIZING -> AWAITING_SCAN -> ACTIVE -> DISCONNECTED | AUTH_FAILED
    INITIALIZING | AWAITING_SCAN -> AUTH_FAILED | TIMED_OUT | DISCONNECTED
    INITIALIZING -> ACTIVE  (restored profile, no QR needed)

DISCONNECTED, AUTH_FAILED and TIMED_OUT are terminal. A session in a
terminal state has been (or is about to be) evicted from the manager's
table; events arriving afterwards are ignored.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, Optional

import structlog

from ..channel.base import ChannelAdapter
from ..store.models import SessionStatusValue

logger = structlog.get_logger("replywire.sessions")


class SessionState(str, Enum):
    """Lifecycle state of one tenant's channel session."""
    INITIALIZING = "initializing"
    AWAITING_SCAN = "awaiting_scan"
    ACTIVE = "active"
    DISCONNECTED = "disconnected"
    AUTH_FAILED = "auth_failed"
    TIMED_OUT = "timed_out"


TERMINAL_STATES: FrozenSet[SessionState] = frozenset({
    SessionState.DISCONNECTED,
    SessionState.AUTH_FAILED,
    SessionState.TIMED_OUT,
})

_PRE_ACTIVE_EXITS = frozenset({
    SessionState.ACTIVE,
    SessionState.AUTH_FAILED,
    SessionState.TIMED_OUT,
    SessionState.DISCONNECTED,
})

TRANSITIONS: Dict[SessionState, FrozenSet[SessionState]] = {
    SessionState.INITIALIZING: _PRE_ACTIVE_EXITS | {SessionState.AWAITING_SCAN},
    # QR tokens rotate while waiting, so AWAITING_SCAN may repeat
    SessionState.AWAITING_SCAN: _PRE_ACTIVE_EXITS | {SessionState.AWAITING_SCAN},
    SessionState.ACTIVE: frozenset({SessionState.DISCONNECTED, SessionState.AUTH_FAILED}),
    SessionState.DISCONNECTED: frozenset(),
    SessionState.AUTH_FAILED: frozenset(),
    SessionState.TIMED_OUT: frozenset(),
}

# Status string written to the session store for each state
STATUS_VALUES: Dict[SessionState, SessionStatusValue] = {
    SessionState.INITIALIZING: SessionStatusValue.INITIALIZING,
    SessionState.AWAITING_SCAN: SessionStatusValue.AWAITING_SCAN,
    SessionState.ACTIVE: SessionStatusValue.ACTIVE,
    SessionState.DISCONNECTED: SessionStatusValue.DISCONNECTED,
    SessionState.AUTH_FAILED: SessionStatusValue.AUTH_FAILED,
    SessionState.TIMED_OUT: SessionStatusValue.TIMED_OUT,
}


@dataclass(eq=False)
class Session:
    """One tenant's channel connection plus its lifecycle state.

    Created and destroyed only by SessionManager. ``adapter`` is owned
    exclusively by this session and released on teardown.
    """
    tenant_id: str
    state: SessionState = SessionState.INITIALIZING
    adapter: Optional[ChannelAdapter] = None
    phone_identity: Optional[str] = None
    qr_token: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)
    ready_at: Optional[datetime] = None
    torn_down: bool = False
    # Resolved by the ready event, failed by auth_failure/disconnect
    handshake: Optional[asyncio.Future] = field(default=None, repr=False)

    @property
    def is_active(self) -> bool:
        return self.state == SessionState.ACTIVE

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def status_value(self) -> str:
        return STATUS_VALUES[self.state].value

    def can_transition(self, new_state: SessionState) -> bool:
        return new_state in TRANSITIONS[self.state]

    def transition(self, new_state: SessionState) -> bool:
        """Move to ``new_state`` if the transition table allows it.

        Returns:
            True if the state changed, False if the event was out of
            order and ignored.
        """
        if not self.can_transition(new_state):
            logger.debug(
                "session_transition_ignored",
                tenant_id=self.tenant_id,
                current=self.state.value,
                requested=new_state.value,
            )
            return False

        previous = self.state
        self.state = new_state
        if new_state == SessionState.ACTIVE:
            self.ready_at = datetime.now()
            self.qr_token = None
        elif previous == SessionState.ACTIVE:
            self.phone_identity = None
        if new_state in TERMINAL_STATES:
            self.qr_token = None
        logger.debug(
            "session_transition",
            tenant_id=self.tenant_id,
            previous=previous.value,
            current=new_state.value,
        )
        return True

    def to_dict(self) -> dict:
        """Public view for the control surface."""
        return {
            "tenantId": self.tenant_id,
            "state": self.state.value,
            "phoneIdentity": self.phone_identity,
            "qr": self.qr_token,
            "createdAt": self.created_at.isoformat(),
            "readyAt": self.ready_at.isoformat() if self.ready_at else None,
        }
