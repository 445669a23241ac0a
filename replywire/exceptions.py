"""Exception hierarchy for replywire.

Every error carries an ``ErrorCategory`` so callers can decide whether
to retry, plus the originating module and structured context for
logging. Subclasses set their defaults as class attributes.

Creation-path errors (QrTimeoutError, AuthFailedError, HandshakeError)
surface to callers of SessionManager.create. Everything else is raised
locally and absorbed by the subsystem that owns it.
"""

from enum import Enum
from typing import Any, Optional


class ErrorCategory(str, Enum):
    """Classification of errors for retry decisions."""
    TRANSIENT = "transient"          # timeout, dropped socket
    PERMANENT = "permanent"          # auth rejected, bad ciphertext
    INFRASTRUCTURE = "infrastructure"  # missing key, unwritable profile dir


class ReplywireError(Exception):
    """Base exception for all replywire errors.

    Attributes:
        message: Human-readable error description.
        category: Error classification for retry decisions.
        module: Originating module name (e.g. "sessions").
        context: Extra key-value pairs for structured logging.
    """

    default_category = ErrorCategory.PERMANENT
    default_module: Optional[str] = None

    def __init__(
        self,
        message: str = "",
        *,
        category: Optional[ErrorCategory] = None,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        self.message = message
        self.category = category or self.default_category
        self.module = module or self.default_module
        self.context = context
        super().__init__(message)

    @property
    def is_retryable(self) -> bool:
        return self.category == ErrorCategory.TRANSIENT

    def __str__(self) -> str:
        text = self.message or type(self).__name__
        if self.module:
            text += f" [module={self.module}]"
        if self.context:
            text += " (" + ", ".join(f"{k}={v}" for k, v in self.context.items()) + ")"
        return text

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}({self.message!r}, "
            f"category={self.category.value!r}, module={self.module!r})"
        )


# --- Session lifecycle ---

class SessionError(ReplywireError):
    """Error in a tenant's session lifecycle."""

    default_module = "sessions"

    def __init__(self, message: str = "", *, tenant_id: Optional[str] = None, **kwargs: Any) -> None:
        self.tenant_id = tenant_id
        super().__init__(message, **kwargs)


class SessionAlreadyExistsError(SessionError):
    """A live session already exists for the tenant.

    SessionManager.create treats this as success and hands back
    ``session`` instead of raising.
    """

    def __init__(self, message: str = "", *, session: Any = None, **kwargs: Any) -> None:
        self.session = session
        super().__init__(message, **kwargs)


class QrTimeoutError(SessionError):
    """The handshake did not reach ready before the deadline."""

    default_category = ErrorCategory.TRANSIENT

    def __init__(self, message: str = "", *, timeout: Optional[float] = None, **kwargs: Any) -> None:
        self.timeout = timeout
        super().__init__(message, **kwargs)


class AuthFailedError(SessionError):
    """The channel rejected the stored credentials.

    Terminal for the session; needs out-of-band re-authentication.
    """


class HandshakeError(SessionError):
    """The adapter could not be opened or initialized."""

    default_category = ErrorCategory.TRANSIENT


# --- Channel adapter ---

class ChannelError(ReplywireError):
    default_category = ErrorCategory.TRANSIENT
    default_module = "channel"


class ChannelSendError(ChannelError):
    """A send was rejected or not acknowledged in time."""


class AdapterTeardownError(ChannelError):
    """Logout or destroy failed; the adapter process may leak."""


# --- Storage ---

class StorePersistError(ReplywireError):
    """A store call failed.

    Attributes:
        operation: The store operation (e.g. "append").
        table: The table involved, if known.
    """

    default_category = ErrorCategory.TRANSIENT
    default_module = "store"

    def __init__(
        self,
        message: str = "",
        *,
        operation: Optional[str] = None,
        table: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        self.operation = operation
        self.table = table
        super().__init__(message, **kwargs)


# --- Configuration and encryption ---

class ConfigurationError(ReplywireError):
    """Invalid or missing configuration. Retrying will not help."""

    default_category = ErrorCategory.INFRASTRUCTURE
    default_module = "config"

    def __init__(self, message: str = "", *, setting_name: Optional[str] = None, **kwargs: Any) -> None:
        self.setting_name = setting_name
        super().__init__(message, **kwargs)


class EncryptionConfigError(ConfigurationError):
    """The message encryption key is absent or malformed. Fatal at startup."""

    default_module = "encryption"

    def __init__(self, message: str = "", **kwargs: Any) -> None:
        kwargs.setdefault("setting_name", "MESSAGE_ENCRYPTION_KEY")
        super().__init__(message, **kwargs)


class DecryptionError(ReplywireError):
    """Ciphertext failed authentication or could not be decoded."""

    default_module = "encryption"
