"""Settings for replywire.

``config/settings.yaml`` holds the per-section settings (sessions, store,
dispatch, control, logging) and ``config/.env`` holds secrets and
deployment overrides. A handful of environment variables win over the
YAML file:

    WWEBJS_AUTH_DIR         profile root
    CHANNEL_BRIDGE_URL      chat-web bridge WebSocket
    MESSAGE_ENCRYPTION_KEY  64 hex chars, env only
    PORT                    control server port
    FRONTEND_URL            allowed CORS origin
"""

import os
from pathlib import Path
from typing import Any, Optional

import structlog
import yaml
from dotenv import load_dotenv

logger = structlog.get_logger("replywire.control")

# Fixed handshake deadline; applies to every tenant.
DEFAULT_HANDSHAKE_TIMEOUT = 60

_REPO_ROOT = Path(__file__).parent.parent


def _as_path(value: Optional[str]) -> Optional[Path]:
    return Path(value).expanduser() if value else None


class Config:
    """Read-only view over settings.yaml plus environment overrides.

    Args:
        config_dir: Directory holding settings.yaml and .env. Defaults
            to ``<repo_root>/config/``.
    """

    def __init__(self, config_dir: Optional[Path] = None):
        self.config_dir = config_dir or _REPO_ROOT / "config"

        dotenv_path = self.config_dir / ".env"
        if dotenv_path.exists():
            load_dotenv(dotenv_path)

        settings_path = self.config_dir / "settings.yaml"
        self.settings = {}
        if settings_path.exists():
            with open(settings_path, "r") as f:
                self.settings = yaml.safe_load(f) or {}

    def _section(self, name: str, key: str, default: Any) -> Any:
        return self.settings.get(name, {}).get(key, default)

    def validate(self):
        """Log out-of-range values; the service still starts.

        The encryption key is checked separately by
        ``encryption.load_key``, where a bad key is fatal.
        """
        positive = {
            "sessions.handshake_timeout": self.handshake_timeout,
            "dispatch.poll_interval": self.dispatch_poll_interval,
            "dispatch.send_timeout": self.dispatch_send_timeout,
            "store.timeout": self.store_timeout,
        }
        for key, value in positive.items():
            if not isinstance(value, (int, float)) or value <= 0:
                logger.error("config_invalid_value", key=key, value=value, valid="> 0")

        attempts = self.dispatch_max_attempts
        if not isinstance(attempts, int) or attempts < 1:
            logger.error("config_invalid_value", key="dispatch.max_attempts", value=attempts, valid=">= 1")

        port = self.control_port
        if not isinstance(port, int) or not 0 < port < 65536:
            logger.error("config_invalid_value", key="control.port", value=port, valid="1-65535")

    # --- Paths ---

    @property
    def data_dir(self) -> Path:
        """Base directory for the store and browser profiles."""
        return _as_path(self.settings.get("data_dir")) or self.config_dir.parent / "data"

    @property
    def auth_dir(self) -> Path:
        """Root of the per-tenant persistent profile directories."""
        configured = os.environ.get("WWEBJS_AUTH_DIR") or self.settings.get("auth_dir")
        return _as_path(configured) or self.data_dir / ".wwebjs_auth"

    @property
    def store_path(self) -> Path:
        return _as_path(self._section("store", "path", None)) or self.data_dir / "replywire.db"

    @property
    def log_dir(self) -> Path:
        return _as_path(self.settings.get("log_dir")) or _REPO_ROOT / "logs"

    # --- Sessions and channel ---

    @property
    def handshake_timeout(self) -> float:
        """Seconds a tenant has to scan the QR code."""
        return self._section("sessions", "handshake_timeout", DEFAULT_HANDSHAKE_TIMEOUT)

    @property
    def adapter_call_timeout(self) -> float:
        """Bound on adapter logout/destroy and bridge acks."""
        return self._section("sessions", "adapter_call_timeout", 15)

    @property
    def bridge_url(self) -> str:
        return (
            os.environ.get("CHANNEL_BRIDGE_URL")
            or self.settings.get("bridge_url", "ws://127.0.0.1:3001")
        )

    # --- Storage and encryption ---

    @property
    def store_timeout(self) -> float:
        return self._section("store", "timeout", 10)

    @property
    def encryption_key(self) -> str:
        """Hex-encoded 32-byte key. Never read from settings.yaml."""
        return os.environ.get("MESSAGE_ENCRYPTION_KEY", "")

    # --- Reply dispatch ---

    @property
    def dispatch_poll_interval(self) -> float:
        return self._section("dispatch", "poll_interval", 2)

    @property
    def dispatch_send_timeout(self) -> float:
        return self._section("dispatch", "send_timeout", 30)

    @property
    def dispatch_max_attempts(self) -> int:
        """Failed sends allowed before a reply task is dead-lettered."""
        return self._section("dispatch", "max_attempts", 5)

    # --- Control server ---

    @property
    def control_host(self) -> str:
        return self._section("control", "host", "0.0.0.0")

    @property
    def control_port(self) -> int:
        env_port = os.environ.get("PORT")
        if env_port:
            try:
                return int(env_port)
            except ValueError:
                logger.error("config_invalid_value", key="PORT", value=env_port)
        return self._section("control", "port", 4000)

    @property
    def cors_origin(self) -> str:
        return os.environ.get("FRONTEND_URL") or self._section("control", "cors_origin", "*")

    # --- Logging ---

    @property
    def logging_level(self) -> str:
        """Level for the console and the combined file."""
        return self._section("logging", "level", "INFO")

    @property
    def logging_subsystem_levels(self) -> dict:
        """Overrides keyed by subsystem, e.g. ``{"dispatch": "DEBUG"}``."""
        return self._section("logging", "subsystem_levels", {})

    @property
    def logging_max_file_size_mb(self) -> int:
        return self._section("logging", "max_file_size_mb", 10)

    @property
    def logging_backup_count(self) -> int:
        return self._section("logging", "backup_count", 5)


_config: Optional[Config] = None


def get_config() -> Config:
    """Return the process-wide Config, loading it on first use."""
    global _config
    if _config is None:
        _config = Config()
    return _config
