"""Logging configuration for replywire.

structlog renders every event; stdlib logging routes it. Each subsystem
logs under ``replywire.<subsystem>`` and gets its own rotating file,
while the ``replywire`` parent writes the combined file and the root
logger writes to the console:

    root                      console
      replywire               replywire.log
        replywire.sessions    sessions.log
        replywire.inbound     inbound.log
        replywire.dispatch    dispatch.log
        replywire.store       store.log
        replywire.control     control.log

A processor masks channel addresses and redacts encryption keys before
anything is rendered.
"""

import logging
import logging.handlers
import re
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict

import structlog

SUBSYSTEMS = ("sessions", "inbound", "dispatch", "store", "control")

LOGGER_PREFIX = "replywire"

_DEFAULT_LOG_DIR = Path(__file__).parent.parent / "logs"

_REDACTED = "***REDACTED***"

# Message encryption keys (64 hex chars) and bearer tokens
_SECRET_PATTERNS = (
    re.compile(r"\b[0-9a-fA-F]{64}\b"),
    re.compile(r"Bearer\s+[a-zA-Z0-9_./-]{20,}"),
)

# 15551230000@c.us, 15551230000@s.whatsapp.net
_ADDRESS_PATTERN = re.compile(r"\b(\d{7,15})@([a-z.]+)\b")

# +15551230000
_E164_PATTERN = re.compile(r"\+\d{7,15}")


def mask_address(value: str) -> str:
    """Mask a channel address or phone number to its last 4 digits."""
    if not value:
        return ""
    local = value.split("@", 1)[0]
    return "..." + local[-4:]


def _scrub(value: Any) -> Any:
    if isinstance(value, str):
        for pattern in _SECRET_PATTERNS:
            value = pattern.sub(_REDACTED, value)
        value = _ADDRESS_PATTERN.sub(lambda m: f"...{m.group(1)[-4:]}@{m.group(2)}", value)
        return _E164_PATTERN.sub(lambda m: mask_address(m.group(0)), value)
    if isinstance(value, (list, tuple)):
        return type(value)(_scrub(v) for v in value)
    if isinstance(value, dict):
        return {k: _scrub(v) for k, v in value.items()}
    return value


def sanitize_secrets(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """structlog processor: redact keys and tokens, mask addresses.

    Nested lists and dicts are scrubbed too, so ``errors=[...]`` and
    bound context dicts never leak a full number.
    """
    for key, value in event_dict.items():
        event_dict[key] = _scrub(value)
    return event_dict


@dataclass
class _LogSettings:
    log_dir: Path = _DEFAULT_LOG_DIR
    level: int = logging.INFO
    subsystem_levels: Dict[str, str] = field(default_factory=dict)
    max_bytes: int = 10 * 1024 * 1024
    backup_count: int = 5
    cache_loggers: bool = False

    @classmethod
    def from_config(cls, config) -> "_LogSettings":
        return cls(
            log_dir=config.log_dir,
            level=_level(config.logging_level, logging.INFO),
            subsystem_levels=config.logging_subsystem_levels,
            max_bytes=config.logging_max_file_size_mb * 1024 * 1024,
            backup_count=config.logging_backup_count,
            cache_loggers=True,
        )

    def level_for(self, subsystem: str) -> int:
        return _level(self.subsystem_levels.get(subsystem), self.level)


def _level(name, default: int) -> int:
    if not name:
        return default
    return getattr(logging, str(name).upper(), default)


def _file_handler(settings: _LogSettings, filename: str, level: int,
                  formatter: logging.Formatter) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        settings.log_dir / filename,
        maxBytes=settings.max_bytes,
        backupCount=settings.backup_count,
        encoding="utf-8",
    )
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def _reset_logger(name: str, level: int) -> logging.Logger:
    target = logging.getLogger(name)
    target.setLevel(level)
    target.handlers.clear()
    target.propagate = True
    return target


def setup_logging(config=None) -> None:
    """Configure console, combined and per-subsystem logging.

    Called twice by ``main``: once with defaults before the config is
    loaded (logger caching off), then with the loaded Config.

    If the log directory cannot be created the service keeps running
    with console output only.
    """
    settings = _LogSettings.from_config(config) if config is not None else _LogSettings()

    try:
        settings.log_dir.mkdir(parents=True, exist_ok=True)
        write_files = True
    except OSError as exc:
        print(
            f"WARNING: cannot create log directory {settings.log_dir} ({exc}); "
            "logging to console only",
            file=sys.stderr,
        )
        write_files = False

    file_formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(colors=False),
        ],
    )

    # Handlers do the level filtering; loggers pass everything through
    root = _reset_logger("", logging.DEBUG)
    console = logging.StreamHandler(sys.stdout)
    console.setLevel(settings.level)
    console.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
    root.addHandler(console)

    combined = _reset_logger(LOGGER_PREFIX, logging.DEBUG)
    if write_files:
        combined.addHandler(
            _file_handler(settings, f"{LOGGER_PREFIX}.log", settings.level, file_formatter)
        )

    for subsystem in SUBSYSTEMS:
        level = settings.level_for(subsystem)
        sub_logger = _reset_logger(f"{LOGGER_PREFIX}.{subsystem}", level)
        if write_files:
            sub_logger.addHandler(_file_handler(settings, f"{subsystem}.log", level, file_formatter))

    logging.getLogger("aiohttp.access").setLevel(max(settings.level, logging.WARNING))

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            sanitize_secrets,
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=settings.cache_loggers,
    )
