"""Entry point for the ``replywire`` console script.

Logging is configured twice: with defaults so that config loading can
log, then from the loaded Config. A missing or malformed encryption key
stops the process with exit code 2 before any session starts.
"""

import asyncio
import signal
import sys

import structlog

from . import __version__
from .logging_config import setup_logging

EXIT_BAD_KEY = 2


def _install_stop_handlers(stop: asyncio.Event, logger) -> None:
    loop = asyncio.get_running_loop()

    def request_stop(sig: signal.Signals) -> None:
        logger.info("shutdown_signal_received", signal=sig.name)
        stop.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, request_stop, sig)
        except NotImplementedError:
            # No loop signal handlers on Windows; Ctrl+C still works
            if sig is signal.SIGINT:
                signal.signal(sig, lambda *_: loop.call_soon_threadsafe(request_stop, signal.SIGINT))


async def main():
    setup_logging()
    logger = structlog.get_logger("replywire")
    logger.info("replywire_starting", version=__version__)

    # Deferred so module-level loggers bind after logging is configured
    from .config import get_config
    from .exceptions import EncryptionConfigError
    from .service import ReplyService

    config = get_config()
    config.validate()
    setup_logging(config)

    try:
        service = ReplyService(config)
    except EncryptionConfigError as exc:
        logger.critical("encryption_config_invalid", error=exc.message)
        raise SystemExit(EXIT_BAD_KEY)

    stop = asyncio.Event()
    _install_stop_handlers(stop, logger)

    try:
        await service.start()
        await stop.wait()
    except Exception as exc:
        logger.error("service_error", error=str(exc))
        raise
    finally:
        await service.stop()
        logger.info("replywire_stopped")


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
    except SystemExit as exc:
        sys.exit(exc.code)


if __name__ == "__main__":
    run()
