"""Helpers for fire-and-forget asyncio tasks."""

import asyncio
from typing import Coroutine, Set

import structlog

logger = structlog.get_logger("replywire")

# Strong references so pending background tasks are not garbage collected
_background: Set[asyncio.Task] = set()


def log_task_exception(task: asyncio.Task):
    """Log exceptions from fire-and-forget tasks instead of silently swallowing them."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc:
        logger.error("background_task_failed", error=str(exc), exc_type=type(exc).__name__)


def spawn(coro: Coroutine, name: str = None) -> asyncio.Task:
    """Schedule a coroutine in the background and log its failure."""
    task = asyncio.create_task(coro, name=name)
    _background.add(task)
    task.add_done_callback(_background.discard)
    task.add_done_callback(log_task_exception)
    return task
