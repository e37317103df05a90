"""Detached background work whose failure must never reach the caller."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Coroutine, Optional

LOGGER = logging.getLogger(__name__)

# Strong references keep detached tasks alive until they finish.
_BACKGROUND_TASKS: set[asyncio.Task] = set()


def _log_task_failure(task: asyncio.Task) -> None:
    _BACKGROUND_TASKS.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        LOGGER.warning("Background task %s failed: %s", task.get_name(), exc)


def notify_and_ignore(coro: Coroutine[Any, Any, Any], name: Optional[str] = None) -> asyncio.Task:
    """Schedule ``coro`` on the running loop and forget about it.

    The returned task is only useful to tests; production callers never
    await it, and its failure is logged rather than raised.
    """

    task = asyncio.get_running_loop().create_task(coro, name=name)
    _BACKGROUND_TASKS.add(task)
    task.add_done_callback(_log_task_failure)
    return task


async def drain_background_tasks() -> None:
    """Wait for detached tasks, used at shutdown."""

    if _BACKGROUND_TASKS:
        await asyncio.gather(*list(_BACKGROUND_TASKS), return_exceptions=True)
