"""Spawn asyncio background tasks that cannot fail silently."""
from __future__ import annotations

import asyncio
import logging
import traceback
from typing import Any
from typing import Callable
from typing import Coroutine

logger = logging.getLogger(__name__)


class SafeTaskExitError(Exception):
    """Raised inside a guarded task to stop it without exiting."""

    pass


def exit_on_error(task: asyncio.Task[Any]) -> None:
    """Done callback that logs a failed task and raises `SystemExit`.

    Cancelled tasks and tasks that finished with
    [`SafeTaskExitError`][remotedesk.utils.tasks.SafeTaskExitError] are
    left alone.
    """
    if task.cancelled():
        return
    exception = task.exception()
    if exception is None or isinstance(exception, SafeTaskExitError):
        return

    formatted = ''.join(traceback.format_exception(exception))
    logger.error(
        f'Exception in background task (name="{task.get_name()}"): '
        f'{exception!r}\n{formatted}',
    )
    raise SystemExit(1)


def spawn_guarded_background_task(
    coro: Callable[..., Coroutine[Any, Any, None]],
    *args: Any,
    name: str | None = None,
    **kwargs: Any,
) -> asyncio.Task[Any]:
    """Run a coroutine in the background and exit loudly if it fails.

    The relay's status logger, the client's reconnect loop and the
    clipboard watcher are never awaited by their owners, so an exception
    would otherwise go unnoticed until the task is garbage collected.

    Args:
        coro: Coroutine function to run as a task.
        args: Positional arguments for the coroutine.
        name: Optional task name used in log messages.
        kwargs: Keyword arguments for the coroutine.

    Returns:
        Asyncio task handle with
        [`exit_on_error()`][remotedesk.utils.tasks.exit_on_error] attached.
    """
    task = asyncio.create_task(coro(*args, **kwargs), name=name)
    task.add_done_callback(exit_on_error)
    return task
