from __future__ import annotations

import asyncio
import logging

import pytest

from remotedesk.utils.tasks import SafeTaskExitError
from remotedesk.utils.tasks import spawn_guarded_background_task


async def _await_guarded(coro, *args, **kwargs) -> None:
    await spawn_guarded_background_task(coro, *args, **kwargs)


def test_finished_task_does_not_exit() -> None:
    async def finish() -> None:
        await asyncio.sleep(0)

    asyncio.run(_await_guarded(finish))


def test_safe_exit_is_not_fatal() -> None:
    async def stop() -> None:
        raise SafeTaskExitError()

    with pytest.raises(SafeTaskExitError):
        asyncio.run(_await_guarded(stop))


def test_failed_task_exits_and_logs(caplog) -> None:
    caplog.set_level(logging.ERROR)

    async def fail(message: str) -> None:
        raise RuntimeError(message)

    with pytest.raises(SystemExit):
        asyncio.run(_await_guarded(fail, 'clipboard gone', name='watcher'))

    (record,) = [
        r for r in caplog.records if r.name == 'remotedesk.utils.tasks'
    ]
    assert 'name="watcher"' in record.message
    assert 'clipboard gone' in record.message
    assert 'Traceback' in record.message


@pytest.mark.asyncio()
async def test_cancelled_task_does_not_exit() -> None:
    async def forever() -> None:
        await asyncio.sleep(60)

    task = spawn_guarded_background_task(forever, name='forever')
    await asyncio.sleep(0)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert task.cancelled()
