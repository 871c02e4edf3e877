"""Clipboard synchronization between two desktops."""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable
from typing import Callable
from typing import Protocol

from remotedesk.utils.tasks import spawn_guarded_background_task

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 0.5


class Clipboard(Protocol):
    """Local clipboard text access."""

    def read_text(self) -> str:
        """Get the current clipboard text."""
        ...

    def write_text(self, text: str) -> None:
        """Replace the clipboard text."""
        ...


class PyperclipClipboard:
    """Clipboard backed by pyperclip."""

    def __init__(self) -> None:
        import pyperclip

        self._pyperclip = pyperclip

    def read_text(self) -> str:
        return self._pyperclip.paste()

    def write_text(self, text: str) -> None:
        self._pyperclip.copy(text)


class ClipboardSync:
    """Poll the local clipboard and send changes to the remote desktop.

    A value is sent only when the local clipboard changed since the last
    poll and the new text is not the text last received from the remote,
    so text received from the remote is never echoed back to it. Copying
    text that was sent earlier counts as a change once the remote has
    replaced it in the meantime.

    Args:
        clipboard: Local clipboard.
        send: Coroutine function which sends clipboard text to the remote.
        interval: Seconds between polls of the local clipboard.
    """

    def __init__(
        self,
        clipboard: Clipboard,
        send: Callable[[str], Awaitable[None]],
        *,
        interval: float = DEFAULT_POLL_INTERVAL,
    ) -> None:
        self._clipboard = clipboard
        self._send = send
        self._interval = interval
        self._last_sent: str | None = None
        self._last_received: str | None = None
        # Clipboard text as of the last poll or remote write
        self._last_local: str | None = None
        self._task: asyncio.Task[None] | None = None

    @property
    def last_sent(self) -> str | None:
        """Last clipboard text sent to the remote."""
        return self._last_sent

    @property
    def last_received(self) -> str | None:
        """Last clipboard text received from the remote."""
        return self._last_received

    async def poll_once(self) -> bool:
        """Check the local clipboard once and send it if it changed.

        Returns:
            If the clipboard text was sent.
        """
        try:
            text = await asyncio.to_thread(self._clipboard.read_text)
        except Exception as e:
            logger.warning(f'Failed to read local clipboard: {e!r}')
            return False

        if not text or text == self._last_local:
            return False
        self._last_local = text
        if text == self._last_received:
            return False

        self._last_sent = text
        await self._send(text)
        logger.debug(f'Sent {len(text)} characters of clipboard text')
        return True

    async def apply_remote(self, text: str) -> None:
        """Write clipboard text received from the remote to the clipboard."""
        self._last_received = text
        try:
            await asyncio.to_thread(self._clipboard.write_text, text)
        except Exception as e:
            logger.warning(f'Failed to write local clipboard: {e!r}')
            return
        self._last_local = text
        logger.debug(f'Received {len(text)} characters of clipboard text')

    async def run(self) -> None:
        """Poll the clipboard at a fixed interval forever."""
        while True:
            await self.poll_once()
            await asyncio.sleep(self._interval)

    def start(self) -> None:
        """Start polling in a background task."""
        if self._task is None:
            self._task = spawn_guarded_background_task(
                self.run,
                name='clipboard-sync',
            )

    async def stop(self) -> None:
        """Stop the background polling task."""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
