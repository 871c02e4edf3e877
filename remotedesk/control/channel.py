"""Control channel endpoint for one side of a remote desktop session."""
from __future__ import annotations

import logging
import os
import pathlib
from typing import Awaitable
from typing import Callable
from typing import Protocol

from remotedesk.control.clipboard import ClipboardSync
from remotedesk.control.exceptions import ControlMessageDecodeError
from remotedesk.control.files import CHUNK_SIZE
from remotedesk.control.files import FileReceiver
from remotedesk.control.files import iter_file_chunks
from remotedesk.control.files import read_file
from remotedesk.control.input import InputDispatcher
from remotedesk.control.messages import ButtonEvent
from remotedesk.control.messages import ClipboardText
from remotedesk.control.messages import ContextClick
from remotedesk.control.messages import ControlMessage
from remotedesk.control.messages import decode_control_message
from remotedesk.control.messages import DoubleClick
from remotedesk.control.messages import encode_control_message
from remotedesk.control.messages import FileChunk
from remotedesk.control.messages import FileEnd
from remotedesk.control.messages import FileMeta
from remotedesk.control.messages import Hello
from remotedesk.control.messages import HOST_SIDE
from remotedesk.control.messages import HostHello
from remotedesk.control.messages import PointerMove
from remotedesk.control.messages import VIEWER_SIDE
from remotedesk.control.messages import ViewerHello
from remotedesk.control.messages import Wheel
from remotedesk.control.screen import normalize
from remotedesk.control.screen import ScreenSize

logger = logging.getLogger(__name__)

_INPUT_EVENTS = (PointerMove, ButtonEvent, DoubleClick, ContextClick, Wheel)


class FrameReceiver(Protocol):
    """Source of data channel frames, e.g., a peer connection."""

    async def recv(self) -> bytes | str:
        """Receive the next frame."""
        ...


class ControlChannel:
    """One endpoint of the control channel.

    The channel is usable as soon as it is opened. The remote hello is
    recorded when it arrives but other messages are never held back
    waiting for it. Malformed frames are logged and dropped.

    Example:
        ```python
        from remotedesk.control.channel import ControlChannel
        from remotedesk.control.input import InputDispatcher
        from remotedesk.control.input import select_injector
        from remotedesk.control.screen import ScreenSizeCache

        dispatcher = InputDispatcher(select_injector(), ScreenSizeCache())
        channel = ControlChannel(
            connection.send,
            'host',
            dispatcher=dispatcher,
        )
        await channel.open()
        await channel.run(connection)
        ```

    Args:
        send: Coroutine function which sends one frame to the remote.
        side: Side of this endpoint, `'host'` or `'viewer'`.
        dispatcher: Applies received input events. Input events are dropped
            if not provided.
        clipboard_sync: Receives clipboard text from the remote.
        file_receiver: Receives file transfers from the remote.

    Raises:
        ValueError: If `side` is not `'host'` or `'viewer'`.
    """

    def __init__(
        self,
        send: Callable[[bytes | str], Awaitable[None]],
        side: str,
        *,
        dispatcher: InputDispatcher | None = None,
        clipboard_sync: ClipboardSync | None = None,
        file_receiver: FileReceiver | None = None,
    ) -> None:
        if side not in (HOST_SIDE, VIEWER_SIDE):
            raise ValueError(
                f'Side must be {HOST_SIDE!r} or {VIEWER_SIDE!r}. '
                f'Got {side!r}.',
            )
        self._send = send
        self._side = side
        self._dispatcher = dispatcher
        self._clipboard_sync = clipboard_sync
        self._file_receiver = file_receiver
        self._remote_side: str | None = None

    @property
    def side(self) -> str:
        """Side of this endpoint."""
        return self._side

    @property
    def remote_side(self) -> str | None:
        """Side announced by the remote hello, if received yet."""
        return self._remote_side

    async def open(self) -> None:
        """Send the hello identifying this side."""
        hello = HostHello() if self._side == HOST_SIDE else ViewerHello()
        await self.send_message(hello)

    async def send_message(self, message: ControlMessage) -> None:
        """Send a control message to the remote."""
        await self._send(encode_control_message(message))

    async def send_pointer(
        self,
        x: float,
        y: float,
        surface: ScreenSize,
    ) -> None:
        """Send a pointer move observed on the rendered remote video.

        Args:
            x: Horizontal position in pixels on the video surface.
            y: Vertical position in pixels on the video surface.
            surface: Size of the video surface.
        """
        nx, ny = normalize(x, y, surface)
        await self.send_message(PointerMove(x=nx, y=ny))

    async def send_clipboard(self, text: str) -> None:
        """Send clipboard text to the remote."""
        await self.send_message(ClipboardText(text=text))

    async def send_file(
        self,
        name: str,
        data: bytes,
        chunk_size: int = CHUNK_SIZE,
    ) -> None:
        """Send a file as metadata, binary chunks, and an end marker."""
        logger.info(f'Sending {name} ({len(data)} bytes)')
        await self.send_message(FileMeta(name=name, size=len(data)))
        for chunk in iter_file_chunks(data, chunk_size):
            await self.send_message(FileChunk(data=chunk))
        await self.send_message(FileEnd())

    async def send_path(self, path: str | pathlib.Path) -> None:
        """Read a local file and send it.

        Raises:
            FileTransferError: If the file cannot be read.
        """
        data = read_file(path)
        await self.send_file(os.path.basename(path), data)

    async def handle(self, frame: bytes | str) -> None:
        """Process one frame received from the remote."""
        try:
            message = decode_control_message(frame)
        except ControlMessageDecodeError as e:
            logger.debug(f'Ignoring control frame: {e}')
            return

        if isinstance(message, Hello):
            self._remote_side = message.side
            logger.info(f'Control channel opened by {message.side}')
        elif isinstance(message, _INPUT_EVENTS):
            await self._dispatch(message)
        elif isinstance(message, ClipboardText):
            if self._clipboard_sync is not None:
                await self._clipboard_sync.apply_remote(message.text)
        elif isinstance(message, FileMeta):
            if self._file_receiver is not None:
                self._file_receiver.start(message)
        elif isinstance(message, FileChunk):
            if self._file_receiver is not None:
                self._file_receiver.add_chunk(message.data)
        elif isinstance(message, FileEnd):
            if self._file_receiver is not None:
                await self._file_receiver.finish()
        else:
            raise AssertionError('Unreachable.')

    async def _dispatch(self, event: ControlMessage) -> None:
        if self._dispatcher is None:
            logger.debug(f'Dropping input event without dispatcher: {event}')
            return
        try:
            await self._dispatcher.dispatch(event)  # type: ignore[arg-type]
        except Exception:
            logger.exception(f'Failed to inject input event {event}')

    async def run(self, receiver: FrameReceiver) -> None:
        """Handle frames from a receiver until cancelled."""
        while True:
            frame = await receiver.recv()
            await self.handle(frame)
