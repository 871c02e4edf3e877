from __future__ import annotations

import asyncio
import json
import logging
import pathlib

import pytest

from remotedesk.control.channel import ControlChannel
from remotedesk.control.clipboard import ClipboardSync
from remotedesk.control.exceptions import FileTransferError
from remotedesk.control.files import DirectoryFileSaver
from remotedesk.control.files import FileReceiver
from remotedesk.control.input import InputDispatcher
from remotedesk.control.input import MouseButton
from remotedesk.control.messages import ButtonDown
from remotedesk.control.messages import encode_control_message
from remotedesk.control.messages import PointerMove
from remotedesk.control.messages import Wheel
from remotedesk.control.screen import ScreenSize
from remotedesk.control.screen import ScreenSizeCache


class Link:
    """One direction of an in-memory data channel."""

    def __init__(self) -> None:
        self.queue: asyncio.Queue[bytes | str] = asyncio.Queue()

    async def send(self, frame: bytes | str) -> None:
        await self.queue.put(frame)

    async def recv(self) -> bytes | str:
        return await self.queue.get()

    def drain(self) -> list[bytes | str]:
        frames = []
        while not self.queue.empty():
            frames.append(self.queue.get_nowait())
        return frames


class RecordingInjector:
    def __init__(self) -> None:
        self.calls: list[tuple[object, ...]] = []

    def inject_pointer(self, x: int, y: int) -> None:
        self.calls.append(('pointer', x, y))

    def inject_button(self, button: MouseButton, down: bool) -> None:
        self.calls.append(('button', button, down))

    def inject_scroll(self, dx: int, dy: int) -> None:
        self.calls.append(('scroll', dx, dy))


class FailingInjector(RecordingInjector):
    def inject_pointer(self, x: int, y: int) -> None:
        raise RuntimeError('display went away')


class MemoryClipboard:
    def __init__(self) -> None:
        self.text = ''

    def read_text(self) -> str:
        return self.text

    def write_text(self, text: str) -> None:
        self.text = text


class DeniedSaver:
    def open_save_dialog(self, suggested_name: str) -> str | None:
        return f'/readonly/{suggested_name}'

    def write_file(self, path: str, data: bytes) -> None:
        raise PermissionError('denied')


def _dispatcher(injector: RecordingInjector) -> InputDispatcher:
    return InputDispatcher(
        injector,
        ScreenSizeCache(lambda: ScreenSize(1920, 1080)),
    )


def test_invalid_side() -> None:
    with pytest.raises(ValueError, match='Side must be'):
        ControlChannel(Link().send, 'spectator')


@pytest.mark.asyncio()
async def test_open_sends_hello() -> None:
    link = Link()
    host = ControlChannel(link.send, 'host')
    viewer = ControlChannel(link.send, 'viewer')
    await host.open()
    await viewer.open()

    frames = link.drain()
    assert [json.loads(f) for f in frames] == [
        {'type': 'hello-host'},
        {'type': 'hello-viewer'},
    ]


@pytest.mark.asyncio()
async def test_hello_records_remote_side(caplog) -> None:
    caplog.set_level(logging.INFO)
    link = Link()
    viewer = ControlChannel(link.send, 'viewer')
    host = ControlChannel(Link().send, 'host')
    assert host.side == 'host'
    assert host.remote_side is None

    await viewer.open()
    await host.handle(link.drain()[0])

    assert host.remote_side == 'viewer'
    assert any('opened by viewer' in r.message for r in caplog.records)


@pytest.mark.asyncio()
async def test_input_before_hello_is_applied() -> None:
    injector = RecordingInjector()
    host = ControlChannel(
        Link().send,
        'host',
        dispatcher=_dispatcher(injector),
    )
    await host.handle(encode_control_message(PointerMove(0.5, 0.5)))
    assert host.remote_side is None
    assert injector.calls == [('pointer', 960, 540)]


@pytest.mark.asyncio()
async def test_viewer_input_is_injected_on_host() -> None:
    link = Link()
    injector = RecordingInjector()
    viewer = ControlChannel(link.send, 'viewer')
    host = ControlChannel(
        Link().send,
        'host',
        dispatcher=_dispatcher(injector),
    )

    await viewer.send_pointer(320, 180, ScreenSize(640, 360))
    await viewer.send_message(ButtonDown(0))
    await viewer.send_message(Wheel(0, 100))
    for frame in link.drain():
        await host.handle(frame)

    assert injector.calls == [
        ('pointer', 960, 540),
        ('button', MouseButton.LEFT, True),
        ('scroll', 0, 1),
    ]


@pytest.mark.asyncio()
async def test_input_without_dispatcher_is_dropped() -> None:
    viewer = ControlChannel(Link().send, 'viewer')
    await viewer.handle(encode_control_message(ButtonDown(0)))


@pytest.mark.asyncio()
async def test_injection_failure_is_logged(caplog) -> None:
    caplog.set_level(logging.ERROR)
    injector = FailingInjector()
    host = ControlChannel(
        Link().send,
        'host',
        dispatcher=_dispatcher(injector),
    )

    await host.handle(encode_control_message(PointerMove(0, 0)))
    await host.handle(encode_control_message(ButtonDown(1)))

    assert any('Failed to inject' in r.message for r in caplog.records)
    assert injector.calls == [('button', MouseButton.MIDDLE, True)]


@pytest.mark.asyncio()
@pytest.mark.parametrize(
    'frame',
    (
        'garbage',
        '{"type": "teleport"}',
        '{"type": "move"}',
        pytest.param('[' * 100000, id='deeply-nested'),
    ),
)
async def test_malformed_frames_are_ignored(frame: str) -> None:
    injector = RecordingInjector()
    host = ControlChannel(
        Link().send,
        'host',
        dispatcher=_dispatcher(injector),
    )
    await host.handle(frame)
    assert injector.calls == []


@pytest.mark.asyncio()
async def test_clipboard_text_is_applied() -> None:
    link = Link()
    clipboard = MemoryClipboard()
    outbox = Link()
    sync = ClipboardSync(clipboard, outbox.send)
    viewer = ControlChannel(link.send, 'viewer')
    host = ControlChannel(outbox.send, 'host', clipboard_sync=sync)

    await viewer.send_clipboard('copied on viewer')
    await host.handle(link.drain()[0])

    assert clipboard.text == 'copied on viewer'
    assert not await sync.poll_once()


@pytest.mark.asyncio()
async def test_clipboard_text_without_sync_is_dropped() -> None:
    link = Link()
    viewer = ControlChannel(link.send, 'viewer')
    host = ControlChannel(Link().send, 'host')
    await viewer.send_clipboard('ignored')
    await host.handle(link.drain()[0])


@pytest.mark.asyncio()
async def test_send_file(tmp_path: pathlib.Path) -> None:
    link = Link()
    viewer = ControlChannel(link.send, 'viewer')
    receiver = FileReceiver(DirectoryFileSaver(tmp_path))
    host = ControlChannel(Link().send, 'host', file_receiver=receiver)

    data = bytes(range(256)) * 5
    await viewer.send_file('blob.bin', data, chunk_size=500)

    frames = link.drain()
    assert json.loads(frames[0]) == {
        'type': 'file-meta',
        'name': 'blob.bin',
        'size': len(data),
    }
    assert [len(f) for f in frames[1:-1]] == [500, 500, 280]
    assert all(isinstance(f, bytes) for f in frames[1:-1])
    assert json.loads(frames[-1]) == {'type': 'file-end'}

    for frame in frames:
        await host.handle(frame)
    assert (tmp_path / 'blob.bin').read_bytes() == data


@pytest.mark.asyncio()
async def test_send_path(tmp_path: pathlib.Path) -> None:
    source = tmp_path / 'source'
    source.mkdir()
    (source / 'notes.txt').write_text('hello')
    target = tmp_path / 'target'

    link = Link()
    viewer = ControlChannel(link.send, 'viewer')
    host = ControlChannel(
        Link().send,
        'host',
        file_receiver=FileReceiver(DirectoryFileSaver(target)),
    )

    await viewer.send_path(source / 'notes.txt')
    for frame in link.drain():
        await host.handle(frame)

    assert (target / 'notes.txt').read_text() == 'hello'


@pytest.mark.asyncio()
async def test_send_missing_path(tmp_path: pathlib.Path) -> None:
    link = Link()
    viewer = ControlChannel(link.send, 'viewer')
    with pytest.raises(FileTransferError):
        await viewer.send_path(tmp_path / 'missing')
    assert link.drain() == []


@pytest.mark.asyncio()
async def test_file_frames_without_receiver_are_dropped() -> None:
    link = Link()
    viewer = ControlChannel(link.send, 'viewer')
    host = ControlChannel(Link().send, 'host')
    await viewer.send_file('a', b'abc')
    for frame in link.drain():
        await host.handle(frame)


@pytest.mark.asyncio()
async def test_run_handles_frames_in_order() -> None:
    link = Link()
    injector = RecordingInjector()
    viewer = ControlChannel(link.send, 'viewer')
    host = ControlChannel(
        Link().send,
        'host',
        dispatcher=_dispatcher(injector),
    )

    await viewer.open()
    for i in range(5):
        await viewer.send_message(PointerMove(i / 10, 0))

    task = asyncio.create_task(host.run(link))
    for _ in range(100):  # pragma: no branch
        await asyncio.sleep(0.001)
        if len(injector.calls) == 5:
            break
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert host.remote_side == 'viewer'
    assert [call[1] for call in injector.calls] == [0, 192, 384, 576, 768]


@pytest.mark.asyncio()
async def test_failed_save_does_not_stop_run(caplog) -> None:
    caplog.set_level(logging.ERROR)
    link = Link()
    injector = RecordingInjector()
    viewer = ControlChannel(link.send, 'viewer')
    host = ControlChannel(
        Link().send,
        'host',
        dispatcher=_dispatcher(injector),
        file_receiver=FileReceiver(DeniedSaver()),
    )

    await viewer.send_file('a.txt', b'a')
    await viewer.send_message(PointerMove(0.5, 0.5))

    task = asyncio.create_task(host.run(link))
    for _ in range(100):  # pragma: no branch
        await asyncio.sleep(0.001)
        if injector.calls:
            break
    assert not task.done()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert injector.calls == [('pointer', 960, 540)]
    assert any('Failed to save a.txt' in r.message for r in caplog.records)
