"""Control messages exchanged over the peer-to-peer data channel.

Text frames are JSON objects with a `type` key. The only binary frames are
file chunks, which carry raw bytes with no envelope. Pointer coordinates
are normalized to `[0, 1]` relative to the sender's rendered video surface.
"""
from __future__ import annotations

import dataclasses
import json
import math
from typing import Any
from typing import ClassVar
from typing import Union

from remotedesk.control.exceptions import ControlMessageDecodeError
from remotedesk.control.exceptions import ControlMessageEncodeError

HOST_SIDE = 'host'
VIEWER_SIDE = 'viewer'


@dataclasses.dataclass
class ControlMessage:
    """Base control message."""

    message_type: ClassVar[str] = ''


@dataclasses.dataclass
class Hello(ControlMessage):
    """First message sent on a newly opened channel."""

    side: ClassVar[str] = ''


@dataclasses.dataclass
class HostHello(Hello):
    """Hello sent by the desktop being controlled."""

    message_type: ClassVar[str] = 'hello-host'
    side: ClassVar[str] = HOST_SIDE


@dataclasses.dataclass
class ViewerHello(Hello):
    """Hello sent by the desktop doing the controlling."""

    message_type: ClassVar[str] = 'hello-viewer'
    side: ClassVar[str] = VIEWER_SIDE


@dataclasses.dataclass
class PointerMove(ControlMessage):
    """Pointer moved to a normalized position."""

    message_type: ClassVar[str] = 'move'

    x: float
    y: float


@dataclasses.dataclass
class ButtonEvent(ControlMessage):
    """Mouse button pressed or released, optionally at a position.

    Attributes:
        button: DOM button number (0 left, 1 middle, 2 right).
        x: Optional normalized horizontal position.
        y: Optional normalized vertical position.
    """

    pressed: ClassVar[bool] = True

    button: int
    x: float | None = None
    y: float | None = None


@dataclasses.dataclass
class ButtonDown(ButtonEvent):
    """Mouse button pressed."""

    message_type: ClassVar[str] = 'down'


@dataclasses.dataclass
class ButtonUp(ButtonEvent):
    """Mouse button released."""

    message_type: ClassVar[str] = 'up'
    pressed: ClassVar[bool] = False


@dataclasses.dataclass
class DoubleClick(ControlMessage):
    """Double click of a mouse button at the current position."""

    message_type: ClassVar[str] = 'double-click'

    button: int


@dataclasses.dataclass
class ContextClick(ControlMessage):
    """Right click at the current position."""

    message_type: ClassVar[str] = 'context-click'


@dataclasses.dataclass
class Wheel(ControlMessage):
    """Scroll wheel deltas; only the sign of each delta is used."""

    message_type: ClassVar[str] = 'wheel'

    dx: float
    dy: float


@dataclasses.dataclass
class ClipboardText(ControlMessage):
    """Clipboard text changed on the sending side."""

    message_type: ClassVar[str] = 'clipboard-text'

    text: str


@dataclasses.dataclass
class FileMeta(ControlMessage):
    """Start of a file transfer.

    Attributes:
        name: Suggested file name.
        size: Total length of the file in bytes.
    """

    message_type: ClassVar[str] = 'file-meta'

    name: str
    size: int


@dataclasses.dataclass
class FileChunk(ControlMessage):
    """Raw file bytes, sent as a binary frame."""

    message_type: ClassVar[str] = 'file-chunk'

    data: bytes


@dataclasses.dataclass
class FileEnd(ControlMessage):
    """End of a file transfer."""

    message_type: ClassVar[str] = 'file-end'


InputEvent = Union[PointerMove, ButtonEvent, DoubleClick, ContextClick, Wheel]

_MESSAGE_TYPES: dict[str, type[ControlMessage]] = {
    message_type.message_type: message_type
    for message_type in (
        HostHello,
        ViewerHello,
        PointerMove,
        ButtonDown,
        ButtonUp,
        DoubleClick,
        ContextClick,
        Wheel,
        ClipboardText,
        FileMeta,
        FileEnd,
    )
}


def _is_number(value: Any) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
    )


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_str(value: Any) -> bool:
    return isinstance(value, str)


_VALIDATORS = {
    'x': _is_number,
    'y': _is_number,
    'dx': _is_number,
    'dy': _is_number,
    'button': _is_int,
    'size': _is_int,
    'text': _is_str,
    'name': _is_str,
}


def decode_control_message(frame: str | bytes) -> ControlMessage:
    """Decode a data channel frame into a control message.

    Args:
        frame: Text or binary frame received on the data channel.

    Returns:
        The decoded message. Binary frames are always a
        [`FileChunk`][remotedesk.control.messages.FileChunk].

    Raises:
        ControlMessageDecodeError: If the frame is not a well formed
            control message.
    """
    if isinstance(frame, (bytes, bytearray, memoryview)):
        return FileChunk(data=bytes(frame))

    try:
        data = json.loads(frame)
    except (json.JSONDecodeError, RecursionError) as e:
        raise ControlMessageDecodeError(
            'Failed to load string as JSON.',
        ) from e

    if not isinstance(data, dict):
        raise ControlMessageDecodeError('Message is not a JSON object.')

    message_type_name = data.get('type')
    message_type = (
        _MESSAGE_TYPES.get(message_type_name)
        if isinstance(message_type_name, str)
        else None
    )
    if message_type is None:
        raise ControlMessageDecodeError(
            f'Unknown control message type: {message_type_name!r}.',
        )

    kwargs: dict[str, Any] = {}
    for field in dataclasses.fields(message_type):
        value = data.get(field.name)
        if value is None:
            if field.default is dataclasses.MISSING:
                raise ControlMessageDecodeError(
                    f'{message_type.message_type} message is missing '
                    f'{field.name}.',
                )
            continue
        if not _VALIDATORS[field.name](value):
            raise ControlMessageDecodeError(
                f'{message_type.message_type} message has an invalid '
                f'{field.name}: {value!r}.',
            )
        kwargs[field.name] = value

    if isinstance(kwargs.get('size'), int) and kwargs['size'] < 0:
        raise ControlMessageDecodeError('File size must not be negative.')

    return message_type(**kwargs)


def encode_control_message(message: ControlMessage) -> str | bytes:
    """Encode a control message as a data channel frame.

    Args:
        message: Message to encode.

    Returns:
        The raw bytes for a
        [`FileChunk`][remotedesk.control.messages.FileChunk] and a JSON
        string otherwise. Optional fields set to `None` are omitted.

    Raises:
        ControlMessageEncodeError: If the message cannot be encoded.
    """
    if isinstance(message, FileChunk):
        return message.data
    if not isinstance(message, ControlMessage) or not message.message_type:
        raise ControlMessageEncodeError(
            f'Cannot encode {type(message).__name__} as a control message.',
        )

    data: dict[str, Any] = {'type': message.message_type}
    for field in dataclasses.fields(message):
        value = getattr(message, field.name)
        if value is not None:
            data[field.name] = value

    try:
        return json.dumps(data)
    except (TypeError, ValueError) as e:
        raise ControlMessageEncodeError('Error encoding message.') from e
