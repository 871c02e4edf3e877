"""Message types exchanged between relay clients and the relay server.

Every frame on the relay websocket is a JSON object with a `type` key that
selects one of the message variants below. Field names on the wire are
camelCase (e.g., `peerId`) and are mapped to snake_case dataclass fields via
the `wire` key in each field's metadata.

Decoding never raises. Frames that are not valid JSON, have an unknown
`type`, or carry wrongly typed fields decode to an
[`IgnoredMessage`][remotedesk.relay.messages.IgnoredMessage] so that clients
and servers of differing versions can talk to each other.
"""
from __future__ import annotations

import dataclasses
import enum
import json
from typing import Any
from typing import ClassVar


class RelayErrorCode(enum.Enum):
    """Error codes returned to a requester in an `error` message."""

    ROOM_NOT_FOUND = 'ROOM_NOT_FOUND'
    """The requested room does not exist."""
    TARGET_USER_ID_MISSING = 'TARGET_USER_ID_MISSING'
    """A connect request did not name a target user."""
    USER_NOT_FOUND = 'USER_NOT_FOUND'
    """No live connection is registered with the target user ID."""
    USER_OFFLINE = 'USER_OFFLINE'
    """The target user's connection is not currently writable."""


def _wire(name: str, *, required: bool = False, opaque: bool = False) -> Any:
    metadata = {'wire': name, 'opaque': opaque}
    if required:
        return dataclasses.field(metadata=metadata)
    return dataclasses.field(default=None, metadata=metadata)


@dataclasses.dataclass
class RelayMessage:
    """Base message."""

    message_type: ClassVar[str] = ''


@dataclasses.dataclass
class IgnoredMessage(RelayMessage):
    """Outcome of decoding a frame that should be silently dropped.

    Attributes:
        reason: Human readable reason used for debug logging.
    """

    reason: str = ''


@dataclasses.dataclass
class CreateRoomRequest(RelayMessage):
    """Create a new room with the sender as the only member."""

    message_type: ClassVar[str] = 'create'


@dataclasses.dataclass
class JoinRoomRequest(RelayMessage):
    """Join an existing room.

    Attributes:
        room_id: ID of the room to join.
    """

    message_type: ClassVar[str] = 'join'

    room_id: str | None = _wire('roomId')


@dataclasses.dataclass
class RegisterRequest(RelayMessage):
    """Bind a stable user ID to the sender's connection.

    Attributes:
        user_id: Caller-supplied stable user ID.
    """

    message_type: ClassVar[str] = 'register'

    user_id: str = _wire('userId', required=True)


@dataclasses.dataclass
class ConnectRequest(RelayMessage):
    """Request a direct pairing with the connection holding a user ID.

    Attributes:
        target_user_id: User ID of the peer to reach.
    """

    message_type: ClassVar[str] = 'connect'

    target_user_id: str | None = _wire('targetUserId')


@dataclasses.dataclass
class SignalMessage(RelayMessage):
    """Session description forwarded between peers.

    The relay sets `source` to the sender's peer ID before forwarding. The
    payload is never inspected.

    Attributes:
        payload: Opaque negotiation payload.
        to: Optional peer ID of the only recipient. If `None`, the message
            is broadcast to the other members of the sender's room.
        room_id: Room ID the sender believes it is in. Accepted for
            compatibility but not used for routing.
        source: Peer ID of the sender (`from` on the wire).
    """

    message_type: ClassVar[str] = 'signal'

    payload: Any = _wire('payload', opaque=True)
    to: str | None = _wire('to')
    room_id: str | None = _wire('roomId')
    source: str | None = _wire('from')


@dataclasses.dataclass
class IceCandidateMessage(SignalMessage):
    """ICE candidate forwarded between peers."""

    message_type: ClassVar[str] = 'ice-candidate'


@dataclasses.dataclass
class Welcome(RelayMessage):
    """First message sent to every new connection.

    Attributes:
        peer_id: Peer ID assigned to the connection.
    """

    message_type: ClassVar[str] = 'welcome'

    peer_id: str = _wire('peerId', required=True)


@dataclasses.dataclass
class RoomCreated(RelayMessage):
    """Reply to a create request."""

    message_type: ClassVar[str] = 'room-created'

    room_id: str = _wire('roomId', required=True)


@dataclasses.dataclass
class RoomJoined(RelayMessage):
    """Reply to a successful join request."""

    message_type: ClassVar[str] = 'room-joined'

    room_id: str = _wire('roomId', required=True)


@dataclasses.dataclass
class Registered(RelayMessage):
    """Reply to a register request."""

    message_type: ClassVar[str] = 'registered'

    user_id: str = _wire('userId', required=True)


@dataclasses.dataclass
class Connecting(RelayMessage):
    """Reply to a successful connect request."""

    message_type: ClassVar[str] = 'connecting'

    target_user_id: str = _wire('targetUserId', required=True)


@dataclasses.dataclass
class PeerJoined(RelayMessage):
    """Notification that a peer joined the room or wants to pair directly.

    Attributes:
        peer_id: Peer ID of the new peer.
        user_id: User ID of the new peer (direct pairing only).
        initiator_id: User ID of the peer that initiated the pairing.
        initiator_peer_id: Peer ID of the peer that initiated the pairing.
    """

    message_type: ClassVar[str] = 'peer-joined'

    peer_id: str = _wire('peerId', required=True)
    user_id: str | None = _wire('userId')
    initiator_id: str | None = _wire('initiatorId')
    initiator_peer_id: str | None = _wire('initiatorPeerId')


@dataclasses.dataclass
class PeerLeft(RelayMessage):
    """Notification that a room member disconnected."""

    message_type: ClassVar[str] = 'peer-left'

    peer_id: str = _wire('peerId', required=True)


@dataclasses.dataclass
class ErrorMessage(RelayMessage):
    """Routing error returned to the requester only.

    Attributes:
        error: One of the [`RelayErrorCode`][remotedesk.relay.messages.RelayErrorCode]
            values.
    """

    message_type: ClassVar[str] = 'error'

    error: str = _wire('error', required=True)

    @classmethod
    def from_code(cls, code: RelayErrorCode) -> ErrorMessage:
        """Create an error message from an error code."""
        return cls(error=code.value)


_MESSAGE_TYPES: dict[str, type[RelayMessage]] = {
    message_type.message_type: message_type
    for message_type in (
        CreateRoomRequest,
        JoinRoomRequest,
        RegisterRequest,
        ConnectRequest,
        SignalMessage,
        IceCandidateMessage,
        Welcome,
        RoomCreated,
        RoomJoined,
        Registered,
        Connecting,
        PeerJoined,
        PeerLeft,
        ErrorMessage,
    )
}


class RelayMessageError(Exception):
    """Base exception type for relay messages."""

    pass


class RelayMessageEncodeError(RelayMessageError):
    """Exception raised when a message cannot be encoded."""

    pass


def decode_relay_message(message: str | bytes) -> RelayMessage:
    """Decode a websocket frame into the correct relay message type.

    Args:
        message: Frame to decode.

    Returns:
        Parsed message or an
        [`IgnoredMessage`][remotedesk.relay.messages.IgnoredMessage] if the
        frame is malformed.
    """
    if not isinstance(message, str):
        return IgnoredMessage('Got message as bytes but expected str.')

    try:
        data = json.loads(message)
    except (json.JSONDecodeError, RecursionError):
        return IgnoredMessage('Failed to load string as JSON.')

    if not isinstance(data, dict):
        return IgnoredMessage('Message is not a JSON object.')

    message_type_name = data.get('type')
    message_type = (
        _MESSAGE_TYPES.get(message_type_name)
        if isinstance(message_type_name, str)
        else None
    )
    if message_type is None:
        return IgnoredMessage(
            f'The message is of an unknown message type: {message_type_name}.',
        )

    kwargs: dict[str, Any] = {}
    for field in dataclasses.fields(message_type):
        wire_name = field.metadata['wire']
        value = data.get(wire_name)
        if value is None:
            if field.default is dataclasses.MISSING:
                return IgnoredMessage(
                    f'{message_type_name} message is missing {wire_name}.',
                )
            continue
        if not field.metadata['opaque'] and not isinstance(value, str):
            return IgnoredMessage(
                f'{message_type_name} message has non-string {wire_name}.',
            )
        kwargs[field.name] = value

    return message_type(**kwargs)


def encode_relay_message(message: RelayMessage) -> str:
    """Encode message as JSON string.

    Optional fields set to `None` are omitted from the frame. The opaque
    payload is always included.

    Args:
        message: Message to JSON encode.

    Raises:
        RelayMessageEncodeError: If the message cannot be JSON encoded.
    """
    if not isinstance(message, RelayMessage) or not message.message_type:
        raise RelayMessageEncodeError(
            f'Message is not an encodable {RelayMessage.__name__}. '
            f'Got {type(message).__name__}.',
        )

    data: dict[str, Any] = {'type': message.message_type}
    for field in dataclasses.fields(message):
        value = getattr(message, field.name)
        if value is None and not field.metadata['opaque']:
            continue
        data[field.metadata['wire']] = value

    try:
        return json.dumps(data)
    except (TypeError, ValueError) as e:
        raise RelayMessageEncodeError('Error encoding message.') from e
