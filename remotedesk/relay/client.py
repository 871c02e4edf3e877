"""Asyncio client for the signaling relay."""
from __future__ import annotations

import asyncio
import logging
import ssl
import sys
from types import TracebackType
from typing import Any

if sys.version_info >= (3, 11):  # pragma: >=3.11 cover
    from typing import Self
else:  # pragma: <3.11 cover
    from typing_extensions import Self

import websockets.exceptions
from websockets.asyncio.client import ClientConnection
from websockets.asyncio.client import connect as websockets_connect
from websockets.protocol import State

from remotedesk.relay.exceptions import RelayHandshakeError
from remotedesk.relay.exceptions import RelayNotConnectedError
from remotedesk.relay.messages import ConnectRequest
from remotedesk.relay.messages import CreateRoomRequest
from remotedesk.relay.messages import decode_relay_message
from remotedesk.relay.messages import encode_relay_message
from remotedesk.relay.messages import IceCandidateMessage
from remotedesk.relay.messages import IgnoredMessage
from remotedesk.relay.messages import JoinRoomRequest
from remotedesk.relay.messages import RegisterRequest
from remotedesk.relay.messages import RelayMessage
from remotedesk.relay.messages import RoomCreated
from remotedesk.relay.messages import RoomJoined
from remotedesk.relay.messages import SignalMessage
from remotedesk.relay.messages import Welcome
from remotedesk.utils.tasks import spawn_guarded_background_task

logger = logging.getLogger(__name__)

MAX_BACKOFF_SECONDS = 60.0

# Connection failures that are retried with backoff
_RETRYABLE_ERRORS = (
    OSError,
    asyncio.TimeoutError,
    websockets.exceptions.ConnectionClosed,
    RelayHandshakeError,
)


def _default_ssl_context(verify_certificate: bool) -> ssl.SSLContext:
    context = ssl.create_default_context()
    if not verify_certificate:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    return context


class RelayClient:
    """Connection from one desktop to the signaling relay.

    The relay forgets a desktop as soon as its websocket closes: the next
    connection gets a new peer ID and belongs to no room. The client hides
    this by reconnecting with exponential backoff and, on every new
    connection, repeating the `register` and `join` requests for the user
    ID and room it last had.

    Tip:
        Use the client as an async context manager to connect on entry and
        close on exit.
        ```python
        from remotedesk.relay.client import RelayClient

        async with RelayClient('ws://localhost:5005/ws') as client:
            await client.create_room()
            message = await client.recv()
        ```

    Args:
        address: `ws://` or `wss://` URI of the relay websocket endpoint.
        user_id: Stable user ID registered on every connection.
        reconnect_task: Reconnect from a background task as soon as the
            websocket closes. If `False`, the client reconnects lazily on
            the next send or receive.
        ssl_context: TLS context for `wss://` URIs. Defaults to
            [`ssl.create_default_context()`][ssl.create_default_context].
        timeout: Seconds to wait for the websocket to open and for the
            relay's `welcome` message.
        verify_certificate: Check the relay's certificate when the default
            TLS context is used. Disable only for self-signed test servers.

    Raises:
        ValueError: If `address` is not a `ws://` or `wss://` URI.
    """

    def __init__(
        self,
        address: str,
        *,
        user_id: str | None = None,
        reconnect_task: bool = True,
        ssl_context: ssl.SSLContext | None = None,
        timeout: float = 10,
        verify_certificate: bool = True,
    ) -> None:
        if not address.startswith(('ws://', 'wss://')):
            raise ValueError(
                f'Expected a ws:// or wss:// relay address. Got {address!r}.',
            )
        if address.startswith('wss://') and ssl_context is None:
            ssl_context = _default_ssl_context(verify_certificate)

        self._address = address
        self._ssl_context = ssl_context
        self._timeout = timeout
        self._create_reconnect_task = reconnect_task
        self._initial_backoff_seconds = 1.0

        self._user_id = user_id
        self._room_id: str | None = None
        self._peer_id: str | None = None

        self._connect_lock = asyncio.Lock()
        self._reconnect_task: asyncio.Task[None] | None = None
        self._websocket: ClientConnection | None = None

    async def __aenter__(self) -> Self:
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        exc_traceback: TracebackType | None,
    ) -> None:
        await self.close()

    @property
    def peer_id(self) -> str | None:
        """Peer ID the relay assigned to the current connection."""
        return self._peer_id

    @property
    def user_id(self) -> str | None:
        """User ID registered on every connection, if any."""
        return self._user_id

    @property
    def room_id(self) -> str | None:
        """Room this client last created or joined, if any."""
        return self._room_id

    @property
    def websocket(self) -> ClientConnection:
        """The open websocket to the relay.

        Raises:
            RelayNotConnectedError: If there is no open websocket, e.g.,
                before connecting or after the relay dropped the
                connection.
        """
        if self._websocket is None or self._websocket.state is not State.OPEN:
            raise RelayNotConnectedError(
                f'Not connected to the relay at {self._address}. Call '
                'connect() first.',
            )
        return self._websocket

    async def _open(self, timeout: float) -> ClientConnection:
        """Open a websocket, read the welcome, and restore the session.

        The `register` and `join` requests are sent without waiting for
        their replies, which are returned by a later
        [`recv()`][remotedesk.relay.client.RelayClient.recv].

        Raises:
            OSError: If the relay cannot be reached.
            asyncio.TimeoutError: If the relay does not open the websocket
                or send its welcome within `timeout` seconds.
            websockets.exceptions.ConnectionClosed: If the websocket closes
                before the welcome.
            RelayHandshakeError: If the first message is not a welcome.
        """
        websocket = await websockets_connect(
            self._address,
            open_timeout=timeout,
            ssl=self._ssl_context,
        )

        try:
            greeting = decode_relay_message(
                await asyncio.wait_for(websocket.recv(), timeout),
            )
            if not isinstance(greeting, Welcome):
                raise RelayHandshakeError(
                    'Expected a welcome message from the relay server but '
                    f'got {type(greeting).__name__}.',
                )

            restore: list[RelayMessage] = []
            if self._user_id is not None:
                restore.append(RegisterRequest(user_id=self._user_id))
            if self._room_id is not None:
                restore.append(JoinRoomRequest(room_id=self._room_id))
            for request in restore:
                await websocket.send(encode_relay_message(request))
        except BaseException:
            await websocket.close()
            raise
        self._peer_id = greeting.peer_id

        logger.info(
            f'Connected to relay at {self._address} (peer_id={self._peer_id}, '
            f'user_id={self._user_id}, room_id={self._room_id})',
        )
        return websocket

    async def _reconnect_on_close(self) -> None:
        assert self._websocket is not None
        while True:
            await self._websocket.wait_closed()
            logger.info(f'Connection to relay at {self._address} closed')
            await self.connect()

    async def connect(self, retry: bool = True) -> None:
        """Connect to the relay unless a connection is already open.

        Sending and receiving connect on demand, so calling this directly
        is only needed to learn the peer ID up front.

        Args:
            retry: Keep retrying failed attempts, waiting one second after
                the first failure and doubling the wait up to 60 seconds.
                If `False`, the first failure is raised.
        """
        async with self._connect_lock:
            if (
                self._websocket is not None
                and self._websocket.state is State.OPEN
            ):
                return

            backoff_seconds = self._initial_backoff_seconds
            while True:
                try:
                    self._websocket = await self._open(self._timeout)
                except _RETRYABLE_ERRORS as e:
                    if not retry:
                        raise
                    logger.warning(
                        f'Failed to connect to relay at {self._address}: '
                        f'{e!r}. Retrying connection in {backoff_seconds} '
                        'seconds',
                    )
                    await asyncio.sleep(backoff_seconds)
                    backoff_seconds = min(
                        backoff_seconds * 2,
                        MAX_BACKOFF_SECONDS,
                    )
                else:
                    break

            if self._reconnect_task is None and self._create_reconnect_task:
                self._reconnect_task = spawn_guarded_background_task(
                    self._reconnect_on_close,
                    name='relay-client-reconnect',
                )

    async def close(self) -> None:
        """Stop reconnecting and close the websocket."""
        if self._reconnect_task is not None:
            self._reconnect_task.cancel()
            try:
                await self._reconnect_task
            except asyncio.CancelledError:
                pass
            self._reconnect_task = None

        if self._websocket is not None:
            await self._websocket.close()

    async def _connected_websocket(self) -> ClientConnection:
        if self._websocket is None or self._websocket.state is not State.OPEN:
            await self.connect()
        return self.websocket

    async def recv(self) -> RelayMessage:
        """Receive the next message from the relay.

        Frames that do not decode to a known message are logged and
        skipped. `room-created` and `room-joined` replies update
        [`room_id`][remotedesk.relay.client.RelayClient.room_id].
        """
        while True:
            websocket = await self._connected_websocket()
            message = decode_relay_message(await websocket.recv())
            if isinstance(message, IgnoredMessage):
                logger.debug(f'Ignoring frame from relay: {message.reason}')
                continue
            if isinstance(message, (RoomCreated, RoomJoined)):
                self._room_id = message.room_id
            return message

    async def send(self, message: RelayMessage) -> None:
        """Send a message to the relay, connecting first if needed."""
        frame = encode_relay_message(message)
        websocket = await self._connected_websocket()
        await websocket.send(frame)

    async def create_room(self) -> None:
        """Request a new room; the reply is a `room-created` message."""
        await self.send(CreateRoomRequest())

    async def join_room(self, room_id: str) -> None:
        """Request to join a room; the reply is `room-joined` or `error`."""
        await self.send(JoinRoomRequest(room_id=room_id))

    async def register(self, user_id: str) -> None:
        """Register a stable user ID, also restored on reconnection."""
        self._user_id = user_id
        await self.send(RegisterRequest(user_id=user_id))

    async def connect_to_user(self, target_user_id: str) -> None:
        """Request a direct pairing with the peer holding a user ID."""
        await self.send(ConnectRequest(target_user_id=target_user_id))

    async def signal(self, payload: Any, to: str | None = None) -> None:
        """Send a session description to one peer or the whole room."""
        await self.send(SignalMessage(payload=payload, to=to))

    async def ice_candidate(self, payload: Any, to: str | None = None) -> None:
        """Send an ICE candidate to one peer or the whole room."""
        await self.send(IceCandidateMessage(payload=payload, to=to))
