"""Relay server implementation for brokering peer-to-peer sessions.

The relay server (or signaling server) is a lightweight server accessible by
all peers (e.g., has a public IP address) that lets desktops find each
other and exchange the session descriptions and ICE candidates needed to
establish a direct WebRTC connection. Once that connection is up the peers
no longer need the relay.

Peers address each other in one of two ways: by joining the same room, in
which case messages without an explicit recipient are broadcast to the
other room members, or by registering a stable user ID that another peer
can `connect` to directly.
"""
from __future__ import annotations

import asyncio
import datetime
import json
import logging
import sys
import urllib.parse
from http import HTTPStatus

import websockets.exceptions
from websockets.asyncio.server import ServerConnection
from websockets.http11 import Request
from websockets.http11 import Response

from remotedesk.relay.directory import PairingDirectory
from remotedesk.relay.directory import RoomDirectory
from remotedesk.relay.manager import Connection
from remotedesk.relay.manager import ConnectionRegistry
from remotedesk.relay.messages import ConnectRequest
from remotedesk.relay.messages import Connecting
from remotedesk.relay.messages import CreateRoomRequest
from remotedesk.relay.messages import decode_relay_message
from remotedesk.relay.messages import encode_relay_message
from remotedesk.relay.messages import ErrorMessage
from remotedesk.relay.messages import IgnoredMessage
from remotedesk.relay.messages import JoinRoomRequest
from remotedesk.relay.messages import PeerJoined
from remotedesk.relay.messages import PeerLeft
from remotedesk.relay.messages import RegisterRequest
from remotedesk.relay.messages import Registered
from remotedesk.relay.messages import RelayErrorCode
from remotedesk.relay.messages import RelayMessage
from remotedesk.relay.messages import RelayMessageEncodeError
from remotedesk.relay.messages import RoomCreated
from remotedesk.relay.messages import RoomJoined
from remotedesk.relay.messages import SignalMessage
from remotedesk.relay.messages import Welcome

logger = logging.getLogger(__name__)

BANNER = 'RemoteDesk signaling server is running'


class RelayServer:
    """WebRTC signaling relay server.

    The relay is a pure router: it never interprets negotiation payloads,
    never buffers undeliverable messages, and never retries. Routing errors
    (unknown room or target user) are reported to the requester with an
    `error` message while malformed frames are dropped silently.

    All registry and directory operations are synchronous, so each one runs
    atomically on the event loop. Outbound frames are queued per connection
    and written by a dedicated writer task, so a stalled peer only ever
    stalls its own writer.

    The relay server is built on websockets and designed to be served
    using [`serve()`][remotedesk.relay.run.serve].

    Args:
        ws_path: HTTP path websocket clients connect on. Requests to other
            paths are answered by the HTTP health and status routes.
        max_message_bytes: Optional maximum size of client messages in bytes.
            Clients that send oversized messages will have their connections
            closed. Note that message size is computed using
            [`sys.getsizeof()`][sys.getsizeof] so will also include the
            PyObject overhead.
    """

    def __init__(
        self,
        *,
        ws_path: str = '/ws',
        max_message_bytes: int | None = None,
    ) -> None:
        self._ws_path = ws_path
        self._max_message_bytes = max_message_bytes
        self._registry = ConnectionRegistry()
        self._rooms = RoomDirectory()
        self._pairings = PairingDirectory()

    @property
    def ws_path(self) -> str:
        """HTTP path websocket clients connect on."""
        return self._ws_path

    @property
    def registry(self) -> ConnectionRegistry:
        """Registry of live connections."""
        return self._registry

    @property
    def rooms(self) -> RoomDirectory:
        """Directory of active rooms."""
        return self._rooms

    @property
    def pairings(self) -> PairingDirectory:
        """Pending direct pairing intents."""
        return self._pairings

    def send(self, connection: Connection, message: RelayMessage) -> bool:
        """Queue a message for delivery to a connection.

        Note:
            Messages are JSON string encoded using
            [`encode_relay_message()`][remotedesk.relay.messages.encode_relay_message].

        Args:
            connection: Connection to send message to.
            message: Message to encode and send.

        Returns:
            If the message was queued.
        """
        try:
            message_str = encode_relay_message(message)
        except RelayMessageEncodeError as e:
            logger.error(f'Failed to encode message: {e}')
            return False

        return connection.deliver(message_str)

    async def _write_loop(self, connection: Connection) -> None:
        while True:
            message_str = await connection.outbox.get()
            if message_str is None:
                return
            try:
                await connection.websocket.send(message_str)
            except websockets.exceptions.ConnectionClosed:
                logger.warning(
                    f'Connection {connection.peer_id} closed while '
                    'attempting to send message',
                )
                return

    def create_room(self, connection: Connection) -> None:
        """Create a room with the connection as its only member."""
        self._leave_room(connection)
        room = self.rooms.create(connection)
        logger.info(
            f'Connection {connection.peer_id} created room {room.room_id}',
        )
        self.send(connection, RoomCreated(room_id=room.room_id))

    def join_room(
        self,
        connection: Connection,
        request: JoinRoomRequest,
    ) -> None:
        """Add the connection to an existing room.

        Replies with `ROOM_NOT_FOUND` if the room does not exist. Otherwise,
        the other members are notified with a `peer-joined` message.
        """
        room_id = request.room_id
        if not room_id or room_id not in self.rooms:
            logger.info(
                f'Connection {connection.peer_id} attempted to join '
                f'unknown room {room_id}',
            )
            self.send(
                connection,
                ErrorMessage.from_code(RelayErrorCode.ROOM_NOT_FOUND),
            )
            return

        if connection.room_id == room_id:
            self.send(connection, RoomJoined(room_id=room_id))
            return

        self._leave_room(connection)
        self.rooms.join(room_id, connection)
        logger.info(f'Connection {connection.peer_id} joined room {room_id}')
        self.send(connection, RoomJoined(room_id=room_id))
        for peer in self.rooms.peers(connection):
            self.send(peer, PeerJoined(peer_id=connection.peer_id))

    def register_user(
        self,
        connection: Connection,
        request: RegisterRequest,
    ) -> None:
        """Bind a stable user ID to the connection (last writer wins)."""
        previous = self.registry.bind_user(connection, request.user_id)
        if previous is not None:
            logger.info(
                f'User {request.user_id} re-registered by connection '
                f'{connection.peer_id} so connection {previous.peer_id} is '
                'no longer reachable by that user ID',
            )
        else:
            logger.info(
                f'Connection {connection.peer_id} registered as user '
                f'{request.user_id}',
            )
        self.send(connection, Registered(user_id=request.user_id))

    def connect_user(
        self,
        connection: Connection,
        request: ConnectRequest,
    ) -> None:
        """Pair the connection with the connection holding a user ID.

        The target receives `peer-joined` and is expected to send the
        session offer; the requester receives `connecting`.
        """
        target_user_id = request.target_user_id
        if not target_user_id:
            self.send(
                connection,
                ErrorMessage.from_code(RelayErrorCode.TARGET_USER_ID_MISSING),
            )
            return

        target = self.registry.lookup_by_user(target_user_id)
        if target is None:
            logger.info(
                f'Connection {connection.peer_id} attempted to connect to '
                f'unknown user {target_user_id}',
            )
            self.send(
                connection,
                ErrorMessage.from_code(RelayErrorCode.USER_NOT_FOUND),
            )
            return
        if not target.writable:
            self.send(
                connection,
                ErrorMessage.from_code(RelayErrorCode.USER_OFFLINE),
            )
            return

        self.pairings.add_intent(target_user_id, connection)
        logger.info(
            f'Pairing connection {connection.peer_id} with user '
            f'{target_user_id} ({target.peer_id})',
        )
        self.send(
            target,
            PeerJoined(
                peer_id=connection.peer_id,
                user_id=connection.user_id,
                initiator_id=connection.user_id,
                initiator_peer_id=connection.peer_id,
            ),
        )
        self.send(connection, Connecting(target_user_id=target_user_id))

    def forward(self, connection: Connection, message: SignalMessage) -> None:
        """Forward a signal or ICE candidate message.

        Messages with an explicit `to` are delivered only to the live
        connection with that peer ID. Otherwise the message is broadcast to
        the other members of the sender's room. Undeliverable messages are
        dropped without notifying the sender.
        """
        forwarded = type(message)(
            payload=message.payload,
            to=message.to,
            source=connection.peer_id,
        )

        if message.to is not None:
            target = self.registry.lookup_by_peer(message.to)
            if target is None or not target.writable:
                logger.debug(
                    f'Dropping {message.message_type} message from '
                    f'{connection.peer_id} to unknown peer {message.to}',
                )
                return
            self.send(target, forwarded)
            return

        if connection.room_id is None:
            logger.debug(
                f'Dropping {message.message_type} message from '
                f'{connection.peer_id} which is not in a room',
            )
            return

        peers = [
            peer for peer in self.rooms.peers(connection) if peer.writable
        ]
        if len(peers) > 1:
            logger.debug(
                f'Broadcasting {message.message_type} message from '
                f'{connection.peer_id} to {len(peers)} peers in room '
                f'{connection.room_id}',
            )
        for peer in peers:
            self.send(peer, forwarded)

    def disconnect(
        self,
        connection: Connection,
        expected: bool = True,
    ) -> None:
        """Remove the connection and clean up its rooms and pairings.

        Safe to call more than once; cleanup only runs on the first call.

        Args:
            connection: Connection to remove.
            expected: If the connection was closed intentionally or due to an
                error.
        """
        if not self.registry.remove(connection):
            return

        reason = 'ok' if expected else 'unexpected'
        logger.info(
            f'Unregistering connection {connection.peer_id} for {reason} '
            'reason',
        )
        self._leave_room(connection)
        self.pairings.discard(connection)

    def _leave_room(self, connection: Connection) -> list[Connection]:
        room_id = connection.room_id
        remaining = self.rooms.leave(connection)
        for peer in remaining:
            self.send(peer, PeerLeft(peer_id=connection.peer_id))
        if room_id is not None and room_id not in self.rooms:
            logger.info(f'Room {room_id} is empty and has been deleted')
        return remaining

    def process_message(
        self,
        connection: Connection,
        message: RelayMessage,
    ) -> None:
        """Dispatch a decoded message to the matching handler."""
        if isinstance(message, CreateRoomRequest):
            self.create_room(connection)
        elif isinstance(message, JoinRoomRequest):
            self.join_room(connection, message)
        elif isinstance(message, RegisterRequest):
            self.register_user(connection, message)
        elif isinstance(message, ConnectRequest):
            self.connect_user(connection, message)
        elif isinstance(message, SignalMessage):
            self.forward(connection, message)
        else:
            logger.debug(
                f'Ignoring {message.message_type or type(message).__name__} '
                f'message from {connection.peer_id}',
            )

    def process_request(
        self,
        websocket: ServerConnection,
        request: Request,
    ) -> Response | None:
        """Answer plain HTTP requests made to the relay's port.

        Passed as `process_request` to the websockets server. Requests to
        the websocket path continue with the opening handshake.

        * `GET /health`: `200 ok` for load balancer health checks.
        * `GET /`: `200` with a short banner.
        * `GET /status`: `200` with a JSON summary of the relay state.
        * Any other path: `404`.
        """
        path = urllib.parse.urlsplit(request.path).path
        if path == self._ws_path:
            return None
        if path == '/health':
            logger.debug(
                f'Health check request from {websocket.remote_address}',
            )
            return websocket.respond(HTTPStatus.OK, 'ok')
        if path == '/':
            return websocket.respond(HTTPStatus.OK, BANNER)
        if path == '/status':
            status = {
                'status': 'running',
                'connections': len(self.registry.get_connections()),
                'rooms': len(self.rooms),
                'pairings': len(self.pairings),
                'timestamp': datetime.datetime.now(
                    tz=datetime.timezone.utc,
                ).isoformat(),
            }
            response = websocket.respond(HTTPStatus.OK, json.dumps(status))
            del response.headers['Content-Type']
            response.headers['Content-Type'] = 'application/json'
            return response
        return websocket.respond(HTTPStatus.NOT_FOUND, 'Not Found')

    async def handler(self, websocket: ServerConnection) -> None:
        """Websocket server connection handler.

        Registers the connection, greets it with `welcome`, processes
        inbound frames until the socket closes, and then runs disconnect
        cleanup exactly once.

        The handler will close the connection if the client sends a
        message larger than the allowed size (code 4003).

        Args:
            websocket: Websocket connection to the client.
        """
        connection = self.registry.register(websocket)
        writer = asyncio.create_task(
            self._write_loop(connection),
            name=f'relay-writer-{connection.peer_id}',
        )
        logger.info(f'Registered connection: {connection!r}')
        self.send(connection, Welcome(peer_id=connection.peer_id))

        expected = True
        try:
            while True:
                try:
                    message_str = await websocket.recv()
                except websockets.exceptions.ConnectionClosedOK:
                    break
                except websockets.exceptions.ConnectionClosedError:
                    expected = False
                    break

                if (
                    self._max_message_bytes is not None
                    and sys.getsizeof(message_str) > self._max_message_bytes
                ):
                    await websocket.close(
                        4003,
                        reason='Message length exceeds limit.',
                    )
                    logger.warning(
                        f'Client at {websocket.remote_address} sent message '
                        f'with size {sys.getsizeof(message_str)} bytes which '
                        'exceeds the max configured size of '
                        f'{self._max_message_bytes} bytes. Connection closed '
                        'with error code 4003',
                    )
                    expected = False
                    break

                message = decode_relay_message(message_str)
                if isinstance(message, IgnoredMessage):
                    logger.debug(
                        f'Ignoring frame from {connection.peer_id}: '
                        f'{message.reason}',
                    )
                    continue

                self.process_message(connection, message)
        finally:
            self.disconnect(connection, expected=expected)
            writer.cancel()
            try:
                await writer
            except asyncio.CancelledError:
                pass
