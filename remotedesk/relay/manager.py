"""Helper classes for tracking connections to a relay server."""
from __future__ import annotations

import asyncio
import dataclasses
import datetime
import uuid

from websockets.asyncio.server import ServerConnection
from websockets.protocol import State


def _utc_current_time() -> datetime.datetime:
    # dataclasses.field's default_factory requires a zero argument callable
    return datetime.datetime.now(tz=datetime.timezone.utc)


@dataclasses.dataclass(eq=False)
class Connection:
    """One live websocket connection to the relay server.

    Connections compare and hash by identity so they can be stored in room
    member sets.

    Outbound messages are placed on `outbox` with
    [`deliver()`][remotedesk.relay.manager.Connection.deliver] and written to
    the websocket by a per-connection writer task owned by the server, so
    routing never waits on a slow peer.

    Attributes:
        peer_id: Server generated ID, immutable for the connection lifetime.
        websocket: Websocket connection to the client.
        user_id: Optional stable user ID bound with `register`.
        room_id: ID of the room the connection is a member of.
        closed: Set once the connection has been removed from the registry.
        created: Time the connection was opened.
        outbox: Queue of encoded frames waiting to be written.
    """

    peer_id: str
    websocket: ServerConnection
    user_id: str | None = None
    room_id: str | None = None
    closed: bool = False
    created: datetime.datetime = dataclasses.field(
        default_factory=_utc_current_time,
    )
    outbox: asyncio.Queue[str | None] = dataclasses.field(
        default_factory=asyncio.Queue,
        repr=False,
    )

    @property
    def writable(self) -> bool:
        """Connection is registered and its websocket is open."""
        return not self.closed and self.websocket.state is State.OPEN

    def deliver(self, frame: str) -> bool:
        """Queue an encoded frame for sending without blocking.

        Returns:
            `False` if the connection is already closed and the frame was
            dropped.
        """
        if self.closed:
            return False
        self.outbox.put_nowait(frame)
        return True

    def __repr__(self) -> str:
        created = self.created.strftime('%Y-%m-%d %H:%M:%S %Z')
        address = str(self.websocket.remote_address)
        return (
            f'{self.__class__.__name__}(peer_id={self.peer_id}, '
            f'user_id={self.user_id}, room_id={self.room_id}, '
            f'address={address}, created={created})'
        )


class ConnectionRegistry:
    """Tracks every live relay connection and its user ID binding.

    All methods are synchronous so each call runs atomically on the event
    loop that owns the registry.

    Warning:
        This class is intended for internal use by the
        [`RelayServer`][remotedesk.relay.server.RelayServer].
    """

    def __init__(self) -> None:
        self._connections_by_peer: dict[str, Connection] = {}
        self._connections_by_user: dict[str, Connection] = {}

    def register(self, websocket: ServerConnection) -> Connection:
        """Create a connection entry with a fresh peer ID."""
        peer_id = str(uuid.uuid4())
        while peer_id in self._connections_by_peer:  # pragma: no cover
            peer_id = str(uuid.uuid4())
        connection = Connection(peer_id=peer_id, websocket=websocket)
        self._connections_by_peer[peer_id] = connection
        return connection

    def bind_user(
        self,
        connection: Connection,
        user_id: str,
    ) -> Connection | None:
        """Bind a user ID to a connection, overwriting any prior holder.

        The previous holder, if any, keeps running but is no longer
        reachable by `user_id` and is not notified.

        Returns:
            The connection that previously held `user_id`, if it was a
            different connection.
        """
        if connection.user_id is not None and connection.user_id != user_id:
            self._unbind(connection)

        previous = self._connections_by_user.get(user_id)
        if previous is connection:
            previous = None
        elif previous is not None:
            previous.user_id = None

        connection.user_id = user_id
        self._connections_by_user[user_id] = connection
        return previous

    def lookup_by_user(self, user_id: str) -> Connection | None:
        """Get the connection currently bound to a user ID."""
        return self._connections_by_user.get(user_id, None)

    def lookup_by_peer(self, peer_id: str) -> Connection | None:
        """Get a live connection by peer ID."""
        return self._connections_by_peer.get(peer_id, None)

    def get_connections(self) -> list[Connection]:
        """Get a list of all live connections."""
        return list(self._connections_by_peer.values())

    def remove(self, connection: Connection) -> bool:
        """Remove a connection and mark it closed.

        Returns:
            `True` the first time a connection is removed and `False` on
            every later call.
        """
        if connection.closed:
            return False
        connection.closed = True
        self._connections_by_peer.pop(connection.peer_id, None)
        self._unbind(connection)
        return True

    def _unbind(self, connection: Connection) -> None:
        if connection.user_id is None:
            return
        # A newer registration of the same user ID must survive
        if self._connections_by_user.get(connection.user_id) is connection:
            del self._connections_by_user[connection.user_id]
