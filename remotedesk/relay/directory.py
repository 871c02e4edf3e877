"""Room and direct pairing directories built on the connection registry.

Two addressing schemes coexist and are never reconciled:

* Rooms are ad-hoc broadcast groups identified by a short random token.
* Direct pairing reaches a connection through the stable user ID it bound
  with [`ConnectionRegistry.bind_user()`][remotedesk.relay.manager.ConnectionRegistry.bind_user].

A connection may be in a room and hold a user ID at the same time.
"""
from __future__ import annotations

import dataclasses
import secrets

from remotedesk.relay.manager import Connection

ROOM_ID_BYTES = 4


@dataclasses.dataclass(eq=False)
class Room:
    """Ephemeral group of connections.

    Attributes:
        room_id: Room ID.
        members: Current member connections.
    """

    room_id: str
    members: set[Connection] = dataclasses.field(default_factory=set)


class RoomDirectory:
    """Rooms indexed by room ID.

    A room exists from the moment it is created with its founding member
    until the instant its last member leaves.
    """

    def __init__(self) -> None:
        self._rooms: dict[str, Room] = {}

    def __len__(self) -> int:
        return len(self._rooms)

    def __contains__(self, room_id: object) -> bool:
        return room_id in self._rooms

    def _new_room_id(self) -> str:
        room_id = secrets.token_hex(ROOM_ID_BYTES)
        while room_id in self._rooms:  # pragma: no cover
            room_id = secrets.token_hex(ROOM_ID_BYTES)
        return room_id

    def get(self, room_id: str) -> Room | None:
        """Get a room by ID."""
        return self._rooms.get(room_id, None)

    def create(self, connection: Connection) -> Room:
        """Create a room whose only member is `connection`.

        The caller must have already removed `connection` from any previous
        room with [`leave()`][remotedesk.relay.directory.RoomDirectory.leave].
        """
        room = Room(room_id=self._new_room_id(), members={connection})
        self._rooms[room.room_id] = room
        connection.room_id = room.room_id
        return room

    def join(self, room_id: str, connection: Connection) -> Room | None:
        """Add `connection` to an existing room.

        Returns:
            The joined room or `None` if no room with `room_id` exists, in
            which case no membership is changed.
        """
        room = self._rooms.get(room_id)
        if room is None:
            return None
        room.members.add(connection)
        connection.room_id = room.room_id
        return room

    def leave(self, connection: Connection) -> list[Connection]:
        """Remove `connection` from its current room.

        Deletes the room if it becomes empty.

        Returns:
            Members remaining in the room the connection left.
        """
        if connection.room_id is None:
            return []
        room = self._rooms.get(connection.room_id)
        connection.room_id = None
        if room is None:
            return []
        room.members.discard(connection)
        if len(room.members) == 0:
            del self._rooms[room.room_id]
            return []
        return list(room.members)

    def peers(self, connection: Connection) -> list[Connection]:
        """Get the other members of the connection's current room."""
        if connection.room_id is None:
            return []
        room = self._rooms.get(connection.room_id)
        if room is None:
            return []
        return [member for member in room.members if member is not connection]


def pairing_id(connection: Connection) -> str:
    """ID used to record a connection as the source of a pairing intent."""
    return (
        connection.user_id
        if connection.user_id is not None
        else connection.peer_id
    )


class PairingDirectory:
    """Pending direct pairing intents.

    Maps a target user ID to the set of source IDs (user IDs or, for
    unregistered callers, peer IDs) currently attempting to reach it. The
    intents are observable state for diagnostics and cleanup and never gate
    message routing.
    """

    def __init__(self) -> None:
        self._intents: dict[str, set[str]] = {}
        # Source IDs recorded per connection
        self._recorded: dict[Connection, set[str]] = {}

    def __len__(self) -> int:
        return len(self._intents)

    def add_intent(self, target_user_id: str, source: Connection) -> None:
        """Record that `source` is attempting to reach `target_user_id`."""
        source_id = pairing_id(source)
        self._intents.setdefault(target_user_id, set()).add(source_id)
        self._recorded.setdefault(source, set()).add(source_id)

    def pending(self, target_user_id: str) -> frozenset[str]:
        """Get the IDs of sources attempting to reach `target_user_id`."""
        return frozenset(self._intents.get(target_user_id, ()))

    def discard(self, connection: Connection) -> None:
        """Drop every intent the disconnected connection takes part in.

        Intents targeting the user ID the connection currently holds are
        dropped, as are intents it recorded as a source, including those
        recorded under a user ID that has since been bound elsewhere.
        """
        if connection.user_id is not None:
            self._intents.pop(connection.user_id, None)
        source_ids = self._recorded.pop(connection, set())
        source_ids.add(connection.peer_id)
        for target in list(self._intents):
            self._intents[target] -= source_ids
            if len(self._intents[target]) == 0:
                del self._intents[target]
