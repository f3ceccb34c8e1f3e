"""Presence and room membership state.

Both managers are owned by the router and only mutated from the event loop.
None of their methods await, so each call is atomic with respect to events
from other connections.
"""

import logging
from typing import Any, Optional

from relay_chat.models import Connection, Delivery

logger = logging.getLogger(__name__)


class PresenceRegistry:
    """Maps usernames to the connection that can receive direct pushes."""

    def __init__(self) -> None:
        self._connections: dict[str, Connection] = {}

    def register(self, username: str, connection: Connection) -> None:
        """Bind ``username`` to ``connection``, superseding any earlier binding."""
        previous = connection.username
        if previous is not None and previous != username:
            # The connection is switching identity; drop its old entry
            self.unregister(connection)

        superseded = self._connections.get(username)
        if superseded is not None and superseded is not connection:
            logger.info(
                f"User {username} re-registered from {connection.sid}, "
                f"superseding {superseded.sid}"
            )

        connection.username = username
        self._connections[username] = connection
        logger.info(f"Registered {username} on {connection.sid}")

    def lookup(self, username: str) -> Optional[Connection]:
        """Get the live connection for a username, if any."""
        return self._connections.get(username)

    def unregister(self, connection: Connection) -> bool:
        """Remove the connection's binding if it still owns it.

        A connection that was superseded by a newer registration of the same
        username must not evict the newer one.

        Returns:
            True if an entry was removed
        """
        username = connection.username
        if username is None:
            return False
        if self._connections.get(username) is not connection:
            logger.debug(
                f"Skipping unregister of {username} for superseded {connection.sid}"
            )
            return False
        del self._connections[username]
        logger.info(f"Unregistered {username} from {connection.sid}")
        return True

    def online_users(self) -> list[str]:
        """Get the usernames that currently resolve to a connection."""
        return sorted(self._connections)

    def __contains__(self, username: object) -> bool:
        return username in self._connections

    def __len__(self) -> int:
        return len(self._connections)


class RoomManager:
    """Tracks which connections are in which room.

    A connection is in at most one room; its current room is stored on the
    connection itself.
    """

    def __init__(self) -> None:
        self._members: dict[str, dict[str, Connection]] = {}

    def join(self, connection: Connection, room: str) -> Optional[str]:
        """Put a connection in a room, moving it out of any other room.

        Returns:
            The room the connection was moved out of, or None
        """
        previous = connection.room
        if previous == room:
            return None
        if previous is not None:
            self._discard(connection, previous)

        self._members.setdefault(room, {})[connection.sid] = connection
        connection.room = room
        logger.info(f"{connection.name} joined room {room}")
        return previous

    def leave(self, connection: Connection) -> Optional[str]:
        """Take a connection out of its current room.

        Returns:
            The room that was left, or None if the connection was in no room
        """
        room = connection.room
        if room is None:
            return None
        self._discard(connection, room)
        connection.room = None
        logger.info(f"{connection.name} left room {room}")
        return room

    def _discard(self, connection: Connection, room: str) -> None:
        members = self._members.get(room)
        if members is None:
            return
        members.pop(connection.sid, None)
        if not members:
            del self._members[room]

    def members(self, room: str) -> list[Connection]:
        """Snapshot of the connections currently in a room."""
        return list(self._members.get(room, {}).values())

    def member_names(self, room: str) -> list[str]:
        return [c.name for c in self.members(room)]

    def rooms(self) -> list[str]:
        return sorted(self._members)

    def broadcast(
        self,
        room: str,
        event: str,
        payload: Any,
        exclude: Optional[Connection] = None,
    ) -> list[Delivery]:
        """Address an event to every member of a room except ``exclude``.

        The member set is snapshotted here, so later joins and leaves do not
        affect this broadcast.
        """
        return [
            Delivery(connection=member, event=event, payload=payload)
            for member in self.members(room)
            if member is not exclude
        ]
