"""
Connection Registry - which live transport connections belong to which user.

Plain in-process state: one event loop, every mutation is a synchronous step,
so no locking. Presence side effects are the hub's job; the registry only
reports the transitions (first connection / last connection).
"""

from collections import defaultdict

from app.infrastructure.observability.logging import get_logger
from app.models.domain.presence_domain import Connection

logger = get_logger(__name__)


class ConnectionRegistry:
    def __init__(self):
        self._by_user: dict[str, set[str]] = defaultdict(set)
        self._connections: dict[str, Connection] = {}
        self._rooms: dict[str, set[str]] = defaultdict(set)
        self._rooms_by_connection: dict[str, set[str]] = defaultdict(set)

    def identify(self, connection_id: str, user_id: str) -> tuple[bool, str | None]:
        """
        Associate a connection with a user.

        Returns:
            (first_connection, orphaned_user_id) where first_connection is True if
            user_id had no live connection before, and orphaned_user_id is set when
            the connection moved away from another user who is now left without any.
        """
        orphaned = None
        existing = self._connections.get(connection_id)

        if existing is not None:
            if existing.user_id == user_id:
                return False, None
            orphaned = self._detach(connection_id, existing.user_id)

        first = not self._by_user.get(user_id)
        self._by_user[user_id].add(connection_id)
        self._connections[connection_id] = Connection(
            connection_id=connection_id, user_id=user_id
        )

        logger.info(
            "Connection identified",
            connection_id=connection_id,
            user_id=user_id,
            user_connections=len(self._by_user[user_id]),
        )
        return first, orphaned

    def disconnect(self, connection_id: str) -> str | None:
        """
        Forget a connection. Unknown ids are ignored.

        Returns:
            The owning user id if this was their last connection, else None
        """
        for room_id in self._rooms_by_connection.pop(connection_id, set()):
            members = self._rooms.get(room_id)
            if members is not None:
                members.discard(connection_id)
                if not members:
                    del self._rooms[room_id]

        connection = self._connections.get(connection_id)
        if connection is None:
            return None

        return self._detach(connection_id, connection.user_id)

    def _detach(self, connection_id: str, user_id: str) -> str | None:
        self._connections.pop(connection_id, None)
        sockets = self._by_user.get(user_id)
        if sockets is None:
            return None

        sockets.discard(connection_id)
        logger.info(
            "Connection removed",
            connection_id=connection_id,
            user_id=user_id,
            remaining=len(sockets),
        )
        if sockets:
            return None

        del self._by_user[user_id]
        return user_id

    def connections_for(self, user_id: str) -> set[str]:
        return set(self._by_user.get(user_id, ()))

    def user_for(self, connection_id: str) -> str | None:
        connection = self._connections.get(connection_id)
        return connection.user_id if connection else None

    def is_connected(self, user_id: str) -> bool:
        return bool(self._by_user.get(user_id))

    def all_connections(self) -> set[str]:
        return set(self._connections)

    # Rooms are a pass-through convenience for clients; nothing in the
    # messaging core depends on them.

    def join_room(self, connection_id: str, room_id: str) -> None:
        self._rooms[room_id].add(connection_id)
        self._rooms_by_connection[connection_id].add(room_id)

    def leave_room(self, connection_id: str, room_id: str) -> None:
        members = self._rooms.get(room_id)
        if members is not None:
            members.discard(connection_id)
            if not members:
                del self._rooms[room_id]
        rooms = self._rooms_by_connection.get(connection_id)
        if rooms is not None:
            rooms.discard(room_id)
            if not rooms:
                del self._rooms_by_connection[connection_id]

    def connections_in_room(self, room_id: str) -> set[str]:
        return set(self._rooms.get(room_id, ()))

    def stats(self) -> dict[str, int]:
        return {
            "connections": len(self._connections),
            "users": len(self._by_user),
            "rooms": len(self._rooms),
        }
