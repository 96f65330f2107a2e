
from collections import defaultdict
from typing import Dict, Set


def device_room(device_id: str) -> str:
    return f"device:{device_id}"


class SubscriptionRegistry:
    """In-memory map of live connections to the device rooms they joined.

    Lives only as long as the process; clients re-join after reconnecting.
    """

    def __init__(self) -> None:
        self._rooms: Dict[str, Set[str]] = defaultdict(set)
        self._by_connection: Dict[str, Set[str]] = defaultdict(set)

    def join(self, connection_id: str, device_id: str) -> None:
        room = device_room(device_id)
        self._rooms[room].add(connection_id)
        self._by_connection[connection_id].add(room)

    def leave(self, connection_id: str, device_id: str) -> None:
        self._remove(connection_id, device_room(device_id))

    def drop(self, connection_id: str) -> None:
        # must run on disconnect, otherwise rooms grow without bound
        for room in list(self._by_connection.get(connection_id, ())):
            self._remove(connection_id, room)
        self._by_connection.pop(connection_id, None)

    def members(self, device_id: str) -> Set[str]:
        return set(self._rooms.get(device_room(device_id), ()))

    def room_members(self, room: str) -> Set[str]:
        return set(self._rooms.get(room, ()))

    def rooms_of(self, connection_id: str) -> Set[str]:
        return set(self._by_connection.get(connection_id, ()))

    def __len__(self) -> int:
        return len(self._rooms)

    def _remove(self, connection_id: str, room: str) -> None:
        members = self._rooms.get(room)
        if members is not None:
            members.discard(connection_id)
            if not members:
                del self._rooms[room]
        rooms = self._by_connection.get(connection_id)
        if rooms is not None:
            rooms.discard(room)
            if not rooms:
                del self._by_connection[connection_id]
