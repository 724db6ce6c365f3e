import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Protocol, Set

from constants import ROOM_ID_ATTEMPTS, ROOM_ID_LENGTH
from logging_config import get_logger

logger = get_logger(__name__)


class Connection(Protocol):
    """Outbound side of a control connection. ``send`` must not block."""

    def send(self, message: Dict[str, Any]) -> None:
        ...


class RoomAllocationError(RuntimeError):
    pass


@dataclass
class ClientIdentity:
    id: str
    connection: Connection
    name: Optional[str] = None
    room_id: Optional[str] = None


@dataclass
class Room:
    id: str
    host_id: str
    members: Set[str] = field(default_factory=set)


def generate_client_id() -> str:
    return str(uuid.uuid4())


def generate_room_id(length: int = ROOM_ID_LENGTH) -> str:
    return uuid.uuid4().hex[:length]


class ConnectionRegistry:
    """Live control connections keyed by client id.

    Pure in-memory state; callers serialize access (see ``Coordinator``).
    """

    def __init__(self, id_factory: Callable[[], str] = generate_client_id):
        self._clients: Dict[str, ClientIdentity] = {}
        self._id_factory = id_factory

    def register(self, connection: Connection) -> str:
        client_id = self._id_factory()
        while client_id in self._clients:
            client_id = self._id_factory()
        self._clients[client_id] = ClientIdentity(id=client_id, connection=connection)
        logger.debug(f"Registered client {client_id} (total: {len(self._clients)})")
        return client_id

    def get(self, client_id: str) -> Optional[ClientIdentity]:
        return self._clients.get(client_id)

    def set_room(self, client_id: str, room_id: str, name: Optional[str] = None):
        client = self._clients[client_id]
        client.room_id = room_id
        if name is not None:
            client.name = name
        logger.debug(f"Client {client_id} ({client.name}) now bound to room {room_id}")

    def clear_room(self, client_id: str):
        client = self._clients.get(client_id)
        if client is not None:
            client.room_id = None

    def remove(self, client_id: str) -> Optional[ClientIdentity]:
        client = self._clients.pop(client_id, None)
        if client is not None:
            logger.debug(f"Removed client {client_id} (total: {len(self._clients)})")
        return client

    def bound_to(self, room_id: str) -> List[ClientIdentity]:
        """All clients whose room id names ``room_id``: members and pending requesters."""
        return [c for c in self._clients.values() if c.room_id == room_id]

    def __contains__(self, client_id: object) -> bool:
        return client_id in self._clients

    def __len__(self) -> int:
        return len(self._clients)

    def __iter__(self) -> Iterator[ClientIdentity]:
        return iter(list(self._clients.values()))


class RoomRegistry:
    """Rooms keyed by their short shareable id; each has exactly one host who is also a member."""

    def __init__(
        self,
        room_id_factory: Callable[[], str] = generate_room_id,
        max_attempts: int = ROOM_ID_ATTEMPTS,
    ):
        self._rooms: Dict[str, Room] = {}
        self._room_id_factory = room_id_factory
        self._max_attempts = max_attempts

    def create_room(self, host_id: str) -> str:
        for attempt in range(1, self._max_attempts + 1):
            room_id = self._room_id_factory()
            if room_id not in self._rooms:
                self._rooms[room_id] = Room(id=room_id, host_id=host_id, members={host_id})
                logger.info(f"Created room {room_id} hosted by {host_id}")
                return room_id
            logger.warning(f"Room id collision on {room_id} (attempt {attempt}/{self._max_attempts})")
        raise RoomAllocationError(f"Could not allocate a unique room id after {self._max_attempts} attempts")

    def get(self, room_id: str) -> Optional[Room]:
        return self._rooms.get(room_id)

    def room_members(self, room_id: str) -> Set[str]:
        room = self._rooms.get(room_id)
        return set(room.members) if room else set()

    def room_host(self, room_id: str) -> Optional[str]:
        room = self._rooms.get(room_id)
        return room.host_id if room else None

    def is_member(self, room_id: str, client_id: str) -> bool:
        room = self._rooms.get(room_id)
        return room is not None and client_id in room.members

    def add_member(self, room_id: str, client_id: str):
        self._rooms[room_id].members.add(client_id)
        logger.debug(f"Added {client_id} to room {room_id} ({len(self._rooms[room_id].members)} members)")

    def remove_member(self, room_id: str, client_id: str) -> bool:
        """Remove a member. Returns True when it was the host and the room was torn down."""
        room = self._rooms.get(room_id)
        if room is None:
            return False
        if room.host_id == client_id:
            self.delete_room(room_id)
            return True
        room.members.discard(client_id)
        logger.debug(f"Removed {client_id} from room {room_id} ({len(room.members)} members)")
        return False

    def delete_room(self, room_id: str):
        if self._rooms.pop(room_id, None) is not None:
            logger.info(f"Deleted room {room_id}")

    def room_ids(self) -> List[str]:
        return list(self._rooms)

    def __contains__(self, room_id: object) -> bool:
        return room_id in self._rooms

    def __len__(self) -> int:
        return len(self._rooms)
