"""Room registry: the authoritative room -> members mapping.

Rooms are created on first join and deleted as soon as their membership
becomes empty, together with any routing context and outstanding mesh pair
state. Each room has one ``asyncio.Lock``; every mutation of a room's
membership or of its members' media collections is applied while holding
it. Unrelated rooms never contend.
"""

import asyncio
import logging
import weakref
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, FrozenSet, List, Optional

from meet_rtc.errors import ProtocolError
from meet_rtc.protocol import TOPOLOGY_MESH

if TYPE_CHECKING:
    from meet_rtc.server.media_engine import RoutingContext
    from meet_rtc.server.mesh import MeshPair

logger = logging.getLogger(__name__)


@dataclass
class PublishedUnit:
    """An outbound media unit announced to a hub room."""

    producer_id: str
    peer_id: str
    kind: str

    def to_dict(self) -> dict:
        return {"producerId": self.producer_id, "peerId": self.peer_id, "kind": self.kind}


@dataclass
class Room:
    """A named set of connected peers sharing one session.

    Attributes:
        room_id: Opaque room identifier.
        topology: "mesh" or "hub", fixed by the first join.
        members: Member peer ids in join order (values unused).
        lock: Mutual-exclusion boundary for this room.
        routing_context: Hub mode only; created on first hub join.
        published: Hub mode only; producer id -> unit, in publication order.
        pairs: Mesh mode only; unordered peer pair -> pair state.
    """

    room_id: str
    topology: str
    lock: asyncio.Lock
    members: Dict[str, None] = field(default_factory=dict)
    routing_context: Optional["RoutingContext"] = None
    published: Dict[str, PublishedUnit] = field(default_factory=dict)
    pairs: Dict[FrozenSet[str], "MeshPair"] = field(default_factory=dict)


class RoomRegistry:
    """Maps room ids to rooms and peer ids to their (single) room."""

    def __init__(self):
        self._rooms: Dict[str, Room] = {}
        self._peer_rooms: Dict[str, str] = {}
        # Locks outlive a room only while someone is holding or awaiting them.
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    def lock(self, room_id: str) -> asyncio.Lock:
        """Return the lock guarding ``room_id``, whether or not the room exists yet."""
        lock = self._locks.get(room_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[room_id] = lock
        return lock

    def join(self, room_id: str, peer_id: str, topology: str = TOPOLOGY_MESH) -> List[str]:
        """Add ``peer_id`` to ``room_id`` and return the other members in join order.

        Joining twice is a no-op that returns the same answer.

        Raises:
            ProtocolError: If the peer is in another room, or the room runs a
                different topology.
        """
        current = self._peer_rooms.get(peer_id)
        if current is not None and current != room_id:
            raise ProtocolError(f"Peer {peer_id} is already in room {current}; leave it first")

        room = self._rooms.get(room_id)
        if room is None:
            room = Room(room_id=room_id, topology=topology, lock=self.lock(room_id))
            self._rooms[room_id] = room
            logger.info(f"Created {topology} room {room_id}")
        elif room.topology != topology:
            raise ProtocolError(
                f"Room {room_id} uses the {room.topology} topology, not {topology}"
            )

        if peer_id not in room.members:
            room.members[peer_id] = None
            self._peer_rooms[peer_id] = room_id
            logger.info(f"Peer {peer_id} joined room {room_id} (members: {len(room.members)})")

        return [member for member in room.members if member != peer_id]

    def leave(self, room_id: str, peer_id: str) -> None:
        """Remove ``peer_id`` from ``room_id``; delete the room once it is empty.

        Leaving a room one is not a member of is a no-op.
        """
        room = self._rooms.get(room_id)
        if room is None or peer_id not in room.members:
            return

        del room.members[peer_id]
        if self._peer_rooms.get(peer_id) == room_id:
            del self._peer_rooms[peer_id]
        logger.info(f"Peer {peer_id} left room {room_id} (remaining: {len(room.members)})")

        if not room.members:
            self._delete(room)

    def _delete(self, room: Room) -> None:
        del self._rooms[room.room_id]
        room.pairs.clear()
        room.published.clear()
        if room.routing_context is not None:
            room.routing_context.close()
            room.routing_context = None
        logger.info(f"Deleted empty room {room.room_id}")

    def get(self, room_id: str) -> Optional[Room]:
        return self._rooms.get(room_id)

    def room_of(self, peer_id: str) -> Optional[str]:
        return self._peer_rooms.get(peer_id)

    def is_member(self, room_id: str, peer_id: str) -> bool:
        room = self._rooms.get(room_id)
        return room is not None and peer_id in room.members

    def members(self, room_id: str) -> List[str]:
        room = self._rooms.get(room_id)
        return list(room.members) if room else []

    def __contains__(self, room_id: str) -> bool:
        return room_id in self._rooms

    def __len__(self) -> int:
        return len(self._rooms)
