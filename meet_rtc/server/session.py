"""Per-connection peer state held by the signaling server.

A ``PeerSession`` is created when a websocket connects and destroyed when it
disconnects. It owns the peer's transports and media units; nothing else in
the server keeps a reference to them once the session is torn down.
"""

import asyncio
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, List, Optional, Set

if TYPE_CHECKING:
    from meet_rtc.server.media_engine import Consumer, Producer, Transport
    from meet_rtc.server.mesh import Role
    from meet_rtc.server.relay import PeerChannel


# Transport handle lifecycle
TRANSPORT_PENDING = "pending"
TRANSPORT_READY = "ready"
TRANSPORT_CLOSED = "closed"


@dataclass
class TransportRecord:
    """A transport handle and its handshake state."""

    transport: "Transport"
    direction: str
    state: str = TRANSPORT_PENDING
    state_changes: int = 0

    @property
    def id(self) -> str:
        return self.transport.id

    @property
    def ready(self) -> bool:
        return self.state == TRANSPORT_READY


@dataclass
class ProducerRecord:
    """An outbound media unit bound to a send transport."""

    producer: "Producer"
    transport_id: str
    kind: str

    @property
    def id(self) -> str:
        return self.producer.id


@dataclass
class ConsumerRecord:
    """An inbound media unit bound to a recv transport and a remote producer."""

    consumer: "Consumer"
    transport_id: str
    producer_id: str
    producer_peer_id: str
    kind: str
    active: bool = False

    @property
    def id(self) -> str:
        return self.consumer.id

    def to_dict(self) -> dict:
        return {
            "id": self.consumer.id,
            "producerId": self.producer_id,
            "peerId": self.producer_peer_id,
            "kind": self.kind,
            "rtpParameters": self.consumer.rtp_parameters,
        }


@dataclass
class PeerSession:
    """State of one connected peer.

    Attributes:
        peer_id: Unique per connection; a reconnect gets a new one.
        channel: Ordered outbound channel to the peer.
        room_id: Current room, if any.
        topology: Topology of the current room.
        hub_joined: Whether ``hub.join`` completed for the current room.
        join_epoch: Incremented on every new room membership.
        roles: Mesh only; remote peer id -> this peer's role in the pair.
        transports: Hub only; transport id -> record (one per direction).
        producers: Hub only; kind -> outbound unit.
        consumers: Hub only; upstream producer id -> inbound unit.
        tasks: In-flight request handlers, cancelled on disconnect.
    """

    peer_id: str
    channel: "PeerChannel"
    room_id: Optional[str] = None
    topology: Optional[str] = None
    hub_joined: bool = False
    join_epoch: int = 0
    roles: Dict[str, "Role"] = field(default_factory=dict)
    transports: Dict[str, TransportRecord] = field(default_factory=dict)
    producers: Dict[str, ProducerRecord] = field(default_factory=dict)
    consumers: Dict[str, ConsumerRecord] = field(default_factory=dict)
    tasks: Set[asyncio.Task] = field(default_factory=set)
    closed: bool = False

    def transport_for(self, direction: str) -> Optional[TransportRecord]:
        """Return the open transport in ``direction``, if any."""
        for record in self.transports.values():
            if record.direction == direction and record.state != TRANSPORT_CLOSED:
                return record
        return None

    def find_producer(self, producer_id: str) -> Optional[ProducerRecord]:
        for record in self.producers.values():
            if record.id == producer_id:
                return record
        return None

    def find_consumer(self, consumer_id: str) -> Optional[ConsumerRecord]:
        for record in self.consumers.values():
            if record.id == consumer_id:
                return record
        return None

    def media_handles(self) -> List[str]:
        """Ids of every transport and unit still owned by this peer."""
        return (
            list(self.transports)
            + [record.id for record in self.producers.values()]
            + [record.id for record in self.consumers.values()]
        )

    def reset_room_state(self) -> None:
        """Forget everything tied to the current room."""
        self.room_id = None
        self.topology = None
        self.hub_joined = False
        self.roles.clear()
        self.transports.clear()
        self.producers.clear()
        self.consumers.clear()
