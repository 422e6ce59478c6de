"""Hub negotiation: transport/producer/consumer handshake through a routing context.

Per peer, the send and receive legs progress independently::

    joined -> send transport pending -> send transport ready -> producing*
           -> recv transport pending -> recv transport ready -> consuming*

A produce or consume request is only valid against a transport whose
connect step has completed; anything else is a ``ProtocolError`` reported to
the requester. Closing a producer (directly, through its transport, or on
disconnect) closes every consumer of it and tells the other members with one
``producerClosed`` each.

All methods expect the caller to hold the room's lock.
"""

import logging
from typing import Callable, Dict, List

from meet_rtc.errors import (
    BadRequestError,
    CapabilityMismatchError,
    NotFoundError,
    ProtocolError,
)
from meet_rtc.protocol import (
    DIRECTION_RECV,
    DIRECTION_SEND,
    DIRECTIONS,
    MEDIA_KINDS,
    MSG_PRODUCER_AVAILABLE,
    MSG_PRODUCER_CLOSED,
    MSG_TRANSPORT_STATE,
    event_id,
    make_notification,
)
from meet_rtc.server.media_engine import (
    STATE_CLOSED,
    STATE_DISCONNECTED,
    STATE_FAILED,
    MediaEngine,
    RoutingContext,
    Transport,
)
from meet_rtc.server.registry import PublishedUnit, Room
from meet_rtc.server.relay import EventRelay
from meet_rtc.server.session import (
    TRANSPORT_CLOSED,
    TRANSPORT_READY,
    ConsumerRecord,
    PeerSession,
    ProducerRecord,
    TransportRecord,
)

logger = logging.getLogger(__name__)


class HubNegotiator:
    """Drives the hub handshake for every peer of every hub room.

    Attributes:
        engine: Media engine creating routing contexts.
        relay: Event relay used for producer and transport notifications.
        sessions: Shared peer id -> session map owned by the server.
    """

    def __init__(
        self,
        engine: MediaEngine,
        relay: EventRelay,
        sessions: Dict[str, PeerSession],
    ):
        self.engine = engine
        self.relay = relay
        self.sessions = sessions

    async def ensure_routing_context(self, room: Room) -> RoutingContext:
        """Return the room's routing context, creating it on first use."""
        if room.routing_context is None:
            room.routing_context = await self.engine.create_routing_context()
            logger.info(f"Routing context ready for room {room.room_id}")
        return room.routing_context

    # -- transports ---------------------------------------------------------

    async def create_transport(self, session: PeerSession, room: Room, direction: str) -> dict:
        if direction not in DIRECTIONS:
            raise BadRequestError(f"Direction must be one of {DIRECTIONS}")
        if session.transport_for(direction) is not None:
            raise ProtocolError(f"A {direction} transport already exists")

        transport = await room.routing_context.create_transport(direction)
        record = TransportRecord(transport=transport, direction=direction)
        session.transports[transport.id] = record
        transport.on_state_change(self._state_observer(session, record))

        logger.info(f"Peer {session.peer_id} created {direction} transport {transport.id}")
        return dict(transport.params, id=transport.id)

    async def connect_transport(
        self, session: PeerSession, room: Room, transport_id: str, dtls_parameters: dict
    ) -> dict:
        record = self._transport(session, transport_id)
        if record.ready:
            raise ProtocolError(f"Transport {transport_id} is already connected")

        await record.transport.connect(dtls_parameters)
        record.state = TRANSPORT_READY
        logger.info(f"Peer {session.peer_id} connected {record.direction} transport {transport_id}")
        return {}

    def _transport(self, session: PeerSession, transport_id: str) -> TransportRecord:
        record = session.transports.get(transport_id)
        if record is None or record.state == TRANSPORT_CLOSED:
            raise NotFoundError(f"Transport {transport_id} not found")
        return record

    def _ready_transport(
        self, session: PeerSession, transport_id: str, direction: str
    ) -> TransportRecord:
        record = self._transport(session, transport_id)
        if record.direction != direction:
            raise ProtocolError(f"Transport {transport_id} is not a {direction} transport")
        if not record.ready:
            raise ProtocolError(f"Transport {transport_id} is not connected yet")
        return record

    def _state_observer(self, session: PeerSession, record: TransportRecord) -> Callable:
        def on_state_change(transport: Transport, state: str) -> None:
            if state == STATE_CLOSED or record.state == TRANSPORT_CLOSED:
                return
            record.state_changes += 1
            if state in (STATE_FAILED, STATE_DISCONNECTED):
                logger.warning(f"Transport {transport.id} of {session.peer_id} is {state}")
            self.relay.send_to(
                session.peer_id,
                make_notification(
                    MSG_TRANSPORT_STATE,
                    event_id=event_id(MSG_TRANSPORT_STATE, transport.id, record.state_changes),
                    transportId=transport.id,
                    state=state,
                ),
            )

        return on_state_change

    # -- producing ------------------------------------------------------------

    async def produce(
        self,
        session: PeerSession,
        room: Room,
        transport_id: str,
        kind: str,
        rtp_parameters: dict,
    ) -> dict:
        if kind not in MEDIA_KINDS:
            raise BadRequestError(f"Kind must be one of {MEDIA_KINDS}")
        record = self._ready_transport(session, transport_id, DIRECTION_SEND)
        if kind in session.producers:
            raise ProtocolError(f"Already producing {kind}; close it first")

        producer = await record.transport.produce(kind, rtp_parameters)
        session.producers[kind] = ProducerRecord(
            producer=producer, transport_id=transport_id, kind=kind
        )
        unit = PublishedUnit(producer_id=producer.id, peer_id=session.peer_id, kind=kind)
        room.published[producer.id] = unit

        self.relay.broadcast(
            room.room_id,
            session.peer_id,
            make_notification(
                MSG_PRODUCER_AVAILABLE,
                event_id=event_id(MSG_PRODUCER_AVAILABLE, producer.id),
                **unit.to_dict(),
            ),
        )
        logger.info(f"Peer {session.peer_id} producing {kind} ({producer.id})")
        return {"id": producer.id}

    def list_producers(self, session: PeerSession, room: Room) -> dict:
        """Snapshot of every unit in the room the requester could consume."""
        units = [
            unit.to_dict()
            for unit in room.published.values()
            if unit.peer_id != session.peer_id
        ]
        return {"producers": units}

    async def close_producer(self, session: PeerSession, room: Room, producer_id: str) -> dict:
        record = session.find_producer(producer_id)
        if record is None:
            raise NotFoundError(f"Producer {producer_id} not found")
        closed = self._close_producer(session, room, record)
        return {"closedConsumers": closed}

    def _close_producer(self, owner: PeerSession, room: Room, record: ProducerRecord) -> List[str]:
        """Close a producer and every consumer of it; returns the consumer ids closed."""
        closed = []
        for peer_id in list(room.members):
            other = self.sessions.get(peer_id)
            if other is None or peer_id == owner.peer_id:
                continue
            consumer = other.consumers.pop(record.id, None)
            if consumer is not None:
                consumer.consumer.close()
                closed.append(consumer.id)

        owner.producers.pop(record.kind, None)
        room.published.pop(record.id, None)
        record.producer.close()

        self.relay.broadcast(
            room.room_id,
            owner.peer_id,
            make_notification(
                MSG_PRODUCER_CLOSED,
                event_id=event_id(MSG_PRODUCER_CLOSED, record.id),
                producerId=record.id,
                peerId=owner.peer_id,
                kind=record.kind,
            ),
        )
        logger.info(
            f"Closed producer {record.id} of {owner.peer_id} ({len(closed)} consumer(s))"
        )
        return closed

    # -- consuming ------------------------------------------------------------

    async def consume(
        self,
        session: PeerSession,
        room: Room,
        transport_id: str,
        producer_id: str,
        rtp_capabilities: dict,
    ) -> dict:
        record = self._ready_transport(session, transport_id, DIRECTION_RECV)
        unit = room.published.get(producer_id)
        if unit is None:
            raise NotFoundError(f"Producer {producer_id} not found")
        if unit.peer_id == session.peer_id:
            raise ProtocolError("Cannot consume one's own producer")

        existing = session.consumers.get(producer_id)
        if existing is not None:
            return existing.to_dict()

        if not room.routing_context.can_consume(producer_id, rtp_capabilities):
            raise CapabilityMismatchError(
                f"Capabilities cannot receive {unit.kind} producer {producer_id}"
            )

        consumer = await record.transport.consume(producer_id, rtp_capabilities)
        consumer_record = ConsumerRecord(
            consumer=consumer,
            transport_id=transport_id,
            producer_id=producer_id,
            producer_peer_id=unit.peer_id,
            kind=unit.kind,
        )
        session.consumers[producer_id] = consumer_record
        logger.info(f"Peer {session.peer_id} consuming {producer_id} ({consumer.id})")
        return consumer_record.to_dict()

    async def resume(self, session: PeerSession, room: Room, consumer_id: str) -> dict:
        record = session.find_consumer(consumer_id)
        if record is None:
            raise NotFoundError(f"Consumer {consumer_id} not found")
        await record.consumer.resume()
        record.active = True
        return {}

    # -- teardown -------------------------------------------------------------

    async def close_transport(self, session: PeerSession, room: Room, transport_id: str) -> dict:
        record = self._transport(session, transport_id)
        return self._close_transport(session, room, record)

    def _close_transport(self, session: PeerSession, room: Room, record: TransportRecord) -> dict:
        """Close a transport and, transitively, every unit bound to it."""
        closed_producers = []
        closed_consumers = []

        for producer in list(session.producers.values()):
            if producer.transport_id == record.id:
                self._close_producer(session, room, producer)
                closed_producers.append(producer.id)

        for producer_id, consumer in list(session.consumers.items()):
            if consumer.transport_id == record.id:
                del session.consumers[producer_id]
                consumer.consumer.close()
                closed_consumers.append(consumer.id)

        record.state = TRANSPORT_CLOSED
        record.transport.close()
        session.transports.pop(record.id, None)
        logger.info(f"Closed {record.direction} transport {record.id} of {session.peer_id}")
        return {"closedProducers": closed_producers, "closedConsumers": closed_consumers}

    def release_peer(self, session: PeerSession, room: Room) -> None:
        """Close everything a leaving peer owns: units first, then transports."""
        for producer_id, consumer in list(session.consumers.items()):
            del session.consumers[producer_id]
            consumer.consumer.close()
        for producer in list(session.producers.values()):
            self._close_producer(session, room, producer)
        for record in list(session.transports.values()):
            self._close_transport(session, room, record)
