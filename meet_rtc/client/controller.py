"""Session controllers: the participant side of the room negotiation.

A controller mirrors the state machine the server runs for its peer. It
applies notifications in arrival order (the signaling client hands them over
one at a time), drops duplicates by ``event_id``, and keeps one
``RemotePeer`` record per remote participant with the media it currently
presents.

Two controllers exist:
- MeshController: one direct link per remote peer; offers are only sent
  toward peers that join after us.
- HubController: a send and a recv transport to the room's routing context;
  one producer per local track, one consumer per remote producer.

Changes are reported through ``on_change(event, info)``, with events
"peer-added", "peer-removed", "track-added", "track-removed", "link-state"
and "transport-state".
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Set

from meet_rtc.client.device import HubDevice
from meet_rtc.client.peer_link import AiortcPeerLink, PeerLink
from meet_rtc.client.pending import DEFAULT_CAP, PendingSignalQueue
from meet_rtc.client.signaling import SignalingClient
from meet_rtc.errors import CapabilityMismatchError, NotFoundError, ProtocolError
from meet_rtc.protocol import (
    DIRECTION_RECV,
    DIRECTION_SEND,
    MSG_HUB_CLOSE_PRODUCER,
    MSG_HUB_CONNECT_TRANSPORT,
    MSG_HUB_CONSUME,
    MSG_HUB_CREATE_TRANSPORT,
    MSG_HUB_GET_PRODUCERS,
    MSG_HUB_JOIN,
    MSG_HUB_PRODUCE,
    MSG_HUB_RESUME,
    MSG_JOIN,
    MSG_LEAVE,
    MSG_PEER_JOINED,
    MSG_PEER_LEFT,
    MSG_PRODUCER_AVAILABLE,
    MSG_PRODUCER_CLOSED,
    MSG_SIGNAL,
    MSG_TRANSPORT_STATE,
    SIGNAL_ANSWER,
    SIGNAL_CANDIDATE,
    SIGNAL_OFFER,
)
from meet_rtc.server.mesh import PairState, Role

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[str, dict], None]


@dataclass
class Presentation:
    """A remote track currently shown for a peer."""

    kind: str
    track: Any
    producer_id: Optional[str] = None


@dataclass
class RemotePeer:
    """Local record of one remote participant.

    Attributes:
        peer_id: Remote peer id.
        role: Mesh only; our role toward this peer.
        state: Mesh only; pair negotiation state.
        attempt: Mesh only; offers sent or accepted so far.
        link: Mesh only; the direct link.
        presentations: kind -> track currently presented.
        consumers: Hub only; producer id -> open consumer id.
    """

    peer_id: str
    role: Optional[Role] = None
    state: PairState = PairState.NONE
    attempt: int = 0
    link: Optional[PeerLink] = None
    presentations: Dict[str, Presentation] = field(default_factory=dict)
    consumers: Dict[str, str] = field(default_factory=dict)

    @property
    def idle(self) -> bool:
        """No presented media and nothing open that references this peer."""
        return not self.presentations and not self.consumers


class SessionController:
    """Shared plumbing of the mesh and hub controllers."""

    def __init__(self, signaling: SignalingClient, history_size: int = 512):
        self.signaling = signaling
        self.signaling.on_notification = self.handle_notification
        self.room_id: Optional[str] = None
        self.peers: Dict[str, RemotePeer] = {}
        self.on_change: Optional[ChangeCallback] = None
        self.handlers: Dict[str, Callable[[dict], Awaitable[None]]] = {}
        self._seen: Deque[str] = deque()
        self._seen_ids: Set[str] = set()
        self._history_size = history_size

    @property
    def peer_id(self) -> Optional[str]:
        return self.signaling.peer_id

    async def handle_notification(self, message: dict) -> None:
        """Apply one server notification, skipping redelivered events."""
        event_id = message.get("event_id")
        if event_id is not None:
            if event_id in self._seen_ids:
                logger.debug(f"Discarding duplicate event {event_id}")
                return
            self._remember(event_id)

        handler = self.handlers.get(message.get("type"))
        if handler is None:
            logger.debug(f"No handler for {message.get('type')}")
            return
        await handler(message.get("data") or {})

    def _remember(self, event_id: str) -> None:
        self._seen.append(event_id)
        self._seen_ids.add(event_id)
        if len(self._seen) > self._history_size:
            self._seen_ids.discard(self._seen.popleft())

    def _emit(self, event: str, **info) -> None:
        if self.on_change is not None:
            self.on_change(event, info)

    def _add_peer(self, peer_id: str, **fields) -> RemotePeer:
        record = RemotePeer(peer_id=peer_id, **fields)
        self.peers[peer_id] = record
        self._emit("peer-added", peer_id=peer_id)
        return record

    def _drop_peer(self, peer_id: str) -> Optional[RemotePeer]:
        record = self.peers.pop(peer_id, None)
        if record is not None:
            for kind in list(record.presentations):
                self.unpresent(record, kind)
            self._emit("peer-removed", peer_id=peer_id)
        return record

    def present(self, record: RemotePeer, kind: str, track, producer_id: Optional[str] = None):
        """Show a remote track; a track of a kind already shown replaces it."""
        previous = record.presentations.get(kind)
        if previous is not None:
            self._emit("track-removed", peer_id=record.peer_id, kind=kind)
        record.presentations[kind] = Presentation(kind=kind, track=track, producer_id=producer_id)
        self._emit("track-added", peer_id=record.peer_id, kind=kind)

    def unpresent(self, record: RemotePeer, kind: str) -> None:
        if record.presentations.pop(kind, None) is not None:
            self._emit("track-removed", peer_id=record.peer_id, kind=kind)

    async def leave(self) -> None:
        """Leave the current room and release every local record."""
        if self.room_id is None:
            return
        room_id, self.room_id = self.room_id, None
        try:
            await self.signaling.request(MSG_LEAVE, room=room_id)
        except (ConnectionError, NotFoundError, asyncio.TimeoutError) as e:
            logger.info(f"Leave of {room_id} not acknowledged: {e}")
        await self._release_all()
        logger.info(f"Left room {room_id}")

    async def _release_all(self) -> None:
        for peer_id in list(self.peers):
            self._drop_peer(peer_id)


class MeshController(SessionController):
    """Participant side of a mesh room.

    Args:
        signaling: Connected signaling client.
        link_factory: Builds the PeerLink toward a remote peer id.
        pending_cap: Per-peer cap of the pending signal queue.
    """

    def __init__(
        self,
        signaling: SignalingClient,
        link_factory: Optional[Callable[[str], PeerLink]] = None,
        pending_cap: int = DEFAULT_CAP,
    ):
        super().__init__(signaling)
        self.link_factory = link_factory or AiortcPeerLink
        self.pending = PendingSignalQueue(pending_cap)
        self.handlers = {
            MSG_PEER_JOINED: self._on_peer_joined,
            MSG_PEER_LEFT: self._on_peer_left,
            MSG_SIGNAL: self._on_signal,
        }

    async def join(self, room_id: str) -> List[str]:
        """Join a mesh room and wait for offers from the members already present.

        Returns:
            The members that were already in the room (they initiate toward us).
        """
        response = await self.signaling.request(MSG_JOIN, room=room_id)
        self.room_id = room_id
        peers = response.get("peers", [])
        logger.info(f"Joined mesh room {room_id} with {len(peers)} peer(s)")

        for peer_id in peers:
            # An offer may have beaten the join response and created the record already.
            if peer_id in self.peers:
                continue
            record = self._create_record(peer_id, Role.RESPONDER)
            await self._drain(record)
        return peers

    def _create_record(self, peer_id: str, role: Role) -> RemotePeer:
        link = self.link_factory(peer_id)
        record = self._add_peer(peer_id, role=role, link=link)
        link.on_track = lambda kind, track: self.present(record, kind, track)
        link.on_state = lambda state: self._on_link_state(record, state)
        return record

    async def _drain(self, record: RemotePeer) -> None:
        for envelope in self.pending.drain(record.peer_id):
            await self._apply_signal(record, envelope["payload"])

    async def send_offer(self, record: RemotePeer) -> None:
        """Send a (re)negotiation offer; only the initiator of a pair does this."""
        if record.role is not Role.INITIATOR:
            raise ProtocolError(f"Responder toward {record.peer_id} may not offer")
        record.state = PairState.OFFERING
        record.attempt += 1
        offer = await record.link.create_offer()
        await self.signaling.request(MSG_SIGNAL, to=record.peer_id, payload=offer)
        logger.info(f"Sent offer to {record.peer_id} (attempt {record.attempt})")

    async def _on_peer_joined(self, data: dict) -> None:
        peer_id = data.get("peerId")
        if not peer_id or peer_id == self.peer_id or peer_id in self.peers:
            return
        record = self._create_record(peer_id, Role.INITIATOR)
        await self.send_offer(record)
        await self._drain(record)

    async def _on_peer_left(self, data: dict) -> None:
        peer_id = data.get("peerId")
        self.pending.discard(peer_id)
        record = self._drop_peer(peer_id)
        if record is not None and record.link is not None:
            await record.link.close()
        logger.info(f"Peer {peer_id} left")

    async def _on_signal(self, data: dict) -> None:
        sender = data.get("from")
        payload = data.get("payload") or {}
        record = self.peers.get(sender)

        if record is None:
            if payload.get("type") == SIGNAL_OFFER:
                # The offer beat our join response (tie-break: become the responder).
                record = self._create_record(sender, Role.RESPONDER)
                await self._drain(record)
            else:
                self.pending.push(sender, data)
                logger.debug(f"Queued {payload.get('type')} from unknown peer {sender}")
                return

        await self._apply_signal(record, payload)

    async def _apply_signal(self, record: RemotePeer, payload: dict) -> None:
        signal_type = payload.get("type")

        if signal_type == SIGNAL_OFFER:
            if record.role is Role.INITIATOR:
                logger.warning(f"Ignoring offer from {record.peer_id}: we initiate that pair")
                return
            record.attempt += 1
            answer = await record.link.accept_offer(payload)
            await self.signaling.request(MSG_SIGNAL, to=record.peer_id, payload=answer)
            record.state = PairState.ANSWERED
            logger.info(f"Answered offer from {record.peer_id}")

        elif signal_type == SIGNAL_ANSWER:
            if record.state is not PairState.OFFERING:
                logger.warning(f"Ignoring answer from {record.peer_id} in state {record.state}")
                return
            await record.link.accept_answer(payload)
            record.state = PairState.ANSWERED

        elif signal_type == SIGNAL_CANDIDATE:
            await record.link.add_candidate(payload.get("candidate") or {})

    def _on_link_state(self, record: RemotePeer, state: str) -> None:
        if state == "connected":
            record.state = PairState.CONNECTED
        elif state == "failed":
            logger.warning(f"Link to {record.peer_id} failed")
        self._emit("link-state", peer_id=record.peer_id, state=state)

    async def _release_all(self) -> None:
        for peer_id in list(self.peers):
            record = self._drop_peer(peer_id)
            if record.link is not None:
                await record.link.close()
        for peer_id in self.pending.peers():
            self.pending.discard(peer_id)


class HubController(SessionController):
    """Participant side of a hub room.

    Args:
        signaling: Connected signaling client.
        device: Local media device.
    """

    def __init__(self, signaling: SignalingClient, device: HubDevice):
        super().__init__(signaling)
        self.device = device
        self.send_transport_id: Optional[str] = None
        self.recv_transport_id: Optional[str] = None
        self.recv_ready = False
        self.producers: Dict[str, str] = {}  # kind -> producer id
        self._claimed: Set[str] = set()
        self._waiting: Dict[str, dict] = {}
        self._in_flight: Set[str] = set()
        self._tombstones: Set[str] = set()
        self.handlers = {
            MSG_PEER_JOINED: self._on_peer_joined,
            MSG_PEER_LEFT: self._on_peer_left,
            MSG_PRODUCER_AVAILABLE: self._on_producer_available,
            MSG_PRODUCER_CLOSED: self._on_producer_closed,
            MSG_TRANSPORT_STATE: self._on_transport_state,
        }

    async def join(self, room_id: str) -> None:
        """Run the full joiner sequence.

        join, load device, send leg (create, connect, produce each track),
        recv leg (create, connect), then consume everything already in the
        room plus anything announced meanwhile.
        """
        response = await self.signaling.request(MSG_HUB_JOIN, room=room_id)
        self.room_id = room_id
        await self.device.load(response["rtpCapabilities"])
        for peer_id in response.get("peers", []):
            self._ensure_peer(peer_id)
        logger.info(f"Joined hub room {room_id} with {len(response.get('peers', []))} peer(s)")

        await self._open_send_leg()
        await self._open_recv_leg()

        snapshot = await self.signaling.request(MSG_HUB_GET_PRODUCERS)
        for unit in snapshot.get("producers", []):
            await self._consume(unit)

    async def _open_transport(self, direction: str) -> str:
        params = await self.signaling.request(MSG_HUB_CREATE_TRANSPORT, direction=direction)
        await self.signaling.request(
            MSG_HUB_CONNECT_TRANSPORT,
            transportId=params["id"],
            dtlsParameters=self.device.dtls_parameters(params),
        )
        logger.info(f"{direction} transport {params['id']} ready")
        return params["id"]

    async def _open_send_leg(self) -> None:
        tracks = self.device.local_tracks()
        if not tracks:
            return
        self.send_transport_id = await self._open_transport(DIRECTION_SEND)
        for kind, rtp_parameters in tracks.items():
            await self.produce(kind, rtp_parameters)

    async def produce(self, kind: str, rtp_parameters: dict) -> str:
        """Publish one local track on the send transport."""
        if self.send_transport_id is None:
            raise ProtocolError("No send transport")
        response = await self.signaling.request(
            MSG_HUB_PRODUCE,
            transportId=self.send_transport_id,
            kind=kind,
            rtpParameters=rtp_parameters,
        )
        self.producers[kind] = response["id"]
        logger.info(f"Producing {kind} as {response['id']}")
        return response["id"]

    async def close_producer(self, kind: str) -> None:
        """Stop publishing ``kind``."""
        producer_id = self.producers.pop(kind, None)
        if producer_id is None:
            return
        await self.signaling.request(MSG_HUB_CLOSE_PRODUCER, producerId=producer_id)

    async def _open_recv_leg(self) -> None:
        self.recv_transport_id = await self._open_transport(DIRECTION_RECV)
        self.recv_ready = True
        waiting, self._waiting = self._waiting, {}
        for unit in waiting.values():
            await self._consume(unit)

    def _ensure_peer(self, peer_id: str) -> RemotePeer:
        record = self.peers.get(peer_id)
        if record is None:
            record = self._add_peer(peer_id)
        return record

    def _forget_if_idle(self, record: RemotePeer) -> None:
        if record.idle and self.peers.get(record.peer_id) is record:
            self._drop_peer(record.peer_id)

    async def _consume(self, unit: dict) -> None:
        producer_id = unit["producerId"]
        peer_id = unit["peerId"]
        if producer_id in self._claimed or peer_id == self.peer_id:
            return
        self._claimed.add(producer_id)
        record = self._ensure_peer(peer_id)

        self._in_flight.add(producer_id)
        try:
            consumer = await self.signaling.request(
                MSG_HUB_CONSUME,
                transportId=self.recv_transport_id,
                producerId=producer_id,
                rtpCapabilities=self.device.rtp_capabilities,
            )
        except CapabilityMismatchError as e:
            self._tombstones.discard(producer_id)
            logger.warning(f"Cannot receive {unit.get('kind')} from {peer_id}: {e}")
            return
        except NotFoundError:
            self._tombstones.discard(producer_id)
            logger.debug(f"Producer {producer_id} closed before it could be consumed")
            return
        finally:
            self._in_flight.discard(producer_id)

        if producer_id in self._tombstones:
            # Closed while the consume was in flight; the server closed the consumer.
            self._tombstones.discard(producer_id)
            self._forget_if_idle(record)
            return

        track = self.device.attach_consumer(consumer)
        record.consumers[producer_id] = consumer["id"]
        try:
            await self.signaling.request(MSG_HUB_RESUME, consumerId=consumer["id"])
        except NotFoundError:
            logger.debug(f"Consumer {consumer['id']} closed before resume")
            return
        if record.consumers.get(producer_id) != consumer["id"]:
            return
        self.present(record, consumer["kind"], track, producer_id=producer_id)
        logger.info(f"Consuming {consumer['kind']} from {peer_id}")

    async def _on_peer_joined(self, data: dict) -> None:
        peer_id = data.get("peerId")
        if peer_id and peer_id != self.peer_id:
            self._ensure_peer(peer_id)

    async def _on_peer_left(self, data: dict) -> None:
        peer_id = data.get("peerId")
        record = self.peers.get(peer_id)
        if record is None:
            return
        for consumer_id in record.consumers.values():
            self.device.close_consumer(consumer_id)
        record.consumers.clear()
        self._drop_peer(peer_id)
        logger.info(f"Peer {peer_id} left")

    async def _on_producer_available(self, data: dict) -> None:
        if not self.recv_ready:
            self._waiting[data["producerId"]] = data
            return
        await self._consume(data)

    async def _on_producer_closed(self, data: dict) -> None:
        producer_id = data.get("producerId")
        self._waiting.pop(producer_id, None)
        if producer_id in self._in_flight:
            self._tombstones.add(producer_id)
            return

        record = self.peers.get(data.get("peerId"))
        if record is None:
            return
        consumer_id = record.consumers.pop(producer_id, None)
        if consumer_id is not None:
            self.device.close_consumer(consumer_id)
        for kind, presentation in list(record.presentations.items()):
            if presentation.producer_id == producer_id:
                self.unpresent(record, kind)
        self._forget_if_idle(record)

    async def _on_transport_state(self, data: dict) -> None:
        state = data.get("state")
        if state in ("failed", "disconnected"):
            logger.warning(f"Transport {data.get('transportId')} is {state}")
        self._emit("transport-state", transport_id=data.get("transportId"), state=state)

    async def _release_all(self) -> None:
        for record in self.peers.values():
            for consumer_id in record.consumers.values():
                self.device.close_consumer(consumer_id)
            record.consumers.clear()
        await super()._release_all()
        self.send_transport_id = None
        self.recv_transport_id = None
        self.recv_ready = False
        self.producers.clear()
        self._claimed.clear()
        self._waiting.clear()
        self._tombstones.clear()
