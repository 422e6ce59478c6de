"""WebSocket signaling server for multi-party rooms.

Accepts one websocket per participant, assigns it a fresh peer id and
dispatches its requests to the mesh or hub negotiation. Every request is
answered with exactly one correlated response; notifications go out through
the peer's ordered channel.

Usage:
    meet-rtc serve [--host HOST] [--port PORT]

Examples:
    meet-rtc serve
    meet-rtc serve --port 8080
"""

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List, Optional

import websockets
import websockets.exceptions

from meet_rtc.config import Config, get_config
from meet_rtc.errors import (
    BadRequestError,
    NotFoundError,
    ProtocolError,
    SignalingError,
)
from meet_rtc.protocol import (
    MSG_HUB_CLOSE_PRODUCER,
    MSG_HUB_CLOSE_TRANSPORT,
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
    MSG_SIGNAL,
    MSG_WELCOME,
    TOPOLOGY_HUB,
    TOPOLOGY_MESH,
    event_id,
    make_error_response,
    make_notification,
    make_response,
    parse_message,
    require,
)
from meet_rtc.server.hub import HubNegotiator
from meet_rtc.server.media_engine import LocalMediaEngine, MediaEngine
from meet_rtc.server.mesh import MeshNegotiator, Role
from meet_rtc.server.registry import Room, RoomRegistry
from meet_rtc.server.relay import EventRelay, PeerChannel
from meet_rtc.server.session import PeerSession

logger = logging.getLogger(__name__)


class SignalingServer:
    """Room signaling server.

    Attributes:
        config: Server configuration.
        engine: Media engine backing hub rooms.
        registry: Room registry (shared by every connection handler).
        sessions: Connected peers by id.
        relay: Notification fan-out.
    """

    def __init__(self, engine: Optional[MediaEngine] = None, config: Optional[Config] = None):
        self.config = config or get_config()
        self.engine = engine or LocalMediaEngine(self.config.media)
        self.registry = RoomRegistry()
        self.sessions: Dict[str, PeerSession] = {}
        self.relay = EventRelay(self.registry)
        self.mesh = MeshNegotiator()
        self.hub = HubNegotiator(self.engine, self.relay, self.sessions)

        self.handlers = {
            MSG_JOIN: self._handle_join,
            MSG_LEAVE: self._handle_leave,
            MSG_SIGNAL: self._handle_signal,
            MSG_HUB_JOIN: self._handle_hub_join,
            MSG_HUB_CREATE_TRANSPORT: self._handle_create_transport,
            MSG_HUB_CONNECT_TRANSPORT: self._handle_connect_transport,
            MSG_HUB_PRODUCE: self._handle_produce,
            MSG_HUB_CONSUME: self._handle_consume,
            MSG_HUB_RESUME: self._handle_resume,
            MSG_HUB_GET_PRODUCERS: self._handle_get_producers,
            MSG_HUB_CLOSE_PRODUCER: self._handle_close_producer,
            MSG_HUB_CLOSE_TRANSPORT: self._handle_close_transport,
        }

    # -- connection lifecycle -------------------------------------------------

    def open_session(self, websocket) -> PeerSession:
        """Register a new connection and greet it with its peer id."""
        peer_id = uuid.uuid4().hex
        channel = PeerChannel(peer_id, websocket)
        channel.start()
        session = PeerSession(peer_id=peer_id, channel=channel)
        self.sessions[peer_id] = session
        self.relay.register(channel)
        channel.send(make_notification(MSG_WELCOME, peerId=peer_id))
        logger.info(f"Peer connected: {peer_id} (total: {len(self.sessions)})")
        return session

    async def handler(self, websocket) -> None:
        """Handle one websocket connection until it closes."""
        session = self.open_session(websocket)
        try:
            async for raw in websocket:
                self.dispatch(session, raw)
        except websockets.exceptions.ConnectionClosed:
            logger.info(f"Connection closed: {session.peer_id}")
        finally:
            await self.teardown_peer(session.peer_id)

    def dispatch(self, session: PeerSession, raw) -> Optional[asyncio.Task]:
        """Handle a frame in its own task so slow steps don't block the reader.

        Requests for the same room still serialize on the room lock, in
        arrival order. Frames for a torn-down session are dropped.
        """
        if session.closed:
            logger.debug(f"Dropping frame for closed session {session.peer_id}")
            return None
        task = asyncio.create_task(self.handle_message(session, raw))
        session.tasks.add(task)
        task.add_done_callback(session.tasks.discard)
        return task

    async def teardown_peer(self, peer_id: str) -> bool:
        """Release everything a peer owns. Idempotent.

        Closes in order: inbound units, outbound units, transports, room
        membership (deleting the room if it became empty). The remaining
        members get exactly one ``peerLeft``.

        Returns:
            True if the peer was torn down by this call.
        """
        session = self.sessions.pop(peer_id, None)
        if session is None:
            return False
        session.closed = True

        current = asyncio.current_task()
        pending = [task for task in session.tasks if task is not current]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        await self._leave_room(session)
        self.relay.unregister(peer_id)
        await session.channel.close()
        logger.info(f"Peer torn down: {peer_id} (remaining: {len(self.sessions)})")
        return True

    # -- dispatch -------------------------------------------------------------

    async def handle_message(self, session: PeerSession, raw) -> None:
        """Run one request and send its response."""
        request_id = None
        msg_type = None
        try:
            msg_type, request_id, data = parse_message(raw)
            handler = self.handlers.get(msg_type)
            if handler is None:
                raise BadRequestError(f"Unknown message type: {msg_type}")
            result = await handler(session, data)
        except NotFoundError as e:
            logger.debug(f"{msg_type} from {session.peer_id}: {e.message}")
            self._reply_error(session, request_id, e)
            return
        except BadRequestError as e:
            if request_id is None:
                request_id = e.request_id
            logger.info(f"Bad request from {session.peer_id}: {e.message}")
            self._reply_error(session, request_id, e)
            return
        except SignalingError as e:
            logger.info(f"{msg_type} from {session.peer_id} rejected ({e.code}): {e.message}")
            self._reply_error(session, request_id, e)
            return
        except Exception:
            logger.exception(f"Unexpected error handling {msg_type} from {session.peer_id}")
            if request_id is not None:
                session.channel.send(
                    make_error_response(request_id, "internal_error", "Internal server error")
                )
            return

        if request_id is not None:
            session.channel.send(make_response(request_id, result))

    def _reply_error(self, session: PeerSession, request_id, error: SignalingError) -> None:
        if request_id is None:
            return
        session.channel.send(make_error_response(request_id, error.code, error.message))

    # -- room membership ------------------------------------------------------

    @asynccontextmanager
    async def _locked_room(self, session: PeerSession, topology: str) -> AsyncIterator[Room]:
        """Hold the lock of the session's current room and yield the room."""
        room_id = session.room_id
        if room_id is None:
            raise ProtocolError("Not in a room")
        async with self.registry.lock(room_id):
            room = self.registry.get(room_id)
            if session.room_id != room_id or room is None:
                raise NotFoundError(f"Room {room_id} is gone")
            if room.topology != topology:
                raise ProtocolError(f"Room {room_id} uses the {room.topology} topology")
            if topology == TOPOLOGY_HUB and not session.hub_joined:
                raise ProtocolError("hub.join has not completed")
            yield room

    def _enter_room(self, session: PeerSession, room_id: str, topology: str):
        """Register membership; returns (other members, whether this is a new join)."""
        is_new = not self.registry.is_member(room_id, session.peer_id)
        others = self.registry.join(room_id, session.peer_id, topology)
        if is_new:
            session.room_id = room_id
            session.topology = topology
            session.join_epoch += 1
        return others, is_new

    def _announce_join(self, session: PeerSession) -> None:
        self.relay.broadcast(
            session.room_id,
            session.peer_id,
            make_notification(
                MSG_PEER_JOINED,
                event_id=event_id(
                    MSG_PEER_JOINED, session.room_id, session.peer_id, session.join_epoch
                ),
                peerId=session.peer_id,
                room=session.room_id,
            ),
        )

    async def _handle_join(self, session: PeerSession, data: dict) -> dict:
        (room_id,) = require(data, "room")
        async with self.registry.lock(room_id):
            others, is_new = self._enter_room(session, room_id, TOPOLOGY_MESH)
            if is_new:
                room = self.registry.get(room_id)
                session.roles.update(self.mesh.on_join(room, session.peer_id, others))
                for peer_id in others:
                    other = self.sessions.get(peer_id)
                    if other is not None:
                        other.roles[session.peer_id] = Role.INITIATOR
                self._announce_join(session)
            # A repeated join only reports the members that were here first.
            peers = [p for p in others if session.roles.get(p) is Role.RESPONDER]
        return {"room": room_id, "peers": peers}

    async def _handle_hub_join(self, session: PeerSession, data: dict) -> dict:
        (room_id,) = require(data, "room")
        async with self.registry.lock(room_id):
            others, is_new = self._enter_room(session, room_id, TOPOLOGY_HUB)
            room = self.registry.get(room_id)
            try:
                context = await self.hub.ensure_routing_context(room)
            except BaseException:
                # Cancellation included: an unannounced join leaves no membership.
                if is_new:
                    self.registry.leave(room_id, session.peer_id)
                    session.reset_room_state()
                raise
            session.hub_joined = True
            if is_new:
                self._announce_join(session)
        return {"room": room_id, "rtpCapabilities": context.rtp_capabilities, "peers": others}

    async def _handle_leave(self, session: PeerSession, data: dict) -> dict:
        room_id = data.get("room")
        if room_id is not None and room_id != session.room_id:
            return {"left": False}
        return {"left": await self._leave_room(session)}

    async def _leave_room(self, session: PeerSession) -> bool:
        room_id = session.room_id
        if room_id is None:
            return False
        async with self.registry.lock(room_id):
            if session.room_id != room_id:
                return False
            self._release_membership(session, room_id)
        return True

    def _release_membership(self, session: PeerSession, room_id: str) -> None:
        """Close the peer's room state and announce its departure. Room lock held."""
        room = self.registry.get(room_id)
        if room is not None and session.peer_id in room.members:
            if room.topology == TOPOLOGY_HUB:
                self.hub.release_peer(session, room)
            else:
                self.mesh.drop_peer(room, session.peer_id)
                for peer_id in room.members:
                    other = self.sessions.get(peer_id)
                    if other is not None:
                        other.roles.pop(session.peer_id, None)

            self.registry.leave(room_id, session.peer_id)
            self.relay.broadcast(
                room_id,
                session.peer_id,
                make_notification(
                    MSG_PEER_LEFT,
                    event_id=event_id(MSG_PEER_LEFT, room_id, session.peer_id, session.join_epoch),
                    peerId=session.peer_id,
                    room=room_id,
                ),
            )
        session.reset_room_state()

    # -- mesh -----------------------------------------------------------------

    async def _handle_signal(self, session: PeerSession, data: dict) -> dict:
        target, payload = require(data, "to", "payload")
        async with self._locked_room(session, TOPOLOGY_MESH) as room:
            if target not in self.relay.channels:
                raise NotFoundError(f"Peer {target} is not connected")
            pair = self.mesh.accept_signal(room, session.peer_id, target, payload)
            self.relay.send_to(
                target,
                make_notification(
                    MSG_SIGNAL, **{"from": session.peer_id, "to": target, "payload": payload}
                ),
            )
            self.mesh.mark_delivered(pair, payload["type"])
        return {}

    # -- hub ------------------------------------------------------------------

    async def _handle_create_transport(self, session: PeerSession, data: dict) -> dict:
        (direction,) = require(data, "direction")
        async with self._locked_room(session, TOPOLOGY_HUB) as room:
            return await self.hub.create_transport(session, room, direction)

    async def _handle_connect_transport(self, session: PeerSession, data: dict) -> dict:
        transport_id, dtls_parameters = require(data, "transportId", "dtlsParameters")
        async with self._locked_room(session, TOPOLOGY_HUB) as room:
            return await self.hub.connect_transport(session, room, transport_id, dtls_parameters)

    async def _handle_produce(self, session: PeerSession, data: dict) -> dict:
        transport_id, kind = require(data, "transportId", "kind")
        async with self._locked_room(session, TOPOLOGY_HUB) as room:
            return await self.hub.produce(
                session, room, transport_id, kind, data.get("rtpParameters") or {}
            )

    async def _handle_consume(self, session: PeerSession, data: dict) -> dict:
        transport_id, producer_id, rtp_capabilities = require(
            data, "transportId", "producerId", "rtpCapabilities"
        )
        async with self._locked_room(session, TOPOLOGY_HUB) as room:
            return await self.hub.consume(
                session, room, transport_id, producer_id, rtp_capabilities
            )

    async def _handle_resume(self, session: PeerSession, data: dict) -> dict:
        (consumer_id,) = require(data, "consumerId")
        async with self._locked_room(session, TOPOLOGY_HUB) as room:
            return await self.hub.resume(session, room, consumer_id)

    async def _handle_get_producers(self, session: PeerSession, data: dict) -> dict:
        async with self._locked_room(session, TOPOLOGY_HUB) as room:
            return self.hub.list_producers(session, room)

    async def _handle_close_producer(self, session: PeerSession, data: dict) -> dict:
        (producer_id,) = require(data, "producerId")
        async with self._locked_room(session, TOPOLOGY_HUB) as room:
            return await self.hub.close_producer(session, room, producer_id)

    async def _handle_close_transport(self, session: PeerSession, data: dict) -> dict:
        (transport_id,) = require(data, "transportId")
        async with self._locked_room(session, TOPOLOGY_HUB) as room:
            return await self.hub.close_transport(session, room, transport_id)

    # -- inspection -----------------------------------------------------------

    def handles_of(self, peer_id: str) -> List[str]:
        """Everything still reachable from the registry that belongs to ``peer_id``.

        Covers room membership, published units, the peer's own session and
        other members' consumers of its units. Empty after teardown.
        """
        found = []
        room_id = self.registry.room_of(peer_id)
        if room_id is not None:
            found.append(f"room:{room_id}")
            room = self.registry.get(room_id)
            if room is not None:
                found.extend(
                    f"producer:{unit.producer_id}"
                    for unit in room.published.values()
                    if unit.peer_id == peer_id
                )
        session = self.sessions.get(peer_id)
        if session is not None:
            found.extend(f"handle:{handle}" for handle in session.media_handles())
        for other in self.sessions.values():
            found.extend(
                f"consumer:{record.id}"
                for record in other.consumers.values()
                if record.producer_peer_id == peer_id
            )
        return found

    # -- serving --------------------------------------------------------------

    async def serve(self, host: Optional[str] = None, port: Optional[int] = None) -> None:
        """Run the server until cancelled."""
        host = host or self.config.host
        port = port or self.config.port
        async with websockets.serve(
            self.handler,
            host,
            port,
            ping_interval=self.config.ping_interval,
            ping_timeout=self.config.ping_timeout,
        ):
            logger.info(f"Signaling server running on ws://{host}:{port}")
            await asyncio.Future()  # Run forever
