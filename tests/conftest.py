"""Shared fixtures: an in-memory websocket and a scripted participant."""

import itertools
import json

import pytest

from meet_rtc.config import Config
from meet_rtc.protocol import (
    DIRECTION_SEND,
    MSG_HUB_CONNECT_TRANSPORT,
    MSG_HUB_CREATE_TRANSPORT,
    MSG_HUB_JOIN,
    MSG_HUB_PRODUCE,
    MSG_RESPONSE,
    make_request,
)
from meet_rtc.server.signaling_server import SignalingServer

DTLS = {
    "role": "client",
    "fingerprints": [{"algorithm": "sha-256", "value": "AB:CD:EF"}],
}


class FakeWebSocket:
    """Records every frame the server writes."""

    def __init__(self):
        self.sent = []
        self.closed = False

    async def send(self, data):
        self.sent.append(data)

    async def close(self):
        self.closed = True

    @property
    def messages(self):
        return [json.loads(frame) for frame in self.sent]

    def of_type(self, msg_type):
        return [m for m in self.messages if m["type"] == msg_type]

    def response(self, request_id):
        for message in self.messages:
            if message["type"] == MSG_RESPONSE and message["id"] == request_id:
                return message
        return None


class Participant:
    """A peer driven directly through the server's request handler."""

    def __init__(self, server: SignalingServer):
        self.server = server
        self.ws = FakeWebSocket()
        self.session = server.open_session(self.ws)
        self._ids = itertools.count(1)

    @property
    def id(self):
        return self.session.peer_id

    async def request(self, msg_type, **data):
        """Send a request and return the full response frame."""
        request_id = next(self._ids)
        await self.server.handle_message(self.session, make_request(msg_type, request_id, **data))
        await self.flush()
        return self.ws.response(request_id)

    async def ok(self, msg_type, **data):
        """Send a request that must succeed and return its data."""
        response = await self.request(msg_type, **data)
        assert response["ok"], response
        return response["data"]

    async def flush(self):
        await self.session.channel.flush()

    def notifications(self, msg_type):
        return [m["data"] for m in self.ws.of_type(msg_type)]

    async def hub_join(self, room):
        return await self.ok(MSG_HUB_JOIN, room=room)

    async def open_transport(self, direction):
        params = await self.ok(MSG_HUB_CREATE_TRANSPORT, direction=direction)
        await self.ok(MSG_HUB_CONNECT_TRANSPORT, transportId=params["id"], dtlsParameters=DTLS)
        return params["id"]

    async def publish(self, room, kinds=("audio", "video")):
        """hub.join, open a send transport and produce ``kinds``; returns producer ids."""
        await self.hub_join(room)
        transport_id = await self.open_transport(DIRECTION_SEND)
        producer_ids = []
        for kind in kinds:
            data = await self.ok(MSG_HUB_PRODUCE, transportId=transport_id, kind=kind)
            producer_ids.append(data["id"])
        return producer_ids


@pytest.fixture
def server():
    """Signaling server with default configuration (no config files read)."""
    return SignalingServer(config=Config())


@pytest.fixture
def connect(server):
    """Factory connecting a new participant to ``server``."""

    def _connect():
        return Participant(server)

    return _connect
