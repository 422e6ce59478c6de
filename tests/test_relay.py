"""Tests for per-peer channels and room fan-out."""

import asyncio

import pytest

from meet_rtc.protocol import make_notification
from meet_rtc.server.registry import RoomRegistry
from meet_rtc.server.relay import EventRelay, PeerChannel

from conftest import FakeWebSocket


class SlowWebSocket(FakeWebSocket):
    """Yields to the loop on every send, with shrinking delays."""

    def __init__(self):
        super().__init__()
        self._delays = iter([0.03, 0.02, 0.01, 0, 0, 0])

    async def send(self, data):
        await asyncio.sleep(next(self._delays, 0))
        await super().send(data)


class BrokenWebSocket(FakeWebSocket):
    async def send(self, data):
        raise RuntimeError("socket exploded")


def event(name, n):
    return make_notification(name, event_id=f"{name}:{n}", n=n)


class TestPeerChannel:
    @pytest.mark.asyncio
    async def test_frames_written_in_enqueue_order(self):
        ws = SlowWebSocket()
        channel = PeerChannel("p1", ws)
        channel.start()

        for n in range(6):
            channel.send(event("tick", n))
        await channel.flush()

        assert [m["data"]["n"] for m in ws.messages] == list(range(6))
        await channel.close()

    @pytest.mark.asyncio
    async def test_duplicate_event_id_suppressed(self):
        ws = FakeWebSocket()
        channel = PeerChannel("p1", ws)
        channel.start()

        assert channel.send_event(event("peerLeft", 1)) is True
        assert channel.send_event(event("peerLeft", 1)) is False
        await channel.flush()

        assert len(ws.messages) == 1
        await channel.close()

    @pytest.mark.asyncio
    async def test_history_is_bounded(self):
        ws = FakeWebSocket()
        channel = PeerChannel("p1", ws, history_size=2)
        channel.start()

        for n in range(3):
            channel.send_event(event("e", n))
        # The oldest id has been forgotten and is accepted again.
        assert channel.send_event(event("e", 0)) is True
        assert channel.send_event(event("e", 2)) is False
        await channel.close()

    @pytest.mark.asyncio
    async def test_frames_without_event_id_never_deduped(self):
        ws = FakeWebSocket()
        channel = PeerChannel("p1", ws)
        channel.start()

        frame = {"type": "response", "id": 1, "ok": True, "data": {}}
        channel.send_event(frame)
        channel.send_event(frame)
        await channel.flush()

        assert len(ws.messages) == 2
        await channel.close()

    @pytest.mark.asyncio
    async def test_closed_channel_drops_frames(self):
        ws = FakeWebSocket()
        channel = PeerChannel("p1", ws)
        channel.start()
        await channel.close()

        assert channel.send(event("tick", 1)) is False
        assert ws.sent == []

    @pytest.mark.asyncio
    async def test_send_failure_does_not_stop_writer(self):
        ws = BrokenWebSocket()
        channel = PeerChannel("p1", ws)
        channel.start()

        channel.send(event("tick", 1))
        channel.send(event("tick", 2))
        await channel.flush()

        assert channel.closed is False
        await channel.close()


class TestEventRelay:
    @pytest.fixture
    def relay(self):
        """Three members of r1; channels are never started, frames just queue."""
        registry = RoomRegistry()
        relay = EventRelay(registry)
        for peer_id in ("a", "b", "c"):
            registry.join("r1", peer_id)
            relay.register(PeerChannel(peer_id, FakeWebSocket()))
        return relay

    def test_broadcast_excludes_origin(self, relay):
        delivered = relay.broadcast("r1", "a", event("peerJoined", 1))
        assert delivered == ["b", "c"]

    def test_broadcast_is_idempotent_per_event(self, relay):
        relay.broadcast("r1", "a", event("producerClosed", 7))
        assert relay.broadcast("r1", "a", event("producerClosed", 7)) == []

    def test_send_to_unknown_peer(self, relay):
        assert relay.send_to("ghost", event("x", 1)) is False

    def test_unregistered_peer_gets_nothing(self, relay):
        relay.unregister("b")
        assert relay.broadcast("r1", None, event("x", 1)) == ["a", "c"]

    def test_broadcast_to_missing_room(self, relay):
        assert relay.broadcast("nope", None, event("x", 1)) == []
