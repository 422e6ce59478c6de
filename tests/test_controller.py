"""Tests for the participant-side session controllers."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from meet_rtc.client.controller import HubController, MeshController
from meet_rtc.client.device import HeadlessDevice
from meet_rtc.client.peer_link import PeerLink
from meet_rtc.errors import CapabilityMismatchError, NotFoundError, ProtocolError
from meet_rtc.server.mesh import PairState, Role

CAPS = {
    "codecs": [
        {"kind": "audio", "mimeType": "audio/opus", "clockRate": 48000, "channels": 2},
        {"kind": "video", "mimeType": "video/VP8", "clockRate": 90000},
    ],
    "headerExtensions": [],
}


class FakeLink(PeerLink):
    """Records what the controller asks of it."""

    def __init__(self, peer_id):
        super().__init__(peer_id)
        self.calls = []
        self.closed = False

    async def create_offer(self):
        self.calls.append("create_offer")
        return {"type": "offer", "sdp": f"offer-to-{self.peer_id}"}

    async def accept_offer(self, offer):
        self.calls.append(("accept_offer", offer["sdp"]))
        return {"type": "answer", "sdp": f"answer-to-{self.peer_id}"}

    async def accept_answer(self, answer):
        self.calls.append(("accept_answer", answer["sdp"]))

    async def add_candidate(self, candidate):
        self.calls.append(("candidate", candidate.get("candidate")))

    async def close(self):
        self.closed = True


class FakeServer:
    """Scripted server answers for the hub controller."""

    def __init__(self, peers=(), producers=()):
        self.peers = list(peers)
        self.producers = list(producers)
        self.failures = {}
        self.gate = None

    async def handle(self, msg_type, **data):
        if msg_type in self.failures:
            raise self.failures[msg_type]
        if msg_type == "hub.join":
            return {"room": data["room"], "rtpCapabilities": CAPS, "peers": self.peers}
        if msg_type == "hub.createTransport":
            return {"id": f"t-{data['direction']}"}
        if msg_type == "hub.produce":
            return {"id": f"prod-{data['kind']}"}
        if msg_type == "hub.getProducers":
            return {"producers": self.producers}
        if msg_type == "hub.consume":
            if self.gate is not None:
                await self.gate.wait()
            unit = next(u for u in self.all_units if u["producerId"] == data["producerId"])
            return dict(unit, id=f"c-{unit['producerId']}", rtpParameters={})
        return {}

    @property
    def all_units(self):
        return self.producers + [
            unit("late", "p2", "video"),
            unit("x-audio", "p1", "audio"),
        ]


def unit(producer_id, peer_id, kind):
    return {"producerId": producer_id, "peerId": peer_id, "kind": kind}


def notification(msg_type, event_id, **data):
    return {"type": msg_type, "event_id": event_id, "data": data}


def fake_signaling(side_effect=None):
    signaling = MagicMock()
    signaling.peer_id = "me"
    signaling.request = AsyncMock(side_effect=side_effect, return_value={})
    return signaling


def sent(signaling, msg_type=None):
    """(type, data) of every request the controller made."""
    calls = [(c.args[0], c.kwargs) for c in signaling.request.await_args_list]
    if msg_type is None:
        return calls
    return [data for t, data in calls if t == msg_type]


@pytest.fixture
def links():
    return {}


@pytest.fixture
def mesh(links):
    def factory(peer_id):
        links[peer_id] = FakeLink(peer_id)
        return links[peer_id]

    async def respond(msg_type, **data):
        if msg_type == "join":
            return {"room": data["room"], "peers": ["p1"]}
        return {}

    controller = MeshController(fake_signaling(respond), link_factory=factory)
    controller.changes = []
    controller.on_change = lambda event, info: controller.changes.append((event, info))
    return controller


class TestMeshJoin:
    @pytest.mark.asyncio
    async def test_join_waits_for_offers_from_present_members(self, mesh, links):
        peers = await mesh.join("r1")

        assert peers == ["p1"]
        assert mesh.peers["p1"].role is Role.RESPONDER
        assert links["p1"].calls == []
        assert sent(mesh.signaling, "signal") == []
        assert ("peer-added", {"peer_id": "p1"}) in mesh.changes

    @pytest.mark.asyncio
    async def test_newcomer_gets_an_offer(self, mesh, links):
        await mesh.join("r1")
        await mesh.handle_notification(notification("peerJoined", "peerJoined:r1:p3:1", peerId="p3"))

        record = mesh.peers["p3"]
        assert record.role is Role.INITIATOR
        assert record.state is PairState.OFFERING
        assert record.attempt == 1
        assert sent(mesh.signaling, "signal") == [
            {"to": "p3", "payload": {"type": "offer", "sdp": "offer-to-p3"}}
        ]

    @pytest.mark.asyncio
    async def test_duplicate_peer_joined_sends_one_offer(self, mesh, links):
        await mesh.join("r1")
        event = notification("peerJoined", "peerJoined:r1:p3:1", peerId="p3")
        await mesh.handle_notification(event)
        await mesh.handle_notification(event)

        assert links["p3"].calls == ["create_offer"]

    @pytest.mark.asyncio
    async def test_peer_joined_for_self_is_ignored(self, mesh):
        await mesh.handle_notification(notification("peerJoined", "peerJoined:r1:me:1", peerId="me"))
        assert mesh.peers == {}


class TestMeshSignals:
    @pytest.mark.asyncio
    async def test_offer_is_answered(self, mesh, links):
        await mesh.join("r1")
        await mesh.handle_notification(
            notification("signal", None, **{"from": "p1", "payload": {"type": "offer", "sdp": "o1"}})
        )

        assert links["p1"].calls == [("accept_offer", "o1")]
        assert sent(mesh.signaling, "signal") == [
            {"to": "p1", "payload": {"type": "answer", "sdp": "answer-to-p1"}}
        ]
        assert mesh.peers["p1"].state is PairState.ANSWERED

    @pytest.mark.asyncio
    async def test_offer_before_join_response_creates_responder(self, mesh, links):
        await mesh.handle_notification(
            notification("signal", None, **{"from": "p1", "payload": {"type": "offer", "sdp": "o1"}})
        )
        await mesh.join("r1")

        assert mesh.peers["p1"].role is Role.RESPONDER
        assert links["p1"].calls == [("accept_offer", "o1")]

    @pytest.mark.asyncio
    async def test_early_candidates_applied_once_in_order(self, mesh, links):
        for n in range(3):
            await mesh.handle_notification(
                notification(
                    "signal", None,
                    **{"from": "p1", "payload": {"type": "candidate", "candidate": {"candidate": n}}},
                )
            )
        assert len(mesh.pending) == 3

        await mesh.join("r1")

        assert links["p1"].calls == [("candidate", 0), ("candidate", 1), ("candidate", 2)]
        assert len(mesh.pending) == 0

    @pytest.mark.asyncio
    async def test_answer_completes_offer(self, mesh, links):
        await mesh.join("r1")
        await mesh.handle_notification(notification("peerJoined", "peerJoined:r1:p3:1", peerId="p3"))
        await mesh.handle_notification(
            notification("signal", None, **{"from": "p3", "payload": {"type": "answer", "sdp": "a3"}})
        )

        assert links["p3"].calls == ["create_offer", ("accept_answer", "a3")]
        assert mesh.peers["p3"].state is PairState.ANSWERED

        links["p3"].on_state("connected")
        assert mesh.peers["p3"].state is PairState.CONNECTED
        assert ("link-state", {"peer_id": "p3", "state": "connected"}) in mesh.changes

    @pytest.mark.asyncio
    async def test_initiator_ignores_offer(self, mesh, links):
        await mesh.join("r1")
        await mesh.handle_notification(notification("peerJoined", "peerJoined:r1:p3:1", peerId="p3"))
        await mesh.handle_notification(
            notification("signal", None, **{"from": "p3", "payload": {"type": "offer", "sdp": "glare"}})
        )

        assert links["p3"].calls == ["create_offer"]

    @pytest.mark.asyncio
    async def test_responder_may_not_offer(self, mesh):
        await mesh.join("r1")
        with pytest.raises(ProtocolError):
            await mesh.send_offer(mesh.peers["p1"])


class TestMeshPresentation:
    @pytest.mark.asyncio
    async def test_same_kind_replaces_track(self, mesh, links):
        await mesh.join("r1")
        links["p1"].on_track("video", "track-1")
        links["p1"].on_track("video", "track-2")

        record = mesh.peers["p1"]
        assert record.presentations["video"].track == "track-2"
        track_events = [e for e, _ in mesh.changes if e.startswith("track")]
        assert track_events == ["track-added", "track-removed", "track-added"]


class TestMeshLeave:
    @pytest.mark.asyncio
    async def test_peer_left_releases_record(self, mesh, links):
        await mesh.join("r1")
        links["p1"].on_track("audio", "mic")
        mesh.pending.push("p1", {"from": "p1", "payload": {"type": "candidate"}})

        await mesh.handle_notification(notification("peerLeft", "peerLeft:r1:p1:1", peerId="p1"))

        assert "p1" not in mesh.peers
        assert links["p1"].closed
        assert "p1" not in mesh.pending
        assert ("track-removed", {"peer_id": "p1", "kind": "audio"}) in mesh.changes
        assert mesh.changes[-1] == ("peer-removed", {"peer_id": "p1"})

    @pytest.mark.asyncio
    async def test_leave_closes_every_link(self, mesh, links):
        await mesh.join("r1")
        await mesh.handle_notification(notification("peerJoined", "peerJoined:r1:p3:1", peerId="p3"))

        await mesh.leave()

        assert sent(mesh.signaling, "leave") == [{"room": "r1"}]
        assert mesh.peers == {}
        assert all(link.closed for link in links.values())
        assert mesh.room_id is None

    @pytest.mark.asyncio
    async def test_leave_tolerates_unacknowledged_request(self, mesh):
        await mesh.join("r1")
        mesh.signaling.request.side_effect = ConnectionError("gone")

        await mesh.leave()

        assert mesh.peers == {}


@pytest.fixture
def hub_server():
    return FakeServer(peers=["p1"], producers=[unit("x-audio", "p1", "audio")])


@pytest.fixture
def device():
    return HeadlessDevice()


@pytest.fixture
def hub(hub_server, device):
    controller = HubController(fake_signaling(hub_server.handle), device)
    controller.changes = []
    controller.on_change = lambda event, info: controller.changes.append((event, info))
    return controller


class TestHubJoin:
    @pytest.mark.asyncio
    async def test_joiner_sequence(self, hub, device):
        await hub.join("r2")

        assert [t for t, _ in sent(hub.signaling)] == [
            "hub.join",
            "hub.createTransport",
            "hub.connectTransport",
            "hub.produce",
            "hub.produce",
            "hub.createTransport",
            "hub.connectTransport",
            "hub.getProducers",
            "hub.consume",
            "hub.resume",
        ]
        assert device.loaded
        assert hub.producers == {"audio": "prod-audio", "video": "prod-video"}
        assert hub.peers["p1"].presentations["audio"].producer_id == "x-audio"

    @pytest.mark.asyncio
    async def test_consume_sends_device_capabilities(self, hub):
        await hub.join("r2")
        [consume] = sent(hub.signaling, "hub.consume")
        assert consume["transportId"] == "t-recv"
        assert consume["rtpCapabilities"]["codecs"] == CAPS["codecs"]

    @pytest.mark.asyncio
    async def test_receive_only_device_skips_send_leg(self, hub_server):
        controller = HubController(fake_signaling(hub_server.handle), HeadlessDevice(kinds=()))
        await controller.join("r2")

        directions = [d["direction"] for d in sent(controller.signaling, "hub.createTransport")]
        assert directions == ["recv"]
        assert controller.send_transport_id is None

    @pytest.mark.asyncio
    async def test_announcement_before_recv_leg_is_consumed_once(self, hub):
        await hub.handle_notification(
            notification("producerAvailable", "producerAvailable:x-audio", **unit("x-audio", "p1", "audio"))
        )
        await hub.join("r2")

        assert len(sent(hub.signaling, "hub.consume")) == 1
        assert len(sent(hub.signaling, "hub.resume")) == 1


class TestHubEvents:
    @pytest.mark.asyncio
    async def test_new_producer_is_consumed(self, hub):
        await hub.join("r2")
        await hub.handle_notification(
            notification("producerAvailable", "producerAvailable:late", **unit("late", "p2", "video"))
        )

        assert hub.peers["p2"].presentations["video"].producer_id == "late"
        assert hub.peers["p2"].consumers == {"late": "c-late"}

    @pytest.mark.asyncio
    async def test_duplicate_event_ids_are_dropped(self, hub):
        await hub.join("r2")
        event = notification("producerAvailable", "producerAvailable:late", **unit("late", "p2", "video"))
        await hub.handle_notification(event)
        await hub.handle_notification(event)

        producer_ids = [c["producerId"] for c in sent(hub.signaling, "hub.consume")]
        assert producer_ids.count("late") == 1

    @pytest.mark.asyncio
    async def test_producer_closed_removes_track(self, hub, device):
        await hub.join("r2")
        await hub.handle_notification(
            notification("producerClosed", "producerClosed:x-audio", **unit("x-audio", "p1", "audio"))
        )

        assert "p1" not in hub.peers
        assert device.tracks == {}
        assert ("track-removed", {"peer_id": "p1", "kind": "audio"}) in hub.changes

    @pytest.mark.asyncio
    async def test_close_during_consume_discards_result(self, hub, hub_server):
        await hub.join("r2")
        hub_server.gate = asyncio.Event()

        task = asyncio.create_task(
            hub.handle_notification(
                notification("producerAvailable", "producerAvailable:late", **unit("late", "p2", "video"))
            )
        )
        while "late" not in hub._in_flight:
            await asyncio.sleep(0)
        await hub.handle_notification(
            notification("producerClosed", "producerClosed:late", **unit("late", "p2", "video"))
        )
        hub_server.gate.set()
        await task

        resumed = [r["consumerId"] for r in sent(hub.signaling, "hub.resume")]
        assert "c-late" not in resumed
        assert "p2" not in hub.peers
        assert hub._tombstones == set()

    @pytest.mark.asyncio
    async def test_capability_mismatch_presents_nothing(self, hub, hub_server):
        hub_server.failures["hub.consume"] = CapabilityMismatchError("no VP8")
        await hub.join("r2")

        assert hub.peers["p1"].presentations == {}
        assert sent(hub.signaling, "hub.resume") == []

    @pytest.mark.asyncio
    async def test_producer_gone_before_consume(self, hub, hub_server):
        hub_server.failures["hub.consume"] = NotFoundError("gone")
        await hub.join("r2")

        assert hub._tombstones == set()
        assert hub.peers["p1"].presentations == {}

    @pytest.mark.asyncio
    async def test_peer_left_closes_its_consumers(self, hub, device):
        await hub.join("r2")
        await hub.handle_notification(notification("peerLeft", "peerLeft:r2:p1:1", peerId="p1"))

        assert "p1" not in hub.peers
        assert device.tracks == {}

    @pytest.mark.asyncio
    async def test_transport_state_is_reported(self, hub):
        await hub.join("r2")
        await hub.handle_notification(
            notification(
                "transportStateChanged", "transportStateChanged:t-recv:3",
                transportId="t-recv", state="disconnected",
            )
        )
        assert hub.changes[-1] == (
            "transport-state", {"transport_id": "t-recv", "state": "disconnected"}
        )

    @pytest.mark.asyncio
    async def test_leave_resets_controller(self, hub, device):
        await hub.join("r2")
        await hub.leave()

        assert hub.peers == {}
        assert device.tracks == {}
        assert hub.recv_ready is False
        assert hub.producers == {}
