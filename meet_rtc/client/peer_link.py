"""Direct media links between two participants of a mesh room.

``AiortcPeerLink`` wraps one ``RTCPeerConnection``. Offers and answers are
plain dicts (``{"type", "sdp"}``) so they can go straight into a signal
payload. Remote candidates that arrive before the remote description are
buffered and applied once it is set.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterable, List, Optional

from aiortc import RTCPeerConnection, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp

logger = logging.getLogger(__name__)

TrackCallback = Callable[[str, Any], None]
StateCallback = Callable[[str], None]


class PeerLink(ABC):
    """One negotiated media link toward a remote peer.

    Attributes:
        peer_id: Remote peer this link connects to.
        on_track: Callback(kind, track) fired for every remote track.
        on_state: Callback(state) fired on connection state changes.
    """

    def __init__(self, peer_id: str):
        self.peer_id = peer_id
        self.on_track: Optional[TrackCallback] = None
        self.on_state: Optional[StateCallback] = None

    @abstractmethod
    async def create_offer(self) -> dict:
        """Create and apply a local offer."""

    @abstractmethod
    async def accept_offer(self, offer: dict) -> dict:
        """Apply a remote offer and return the local answer."""

    @abstractmethod
    async def accept_answer(self, answer: dict) -> None:
        """Apply the remote answer to our outstanding offer."""

    @abstractmethod
    async def add_candidate(self, candidate: dict) -> None:
        """Apply a remote ICE candidate (buffered if it arrives early)."""

    @abstractmethod
    async def close(self) -> None:
        """Tear the link down."""


class AiortcPeerLink(PeerLink):
    """PeerLink backed by aiortc."""

    def __init__(self, peer_id: str, tracks: Iterable[Any] = ()):
        super().__init__(peer_id)
        self.pc = RTCPeerConnection()
        self.pending_candidates: List[Dict[str, Any]] = []
        self._tracks = list(tracks)

        for track in self._tracks:
            self.pc.addTrack(track)

        @self.pc.on("track")
        def on_track(track):
            logger.info(f"Received {track.kind} track from {self.peer_id}")
            if self.on_track is not None:
                self.on_track(track.kind, track)

        @self.pc.on("connectionstatechange")
        async def on_connection_state_change():
            state = self.pc.connectionState
            logger.info(f"Link to {self.peer_id} is {state}")
            if self.on_state is not None:
                self.on_state(state)

    def _ensure_receivers(self) -> None:
        # Without local tracks, still ask the remote side for its media.
        sending = {track.kind for track in self._tracks}
        present = {t.kind for t in self.pc.getTransceivers()}
        for kind in ("audio", "video"):
            if kind not in sending and kind not in present:
                self.pc.addTransceiver(kind, direction="recvonly")

    async def create_offer(self) -> dict:
        self._ensure_receivers()
        offer = await self.pc.createOffer()
        await self.pc.setLocalDescription(offer)
        return {"type": "offer", "sdp": self.pc.localDescription.sdp}

    async def accept_offer(self, offer: dict) -> dict:
        await self.pc.setRemoteDescription(RTCSessionDescription(sdp=offer["sdp"], type="offer"))
        await self._flush_candidates()
        answer = await self.pc.createAnswer()
        await self.pc.setLocalDescription(answer)
        return {"type": "answer", "sdp": self.pc.localDescription.sdp}

    async def accept_answer(self, answer: dict) -> None:
        await self.pc.setRemoteDescription(
            RTCSessionDescription(sdp=answer["sdp"], type="answer")
        )
        await self._flush_candidates()

    async def add_candidate(self, candidate: dict) -> None:
        if not candidate or not candidate.get("candidate"):
            logger.debug(f"End of candidates from {self.peer_id}")
            return
        if self.pc.remoteDescription is None:
            self.pending_candidates.append(candidate)
            logger.debug(f"Buffered ICE candidate from {self.peer_id}")
            return
        await self._apply_candidate(candidate)

    async def _flush_candidates(self) -> None:
        pending, self.pending_candidates = self.pending_candidates, []
        for candidate in pending:
            await self._apply_candidate(candidate)

    async def _apply_candidate(self, candidate: dict) -> None:
        sdp = candidate["candidate"]
        if sdp.startswith("candidate:"):
            sdp = sdp[len("candidate:"):]
        try:
            ice = candidate_from_sdp(sdp)
        except (ValueError, IndexError) as e:
            logger.warning(f"Ignoring malformed ICE candidate from {self.peer_id}: {e}")
            return
        ice.sdpMid = candidate.get("sdpMid")
        ice.sdpMLineIndex = candidate.get("sdpMLineIndex")
        await self.pc.addIceCandidate(ice)
        logger.debug(f"Added ICE candidate from {self.peer_id}")

    async def close(self) -> None:
        self.pending_candidates.clear()
        await self.pc.close()
