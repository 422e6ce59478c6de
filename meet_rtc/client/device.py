"""Local media device for hub rooms.

The device is the participant-side counterpart of the routing context: it
learns the room's RTP capabilities, supplies the local DTLS parameters for
each transport, describes the tracks to publish and turns consumer
parameters into something playable.

``HeadlessDevice`` does all of that without capturing or rendering media.
It is what ``meet-rtc join --topology hub`` runs, and what the tests use.
"""

import logging
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Iterable, Optional

from meet_rtc.errors import CapabilityMismatchError, ProtocolError
from meet_rtc.protocol import MEDIA_KINDS

logger = logging.getLogger(__name__)


class HubDevice(ABC):
    """Participant-side media stack used by the hub controller."""

    @property
    @abstractmethod
    def loaded(self) -> bool:
        """Whether ``load`` has been called."""

    @property
    @abstractmethod
    def rtp_capabilities(self) -> dict:
        """What this device can receive; sent with every consume request."""

    @abstractmethod
    async def load(self, router_rtp_capabilities: dict) -> None:
        """Load the room's capabilities."""

    @abstractmethod
    def dtls_parameters(self, transport_params: dict) -> dict:
        """Local DTLS parameters for connecting the given transport."""

    @abstractmethod
    def local_tracks(self) -> Dict[str, dict]:
        """Tracks to publish: kind -> rtpParameters."""

    @abstractmethod
    def attach_consumer(self, consumer: dict):
        """Create the local track for a consumer; returns the track."""

    @abstractmethod
    def close_consumer(self, consumer_id: str) -> None:
        """Release the local side of a consumer."""


@dataclass
class HeadlessTrack:
    """Stand-in for a received track."""

    kind: str
    consumer_id: str
    producer_id: str
    ended: bool = False

    def stop(self) -> None:
        self.ended = True


class HeadlessDevice(HubDevice):
    """Device that negotiates like a real one but handles no media.

    Args:
        kinds: Kinds to publish (default: audio and video).
        receive_codecs: Mime types this device can decode; None means every
            codec the room offers.
    """

    def __init__(
        self,
        kinds: Iterable[str] = MEDIA_KINDS,
        receive_codecs: Optional[Iterable[str]] = None,
    ):
        self.kinds = [kind for kind in kinds if kind in MEDIA_KINDS]
        self.receive_codecs = (
            {mime.lower() for mime in receive_codecs} if receive_codecs is not None else None
        )
        self.router_capabilities: Optional[dict] = None
        self.tracks: Dict[str, HeadlessTrack] = {}
        self._fingerprint = ":".join(secrets.token_hex(1).upper() for _ in range(32))

    @property
    def loaded(self) -> bool:
        return self.router_capabilities is not None

    @property
    def rtp_capabilities(self) -> dict:
        if not self.loaded:
            raise ProtocolError("Device not loaded")
        codecs = [
            codec
            for codec in self.router_capabilities.get("codecs", [])
            if self.receive_codecs is None
            or str(codec.get("mimeType", "")).lower() in self.receive_codecs
        ]
        return {"codecs": codecs, "headerExtensions": []}

    async def load(self, router_rtp_capabilities: dict) -> None:
        if self.loaded:
            return
        self.router_capabilities = router_rtp_capabilities or {"codecs": []}
        logger.info(
            f"Device loaded with {len(self.router_capabilities.get('codecs', []))} codec(s)"
        )

    def dtls_parameters(self, transport_params: dict) -> dict:
        return {
            "role": "client",
            "fingerprints": [{"algorithm": "sha-256", "value": self._fingerprint}],
        }

    def local_tracks(self) -> Dict[str, dict]:
        if not self.loaded:
            raise ProtocolError("Device not loaded")
        tracks = {}
        for kind in self.kinds:
            codec = next(
                (c for c in self.router_capabilities.get("codecs", []) if c.get("kind") == kind),
                None,
            )
            if codec is None:
                raise CapabilityMismatchError(f"The room offers no {kind} codec")
            tracks[kind] = {
                "codecs": [dict(codec, payloadType=100 + len(tracks))],
                "encodings": [{"ssrc": secrets.randbelow(2**31)}],
            }
        return tracks

    def attach_consumer(self, consumer: dict) -> HeadlessTrack:
        track = HeadlessTrack(
            kind=consumer["kind"],
            consumer_id=consumer["id"],
            producer_id=consumer["producerId"],
        )
        self.tracks[track.consumer_id] = track
        return track

    def close_consumer(self, consumer_id: str) -> None:
        track = self.tracks.pop(consumer_id, None)
        if track is not None:
            track.stop()
