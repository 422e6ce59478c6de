"""Media engine interface consumed by the hub negotiation, and an in-process engine.

The hub never touches media bytes. It asks the engine for opaque parameters
(ICE/DTLS/RTP) and hands them to peers, and it closes engine handles when a
peer goes away. Any engine that implements the abstract classes below can
be plugged into the signaling server.

``LocalMediaEngine`` implements the interface without forwarding media. It
generates well-formed parameters, enforces codec compatibility and tracks
handle lifecycles, which is enough to exercise the whole signaling protocol
for development, load testing and tests.
"""

import itertools
import logging
import secrets
import uuid
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional

from meet_rtc.config import MediaConfig
from meet_rtc.errors import CapabilityMismatchError, NotFoundError, TransportFailure

logger = logging.getLogger(__name__)


# Transport connection states
STATE_NEW = "new"
STATE_CONNECTING = "connecting"
STATE_CONNECTED = "connected"
STATE_DISCONNECTED = "disconnected"
STATE_FAILED = "failed"
STATE_CLOSED = "closed"


class EngineHandle(ABC):
    """Anything with an id that can be closed exactly once."""

    def __init__(self, handle_id: str):
        self.id = handle_id
        self.closed = False
        self._close_observers: List[Callable[["EngineHandle"], None]] = []

    def on_close(self, callback: Callable[["EngineHandle"], None]) -> None:
        """Register a callback fired once when the handle closes."""
        self._close_observers.append(callback)

    def close(self) -> None:
        """Close the handle. Idempotent."""
        if self.closed:
            return
        self.closed = True
        self._release()
        observers, self._close_observers = self._close_observers, []
        for callback in observers:
            try:
                callback(self)
            except Exception:
                logger.exception(f"Close observer failed for {self!r}")

    def _release(self) -> None:
        """Free engine resources; subclasses close their children here."""


class Producer(EngineHandle):
    """An outbound media unit on a send transport."""

    kind: str
    rtp_parameters: dict


class Consumer(EngineHandle):
    """An inbound media unit on a receive transport."""

    producer_id: str
    kind: str
    rtp_parameters: dict
    paused: bool

    @abstractmethod
    async def resume(self) -> None:
        """Start forwarding media to the peer."""


class Transport(EngineHandle):
    """One negotiated network path between a peer and the routing context."""

    direction: str
    connection_state: str

    def __init__(self, handle_id: str):
        super().__init__(handle_id)
        self._state_observers: List[Callable[["Transport", str], None]] = []

    def on_state_change(self, callback: Callable[["Transport", str], None]) -> None:
        """Register a callback fired on every connection state change."""
        self._state_observers.append(callback)

    def _set_state(self, state: str) -> None:
        if state == self.connection_state:
            return
        self.connection_state = state
        for callback in list(self._state_observers):
            try:
                callback(self, state)
            except Exception:
                logger.exception(f"State observer failed for transport {self.id}")

    @property
    @abstractmethod
    def params(self) -> dict:
        """Opaque parameters the peer needs to create its side of the transport."""

    @abstractmethod
    async def connect(self, dtls_parameters: dict) -> None:
        """Accept the peer's DTLS parameters."""

    @abstractmethod
    async def produce(self, kind: str, rtp_parameters: dict) -> Producer:
        """Create an outbound unit on this (send) transport."""

    @abstractmethod
    async def consume(self, producer_id: str, rtp_capabilities: dict) -> Consumer:
        """Create an inbound unit on this (recv) transport, initially paused."""


class RoutingContext(EngineHandle):
    """Per-room forwarding context (a router)."""

    @property
    @abstractmethod
    def rtp_capabilities(self) -> dict:
        """Capabilities peers load into their local device."""

    @abstractmethod
    async def create_transport(self, direction: str) -> Transport:
        """Create a transport in the given direction."""

    @abstractmethod
    def can_consume(self, producer_id: str, rtp_capabilities: dict) -> bool:
        """Whether a peer with these capabilities can receive the producer."""


class MediaEngine(ABC):
    """Factory for routing contexts."""

    @abstractmethod
    async def create_routing_context(self) -> RoutingContext:
        """Create a routing context for a new room."""


# ---------------------------------------------------------------------------
# In-process engine
# ---------------------------------------------------------------------------


def _matching_codec(codec: dict, capabilities: dict) -> Optional[dict]:
    """Find the capability codec matching ``codec`` by mime type and clock rate."""
    mime_type = str(codec.get("mimeType", "")).lower()
    clock_rate = codec.get("clockRate")
    for candidate in (capabilities or {}).get("codecs", []) or []:
        if str(candidate.get("mimeType", "")).lower() != mime_type:
            continue
        if clock_rate is not None and candidate.get("clockRate") not in (None, clock_rate):
            continue
        return candidate
    return None


class LocalProducer(Producer):
    def __init__(self, transport: "LocalTransport", kind: str, rtp_parameters: dict, codec: dict):
        super().__init__(str(uuid.uuid4()))
        self.transport = transport
        self.kind = kind
        self.rtp_parameters = rtp_parameters
        self.codec = codec
        self.consumers: Dict[str, "LocalConsumer"] = {}

    def _release(self) -> None:
        for consumer in list(self.consumers.values()):
            consumer.close()
        self.transport.router.producers.pop(self.id, None)
        self.transport.producers.pop(self.id, None)

    def __repr__(self):
        return f"<LocalProducer {self.id} {self.kind}>"


class LocalConsumer(Consumer):
    def __init__(self, transport: "LocalTransport", producer: LocalProducer, codec: dict):
        super().__init__(str(uuid.uuid4()))
        self.transport = transport
        self.producer = producer
        self.producer_id = producer.id
        self.kind = producer.kind
        self.paused = True
        self.rtp_parameters = {
            "codecs": [dict(codec)],
            "encodings": [{"ssrc": secrets.randbelow(2**31)}],
            "rtcp": {"cname": producer.id[:8], "reducedSize": True},
        }

    async def resume(self) -> None:
        if self.closed:
            raise NotFoundError(f"Consumer {self.id} is closed")
        self.paused = False

    def _release(self) -> None:
        self.producer.consumers.pop(self.id, None)
        self.transport.consumers.pop(self.id, None)

    def __repr__(self):
        return f"<LocalConsumer {self.id} of {self.producer_id}>"


class LocalTransport(Transport):
    def __init__(self, router: "LocalRoutingContext", direction: str, ip: str, port: int):
        super().__init__(str(uuid.uuid4()))
        self.router = router
        self.direction = direction
        self.connection_state = STATE_NEW
        self.producers: Dict[str, LocalProducer] = {}
        self.consumers: Dict[str, LocalConsumer] = {}
        self.remote_dtls: Optional[dict] = None
        self._params = {
            "id": self.id,
            "iceParameters": {
                "usernameFragment": secrets.token_hex(8),
                "password": secrets.token_hex(16),
                "iceLite": True,
            },
            "iceCandidates": [
                {
                    "foundation": "udpcandidate",
                    "ip": ip,
                    "port": port,
                    "priority": 1076302079,
                    "protocol": "udp",
                    "type": "host",
                }
            ],
            "dtlsParameters": {
                "role": "auto",
                "fingerprints": [
                    {
                        "algorithm": "sha-256",
                        "value": ":".join(
                            secrets.token_hex(1).upper() for _ in range(32)
                        ),
                    }
                ],
            },
        }

    @property
    def params(self) -> dict:
        return self._params

    async def connect(self, dtls_parameters: dict) -> None:
        if self.closed:
            raise NotFoundError(f"Transport {self.id} is closed")
        if not isinstance(dtls_parameters, dict) or not dtls_parameters.get("fingerprints"):
            self._set_state(STATE_FAILED)
            raise TransportFailure("DTLS parameters carry no fingerprints")
        self.remote_dtls = dtls_parameters
        self._set_state(STATE_CONNECTING)
        self._set_state(STATE_CONNECTED)

    async def produce(self, kind: str, rtp_parameters: dict) -> Producer:
        codecs = (rtp_parameters or {}).get("codecs") or []
        if codecs:
            codec = _matching_codec(codecs[0], self.router.rtp_capabilities)
        else:
            codec = self.router.codec_for_kind(kind)
        if codec is None or codec.get("kind") != kind:
            raise CapabilityMismatchError(f"No {kind} codec of the room matches the producer")
        producer = LocalProducer(self, kind, rtp_parameters or {}, codec)
        self.producers[producer.id] = producer
        self.router.producers[producer.id] = producer
        return producer

    async def consume(self, producer_id: str, rtp_capabilities: dict) -> Consumer:
        producer = self.router.producers.get(producer_id)
        if producer is None:
            raise NotFoundError(f"Producer {producer_id} not found")
        codec = _matching_codec(producer.codec, rtp_capabilities)
        if codec is None:
            raise CapabilityMismatchError(
                f"Cannot consume {producer.codec.get('mimeType')} with the given capabilities"
            )
        consumer = LocalConsumer(self, producer, producer.codec)
        producer.consumers[consumer.id] = consumer
        self.consumers[consumer.id] = consumer
        return consumer

    def simulate_state(self, state: str) -> None:
        """Force a connection state change, as a network event would."""
        self._set_state(state)

    def _release(self) -> None:
        for consumer in list(self.consumers.values()):
            consumer.close()
        for producer in list(self.producers.values()):
            producer.close()
        self._set_state(STATE_CLOSED)
        self.router.transports.pop(self.id, None)

    def __repr__(self):
        return f"<LocalTransport {self.id} {self.direction}>"


class LocalRoutingContext(RoutingContext):
    def __init__(self, engine: "LocalMediaEngine"):
        super().__init__(str(uuid.uuid4()))
        self.engine = engine
        self.transports: Dict[str, LocalTransport] = {}
        self.producers: Dict[str, LocalProducer] = {}
        self._capabilities = {
            "codecs": [codec.to_capability() for codec in engine.config.codecs],
            "headerExtensions": [],
        }

    @property
    def rtp_capabilities(self) -> dict:
        return self._capabilities

    def codec_for_kind(self, kind: str) -> Optional[dict]:
        for codec in self._capabilities["codecs"]:
            if codec["kind"] == kind:
                return codec
        return None

    async def create_transport(self, direction: str) -> Transport:
        if self.closed:
            raise NotFoundError(f"Routing context {self.id} is closed")
        transport = LocalTransport(
            self, direction, self.engine.announced_ip, self.engine.next_port()
        )
        self.transports[transport.id] = transport
        return transport

    def can_consume(self, producer_id: str, rtp_capabilities: dict) -> bool:
        producer = self.producers.get(producer_id)
        if producer is None:
            return False
        return _matching_codec(producer.codec, rtp_capabilities) is not None

    def _release(self) -> None:
        for transport in list(self.transports.values()):
            transport.close()
        self.engine.routers.pop(self.id, None)


class LocalMediaEngine(MediaEngine):
    """Media engine that negotiates parameters but forwards no media."""

    def __init__(self, config: Optional[MediaConfig] = None):
        self.config = config or MediaConfig()
        self.routers: Dict[str, LocalRoutingContext] = {}
        self._ports = itertools.cycle(
            range(self.config.rtc_min_port, self.config.rtc_max_port + 1)
        )

    @property
    def announced_ip(self) -> str:
        return self.config.announced_ip or self.config.listen_ip

    def next_port(self) -> int:
        return next(self._ports)

    async def create_routing_context(self) -> RoutingContext:
        router = LocalRoutingContext(self)
        self.routers[router.id] = router
        logger.debug(f"Created routing context {router.id}")
        return router
