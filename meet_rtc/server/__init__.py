"""Server side of meet-rtc.

This module provides:
- registry: Room registry and per-room locks
- session: Per-connection peer state
- mesh: Mesh offer/answer bookkeeping
- hub: Transport/producer/consumer handshake against a media engine
- relay: Ordered, de-duplicated notification delivery
- signaling_server: The websocket server tying it together
"""

from meet_rtc.server.hub import HubNegotiator
from meet_rtc.server.media_engine import LocalMediaEngine, MediaEngine
from meet_rtc.server.mesh import MeshNegotiator, PairState, Role, role
from meet_rtc.server.registry import Room, RoomRegistry
from meet_rtc.server.relay import EventRelay, PeerChannel
from meet_rtc.server.signaling_server import SignalingServer

__all__ = [
    # Registry
    "Room",
    "RoomRegistry",
    # Negotiation
    "MeshNegotiator",
    "HubNegotiator",
    "PairState",
    "Role",
    "role",
    # Delivery
    "EventRelay",
    "PeerChannel",
    # Engine
    "MediaEngine",
    "LocalMediaEngine",
    # Server
    "SignalingServer",
]
