"""Participant side of meet-rtc.

This module provides:
- signaling: Websocket client with correlated requests
- controller: Mesh and hub session controllers
- pending: Bounded queue for signals that arrive early
- peer_link: aiortc-backed direct links (mesh)
- device: Local media device interface and a headless device (hub)
"""

from meet_rtc.client.controller import HubController, MeshController, RemotePeer
from meet_rtc.client.device import HeadlessDevice, HubDevice
from meet_rtc.client.peer_link import AiortcPeerLink, PeerLink
from meet_rtc.client.pending import PendingSignalQueue
from meet_rtc.client.signaling import SignalingClient

__all__ = [
    # Controllers
    "MeshController",
    "HubController",
    "RemotePeer",
    # Plumbing
    "SignalingClient",
    "PendingSignalQueue",
    # Media
    "PeerLink",
    "AiortcPeerLink",
    "HubDevice",
    "HeadlessDevice",
]
