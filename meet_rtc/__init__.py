"""meet-rtc: signaling and session orchestration for multi-party rooms.

Two topologies are supported:
- mesh: every participant links directly to every other participant; the
  server only relays offers, answers and candidates.
- hub: all media flows through a per-room routing context; the server drives
  the transport/producer/consumer handshake.
"""

__version__ = "0.1.0"
