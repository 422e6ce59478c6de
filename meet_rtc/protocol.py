"""Message protocol definitions for meet-rtc.

This module defines the message types exchanged between participants and the
signaling server over the websocket connection.

Frame Format
------------

Every frame is a single JSON object with a ``type`` field.

**Request** (client → server)::

    {"type": "hub.produce", "id": 12, "data": {...}}

**Response** (server → client, exactly one per request id)::

    {"type": "response", "id": 12, "ok": true, "data": {...}}
    {"type": "response", "id": 12, "ok": false, "error": "protocol_error",
     "message": "transport is not connected"}

**Notification** (server → client, unsolicited)::

    {"type": "producerAvailable", "event_id": "producerAvailable:p1",
     "data": {"producerId": "p1", "peerId": "abc", "kind": "audio"}}

Message Flow Examples
---------------------

### Mesh

1. A → server: join {room: "r1"}         → response {peers: ["B"]}
2. server → B: peerJoined {peerId: "A"}
3. B → server: signal {to: "A", payload: {type: "offer", sdp: ...}}
   (B was there first, so B initiates)
4. server → A: signal {from: "B", to: "A", payload: {...}}
5. A → server: signal {to: "B", payload: {type: "answer", sdp: ...}}
6. server → B: signal {from: "A", ...}
7. candidates are relayed the same way, in any pair state

### Hub

1. hub.join {room}                         → {rtpCapabilities, peers}
2. hub.createTransport {direction: "send"} → {id, iceParameters, ...}
3. hub.connectTransport {transportId, dtlsParameters}
4. hub.produce {transportId, kind, rtpParameters} → {id}
   server → others: producerAvailable {producerId, peerId, kind}
5. hub.createTransport {direction: "recv"} / hub.connectTransport
6. hub.getProducers                        → {producers: [...]}
7. hub.consume {transportId, producerId, rtpCapabilities} → {id, ...}
8. hub.resume {consumerId}
"""

import json
from typing import Any, Optional

from meet_rtc.errors import BadRequestError

# Connection bootstrap
MSG_WELCOME = "welcome"
MSG_RESPONSE = "response"

# Topology-agnostic membership
MSG_JOIN = "join"
MSG_LEAVE = "leave"

# Mesh relay
MSG_SIGNAL = "signal"

# Hub handshake
MSG_HUB_JOIN = "hub.join"
MSG_HUB_CREATE_TRANSPORT = "hub.createTransport"
MSG_HUB_CONNECT_TRANSPORT = "hub.connectTransport"
MSG_HUB_PRODUCE = "hub.produce"
MSG_HUB_CONSUME = "hub.consume"
MSG_HUB_RESUME = "hub.resume"
MSG_HUB_GET_PRODUCERS = "hub.getProducers"
MSG_HUB_CLOSE_PRODUCER = "hub.closeProducer"
MSG_HUB_CLOSE_TRANSPORT = "hub.closeTransport"

# Server notifications
MSG_PEER_JOINED = "peerJoined"
MSG_PEER_LEFT = "peerLeft"
MSG_PRODUCER_AVAILABLE = "producerAvailable"
MSG_PRODUCER_CLOSED = "producerClosed"
MSG_TRANSPORT_STATE = "transportStateChanged"

# Signal payload types
SIGNAL_OFFER = "offer"
SIGNAL_ANSWER = "answer"
SIGNAL_CANDIDATE = "candidate"
SIGNAL_TYPES = (SIGNAL_OFFER, SIGNAL_ANSWER, SIGNAL_CANDIDATE)

# Topologies
TOPOLOGY_MESH = "mesh"
TOPOLOGY_HUB = "hub"

# Transport directions
DIRECTION_SEND = "send"
DIRECTION_RECV = "recv"
DIRECTIONS = (DIRECTION_SEND, DIRECTION_RECV)

MEDIA_KINDS = ("audio", "video")


def make_request(msg_type: str, request_id: int, **data) -> str:
    """Format a client request frame.

    Examples:
        >>> make_request(MSG_JOIN, 1, room="r1")
        '{"type": "join", "id": 1, "data": {"room": "r1"}}'
    """
    return json.dumps({"type": msg_type, "id": request_id, "data": data})


def make_response(request_id: Any, data: Optional[dict] = None) -> dict:
    """Build a successful response frame."""
    return {"type": MSG_RESPONSE, "id": request_id, "ok": True, "data": data or {}}


def make_error_response(request_id: Any, code: str, message: str) -> dict:
    """Build an error response frame carrying a typed error code."""
    return {
        "type": MSG_RESPONSE,
        "id": request_id,
        "ok": False,
        "error": code,
        "message": message,
    }


def make_notification(msg_type: str, event_id: Optional[str] = None, **data) -> dict:
    """Build a server notification frame."""
    message = {"type": msg_type, "data": data}
    if event_id is not None:
        message["event_id"] = event_id
    return message


def event_id(msg_type: str, *identifiers: str) -> str:
    """Derive the idempotence key of a notification from its logical identity.

    Examples:
        >>> event_id(MSG_PRODUCER_CLOSED, "p1")
        'producerClosed:p1'
    """
    return ":".join((msg_type,) + tuple(str(i) for i in identifiers))


def parse_message(raw: str) -> tuple[str, Any, dict]:
    """Parse a frame into (type, id, data).

    Raises:
        BadRequestError: If the frame is not a JSON object with a string type.
    """
    try:
        message = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise BadRequestError(f"invalid JSON: {e}")
    if not isinstance(message, dict):
        raise BadRequestError("frame must be a JSON object")
    request_id = message.get("id")
    if not isinstance(message.get("type"), str):
        raise BadRequestError("frame needs a string 'type'", request_id=request_id)
    data = message.get("data") or {}
    if not isinstance(data, dict):
        raise BadRequestError("'data' must be an object", request_id=request_id)
    return message["type"], request_id, data


def require(data: dict, *fields: str) -> list:
    """Return the values of required fields, raising on the first missing one."""
    values = []
    for name in fields:
        value = data.get(name)
        if value is None or value == "":
            raise BadRequestError(f"missing field '{name}'")
        values.append(value)
    return values
