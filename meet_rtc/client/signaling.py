"""Websocket client for the signaling server.

``SignalingClient`` owns the only reader of the websocket. Responses are
matched to their request by id and resolve the awaiting ``request()`` call.
Notifications go to a queue drained by a separate dispatcher task, in
arrival order, so a notification handler may itself await requests.
"""

import asyncio
import itertools
import json
import logging
from typing import Awaitable, Callable, Dict, Optional

import websockets
import websockets.exceptions

from meet_rtc.errors import SignalingError, error_from_response
from meet_rtc.protocol import MSG_RESPONSE, MSG_WELCOME, make_request

logger = logging.getLogger(__name__)

NotificationHandler = Callable[[dict], Awaitable[None]]


class SignalingClient:
    """Correlated request/response over one websocket.

    Attributes:
        url: Signaling server URL (ws:// or wss://).
        peer_id: Id assigned by the server on connect.
        request_timeout: Seconds to wait for a response.
    """

    def __init__(self, url: str, request_timeout: float = 10.0):
        self.url = url
        self.request_timeout = request_timeout
        self.peer_id: Optional[str] = None
        self.websocket = None
        self.on_notification: Optional[NotificationHandler] = None
        self._ids = itertools.count(1)
        self._pending: Dict[int, asyncio.Future] = {}
        self._welcome: Optional[asyncio.Future] = None
        self._reader: Optional[asyncio.Task] = None
        self._dispatcher: Optional[asyncio.Task] = None
        self._notifications: asyncio.Queue = asyncio.Queue()

    async def connect(self, websocket=None) -> str:
        """Open the connection and wait for the server's welcome.

        Args:
            websocket: An already open connection to use instead of dialing ``url``.

        Returns:
            The peer id assigned by the server.
        """
        self.websocket = websocket or await websockets.connect(self.url)
        self._welcome = asyncio.get_running_loop().create_future()
        self._reader = asyncio.create_task(self._read_loop())
        self._dispatcher = asyncio.create_task(self._dispatch_loop())
        self.peer_id = await asyncio.wait_for(self._welcome, timeout=self.request_timeout)
        logger.info(f"Connected to {self.url} as {self.peer_id}")
        return self.peer_id

    async def request(self, msg_type: str, **data) -> dict:
        """Send a request and wait for its response.

        Returns:
            The response ``data`` payload.

        Raises:
            SignalingError: (or a subclass) if the server answered with an error.
            ConnectionError: If the connection closed before the response arrived.
            asyncio.TimeoutError: If no response arrived in time.
        """
        if self.websocket is None:
            raise ConnectionError("Not connected")
        request_id = next(self._ids)
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self.websocket.send(make_request(msg_type, request_id, **data))
            return await asyncio.wait_for(future, timeout=self.request_timeout)
        except websockets.exceptions.ConnectionClosed as e:
            raise ConnectionError(f"Signaling connection closed: {e}") from e
        finally:
            self._pending.pop(request_id, None)

    async def _read_loop(self) -> None:
        try:
            async for raw in self.websocket:
                try:
                    message = json.loads(raw)
                except ValueError:
                    logger.warning(f"Ignoring malformed frame: {raw!r}")
                    continue
                self._route(message)
        except websockets.exceptions.ConnectionClosed:
            logger.info("Signaling connection closed")
        finally:
            self._fail_pending(ConnectionError("Signaling connection closed"))
            self._notifications.put_nowait(None)

    def _route(self, message: dict) -> None:
        msg_type = message.get("type")

        if msg_type == MSG_RESPONSE:
            future = self._pending.get(message.get("id"))
            if future is None or future.done():
                logger.debug(f"Response for unknown request {message.get('id')}")
                return
            if message.get("ok"):
                future.set_result(message.get("data") or {})
            else:
                future.set_exception(
                    error_from_response(message.get("error", ""), message.get("message", ""))
                )

        elif msg_type == MSG_WELCOME:
            if self._welcome is not None and not self._welcome.done():
                self._welcome.set_result(message["data"]["peerId"])

        else:
            self._notifications.put_nowait(message)

    async def _dispatch_loop(self) -> None:
        while True:
            message = await self._notifications.get()
            if message is None:
                return
            if self.on_notification is None:
                continue
            try:
                await self.on_notification(message)
            except SignalingError as e:
                logger.warning(f"Failed to apply {message.get('type')}: {e}")
            except ConnectionError:
                logger.info(f"Connection lost while applying {message.get('type')}")
            except Exception:
                logger.exception(f"Notification handler failed for {message.get('type')}")

    def _fail_pending(self, error: Exception) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(error)
        if self._welcome is not None and not self._welcome.done():
            self._welcome.set_exception(error)

    async def close(self) -> None:
        """Close the connection and wait for the reader and dispatcher to stop."""
        if self.websocket is not None:
            await self.websocket.close()
        for task in (self._reader, self._dispatcher):
            if task is None or task is asyncio.current_task():
                continue
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._reader = None
        self._dispatcher = None
