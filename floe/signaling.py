import asyncio
import itertools
import json
import logging
import time
from typing import Any, Dict, Optional

import websockets
from pydantic import ValidationError
from websockets.exceptions import ConnectionClosed, WebSocketException

from .models import JoinRoom, Ping, Pong, SignalDelivery, SignalRequest, server_message

logger = logging.getLogger(__name__)


class SignalingClosed(Exception):
    """The connection to the coordination service is gone."""


class Disconnected:
    """Queued as the last event once the coordination connection drops."""

    type = "disconnected"


class SignalingClient:
    """Client side of the coordination protocol.

    A single reader task owns the connection; it routes signaling payloads to
    ``signals``, pongs to waiting pings and everything else to ``events``.
    """

    def __init__(self, url: str):
        self.url = url
        self.events: asyncio.Queue = asyncio.Queue()
        self.signals: asyncio.Queue = asyncio.Queue()
        self.connected = False
        self._pings: Dict[int, asyncio.Future] = {}
        self._ping_ids = itertools.count(1)
        self._ws = None
        self._reader: Optional[asyncio.Task] = None

    async def connect(self):
        self.events = asyncio.Queue()
        self.signals = asyncio.Queue()
        try:
            self._ws = await websockets.connect(self.url, max_size=None)
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            raise SignalingClosed(f"cannot connect to {self.url}: {e}") from e
        self.connected = True
        self._reader = asyncio.create_task(self._read_loop())
        logger.info(f"Connected to {self.url}")

    async def close(self):
        if self._ws is not None:
            await self._ws.close()
        if self._reader is not None:
            await asyncio.gather(self._reader, return_exceptions=True)
        self.connected = False

    async def _send(self, message: dict):
        if self._ws is None or not self.connected:
            raise SignalingClosed("not connected")
        try:
            await self._ws.send(json.dumps(message))
        except ConnectionClosed as e:
            raise SignalingClosed(str(e)) from e

    async def _read_loop(self):
        try:
            async for raw in self._ws:
                try:
                    data = json.loads(raw)
                except json.JSONDecodeError:
                    logger.warning("Non-JSON message from coordination service")
                    continue
                self.dispatch(data)
        except ConnectionClosed as e:
            logger.info(f"Coordination connection closed: {e}")
        finally:
            self.connection_lost()

    def dispatch(self, data: Any):
        try:
            message = server_message.validate_python(data)
        except ValidationError as e:
            logger.warning(f"Dropping malformed server message: {e.error_count()} error(s)")
            return

        if isinstance(message, SignalDelivery):
            self.signals.put_nowait(message)
        elif isinstance(message, Pong):
            waiter = self._pings.pop(message.id, None)
            if waiter is not None and not waiter.done():
                waiter.set_result(time.monotonic())
        else:
            self.events.put_nowait(message)

    def connection_lost(self):
        self.connected = False
        for waiter in self._pings.values():
            if not waiter.done():
                waiter.set_exception(SignalingClosed("connection lost"))
        self._pings.clear()
        self.events.put_nowait(Disconnected())

    async def join(self, room_id: str):
        await self._send(JoinRoom(room_id=room_id).to_wire())

    async def send_signal(self, signal: Any, *, target: Optional[str] = None, room_id: Optional[str] = None):
        await self._send(SignalRequest(target=target, room_id=room_id, signal=signal).to_wire())

    async def ping(self, timeout: float = 5.0) -> float:
        """Round trip to the coordination service in milliseconds."""
        ping_id = next(self._ping_ids)
        waiter = asyncio.get_running_loop().create_future()
        self._pings[ping_id] = waiter
        start = time.monotonic()
        try:
            await self._send(Ping(id=ping_id).to_wire())
            answered = await asyncio.wait_for(waiter, timeout)
        finally:
            self._pings.pop(ping_id, None)
        return round((answered - start) * 1000, 2)

    async def next_event(self):
        return await self.events.get()

    async def next_signal(self) -> SignalDelivery:
        return await self.signals.get()

    def drain_signals(self) -> int:
        dropped = 0
        while not self.signals.empty():
            self.signals.get_nowait()
            dropped += 1
        return dropped
