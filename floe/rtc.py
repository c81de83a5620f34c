"""Channel adapter over an aiortc data channel."""
from __future__ import annotations

import asyncio
import logging
from typing import Iterable, Optional

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.exceptions import InvalidStateError

from .channel import Channel, ChannelClosed, ChannelError

logger = logging.getLogger(__name__)

DEFAULT_ICE_SERVERS = (
    "stun:stun.l.google.com:19302",
    "stun:stun1.l.google.com:19302",
)


class RtcChannel(Channel):
    def __init__(self, pc: RTCPeerConnection, dc):
        self.pc = pc
        self.dc = dc
        self._inbox: asyncio.Queue = asyncio.Queue()
        self._closed = False
        self._opened = asyncio.Event()
        self._low = asyncio.Event()

        @dc.on("open")
        def on_open():
            self._opened.set()

        @dc.on("message")
        def on_message(message):
            if isinstance(message, str):
                message = message.encode("utf-8")
            self._inbox.put_nowait(message)

        @dc.on("bufferedamountlow")
        def on_buffered_amount_low():
            self._low.set()

        @dc.on("close")
        def on_close():
            self._mark_closed()

        @pc.on("connectionstatechange")
        def on_connection_state():
            logger.debug(f"Peer connection: {pc.connectionState}")
            if pc.connectionState in ("failed", "closed"):
                self._mark_closed()

        if dc.readyState == "open":
            self._opened.set()

    @property
    def closed(self) -> bool:
        return self._closed or self.dc.readyState in ("closing", "closed")

    @property
    def buffered_amount(self) -> int:
        return self.dc.bufferedAmount

    def send(self, data: bytes) -> None:
        if self.closed:
            raise ChannelClosed("data channel is closed")
        try:
            self.dc.send(data)
        except InvalidStateError as e:
            raise ChannelError(str(e)) from e

    async def recv(self) -> bytes:
        if self._closed and self._inbox.empty():
            raise ChannelClosed("data channel is closed")
        data = await self._inbox.get()
        if data is None:
            raise ChannelClosed("data channel is closed")
        return data

    async def wait_open(self, timeout: float) -> None:
        try:
            await asyncio.wait_for(self._opened.wait(), timeout)
        except asyncio.TimeoutError:
            await self.close()
            raise ChannelError("data channel did not open in time")
        if self.closed:
            raise ChannelClosed("data channel closed before it opened")

    async def wait_buffered_below(self, threshold: int) -> None:
        while not self.closed and self.buffered_amount >= threshold:
            self._low.clear()
            self.dc.bufferedAmountLowThreshold = max(threshold - 1, 0)
            if self.buffered_amount < threshold:
                break
            await self._low.wait()

    def _mark_closed(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._inbox.put_nowait(None)
        self._opened.set()
        self._low.set()

    async def close(self) -> None:
        self.dc.close()
        self._mark_closed()
        await self.pc.close()


class RtcConnector:
    """Turns an offer/answer exchange over the signaling service into an RtcChannel.

    aiortc gathers every ICE candidate before ``setLocalDescription`` returns, so
    one description per side is the whole exchange.
    """

    def __init__(self, ice_servers: Optional[Iterable[str]] = None, open_timeout: float = 30.0):
        self.ice_servers = list(ice_servers or DEFAULT_ICE_SERVERS)
        self.open_timeout = open_timeout

    def _create_pc(self) -> RTCPeerConnection:
        config = RTCConfiguration(iceServers=[RTCIceServer(urls=url) for url in self.ice_servers])
        return RTCPeerConnection(config)

    async def connect(self, signaling, *, initiator: bool, room_id: str,
                      peer_id: Optional[str] = None) -> Channel:
        pc = self._create_pc()
        try:
            if initiator:
                channel = RtcChannel(pc, pc.createDataChannel("floe", ordered=True))
                await pc.setLocalDescription(await pc.createOffer())
                await signaling.send_signal(self._describe(pc), target=peer_id)
                await pc.setRemoteDescription(await self._next_description(signaling, "answer"))
            else:
                incoming: asyncio.Future = asyncio.get_running_loop().create_future()

                @pc.on("datachannel")
                def on_datachannel(dc):
                    if not incoming.done():
                        incoming.set_result(RtcChannel(pc, dc))

                await pc.setRemoteDescription(await self._next_description(signaling, "offer"))
                await pc.setLocalDescription(await pc.createAnswer())
                await signaling.send_signal(self._describe(pc), room_id=room_id)
                try:
                    channel = await asyncio.wait_for(incoming, self.open_timeout)
                except asyncio.TimeoutError:
                    raise ChannelError("no data channel from peer")
            await channel.wait_open(self.open_timeout)
        except BaseException:
            await pc.close()
            raise
        logger.info("Data channel open")
        return channel

    @staticmethod
    def _describe(pc: RTCPeerConnection) -> dict:
        return {"type": pc.localDescription.type, "sdp": pc.localDescription.sdp}

    @staticmethod
    async def _next_description(signaling, expected: str) -> RTCSessionDescription:
        while True:
            delivery = await signaling.next_signal()
            signal = delivery.signal
            if isinstance(signal, dict) and signal.get("type") == expected and signal.get("sdp"):
                return RTCSessionDescription(sdp=signal["sdp"], type=expected)
            logger.debug(f"Ignoring signal while waiting for {expected}")
