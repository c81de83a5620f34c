from __future__ import annotations

import asyncio
import logging
from typing import Optional

from .channel import Channel, ChannelClosed
from .constants import SENDER_LINGER_S
from .protocol import Ack, Chunk, End, Frame, Metadata, ProtocolError, decode_frame
from .receiver import Receiver, ReceiverState
from .sender import Sender

logger = logging.getLogger(__name__)


class TransferEngine:
    """Owns one channel for its lifetime and is the only reader of it.

    Frames are decoded once and routed to the sender (acks) or the receiver
    (metadata, chunks, end markers).
    """

    def __init__(self, channel: Channel, *, sender: Optional[Sender] = None,
                 receiver: Optional[Receiver] = None, linger: float = SENDER_LINGER_S):
        self.channel = channel
        self.sender = sender
        self.receiver = receiver
        self.linger = linger
        if receiver is not None:
            receiver.attach(channel)

    async def run(self) -> None:
        reader = asyncio.create_task(self._read_loop())
        try:
            if self.sender is None:
                await reader
                return
            if await self.sender.run():
                await self.channel.wait_buffered_below(1)
                try:
                    await asyncio.wait_for(asyncio.shield(reader), self.linger)
                except asyncio.TimeoutError:
                    logger.debug("Peer did not close the channel, closing it ourselves")
        finally:
            if not reader.done():
                reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)

    def dispatch(self, frame: Frame) -> None:
        if isinstance(frame, Ack):
            if self.sender is None:
                logger.warning(f"Unexpected ack for {frame.id}")
                return
            self.sender.handle_ack(frame)
            return

        if self.receiver is None:
            logger.warning(f"Unexpected {type(frame).__name__} frame on a sending engine")
            return
        if isinstance(frame, Chunk):
            self.receiver.handle_chunk(frame)
        elif isinstance(frame, Metadata):
            self.receiver.handle_metadata(frame)
        elif isinstance(frame, End):
            self.receiver.handle_end()
        else:
            raise TypeError(f"unhandled frame type: {type(frame).__name__}")

    async def _read_loop(self) -> None:
        try:
            while True:
                raw = await self.channel.recv()
                try:
                    frame = decode_frame(raw)
                except ProtocolError as e:
                    logger.warning(f"Dropping undecodable frame: {e}")
                    continue
                self.dispatch(frame)
                if (
                    isinstance(frame, End)
                    and self.receiver is not None
                    and self.receiver.state is ReceiverState.ALL_RECEIVED
                ):
                    return
        except ChannelClosed:
            logger.info("Channel closed")
        finally:
            if self.sender is not None:
                self.sender.fail_pending()
