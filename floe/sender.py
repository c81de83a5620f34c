from __future__ import annotations

import asyncio
import enum
import io
import logging
import os
import time
import uuid
from dataclasses import dataclass, field
from typing import BinaryIO, Callable, Dict, Optional, Sequence

from .channel import Channel, ChannelClosed, ChannelError
from .constants import BUFFER_LIMIT, PROGRESS_EVERY_CHUNKS, SEND_RETRY_DELAY_S
from .metrics import ChunkSizer, Clock, ThroughputMeter, TransferStatus
from .protocol import Ack, End, Metadata, encode_chunk, encode_control

logger = logging.getLogger(__name__)


class SenderState(enum.Enum):
    IDLE = "idle"
    ANNOUNCING = "announcing"
    AWAITING_RESUME_OFFSET = "awaiting-resume-offset"
    STREAMING = "streaming"
    FINISHING = "finishing"
    DONE = "done"


@dataclass(frozen=True)
class OutgoingFile:
    name: str
    size: int
    opener: Callable[[], BinaryIO] = field(repr=False)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @classmethod
    def from_path(cls, path: str) -> "OutgoingFile":
        return cls(
            name=os.path.basename(path),
            size=os.path.getsize(path),
            opener=lambda: open(path, "rb"),
        )

    @classmethod
    def from_bytes(cls, name: str, data: bytes) -> "OutgoingFile":
        return cls(name=name, size=len(data), opener=lambda: io.BytesIO(data))


@dataclass
class Sender:
    """Announces, streams and closes each file in turn over one channel.

    Each file is announced with a metadata message; streaming starts only once
    the receiver acknowledges with the offset it already holds.
    """

    channel: Channel
    files: Sequence[OutgoingFile]
    status: TransferStatus = field(default_factory=TransferStatus)
    buffer_limit: int = BUFFER_LIMIT
    retry_delay: float = SEND_RETRY_DELAY_S
    clock: Clock = time.monotonic
    sizer: Optional[ChunkSizer] = None
    state: SenderState = SenderState.IDLE
    complete: bool = False
    current_index: int = 0
    _acks: Dict[str, asyncio.Future] = field(default_factory=dict, repr=False)

    def __post_init__(self):
        if self.sizer is None:
            self.sizer = ChunkSizer(clock=self.clock)

    async def run(self) -> bool:
        """Send every file; True only if the whole job finished on an open channel."""
        total = len(self.files)
        for index, item in enumerate(self.files, start=1):
            if self.channel.closed:
                break
            self.current_index = index
            self.status.update(status=f"Sending: {item.name}", progress=0)
            if not await self._send_file(item, index, total):
                logger.warning(f"Aborting transfer at file {index} of {total}")
                return False

        if self.channel.closed:
            return False
        self.state = SenderState.DONE
        self.complete = True
        self.status.update(status="All Files Sent!", progress=100)
        return True

    def handle_ack(self, ack: Ack) -> None:
        waiter = self._acks.get(ack.id)
        if waiter is None or waiter.done():
            logger.debug(f"Ignoring ack for {ack.id}")
            return
        waiter.set_result(ack.offset)

    def fail_pending(self) -> None:
        """Wake every coroutine still waiting for an ack; the channel is gone."""
        for waiter in self._acks.values():
            if not waiter.done():
                waiter.set_exception(ChannelClosed("channel closed while waiting for ack"))

    async def _send_file(self, item: OutgoingFile, index: int, total: int) -> bool:
        self.state = SenderState.ANNOUNCING
        waiter = asyncio.get_running_loop().create_future()
        self._acks[item.id] = waiter
        try:
            metadata = Metadata(id=item.id, file_name=item.name, file_size=item.size, index=index, total=total)
            try:
                self.channel.send(encode_control(metadata))
            except ChannelError as e:
                logger.error(f"Could not announce {item.name}: {e}")
                return False

            self.state = SenderState.AWAITING_RESUME_OFFSET
            try:
                offset = await waiter
            except ChannelClosed:
                return False
        finally:
            self._acks.pop(item.id, None)

        offset = min(offset, item.size)
        if offset:
            logger.info(f"Resuming {item.name} from byte {offset}")

        self.state = SenderState.STREAMING
        await self._stream(item, offset)

        self.state = SenderState.FINISHING
        self.status.update(speed="", eta="")
        try:
            self.channel.send(encode_control(End()))
        except ChannelError as e:
            logger.debug(f"End marker for {item.name} not sent: {e}")
        return True

    async def _stream(self, item: OutgoingFile, offset: int) -> None:
        meter = ThroughputMeter(clock=self.clock)
        meter.reset()
        self.sizer.start()
        chunks = 0

        with item.opener() as source:
            while offset < item.size:
                if self.channel.closed:
                    break
                chunk_size = self.sizer.chunk_size
                if self.channel.buffered_amount > self.buffer_limit:
                    await self.channel.wait_buffered_below(chunk_size)

                source.seek(offset)
                data = source.read(chunk_size)
                if not data:
                    logger.warning(f"{item.name} ended at byte {offset}, expected {item.size}")
                    break
                if self.channel.closed:
                    break

                try:
                    self.channel.send(encode_chunk(data))
                except ChannelError as e:
                    logger.debug(f"Chunk send failed at {offset}, retrying: {e}")
                    await asyncio.sleep(self.retry_delay)
                    continue

                offset += len(data)
                chunks += 1
                self.sizer.record(len(data))
                if meter.record(len(data)):
                    self.status.show_rate(meter, item.size - offset)
                if chunks % PROGRESS_EVERY_CHUNKS == 0 or offset >= item.size:
                    self.status.update(progress=offset * 100 // item.size)
                # Let the reader and the transport run between chunks.
                await asyncio.sleep(0)
