from __future__ import annotations

import enum
import io
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import BinaryIO, Dict, List, Optional

from .channel import Channel, ChannelError
from .constants import PROGRESS_EVERY_CHUNKS
from .metrics import Clock, ThroughputMeter, TransferStatus
from .protocol import Ack, Chunk, Metadata, encode_control

logger = logging.getLogger(__name__)


class ReceiverState(enum.Enum):
    WAITING_FOR_METADATA = "waiting-for-metadata"
    ACCUMULATING = "accumulating"
    ALL_RECEIVED = "all-received"


@dataclass
class Accumulator:
    chunks: List[bytes] = field(default_factory=list)
    received: int = 0


@dataclass(frozen=True)
class ReceivedFile:
    id: str
    file_name: str
    file_size: int
    data: bytes = field(repr=False)

    def open(self) -> BinaryIO:
        return io.BytesIO(self.data)


@dataclass
class Receiver:
    """Rebuilds files from metadata, chunk and end messages.

    Accumulators are keyed by file id and outlive any single channel, so a
    re-announced file resumes from the bytes already held.
    """

    status: TransferStatus = field(default_factory=TransferStatus)
    clock: Clock = time.monotonic
    channel: Optional[Channel] = None
    state: ReceiverState = ReceiverState.WAITING_FOR_METADATA
    current: Optional[Metadata] = None
    partial: Dict[str, Accumulator] = field(default_factory=dict)
    completed: Dict[str, int] = field(default_factory=dict)
    received: List[ReceivedFile] = field(default_factory=list)
    _chunks: int = 0
    _meter: Optional[ThroughputMeter] = None

    def __post_init__(self):
        self._meter = ThroughputMeter(clock=self.clock)

    def attach(self, channel: Channel) -> None:
        self.channel = channel

    def handle_metadata(self, metadata: Metadata) -> None:
        self.current = metadata
        self.state = ReceiverState.ACCUMULATING
        self._chunks = 0
        self._meter.reset()
        self.status.update(
            status=f"Receiving file {metadata.index} of {metadata.total}...",
            progress=0,
            speed="",
            eta="",
        )

        if metadata.id in self.completed:
            offset = metadata.file_size
            logger.info(f"{metadata.file_name} already received, skipping")
        else:
            accumulator = self.partial.setdefault(metadata.id, Accumulator())
            offset = accumulator.received
            if offset:
                logger.info(f"Resuming {metadata.file_name} at byte {offset}")

        self._send(Ack(id=metadata.id, offset=offset))

    def handle_chunk(self, chunk: Chunk) -> None:
        if self.current is None:
            logger.debug("Dropping chunk with no file announced")
            return
        accumulator = self.partial.get(self.current.id)
        if accumulator is None:
            logger.debug(f"Dropping chunk for {self.current.id}, no accumulator")
            return

        size = len(chunk.data)
        accumulator.chunks.append(chunk.data)
        accumulator.received += size
        self._chunks += 1

        file_size = self.current.file_size
        if self._meter.record(size):
            self.status.show_rate(self._meter, max(file_size - accumulator.received, 0))
        if file_size and (self._chunks % PROGRESS_EVERY_CHUNKS == 0 or accumulator.received == file_size):
            self.status.update(progress=min(accumulator.received * 100 // file_size, 100))

    def handle_end(self) -> Optional[ReceivedFile]:
        metadata = self.current
        if metadata is None:
            logger.debug("Ignoring end with no file announced")
            return None
        self.current = None

        record = None
        accumulator = self.partial.pop(metadata.id, None)
        if accumulator is not None:
            record = ReceivedFile(
                id=str(uuid.uuid4()),
                file_name=metadata.file_name,
                file_size=accumulator.received,
                data=b"".join(accumulator.chunks),
            )
            self.received.append(record)
            self.completed[metadata.id] = accumulator.received
            logger.info(f"📁 Received {record.file_name} ({record.file_size} bytes)")

        if metadata.index >= metadata.total:
            self.state = ReceiverState.ALL_RECEIVED
            self.status.update(status="All files received", progress=0, speed="", eta="")
        else:
            self.state = ReceiverState.WAITING_FOR_METADATA
            self.status.update(status="File Received. Waiting for next...", progress=0, speed="", eta="")
        return record

    def _send(self, message) -> None:
        if self.channel is None:
            logger.warning(f"No channel to send {message.type}")
            return
        try:
            self.channel.send(encode_control(message))
        except ChannelError as e:
            logger.error(f"Could not send {message.type}: {e}")
