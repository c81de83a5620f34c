"""The byte-stream channel the transfer engine runs over.

A channel is ordered, message-preserving and bidirectional. Closing either end is
the only cancellation signal the engine knows about.
"""
from __future__ import annotations

import abc
import asyncio
from typing import Optional, Tuple

from .constants import POLL_INTERVAL_S


class ChannelError(Exception):
    """The send primitive failed."""


class ChannelClosed(ChannelError):
    """The channel has been destroyed."""


class Channel(abc.ABC):
    @property
    @abc.abstractmethod
    def closed(self) -> bool: ...

    @property
    @abc.abstractmethod
    def buffered_amount(self) -> int:
        """Bytes queued locally that have not been handed to the network yet."""

    @abc.abstractmethod
    def send(self, data: bytes) -> None: ...

    @abc.abstractmethod
    async def recv(self) -> bytes: ...

    @abc.abstractmethod
    async def close(self) -> None: ...

    async def wait_buffered_below(self, threshold: int) -> None:
        """Return once fewer than ``threshold`` bytes are buffered or the channel closes.

        This default polls; adapters with a drain notification override it.
        """
        while not self.closed and self.buffered_amount >= threshold:
            await asyncio.sleep(POLL_INTERVAL_S)


class LoopbackChannel(Channel):
    """One end of an in-process channel pair.

    Bytes count as buffered from the moment they are sent until the peer end
    receives them.
    """

    def __init__(self):
        self.peer: Optional[LoopbackChannel] = None
        self._inbox: asyncio.Queue = asyncio.Queue()
        self._buffered = 0
        self._closed = False
        self._drained = asyncio.Condition()

    @classmethod
    def pair(cls) -> Tuple["LoopbackChannel", "LoopbackChannel"]:
        a, b = cls(), cls()
        a.peer, b.peer = b, a
        return a, b

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def buffered_amount(self) -> int:
        return self._buffered

    def send(self, data: bytes) -> None:
        if self._closed or self.peer is None:
            raise ChannelClosed("channel is closed")
        self._buffered += len(data)
        self.peer._inbox.put_nowait(bytes(data))

    async def recv(self) -> bytes:
        if self._closed and self._inbox.empty():
            raise ChannelClosed("channel is closed")
        data = await self._inbox.get()
        if data is None:
            raise ChannelClosed("channel is closed")
        if self.peer is not None:
            await self.peer._release(len(data))
        return data

    async def _release(self, size: int) -> None:
        async with self._drained:
            self._buffered -= size
            self._drained.notify_all()

    async def wait_buffered_below(self, threshold: int) -> None:
        async with self._drained:
            await self._drained.wait_for(lambda: self._closed or self._buffered < threshold)

    async def close(self) -> None:
        for end in (self, self.peer):
            if end is None or end._closed:
                continue
            end._closed = True
            end._inbox.put_nowait(None)
            async with end._drained:
                end._drained.notify_all()
