"""Session controller: one peer's side of a transfer, from join to completion.

The role comes from the entry context. Without a room id we are the sender and
create a fresh room; with one we are the receiver for that room. The controller
is the only consumer of the signaling event stream, and a peer departure races
every phase of the session.
"""
import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Awaitable, List, Optional, Sequence, Tuple

from .channel import ChannelError
from .constants import SENDER_LINGER_S
from .engine import TransferEngine
from .metrics import StatusListener, TransferStatus
from .models import ErrorNotice, PeerDisconnected, Role, RoomFull, RoomJoined, UserConnected
from .receiver import ReceivedFile, Receiver, ReceiverState
from .sender import OutgoingFile, Sender
from .signaling import Disconnected, SignalingClosed

logger = logging.getLogger(__name__)

LINK_EXPIRED = "Link Expired or Busy"
CONNECTION_INTERRUPTED = "Connection interrupted"
WAITING_FOR_RECONNECT = "Peer disconnected. Waiting for reconnection..."


@dataclass
class SessionResult:
    role: Role
    room_id: str
    status: str
    error: Optional[str] = None
    received: List[ReceivedFile] = field(default_factory=list)
    completed: bool = False


class SessionController:
    def __init__(self, signaling, connector, *, files: Sequence[OutgoingFile] = (),
                 room_id: Optional[str] = None, client_url: str = "http://localhost:3000",
                 reconnect_timeout: Optional[float] = 120.0, ping_interval: float = 2.0,
                 linger: float = SENDER_LINGER_S, on_status: Optional[StatusListener] = None):
        self.signaling = signaling
        self.connector = connector
        self.role = Role.RECEIVER if room_id else Role.SENDER
        self.room_id = room_id or str(uuid.uuid4())
        self.files = list(files)
        self.client_url = client_url
        self.reconnect_timeout = reconnect_timeout
        self.ping_interval = ping_interval
        self.linger = linger
        self.status = TransferStatus(listener=on_status)
        self.receiver = Receiver(status=self.status) if self.role is Role.RECEIVER else None
        self.latency_ms: Optional[float] = None
        self.error: Optional[str] = None
        self.transfer_complete = False

    @property
    def link(self) -> str:
        return f"{self.client_url}?room={self.room_id}"

    @property
    def received(self) -> List[ReceivedFile]:
        return list(self.receiver.received) if self.receiver else []

    async def run(self) -> SessionResult:
        pinger = None
        try:
            await self.signaling.connect()
            pinger = asyncio.create_task(self._ping_loop())
            await self.signaling.join(self.room_id)
            if await self._expect_join():
                if self.role is Role.SENDER:
                    await self._run_sender()
                else:
                    await self._run_receiver()
        except SignalingClosed as e:
            logger.warning(f"Signaling closed: {e}")
            self._on_signaling_lost()
        finally:
            if pinger is not None:
                pinger.cancel()
                await asyncio.gather(pinger, return_exceptions=True)
            await self.signaling.close()

        return SessionResult(
            role=self.role,
            room_id=self.room_id,
            status=self.status.status,
            error=self.error,
            received=self.received,
            completed=self.transfer_complete,
        )

    def _set_status(self, text: str, **changes):
        logger.info(text)
        self.status.update(status=text, **changes)

    def _fail(self, error: str, status: str):
        logger.error(error)
        self.error = error
        self._set_status(status)

    async def _expect_join(self, rejoining: bool = False) -> bool:
        while True:
            event = await self.signaling.next_event()
            if isinstance(event, RoomJoined):
                break
            if isinstance(event, RoomFull):
                if self.received or self.transfer_complete:
                    self._set_status("Transfer complete")
                else:
                    self._fail(LINK_EXPIRED, "Access Denied")
                return False
            if isinstance(event, ErrorNotice):
                self._fail(event.message, "Connection failed")
                return False
            if isinstance(event, Disconnected):
                self._on_signaling_lost()
                return False
            logger.debug(f"Ignoring {event.type} before join")

        if event.role is not self.role:
            # A receiver that lands in an empty room has a link whose sender is gone.
            if not rejoining:
                self._fail(LINK_EXPIRED, "Access Denied")
            elif self.received:
                self._set_status("Transfer complete")
            else:
                self._fail(CONNECTION_INTERRUPTED, CONNECTION_INTERRUPTED)
            return False
        return True

    def _on_signaling_lost(self):
        if self.received or self.transfer_complete:
            self._set_status("Transfer complete (disconnected)")
        elif self.error is None:
            self._fail("Lost connection to the coordination service", "Connection failed")

    async def _watch_for_departure(self):
        while True:
            event = await self.signaling.next_event()
            if isinstance(event, (PeerDisconnected, Disconnected)):
                return event
            logger.debug(f"Ignoring {event.type} during transfer")

    async def _until_peer_leaves(self, work: Awaitable) -> Tuple[bool, object]:
        """Run ``work`` unless the peer leaves first.

        Returns (True, result) when the work finished, (False, departure event)
        otherwise. Errors raised by the work propagate.
        """
        task = asyncio.ensure_future(work)
        watcher = asyncio.create_task(self._watch_for_departure())
        try:
            done, _ = await asyncio.wait({task, watcher}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            watcher.cancel()
            raise
        if task in done:
            if watcher.done():
                # Keep the departure for whoever reads events next.
                self.signaling.events.put_nowait(watcher.result())
            else:
                watcher.cancel()
                await asyncio.gather(watcher, return_exceptions=True)
            return True, task.result()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        return False, watcher.result()

    async def _next_event(self, timeout: Optional[float]):
        try:
            return await asyncio.wait_for(self.signaling.next_event(), timeout)
        except asyncio.TimeoutError:
            return None

    # Sender

    async def _run_sender(self):
        self._set_status("Waiting for peer...")
        timeout = None
        while True:
            event = await self._next_event(timeout)
            if event is None:
                self._fail(CONNECTION_INTERRUPTED, CONNECTION_INTERRUPTED)
                return
            if isinstance(event, Disconnected):
                self._on_signaling_lost()
                return
            if isinstance(event, UserConnected):
                self._set_status("Peer joined! Starting...")
                if await self._sender_round(event.connection_id):
                    return
                timeout = self.reconnect_timeout
            elif isinstance(event, PeerDisconnected):
                self._set_status(WAITING_FOR_RECONNECT)
            else:
                logger.debug(f"Ignoring {event.type} while waiting for a peer")

    async def _sender_round(self, peer_id: str) -> bool:
        """One connection attempt; True when the session is over."""
        try:
            connected, outcome = await self._until_peer_leaves(
                self.connector.connect(self.signaling, initiator=True, room_id=self.room_id, peer_id=peer_id)
            )
        except (ChannelError, asyncio.TimeoutError) as e:
            logger.error(f"Could not open a channel to {peer_id}: {e}")
            self._set_status("Connection failed")
            return False
        if not connected:
            return self._after_departure(outcome)

        channel = outcome
        sender = Sender(channel, self.files, status=self.status)
        try:
            finished, departure = await self._until_peer_leaves(
                TransferEngine(channel, sender=sender, linger=self.linger).run()
            )
        finally:
            await channel.close()

        if sender.complete:
            self.transfer_complete = True
            return True
        if not finished:
            return self._after_departure(departure)
        self._set_status(CONNECTION_INTERRUPTED)
        return False

    def _after_departure(self, event) -> bool:
        if isinstance(event, Disconnected):
            self._on_signaling_lost()
            return True
        if self.received or self.transfer_complete:
            self._set_status("Transfer complete")
            return True
        if self.status.progress > 0:
            self._set_status(CONNECTION_INTERRUPTED)
        else:
            self._set_status(WAITING_FOR_RECONNECT)
        return False

    # Receiver

    async def _run_receiver(self):
        self._set_status("Connecting...")
        timeout = None
        while True:
            try:
                connected, outcome = await self._until_peer_leaves(
                    asyncio.wait_for(
                        self.connector.connect(self.signaling, initiator=False, room_id=self.room_id),
                        timeout,
                    )
                )
            except asyncio.TimeoutError:
                self._fail(CONNECTION_INTERRUPTED, CONNECTION_INTERRUPTED)
                return
            except ChannelError as e:
                logger.error(f"Could not open a channel: {e}")
                self._fail(f"Connection error: {e}", "Connection failed")
                return
            if not connected:
                if self._after_departure(outcome):
                    return
                timeout = self.reconnect_timeout
                continue

            channel = outcome
            try:
                finished, departure = await self._until_peer_leaves(
                    TransferEngine(channel, receiver=self.receiver).run()
                )
            finally:
                await channel.close()
            self.signaling.drain_signals()

            if self.receiver.state is ReceiverState.ALL_RECEIVED:
                self.transfer_complete = True
                self._set_status("Transfer complete")
                return
            if not finished:
                if self._after_departure(departure):
                    return
            else:
                self._set_status(CONNECTION_INTERRUPTED)
                # Both sides are still in the room; re-joining makes the sender
                # start a new round, which resumes from our accumulators and
                # skips files already received.
                if not await self._rejoin():
                    return
            timeout = self.reconnect_timeout

    async def _ping_loop(self):
        while True:
            await asyncio.sleep(self.ping_interval)
            try:
                self.latency_ms = await self.signaling.ping()
            except (SignalingClosed, asyncio.TimeoutError):
                logger.debug("Ping went unanswered")
                continue
            logger.debug(f"Coordination latency: {self.latency_ms} ms")

    async def _rejoin(self) -> bool:
        await self.signaling.close()
        await self.signaling.connect()
        await self.signaling.join(self.room_id)
        return await self._expect_join(rejoining=True)
