import asyncio
import uuid

from conftest import InProcessSignaling, LoopbackConnector, run

from floe.channel import ChannelClosed, LoopbackChannel
from floe.constants import INITIAL_CHUNK_SIZE, TAG_CHUNK
from floe.models import Role, RoomJoined
from floe.receiver import ReceivedFile
from floe.sender import OutgoingFile
from floe.session import CONNECTION_INTERRUPTED, LINK_EXPIRED, SessionController


async def _noop(message):
    pass


async def _wait_for_room(service):
    while not service.registry.rooms:
        await asyncio.sleep(0.01)
    return next(iter(service.registry.rooms))


class DroppingChannel(LoopbackChannel):
    """Loses the connection on the first send after ``drop_after`` frames."""

    def __init__(self):
        super().__init__()
        self.drop_after = None
        self.sent = 0
        self.chunk_bytes = 0
        self._closing = None

    def send(self, data: bytes) -> None:
        if self.drop_after is not None and self.sent >= self.drop_after and not self.closed:
            self._closing = asyncio.ensure_future(self.close())
            raise ChannelClosed("connection lost")
        super().send(data)
        self.sent += 1
        if data[:1] == bytes([TAG_CHUNK]):
            self.chunk_bytes += len(data) - 1


def drop_first_connection(after: int):
    made = []

    def pair():
        mine, theirs = DroppingChannel.pair()
        if not made:
            mine.drop_after = after
        made.append(mine)
        return mine, theirs

    return pair, made


async def _transfer(service, hub, files, pair=LoopbackChannel.pair, statuses=None):
    sender = SessionController(
        InProcessSignaling(service), LoopbackConnector(hub, pair), files=files, ping_interval=60, linger=1.0
    )
    sending = asyncio.create_task(sender.run())
    await _wait_for_room(service)

    receiver = SessionController(
        InProcessSignaling(service),
        LoopbackConnector(hub, pair),
        room_id=sender.room_id,
        ping_interval=60,
        on_status=(lambda s: statuses.append(s.status)) if statuses is not None else None,
    )
    received = await asyncio.wait_for(receiver.run(), timeout=10)
    sent = await asyncio.wait_for(sending, timeout=10)
    return sender, sent, received


def test_sender_and_receiver_complete_a_transfer(service, hub):
    files = [
        OutgoingFile.from_bytes("notes.txt", b"hello receiver"),
        OutgoingFile.from_bytes("photo.jpg", bytes(range(256)) * 2000),
    ]
    statuses = []

    sender, sent, received = run(_transfer(service, hub, files, statuses=statuses))

    assert sent.role is Role.SENDER
    assert sent.completed
    assert sent.error is None
    assert sent.status == "All Files Sent!"
    assert sender.link == f"http://localhost:3000?room={sender.room_id}"

    assert received.role is Role.RECEIVER
    assert received.completed
    assert received.status == "Transfer complete"
    assert [f.file_name for f in received.received] == ["notes.txt", "photo.jpg"]
    assert received.received[1].data == bytes(range(256)) * 2000
    assert "Receiving file 1 of 2..." in statuses
    assert "Receiving file 2 of 2..." in statuses

    assert service.registry.rooms == {}


def test_full_room_denies_access(service, hub):
    room_id = str(uuid.uuid4())

    async def scenario():
        for cid in ("first", "second"):
            await service.connect(cid, _noop)
            await service.join(cid, room_id)
        third = SessionController(InProcessSignaling(service), LoopbackConnector(hub), room_id=room_id, ping_interval=60)
        return await asyncio.wait_for(third.run(), timeout=5)

    result = run(scenario())
    assert result.error == LINK_EXPIRED
    assert result.status == "Access Denied"
    assert not result.completed


def test_receiver_in_an_empty_room_gets_link_expired(service, hub):
    async def scenario():
        receiver = SessionController(
            InProcessSignaling(service), LoopbackConnector(hub), room_id=str(uuid.uuid4()), ping_interval=60
        )
        return await asyncio.wait_for(receiver.run(), timeout=5)

    result = run(scenario())
    assert result.role is Role.RECEIVER
    assert result.error == LINK_EXPIRED
    assert service.registry.rooms == {}


def test_invalid_room_id_is_reported(service, hub):
    async def scenario():
        receiver = SessionController(InProcessSignaling(service), LoopbackConnector(hub), room_id="room-1", ping_interval=60)
        return await asyncio.wait_for(receiver.run(), timeout=5)

    result = run(scenario())
    assert result.error == "Invalid room ID"
    assert result.status == "Connection failed"


def test_sender_gives_up_when_peer_never_returns(service, hub):
    statuses = []

    async def scenario():
        sender = SessionController(
            InProcessSignaling(service),
            LoopbackConnector(hub),
            files=[OutgoingFile.from_bytes("a.txt", b"abc")],
            reconnect_timeout=0.1,
            ping_interval=60,
            on_status=lambda s: statuses.append(s.status),
        )
        sending = asyncio.create_task(sender.run())
        room_id = await _wait_for_room(service)

        # A peer that joins but never answers the offer, then leaves.
        await service.connect("peer", _noop)
        await service.join("peer", room_id)
        await asyncio.sleep(0.05)
        await service.disconnect("peer")
        return await asyncio.wait_for(sending, timeout=5)

    result = run(scenario())
    assert "Peer joined! Starting..." in statuses
    assert "Peer disconnected. Waiting for reconnection..." in statuses
    assert result.error == CONNECTION_INTERRUPTED
    assert not result.completed


def test_ping_measures_round_trip(service):
    async def scenario():
        client = InProcessSignaling(service)
        await client.connect()
        try:
            return await client.ping()
        finally:
            await client.close()

    assert run(scenario()) >= 0


def test_receiver_rejoins_when_the_channel_drops_between_files(service, hub):
    files = [OutgoingFile.from_bytes("a.txt", b"first"), OutgoingFile.from_bytes("b.txt", b"second")]
    # metadata, chunk and end of the first file go through, the next announce does not
    pair, made = drop_first_connection(after=3)
    statuses = []

    _, sent, received = run(_transfer(service, hub, files, pair=pair, statuses=statuses))

    assert CONNECTION_INTERRUPTED in statuses
    assert received.completed
    assert received.status == "Transfer complete"
    assert [(f.file_name, f.data) for f in received.received] == [("a.txt", b"first"), ("b.txt", b"second")]
    assert sent.completed
    assert sent.error is None
    assert len(made) == 2
    # the finished file is skipped on the second connection
    assert made[1].chunk_bytes == len(b"second")


def test_dropped_file_resumes_from_held_bytes(service, hub):
    data = bytes(range(256)) * 4096
    pair, made = drop_first_connection(after=4)
    statuses = []

    _, sent, received = run(
        _transfer(service, hub, [OutgoingFile.from_bytes("big.bin", data)], pair=pair, statuses=statuses)
    )

    assert CONNECTION_INTERRUPTED in statuses
    assert sent.completed
    assert received.completed
    [record] = received.received
    assert record.file_size == len(data)
    assert record.data == data
    assert made[0].chunk_bytes == 3 * INITIAL_CHUNK_SIZE
    assert made[1].chunk_bytes == len(data) - 3 * INITIAL_CHUNK_SIZE


def _rejoined_as_sender(service, hub, received_files):
    async def scenario():
        signaling = InProcessSignaling(service)
        receiver = SessionController(signaling, LoopbackConnector(hub), room_id=str(uuid.uuid4()), ping_interval=60)
        receiver.receiver.received.extend(received_files)
        signaling.events.put_nowait(RoomJoined(role=Role.SENDER))
        joined = await receiver._expect_join(rejoining=True)
        return joined, receiver

    return run(scenario())


def test_rejoin_after_sender_left_keeps_received_files(service, hub):
    kept = ReceivedFile(id="1", file_name="a.txt", file_size=1, data=b"a")
    joined, receiver = _rejoined_as_sender(service, hub, [kept])
    assert joined is False
    assert receiver.error is None
    assert receiver.status.status == "Transfer complete"


def test_rejoin_after_sender_left_with_nothing_received(service, hub):
    joined, receiver = _rejoined_as_sender(service, hub, [])
    assert joined is False
    assert receiver.error == CONNECTION_INTERRUPTED
