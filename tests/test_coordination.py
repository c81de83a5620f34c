from __future__ import annotations

from conftest import run

from floe.coordination import CoordinationService
from floe.registry import RoomRegistry

ROOM = "11111111-1111-4111-8111-111111111111"
OTHER_ROOM = "33333333-3333-4333-a333-333333333333"


class Inbox:
    def __init__(self):
        self.messages = []

    async def __call__(self, message):
        self.messages.append(message)

    def types(self):
        return [m["type"] for m in self.messages]


async def _service(*ids):
    service = CoordinationService(RoomRegistry())
    inboxes = {}
    for cid in ids:
        inboxes[cid] = Inbox()
        await service.connect(cid, inboxes[cid])
    return service, inboxes


def test_first_two_joiners_get_complementary_roles():
    async def scenario():
        service, inboxes = await _service("A", "B")
        await service.handle_message("A", {"type": "join-room", "roomId": ROOM})
        await service.handle_message("B", {"type": "join-room", "roomId": ROOM})
        return inboxes

    inboxes = run(scenario())
    assert inboxes["A"].messages == [
        {"type": "room-joined", "role": "sender"},
        {"type": "user-connected", "connectionId": "B"},
    ]
    assert inboxes["B"].messages == [{"type": "room-joined", "role": "receiver"}]


def test_third_joiner_gets_room_full():
    async def scenario():
        service, inboxes = await _service("A", "B", "C")
        for cid in ("A", "B", "C"):
            await service.handle_message(cid, {"type": "join-room", "roomId": ROOM})
        return service, inboxes

    service, inboxes = run(scenario())
    assert inboxes["C"].messages == [{"type": "room-full"}]
    assert service.registry.rooms[ROOM].occupants == ["A", "B"]
    assert "user-connected" not in inboxes["B"].types()
    assert inboxes["A"].types() == ["room-joined", "user-connected"]


def test_invalid_room_id_is_answered_with_error():
    async def scenario():
        service, inboxes = await _service("A")
        await service.handle_message("A", {"type": "join-room", "roomId": "not-a-room"})
        await service.handle_message("A", {"type": "join-room"})
        return service, inboxes

    service, inboxes = run(scenario())
    assert inboxes["A"].messages == [{"type": "error", "message": "Invalid room ID"}] * 2
    assert service.registry.rooms == {}


def test_targeted_signal_is_point_to_point():
    async def scenario():
        service, inboxes = await _service("A", "B", "X")
        await service.handle_message("A", {"type": "join-room", "roomId": ROOM})
        await service.handle_message("B", {"type": "join-room", "roomId": ROOM})
        for inbox in inboxes.values():
            inbox.messages.clear()
        await service.handle_message("A", {"type": "signal", "target": "X", "signal": {"sdp": "x"}})
        return inboxes

    inboxes = run(scenario())
    assert inboxes["X"].messages == [{"type": "signal", "signal": {"sdp": "x"}, "sender": "A"}]
    assert inboxes["B"].messages == []
    assert inboxes["A"].messages == []


def test_room_signal_reaches_everyone_but_the_sender():
    async def scenario():
        service, inboxes = await _service("A", "B")
        await service.handle_message("A", {"type": "join-room", "roomId": ROOM})
        await service.handle_message("B", {"type": "join-room", "roomId": ROOM})
        for inbox in inboxes.values():
            inbox.messages.clear()
        await service.handle_message("B", {"type": "signal", "roomId": ROOM, "signal": "answer"})
        return inboxes

    inboxes = run(scenario())
    assert inboxes["A"].messages == [{"type": "signal", "signal": "answer", "sender": "B"}]
    assert inboxes["B"].messages == []


def test_malformed_signals_are_dropped_silently():
    async def scenario():
        service, inboxes = await _service("A", "B")
        await service.handle_message("A", {"type": "join-room", "roomId": ROOM})
        await service.handle_message("B", {"type": "join-room", "roomId": ROOM})
        for inbox in inboxes.values():
            inbox.messages.clear()
        await service.handle_message("A", {"type": "signal", "roomId": ROOM})
        await service.handle_message("A", {"type": "signal", "roomId": "nope", "signal": "x"})
        await service.handle_message("A", {"type": "signal", "signal": "x"})
        await service.handle_message("A", {"type": "signal", "target": 5, "signal": "x"})
        await service.handle_message("A", {"type": "no-such-thing"})
        await service.handle_message("A", {"roomId": ROOM})
        return inboxes

    inboxes = run(scenario())
    assert inboxes["A"].messages == []
    assert inboxes["B"].messages == []


def test_disconnect_notifies_remaining_occupant_and_evicts():
    async def scenario():
        service, inboxes = await _service("A", "B")
        await service.handle_message("A", {"type": "join-room", "roomId": ROOM})
        await service.handle_message("B", {"type": "join-room", "roomId": ROOM})
        await service.disconnect("B")
        after_b = service.registry.rooms[ROOM].occupants
        await service.disconnect("A")
        return service, inboxes, after_b

    service, inboxes, after_b = run(scenario())
    assert after_b == ["A"]
    assert inboxes["A"].messages[-1] == {"type": "peer-disconnected"}
    assert service.registry.rooms == {}


def test_moving_to_another_room_notifies_old_peer():
    async def scenario():
        service, inboxes = await _service("A", "B")
        await service.handle_message("A", {"type": "join-room", "roomId": ROOM})
        await service.handle_message("B", {"type": "join-room", "roomId": ROOM})
        await service.handle_message("B", {"type": "join-room", "roomId": OTHER_ROOM})
        return service, inboxes

    service, inboxes = run(scenario())
    assert inboxes["A"].messages[-1] == {"type": "peer-disconnected"}
    assert inboxes["B"].messages[-1] == {"type": "room-joined", "role": "sender"}
    assert service.registry.rooms[ROOM].occupants == ["A"]


def test_ping_is_acknowledged():
    async def scenario():
        service, inboxes = await _service("A")
        await service.handle_message("A", {"type": "ping", "id": 7})
        await service.handle_message("A", {"type": "ping"})
        return inboxes

    inboxes = run(scenario())
    assert inboxes["A"].messages == [{"type": "pong", "id": 7}, {"type": "pong"}]


def test_failing_participant_does_not_break_others():
    async def broken(message):
        raise ConnectionError("socket gone")

    async def scenario():
        service, inboxes = await _service("A")
        await service.connect("B", broken)
        await service.handle_message("A", {"type": "join-room", "roomId": ROOM})
        await service.handle_message("B", {"type": "join-room", "roomId": ROOM})
        return service, inboxes

    service, inboxes = run(scenario())
    assert inboxes["A"].types() == ["room-joined", "user-connected"]
    assert service.registry.rooms[ROOM].occupants == ["A", "B"]
