from __future__ import annotations

import asyncio
import json
import uuid

import pytest

from floe.channel import LoopbackChannel
from floe.coordination import CoordinationService
from floe.registry import RoomRegistry
from floe.signaling import SignalingClient, SignalingClosed


def run(coro):
    return asyncio.run(coro)


class InProcessSignaling(SignalingClient):
    """SignalingClient wired straight into a CoordinationService, no sockets."""

    def __init__(self, service: CoordinationService):
        super().__init__("inprocess://")
        self.service = service
        self.connection_id = None

    async def connect(self):
        self.events = asyncio.Queue()
        self.signals = asyncio.Queue()
        self.connection_id = str(uuid.uuid4())
        self.connected = True
        await self.service.connect(self.connection_id, self._deliver)

    async def _deliver(self, message: dict):
        self.dispatch(json.loads(json.dumps(message)))

    async def _send(self, message: dict):
        if not self.connected:
            raise SignalingClosed("not connected")
        await self.service.handle_message(self.connection_id, json.loads(json.dumps(message)))

    async def close(self):
        if self.connected:
            await self.service.disconnect(self.connection_id)
            self.connection_lost()


class LoopbackConnector:
    """Hands out LoopbackChannel ends through a shared hub keyed by the offer."""

    def __init__(self, hub: dict, pair=LoopbackChannel.pair):
        self.hub = hub
        self.pair = pair

    async def connect(self, signaling, *, initiator, room_id, peer_id=None):
        if initiator:
            mine, theirs = self.pair()
            key = str(uuid.uuid4())
            self.hub[key] = theirs
            await signaling.send_signal({"type": "offer", "key": key}, target=peer_id)
            while True:
                delivery = await signaling.next_signal()
                if delivery.signal == {"type": "answer", "key": key}:
                    return mine
        while True:
            delivery = await signaling.next_signal()
            signal = delivery.signal
            if signal.get("type") == "offer" and signal.get("key") in self.hub:
                channel = self.hub.pop(signal["key"])
                await signaling.send_signal({"type": "answer", "key": signal["key"]}, room_id=room_id)
                return channel


@pytest.fixture
def service():
    return CoordinationService(RoomRegistry())


@pytest.fixture
def hub():
    return {}
