import logging
from typing import List, Optional

from pydantic import ValidationError

from .models import (
    ErrorNotice,
    JoinRoom,
    PeerDisconnected,
    Ping,
    Pong,
    Role,
    RoomFull,
    RoomJoined,
    SignalDelivery,
    SignalRequest,
    UserConnected,
    WireModel,
    client_message,
    is_valid_room_id,
)
from .registry import JoinOutcome, Participant, RoomRegistry, SendCallable

logger = logging.getLogger(__name__)


class CoordinationService:
    """Pairs two peers per room and relays their signaling payloads.

    One instance serves every connection; it holds no state of its own beyond the
    injected registry, so each connection handler can fail without touching others.
    """

    def __init__(self, registry: RoomRegistry):
        self.registry = registry

    async def connect(self, connection_id: str, send: SendCallable):
        """Register a new connection"""
        await self.registry.register(Participant(connection_id, send))

    async def disconnect(self, connection_id: str):
        """Remove connection and tell its rooms"""
        departed = await self.registry.unregister(connection_id)
        for room_id, remaining in departed.items():
            logger.info(f"🚪 {connection_id} left room {room_id}")
            await self.broadcast(remaining, PeerDisconnected())

    async def handle_message(self, connection_id: str, data: dict):
        """Dispatch one decoded client message."""
        try:
            message = client_message.validate_python(data)
        except ValidationError as e:
            logger.warning(f"⚠️ Dropping malformed message from {connection_id}: {e.error_count()} error(s)")
            return

        if isinstance(message, JoinRoom):
            await self.join(connection_id, message.room_id)
        elif isinstance(message, SignalRequest):
            await self.relay_signal(connection_id, message)
        elif isinstance(message, Ping):
            await self.send(connection_id, Pong(id=message.id))

    async def join(self, connection_id: str, room_id: Optional[str]):
        """Put connection in a room and announce its role"""
        if not is_valid_room_id(room_id):
            logger.warning(f"❌ Invalid room id from {connection_id}: {room_id!r}")
            await self.send(connection_id, ErrorNotice(message="Invalid room ID"))
            return

        result = await self.registry.join(connection_id, room_id)
        for old_room, remaining in result.departed.items():
            logger.info(f"🚪 {connection_id} moved out of room {old_room}")
            await self.broadcast(remaining, PeerDisconnected())

        if result.outcome is JoinOutcome.FULL:
            logger.info(f"⛔ Room {room_id} is full, rejected {connection_id}")
            await self.send(connection_id, RoomFull())
        elif result.outcome is JoinOutcome.FIRST:
            logger.info(f"🏠 Room {room_id} created by {connection_id}")
            await self.send(connection_id, RoomJoined(role=Role.SENDER))
        else:
            logger.info(f"🏠 {connection_id} joined room {room_id}")
            await self.send(connection_id, RoomJoined(role=Role.RECEIVER))
            others = [cid for cid in result.occupants if cid != connection_id]
            await self.broadcast(others, UserConnected(connection_id=connection_id))

    async def relay_signal(self, connection_id: str, request: SignalRequest):
        """Forward signaling payload to a target or to the rest of a room"""
        if request.signal is None:
            logger.warning(f"⚠️ Dropping signal without payload from {connection_id}")
            return

        delivery = SignalDelivery(signal=request.signal, sender=connection_id)
        if request.target:
            logger.debug(f"🔄 Signal {connection_id} -> {request.target}")
            await self.send(request.target, delivery)
        elif request.room_id is not None:
            if not is_valid_room_id(request.room_id):
                logger.warning(f"⚠️ Dropping signal for invalid room {request.room_id!r}")
                return
            occupants = await self.registry.occupants(request.room_id)
            logger.debug(f"🔄 Signal {connection_id} -> room {request.room_id}")
            await self.broadcast([cid for cid in occupants if cid != connection_id], delivery)
        else:
            logger.warning(f"⚠️ Dropping signal without target or room from {connection_id}")

    async def send(self, connection_id: str, message: WireModel) -> bool:
        """Send to one connection; delivery failures are logged, never raised."""
        participant = await self.registry.lookup(connection_id)
        if participant is None:
            logger.warning(f"❌ Connection {connection_id} not found for {message.type}")
            return False
        try:
            await participant.send(message.to_wire())
            return True
        except Exception as e:
            logger.error(f"❌ Error sending {message.type} to {connection_id}: {e}")
            return False

    async def broadcast(self, connection_ids: List[str], message: WireModel) -> int:
        """Send message to every connection listed"""
        successful_sends = 0
        for connection_id in connection_ids:
            if await self.send(connection_id, message):
                successful_sends += 1
        return successful_sends
