import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .models import MAX_OCCUPANTS, Room

logger = logging.getLogger(__name__)

SendCallable = Callable[[dict], Awaitable[Any]]


@dataclass
class Participant:
    connection_id: str
    send: SendCallable


class JoinOutcome(Enum):
    FIRST = "first"
    SECOND = "second"
    FULL = "full"


@dataclass
class JoinResult:
    outcome: JoinOutcome
    occupants: List[str]
    # Rooms the caller was removed from, with whoever is still in them.
    departed: Dict[str, List[str]]


class RoomRegistry:
    """In-memory room membership shared by every connection of one server.

    All mutations happen under a single lock; callers send messages after the
    lock is released, using the snapshots returned here.
    """

    def __init__(self):
        self.rooms: Dict[str, Room] = {}
        self.participants: Dict[str, Participant] = {}
        self._lock = asyncio.Lock()

    async def register(self, participant: Participant) -> None:
        """Add a connection to the directory"""
        async with self._lock:
            self.participants[participant.connection_id] = participant
        logger.info(f"🔌 Connection registered: {participant.connection_id}")
        logger.info(f"📊 Total connections: {len(self.participants)}")

    async def unregister(self, connection_id: str) -> Dict[str, List[str]]:
        """Drop a connection and return {room_id: remaining occupants} for its rooms."""
        async with self._lock:
            self.participants.pop(connection_id, None)
            departed = self._leave_all(connection_id)
        logger.info(f"❌ Connection unregistered: {connection_id}")
        logger.info(f"📊 Total connections: {len(self.participants)}")
        return departed

    async def join(self, connection_id: str, room_id: str) -> JoinResult:
        """Add connection to a room, unless the room is full"""
        async with self._lock:
            room = self.rooms.get(room_id)
            if room is not None and connection_id in room.occupants:
                position = room.occupants.index(connection_id)
                outcome = JoinOutcome.FIRST if position == 0 else JoinOutcome.SECOND
                return JoinResult(outcome, list(room.occupants), {})

            if room is not None and len(room.occupants) >= MAX_OCCUPANTS:
                return JoinResult(JoinOutcome.FULL, list(room.occupants), {})

            departed = self._leave_all(connection_id)
            if room is None:
                room = Room(room_id=room_id)
                self.rooms[room_id] = room
            room.occupants.append(connection_id)
            outcome = JoinOutcome.FIRST if len(room.occupants) == 1 else JoinOutcome.SECOND
            return JoinResult(outcome, list(room.occupants), departed)

    async def occupants(self, room_id: str) -> List[str]:
        """Get connection ids in room"""
        async with self._lock:
            room = self.rooms.get(room_id)
            return list(room.occupants) if room else []

    async def lookup(self, connection_id: str) -> Optional[Participant]:
        """Find participant by connection id"""
        async with self._lock:
            return self.participants.get(connection_id)

    def _leave_all(self, connection_id: str) -> Dict[str, List[str]]:
        departed = {}
        for room_id in [rid for rid, room in self.rooms.items() if connection_id in room.occupants]:
            room = self.rooms[room_id]
            room.occupants.remove(connection_id)
            departed[room_id] = list(room.occupants)
            if not room.occupants:
                del self.rooms[room_id]
                logger.info(f"🗑️ Removed empty room {room_id}")
        return departed

    def stats(self) -> dict:
        """Get room and connection counts"""
        return {"rooms": len(self.rooms), "connections": len(self.participants)}
