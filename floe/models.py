import re
from enum import Enum
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

ROOM_ID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)

MAX_OCCUPANTS = 2


def is_valid_room_id(room_id: Any) -> bool:
    """Room ids must be shaped like a version-4 UUID."""
    return isinstance(room_id, str) and ROOM_ID_PATTERN.match(room_id) is not None


class Role(str, Enum):
    SENDER = "sender"
    RECEIVER = "receiver"


class WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class Room(BaseModel):
    room_id: str
    occupants: List[str] = []


# Client -> server

class JoinRoom(WireModel):
    type: Literal["join-room"] = "join-room"
    room_id: Optional[str] = Field(default=None, alias="roomId")


class SignalRequest(WireModel):
    type: Literal["signal"] = "signal"
    target: Optional[str] = None
    room_id: Optional[str] = Field(default=None, alias="roomId")
    signal: Any = None


class Ping(WireModel):
    type: Literal["ping"] = "ping"
    id: Optional[Union[int, str]] = None


ClientMessage = Annotated[Union[JoinRoom, SignalRequest, Ping], Field(discriminator="type")]
client_message = TypeAdapter(ClientMessage)


# Server -> client

class RoomJoined(WireModel):
    type: Literal["room-joined"] = "room-joined"
    role: Role


class UserConnected(WireModel):
    type: Literal["user-connected"] = "user-connected"
    connection_id: str = Field(alias="connectionId")


class RoomFull(WireModel):
    type: Literal["room-full"] = "room-full"


class SignalDelivery(WireModel):
    type: Literal["signal"] = "signal"
    signal: Any
    sender: str


class PeerDisconnected(WireModel):
    type: Literal["peer-disconnected"] = "peer-disconnected"


class Pong(WireModel):
    type: Literal["pong"] = "pong"
    id: Optional[Union[int, str]] = None


class ErrorNotice(WireModel):
    type: Literal["error"] = "error"
    message: str


ServerMessage = Annotated[
    Union[RoomJoined, UserConnected, RoomFull, SignalDelivery, PeerDisconnected, Pong, ErrorNotice],
    Field(discriminator="type"),
]
server_message = TypeAdapter(ServerMessage)
