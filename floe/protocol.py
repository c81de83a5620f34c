"""Framing for messages carried over the peer-to-peer channel.

Each message starts with one tag byte. Control messages are tagged ``0x00`` and
carry UTF-8 JSON; file data is tagged ``0x01`` and carries raw bytes. A receiver
never has to guess what a payload is from its size or content.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from .constants import TAG_CHUNK, TAG_CONTROL


class ProtocolError(ValueError):
    pass


class _Control(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)


class Metadata(_Control):
    type: Literal["metadata"] = "metadata"
    id: str
    file_name: str = Field(alias="fileName")
    file_size: int = Field(alias="fileSize", ge=0)
    index: int = Field(ge=1)
    total: int = Field(ge=1)


class Ack(_Control):
    type: Literal["ack"] = "ack"
    id: str
    offset: int = Field(ge=0)


class End(_Control):
    type: Literal["end"] = "end"


Control = Annotated[Union[Metadata, Ack, End], Field(discriminator="type")]
_control = TypeAdapter(Control)


@dataclass(frozen=True)
class Chunk:
    data: bytes


Frame = Union[Metadata, Ack, End, Chunk]


def encode_control(message: _Control) -> bytes:
    body = json.dumps(message.model_dump(by_alias=True), separators=(",", ":"))
    return bytes([TAG_CONTROL]) + body.encode("utf-8")


def encode_chunk(data: bytes) -> bytes:
    return bytes([TAG_CHUNK]) + data


def decode_frame(raw: bytes) -> Frame:
    if not raw:
        raise ProtocolError("empty frame")
    tag, body = raw[0], raw[1:]
    if tag == TAG_CHUNK:
        return Chunk(bytes(body))
    if tag != TAG_CONTROL:
        raise ProtocolError(f"unknown frame tag: {tag:#04x}")
    try:
        return _control.validate_json(body)
    except ValidationError as e:
        raise ProtocolError(f"invalid control message: {e.error_count()} error(s)") from e
