"""
Control messages exchanged with an attached terminal client.

Inbound (client -> hub): ``input`` and ``resize``.
Outbound (hub -> client): ``data``, ``status``, ``exit`` and ``snapshot``.

The ``type`` strings and field names are the wire contract; browser clients
depend on them verbatim.
"""

from __future__ import annotations

from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

SessionStatus = Literal["starting", "running", "exited", "error"]


class _Message(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")


class InputMessage(_Message):
    type: Literal["input"] = "input"
    data: str


class ResizeMessage(_Message):
    type: Literal["resize"] = "resize"
    cols: int
    rows: int


class DataMessage(_Message):
    type: Literal["data"] = "data"
    data: str


class StatusMessage(_Message):
    type: Literal["status"] = "status"
    status: SessionStatus


class ExitMessage(_Message):
    type: Literal["exit"] = "exit"
    code: Optional[int] = None


class SnapshotMessage(_Message):
    type: Literal["snapshot"] = "snapshot"
    data: str


ClientMessage = Annotated[Union[InputMessage, ResizeMessage], Field(discriminator="type")]
ServerMessage = Union[DataMessage, StatusMessage, ExitMessage, SnapshotMessage]

_client_adapter: TypeAdapter[ClientMessage] = TypeAdapter(ClientMessage)


class ProtocolError(ValueError):
    """Raised for client frames that are not a known control message."""


def parse_client_message(raw: str | bytes) -> InputMessage | ResizeMessage:
    try:
        return _client_adapter.validate_json(raw)
    except PydanticValidationError as exc:
        raise ProtocolError(f"Invalid terminal message: {exc.error_count()} error(s)") from exc


def encode_message(message: ServerMessage) -> str:
    return message.model_dump_json()
