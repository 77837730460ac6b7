"""Relay wire protocol: flat JSON objects tagged by ``type``.

Every frame is one complete message; there are no partial or streamed
messages. Unknown kinds and missing or ill-typed fields are malformed and
surface as ``ProtocolError``.
"""

from __future__ import annotations

from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from termote.relay.errors import ProtocolError


class BaseMessage(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")


class TerminalInput(BaseMessage):
    """Keystrokes typed by a viewer."""

    type: Literal["TERMINAL_INPUT"] = "TERMINAL_INPUT"
    data: str


class TerminalOutput(BaseMessage):
    """Shell output, agent to viewers."""

    type: Literal["TERMINAL_OUTPUT"] = "TERMINAL_OUTPUT"
    data: str


class TerminalResize(BaseMessage):
    type: Literal["TERMINAL_RESIZE"] = "TERMINAL_RESIZE"
    cols: int = Field(gt=0)
    rows: int = Field(gt=0)


class SessionReady(BaseMessage):
    """A viewer joined and wants to be brought up to date."""

    type: Literal["SESSION_READY"] = "SESSION_READY"


class SessionEnd(BaseMessage):
    """The session was stopped server-side."""

    type: Literal["SESSION_END"] = "SESSION_END"
    reason: str | None = None


class HistoryRequest(BaseMessage):
    """A viewer asks for the replay buffer without a fresh join."""

    type: Literal["HISTORY_REQUEST"] = "HISTORY_REQUEST"


class Ping(BaseMessage):
    type: Literal["PING"] = "PING"


class Pong(BaseMessage):
    type: Literal["PONG"] = "PONG"


Message = Annotated[
    Union[
        TerminalInput,
        TerminalOutput,
        TerminalResize,
        SessionReady,
        SessionEnd,
        HistoryRequest,
        Ping,
        Pong,
    ],
    Field(discriminator="type"),
]

_adapter: TypeAdapter[Message] = TypeAdapter(Message)


def encode(message: BaseMessage) -> str:
    """Serialize a message to its JSON text frame."""
    return message.model_dump_json(exclude_none=True)


def decode(frame: str | bytes) -> Message:
    """Parse one text frame into a message.

    Raises:
        ProtocolError: The frame is not valid JSON or not a known message.
    """
    try:
        return _adapter.validate_json(frame)
    except ValidationError as e:
        raise ProtocolError(f"malformed frame: {e.error_count()} error(s)") from e
