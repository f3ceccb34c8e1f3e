"""Inbound client events.

Each Socket.IO event the server accepts has one frozen dataclass here. The
field names are the wire field names, so ``parse_event`` can build any
variant from the raw event payload.
"""

from dataclasses import dataclass, fields
from typing import Any, ClassVar, Union

from relay_chat.errors import ValidationError


@dataclass(frozen=True)
class RegisterUser:
    name: ClassVar[str] = "registerUser"

    username: str


@dataclass(frozen=True)
class JoinRoom:
    name: ClassVar[str] = "joinRoom"

    room: str
    username: str


@dataclass(frozen=True)
class LeaveRoom:
    name: ClassVar[str] = "leaveRoom"


@dataclass(frozen=True)
class SendMessage:
    name: ClassVar[str] = "sendMessage"

    room: str
    username: str
    message: str


@dataclass(frozen=True)
class SendPrivate:
    name: ClassVar[str] = "sendPrivate"

    from_user: str
    to_user: str
    message: str


@dataclass(frozen=True)
class Typing:
    name: ClassVar[str] = "typing"

    room: str
    username: str


@dataclass(frozen=True)
class StopTyping:
    name: ClassVar[str] = "stopTyping"

    room: str


@dataclass(frozen=True)
class TypingPrivate:
    name: ClassVar[str] = "typingPrivate"

    from_user: str
    to_user: str


@dataclass(frozen=True)
class StopTypingPrivate:
    name: ClassVar[str] = "stopTypingPrivate"

    from_user: str
    to_user: str


Event = Union[
    RegisterUser,
    JoinRoom,
    LeaveRoom,
    SendMessage,
    SendPrivate,
    Typing,
    StopTyping,
    TypingPrivate,
    StopTypingPrivate,
]

EVENT_TYPES: dict[str, type] = {
    cls.name: cls
    for cls in (
        RegisterUser,
        JoinRoom,
        LeaveRoom,
        SendMessage,
        SendPrivate,
        Typing,
        StopTyping,
        TypingPrivate,
        StopTypingPrivate,
    )
}


def parse_event(name: str, data: Any = None) -> Event:
    """Build the event variant for a raw inbound event.

    ``registerUser`` carries a bare username string; every other event with
    fields carries an object keyed by field name. Extra keys are ignored.

    Raises:
        ValidationError: unknown event, or a required field missing or empty
    """
    cls = EVENT_TYPES.get(name)
    if cls is None:
        raise ValidationError(name, "unknown event")

    required = [f.name for f in fields(cls)]
    if not required:
        return cls()

    if cls is RegisterUser and not isinstance(data, dict):
        data = {"username": data}
    if not isinstance(data, dict):
        raise ValidationError(name, "payload must be an object")

    values = {}
    for field_name in required:
        value = data.get(field_name)
        if not value:
            raise ValidationError(name, f"missing {field_name}")
        if not isinstance(value, str):
            raise ValidationError(name, f"{field_name} must be a string")
        values[field_name] = value
    return cls(**values)
