"""Data models for the relay chat server."""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

EmitFunc = Callable[[str, Any], Awaitable[None]]


def format_timestamp(value: datetime) -> str:
    """Render a timestamp the way clients expect it (ISO-8601, UTC, ms, ``Z``)."""
    value = value.astimezone(timezone.utc)
    return value.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime:
    """Parse a timestamp produced by :func:`format_timestamp`."""
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return datetime.fromisoformat(value)


@dataclass(eq=False)
class Connection:
    """One live client session on the transport.

    Connections compare by identity: two sessions for the same user are
    different connections.
    """

    sid: str
    emit: EmitFunc = field(repr=False)
    username: Optional[str] = None  # bound by registerUser
    display_name: Optional[str] = None  # name announced in rooms
    room: Optional[str] = None
    connected: bool = True
    connected_at: datetime = field(default_factory=datetime.now)
    # Serializes this connection's inbound events (asyncio.Lock is FIFO)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @property
    def name(self) -> str:
        """Get the name used in room notices."""
        return self.display_name or self.username or f"Anonymous-{self.sid[:8]}"

    async def send(self, event: str, payload: Any) -> None:
        """Push one outbound event to the client."""
        await self.emit(event, payload)


@dataclass(frozen=True)
class GroupMessage:
    """A message posted to a room."""

    room: str
    from_user: str
    message: str
    date_sent: datetime

    def to_dict(self) -> dict[str, Any]:
        """Convert to the receiveMessage / history payload."""
        return {
            "from_user": self.from_user,
            "room": self.room,
            "message": self.message,
            "date_sent": format_timestamp(self.date_sent),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "GroupMessage":
        """Create from dictionary."""
        return cls(
            room=data["room"],
            from_user=data["from_user"],
            message=data["message"],
            date_sent=parse_timestamp(data["date_sent"]),
        )


@dataclass(frozen=True)
class PrivateMessage:
    """A direct message between two users."""

    from_user: str
    to_user: str
    message: str
    date_sent: datetime

    def to_dict(self) -> dict[str, Any]:
        """Convert to the receivePrivate / history payload."""
        return {
            "from_user": self.from_user,
            "to_user": self.to_user,
            "message": self.message,
            "date_sent": format_timestamp(self.date_sent),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PrivateMessage":
        """Create from dictionary."""
        return cls(
            from_user=data["from_user"],
            to_user=data["to_user"],
            message=data["message"],
            date_sent=parse_timestamp(data["date_sent"]),
        )


@dataclass(frozen=True)
class Delivery:
    """One outbound event addressed to one connection."""

    connection: Connection
    event: str
    payload: Any
