"""Typing indicator state.

Tracks which scopes (a room, or a sender -> recipient pair) currently show
"typing". Clients debounce and send their own stop signal; the server also
expires a scope after ``timeout`` seconds without a refresh so a client that
disconnects mid-typing does not leave the indicator stuck.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from relay_chat.models import Connection

logger = logging.getLogger(__name__)

# 3x the 600ms debounce used by the browser client
DEFAULT_TYPING_TIMEOUT = 1.8


@dataclass(frozen=True)
class TypingScope:
    """Where a typing indicator is shown: a whole room or one recipient."""

    room: Optional[str] = None
    sender: Optional[str] = None
    recipient: Optional[str] = None

    @classmethod
    def for_room(cls, room: str) -> "TypingScope":
        return cls(room=room)

    @classmethod
    def for_pair(cls, sender: str, recipient: str) -> "TypingScope":
        return cls(sender=sender, recipient=recipient)

    @property
    def is_room(self) -> bool:
        return self.room is not None

    def __str__(self) -> str:
        if self.is_room:
            return f"room {self.room}"
        return f"{self.sender} -> {self.recipient}"


@dataclass
class _TypingEntry:
    connection: Connection  # who is typing
    timer: Optional[asyncio.TimerHandle] = None


ExpireCallback = Callable[[TypingScope, Connection], Awaitable[None]]


class TypingTracker:
    """Idle/Typing state per scope with optional server-side expiry."""

    def __init__(
        self,
        timeout: float = DEFAULT_TYPING_TIMEOUT,
        on_expire: Optional[ExpireCallback] = None,
    ) -> None:
        """Initialize the tracker.

        Args:
            timeout: Seconds a scope stays Typing without a refresh.
                     Zero or less disables expiry (pure relay).
            on_expire: Coroutine called when a scope expires
        """
        self._timeout = timeout
        self._on_expire = on_expire
        self._active: dict[TypingScope, _TypingEntry] = {}
        self._tasks: set[asyncio.Task] = set()

    @property
    def expires(self) -> bool:
        return self._timeout > 0 and self._on_expire is not None

    def start(self, scope: TypingScope, connection: Connection) -> bool:
        """Enter or refresh the Typing state.

        Returns:
            True on an Idle -> Typing transition, False on a refresh
        """
        entry = self._active.pop(scope, None)
        if entry is not None and entry.timer is not None:
            entry.timer.cancel()

        timer = None
        if self.expires:
            loop = asyncio.get_running_loop()
            timer = loop.call_later(self._timeout, self._expire, scope)
        self._active[scope] = _TypingEntry(connection=connection, timer=timer)

        if entry is None:
            logger.debug(f"{connection.name} started typing in {scope}")
        return entry is None

    def stop(self, scope: TypingScope) -> Optional[Connection]:
        """Return a scope to Idle.

        Returns:
            The connection that was typing, or None if the scope was Idle
        """
        entry = self._active.pop(scope, None)
        if entry is None:
            return None
        if entry.timer is not None:
            entry.timer.cancel()
        logger.debug(f"Typing stopped in {scope}")
        return entry.connection

    def is_typing(self, scope: TypingScope) -> bool:
        return scope in self._active

    def owned_by(self, connection: Connection) -> list[TypingScope]:
        """Scopes whose last typing signal came from ``connection``."""
        return [s for s, e in self._active.items() if e.connection is connection]

    def drop_connection(self, connection: Connection) -> list[TypingScope]:
        """Stop every scope owned by a connection.

        Returns:
            The scopes that went back to Idle
        """
        scopes = self.owned_by(connection)
        for scope in scopes:
            self.stop(scope)
        return scopes

    def _expire(self, scope: TypingScope) -> None:
        entry = self._active.pop(scope, None)
        if entry is None or self._on_expire is None:
            return
        logger.debug(f"Typing expired in {scope}")
        task = asyncio.ensure_future(self._on_expire(scope, entry.connection))
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Typing expiry handler failed: {task.exception()}")

    def close(self) -> None:
        """Cancel all pending expiry timers."""
        for entry in self._active.values():
            if entry.timer is not None:
                entry.timer.cancel()
        self._active.clear()
        for task in self._tasks:
            task.cancel()
