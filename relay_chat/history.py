"""Message store for persistent room and private message history."""

import asyncio
import hashlib
import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional, TypeVar

from relay_chat.errors import PersistenceError
from relay_chat.models import GroupMessage, PrivateMessage, parse_timestamp

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 200

T = TypeVar("T")

RecordBuilder = Callable[[datetime], dict[str, Any]]


def _file_stem(label: str, key: str) -> str:
    """Make a filesystem-safe file stem that cannot collide for distinct keys."""
    safe = "".join(c if c.isalnum() or c in "-_" else "_" for c in label)[:64]
    digest = hashlib.sha1(key.encode("utf-8")).hexdigest()[:12]
    return f"{safe}-{digest}"


def pair_key(user_a: str, user_b: str) -> tuple[str, str]:
    """Unordered participant pair, normalized so (a, b) == (b, a)."""
    first, second = sorted((user_a, user_b))
    return first, second


class MessageStore:
    """Append-only message history backed by JSON files.

    Storage location: {base_path}/rooms/{room}.json for group messages and
    {base_path}/private/{user_a}__{user_b}.json for each unordered pair.

    Each append assigns a server-side timestamp that is never earlier than
    the newest message already stored in the same file, even across
    restarts. Every call is bounded by ``timeout`` seconds; a stalled or
    failing disk surfaces as :class:`PersistenceError`.
    """

    def __init__(
        self, base_path: Path | None = None, timeout: float | None = 5.0
    ) -> None:
        """Initialize the message store.

        Args:
            base_path: Base directory for history files.
                      Defaults to ~/.relay-chat/history/
            timeout: Seconds allowed per store call, None for no bound
        """
        if base_path is None:
            base_path = Path.home() / ".relay-chat" / "history"

        self._base_path = base_path
        self._rooms_path = base_path / "rooms"
        self._private_path = base_path / "private"
        self._rooms_path.mkdir(parents=True, exist_ok=True)
        self._private_path.mkdir(parents=True, exist_ok=True)

        self._timeout = timeout
        self._last_timestamp: datetime | None = None
        self._clock_lock = threading.Lock()

        # Per-file locks: asyncio side orders callers, thread side guards
        # writes that outlive a timed out caller
        self._locks: dict[Path, asyncio.Lock] = {}
        self._file_locks: dict[Path, threading.Lock] = {}

        logger.info(f"MessageStore initialized with path: {self._base_path}")

    @property
    def base_path(self) -> Path:
        return self._base_path

    def _get_lock(self, path: Path) -> asyncio.Lock:
        """Get or create the async lock for a history file."""
        if path not in self._locks:
            self._locks[path] = asyncio.Lock()
            self._file_locks[path] = threading.Lock()
        return self._locks[path]

    def _room_file(self, room: str) -> Path:
        return self._rooms_path / f"{_file_stem(room, room)}.json"

    def _private_file(self, user_a: str, user_b: str) -> Path:
        first, second = pair_key(user_a, user_b)
        stem = _file_stem(f"{first}__{second}", f"{first}\x00{second}")
        return self._private_path / f"{stem}.json"

    def _next_timestamp(self, floor: Optional[datetime] = None) -> datetime:
        """Current UTC time at ms precision, never before ``floor`` or the last one."""
        now = datetime.now(timezone.utc)
        now = now.replace(microsecond=now.microsecond // 1000 * 1000)
        with self._clock_lock:
            for earliest in (self._last_timestamp, floor):
                if earliest is not None and now < earliest:
                    now = earliest
            self._last_timestamp = now
        return now

    @staticmethod
    def _empty_document(key: dict[str, Any]) -> dict[str, Any]:
        return {
            **key,
            "created_at": datetime.now(timezone.utc).isoformat(),
            "messages": [],
        }

    def _quarantine(self, path: Path, reason: Any) -> None:
        """Move a corrupted file aside for potential recovery."""
        logger.warning(f"Corrupted history file {path.name}: {reason}")
        corrupted_path = path.with_suffix(
            f".corrupted.{datetime.now().strftime('%Y%m%d_%H%M%S')}.json"
        )
        path.rename(corrupted_path)
        logger.info(f"Renamed corrupted file to {corrupted_path}")

    def _load_document(self, path: Path, key: dict[str, Any]) -> dict[str, Any]:
        """Load a history document.

        Returns an empty document if the file doesn't exist or is corrupted.
        """
        if not path.exists():
            return self._empty_document(key)

        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            self._quarantine(path, e)
            return self._empty_document(key)

        if not isinstance(data, dict) or not isinstance(data.get("messages"), list):
            self._quarantine(path, "not a history document")
            return self._empty_document(key)
        return data

    def _save_document(self, path: Path, data: dict[str, Any]) -> None:
        """Save a history document with an atomic write."""
        temp_path = path.with_suffix(".tmp")
        try:
            temp_path.write_text(
                json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8"
            )
            temp_path.replace(path)
        except OSError:
            if temp_path.exists():
                temp_path.unlink()
            raise

    def _append_record(
        self, path: Path, key: dict[str, Any], build: RecordBuilder
    ) -> datetime:
        """Timestamp and append one record.

        Returns:
            The timestamp given to the record
        """
        with self._file_locks[path]:
            data = self._load_document(path, key)
            messages = data["messages"]
            newest = None
            if messages:
                newest = max(parse_timestamp(m["date_sent"]) for m in messages)
            timestamp = self._next_timestamp(floor=newest)
            messages.append(build(timestamp))
            self._save_document(path, data)
        return timestamp

    def _read_messages(
        self, path: Path, key: dict[str, Any], parse: Callable[[dict[str, Any]], T]
    ) -> list[T]:
        with self._file_locks[path]:
            data = self._load_document(path, key)
        return [parse(record) for record in data["messages"]]

    async def _run(self, func: Callable[..., T], *args: Any) -> T:
        """Run blocking file I/O off the event loop under the store timeout."""
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(func, *args), self._timeout
            )
        except asyncio.TimeoutError as e:
            raise PersistenceError(
                f"Message store timed out after {self._timeout}s"
            ) from e
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
            raise PersistenceError(f"Message store failure: {e}") from e

    async def append_group_message(
        self, room: str, sender: str, text: str
    ) -> datetime:
        """Append a message to a room's history.

        Returns:
            The server-assigned send timestamp

        Raises:
            PersistenceError: if the message could not be written
        """

        def build(timestamp: datetime) -> dict[str, Any]:
            return GroupMessage(
                room=room, from_user=sender, message=text, date_sent=timestamp
            ).to_dict()

        path = self._room_file(room)
        async with self._get_lock(path):
            timestamp = await self._run(
                self._append_record, path, {"room": room}, build
            )

        logger.debug(f"Persisted message from {sender} in room {room}")
        return timestamp

    async def append_private_message(
        self, sender: str, recipient: str, text: str
    ) -> datetime:
        """Append a private message to the history of the (sender, recipient) pair.

        Returns:
            The server-assigned send timestamp

        Raises:
            PersistenceError: if the message could not be written
        """

        def build(timestamp: datetime) -> dict[str, Any]:
            return PrivateMessage(
                from_user=sender, to_user=recipient, message=text, date_sent=timestamp
            ).to_dict()

        path = self._private_file(sender, recipient)
        participants = list(pair_key(sender, recipient))
        async with self._get_lock(path):
            timestamp = await self._run(
                self._append_record, path, {"participants": participants}, build
            )

        logger.debug(f"Persisted private message from {sender} to {recipient}")
        return timestamp

    async def get_room_history(
        self, room: str, limit: int | None = DEFAULT_HISTORY_LIMIT
    ) -> list[GroupMessage]:
        """Get message history for a room.

        Args:
            room: The room name
            limit: Maximum number of messages to return (most recent), None for all

        Returns:
            List of messages, ordered chronologically
        """
        path = self._room_file(room)
        async with self._get_lock(path):
            messages = await self._run(
                self._read_messages, path, {"room": room}, GroupMessage.from_dict
            )

        messages.sort(key=lambda m: m.date_sent)
        return _most_recent(messages, limit)

    async def get_private_history(
        self, user_a: str, user_b: str, limit: int | None = DEFAULT_HISTORY_LIMIT
    ) -> list[PrivateMessage]:
        """Get private messages exchanged between two users, in either direction.

        The result does not depend on argument order.
        """
        path = self._private_file(user_a, user_b)
        participants = list(pair_key(user_a, user_b))
        async with self._get_lock(path):
            messages = await self._run(
                self._read_messages,
                path,
                {"participants": participants},
                PrivateMessage.from_dict,
            )

        messages.sort(key=lambda m: m.date_sent)
        return _most_recent(messages, limit)

    async def count_group_messages(self, room: str) -> int:
        """Get total message count for a room."""
        path = self._room_file(room)
        async with self._get_lock(path):
            records = await self._run(
                self._read_messages, path, {"room": room}, dict
            )
        return len(records)


def _most_recent(messages: list[T], limit: int | None) -> list[T]:
    if limit is None:
        return messages
    if limit <= 0:
        return []
    return messages[-limit:]
