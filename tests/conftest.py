"""Shared fixtures for relay chat tests."""

import os
import tempfile
from collections.abc import Callable, Iterator
from typing import Any

# The server module builds its store at import time; keep it out of $HOME
os.environ.setdefault(
    "RELAY_CHAT_DATA_DIR", tempfile.mkdtemp(prefix="relay-chat-test-")
)

import pytest

from relay_chat.history import MessageStore
from relay_chat.models import Connection
from relay_chat.router import ChatRouter, Outcome


class FakeClient:
    """A connected client that records everything the server pushes to it."""

    def __init__(self, router: ChatRouter, sid: str) -> None:
        self.sid = sid
        self.received: list[tuple[str, Any]] = []
        self.fail = False
        self._router = router
        self.connection: Connection = router.connect(sid, self._emit)

    async def _emit(self, event: str, payload: Any) -> None:
        if self.fail:
            raise ConnectionResetError("socket closed")
        self.received.append((event, payload))

    async def emit(self, name: str, data: Any = None) -> Outcome:
        return await self._router.handle(self.connection, name, data)

    async def disconnect(self) -> Outcome:
        return await self._router.disconnect(self.sid)

    def events(self, name: str) -> list[Any]:
        return [payload for event, payload in self.received if event == name]


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def store(tmp_path) -> MessageStore:
    return MessageStore(tmp_path / "history", timeout=2.0)


@pytest.fixture
def router(store: MessageStore) -> Iterator[ChatRouter]:
    """Router with server-side typing expiry disabled."""
    chat_router = ChatRouter(store, typing_timeout=0)
    yield chat_router
    chat_router.close()


@pytest.fixture
def client(router: ChatRouter) -> Callable[[str], FakeClient]:
    """Factory for clients connected to ``router``."""

    def connect(sid: str) -> FakeClient:
        return FakeClient(router, sid)

    return connect
