"""Tests for PresenceRegistry and RoomManager."""

from typing import Any

from relay_chat.managers import PresenceRegistry, RoomManager
from relay_chat.models import Connection


async def _discard(event: str, payload: Any) -> None:
    pass


def make_connection(sid: str) -> Connection:
    return Connection(sid=sid, emit=_discard)


class TestPresenceRegistry:
    def test_register_and_lookup(self) -> None:
        registry = PresenceRegistry()
        conn = make_connection("sid-1")

        registry.register("alice", conn)

        assert registry.lookup("alice") is conn
        assert conn.username == "alice"
        assert registry.lookup("bob") is None

    def test_last_registration_wins(self) -> None:
        registry = PresenceRegistry()
        first, second = make_connection("sid-1"), make_connection("sid-2")

        registry.register("alice", first)
        registry.register("alice", second)

        assert registry.lookup("alice") is second
        assert first.connected  # superseded, not torn down

    def test_superseded_connection_cannot_evict_newer_one(self) -> None:
        registry = PresenceRegistry()
        x, y = make_connection("sid-x"), make_connection("sid-y")

        registry.register("u", x)
        registry.register("u", y)

        assert registry.unregister(x) is False
        assert registry.lookup("u") is y

        assert registry.unregister(y) is True
        assert registry.lookup("u") is None

    def test_unregister_unbound_connection_is_noop(self) -> None:
        registry = PresenceRegistry()

        assert registry.unregister(make_connection("sid-1")) is False
        assert len(registry) == 0

    def test_switching_username_releases_old_name(self) -> None:
        registry = PresenceRegistry()
        conn = make_connection("sid-1")

        registry.register("alice", conn)
        registry.register("alicia", conn)

        assert "alice" not in registry
        assert registry.lookup("alicia") is conn

    def test_online_users(self) -> None:
        registry = PresenceRegistry()
        registry.register("bob", make_connection("sid-1"))
        registry.register("alice", make_connection("sid-2"))

        assert registry.online_users() == ["alice", "bob"]


class TestRoomManager:
    def test_join_adds_member(self) -> None:
        rooms = RoomManager()
        conn = make_connection("sid-1")

        assert rooms.join(conn, "general") is None

        assert conn.room == "general"
        assert rooms.members("general") == [conn]

    def test_joining_second_room_moves_connection(self) -> None:
        rooms = RoomManager()
        conn = make_connection("sid-1")
        rooms.join(conn, "general")

        assert rooms.join(conn, "random") == "general"

        assert conn.room == "random"
        assert rooms.members("general") == []
        assert rooms.members("random") == [conn]
        assert rooms.rooms() == ["random"]

    def test_rejoining_same_room_keeps_single_membership(self) -> None:
        rooms = RoomManager()
        conn = make_connection("sid-1")
        rooms.join(conn, "general")

        assert rooms.join(conn, "general") is None
        assert rooms.members("general") == [conn]

    def test_leave(self) -> None:
        rooms = RoomManager()
        conn = make_connection("sid-1")
        rooms.join(conn, "general")

        assert rooms.leave(conn) == "general"
        assert conn.room is None
        assert rooms.leave(conn) is None

    def test_broadcast_excludes_one_connection(self) -> None:
        rooms = RoomManager()
        a, b, c = make_connection("a"), make_connection("b"), make_connection("c")
        for conn in (a, b, c):
            rooms.join(conn, "general")

        deliveries = rooms.broadcast("general", "typing", {"from": "a"}, exclude=a)

        assert [d.connection for d in deliveries] == [b, c]
        assert all(d.event == "typing" for d in deliveries)

    def test_broadcast_is_a_snapshot(self) -> None:
        rooms = RoomManager()
        a, b = make_connection("a"), make_connection("b")
        rooms.join(a, "general")
        rooms.join(b, "general")

        deliveries = rooms.broadcast("general", "systemMessage", "hello")
        rooms.leave(b)

        assert [d.connection for d in deliveries] == [a, b]
        assert rooms.members("general") == [a]

    def test_broadcast_to_unknown_room_is_empty(self) -> None:
        assert RoomManager().broadcast("nowhere", "systemMessage", "hello") == []
