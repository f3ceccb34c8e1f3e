"""Tests for MessageStore."""

import json
import time
from datetime import datetime, timezone

import pytest

from relay_chat.errors import PersistenceError
from relay_chat.history import MessageStore
from relay_chat.models import format_timestamp

pytestmark = pytest.mark.anyio

MESSAGE_COUNT = 5


class TestRoomHistory:
    async def test_empty_room_returns_empty_list(self, store: MessageStore) -> None:
        assert await store.get_room_history("nobody-here", 200) == []

    async def test_appended_message_is_last_in_history(
        self, store: MessageStore
    ) -> None:
        timestamp = await store.append_group_message("general", "alice", "hi")

        history = await store.get_room_history("general")

        assert len(history) == 1
        assert history[-1].from_user == "alice"
        assert history[-1].room == "general"
        assert history[-1].message == "hi"
        assert history[-1].date_sent == timestamp

    async def test_history_is_ordered_by_timestamp(self, store: MessageStore) -> None:
        for i in range(MESSAGE_COUNT):
            await store.append_group_message("general", "alice", f"msg {i}")

        history = await store.get_room_history("general")

        expected = [f"msg {i}" for i in range(MESSAGE_COUNT)]
        assert [m.message for m in history] == expected
        stamps = [m.date_sent for m in history]
        assert stamps == sorted(stamps)

    async def test_limit_returns_most_recent(self, store: MessageStore) -> None:
        for i in range(MESSAGE_COUNT):
            await store.append_group_message("general", "alice", f"msg {i}")

        history = await store.get_room_history("general", limit=2)

        assert [m.message for m in history] == ["msg 3", "msg 4"]

    async def test_limit_none_returns_everything(self, store: MessageStore) -> None:
        for i in range(MESSAGE_COUNT):
            await store.append_group_message("general", "alice", f"msg {i}")

        history = await store.get_room_history("general", limit=None)

        assert len(history) == MESSAGE_COUNT

    async def test_rooms_do_not_share_history(self, store: MessageStore) -> None:
        # Both names sanitize to the same file-safe label
        await store.append_group_message("team a", "alice", "space")
        await store.append_group_message("team_a", "bob", "underscore")

        spaced = await store.get_room_history("team a")
        underscored = await store.get_room_history("team_a")

        assert [m.message for m in spaced] == ["space"]
        assert [m.message for m in underscored] == ["underscore"]

    async def test_history_survives_new_store_instance(
        self, store: MessageStore
    ) -> None:
        await store.append_group_message("general", "alice", "persisted")

        reopened = MessageStore(store.base_path)

        history = await reopened.get_room_history("general")
        assert [m.message for m in history] == ["persisted"]

    async def test_count_group_messages(self, store: MessageStore) -> None:
        await store.append_group_message("general", "alice", "one")
        await store.append_group_message("general", "bob", "two")

        assert await store.count_group_messages("general") == 2
        assert await store.count_group_messages("empty") == 0

    async def test_timestamps_never_decrease(self, store: MessageStore) -> None:
        stamps = [
            await store.append_group_message("general", "alice", str(i))
            for i in range(MESSAGE_COUNT)
        ]
        assert stamps == sorted(stamps)

    async def test_new_store_does_not_stamp_before_stored_messages(
        self, store: MessageStore
    ) -> None:
        # Messages written while the clock was ahead of where it is now
        ahead = datetime(2099, 1, 1, tzinfo=timezone.utc)
        room_file = store._room_file("general")
        room_file.write_text(
            json.dumps(
                {
                    "room": "general",
                    "messages": [
                        {
                            "room": "general",
                            "from_user": "alice",
                            "message": "from the future",
                            "date_sent": format_timestamp(ahead),
                        }
                    ],
                }
            ),
            encoding="utf-8",
        )

        reopened = MessageStore(store.base_path)
        timestamp = await reopened.append_group_message("general", "bob", "now")

        assert timestamp >= ahead
        history = await reopened.get_room_history("general")
        assert [m.message for m in history] == ["from the future", "now"]

    async def test_wire_format_uses_utc_z_suffix(self, store: MessageStore) -> None:
        await store.append_group_message("general", "alice", "hi")

        payload = (await store.get_room_history("general"))[0].to_dict()

        assert payload["date_sent"].endswith("Z")
        assert set(payload) == {"from_user", "room", "message", "date_sent"}


class TestPrivateHistory:
    async def test_history_is_symmetric(self, store: MessageStore) -> None:
        await store.append_private_message("alice", "bob", "hi bob")
        await store.append_private_message("bob", "alice", "hi alice")

        forward = await store.get_private_history("alice", "bob")
        backward = await store.get_private_history("bob", "alice")

        assert forward == backward
        assert [(m.from_user, m.to_user, m.message) for m in forward] == [
            ("alice", "bob", "hi bob"),
            ("bob", "alice", "hi alice"),
        ]

    async def test_pairs_do_not_share_history(self, store: MessageStore) -> None:
        await store.append_private_message("a", "b__c", "first pair")
        await store.append_private_message("a__b", "c", "second pair")
        await store.append_private_message("alice", "carol", "third pair")

        first = await store.get_private_history("a", "b__c")
        second = await store.get_private_history("c", "a__b")
        assert [m.message for m in first] == ["first pair"]
        assert [m.message for m in second] == ["second pair"]
        assert await store.get_private_history("alice", "bob") == []

    async def test_limit_returns_most_recent(self, store: MessageStore) -> None:
        for i in range(MESSAGE_COUNT):
            await store.append_private_message("alice", "bob", f"dm {i}")

        history = await store.get_private_history("bob", "alice", limit=3)

        assert [m.message for m in history] == ["dm 2", "dm 3", "dm 4"]


class TestStoreFailures:
    async def test_stalled_write_times_out(self, tmp_path, monkeypatch) -> None:
        store = MessageStore(tmp_path, timeout=0.05)

        def stalled(*args) -> None:
            time.sleep(0.3)

        monkeypatch.setattr(store, "_append_record", stalled)

        with pytest.raises(PersistenceError, match="timed out"):
            await store.append_group_message("general", "alice", "hi")

    async def test_write_error_raises_persistence_error(
        self, store: MessageStore, monkeypatch
    ) -> None:
        def broken(*args) -> None:
            raise OSError("disk full")

        monkeypatch.setattr(store, "_save_document", broken)

        with pytest.raises(PersistenceError, match="disk full"):
            await store.append_private_message("alice", "bob", "hi")
        assert await store.get_private_history("alice", "bob") == []

    async def test_corrupted_file_is_set_aside(self, store: MessageStore) -> None:
        await store.append_group_message("general", "alice", "before")
        room_file = store._room_file("general")
        room_file.write_text("{not json", encoding="utf-8")

        assert await store.get_room_history("general") == []
        assert list(room_file.parent.glob("*.corrupted.*"))

        await store.append_group_message("general", "alice", "after")
        data = json.loads(room_file.read_text(encoding="utf-8"))
        assert [m["message"] for m in data["messages"]] == ["after"]

    @pytest.mark.parametrize(
        "contents", ["[]", "null", '"text"', '{"room": "general", "messages": 5}']
    )
    async def test_file_with_wrong_shape_is_set_aside(
        self, store: MessageStore, contents: str
    ) -> None:
        await store.append_group_message("general", "alice", "before")
        room_file = store._room_file("general")
        room_file.write_text(contents, encoding="utf-8")

        assert await store.get_room_history("general") == []
        assert list(room_file.parent.glob("*.corrupted.*"))

        await store.append_group_message("general", "alice", "after")
        history = await store.get_room_history("general")
        assert [m.message for m in history] == ["after"]

    async def test_unreadable_record_raises_persistence_error(
        self, store: MessageStore
    ) -> None:
        room_file = store._room_file("general")
        room_file.write_text(
            json.dumps({"room": "general", "messages": ["not a record"]}),
            encoding="utf-8",
        )

        with pytest.raises(PersistenceError):
            await store.get_room_history("general")
        with pytest.raises(PersistenceError):
            await store.append_group_message("general", "alice", "hi")
