"""Tests for conversation history and its JSON persistence."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from jarvis_voice.voice.history import (
    HISTORY_KEY,
    THEME_KEY,
    ChatMessage,
    ConversationHistory,
    JsonHistoryStore,
    Role,
)


class TestChatMessage:
    """Test message serialization."""

    def test_dict_round_trip_with_sources(self) -> None:
        message = ChatMessage(Role.ASSISTANT, "Answer", timestamp=12.5, sources=("https://a",))

        data = message.to_dict()

        assert data["role"] == "assistant"
        assert ChatMessage.from_dict(data) == message

    def test_sources_omitted_when_empty(self) -> None:
        assert "sources" not in ChatMessage(Role.USER, "hi", timestamp=1.0).to_dict()


class TestConversationHistory:
    """Test the append-only history."""

    def test_append_order_and_callback(self) -> None:
        snapshots: list[int] = []
        history = ConversationHistory(on_change=lambda messages: snapshots.append(len(messages)))

        history.add_user("hello")
        history.add_assistant("Good evening.", ["https://a"])

        assert [m.role for m in history] == [Role.USER, Role.ASSISTANT]
        assert history.messages[1].sources == ("https://a",)
        assert snapshots == [1, 2]

    def test_backwards_timestamp_restamped(self) -> None:
        history = ConversationHistory()
        history.append(ChatMessage(Role.USER, "first", timestamp=100.0))

        stored = history.append(ChatMessage(Role.ASSISTANT, "second", timestamp=50.0))

        assert stored.timestamp == 100.0
        assert [m.timestamp for m in history] == [100.0, 100.0]

    def test_snapshot_is_immutable(self) -> None:
        history = ConversationHistory()
        history.add_user("hello")

        snapshot = history.snapshot()
        history.add_user("again")

        assert len(snapshot) == 1
        assert len(history) == 2

    def test_extend_loaded_sorts_without_callback(self) -> None:
        calls: list[int] = []
        history = ConversationHistory(on_change=lambda messages: calls.append(1))

        history.extend_loaded(
            [ChatMessage(Role.ASSISTANT, "b", timestamp=2.0), ChatMessage(Role.USER, "a", timestamp=1.0)]
        )

        assert [m.content for m in history] == ["a", "b"]
        assert calls == []

    def test_extend_loaded_requires_empty_history(self) -> None:
        history = ConversationHistory()
        history.add_user("hello")

        with pytest.raises(RuntimeError):
            history.extend_loaded([])


class TestJsonHistoryStore:
    """Test load-at-start and save-on-change persistence."""

    def test_missing_file_gives_defaults(self, tmp_path: Path) -> None:
        store = JsonHistoryStore(tmp_path / "session.json")

        assert store.load_history() == []
        assert store.load_theme() == "dark"

    def test_save_and_load(self, tmp_path: Path) -> None:
        store = JsonHistoryStore(tmp_path / "nested" / "session.json")
        history = ConversationHistory(on_change=store.save_history)
        history.add_user("what time is it")
        history.add_assistant("Noon.", ["https://time.example"])

        loaded = store.load_history()

        assert [m.content for m in loaded] == ["what time is it", "Noon."]
        assert loaded[1].sources == ("https://time.example",)

    def test_file_uses_fixed_keys(self, tmp_path: Path) -> None:
        path = tmp_path / "session.json"
        store = JsonHistoryStore(path)
        store.save_theme("light")
        store.save_history([ChatMessage(Role.USER, "hi", timestamp=1.0)])

        data = json.loads(path.read_text())

        assert set(data) == {HISTORY_KEY, THEME_KEY}
        assert data[THEME_KEY] == "light"

    def test_only_newest_messages_written(self, tmp_path: Path) -> None:
        store = JsonHistoryStore(tmp_path / "session.json", max_messages=2)

        store.save_history(
            [ChatMessage(Role.USER, f"m{i}", timestamp=float(i)) for i in range(5)]
        )

        assert [m.content for m in store.load_history()] == ["m3", "m4"]

    def test_corrupt_file_ignored(self, tmp_path: Path) -> None:
        path = tmp_path / "session.json"
        path.write_text("{not json")

        assert JsonHistoryStore(path).load_history() == []

    def test_bad_entries_skipped(self, tmp_path: Path) -> None:
        path = tmp_path / "session.json"
        path.write_text(
            json.dumps(
                {
                    HISTORY_KEY: [
                        {"role": "user", "content": "ok", "timestamp": 1},
                        {"role": "robot", "content": "bad", "timestamp": 2},
                        {"content": "no role"},
                    ]
                }
            )
        )

        assert [m.content for m in JsonHistoryStore(path).load_history()] == ["ok"]
