"""Tests for wake phrase matching."""

from __future__ import annotations

import pytest

from jarvis_voice.utils.config import WakeConfig
from jarvis_voice.voice.wake_word import WakePhraseMatcher


@pytest.fixture
def matcher() -> WakePhraseMatcher:
    return WakePhraseMatcher()


class TestWakePhraseMatcher:
    """Test detection and command extraction."""

    @pytest.mark.parametrize(
        "text,expected",
        [
            ("Jarvis", True),
            ("hey JARVIS what time is it", True),
            ("ok jarvis, lights", True),
            ("jar vis", False),
            ("", False),
        ],
    )
    def test_contains_wake(self, matcher: WakePhraseMatcher, text: str, expected: bool) -> None:
        assert matcher.contains_wake(text) is expected

    @pytest.mark.parametrize(
        "text,command",
        [
            ("hey jarvis what time is it", "what time is it"),
            ("Jarvis, open the doors", "open the doors"),
            ("jarvis... status?", "status?"),
            ("jarvis", ""),
            ("no wake here", ""),
        ],
    )
    def test_command_after_wake(self, matcher: WakePhraseMatcher, text: str, command: str) -> None:
        assert matcher.command_after_wake(text) == command

    def test_inline_command_length(self, matcher: WakePhraseMatcher) -> None:
        assert matcher.has_inline_command("jarvis lights") is True
        assert matcher.has_inline_command("jarvis ok") is False
        assert matcher.has_inline_command("jarvis") is False

    def test_inline_length_counts_separators(self, matcher: WakePhraseMatcher) -> None:
        assert matcher.has_inline_command("jarvis, hi") is True
        assert matcher.command_after_wake("jarvis, hi") == "hi"
        assert matcher.has_inline_command("jarvis.") is False

    @pytest.mark.parametrize(
        "text,expected",
        [
            ("Hey Jarvis, what time is it", "what time is it"),
            ("jarvis? lights on", "lights on"),
            ("lights on jarvis", "lights on jarvis"),
            ("what time is it", "what time is it"),
        ],
    )
    def test_strip_leading_wake(self, matcher: WakePhraseMatcher, text: str, expected: str) -> None:
        assert matcher.strip_leading_wake(text) == expected

    def test_custom_phrase(self) -> None:
        matcher = WakePhraseMatcher(WakeConfig(phrase="Friday", greeting="ok"))

        assert matcher.phrase == "friday"
        assert matcher.contains_wake("OK FRIDAY play music")
        assert matcher.strip_leading_wake("ok friday play music") == "play music"
        assert not matcher.contains_wake("hey jarvis")
