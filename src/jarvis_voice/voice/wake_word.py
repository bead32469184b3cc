"""Wake phrase matching for the Jarvis voice session.

Matching is text based: the recognizer already produced a transcript, so
detection is a case-insensitive substring check for the configured phrase
(optionally preceded by a greeting, e.g. "hey jarvis").
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

import structlog

from jarvis_voice.utils.config import WakeConfig

logger = structlog.get_logger(__name__)

# Separators allowed between the phrase and an inline command
_COMMAND_SEPARATORS = " ,.!?;:"


@dataclass
class WakePhraseMatcher:
    """Finds the wake phrase in transcripts and extracts trailing commands."""

    config: WakeConfig = field(default_factory=WakeConfig)
    _phrase: str = field(default="", repr=False)
    _leading: re.Pattern[str] | None = field(default=None, repr=False)

    def __post_init__(self) -> None:
        self._phrase = self.config.phrase.strip().lower()
        phrase = re.escape(self._phrase)
        greeting = self.config.greeting.strip()
        prefix = rf"(?:{re.escape(greeting)}\s+)?" if greeting else ""
        self._leading = re.compile(rf"^\s*{prefix}{phrase}[,?.!\s]*", re.IGNORECASE)

    @property
    def phrase(self) -> str:
        return self._phrase

    def contains_wake(self, text: str) -> bool:
        """True if the phrase appears anywhere in the text."""
        return bool(text) and self._phrase in text.lower()

    def _remainder(self, text: str) -> str:
        index = text.lower().find(self._phrase)
        if index < 0:
            return ""
        return text[index + len(self._phrase) :].strip()

    def command_after_wake(self, text: str) -> str:
        """Text following the first phrase occurrence, or "" if absent."""
        return self._remainder(text).lstrip(_COMMAND_SEPARATORS).strip()

    def has_inline_command(self, text: str) -> bool:
        """True if a wake transcript carries trailing content long enough to dispatch.

        Measured before separators are stripped, so "jarvis, hi" dispatches "hi".
        """
        return len(self._remainder(text)) >= self.config.min_inline_command_chars

    def strip_leading_wake(self, text: str) -> str:
        """Remove a repeated leading phrase (with optional greeting) from a command."""
        assert self._leading is not None
        return self._leading.sub("", text, count=1).strip()
