"""Conversation history types and persistence.

Defines:
- Role / ChatMessage: one immutable history entry
- Turn: a dispatched user utterance with its monotonic timestamp
- ConversationHistory: append-only, timestamp-ordered message sequence
- JsonHistoryStore: load-at-start / save-on-change persistence of the
  history and the theme preference
"""

from __future__ import annotations

import json
import time
from collections.abc import Callable, Iterator, Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import structlog
from pydantic import BaseModel, Field

logger = structlog.get_logger(__name__)

HISTORY_KEY = "jarvis_history"
THEME_KEY = "jarvis_theme"


class Role(str, Enum):
    """Author of a chat message."""

    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class ChatMessage:
    """A single history entry. Never mutated after creation.

    Attributes:
        role: Who produced the message
        content: Message text
        timestamp: Wall-clock creation time (epoch seconds)
        sources: Citation URIs attached to an assistant answer
    """

    role: Role
    content: str
    timestamp: float = field(default_factory=time.time)
    sources: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for storage."""
        data: dict[str, Any] = {
            "role": self.role.value,
            "content": self.content,
            "timestamp": self.timestamp,
        }
        if self.sources:
            data["sources"] = list(self.sources)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChatMessage:
        """Create ChatMessage from dictionary."""
        return cls(
            role=Role(data["role"]),
            content=data["content"],
            timestamp=float(data["timestamp"]),
            sources=tuple(data.get("sources") or ()),
        )


@dataclass(frozen=True)
class Turn:
    """A user utterance at the moment it was dispatched."""

    utterance: str
    started_at: float = field(default_factory=time.monotonic)


@dataclass
class ConversationHistory:
    """Append-only history ordered by timestamp.

    A message stamped earlier than its predecessor (clock step backwards)
    is re-stamped with the predecessor's timestamp to keep ordering.
    """

    on_change: Callable[[Sequence[ChatMessage]], None] | None = None
    _messages: list[ChatMessage] = field(default_factory=list, repr=False)

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[ChatMessage]:
        return iter(tuple(self._messages))

    @property
    def messages(self) -> tuple[ChatMessage, ...]:
        return tuple(self._messages)

    def snapshot(self) -> tuple[ChatMessage, ...]:
        """Immutable view of the current history."""
        return tuple(self._messages)

    def extend_loaded(self, messages: Sequence[ChatMessage]) -> None:
        """Seed an empty history with persisted messages (no change callback)."""
        if self._messages:
            raise RuntimeError("History already has messages")
        self._messages.extend(sorted(messages, key=lambda m: m.timestamp))

    def append(self, message: ChatMessage) -> ChatMessage:
        if self._messages and message.timestamp < self._messages[-1].timestamp:
            message = ChatMessage(
                role=message.role,
                content=message.content,
                timestamp=self._messages[-1].timestamp,
                sources=message.sources,
            )
        self._messages.append(message)
        if self.on_change:
            self.on_change(self.snapshot())
        return message

    def add_user(self, content: str) -> ChatMessage:
        return self.append(ChatMessage(role=Role.USER, content=content))

    def add_assistant(self, content: str, sources: Sequence[str] = ()) -> ChatMessage:
        return self.append(
            ChatMessage(role=Role.ASSISTANT, content=content, sources=tuple(sources))
        )


class StoredSession(BaseModel):
    """On-disk shape of the persisted session data."""

    history: list[dict[str, Any]] = Field(default_factory=list, alias=HISTORY_KEY)
    theme: str = Field(default="dark", alias=THEME_KEY)

    model_config = {"populate_by_name": True}


@dataclass
class JsonHistoryStore:
    """Persists history and theme preference to a JSON file.

    Keyed by fixed identifiers so other front ends can share the file.
    Only the newest max_messages entries are written.
    """

    path: Path
    max_messages: int = 200

    def __post_init__(self) -> None:
        self.path = Path(self.path).expanduser()

    def _read(self) -> StoredSession:
        if not self.path.exists():
            return StoredSession()
        try:
            return StoredSession.model_validate(json.loads(self.path.read_text()))
        except (json.JSONDecodeError, ValueError) as e:
            logger.warning("history_store_unreadable", path=str(self.path), error=str(e))
            return StoredSession()

    def _write(self, session: StoredSession) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(session.model_dump(by_alias=True), indent=2))
        tmp.replace(self.path)

    def load_history(self) -> list[ChatMessage]:
        messages = []
        for entry in self._read().history:
            try:
                messages.append(ChatMessage.from_dict(entry))
            except (KeyError, ValueError) as e:
                logger.warning("history_entry_skipped", error=str(e))
        logger.info("history_loaded", path=str(self.path), messages=len(messages))
        return messages

    def save_history(self, messages: Sequence[ChatMessage]) -> None:
        session = self._read()
        session.history = [m.to_dict() for m in messages[-self.max_messages :]]
        self._write(session)

    def load_theme(self) -> str:
        return self._read().theme

    def save_theme(self, theme: str) -> None:
        session = self._read()
        session.theme = theme
        self._write(session)
