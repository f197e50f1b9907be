"""
Data models for conversation storage.
These define the shape of data flowing through the relay.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timezone

from moodrelay.moods import DEFAULT_MOOD

TITLE_LENGTH = 20


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def make_title(text: str) -> str:
    """First user message, cut to TITLE_LENGTH characters with '...' if it was longer."""
    text = text or ""
    if len(text) > TITLE_LENGTH:
        return text[:TITLE_LENGTH] + "..."
    return text


@dataclass(frozen=True)
class Message:
    """A single stored message. Never mutated once appended."""
    role: str                # "user" or "assistant"; system messages are never stored
    content: str
    timestamp: str = field(default_factory=_now)
    mood: str | None = None  # mood reported with a user message

    def to_dict(self) -> dict:
        data = {"role": self.role, "content": self.content, "timestamp": self.timestamp}
        if self.mood:
            data["mood"] = self.mood
        return data

    def to_openai_format(self) -> dict:
        return {"role": self.role, "content": self.content}

    @classmethod
    def from_dict(cls, data: dict) -> "Message":
        role = data.get("role")
        if not role:
            # Early clients stored {isUser: bool} instead of a role
            role = "user" if data.get("isUser") else "assistant"
        return cls(
            role=role,
            content=data.get("content", ""),
            timestamp=str(data.get("timestamp") or _now()),
            mood=data.get("mood"),
        )


@dataclass
class Conversation:
    """An ordered, append-only list of messages plus its mood and title."""
    id: str
    messages: list[Message] = field(default_factory=list)
    mood: str = DEFAULT_MOOD
    title: str = ""
    created_at: str = field(default_factory=_now)

    @property
    def last_message(self) -> Message | None:
        return self.messages[-1] if self.messages else None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "messages": [m.to_dict() for m in self.messages],
            "mood": self.mood,
            "title": self.title,
            "createdAt": self.created_at,
        }

    def to_openai_messages(self, window: int = 0) -> list[dict]:
        """Last `window` messages in OpenAI format (0 means the whole history)."""
        messages = self.messages[-window:] if window > 0 else self.messages
        return [m.to_openai_format() for m in messages]

    @classmethod
    def from_dict(cls, data: dict) -> "Conversation":
        return cls(
            id=str(data["id"]),
            messages=[Message.from_dict(m) for m in data.get("messages", [])],
            mood=data.get("mood") or DEFAULT_MOOD,
            title=data.get("title", ""),
            created_at=str(data.get("createdAt") or _now()),
        )
