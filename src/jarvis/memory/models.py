"""Data models for the memory system."""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class Platform(str, Enum):
    """Messaging channel a user is contacting through."""

    TELEGRAM = "telegram"
    SMS = "sms"
    DISCORD = "discord"


class Role(str, Enum):
    """Author of a conversation turn."""

    USER = "user"
    ASSISTANT = "assistant"


def make_user_id(platform: Platform | str, native_id: str | int) -> str:
    """Build the opaque user id for a (platform, native id) pair."""
    return f"{Platform(platform).value}:{native_id}"


@dataclass(frozen=True)
class Fact:
    """A short durable string distilled from conversation.

    Attributes:
        text: The fact itself, deduplicated by exact match per user.
        source: Provenance tag, 'auto' for LLM-extracted facts.
        created_at: Epoch seconds when first stored.
    """

    text: str
    source: str = "auto"
    created_at: float | None = None


@dataclass(frozen=True)
class ConversationTurn:
    """One message of a conversation."""

    user_id: str
    role: Role
    content: str
    timestamp: float = field(default_factory=time.time)

    def to_message(self) -> dict[str, str]:
        """Render as a chat completion message."""
        return {"role": self.role.value, "content": self.content}


@dataclass
class UserProfile:
    """Durable per-user record holding identity, facts, summary and counters."""

    user_id: str
    platform: Platform
    name: str | None = None
    facts: list[str] = field(default_factory=list)
    summary: str = ""
    message_count: int = 0
    first_seen: float = field(default_factory=time.time)
    last_seen: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dictionary."""
        return {
            "user_id": self.user_id,
            "platform": self.platform.value,
            "name": self.name,
            "summary": self.summary,
            "message_count": self.message_count,
            "first_seen": self.first_seen,
            "last_seen": self.last_seen,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "UserProfile":
        """Create from dictionary. Facts are attached by the store."""
        return cls(
            user_id=data["user_id"],
            platform=Platform(data["platform"]),
            name=data.get("name"),
            summary=data.get("summary") or "",
            message_count=int(data.get("message_count", 0)),
            first_seen=float(data["first_seen"]),
            last_seen=float(data["last_seen"]),
        )


@dataclass(frozen=True)
class ExtractionResult:
    """Successfully parsed extraction output."""

    facts: list[str]
    summary: str = ""


@dataclass(frozen=True)
class ExtractionFailure:
    """Extraction output that could not be used."""

    reason: str
    raw: str = ""


@dataclass(frozen=True)
class MemoryStats:
    """Aggregate counters for status reporting."""

    users: int
    turns: int
    facts: int
