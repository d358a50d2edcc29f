"""Conversation data model and decoded stream event types."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Union


class Role(str, Enum):
    """Speaker of a conversation turn."""

    USER = "user"
    ASSISTANT = "assistant"


class TurnOutcome(str, Enum):
    """How a streamed turn ended."""

    COMPLETED = "completed"
    REPLACED = "replaced"
    CANCELLED = "cancelled"


@dataclass
class Message:
    """One turn in a conversation.

    ``is_complete`` is False only while an assistant reply is still being
    appended to, or when the reply was interrupted.
    """

    role: Role
    content: str = ""
    images: list[bytes] = field(default_factory=list)
    is_complete: bool = True

    def copy(self, **changes: Any) -> Message:
        """Return a copy with its own image list."""
        changes.setdefault("images", list(self.images))
        return replace(self, **changes)

    def to_wire(self) -> dict[str, str]:
        """Return the text-only payload sent over the wire."""
        return {"role": self.role.value, "content": self.content}


@dataclass(frozen=True)
class ContentDelta:
    """Incremental fragment to append to the open assistant message."""

    text: str


@dataclass(frozen=True)
class FinalTranscript:
    """Authoritative conversation state superseding all deltas."""

    messages: tuple[Message, ...]


@dataclass(frozen=True)
class Malformed:
    """An event line that could not be parsed; dropped by consumers."""

    line: str
    reason: str = ""


StreamEvent = Union[ContentDelta, FinalTranscript, Malformed]
