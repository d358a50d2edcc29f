"""Session-scoped conversation transcript."""

from __future__ import annotations

from collections.abc import Iterable
import json

from .models import Message, Role


class Transcript:
    """Ordered conversation history for one chat session.

    Besides clearing, the only mutations are appending a message, appending
    text to an incomplete last message, completing the last message and
    replacing everything at once. Readers always receive copies.
    """

    def __init__(self, messages: Iterable[Message] | None = None) -> None:
        self._messages: list[Message] = []
        if messages is not None:
            self.replace(messages)

    @property
    def messages(self) -> list[Message]:
        """Return a copy of all stored messages."""
        return [message.copy() for message in self._messages]

    @property
    def last(self) -> Message | None:
        """Return a copy of the last message, if any."""
        if not self._messages:
            return None
        return self._messages[-1].copy()

    def __len__(self) -> int:
        return len(self._messages)

    def clear(self) -> None:
        """Drop all messages."""
        self._messages = []

    def append(self, message: Message) -> None:
        """Append a new turn.

        The previous last message must already be complete.
        """
        if self._messages and not self._messages[-1].is_complete:
            raise ValueError("Cannot append while the last message is incomplete.")
        self._messages.append(message.copy())

    def append_to_last(self, text: str) -> None:
        """Append streamed text to the incomplete last message."""
        if not self._messages or self._messages[-1].is_complete:
            raise ValueError("No incomplete message to append to.")
        last = self._messages[-1]
        self._messages[-1] = last.copy(content=last.content + text)

    def complete_last(self) -> None:
        """Mark the last message complete."""
        if not self._messages:
            return
        self._messages[-1] = self._messages[-1].copy(is_complete=True)

    def replace(self, messages: Iterable[Message]) -> None:
        """Replace the whole history; every replacement message is complete."""
        self._messages = [message.copy(is_complete=True) for message in messages]

    def history(self) -> list[Message]:
        """Return complete messages only, suitable for sending upstream."""
        return [message.copy() for message in self._messages if message.is_complete]

    def has_interrupted_reply(self) -> bool:
        """Return True when the last assistant reply never completed."""
        return bool(
            self._messages
            and self._messages[-1].role is Role.ASSISTANT
            and not self._messages[-1].is_complete
        )

    def export_json(self) -> str:
        """Export current history using stable list and field ordering."""
        stable_messages = [
            {
                "role": message.role.value,
                "content": message.content,
                "is_complete": message.is_complete,
                "images": len(message.images),
            }
            for message in self._messages
        ]
        return json.dumps(
            stable_messages, ensure_ascii=False, separators=(",", ":"), sort_keys=False
        )
