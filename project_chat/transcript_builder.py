"""Assembly of the ordered message list sent upstream for one turn."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
import logging
from typing import Protocol

from .exceptions import ConfigurationError
from .models import Message, Role

LOGGER = logging.getLogger(__name__)

DEFAULT_DIRECTIVE = (
    "You are a coding assistant working inside the user's project. "
    "The first message lists the current project files; treat it as the "
    "authoritative state of the project and answer follow-up requests "
    "against it."
)


class ProjectContextProvider(Protocol):
    """Enumerates the project files used to ground each request."""

    def list_files(self, context_id: str) -> Mapping[str, str]:
        """Return file name to file text for the given project."""
        ...


def build_project_context_message(files: Mapping[str, str]) -> Message:
    """Render enumerated project files into a single user message."""
    sections = ["Here are the current project files:"]
    for name in sorted(files):
        sections.append(f"File: {name}\n```\n{files[name]}\n```")
    return Message(role=Role.USER, content="\n\n".join(sections))


class TranscriptBuilder:
    """Build upstream transcripts with the project context re-asserted each turn."""

    def __init__(self, provider: ProjectContextProvider) -> None:
        self._provider = provider

    @staticmethod
    def build(
        is_initial_turn: bool,
        project_context: Message,
        history: Sequence[Message],
    ) -> list[Message]:
        """Return the ordered message list for one request.

        The system directive travels out-of-band. On the initial turn the
        history is ignored; on every later turn the project context is sent
        again ahead of the history.
        """
        if is_initial_turn:
            return [project_context.copy()]
        return [project_context.copy()] + [message.copy() for message in history]

    def project_context(self, context_id: str) -> Message:
        """Enumerate project files and render the context message."""
        try:
            files = self._provider.list_files(context_id)
        except Exception as exc:  # noqa: BLE001 - collaborator failures vary.
            LOGGER.warning(
                "builder.context.failed",
                extra={
                    "event": "builder.context.failed",
                    "context_id": context_id,
                    "error_type": exc.__class__.__name__,
                },
            )
            raise ConfigurationError(
                f"Unable to assemble project context for {context_id!r}: {exc}"
            ) from exc
        return build_project_context_message(files)

    def assemble(
        self,
        is_initial_turn: bool,
        context_id: str,
        history: Sequence[Message],
    ) -> list[Message]:
        """Resolve the project context and build the request transcript."""
        messages = self.build(is_initial_turn, self.project_context(context_id), history)
        LOGGER.info(
            "builder.transcript.built",
            extra={
                "event": "builder.transcript.built",
                "initial": is_initial_turn,
                "message_count": len(messages),
            },
        )
        return messages
