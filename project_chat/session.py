"""Chat session: one transcript, one in-flight turn at a time."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Sequence
import logging

from .exceptions import ConfigurationError, TransportError, TurnInProgressError
from .models import Message, Role, TurnOutcome
from .reconciler import ConversationReconciler
from .state import ConversationState, StateManager
from .transcript import Transcript
from .transcript_builder import TranscriptBuilder
from .transport import UpstreamInvoker, UpstreamRequest

LOGGER = logging.getLogger(__name__)


class ChatSession:
    """Stateful conversation that streams replies into its transcript.

    With a ``builder`` the session prepends the project context itself;
    without one the raw history is sent and the endpoint builds the
    upstream transcript.
    """

    def __init__(
        self,
        invoker: UpstreamInvoker,
        context_id: str,
        directive: str = "",
        api_key: str | None = None,
        api_key_index: int | None = None,
        builder: TranscriptBuilder | None = None,
        on_update: Callable[[Transcript], None] | None = None,
    ) -> None:
        self.context_id = context_id
        self.directive = directive
        self.api_key = api_key
        self.api_key_index = api_key_index
        self.transcript = Transcript()
        self.state = StateManager()
        self._invoker = invoker
        self._builder = builder
        self._on_update = on_update
        self._cancel_event: asyncio.Event | None = None

    @property
    def messages(self) -> list[Message]:
        """Expose the transcript for UI and tests."""
        return self.transcript.messages

    def clear_history(self) -> None:
        """Start a fresh conversation."""
        self.transcript.clear()

    async def initiate(self) -> TurnOutcome:
        """Run the opening turn, grounded only in the project context."""
        if not await self.state.begin_turn():
            raise TurnInProgressError("A turn is already streaming.")
        try:
            request = self._build_request([], is_initial=True)
        except ConfigurationError:
            await self.state.transition_to(ConversationState.IDLE)
            raise
        self._seal_interrupted_reply()
        return await self._stream(request)

    async def send(
        self, text: str, images: Sequence[bytes] = ()
    ) -> TurnOutcome | None:
        """Append a user message and stream the assistant reply.

        Returns ``None`` when there is nothing to send. The transcript is
        only touched once the request has been built.
        """
        normalized = text.strip()
        if not normalized and not images:
            return None
        if not await self.state.begin_turn():
            raise TurnInProgressError("A turn is already streaming.")

        user_message = Message(role=Role.USER, content=normalized, images=list(images))
        # An interrupted reply goes upstream as if it had completed.
        history = [message.copy(is_complete=True) for message in self.transcript.messages]
        try:
            request = self._build_request(history + [user_message], is_initial=False)
        except ConfigurationError:
            await self.state.transition_to(ConversationState.IDLE)
            raise
        self._seal_interrupted_reply()
        self.transcript.append(user_message)
        if self._on_update is not None:
            self._on_update(self.transcript)
        return await self._stream(request)

    async def cancel(self) -> bool:
        """Stop the in-flight turn; return False when nothing is streaming."""
        cancel_event = self._cancel_event
        if cancel_event is None:
            return False
        if not await self.state.transition_if(
            ConversationState.STREAMING, ConversationState.CANCELLING
        ):
            return False
        cancel_event.set()
        return True

    def _seal_interrupted_reply(self) -> None:
        if not self.transcript.has_interrupted_reply():
            return
        self.transcript.complete_last()
        LOGGER.info(
            "session.reply.sealed",
            extra={"event": "session.reply.sealed"},
        )

    def _build_request(
        self, history: list[Message], is_initial: bool
    ) -> UpstreamRequest:
        messages = history
        if self._builder is not None:
            messages = self._builder.assemble(is_initial, self.context_id, history)
        return UpstreamRequest(
            messages=messages,
            directive=self.directive,
            context_id=self.context_id,
            is_initial=is_initial,
            api_key=self.api_key,
            api_key_index=self.api_key_index,
        )

    async def _stream(self, request: UpstreamRequest) -> TurnOutcome:
        self._cancel_event = asyncio.Event()
        reconciler = ConversationReconciler(self.transcript, self._on_update)
        next_state = ConversationState.IDLE
        try:
            async with self._invoker.open_stream(request) as chunks:
                outcome = await reconciler.run(chunks, self._cancel_event)
        except TransportError as exc:
            next_state = ConversationState.ERROR
            LOGGER.warning(
                "session.turn.failed",
                extra={
                    "event": "session.turn.failed",
                    "error_type": exc.__class__.__name__,
                },
            )
            raise
        finally:
            self._cancel_event = None
            await self.state.transition_to(next_state)

        LOGGER.info(
            "session.turn.finished",
            extra={
                "event": "session.turn.finished",
                "outcome": outcome.value,
                "malformed": reconciler.malformed_count,
            },
        )
        return outcome
