"""Fold decoded stream events into the session transcript."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterable, AsyncIterator, Callable
from contextlib import AsyncExitStack, aclosing
import logging

from .exceptions import TransportError
from .models import ContentDelta, FinalTranscript, Malformed, Message, Role, TurnOutcome
from .stream_decoder import StreamDecoder, decode_stream
from .transcript import Transcript

LOGGER = logging.getLogger(__name__)


class _TurnCancelled(Exception):
    """Internal signal that the caller asked to stop reading."""


async def read_until_cancelled(
    chunks: AsyncIterable[bytes],
    cancel_event: asyncio.Event,
) -> AsyncIterator[bytes]:
    """Yield chunks until the stream ends or ``cancel_event`` is set.

    A pending read is abandoned as soon as the event fires.
    """
    iterator = chunks.__aiter__()
    while True:
        if cancel_event.is_set():
            raise _TurnCancelled()
        read = asyncio.ensure_future(iterator.__anext__())
        waiter = asyncio.ensure_future(cancel_event.wait())
        try:
            await asyncio.wait({read, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not read.done():
                read.cancel()
                await asyncio.gather(read, return_exceptions=True)
        if read.cancelled():
            raise _TurnCancelled()
        try:
            chunk = read.result()
        except StopAsyncIteration:
            return
        yield chunk


class ConversationReconciler:
    """Drive the decoder and fold its events into one growing assistant reply.

    Only the last message is ever touched by deltas. ``on_update`` is called
    after every observable change, in decode order.
    """

    def __init__(
        self,
        transcript: Transcript,
        on_update: Callable[[Transcript], None] | None = None,
    ) -> None:
        self._transcript = transcript
        self._on_update = on_update
        self.malformed_count = 0

    def _notify(self) -> None:
        if self._on_update is not None:
            self._on_update(self._transcript)

    async def run(
        self,
        chunks: AsyncIterable[bytes] | None,
        cancel_event: asyncio.Event | None = None,
    ) -> TurnOutcome:
        """Fold one streamed reply into the transcript and report how it ended.

        Transport failures propagate with the partial reply left incomplete.
        """
        self._transcript.append(
            Message(role=Role.ASSISTANT, content="", is_complete=False)
        )
        self._notify()

        deltas = 0
        try:
            async with AsyncExitStack() as stack:
                source = chunks
                if chunks is not None and cancel_event is not None:
                    source = await stack.enter_async_context(
                        aclosing(read_until_cancelled(chunks, cancel_event))
                    )
                events = await stack.enter_async_context(
                    aclosing(decode_stream(source, StreamDecoder()))
                )
                async for event in events:
                    if isinstance(event, ContentDelta):
                        self._transcript.append_to_last(event.text)
                        deltas += 1
                        self._notify()
                    elif isinstance(event, FinalTranscript):
                        self._transcript.replace(event.messages)
                        self._notify()
                        LOGGER.info(
                            "reconciler.turn.replaced",
                            extra={
                                "event": "reconciler.turn.replaced",
                                "deltas": deltas,
                                "message_count": len(event.messages),
                            },
                        )
                        return TurnOutcome.REPLACED
                    elif isinstance(event, Malformed):
                        self.malformed_count += 1
                        LOGGER.warning(
                            "reconciler.event.dropped",
                            extra={
                                "event": "reconciler.event.dropped",
                                "reason": event.reason,
                            },
                        )
        except _TurnCancelled:
            LOGGER.info(
                "reconciler.turn.cancelled",
                extra={"event": "reconciler.turn.cancelled", "deltas": deltas},
            )
            return TurnOutcome.CANCELLED
        except asyncio.CancelledError:
            LOGGER.info(
                "reconciler.task.cancelled",
                extra={"event": "reconciler.task.cancelled", "deltas": deltas},
            )
            raise
        except TransportError as exc:
            LOGGER.warning(
                "reconciler.turn.failed",
                extra={
                    "event": "reconciler.turn.failed",
                    "deltas": deltas,
                    "error_type": exc.__class__.__name__,
                },
            )
            raise

        self._transcript.complete_last()
        self._notify()
        LOGGER.info(
            "reconciler.turn.completed",
            extra={"event": "reconciler.turn.completed", "deltas": deltas},
        )
        return TurnOutcome.COMPLETED
