"""Incremental decoder for ``data:``-framed server-sent event streams."""

from __future__ import annotations

from collections.abc import AsyncIterable, AsyncIterator
import codecs
import json
import logging
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from .exceptions import StreamUnavailable, TransportError
from .models import ContentDelta, FinalTranscript, Malformed, Message, Role, StreamEvent

LOGGER = logging.getLogger(__name__)

EVENT_PREFIX = "data: "
CONTENT_FIELD = "content"
TRANSCRIPT_FIELD = "conversationHistory"


class _WireMessage(BaseModel):
    """One message of a final-transcript payload."""

    model_config = ConfigDict(extra="ignore")
    role: Role
    content: str = ""

    @field_validator("role", mode="before")
    @classmethod
    def _normalize_role(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("content", mode="before")
    @classmethod
    def _validate_content(cls, value: Any) -> str:
        if value is None:
            return ""
        if not isinstance(value, str):
            raise ValueError("content must be a string.")
        return value


class _TranscriptPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")
    messages: list[_WireMessage]


def parse_event_payload(payload: str) -> StreamEvent | None:
    """Turn the text after ``data: `` into an event.

    Returns ``None`` for well-formed objects that carry neither a content
    delta nor a final transcript.
    """
    try:
        data = json.loads(payload)
    except ValueError as exc:
        return Malformed(line=payload, reason=f"invalid JSON: {exc}")
    if not isinstance(data, dict):
        return Malformed(line=payload, reason="payload is not an object")

    content = data.get(CONTENT_FIELD)
    if isinstance(content, str) and content:
        return ContentDelta(text=content)

    history = data.get(TRANSCRIPT_FIELD)
    if history is not None:
        try:
            messages = parse_wire_messages(history)
        except ValidationError as exc:
            return Malformed(
                line=payload, reason=f"invalid transcript: {exc.error_count()} errors"
            )
        return FinalTranscript(messages=tuple(messages))
    return None


class StreamDecoder:
    """Line-reassembly buffer with an event parser layered on top.

    ``feed`` accepts chunks with arbitrary boundaries and returns the events
    completed by that chunk. Once a final transcript is decoded the decoder
    is finished and ignores further input.
    """

    def __init__(self, encoding: str = "utf-8") -> None:
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._buffer = ""
        self._finished = False

    @property
    def finished(self) -> bool:
        """Return True once a final transcript has been decoded."""
        return self._finished

    def feed(self, chunk: bytes) -> list[StreamEvent]:
        """Buffer ``chunk`` and return events for every completed line."""
        if self._finished:
            return []
        self._buffer += self._decoder.decode(chunk)
        events: list[StreamEvent] = []
        while not self._finished:
            newline = self._buffer.find("\n")
            if newline < 0:
                break
            line = self._buffer[:newline]
            self._buffer = self._buffer[newline + 1 :]
            self._handle_line(line, events)
        return events

    def close(self) -> list[StreamEvent]:
        """Flush pending bytes at end-of-stream.

        A trailing line without its newline is still decoded.
        """
        if self._finished:
            return []
        self._buffer += self._decoder.decode(b"", final=True)
        remainder, self._buffer = self._buffer, ""
        events: list[StreamEvent] = []
        if remainder:
            self._handle_line(remainder, events)
        self._finished = True
        return events

    def _handle_line(self, line: str, events: list[StreamEvent]) -> None:
        line = line.rstrip("\r")
        if not line.startswith(EVENT_PREFIX):
            return
        event = parse_event_payload(line[len(EVENT_PREFIX) :])
        if event is None:
            return
        if isinstance(event, Malformed):
            LOGGER.debug(
                "decoder.line.malformed",
                extra={"event": "decoder.line.malformed", "reason": event.reason},
            )
        events.append(event)
        if isinstance(event, FinalTranscript):
            self._finished = True


async def decode_stream(
    chunks: AsyncIterable[bytes] | None,
    decoder: StreamDecoder | None = None,
) -> AsyncIterator[StreamEvent]:
    """Decode an async byte stream, stopping after a final transcript."""
    if chunks is None:
        raise StreamUnavailable("Upstream response has no body.")
    decoder = decoder or StreamDecoder()
    iterator = chunks.__aiter__()
    while True:
        try:
            chunk = await iterator.__anext__()
        except StopAsyncIteration:
            break
        except TransportError:
            raise
        except OSError as exc:
            raise StreamUnavailable(f"Upstream stream failed: {exc}") from exc
        for event in decoder.feed(chunk):
            yield event
        if decoder.finished:
            return
    for event in decoder.close():
        yield event


def parse_wire_messages(raw: Any) -> list[Message]:
    """Validate a list of ``{"role", "content"}`` objects into complete messages.

    Raises ``pydantic.ValidationError`` when the shape is wrong.
    """
    parsed = _TranscriptPayload.model_validate({"messages": raw})
    return [
        Message(role=item.role, content=item.content, is_complete=True)
        for item in parsed.messages
    ]


def format_sse_event(payload: dict[str, Any]) -> bytes:
    """Frame one payload as a ``data:`` event."""
    body = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
    return f"{EVENT_PREFIX}{body}\n\n".encode("utf-8")


def encode_content_delta(text: str) -> bytes:
    """Frame an incremental content fragment."""
    return format_sse_event({CONTENT_FIELD: text})


def encode_final_transcript(messages: list[Message]) -> bytes:
    """Frame the authoritative conversation state."""
    return format_sse_event(
        {TRANSCRIPT_FIELD: [message.to_wire() for message in messages]}
    )
