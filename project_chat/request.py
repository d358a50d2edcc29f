"""Server side of a turn: assemble the upstream request and relay the reply."""

from __future__ import annotations

from collections.abc import AsyncIterator, Iterable, Mapping, Sequence
from contextlib import aclosing
import json
import logging
from typing import Union

from pydantic import ValidationError

from .attachments import bind_attachments
from .exceptions import RequestValidationError
from .models import ContentDelta, FinalTranscript, Message, Role
from .stream_decoder import (
    StreamDecoder,
    decode_stream,
    encode_content_delta,
    encode_final_transcript,
    parse_wire_messages,
)
from .transcript_builder import TranscriptBuilder
from .transport import UpstreamInvoker, UpstreamRequest

LOGGER = logging.getLogger(__name__)

FormValue = Union[str, bytes]


def _form_items(
    form: Mapping[str, FormValue] | Iterable[tuple[str, FormValue]],
) -> list[tuple[str, FormValue]]:
    if isinstance(form, Mapping):
        return list(form.items())
    return list(form)


def _text_field(fields: dict[str, str], name: str, default: str = "") -> str:
    value = fields.get(name, default)
    return value.strip()


def resolve_api_key(
    api_keys: Sequence[str],
    selected_index: str,
    default_key: str | None = None,
) -> str:
    """Pick the credential for a request from an explicit index or the default."""
    if selected_index:
        try:
            index = int(selected_index)
        except ValueError as exc:
            raise RequestValidationError(
                f"Invalid API key index {selected_index!r}."
            ) from exc
        if not 0 <= index < len(api_keys):
            raise RequestValidationError(f"API key index {index} is out of range.")
        return api_keys[index]
    if not default_key:
        raise RequestValidationError("No API key selected.")
    return default_key


def assemble_upstream_request(
    form: Mapping[str, FormValue] | Iterable[tuple[str, FormValue]],
    builder: TranscriptBuilder,
    directive: str,
    api_keys: Sequence[str] = (),
    default_api_key: str | None = None,
) -> UpstreamRequest:
    """Turn a submitted chat form into the request sent to the provider.

    Text fields carry the project, the turn flag and the JSON history; binary
    parts keyed ``image_<message>_<attachment>`` are bound back onto the
    history before the project context is prepended.
    """
    items = _form_items(form)
    fields = {key: value for key, value in items if isinstance(value, str)}
    parts = [(key, value) for key, value in items if isinstance(value, bytes)]

    project_dir = _text_field(fields, "projectDir")
    if not project_dir:
        raise RequestValidationError("Invalid project directory.")
    is_initial = _text_field(fields, "isInitial").lower() == "true"

    raw_history = fields.get("conversationHistory", "[]") or "[]"
    try:
        history = parse_wire_messages(json.loads(raw_history))
    except (ValueError, ValidationError) as exc:
        raise RequestValidationError(f"Invalid conversation history: {exc}") from exc

    api_key = resolve_api_key(
        api_keys, _text_field(fields, "selectedAPIKeyIndex"), default_api_key
    )

    bound_history = bind_attachments(history, parts)
    LOGGER.info(
        "request.form.parsed",
        extra={
            "event": "request.form.parsed",
            "initial": is_initial,
            "history_length": len(history),
            "attachment_count": sum(len(m.images) for m in bound_history),
        },
    )
    messages = builder.assemble(is_initial, project_dir, bound_history)
    return UpstreamRequest(
        messages=messages,
        directive=directive,
        context_id=project_dir,
        is_initial=is_initial,
        api_key=api_key,
    )


async def relay_turn(
    invoker: UpstreamInvoker, request: UpstreamRequest
) -> AsyncIterator[bytes]:
    """Stream one provider reply back to the browser as ``data:`` events.

    Deltas are forwarded as they arrive. The turn ends with the
    authoritative transcript: the submitted history, without the project
    context message, plus the full assistant reply.
    """
    history = request.messages[1:] if request.messages else []
    reply: list[str] = []
    async with invoker.open_stream(request) as chunks:
        async with aclosing(decode_stream(chunks, StreamDecoder())) as events:
            async for event in events:
                if isinstance(event, ContentDelta):
                    reply.append(event.text)
                    yield encode_content_delta(event.text)
                elif isinstance(event, FinalTranscript):
                    yield encode_final_transcript(list(event.messages))
                    return
    final = history + [Message(role=Role.ASSISTANT, content="".join(reply))]
    LOGGER.info(
        "request.relay.finished",
        extra={
            "event": "request.relay.finished",
            "deltas": len(reply),
            "message_count": len(final),
        },
    )
    yield encode_final_transcript(final)
