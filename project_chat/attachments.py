"""Binding of keyed image parts back onto transcript messages.

Attachments travel beside the text-only transcript as a flat set of binary
parts keyed ``image_<messageIndex>_<attachmentIndex>``. This module is the
only place that knows that keying convention.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
import logging
import re

from .models import Message

LOGGER = logging.getLogger(__name__)

ATTACHMENT_KEY_PATTERN = re.compile(r"image_([0-9]+)_([0-9]+)")


def attachment_key(message_index: int, attachment_index: int) -> str:
    """Return the transport key for one attachment."""
    return f"image_{message_index}_{attachment_index}"


def parse_attachment_key(key: str) -> tuple[int, int] | None:
    """Return ``(message_index, attachment_index)`` or ``None`` for foreign keys."""
    match = ATTACHMENT_KEY_PATTERN.fullmatch(key)
    if match is None:
        return None
    return int(match.group(1)), int(match.group(2))


def bind_attachments(
    transcript: Sequence[Message],
    parts: Mapping[str, bytes] | Iterable[tuple[str, bytes]],
) -> list[Message]:
    """Return a copy of ``transcript`` with keyed image parts merged in.

    Each message receives exactly the blobs keyed to its position, ordered by
    ascending attachment index. Keys that do not follow the attachment
    pattern are ignored, and for a repeated key the last value wins.
    """
    items = parts.items() if isinstance(parts, Mapping) else parts
    by_message: dict[int, dict[int, bytes]] = {}
    for key, blob in items:
        indices = parse_attachment_key(key)
        if indices is None:
            continue
        message_index, attachment_index = indices
        if message_index >= len(transcript):
            LOGGER.debug(
                "attachments.bind.out_of_range",
                extra={
                    "event": "attachments.bind.out_of_range",
                    "key": key,
                    "transcript_length": len(transcript),
                },
            )
            continue
        by_message.setdefault(message_index, {})[attachment_index] = blob

    bound: list[Message] = []
    for index, message in enumerate(transcript):
        slots = by_message.get(index, {})
        images = [slots[position] for position in sorted(slots)]
        bound.append(message.copy(images=images))
    return bound


def flatten_attachments(
    transcript: Sequence[Message],
    pending_images: Sequence[bytes] = (),
) -> list[tuple[str, bytes]]:
    """Produce keyed parts for every image in ``transcript``.

    ``pending_images`` belong to the message about to be appended and are
    keyed at ``len(transcript)``.
    """
    parts: list[tuple[str, bytes]] = []
    for message_index, message in enumerate(transcript):
        for attachment_index, blob in enumerate(message.images):
            parts.append((attachment_key(message_index, attachment_index), blob))
    for attachment_index, blob in enumerate(pending_images):
        parts.append((attachment_key(len(transcript), attachment_index), blob))
    return parts
