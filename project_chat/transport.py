"""Upstream invocation: the request shape and an httpx streaming transport."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager, AsyncExitStack, asynccontextmanager
from dataclasses import dataclass, field
import json
import logging
from typing import Any, Protocol

import httpx

from .attachments import flatten_attachments
from .exceptions import StreamUnavailable, TransportError
from .models import Message

LOGGER = logging.getLogger(__name__)


@dataclass
class UpstreamRequest:
    """Everything one streamed turn needs from the upstream side.

    ``api_key`` is resolved by the caller and carried explicitly; the httpx
    transport sends it as a bearer token. Nothing downstream reads
    credentials on its own.
    """

    messages: list[Message]
    directive: str = ""
    context_id: str = ""
    is_initial: bool = False
    api_key: str | None = None
    api_key_index: int | None = None
    extra_fields: dict[str, str] = field(default_factory=dict)


class UpstreamInvoker(Protocol):
    """Opens the byte stream for one turn.

    The returned context manager yields an async iterator of raw chunks and
    releases the underlying connection on exit.
    """

    def open_stream(
        self, request: UpstreamRequest
    ) -> AbstractAsyncContextManager[AsyncIterator[bytes]]: ...


def sniff_image_mime(blob: bytes) -> str:
    """Guess an image content type from magic bytes."""
    if blob.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if blob[:3] == b"\xff\xd8\xff":
        return "image/jpeg"
    if blob.startswith(b"GIF87a") or blob.startswith(b"GIF89a"):
        return "image/gif"
    if blob[:4] == b"RIFF" and blob[8:12] == b"WEBP":
        return "image/webp"
    return "application/octet-stream"


def encode_form(
    request: UpstreamRequest,
) -> tuple[dict[str, str], list[tuple[str, tuple[str, bytes, str]]]]:
    """Split a request into multipart text fields and keyed image parts.

    The history travels as JSON without images; every image becomes its own
    ``image_<message>_<attachment>`` part.
    """
    data: dict[str, str] = {
        "projectDir": request.context_id,
        "isInitial": "true" if request.is_initial else "false",
        "conversationHistory": json.dumps(
            [message.to_wire() for message in request.messages], ensure_ascii=False
        ),
        "selectedAPIKeyIndex": (
            "" if request.api_key_index is None else str(request.api_key_index)
        ),
    }
    if request.messages:
        data["message"] = request.messages[-1].content
    data.update(request.extra_fields)

    files = [
        (key, (key, blob, sniff_image_mime(blob)))
        for key, blob in flatten_attachments(request.messages)
    ]
    return data, files


class HttpStreamTransport:
    """Stream a chat turn from an HTTP endpoint that answers with ``data:`` lines."""

    def __init__(
        self,
        endpoint: str,
        timeout: float = 120.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.endpoint = endpoint
        self.timeout = timeout
        self._client = client

    def _map_exception(self, exc: Exception) -> TransportError:
        if isinstance(exc, TransportError):
            return exc
        if isinstance(
            exc,
            (
                httpx.ConnectError,
                httpx.ConnectTimeout,
                httpx.ReadTimeout,
                httpx.NetworkError,
            ),
        ):
            return TransportError(f"Unable to connect to chat endpoint {self.endpoint}.")
        return TransportError(
            f"Failed to stream response from {self.endpoint}: {exc}"
        )

    async def _iter_chunks(self, response: httpx.Response) -> AsyncIterator[bytes]:
        try:
            async for chunk in response.aiter_bytes():
                if chunk:
                    yield chunk
        except httpx.HTTPError as exc:
            raise self._map_exception(exc) from exc

    @asynccontextmanager
    async def open_stream(self, request: UpstreamRequest) -> AsyncIterator[AsyncIterator[bytes]]:
        """POST the turn as a multipart form and yield the response byte stream."""
        data, files = encode_form(request)
        headers: dict[str, Any] = {"Accept": "text/event-stream"}
        if request.api_key:
            headers["Authorization"] = f"Bearer {request.api_key}"
        LOGGER.info(
            "transport.request.start",
            extra={
                "event": "transport.request.start",
                "endpoint": self.endpoint,
                "message_count": len(request.messages),
                "attachment_count": len(files),
            },
        )
        async with AsyncExitStack() as stack:
            client = self._client
            if client is None:
                client = await stack.enter_async_context(
                    httpx.AsyncClient(timeout=self.timeout)
                )
            try:
                response = await stack.enter_async_context(
                    client.stream(
                        "POST",
                        self.endpoint,
                        data=data,
                        files=files or None,
                        headers=headers,
                    )
                )
            except httpx.HTTPError as exc:
                raise self._map_exception(exc) from exc

            if response.status_code >= 400:
                detail = (await response.aread()).decode("utf-8", errors="replace")
                raise StreamUnavailable(
                    f"Chat endpoint returned HTTP {response.status_code}: {detail[:200]}"
                )
            chunks = self._iter_chunks(response)
            try:
                yield chunks
            finally:
                await chunks.aclose()
                LOGGER.info(
                    "transport.request.closed",
                    extra={"event": "transport.request.closed", "endpoint": self.endpoint},
                )

