"""Tests for the httpx streaming transport."""

from __future__ import annotations

from collections.abc import AsyncIterator
import json
import unittest

import httpx

from project_chat.exceptions import StreamUnavailable, TransportError
from project_chat.models import Message, Role
from project_chat.transport import (
    HttpStreamTransport,
    UpstreamRequest,
    encode_form,
    sniff_image_mime,
)

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 8


def _request() -> UpstreamRequest:
    return UpstreamRequest(
        messages=[
            Message(role=Role.USER, content="see image", images=[PNG]),
            Message(role=Role.ASSISTANT, content="seen"),
            Message(role=Role.USER, content="thanks"),
        ],
        context_id="demo",
        api_key_index=2,
    )


class EncodeFormTests(unittest.TestCase):
    """Validate the multipart form layout."""

    def test_history_is_text_only_and_images_are_keyed(self) -> None:
        data, files = encode_form(_request())
        self.assertEqual(data["projectDir"], "demo")
        self.assertEqual(data["isInitial"], "false")
        self.assertEqual(data["selectedAPIKeyIndex"], "2")
        self.assertEqual(data["message"], "thanks")
        history = json.loads(data["conversationHistory"])
        self.assertEqual(history[0], {"role": "user", "content": "see image"})
        self.assertEqual(files, [("image_0_0", ("image_0_0", PNG, "image/png"))])

    def test_sniff_image_mime(self) -> None:
        self.assertEqual(sniff_image_mime(PNG), "image/png")
        self.assertEqual(sniff_image_mime(b"\xff\xd8\xff\xe0"), "image/jpeg")
        self.assertEqual(sniff_image_mime(b"GIF89a..."), "image/gif")
        self.assertEqual(sniff_image_mime(b"RIFF\x00\x00\x00\x00WEBP"), "image/webp")
        self.assertEqual(sniff_image_mime(b"plain"), "application/octet-stream")


class HttpStreamTransportTests(unittest.IsolatedAsyncioTestCase):
    """Validate streaming, error mapping and release of the response."""

    async def test_streams_response_chunks(self) -> None:
        seen: dict[str, bytes] = {}

        async def body() -> AsyncIterator[bytes]:
            yield b'data: {"content":"He'
            yield b'llo"}\n'

        async def handler(request: httpx.Request) -> httpx.Response:
            seen["body"] = await request.aread()
            seen["accept"] = request.headers["accept"].encode()
            return httpx.Response(200, content=body())

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            transport = HttpStreamTransport("http://test/api/chat", client=client)
            async with transport.open_stream(_request()) as chunks:
                received = [chunk async for chunk in chunks]

        self.assertEqual(b"".join(received), b'data: {"content":"Hello"}\n')
        self.assertIn(b'name="image_0_0"', seen["body"])
        self.assertIn(b'name="conversationHistory"', seen["body"])
        self.assertEqual(seen["accept"], b"text/event-stream")

    async def test_api_key_sent_as_bearer_token_only_when_present(self) -> None:
        seen: list[str | None] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.headers.get("authorization"))
            return httpx.Response(200, content=b"")

        keyed = _request()
        keyed.api_key = "sk-test"
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            transport = HttpStreamTransport("http://test/api/chat", client=client)
            for request in (keyed, _request()):
                async with transport.open_stream(request) as chunks:
                    async for _ in chunks:
                        pass

        self.assertEqual(seen, ["Bearer sk-test", None])

    async def test_error_status_raises_stream_unavailable(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500, json={"error": "No API key selected"})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            transport = HttpStreamTransport("http://test/api/chat", client=client)
            with self.assertRaises(StreamUnavailable) as ctx:
                async with transport.open_stream(_request()):
                    pass
        self.assertIn("500", str(ctx.exception))
        self.assertIn("No API key selected", str(ctx.exception))

    async def test_connect_error_maps_to_transport_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            transport = HttpStreamTransport("http://test/api/chat", client=client)
            with self.assertRaises(TransportError) as ctx:
                async with transport.open_stream(_request()):
                    pass
        self.assertIn("Unable to connect", str(ctx.exception))

    async def test_read_error_mid_stream_maps_to_transport_error(self) -> None:
        async def body() -> AsyncIterator[bytes]:
            yield b'data: {"content":"a"}\n'
            raise httpx.ReadError("connection reset")

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=body())

        received: list[bytes] = []
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            transport = HttpStreamTransport("http://test/api/chat", client=client)
            with self.assertRaises(TransportError):
                async with transport.open_stream(_request()) as chunks:
                    async for chunk in chunks:
                        received.append(chunk)
        self.assertEqual(received, [b'data: {"content":"a"}\n'])


if __name__ == "__main__":
    unittest.main()
