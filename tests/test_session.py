"""Tests for the chat session turn lifecycle."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
import unittest

from project_chat.exceptions import (
    ConfigurationError,
    StreamUnavailable,
    TurnInProgressError,
)
from project_chat.models import Role, TurnOutcome
from project_chat.session import ChatSession
from project_chat.state import ConversationState
from project_chat.transcript_builder import TranscriptBuilder
from project_chat.transport import UpstreamRequest


async def _wait_for(predicate) -> None:
    for _ in range(200):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


class FakeInvoker:
    """Replays scripted chunk lists and records every request and release."""

    def __init__(self, *scripts: list[bytes], hold: asyncio.Event | None = None) -> None:
        self._scripts = list(scripts)
        self._hold = hold
        self.requests: list[UpstreamRequest] = []
        self.opened = 0
        self.closed = 0

    async def _chunks(self, script: list[bytes]) -> AsyncIterator[bytes]:
        for chunk in script:
            yield chunk
        if self._hold is not None:
            await self._hold.wait()

    @asynccontextmanager
    async def open_stream(self, request: UpstreamRequest) -> AsyncIterator[AsyncIterator[bytes]]:
        self.requests.append(request)
        self.opened += 1
        try:
            yield self._chunks(self._scripts.pop(0))
        finally:
            self.closed += 1


class FailingInvoker:
    def __init__(self) -> None:
        self.calls = 0

    @asynccontextmanager
    async def open_stream(self, request: UpstreamRequest) -> AsyncIterator[AsyncIterator[bytes]]:
        self.calls += 1
        raise StreamUnavailable("HTTP 502")
        yield  # pragma: no cover


class BrokenProvider:
    def list_files(self, context_id: str) -> Mapping[str, str]:
        raise PermissionError(context_id)


class StaticProvider:
    def list_files(self, context_id: str) -> Mapping[str, str]:
        return {"main.py": "pass"}


class ToggleProvider:
    def __init__(self) -> None:
        self.fail = False

    def list_files(self, context_id: str) -> Mapping[str, str]:
        if self.fail:
            raise OSError("project directory vanished")
        return {"main.py": "pass"}


class ChatSessionTests(unittest.IsolatedAsyncioTestCase):
    """Validate sends, cancellation and error handling per turn."""

    async def test_send_streams_reply_and_sends_history(self) -> None:
        invoker = FakeInvoker(
            [b'data: {"content":"Hi"}\n', b'data: {"content":" there"}\n']
        )
        session = ChatSession(invoker, context_id="demo", api_key_index=1)

        outcome = await session.send("  hello  ", [b"img"])

        self.assertEqual(outcome, TurnOutcome.COMPLETED)
        messages = session.messages
        self.assertEqual([m.role for m in messages], [Role.USER, Role.ASSISTANT])
        self.assertEqual(messages[0].content, "hello")
        self.assertEqual(messages[0].images, [b"img"])
        self.assertEqual(messages[1].content, "Hi there")
        self.assertTrue(messages[1].is_complete)

        request = invoker.requests[0]
        self.assertFalse(request.is_initial)
        self.assertEqual(request.api_key_index, 1)
        self.assertEqual([m.content for m in request.messages], ["hello"])
        self.assertEqual(invoker.closed, 1)
        self.assertEqual(await session.state.get_state(), ConversationState.IDLE)

    async def test_empty_send_is_ignored(self) -> None:
        invoker = FakeInvoker()
        session = ChatSession(invoker, context_id="demo")
        self.assertIsNone(await session.send("   "))
        self.assertEqual(invoker.opened, 0)

    async def test_initiate_uses_builder_context(self) -> None:
        invoker = FakeInvoker([b'data: {"content":"Ready."}\n'])
        session = ChatSession(
            invoker, context_id="demo", builder=TranscriptBuilder(StaticProvider())
        )

        outcome = await session.initiate()

        self.assertEqual(outcome, TurnOutcome.COMPLETED)
        request = invoker.requests[0]
        self.assertTrue(request.is_initial)
        self.assertEqual(len(request.messages), 1)
        self.assertIn("main.py", request.messages[0].content)
        self.assertEqual([m.content for m in session.messages], ["Ready."])

    async def test_configuration_error_leaves_transcript_untouched(self) -> None:
        invoker = FakeInvoker()
        session = ChatSession(
            invoker, context_id="demo", builder=TranscriptBuilder(BrokenProvider())
        )

        with self.assertRaises(ConfigurationError):
            await session.send("hello")

        self.assertEqual(session.messages, [])
        self.assertEqual(invoker.opened, 0)
        self.assertEqual(await session.state.get_state(), ConversationState.IDLE)

    async def test_concurrent_send_is_rejected(self) -> None:
        hold = asyncio.Event()
        invoker = FakeInvoker([b'data: {"content":"slow"}\n'], hold=hold)
        session = ChatSession(invoker, context_id="demo")

        first = asyncio.create_task(session.send("one"))
        await _wait_for(lambda: len(session.transcript) == 2)
        with self.assertRaises(TurnInProgressError):
            await session.send("two")

        hold.set()
        self.assertEqual(await first, TurnOutcome.COMPLETED)
        self.assertEqual(len(session.messages), 2)

    async def test_cancel_mid_stream_reports_cancelled_and_releases_stream(self) -> None:
        hold = asyncio.Event()
        invoker = FakeInvoker([b'data: {"content":"partial"}\n'], hold=hold)
        session = ChatSession(invoker, context_id="demo")

        task = asyncio.create_task(session.send("question"))
        await _wait_for(
            lambda: bool(session.messages) and session.messages[-1].content == "partial"
        )
        self.assertTrue(await session.cancel())
        outcome = await asyncio.wait_for(task, timeout=1.0)

        self.assertEqual(outcome, TurnOutcome.CANCELLED)
        last = session.messages[-1]
        self.assertEqual(last.content, "partial")
        self.assertFalse(last.is_complete)
        self.assertEqual(invoker.closed, 1)
        self.assertEqual(await session.state.get_state(), ConversationState.IDLE)
        self.assertFalse(await session.cancel())

    async def test_send_after_cancel_seals_interrupted_reply(self) -> None:
        hold = asyncio.Event()
        invoker = FakeInvoker(
            [b'data: {"content":"cut"}\n'], [b'data: {"content":"again"}\n'], hold=hold
        )
        session = ChatSession(invoker, context_id="demo")

        task = asyncio.create_task(session.send("first"))
        await _wait_for(
            lambda: bool(session.messages) and session.messages[-1].content == "cut"
        )
        await session.cancel()
        await task

        hold.set()
        outcome = await session.send("second")

        self.assertEqual(outcome, TurnOutcome.COMPLETED)
        contents = [m.content for m in session.messages]
        self.assertEqual(contents, ["first", "cut", "second", "again"])
        self.assertTrue(all(m.is_complete for m in session.messages))
        self.assertEqual(
            [m.content for m in invoker.requests[1].messages], ["first", "cut", "second"]
        )

    async def test_initiate_after_cancel_seals_interrupted_reply(self) -> None:
        hold = asyncio.Event()
        invoker = FakeInvoker(
            [b'data: {"content":"cut"}\n'], [b'data: {"content":"Ready."}\n'], hold=hold
        )
        session = ChatSession(invoker, context_id="demo")

        task = asyncio.create_task(session.send("first"))
        await _wait_for(
            lambda: bool(session.messages) and session.messages[-1].content == "cut"
        )
        await session.cancel()
        self.assertEqual(await task, TurnOutcome.CANCELLED)

        hold.set()
        outcome = await session.initiate()

        self.assertEqual(outcome, TurnOutcome.COMPLETED)
        self.assertEqual(
            [(m.content, m.is_complete) for m in session.messages],
            [("first", True), ("cut", True), ("Ready.", True)],
        )

    async def test_configuration_error_keeps_interrupted_reply_unsealed(self) -> None:
        hold = asyncio.Event()
        provider = ToggleProvider()
        invoker = FakeInvoker([b'data: {"content":"cut"}\n'], hold=hold)
        session = ChatSession(
            invoker, context_id="demo", builder=TranscriptBuilder(provider)
        )

        task = asyncio.create_task(session.send("first"))
        await _wait_for(
            lambda: bool(session.messages) and session.messages[-1].content == "cut"
        )
        await session.cancel()
        await task

        provider.fail = True
        with self.assertRaises(ConfigurationError):
            await session.send("second")

        self.assertEqual(
            [(m.content, m.is_complete) for m in session.messages],
            [("first", True), ("cut", False)],
        )
        self.assertEqual(invoker.opened, 1)
        self.assertTrue(await session.state.can_send_message())

    async def test_clear_history_starts_fresh_conversation(self) -> None:
        invoker = FakeInvoker([b'data: {"content":"one"}\n'], [b'data: {"content":"two"}\n'])
        session = ChatSession(invoker, context_id="demo")
        await session.send("hello")

        session.clear_history()
        self.assertEqual(session.messages, [])

        await session.send("again")
        self.assertEqual([m.content for m in invoker.requests[1].messages], ["again"])
        self.assertEqual([m.content for m in session.messages], ["again", "two"])

    async def test_final_transcript_replaces_session_history(self) -> None:
        invoker = FakeInvoker(
            [
                b'data: {"content":"draft"}\n',
                b'data: {"conversationHistory":[{"role":"user","content":"hello"},'
                b'{"role":"assistant","content":"authoritative"}]}\n',
            ]
        )
        session = ChatSession(invoker, context_id="demo")

        outcome = await session.send("hello")

        self.assertEqual(outcome, TurnOutcome.REPLACED)
        self.assertEqual(
            [m.content for m in session.messages], ["hello", "authoritative"]
        )

    async def test_transport_failure_sets_error_state_and_allows_retry(self) -> None:
        session = ChatSession(FailingInvoker(), context_id="demo")

        with self.assertRaises(StreamUnavailable):
            await session.send("hello")

        self.assertEqual(await session.state.get_state(), ConversationState.ERROR)
        self.assertTrue(await session.state.can_send_message())
        self.assertEqual([m.content for m in session.messages], ["hello"])


if __name__ == "__main__":
    unittest.main()
