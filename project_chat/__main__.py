"""CLI entrypoint: stream one chat turn to the terminal."""

from __future__ import annotations

import argparse
import asyncio
from importlib import metadata
from pathlib import Path
import signal
import sys
from typing import Sequence, TextIO

from .config import ensure_config_dir, load_config
from .exceptions import ProjectChatError
from .logging_utils import configure_logging
from .models import Role, TurnOutcome
from .session import ChatSession
from .transcript import Transcript
from .transport import HttpStreamTransport


class ReplyPrinter:
    """Write the growing assistant reply to a text stream as it arrives."""

    def __init__(self, out: TextIO) -> None:
        self._out = out
        self._printed = ""

    def __call__(self, transcript: Transcript) -> None:
        last = transcript.last
        if last is None or last.role is not Role.ASSISTANT:
            return
        if last.content.startswith(self._printed):
            self._out.write(last.content[len(self._printed) :])
        else:
            self._out.write("\n" + last.content)
        self._printed = last.content
        self._out.flush()


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="project-chat", description="Stream a project chat turn"
    )
    parser.add_argument("prompt", nargs="?", default="", help="Message to send")
    parser.add_argument("--config", type=Path, help="Path to config.toml")
    parser.add_argument("--project", help="Project directory sent with the turn")
    parser.add_argument(
        "--image",
        action="append",
        default=[],
        type=Path,
        help="Image to attach (repeatable)",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print version and exit",
    )
    return parser


class InterruptHandler:
    """Turn SIGINT into ``session.cancel()`` and keep the resulting tasks."""

    def __init__(self, session: ChatSession) -> None:
        self._session = session
        self._tasks: set[asyncio.Task[bool]] = set()

    def __call__(self) -> None:
        self._tasks.add(asyncio.get_running_loop().create_task(self._session.cancel()))

    async def drain(self) -> list[bool]:
        """Wait for pending cancel requests and return their results."""
        tasks, self._tasks = list(self._tasks), set()
        return list(await asyncio.gather(*tasks))


async def _run_turn(
    session: ChatSession, prompt: str, images: list[bytes]
) -> TurnOutcome | None:
    loop = asyncio.get_running_loop()
    interrupts = InterruptHandler(session)
    try:
        loop.add_signal_handler(signal.SIGINT, interrupts)
    except (NotImplementedError, RuntimeError):
        pass
    try:
        if prompt or images:
            return await session.send(prompt, images)
        return await session.initiate()
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass
        await interrupts.drain()


def main(argv: Sequence[str] | None = None) -> int:
    """Load configuration, stream one turn and return an exit status."""

    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    if args.version:
        try:
            version = metadata.version("project-chat")
        except metadata.PackageNotFoundError:
            version = "0.0.0"
        print(f"project-chat {version}")
        return 0

    if args.config is None:
        ensure_config_dir()
    config = load_config(args.config)
    configure_logging(config["logging"])

    images = [path.read_bytes() for path in args.image]
    transport = HttpStreamTransport(
        config["endpoint"]["url"], timeout=config["endpoint"]["timeout"]
    )
    session = ChatSession(
        transport,
        context_id=args.project or config["chat"]["project_dir"],
        directive=config["chat"]["directive"],
        api_key_index=config["credentials"]["selected_api_key_index"],
        on_update=ReplyPrinter(sys.stdout),
    )

    try:
        outcome = asyncio.run(_run_turn(session, args.prompt.strip(), images))
    except ProjectChatError as exc:
        print(f"\nerror: {exc}", file=sys.stderr)
        return 1

    print()
    if outcome is TurnOutcome.CANCELLED:
        print("(interrupted)", file=sys.stderr)
        return 130
    return 0


if __name__ == "__main__":
    sys.exit(main())
