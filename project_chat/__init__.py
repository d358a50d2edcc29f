"""Top-level package for project-chat."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .attachments import bind_attachments, flatten_attachments
    from .config import ensure_config_dir, load_config
    from .exceptions import (
        ConfigurationError,
        ConfigValidationError,
        ProjectChatError,
        RequestValidationError,
        StreamUnavailable,
        TransportError,
        TurnInProgressError,
    )
    from .models import (
        ContentDelta,
        FinalTranscript,
        Malformed,
        Message,
        Role,
        TurnOutcome,
    )
    from .reconciler import ConversationReconciler
    from .request import assemble_upstream_request, relay_turn
    from .session import ChatSession
    from .state import ConversationState, StateManager
    from .stream_decoder import StreamDecoder, decode_stream
    from .transcript import Transcript
    from .transcript_builder import TranscriptBuilder
    from .transport import HttpStreamTransport, UpstreamRequest

_EXPORTS: dict[str, str] = {
    "bind_attachments": "attachments",
    "flatten_attachments": "attachments",
    "ensure_config_dir": "config",
    "load_config": "config",
    "ConfigurationError": "exceptions",
    "ConfigValidationError": "exceptions",
    "ProjectChatError": "exceptions",
    "RequestValidationError": "exceptions",
    "StreamUnavailable": "exceptions",
    "TransportError": "exceptions",
    "TurnInProgressError": "exceptions",
    "ContentDelta": "models",
    "FinalTranscript": "models",
    "Malformed": "models",
    "Message": "models",
    "Role": "models",
    "TurnOutcome": "models",
    "ConversationReconciler": "reconciler",
    "assemble_upstream_request": "request",
    "relay_turn": "request",
    "ChatSession": "session",
    "ConversationState": "state",
    "StateManager": "state",
    "StreamDecoder": "stream_decoder",
    "decode_stream": "stream_decoder",
    "Transcript": "transcript",
    "TranscriptBuilder": "transcript_builder",
    "HttpStreamTransport": "transport",
    "UpstreamRequest": "transport",
}

__all__ = sorted(_EXPORTS)


def __getattr__(name: str) -> Any:
    """Lazily import symbols so importing the package stays cheap."""
    module_name = _EXPORTS.get(name)
    if module_name is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    from importlib import import_module

    return getattr(import_module(f".{module_name}", __name__), name)
