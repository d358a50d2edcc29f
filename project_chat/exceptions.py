"""Domain exception hierarchy for the streaming chat pipeline."""

from __future__ import annotations


class ProjectChatError(RuntimeError):
    """Base class for all domain-level chat errors."""


class TransportError(ProjectChatError):
    """Raised when the upstream connection fails mid-turn."""


class StreamUnavailable(TransportError):
    """Raised when the upstream response has no readable body."""


class ConfigurationError(ProjectChatError):
    """Raised when the project context for a request cannot be assembled."""


class ConfigValidationError(ProjectChatError):
    """Raised when configuration cannot be validated safely."""


class RequestValidationError(ProjectChatError):
    """Raised when an incoming chat form is missing required fields."""


class TurnInProgressError(ProjectChatError):
    """Raised when a send is attempted while another turn is streaming."""
