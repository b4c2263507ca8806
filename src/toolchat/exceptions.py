"""Domain exception hierarchy for the toolchat engine."""

from __future__ import annotations


class ToolChatError(RuntimeError):
    """Base class for all domain-level errors."""


class BackendConnectionError(ToolChatError):
    """Raised when the model backend cannot be reached or started."""


class ModelNotFoundError(ToolChatError):
    """Raised when the selected model is unavailable on the backend."""


class BackendStreamingError(ToolChatError):
    """Raised when a stream is malformed or closes with an error signal."""


class ToolInvocationError(ToolChatError):
    """Raised when a tool-server process cannot be run at all."""


class ActionParseError(ToolChatError):
    """Raised when a model turn names an action with malformed arguments."""

    def __init__(self, message: str, raw_arguments: str = "") -> None:
        super().__init__(message)
        self.raw_arguments = raw_arguments


class ToolArgumentError(ToolChatError, ValueError):
    """Raised when tool arguments are not JSON-serializable structured data."""


class ConfigValidationError(ToolChatError):
    """Raised when configuration cannot be validated safely."""


class SessionCancelledError(ToolChatError):
    """Raised when a cancelled session is used for a new stream."""
