"""Top-level package for toolchat."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .config import Config, load_config
    from .dispatcher import ToolDispatcher
    from .engine import ChatEngine, build_request
    from .exceptions import (
        ActionParseError,
        BackendConnectionError,
        BackendStreamingError,
        ConfigValidationError,
        ModelNotFoundError,
        ToolChatError,
    )
    from .models import ChatRequest, Message, ToolCall, ToolResult
    from .react import ReActLoopController
    from .resolver import resolve_backend
    from .session import SessionRegistry, StreamSession

__all__ = [
    "ActionParseError",
    "BackendConnectionError",
    "BackendStreamingError",
    "ChatEngine",
    "ChatRequest",
    "Config",
    "ConfigValidationError",
    "Message",
    "ModelNotFoundError",
    "ReActLoopController",
    "SessionRegistry",
    "StreamSession",
    "ToolCall",
    "ToolChatError",
    "ToolDispatcher",
    "ToolResult",
    "build_request",
    "load_config",
    "resolve_backend",
]

_EXPORTS = {
    "ActionParseError": ".exceptions",
    "BackendConnectionError": ".exceptions",
    "BackendStreamingError": ".exceptions",
    "ConfigValidationError": ".exceptions",
    "ModelNotFoundError": ".exceptions",
    "ToolChatError": ".exceptions",
    "ChatEngine": ".engine",
    "build_request": ".engine",
    "ChatRequest": ".models",
    "Message": ".models",
    "ToolCall": ".models",
    "ToolResult": ".models",
    "Config": ".config",
    "load_config": ".config",
    "ReActLoopController": ".react",
    "SessionRegistry": ".session",
    "StreamSession": ".session",
    "ToolDispatcher": ".dispatcher",
    "resolve_backend": ".resolver",
}


def __getattr__(name: str) -> Any:
    """Lazily import symbols so ``import toolchat`` stays cheap."""
    module_name = _EXPORTS.get(name)
    if module_name is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    from importlib import import_module

    return getattr(import_module(module_name, __name__), name)
