"""Model backend transports."""

from __future__ import annotations

from ..models import ResolvedBackend
from .base import ChatBackend, flatten_messages, map_backend_exception
from .ollama_backend import OllamaBackend
from .openai_backend import OpenAIBackend

__all__ = [
    "ChatBackend",
    "OllamaBackend",
    "OpenAIBackend",
    "create_backend",
    "flatten_messages",
    "map_backend_exception",
]


def create_backend(resolved: ResolvedBackend, timeout: int = 120) -> ChatBackend:
    """Build the transport matching a resolved provider."""
    if resolved.provider == "ollama":
        return OllamaBackend(host=resolved.base_url, timeout=timeout)
    return OpenAIBackend(
        base_url=resolved.base_url, api_key=resolved.api_key, timeout=timeout
    )
