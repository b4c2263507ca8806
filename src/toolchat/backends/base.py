"""Backend transport contract and exception mapping."""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Protocol, runtime_checkable

import httpx

from ..exceptions import (
    BackendConnectionError,
    BackendStreamingError,
    ModelNotFoundError,
    ToolChatError,
)
from ..models import ChatRequest


@runtime_checkable
class ChatBackend(Protocol):
    """What a Stream Session needs from a model backend."""

    def stream(self, request: ChatRequest) -> AsyncIterator[str]:
        """Yield response text fragments in emission order."""
        ...

    async def complete(self, request: ChatRequest) -> str:
        """Return the whole response in one blocking call."""
        ...

    async def list_models(self) -> list[str]:
        """Return the model names the backend can serve."""
        ...

    async def aclose(self) -> None:
        ...


def flatten_messages(request: ChatRequest) -> str:
    """Render the history as ``role: content`` lines for prompt-only endpoints."""
    return "\n".join(f"{m.role}: {m.content}" for m in request.messages)


def map_backend_exception(exc: BaseException, host: str, model: str) -> ToolChatError:
    """Translate transport and SDK failures into the domain hierarchy."""
    if isinstance(exc, ToolChatError):
        return exc

    if isinstance(
        exc,
        (
            httpx.ConnectError,
            httpx.ConnectTimeout,
            httpx.ReadTimeout,
            httpx.NetworkError,
            ConnectionError,
        ),
    ):
        return BackendConnectionError(f"Unable to connect to backend at {host}.")

    status_code = getattr(exc, "status_code", None)
    lower_message = str(exc).lower()
    if status_code == 404 and "model" in lower_message:
        return ModelNotFoundError(f"Model {model!r} was not found on {host}.")
    if "model" in lower_message and "not found" in lower_message:
        return ModelNotFoundError(f"Model {model!r} was not found on {host}.")

    return BackendStreamingError(f"Failed to stream response from {host}: {exc}")
