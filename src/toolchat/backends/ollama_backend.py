"""Ollama transport built on the official async SDK."""

from __future__ import annotations

from collections.abc import AsyncIterator
import inspect
import logging
from typing import Any

from ollama import AsyncClient

from ..exceptions import BackendStreamingError
from ..models import ChatRequest
from .base import flatten_messages, map_backend_exception

LOGGER = logging.getLogger(__name__)


def _extract_field(chunk: Any, name: str) -> Any:
    """Read ``message.<name>`` from an SDK object or dict payload.

    Falls back to a top-level key so generate-style payloads
    (``response`` instead of ``message.content``) work as well.
    """
    message_obj = getattr(chunk, "message", None)
    if message_obj is not None and not isinstance(message_obj, dict):
        value = getattr(message_obj, name, None)
        if value is not None:
            return value

    if hasattr(chunk, "model_dump"):
        chunk = chunk.model_dump()

    if isinstance(chunk, dict):
        message = chunk.get("message")
        if isinstance(message, dict):
            value = message.get(name)
            if value is not None:
                return value
        return chunk.get(name)
    return getattr(chunk, name, None)


def extract_text(chunk: Any) -> str:
    """Return the content text carried by one Ollama payload."""
    value = _extract_field(chunk, "content")
    if isinstance(value, str) and value:
        return value
    value = _extract_field(chunk, "response")
    return value if isinstance(value, str) else ""


class OllamaBackend:
    """Stream chat turns from an Ollama server."""

    def __init__(
        self,
        host: str,
        timeout: int = 120,
        client: Any | None = None,
    ) -> None:
        self.host = host
        self._client = client if client is not None else AsyncClient(host=host, timeout=timeout)
        try:
            self._chat_param_names = set(inspect.signature(self._client.chat).parameters)
        except (TypeError, ValueError):
            self._chat_param_names = set()

    def _chat_kwargs(self, request: ChatRequest, stream: bool) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": request.model,
            "messages": request.api_messages(),
            "stream": stream,
        }
        if request.temperature is not None:
            kwargs["options"] = {"temperature": request.temperature}
        if request.think:
            kwargs["think"] = "medium" if "gpt-oss" in request.model.lower() else True
        # Older SDKs reject unknown keyword arguments.
        if self._chat_param_names and "think" not in self._chat_param_names:
            kwargs.pop("think", None)
        return kwargs

    async def stream(self, request: ChatRequest) -> AsyncIterator[str]:
        try:
            response = await self._client.chat(**self._chat_kwargs(request, stream=True))
            async for chunk in response:
                text = extract_text(chunk)
                if text:
                    yield text
        except Exception as exc:  # noqa: BLE001 - SDK and transport fail in many ways.
            raise map_backend_exception(exc, self.host, request.model) from exc

    async def complete(self, request: ChatRequest) -> str:
        try:
            response = await self._client.chat(**self._chat_kwargs(request, stream=False))
            text = extract_text(response)
            if text:
                return text

            LOGGER.info(
                "backend.ollama.generate_fallback",
                extra={"event": "backend.ollama.generate_fallback", "model": request.model},
            )
            generated = await self._client.generate(
                model=request.model,
                prompt=flatten_messages(request),
                stream=False,
            )
            text = extract_text(generated)
        except Exception as exc:  # noqa: BLE001 - SDK and transport fail in many ways.
            raise map_backend_exception(exc, self.host, request.model) from exc
        if not text:
            raise BackendStreamingError(f"Empty response from Ollama at {self.host}.")
        return text

    async def list_models(self) -> list[str]:
        """Return available model names from Ollama."""
        try:
            response = await self._client.list()
        except Exception as exc:  # noqa: BLE001
            raise map_backend_exception(exc, self.host, "") from exc

        models: Any = getattr(response, "models", None)
        if models is None and isinstance(response, dict):
            models = response.get("models")

        names: list[str] = []
        for model in models or []:
            for key in ("name", "model"):
                value = model.get(key) if isinstance(model, dict) else getattr(model, key, None)
                if isinstance(value, str) and value.strip():
                    names.append(value.strip())
                    break
        return names

    async def pull_model(self, model: str) -> None:
        try:
            await self._client.pull(model=model, stream=False)
        except Exception as exc:  # noqa: BLE001
            raise map_backend_exception(exc, self.host, model) from exc

    async def aclose(self) -> None:
        close = getattr(getattr(self._client, "_client", None), "aclose", None)
        if close is not None:
            await close()
