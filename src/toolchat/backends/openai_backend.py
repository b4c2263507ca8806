"""OpenAI-compatible chat-completions transport over httpx."""

from __future__ import annotations

from collections.abc import AsyncIterator
import json
import logging
from typing import Any

import httpx

from ..exceptions import BackendStreamingError, ModelNotFoundError
from ..models import ChatRequest
from .base import map_backend_exception

LOGGER = logging.getLogger(__name__)

USER_AGENT = "toolchat/1.0"
DEFAULT_TEMPERATURE = 0.6


def _error_detail(payload: Any, fallback: str) -> str:
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return error["message"]
        if isinstance(error, str):
            return error
    return fallback


class OpenAIBackend:
    """Stream chat turns from any OpenAI-compatible endpoint."""

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        timeout: int = 120,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.host = base_url.rstrip("/")
        headers = {"Content-Type": "application/json", "User-Agent": USER_AGENT}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.AsyncClient(
            base_url=self.host,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    @staticmethod
    def _body(request: ChatRequest, stream: bool) -> dict[str, Any]:
        return {
            "model": request.model,
            "messages": request.api_messages(),
            "stream": stream,
            "temperature": (
                request.temperature if request.temperature is not None else DEFAULT_TEMPERATURE
            ),
        }

    def _raise_for_status(self, response: httpx.Response, model: str) -> None:
        if response.status_code < 400:
            return
        try:
            payload = response.json()
        except ValueError:
            payload = None
        detail = _error_detail(payload, response.text or f"HTTP {response.status_code}")
        if response.status_code == 404:
            raise ModelNotFoundError(f"Model {model!r} was not found on {self.host}: {detail}")
        raise BackendStreamingError(detail)

    async def stream(self, request: ChatRequest) -> AsyncIterator[str]:
        try:
            async with self._client.stream(
                "POST", "/chat/completions", json=self._body(request, stream=True)
            ) as response:
                if response.status_code >= 400:
                    await response.aread()
                    self._raise_for_status(response, request.model)
                async for line in response.aiter_lines():
                    line = line.strip()
                    if not line or not line.startswith("data:"):
                        continue
                    data = line[len("data:"):].strip()
                    if data == "[DONE]":
                        return
                    try:
                        payload = json.loads(data)
                    except json.JSONDecodeError as exc:
                        raise BackendStreamingError(
                            f"Malformed stream event from {self.host}: {data[:200]}"
                        ) from exc
                    if isinstance(payload, dict) and "error" in payload:
                        raise BackendStreamingError(_error_detail(payload, data))
                    choices = payload.get("choices") if isinstance(payload, dict) else None
                    if not choices:
                        continue
                    delta = choices[0].get("delta") or {}
                    text = delta.get("content")
                    if isinstance(text, str) and text:
                        yield text
        except Exception as exc:  # noqa: BLE001 - transport fails in many ways.
            raise map_backend_exception(exc, self.host, request.model) from exc

    async def complete(self, request: ChatRequest) -> str:
        try:
            response = await self._client.post(
                "/chat/completions", json=self._body(request, stream=False)
            )
            self._raise_for_status(response, request.model)
            payload = response.json()
        except Exception as exc:  # noqa: BLE001
            raise map_backend_exception(exc, self.host, request.model) from exc

        try:
            content = payload["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            content = None
        if not isinstance(content, str):
            raise BackendStreamingError(
                f"Empty response from {self.host}: {_error_detail(payload, str(payload)[:200])}"
            )
        return content

    async def list_models(self) -> list[str]:
        try:
            response = await self._client.get("/models")
            self._raise_for_status(response, "")
            payload = response.json()
        except Exception as exc:  # noqa: BLE001
            raise map_backend_exception(exc, self.host, "") from exc
        data = payload.get("data") if isinstance(payload, dict) else None
        return [
            item["id"]
            for item in data or []
            if isinstance(item, dict) and isinstance(item.get("id"), str)
        ]

    async def aclose(self) -> None:
        await self._client.aclose()
