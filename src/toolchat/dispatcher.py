"""Run tool-server processes and classify their outcome."""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
import itertools
import json
import logging
import os
from pathlib import Path
import tempfile
from typing import Any

from .config import ToolServerConfig
from .exceptions import ToolInvocationError
from .models import ToolCall, ToolResult, dump_json

LOGGER = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"
CLIENT_NAME = "toolchat"
CLIENT_VERSION = "1.0.0"
MAX_ERROR_CHARS = 4000


def _reject_constant(name: str) -> Any:
    raise ValueError(f"{name} is not valid JSON")


def _loads(text: str) -> Any:
    return json.loads(text, parse_constant=_reject_constant)


def initialize_envelope(request_id: int) -> dict[str, Any]:
    return {
        "jsonrpc": "2.0",
        "id": request_id,
        "method": "initialize",
        "params": {
            "protocolVersion": PROTOCOL_VERSION,
            "clientInfo": {"name": CLIENT_NAME, "version": CLIENT_VERSION},
        },
    }


def call_envelope(request_id: int, call: ToolCall) -> dict[str, Any]:
    return {
        "jsonrpc": "2.0",
        "id": request_id,
        "method": "tools/call",
        "params": {"name": call.tool, "arguments": call.arguments},
    }


def _mcp_content_text(content: Any) -> str | None:
    """Join the text items of an MCP ``content`` list, if it is one."""
    if not isinstance(content, list):
        return None
    texts = [
        item["text"]
        for item in content
        if isinstance(item, dict) and isinstance(item.get("text"), str)
    ]
    return "\n".join(texts) if texts else None


def _error_text(error: Any) -> str:
    if isinstance(error, dict):
        message = error.get("message")
        if isinstance(message, str) and message:
            return message
        return dump_json(error)
    if isinstance(error, str):
        return error
    return json.dumps(error, ensure_ascii=False)


def _parse_stdout(stdout: str) -> tuple[bool, Any]:
    """Return (parsed, value); a single document or the JSON-lines it contains."""
    text = stdout.strip()
    if not text:
        return False, text
    try:
        return True, _loads(text)
    except ValueError:
        pass
    documents: list[Any] = []
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            documents.append(_loads(line))
        except ValueError:
            return False, text
    return True, documents


def _select_response(documents: list[Any], call_id: int) -> Any:
    """Pick the JSON-RPC response answering ``call_id`` from several lines."""
    for document in documents:
        if isinstance(document, dict) and document.get("id") == call_id:
            return document
    return documents[-1] if documents else None


def classify_output(stdout: str, call_id: int) -> ToolResult:
    """Classify the standard output of a process that exited with code 0."""
    parsed, value = _parse_stdout(stdout)
    if not parsed:
        return ToolResult.ok(value)
    if isinstance(value, list) and value and all(isinstance(d, dict) and "jsonrpc" in d for d in value):
        value = _select_response(value, call_id)

    if isinstance(value, dict):
        if value.get("success") is False or ("error" in value and "result" not in value):
            return ToolResult.failure(_error_text(value.get("error", "Tool call failed")))
        if "result" in value:
            payload = value["result"]
            if isinstance(payload, dict) and payload.get("isError") is True:
                detail = _mcp_content_text(payload.get("content"))
                return ToolResult.failure(detail or dump_json(payload))
            return ToolResult.ok(payload)
    return ToolResult.ok(value)


class ToolDispatcher:
    """Invoke one tool-server process per call.

    The request travels per ``server.transport``: newline-delimited
    envelopes on stdin, ``--tool``/``--args`` argv flags, or a temporary
    request file passed as ``--request <path>`` and removed on every exit
    path. A process that cannot be started or times out raises
    ToolInvocationError internally, and ``invoke`` reports it as a failed
    ToolResult.
    """

    def __init__(self, request_dir: str | Path | None = None) -> None:
        self._ids = itertools.count(1)
        self.request_dir = Path(request_dir) if request_dir is not None else None

    def _next_id(self) -> int:
        return next(self._ids)

    def _envelopes(self, server: ToolServerConfig, call: ToolCall) -> tuple[str, int]:
        lines: list[str] = []
        if server.send_initialize:
            lines.append(json.dumps(initialize_envelope(self._next_id()), ensure_ascii=False))
        call_id = self._next_id()
        lines.append(json.dumps(call_envelope(call_id, call), ensure_ascii=False))
        return "\n".join(lines) + "\n", call_id

    def _write_request_file(self, server: ToolServerConfig, payload: str) -> Path:
        path: Path | None = None
        try:
            handle, name = tempfile.mkstemp(
                prefix="toolchat-", suffix=".jsonl", dir=self.request_dir
            )
            path = Path(name)
            with os.fdopen(handle, "w", encoding="utf-8") as fh:
                fh.write(payload)
        except OSError as exc:
            if path is not None:
                path.unlink(missing_ok=True)
            raise ToolInvocationError(
                f"Unable to write request file for tool server {server.id!r}: {exc}"
            ) from exc
        return path

    async def _run(
        self,
        server: ToolServerConfig,
        argv: Sequence[str],
        stdin_data: bytes | None,
    ) -> tuple[int, str, str]:
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE if stdin_data is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env={**os.environ, **server.env},
            )
        except OSError as exc:
            raise ToolInvocationError(f"Unable to start tool server {server.id!r}: {exc}") from exc
        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(stdin_data), timeout=server.timeout_seconds
            )
        except BaseException as exc:
            if process.returncode is None:
                process.kill()
                await process.wait()
            if isinstance(exc, asyncio.TimeoutError):
                raise ToolInvocationError(
                    f"Tool server {server.id!r} timed out after {server.timeout_seconds:g}s"
                ) from exc
            raise
        return (
            process.returncode if process.returncode is not None else -1,
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
        )

    async def invoke(self, server: ToolServerConfig, call: ToolCall) -> ToolResult:
        """Run ``server`` once for ``call`` and classify the outcome."""
        LOGGER.info(
            "tool.call.start",
            extra={"event": "tool.call.start", "server": server.id, "tool": call.tool},
        )
        argv = [server.command, *server.args]
        stdin_data: bytes | None = None
        request_file: Path | None = None
        call_id = 0
        try:
            if server.transport == "argv":
                argv += ["--tool", call.tool, "--args", dump_json(call.arguments)]
            else:
                payload, call_id = self._envelopes(server, call)
                if server.transport == "stdin":
                    stdin_data = payload.encode("utf-8")
                else:
                    request_file = self._write_request_file(server, payload)
                    argv += ["--request", str(request_file)]

            exit_code, stdout, stderr = await self._run(server, argv, stdin_data)
        except ToolInvocationError as exc:
            result = ToolResult.failure(str(exc))
        else:
            if exit_code == 0:
                result = classify_output(stdout, call_id)
            else:
                detail = stderr.strip()[:MAX_ERROR_CHARS]
                result = ToolResult.failure(detail or f"exit code {exit_code}")
        finally:
            if request_file is not None:
                request_file.unlink(missing_ok=True)

        LOGGER.info(
            "tool.call.end",
            extra={
                "event": "tool.call.end",
                "server": server.id,
                "tool": call.tool,
                "success": result.success,
                "error": result.error,
            },
        )
        return result

    async def dispatch(
        self, servers: Sequence[ToolServerConfig], call: ToolCall
    ) -> ToolResult:
        """Try enabled servers in order; first success wins, else the last failure."""
        last: ToolResult | None = None
        for server in servers:
            if not server.enabled:
                continue
            last = await self.invoke(server, call)
            if last.success:
                return last
            LOGGER.warning(
                "tool.call.fallback",
                extra={
                    "event": "tool.call.fallback",
                    "server": server.id,
                    "tool": call.tool,
                    "error": last.error,
                },
            )
        return last or ToolResult.failure("no enabled tool servers")
