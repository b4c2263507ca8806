"""Tests for tool-server invocation and outcome classification."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
import sys
import tempfile
import textwrap
import unittest

from toolchat.config import ToolServerConfig
from toolchat.dispatcher import ToolDispatcher, classify_output
from toolchat.models import ToolCall

JSONRPC_ECHO = """
import json, sys
lines = [json.loads(line) for line in sys.stdin if line.strip()]
call = lines[-1]
print(json.dumps({
    "jsonrpc": "2.0",
    "id": call["id"],
    "result": {"methods": [line["method"] for line in lines], "arguments": call["params"]["arguments"]},
}))
"""

SUCCESS_FLAT = """
import json, sys
sys.stdin.read()
print(json.dumps({"success": True, "result": "data"}))
"""

FAIL_WITH_STDERR = """
import sys
sys.stdin.read()
sys.stderr.write("not found\\n")
sys.exit(1)
"""

FAIL_SILENT = """
import sys
sys.exit(3)
"""

RAW_TEXT = """
import sys
sys.stdin.read()
print("plain output")
"""

ERROR_ENVELOPE = """
import json, sys
sys.stdin.read()
print(json.dumps({"jsonrpc": "2.0", "id": 2, "error": {"code": -32000, "message": "boom"}}))
"""

MCP_IS_ERROR = """
import json, sys
sys.stdin.read()
print(json.dumps({"jsonrpc": "2.0", "id": 2, "result": {"isError": True, "content": [{"type": "text", "text": "permission denied"}]}}))
"""

ARGV_ECHO = """
import json, sys
print(json.dumps({"result": sys.argv[1:]}))
"""

FILE_ECHO = """
import json, sys
path = sys.argv[sys.argv.index("--request") + 1]
with open(path, encoding="utf-8") as fh:
    lines = [json.loads(line) for line in fh if line.strip()]
print(json.dumps({"result": {"path": path, "tool": lines[-1]["params"]["name"]}}))
"""

SLEEPER = """
import time
time.sleep(30)
"""

MARK_AND_SLEEP = """
import os, pathlib, time
pathlib.Path(os.environ["TOOLCHAT_MARKER"]).write_text("up", encoding="utf-8")
time.sleep(30)
"""

ENV_ECHO = """
import json, os, sys
sys.stdin.read()
print(json.dumps({"result": os.environ.get("TOOLCHAT_TEST_VALUE")}))
"""


class ClassifyOutputTests(unittest.TestCase):
    """Validate classification of exit-0 standard output."""

    def test_non_json_is_raw_success(self) -> None:
        result = classify_output("hello there\n", call_id=1)
        self.assertTrue(result.success)
        self.assertEqual(result.result, "hello there")

    def test_other_json_is_parsed_success(self) -> None:
        result = classify_output("[1, 2, 3]", call_id=1)
        self.assertTrue(result.success)
        self.assertEqual(result.result, [1, 2, 3])

    def test_flat_failure_envelope(self) -> None:
        result = classify_output('{"success": false, "error": "nope"}', call_id=1)
        self.assertFalse(result.success)
        self.assertEqual(result.error, "nope")

    def test_selects_response_matching_call_id(self) -> None:
        stdout = "\n".join(
            [
                json.dumps({"jsonrpc": "2.0", "id": 1, "result": {"capabilities": {}}}),
                json.dumps({"jsonrpc": "2.0", "id": 2, "result": "answer"}),
            ]
        )
        result = classify_output(stdout, call_id=2)
        self.assertTrue(result.success)
        self.assertEqual(result.result, "answer")

    def test_nan_output_is_treated_as_text(self) -> None:
        result = classify_output('{"value": NaN}', call_id=1)
        self.assertTrue(result.success)
        self.assertEqual(result.result, '{"value": NaN}')


class ToolDispatcherTests(unittest.IsolatedAsyncioTestCase):
    """Run real child processes through every transport."""

    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp_path = Path(self._tmp.name)
        self.request_dir = self.tmp_path / "requests"
        self.request_dir.mkdir()
        self.dispatcher = ToolDispatcher(request_dir=self.request_dir)
        self.call = ToolCall(tool="read_file", arguments={"path": "notes.txt"})

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _leftover_requests(self) -> list[Path]:
        return sorted(self.request_dir.glob("toolchat-*.jsonl"))

    def _server(self, server_id: str, source: str, **overrides) -> ToolServerConfig:
        script = self.tmp_path / f"{server_id}.py"
        script.write_text(textwrap.dedent(source), encoding="utf-8")
        return ToolServerConfig(
            id=server_id,
            command=sys.executable,
            args=[str(script)],
            **overrides,
        )

    async def test_stdin_transport_sends_initialize_then_call(self) -> None:
        server = self._server("echo", JSONRPC_ECHO)
        result = await self.dispatcher.invoke(server, self.call)

        self.assertTrue(result.success)
        self.assertEqual(result.result["methods"], ["initialize", "tools/call"])
        self.assertEqual(result.result["arguments"], {"path": "notes.txt"})

    async def test_initialize_can_be_skipped(self) -> None:
        server = self._server("echo", JSONRPC_ECHO, send_initialize=False)
        result = await self.dispatcher.invoke(server, self.call)
        self.assertEqual(result.result["methods"], ["tools/call"])

    async def test_flat_success_envelope(self) -> None:
        result = await self.dispatcher.invoke(self._server("flat", SUCCESS_FLAT), self.call)
        self.assertTrue(result.success)
        self.assertEqual(result.result, "data")
        self.assertEqual(result.observation(), 'Success: "data"')

    async def test_nonzero_exit_uses_stderr(self) -> None:
        result = await self.dispatcher.invoke(self._server("fail", FAIL_WITH_STDERR), self.call)
        self.assertFalse(result.success)
        self.assertEqual(result.error, "not found")
        self.assertEqual(result.observation(), "Error: not found")

    async def test_nonzero_exit_without_stderr_reports_code(self) -> None:
        result = await self.dispatcher.invoke(self._server("silent", FAIL_SILENT), self.call)
        self.assertFalse(result.success)
        self.assertEqual(result.error, "exit code 3")

    async def test_raw_text_output_is_success(self) -> None:
        result = await self.dispatcher.invoke(self._server("raw", RAW_TEXT), self.call)
        self.assertTrue(result.success)
        self.assertEqual(result.result, "plain output")

    async def test_error_envelope_is_failure(self) -> None:
        result = await self.dispatcher.invoke(self._server("err", ERROR_ENVELOPE), self.call)
        self.assertFalse(result.success)
        self.assertEqual(result.error, "boom")

    async def test_mcp_is_error_content_is_failure(self) -> None:
        result = await self.dispatcher.invoke(self._server("mcp", MCP_IS_ERROR), self.call)
        self.assertFalse(result.success)
        self.assertEqual(result.error, "permission denied")

    async def test_argv_transport(self) -> None:
        server = self._server("argv", ARGV_ECHO, transport="argv")
        result = await self.dispatcher.invoke(server, self.call)

        self.assertTrue(result.success)
        self.assertEqual(
            result.result, ["--tool", "read_file", "--args", '{"path":"notes.txt"}']
        )

    async def test_file_transport_removes_request_file(self) -> None:
        server = self._server("file", FILE_ECHO, transport="file")
        result = await self.dispatcher.invoke(server, self.call)

        self.assertTrue(result.success)
        self.assertEqual(result.result["tool"], "read_file")
        self.assertFalse(Path(result.result["path"]).exists())
        self.assertEqual(Path(result.result["path"]).parent, self.request_dir)
        self.assertEqual(self._leftover_requests(), [])

    async def test_file_transport_cleans_up_after_failed_exit(self) -> None:
        server = self._server("file-fail", FAIL_SILENT, transport="file")
        result = await self.dispatcher.invoke(server, self.call)

        self.assertFalse(result.success)
        self.assertEqual(result.error, "exit code 3")
        self.assertEqual(self._leftover_requests(), [])

    async def test_file_transport_cleans_up_after_timeout(self) -> None:
        server = self._server("file-slow", SLEEPER, transport="file", timeout_seconds=0.3)
        result = await self.dispatcher.invoke(server, self.call)

        self.assertFalse(result.success)
        self.assertIn("timed out", result.error)
        self.assertEqual(self._leftover_requests(), [])

    async def test_file_transport_cleans_up_when_cancelled(self) -> None:
        marker = self.tmp_path / "started"
        server = self._server(
            "file-cancel",
            MARK_AND_SLEEP,
            transport="file",
            env={"TOOLCHAT_MARKER": str(marker)},
        )
        task = asyncio.create_task(self.dispatcher.invoke(server, self.call))
        for _ in range(500):
            if marker.exists():
                break
            await asyncio.sleep(0.01)
        self.assertTrue(marker.exists())
        self.assertEqual(len(self._leftover_requests()), 1)

        task.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await task
        self.assertEqual(self._leftover_requests(), [])

    async def test_unwritable_request_dir_is_failure(self) -> None:
        dispatcher = ToolDispatcher(request_dir=self.tmp_path / "missing")
        server = self._server("file-nowhere", FILE_ECHO, transport="file")
        result = await dispatcher.invoke(server, self.call)

        self.assertFalse(result.success)
        self.assertIn("Unable to write request file", result.error)

    async def test_missing_command_is_failure(self) -> None:
        server = ToolServerConfig(id="ghost", command=str(self.tmp_path / "no-such-binary"))
        result = await self.dispatcher.invoke(server, self.call)

        self.assertFalse(result.success)
        self.assertIn("Unable to start tool server", result.error)

    async def test_timeout_kills_process(self) -> None:
        server = self._server("slow", SLEEPER, timeout_seconds=0.3)
        result = await self.dispatcher.invoke(server, self.call)

        self.assertFalse(result.success)
        self.assertIn("timed out", result.error)

    async def test_server_env_is_merged(self) -> None:
        server = self._server("env", ENV_ECHO, env={"TOOLCHAT_TEST_VALUE": "42"})
        result = await self.dispatcher.invoke(server, self.call)
        self.assertEqual(result.result, "42")

    async def test_dispatch_falls_back_to_next_server(self) -> None:
        servers = [
            self._server("broken", FAIL_WITH_STDERR),
            self._server("disabled", SUCCESS_FLAT, enabled=False),
            self._server("working", RAW_TEXT),
        ]
        result = await self.dispatcher.dispatch(servers, self.call)

        self.assertTrue(result.success)
        self.assertEqual(result.result, "plain output")

    async def test_dispatch_returns_last_failure(self) -> None:
        servers = [
            self._server("first", FAIL_WITH_STDERR),
            self._server("second", ERROR_ENVELOPE),
        ]
        result = await self.dispatcher.dispatch(servers, self.call)

        self.assertFalse(result.success)
        self.assertEqual(result.error, "boom")

    async def test_dispatch_without_enabled_servers(self) -> None:
        servers = [self._server("off", SUCCESS_FLAT, enabled=False)]
        result = await self.dispatcher.dispatch(servers, self.call)

        self.assertFalse(result.success)
        self.assertEqual(result.error, "no enabled tool servers")


if __name__ == "__main__":
    unittest.main()
