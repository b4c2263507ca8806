"""Tests for turn orchestration in the chat engine."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator
import unittest

from toolchat.availability import BackendAvailabilityManager
from toolchat.config import (
    AvailabilityConfig,
    BackendConfig,
    Config,
    ModelOverride,
    ReActConfig,
    ToolServerConfig,
)
from toolchat.engine import ChatEngine, build_request
from toolchat.exceptions import BackendConnectionError, BackendStreamingError
from toolchat.models import ChatRequest, LoopOutcome, Message, ResolvedBackend, ToolCall, ToolResult


class RecordingBackend:
    """Fake backend that streams a fixed reply per call."""

    def __init__(self, replies: list[str], gate: asyncio.Event | None = None) -> None:
        self.replies = replies
        self.gate = gate
        self.requests: list[ChatRequest] = []
        self.closed = False

    async def stream(self, request: ChatRequest) -> AsyncGenerator[str, None]:
        self.requests.append(request)
        reply = self.replies[min(len(self.requests) - 1, len(self.replies) - 1)]
        for index, word in enumerate(reply.split(" ")):
            if index and self.gate is not None:
                await self.gate.wait()
            yield word if index == 0 else f" {word}"
            await asyncio.sleep(0)

    async def complete(self, request: ChatRequest) -> str:
        return self.replies[0]

    async def list_models(self) -> list[str]:
        return ["llama3.2", "m1"]

    async def aclose(self) -> None:
        self.closed = True


class FailingBackend(RecordingBackend):
    """Streams its reply, then breaks the connection."""

    async def stream(self, request: ChatRequest) -> AsyncGenerator[str, None]:
        async for fragment in super().stream(request):
            yield fragment
        raise BackendStreamingError("stream closed")


class BackendFactory:
    """Hands out one backend and records what it was asked to resolve."""

    def __init__(self, backend: RecordingBackend) -> None:
        self.backend = backend
        self.resolved: list[ResolvedBackend] = []

    def __call__(self, resolved: ResolvedBackend, timeout: int) -> RecordingBackend:
        self.resolved.append(resolved)
        return self.backend


class FakeDispatcher:
    def __init__(self) -> None:
        self.calls: list[ToolCall] = []

    async def dispatch(self, servers, call: ToolCall) -> ToolResult:
        self.calls.append(call)
        return ToolResult.ok("file contents")


def _availability(ready: bool, probes: list[str]) -> BackendAvailabilityManager:
    async def probe(base_url: str) -> bool:
        probes.append(base_url)
        return ready

    async def launch(argv) -> bool:
        return False

    return BackendAvailabilityManager(probe=probe, launcher=launch, deadline=0.05)


def _config(**backend_overrides) -> Config:
    return Config(
        backend=BackendConfig(
            models=[ModelOverride(name="m1", provider="openai", base_url="https://api.example.com", api_key="k")],
            **backend_overrides,
        ),
        tool_servers=[ToolServerConfig(id="files", command="files-server")],
        react=ReActConfig(max_attempts=3),
    )


class BuildRequestTests(unittest.TestCase):
    """Validate request snapshots."""

    def test_resolves_override_and_truncates_history(self) -> None:
        config = _config(max_context_messages=2, temperature=0.2)
        history = [
            Message(role="user", content="one"),
            Message(role="assistant", content="two"),
            Message(role="user", content="three"),
        ]

        request = build_request(config, "m1", history, think=False, tools=True)

        self.assertEqual(request.provider, "openai")
        self.assertEqual(request.base_url, "https://api.example.com")
        self.assertEqual(request.api_key, "k")
        self.assertEqual([m.content for m in request.messages], ["two", "three"])
        self.assertEqual(request.temperature, 0.2)
        self.assertTrue(request.tools_enabled)
        self.assertFalse(request.think)

    def test_defaults_come_from_global_backend(self) -> None:
        config = _config()
        request = build_request(config, None, [Message(role="user", content="hi")])

        self.assertEqual(request.model, config.backend.model)
        self.assertEqual(request.provider, "ollama")
        self.assertEqual(request.base_url, "http://localhost:11434")
        self.assertIsNone(request.api_key)
        self.assertTrue(request.think)


class ChatEngineTests(unittest.IsolatedAsyncioTestCase):
    """Validate plain turns, tool turns, availability and cancellation."""

    def _engine(
        self,
        backend: RecordingBackend,
        ready: bool = True,
        config: Config | None = None,
    ) -> tuple[ChatEngine, BackendFactory, list[str], FakeDispatcher]:
        probes: list[str] = []
        factory = BackendFactory(backend)
        dispatcher = FakeDispatcher()
        engine = ChatEngine(
            config or _config(),
            availability=_availability(ready, probes),
            dispatcher=dispatcher,
            backend_factory=factory,
        )
        return engine, factory, probes, dispatcher

    async def test_plain_turn_streams_reply(self) -> None:
        backend = RecordingBackend(["Hello there friend"])
        engine, factory, probes, _ = self._engine(backend)
        request = engine.build_request([Message(role="user", content="hi")])

        turn = engine.stream(request)
        text = await turn.read_all()

        self.assertEqual(text, "Hello there friend")
        self.assertEqual(probes, ["http://localhost:11434"])
        self.assertEqual(factory.resolved[0].provider, "ollama")
        self.assertTrue(backend.closed)
        self.assertIsNone(turn.execution)
        self.assertEqual(engine.active_turns, [])

    async def test_plain_stream_error_becomes_error_fragment(self) -> None:
        backend = FailingBackend(["partial text"])
        engine, _, _, _ = self._engine(backend)
        request = engine.build_request([Message(role="user", content="hi")])

        fragments = [fragment async for fragment in engine.stream(request)]

        self.assertEqual(fragments[:2], ["partial", " text"])
        self.assertEqual(fragments[-1], "\n\n[Error] stream closed")
        self.assertTrue(backend.closed)
        self.assertEqual(engine.registry.active_ids, [])

    async def test_unreachable_ollama_raises_connection_error(self) -> None:
        backend = RecordingBackend(["never"])
        engine, _, _, _ = self._engine(backend, ready=False)
        request = engine.build_request([Message(role="user", content="hi")])

        with self.assertRaises(BackendConnectionError):
            await engine.stream(request).read_all()
        self.assertEqual(backend.requests, [])

    async def test_remote_provider_skips_availability(self) -> None:
        backend = RecordingBackend(["remote reply"])
        engine, factory, probes, _ = self._engine(backend, ready=False)
        request = engine.build_request([Message(role="user", content="hi")], "m1")

        self.assertEqual(await engine.stream(request).read_all(), "remote reply")
        self.assertEqual(probes, [])
        self.assertEqual(
            factory.resolved[0], ResolvedBackend("openai", "https://api.example.com", "k")
        )

    async def test_tools_without_enabled_servers_run_plain_turn(self) -> None:
        config = Config(tool_servers=[ToolServerConfig(id="off", command="x", enabled=False)])
        backend = RecordingBackend(["plain answer"])
        engine, _, _, dispatcher = self._engine(backend, config=config)
        request = engine.build_request([Message(role="user", content="hi")], tools=True)

        self.assertEqual(await engine.stream(request).read_all(), "plain answer")
        self.assertEqual([m.role for m in backend.requests[0].messages], ["user"])
        self.assertEqual(dispatcher.calls, [])

    async def test_tool_turn_runs_react_loop(self) -> None:
        backend = RecordingBackend(
            ['Thought: read it\nAction: read_file({"path": "a"})', "It says hello."]
        )
        engine, _, _, dispatcher = self._engine(backend)
        request = engine.build_request([Message(role="user", content="what?")], tools=True)

        turn = engine.stream(request)
        text = await turn.read_all()

        self.assertIn('Observation: Success: "file contents"', text)
        self.assertTrue(text.endswith("It says hello."))
        self.assertEqual(dispatcher.calls, [ToolCall(tool="read_file", arguments={"path": "a"})])
        self.assertIs(turn.execution.outcome, LoopOutcome.CONCLUDED)
        self.assertEqual(turn.execution.max_attempts, 3)

    async def test_cancel_by_turn_id(self) -> None:
        gate = asyncio.Event()
        backend = RecordingBackend(["one two three"], gate=gate)
        engine, _, _, _ = self._engine(backend)
        turn = engine.stream(engine.build_request([Message(role="user", content="hi")]))

        received: list[str] = []
        async for fragment in turn:
            received.append(fragment)
            self.assertTrue(engine.cancel(turn.id))
            gate.set()

        self.assertEqual(received, ["one"])
        self.assertTrue(turn.cancelled)
        self.assertEqual(engine.registry.active_ids, [])
        self.assertFalse(engine.cancel(turn.id))

    async def test_cancel_by_session_id(self) -> None:
        gate = asyncio.Event()
        backend = RecordingBackend(["alpha beta"], gate=gate)
        engine, _, _, _ = self._engine(backend)
        turn = engine.stream(engine.build_request([Message(role="user", content="hi")]))

        received: list[str] = []
        async for fragment in turn:
            received.append(fragment)
            self.assertTrue(engine.cancel(turn.session_id))
            gate.set()

        self.assertEqual(received, ["alpha"])

    async def test_polling_fallback_is_opt_in(self) -> None:
        backend = RecordingBackend(["slow but steady"])
        push, _, _, _ = self._engine(backend)
        polled, _, _, _ = self._engine(
            backend,
            config=Config(availability=AvailabilityConfig(stream_polling=True)),
        )

        self.assertIsNone(push.registry.poll_interval)
        self.assertEqual(polled.registry.poll_interval, 0.04)
        request = polled.build_request([Message(role="user", content="hi")])
        self.assertEqual(await polled.stream(request).read_all(), "slow but steady")

    async def test_list_models_uses_resolved_backend(self) -> None:
        backend = RecordingBackend(["x"])
        engine, factory, _, _ = self._engine(backend)

        self.assertEqual(await engine.list_models("m1"), ["llama3.2", "m1"])
        self.assertEqual(factory.resolved[0].provider, "openai")
        self.assertTrue(backend.closed)


if __name__ == "__main__":
    unittest.main()
