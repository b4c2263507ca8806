"""Turn orchestration: resolve, ensure the backend, then stream plain or tool turns."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable, Sequence
from contextlib import aclosing
import logging
import uuid

from .availability import BackendAvailabilityManager
from .backends import ChatBackend, OllamaBackend, create_backend
from .config import Config
from .dispatcher import ToolDispatcher
from .exceptions import BackendConnectionError, BackendStreamingError
from .models import ChatRequest, Message, ResolvedBackend, TaskExecution, truncate_history
from .react.loop import ReActLoopController
from .resolver import resolve_backend
from .session import SessionRegistry, StreamSession

LOGGER = logging.getLogger(__name__)

BackendFactory = Callable[[ResolvedBackend, int], ChatBackend]


def build_request(
    config: Config,
    model: str | None,
    history: Sequence[Message],
    *,
    think: bool | None = None,
    tools: bool = False,
) -> ChatRequest:
    """Snapshot everything a turn needs into an immutable request."""
    selected = (model or config.backend.model).strip()
    resolved = resolve_backend(config, selected)
    return ChatRequest(
        provider=resolved.provider,
        base_url=resolved.base_url,
        api_key=resolved.api_key,
        model=selected,
        messages=truncate_history(list(history), config.backend.max_context_messages),
        think=config.backend.default_think if think is None else think,
        tools_enabled=tools,
        temperature=config.backend.temperature,
    )


class ChatTurn:
    """One user turn, iterated for its fragments and cancellable by id."""

    def __init__(self, engine: ChatEngine, request: ChatRequest) -> None:
        self.id = f"turn-{uuid.uuid4().hex}"
        self.request = request
        self._engine = engine
        self._config = engine.config
        self._cancel_event = asyncio.Event()
        self._session: StreamSession | None = None
        self._controller: ReActLoopController | None = None

    @property
    def execution(self) -> TaskExecution | None:
        """The loop record for tool turns, ``None`` for plain ones."""
        return self._controller.last_execution if self._controller else None

    @property
    def session_id(self) -> str | None:
        if self._controller is not None:
            return self._controller.active_session_id
        return self._session.id if self._session is not None else None

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def cancel(self) -> None:
        self._cancel_event.set()
        if self._controller is not None:
            self._controller.cancel()
        if self._session is not None:
            self._session.cancel()

    def __aiter__(self) -> AsyncIterator[str]:
        return self._run()

    async def read_all(self) -> str:
        return "".join([fragment async for fragment in self])

    async def _run(self) -> AsyncIterator[str]:
        engine = self._engine
        request = self.request
        if request.provider == "ollama":
            ready = await engine.availability.ensure_available(request.base_url)
            if not ready:
                raise BackendConnectionError(
                    f"Could not reach the model backend at {request.base_url}."
                )
        if self.cancelled:
            return

        backend = engine.backend_factory(request.backend, self._config.backend.timeout)
        servers = self._config.enabled_tool_servers
        LOGGER.info(
            "chat.turn.start",
            extra={
                "event": "chat.turn.start",
                "turn_id": self.id,
                "provider": request.provider,
                "model": request.model,
                "tools": bool(request.tools_enabled and servers),
            },
        )
        engine._turns[self.id] = self
        try:
            if request.tools_enabled and servers:
                self._controller = ReActLoopController.from_config(
                    self._config.react,
                    engine.registry,
                    backend,
                    engine.dispatcher,
                    cancel_event=self._cancel_event,
                )
                fragments = self._controller.run(request, servers)
            else:
                fragments = self._plain(backend)
            async with aclosing(fragments) as stream:
                async for fragment in stream:
                    yield fragment
        finally:
            engine._turns.pop(self.id, None)
            await backend.aclose()
            LOGGER.info(
                "chat.turn.end",
                extra={"event": "chat.turn.end", "turn_id": self.id, "cancelled": self.cancelled},
            )

    async def _plain(self, backend: ChatBackend) -> AsyncIterator[str]:
        session = self._engine.registry.open(self.request, backend)
        self._session = session
        try:
            async for fragment in session:
                if self.cancelled:
                    return
                yield fragment
        except BackendStreamingError as exc:
            LOGGER.warning(
                "chat.turn.stream_error",
                extra={"event": "chat.turn.stream_error", "turn_id": self.id, "error": str(exc)},
            )
            yield f"\n\n[Error] {exc}"
        finally:
            if not session.done:
                await session.aclose()


class ChatEngine:
    """Entry point for callers: build requests, stream turns, cancel them.

    The engine keeps the configuration it was given for its lifetime; every
    turn captures that snapshot when it is created.
    """

    def __init__(
        self,
        config: Config | None = None,
        *,
        registry: SessionRegistry | None = None,
        availability: BackendAvailabilityManager | None = None,
        dispatcher: ToolDispatcher | None = None,
        backend_factory: BackendFactory | None = None,
    ) -> None:
        self.config = config or Config()
        self.registry = registry or SessionRegistry(
            streaming=self.config.backend.streaming_enabled,
            poll_interval=(
                self.config.availability.stream_poll_interval
                if self.config.availability.stream_polling
                else None
            ),
        )
        self.availability = availability or BackendAvailabilityManager(
            ollama_path=self.config.backend.ollama_path,
            probe_timeout=self.config.availability.probe_timeout,
            poll_interval=self.config.availability.poll_interval,
            deadline=self.config.availability.deadline,
        )
        self.dispatcher = dispatcher or ToolDispatcher()
        self.backend_factory: BackendFactory = backend_factory or create_backend
        self._turns: dict[str, ChatTurn] = {}

    def build_request(
        self,
        history: Sequence[Message],
        model: str | None = None,
        *,
        think: bool | None = None,
        tools: bool = False,
    ) -> ChatRequest:
        return build_request(self.config, model, history, think=think, tools=tools)

    def stream(self, request: ChatRequest) -> ChatTurn:
        """Return the turn for ``request``; iterate it to run the backend."""
        return ChatTurn(self, request)

    def cancel(self, session_id: str) -> bool:
        """Cancel a running turn by turn id, or a single stream session by its id."""
        turn = self._turns.get(session_id)
        if turn is not None:
            turn.cancel()
            return True
        for turn in self._turns.values():
            if turn.session_id == session_id:
                turn.cancel()
                return True
        return self.registry.cancel(session_id)

    @property
    def active_turns(self) -> list[str]:
        return list(self._turns)

    async def ensure_model(self, model: str | None = None, pull_if_missing: bool = True) -> bool:
        """Check that ``model`` exists on its Ollama endpoint, pulling it if allowed."""
        selected = (model or self.config.backend.model).strip()
        resolved = resolve_backend(self.config, selected)
        if resolved.provider != "ollama":
            return True
        if not await self.availability.ensure_available(resolved.base_url):
            raise BackendConnectionError(f"Could not reach the model backend at {resolved.base_url}.")
        backend = OllamaBackend(host=resolved.base_url, timeout=self.config.backend.timeout)
        try:
            return await self.availability.ensure_model(backend, selected, pull_if_missing)
        finally:
            await backend.aclose()

    async def list_models(self, model: str | None = None) -> list[str]:
        """List models offered by the backend that serves ``model``."""
        selected = (model or self.config.backend.model).strip()
        backend = self.backend_factory(
            resolve_backend(self.config, selected), self.config.backend.timeout
        )
        try:
            return await backend.list_models()
        finally:
            await backend.aclose()

    async def aclose(self) -> None:
        for turn in list(self._turns.values()):
            turn.cancel()
        await self.registry.cancel_all()
