"""Bounded Reason-Act-Observe loop over stream sessions and tool servers."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Sequence
from contextlib import aclosing
import logging
from typing import Literal, TypeVar

from ..backends.base import ChatBackend
from ..config import ReActConfig, ToolServerConfig
from ..dispatcher import ToolDispatcher
from ..exceptions import ActionParseError, BackendStreamingError
from ..models import ChatRequest, LoopOutcome, ReActCycle, TaskExecution, ToolResult
from ..session import SessionRegistry, SessionState, StreamSession
from ..truncation import truncate_output
from .parser import parse_turn
from .prompt import build_prompt

LOGGER = logging.getLogger(__name__)

_T = TypeVar("_T")

TOOL_FAILURE_NOTICE = "[Error] Tool call failed after trying all available tool servers."


def exhaustion_notice(max_attempts: int) -> str:
    return f"[Info] Reached maximum ReAct attempts ({max_attempts})."


class _Cancelled(Exception):
    """Internal signal that the cancel event fired during a wait."""


class ReActLoopController:
    """Drive one tool-augmented turn and stream every fragment it produces.

    Each cycle opens a fresh stream session with the preamble, the transcript
    of earlier cycles and the conversation history. The model's reply is
    forwarded live, then parsed; an action is dispatched to the tool servers
    and its observation is streamed back before the next cycle starts.

    ``cancel()`` may be called from any task. It cancels the active session
    and the loop stops without emitting anything further.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        backend: ChatBackend,
        dispatcher: ToolDispatcher | None = None,
        *,
        max_attempts: int = 5,
        on_parse_failure: Literal["abort", "plain_chat"] = "abort",
        max_observation_bytes: int = 16000,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.registry = registry
        self.backend = backend
        self.dispatcher = dispatcher or ToolDispatcher()
        self.max_attempts = max_attempts
        self.on_parse_failure = on_parse_failure
        self.max_observation_bytes = max_observation_bytes
        self.cancel_event = cancel_event or asyncio.Event()
        self.last_execution: TaskExecution | None = None
        self._active: StreamSession | None = None

    @classmethod
    def from_config(
        cls,
        config: ReActConfig,
        registry: SessionRegistry,
        backend: ChatBackend,
        dispatcher: ToolDispatcher | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> ReActLoopController:
        return cls(
            registry,
            backend,
            dispatcher,
            max_attempts=config.max_attempts,
            on_parse_failure=config.on_parse_failure,
            max_observation_bytes=config.max_observation_bytes,
            cancel_event=cancel_event,
        )

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    @property
    def active_session_id(self) -> str | None:
        return self._active.id if self._active is not None else None

    def cancel(self) -> None:
        self.cancel_event.set()
        if self._active is not None:
            self._active.cancel()

    async def _until_cancelled(self, awaitable: Awaitable[_T]) -> _T:
        """Await ``awaitable`` unless the cancel event fires first."""
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self.cancel_event.wait())
        try:
            await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except BaseException:
            work.cancel()
            raise
        finally:
            waiter.cancel()
        if work.done():
            return work.result()
        work.cancel()
        try:
            await work
        except asyncio.CancelledError:
            pass
        raise _Cancelled

    async def _forward(self, session: StreamSession, parts: list[str]) -> AsyncIterator[str]:
        self._active = session
        try:
            while not self.cancelled:
                fragment = await session.next_fragment()
                if fragment is None or self.cancelled:
                    return
                parts.append(fragment)
                yield fragment
        finally:
            self._active = None
            if not session.done:
                await session.aclose()

    def _truncate(self, text: str) -> str:
        return truncate_output(text, max_bytes=self.max_observation_bytes).content

    async def run(
        self, request: ChatRequest, servers: Sequence[ToolServerConfig]
    ) -> AsyncIterator[str]:
        """Yield fragments of the whole loop; see ``last_execution`` afterwards."""
        enabled = [server for server in servers if server.enabled]
        execution = TaskExecution(max_attempts=self.max_attempts)
        self.last_execution = execution
        LOGGER.info(
            "react.start",
            extra={
                "event": "react.start",
                "model": request.model,
                "servers": [server.id for server in enabled],
                "max_attempts": self.max_attempts,
            },
        )

        while execution.attempts < self.max_attempts:
            if self.cancelled:
                self._finish(execution, LoopOutcome.CANCELLED)
                return
            execution.attempts += 1
            index = execution.attempts

            prompt = request.with_messages(
                build_prompt(enabled, execution.cycles, request.messages)
            )
            session = self.registry.open(prompt, self.backend)
            parts: list[str] = []
            try:
                async with aclosing(self._forward(session, parts)) as fragments:
                    async for fragment in fragments:
                        yield fragment
            except BackendStreamingError as exc:
                execution.append(
                    ReActCycle(index=index, thought="".join(parts), success=False, error=str(exc))
                )
                self._finish(execution, LoopOutcome.ABORTED)
                yield f"\n\n[Error] {exc}"
                return
            if self.cancelled or session.state is SessionState.CANCELLED:
                self._finish(execution, LoopOutcome.CANCELLED)
                return

            try:
                turn = parse_turn("".join(parts))
            except ActionParseError as exc:
                execution.append(
                    ReActCycle(index=index, thought="".join(parts), success=False, error=str(exc))
                )
                LOGGER.warning(
                    "react.parse_failed",
                    extra={
                        "event": "react.parse_failed",
                        "cycle": index,
                        "policy": self.on_parse_failure,
                        "error": str(exc),
                    },
                )
                if self.on_parse_failure == "plain_chat":
                    async with aclosing(self._plain_turn(request, execution)) as fragments:
                        async for fragment in fragments:
                            yield fragment
                    return
                self._finish(execution, LoopOutcome.ABORTED)
                yield f"\n\n[Error] {exc}"
                return

            if turn.action is None:
                execution.append(ReActCycle(index=index, thought=turn.thought))
                self._finish(execution, LoopOutcome.CONCLUDED)
                return

            LOGGER.info(
                "react.cycle",
                extra={"event": "react.cycle", "cycle": index, "tool": turn.action.tool},
            )
            try:
                result: ToolResult = await self._until_cancelled(
                    self.dispatcher.dispatch(enabled, turn.action)
                )
            except _Cancelled:
                self._finish(execution, LoopOutcome.CANCELLED)
                return

            observation = self._truncate(result.observation())
            execution.append(
                ReActCycle(
                    index=index,
                    thought=turn.thought,
                    action=turn.action,
                    observation=observation,
                    success=result.success,
                    error=result.error,
                )
            )
            if self.cancelled:
                self._finish(execution, LoopOutcome.CANCELLED)
                return
            yield f"\n\nObservation: {observation}"

            if not result.success:
                self._finish(execution, LoopOutcome.ABORTED)
                yield f"\n\n{TOOL_FAILURE_NOTICE}"
                return
            if execution.attempts < self.max_attempts:
                yield "\n\n"

        self._finish(execution, LoopOutcome.EXHAUSTED)
        yield f"\n\n{exhaustion_notice(self.max_attempts)}"

    async def _plain_turn(
        self, request: ChatRequest, execution: TaskExecution
    ) -> AsyncIterator[str]:
        """Answer ``request`` without tools after an unparseable action."""
        yield "\n\n"
        session = self.registry.open(request, self.backend)
        parts: list[str] = []
        try:
            async with aclosing(self._forward(session, parts)) as fragments:
                async for fragment in fragments:
                    yield fragment
        except BackendStreamingError as exc:
            self._finish(execution, LoopOutcome.ABORTED)
            yield f"\n\n[Error] {exc}"
            return
        if self.cancelled or session.state is SessionState.CANCELLED:
            self._finish(execution, LoopOutcome.CANCELLED)
            return
        self._finish(execution, LoopOutcome.CONCLUDED)

    def _finish(self, execution: TaskExecution, outcome: LoopOutcome) -> None:
        execution.finish(outcome)
        LOGGER.info(
            "react.end",
            extra={
                "event": "react.end",
                "outcome": outcome.value,
                "attempts": execution.attempts,
                "cycles": len(execution.cycles),
            },
        )
