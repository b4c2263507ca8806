"""Addressable single-producer/single-consumer stream sessions."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from enum import Enum
import logging
from typing import Any
import uuid

from .backends.base import ChatBackend
from .exceptions import BackendStreamingError, ModelNotFoundError, SessionCancelledError
from .models import ChatRequest
from .signals import Signal, SignalBus, chunk_signal, end_signal, error_signal

LOGGER = logging.getLogger(__name__)

_CHUNK = "chunk"
_END = "end"
_ERROR = "error"
_WAKE = "wake"


class SessionState(str, Enum):
    """Lifecycle of one stream session."""

    PENDING = "PENDING"
    STREAMING = "STREAMING"
    COMPLETED = "COMPLETED"
    ERRORED = "ERRORED"
    CANCELLED = "CANCELLED"


TERMINAL_STATES = frozenset(
    {SessionState.COMPLETED, SessionState.ERRORED, SessionState.CANCELLED}
)


def new_session_id() -> str:
    return f"stream-{uuid.uuid4().hex}"


class StreamSession:
    """One generation job and the channel that delivers its fragments.

    The producer task is the only writer: it publishes chunk/end/error
    signals on the bus and the session's handlers buffer them in FIFO
    order. The consumer pulls with ``next_fragment`` (or ``async for``).

    With ``poll_interval`` unset the consumer suspends on the queue and is
    woken by each push. Setting it selects the polling fallback for
    transports that cannot wake the consumer: the buffer is checked every
    ``poll_interval`` seconds instead.
    """

    def __init__(
        self,
        session_id: str,
        request: ChatRequest,
        backend: ChatBackend,
        bus: SignalBus,
        *,
        streaming: bool = True,
        poll_interval: float | None = None,
        max_buffered: int = 256,
        on_close: Callable[[StreamSession], None] | None = None,
    ) -> None:
        self.id = session_id
        self.request = request
        self.streaming = streaming
        self.poll_interval = poll_interval
        self.error: str | None = None
        self._backend = backend
        self._bus = bus
        self._on_close = on_close
        self._queue: asyncio.Queue[tuple[str, str]] = asyncio.Queue()
        self._capacity = asyncio.Semaphore(max(1, max_buffered))
        self._state = SessionState.PENDING
        self._producer: asyncio.Task[None] | None = None
        self._subscriptions: list[tuple[str, Callable[[Signal], None]]] = [
            (chunk_signal(session_id), self._on_chunk),
            (end_signal(session_id), self._on_end),
            (error_signal(session_id), self._on_error),
        ]

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def done(self) -> bool:
        return self._state in TERMINAL_STATES

    def start(self) -> None:
        """Subscribe to this session's signals and launch the producer task."""
        if self._state is SessionState.CANCELLED:
            raise SessionCancelledError(f"Session {self.id} was cancelled.")
        if self._state is not SessionState.PENDING:
            return
        for name, handler in self._subscriptions:
            self._bus.subscribe(name, handler)
        self._state = SessionState.STREAMING
        self._producer = asyncio.create_task(self._produce(), name=self.id)
        LOGGER.info(
            "session.open",
            extra={
                "event": "session.open",
                "session_id": self.id,
                "model": self.request.model,
                "streaming": self.streaming,
            },
        )

    # -- producer side -------------------------------------------------

    async def _produce(self) -> None:
        delivered = 0
        try:
            if self.streaming:
                try:
                    async for text in self._backend.stream(self.request):
                        delivered += 1
                        await self._publish_chunk(text)
                except ModelNotFoundError:
                    raise
                except Exception as exc:  # noqa: BLE001 - decide on fallback below.
                    if delivered:
                        raise
                    LOGGER.warning(
                        "session.stream.fallback",
                        extra={
                            "event": "session.stream.fallback",
                            "session_id": self.id,
                            "reason": str(exc),
                        },
                    )
                    await self._publish_blocking()
            else:
                await self._publish_blocking()
            self._bus.publish(end_signal(self.id))
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001 - every failure becomes an error signal.
            self._bus.publish(error_signal(self.id), str(exc) or exc.__class__.__name__)

    async def _publish_blocking(self) -> None:
        text = await self._backend.complete(self.request)
        if text:
            await self._publish_chunk(text)

    async def _publish_chunk(self, text: str) -> None:
        # Bounded channel: wait until the consumer has taken enough fragments.
        await self._capacity.acquire()
        self._bus.publish(chunk_signal(self.id), text)

    def _on_chunk(self, signal: Signal) -> None:
        if self._state is SessionState.STREAMING:
            self._queue.put_nowait((_CHUNK, signal.payload))

    def _on_end(self, signal: Signal) -> None:
        if self._state is SessionState.STREAMING:
            self._queue.put_nowait((_END, ""))

    def _on_error(self, signal: Signal) -> None:
        if self._state is SessionState.STREAMING:
            self._queue.put_nowait((_ERROR, signal.payload))

    # -- consumer side -------------------------------------------------

    async def _next_item(self) -> tuple[str, str]:
        if self.poll_interval is None:
            return await self._queue.get()
        while True:
            try:
                return self._queue.get_nowait()
            except asyncio.QueueEmpty:
                if self._state is SessionState.CANCELLED:
                    return (_WAKE, "")
                await asyncio.sleep(self.poll_interval)

    async def next_fragment(self) -> str | None:
        """Return the next fragment, or ``None`` once the stream has ended.

        Raises BackendStreamingError when the producer signalled an error.
        After cancellation this always returns ``None``.
        """
        if self.done:
            return None
        if self._state is SessionState.PENDING:
            self.start()

        kind, payload = await self._next_item()
        if self._state is SessionState.CANCELLED:
            return None
        if kind == _CHUNK:
            self._capacity.release()
            return payload
        if kind == _END:
            self._finish(SessionState.COMPLETED)
            return None
        if kind == _ERROR:
            self.error = payload
            self._finish(SessionState.ERRORED)
            raise BackendStreamingError(payload)
        return None

    def __aiter__(self) -> StreamSession:
        return self

    async def __anext__(self) -> str:
        fragment = await self.next_fragment()
        if fragment is None:
            raise StopAsyncIteration
        return fragment

    async def read_all(self) -> str:
        """Drain the session and return the concatenated text."""
        return "".join([fragment async for fragment in self])

    # -- termination ---------------------------------------------------

    def cancel(self) -> bool:
        """Stop delivery immediately; returns False if already terminal."""
        if self.done:
            return False
        self._state = SessionState.CANCELLED
        if self._producer is not None and not self._producer.done():
            self._producer.cancel()
        self._queue.put_nowait((_WAKE, ""))
        self._release()
        LOGGER.info(
            "session.cancelled",
            extra={"event": "session.cancelled", "session_id": self.id},
        )
        return True

    async def aclose(self) -> None:
        """Cancel if still running and wait for the producer to unwind."""
        self.cancel()
        task = self._producer
        if task is None or task.done():
            return
        try:
            await task
        except asyncio.CancelledError:
            pass

    def _finish(self, state: SessionState) -> None:
        self._state = state
        self._release()
        LOGGER.info(
            "session.closed",
            extra={
                "event": "session.closed",
                "session_id": self.id,
                "state": state.value,
                "error": self.error,
            },
        )

    def _release(self) -> None:
        for name, handler in self._subscriptions:
            self._bus.unsubscribe(name, handler)
        if self._on_close is not None:
            self._on_close(self)
            self._on_close = None


class SessionRegistry:
    """Address live sessions by id so any caller can cancel them."""

    def __init__(
        self,
        bus: SignalBus | None = None,
        *,
        streaming: bool = True,
        poll_interval: float | None = None,
    ) -> None:
        self.bus = bus or SignalBus()
        self.streaming = streaming
        self.poll_interval = poll_interval
        self._sessions: dict[str, StreamSession] = {}

    def open(self, request: ChatRequest, backend: ChatBackend, **overrides: Any) -> StreamSession:
        """Create and start a session for ``request``; it is addressable by ``session.id``."""
        session = StreamSession(
            new_session_id(),
            request,
            backend,
            self.bus,
            streaming=overrides.get("streaming", self.streaming),
            poll_interval=overrides.get("poll_interval", self.poll_interval),
            on_close=self._forget,
        )
        self._sessions[session.id] = session
        session.start()
        return session

    def get(self, session_id: str) -> StreamSession | None:
        return self._sessions.get(session_id)

    def cancel(self, session_id: str) -> bool:
        session = self._sessions.get(session_id)
        if session is None:
            return False
        return session.cancel()

    async def cancel_all(self) -> None:
        for session in list(self._sessions.values()):
            await session.aclose()

    @property
    def active_ids(self) -> list[str]:
        return list(self._sessions)

    def _forget(self, session: StreamSession) -> None:
        self._sessions.pop(session.id, None)
