"""In-process signal transport keyed by stream session id.

A producer publishes three signal classes per session:

    chunk:<id>   one text fragment
    end:<id>     terminal, no payload
    error:<id>   terminal, carries an error string

Usage:
    bus = SignalBus()
    bus.subscribe(chunk_signal(session_id), on_chunk)
    bus.publish(chunk_signal(session_id), "Hello")
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
import logging

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class Signal:
    """One published signal."""

    name: str
    payload: str = ""


SignalHandler = Callable[[Signal], None]


def chunk_signal(session_id: str) -> str:
    return f"chunk:{session_id}"


def end_signal(session_id: str) -> str:
    return f"end:{session_id}"


def error_signal(session_id: str) -> str:
    return f"error:{session_id}"


class SignalBus:
    """Synchronous publish/subscribe bus; handlers run in publish order."""

    def __init__(self) -> None:
        self._subscribers: dict[str, list[SignalHandler]] = {}

    def subscribe(self, name: str, handler: SignalHandler) -> None:
        self._subscribers.setdefault(name, []).append(handler)

    def unsubscribe(self, name: str, handler: SignalHandler) -> None:
        handlers = self._subscribers.get(name)
        if not handlers:
            return
        try:
            handlers.remove(handler)
        except ValueError:
            return
        if not handlers:
            self._subscribers.pop(name, None)

    def publish(self, name: str, payload: str = "") -> int:
        """Deliver a signal to current subscribers and return how many received it."""
        handlers = list(self._subscribers.get(name, ()))
        if not handlers:
            LOGGER.debug("No subscribers for signal %s", name)
            return 0
        signal = Signal(name=name, payload=payload)
        for handler in handlers:
            handler(signal)
        return len(handlers)

    def subscriber_count(self, name: str) -> int:
        return len(self._subscribers.get(name, ()))
