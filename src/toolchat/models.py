"""Typed data model shared by sessions, the tool dispatcher and the ReAct loop."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
import json
import math
from typing import Any, Literal, Union

from .exceptions import ToolArgumentError

JsonValue = Union[
    str, int, float, bool, None, list["JsonValue"], dict[str, "JsonValue"]
]

Role = Literal["user", "assistant", "system"]
VALID_ROLES = frozenset({"user", "assistant", "system"})


def ensure_json_value(value: Any, path: str = "$") -> JsonValue:
    """Return ``value`` as validated structured data or raise ToolArgumentError.

    Tuples are normalised to lists. Non-string mapping keys, non-finite floats
    and any other Python object are rejected so that serialization never fails
    further down the line.
    """
    if value is None or isinstance(value, (str, bool)):
        return value
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ToolArgumentError(f"{path}: non-finite number is not valid JSON.")
        return value
    if isinstance(value, (list, tuple)):
        return [ensure_json_value(item, f"{path}[{i}]") for i, item in enumerate(value)]
    if isinstance(value, dict):
        validated: dict[str, JsonValue] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise ToolArgumentError(f"{path}: object keys must be strings, got {key!r}.")
            validated[key] = ensure_json_value(item, f"{path}.{key}")
        return validated
    raise ToolArgumentError(
        f"{path}: value of type {type(value).__name__} is not JSON-serializable."
    )


def dump_json(value: JsonValue) -> str:
    """Serialize validated structured data compactly, keeping non-ASCII text."""
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


@dataclass(frozen=True)
class Message:
    """One role-tagged entry of the conversation history."""

    role: Role
    content: str

    def __post_init__(self) -> None:
        if self.role not in VALID_ROLES:
            raise ValueError(f"Unsupported message role {self.role!r}.")

    def as_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Message:
        return cls(role=str(payload.get("role", "")), content=str(payload.get("content", "")))  # type: ignore[arg-type]


@dataclass(frozen=True)
class ResolvedBackend:
    """Effective provider, endpoint and credential for one model."""

    provider: str
    base_url: str
    api_key: str | None = None


@dataclass(frozen=True)
class ChatRequest:
    """Everything one chat turn needs; immutable once the turn starts."""

    provider: str
    base_url: str
    model: str
    messages: tuple[Message, ...]
    api_key: str | None = None
    think: bool = False
    tools_enabled: bool = False
    temperature: float | None = None

    @property
    def backend(self) -> ResolvedBackend:
        return ResolvedBackend(self.provider, self.base_url, self.api_key)

    def with_messages(self, messages: list[Message] | tuple[Message, ...]) -> ChatRequest:
        """Return a copy of this request with a different message sequence."""
        return replace(self, messages=tuple(messages))

    def api_messages(self) -> list[dict[str, str]]:
        return [message.as_dict() for message in self.messages]


@dataclass(frozen=True)
class ToolCall:
    """A named tool invocation with validated structured arguments."""

    tool: str
    arguments: dict[str, JsonValue] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.tool:
            raise ToolArgumentError("Tool name must not be empty.")
        if not isinstance(self.arguments, dict):
            raise ToolArgumentError("Tool arguments must be a JSON object.")
        object.__setattr__(self, "arguments", ensure_json_value(self.arguments))

    def render(self) -> str:
        """Render the call in the ``name(json)`` form used by the action grammar."""
        return f"{self.tool}({dump_json(self.arguments)})"


@dataclass(frozen=True)
class ToolResult:
    """Outcome of one tool call: a result value XOR an error message."""

    success: bool
    result: JsonValue = None
    error: str | None = None

    def __post_init__(self) -> None:
        if self.success and self.error is not None:
            raise ValueError("A successful ToolResult cannot carry an error.")
        if not self.success and self.error is None:
            raise ValueError("A failed ToolResult requires an error message.")

    @classmethod
    def ok(cls, value: Any) -> ToolResult:
        return cls(success=True, result=ensure_json_value(value))

    @classmethod
    def failure(cls, message: str) -> ToolResult:
        return cls(success=False, error=message or "Tool call failed")

    def observation(self) -> str:
        if self.success:
            return f"Success: {dump_json(self.result)}"
        return f"Error: {self.error}"


@dataclass
class ReActCycle:
    """One reason/act/observe iteration in a loop run."""

    index: int
    thought: str
    action: ToolCall | None = None
    observation: str | None = None
    success: bool = True
    error: str | None = None

    def transcript(self) -> str:
        lines = [f"Thought: {self.thought}"]
        if self.action is not None:
            lines.append(f"Action: {self.action.render()}")
        if self.observation is not None:
            lines.append(f"Observation: {self.observation}")
        return "\n".join(lines)


class LoopOutcome(str, Enum):
    """Terminal state of a ReAct loop run."""

    RUNNING = "running"
    CONCLUDED = "concluded"
    ABORTED = "aborted"
    EXHAUSTED = "exhausted"
    CANCELLED = "cancelled"


@dataclass
class TaskExecution:
    """Append-only log of the cycles executed by one loop run."""

    max_attempts: int
    cycles: list[ReActCycle] = field(default_factory=list)
    attempts: int = 0
    completed: bool = False
    outcome: LoopOutcome = LoopOutcome.RUNNING

    def append(self, cycle: ReActCycle) -> None:
        if self.cycles and cycle.index <= self.cycles[-1].index:
            raise ValueError("ReAct cycles must be appended in index order.")
        self.cycles.append(cycle)

    def finish(self, outcome: LoopOutcome) -> None:
        self.outcome = outcome
        self.completed = outcome is LoopOutcome.CONCLUDED

    @property
    def exhausted(self) -> bool:
        return self.attempts >= self.max_attempts


def truncate_history(
    messages: list[Message] | tuple[Message, ...], limit: int
) -> tuple[Message, ...]:
    """Keep only the most recent ``limit`` messages, preserving order."""
    if limit <= 0:
        return ()
    return tuple(messages[-limit:])
