"""Parser for the ``Thought:`` / ``Action: name(json)`` turn grammar.

Grammar (case-insensitive keywords, each starting a line)::

    turn    := [ "Thought:" text ] [ "Action:" name "(" json-object ")" ] ...
    name    := [A-Za-z0-9_.-]+

Without an action the thought is the whole turn minus its ``Thought:``
keyword, text before the keyword included. With an action the thought stops
at the first ``Action:`` or ``Observation:`` line, and anything after the
action (for example an invented ``Observation:``) is ignored.
"""

from __future__ import annotations

from dataclasses import dataclass
import json
import re

from ..exceptions import ActionParseError, ToolArgumentError
from ..models import ToolCall

_THOUGHT_RE = re.compile(r"^[ \t]*thought[ \t]*:[ \t]*", re.IGNORECASE | re.MULTILINE)
_ACTION_RE = re.compile(
    r"^\s*action\s*:\s*(?P<name>[A-Za-z0-9_.\-]+)\s*\(", re.IGNORECASE | re.MULTILINE
)
_STOP_RE = re.compile(r"^\s*(?:action|observation)\s*:", re.IGNORECASE | re.MULTILINE)

_DECODER = json.JSONDecoder()


@dataclass(frozen=True)
class ParsedTurn:
    """What a model turn asked for."""

    thought: str
    action: ToolCall | None = None

    @property
    def is_final(self) -> bool:
        return self.action is None


def _extract_thought(text: str, with_action: bool) -> str:
    body = text
    if with_action:
        stop = _STOP_RE.search(body)
        if stop:
            body = body[: stop.start()]
    return _THOUGHT_RE.sub("", body, count=1).strip()


def _parse_arguments(text: str, start: int) -> tuple[dict, str]:
    """Decode the JSON object starting at ``start`` and require a closing paren."""
    stripped = text[start:].lstrip()
    if stripped.startswith(")"):
        return {}, ""
    try:
        value, end = _DECODER.raw_decode(stripped)
    except json.JSONDecodeError as exc:
        raw = stripped.split(")", 1)[0] if ")" in stripped else stripped
        raise ActionParseError(
            f"Invalid tool arguments format: {raw.strip()}", raw_arguments=raw.strip()
        ) from exc
    raw = stripped[:end]
    tail = stripped[end:].lstrip()
    if not tail.startswith(")"):
        raise ActionParseError(
            f"Invalid tool arguments format: expected ')' after {raw}", raw_arguments=raw
        )
    if not isinstance(value, dict):
        raise ActionParseError(
            f"Invalid tool arguments format: arguments must be a JSON object, got {raw}",
            raw_arguments=raw,
        )
    return value, raw


def parse_turn(text: str) -> ParsedTurn:
    """Split a completed model turn into its thought and optional action.

    Raises ActionParseError when an ``Action:`` line names a tool but its
    argument payload is not a well-formed JSON object.
    """
    match = _ACTION_RE.search(text)
    if match is None:
        return ParsedTurn(thought=_extract_thought(text, with_action=False))

    arguments, raw = _parse_arguments(text, match.end())
    try:
        action = ToolCall(tool=match.group("name"), arguments=arguments)
    except ToolArgumentError as exc:
        raise ActionParseError(f"Invalid tool arguments format: {exc}", raw_arguments=raw) from exc
    return ParsedTurn(thought=_extract_thought(text, with_action=True), action=action)
