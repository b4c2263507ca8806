"""Prompt assembly for tool-augmented turns."""

from __future__ import annotations

from collections.abc import Sequence

from ..config import ToolServerConfig
from ..models import Message, ReActCycle

PREAMBLE = """You are an AI assistant with access to external tools. Solve problems with the ReAct (Reasoning and Acting) pattern.

Available tool servers and their capabilities:
{servers}

When you need a tool, answer in exactly this format and then stop:
Thought: <your reasoning about what to do next>
Action: <tool_name>(<arguments as a JSON object>)

The result will be returned to you as:
Observation: <tool result>

Continue until you can give a final answer. If you do not need a tool, answer directly without an Action line."""


def describe_servers(servers: Sequence[ToolServerConfig]) -> str:
    return "\n".join(
        f"- {server.name}: {server.description or 'No description'}" for server in servers
    )


def render_transcript(cycles: Sequence[ReActCycle]) -> str:
    return "\n\n".join(cycle.transcript() for cycle in cycles)


def build_prompt(
    servers: Sequence[ToolServerConfig],
    cycles: Sequence[ReActCycle],
    history: Sequence[Message],
) -> list[Message]:
    """Return preamble, prior-cycle transcript and the real history, in that order."""
    system = PREAMBLE.format(servers=describe_servers(servers))
    transcript = render_transcript(cycles)
    if transcript:
        system = f"{system}\n\nPrevious ReAct steps:\n{transcript}"
    return [Message(role="system", content=system), *history]
