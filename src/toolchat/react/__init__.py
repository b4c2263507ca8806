"""ReAct tool loop: turn parsing, prompt assembly and the loop controller."""

from .loop import ReActLoopController, TOOL_FAILURE_NOTICE, exhaustion_notice
from .parser import ParsedTurn, parse_turn
from .prompt import build_prompt

__all__ = [
    "ParsedTurn",
    "ReActLoopController",
    "TOOL_FAILURE_NOTICE",
    "build_prompt",
    "exhaustion_notice",
    "parse_turn",
]
