"""AI assistant activity detection from captured pane text.

Each supported tool is one row of `TOOL_RULES`: the process names that
identify it, the marker shown while it works, and the rule that says it is
waiting on the user. Adding a tool means adding a row.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, Optional

from devteam.core.models import AIStatus, AITool


@dataclass(frozen=True)
class ToolRule:
    tool: AITool
    process_names: tuple[str, ...]
    working_marker: str
    is_waiting: Callable[[str], bool]


_NUMBERED_CHOICE = re.compile(r"\d+\.\s+\w+", re.MULTILINE)


def _claude_waiting(text: str) -> bool:
    # Selection prompt: a cursor glyph next to numbered options.
    return "❯" in text and bool(_NUMBERED_CHOICE.search(text))


def _codex_waiting(text: str) -> bool:
    # The send affordance disappears while codex waits for an approval.
    return "⏎ send" not in text


def _gemini_waiting(text: str) -> bool:
    return "waiting for user" in text.lower()


TOOL_RULES: tuple[ToolRule, ...] = (
    ToolRule(AITool.CLAUDE, ("claude",), "esc to interrupt", _claude_waiting),
    ToolRule(AITool.CODEX, ("codex",), "esc to interrupt", _codex_waiting),
    ToolRule(AITool.GEMINI, ("gemini",), "esc to cancel", _gemini_waiting),
)

_RULES_BY_TOOL = {rule.tool: rule for rule in TOOL_RULES}


def rule_for(tool: AITool) -> Optional[ToolRule]:
    return _RULES_BY_TOOL.get(tool)


def detect(pane_text: str, tool: AITool) -> AIStatus:
    """Classify assistant activity from pane text.

    Args:
        pane_text: Recent pane contents.
        tool: Tool running in the pane.

    Returns:
        NOT_RUNNING for no tool, WORKING when the working marker shows,
        WAITING when the tool's waiting rule holds, IDLE otherwise.
    """
    rule = _RULES_BY_TOOL.get(tool)
    if rule is None:
        return AIStatus.NOT_RUNNING
    if rule.working_marker in pane_text.lower():
        return AIStatus.WORKING
    if rule.is_waiting(pane_text):
        return AIStatus.WAITING
    return AIStatus.IDLE


def detect_tool(process_args: str) -> AITool:
    """Identify the AI tool from a process command line."""
    lowered = process_args.lower()
    for rule in TOOL_RULES:
        if any(name in lowered for name in rule.process_names):
            return rule.tool
    return AITool.NONE
