"""Session multiplexer backed by the tmux CLI."""

from __future__ import annotations

import logging
import re

from devteam.constants import (
    CAPTURE_PANE_LINES,
    RUN_SESSION_SUFFIX,
    SESSION_PREFIX,
    SHELL_SESSION_SUFFIX,
    SHORT_COMMAND_TIMEOUT_S,
)
from devteam.core.ai_activity import detect_tool
from devteam.core.command_runner import run_command, run_quiet
from devteam.core.errors import CommandError
from devteam.core.models import AITool

logger = logging.getLogger(__name__)

_PS_LINE = re.compile(r"^\s*(\d+)\s+(.+)$")


def session_name(project: str, feature: str) -> str:
    """Deterministic session name for a worktree."""
    return f"{SESSION_PREFIX}{project}-{feature}"


def shell_session_name(project: str, feature: str) -> str:
    return f"{session_name(project, feature)}{SHELL_SESSION_SUFFIX}"


def run_session_name(project: str, feature: str) -> str:
    return f"{session_name(project, feature)}{RUN_SESSION_SUFFIX}"


def parse_pane_listing(output: str) -> dict[str, tuple[str, str]]:
    """Map session -> (pane_pid, pane_current_command) for dev sessions.

    Input lines are `session<TAB>pid<TAB>command`; the first pane of each
    session wins.
    """
    panes: dict[str, tuple[str, str]] = {}
    for line in output.splitlines():
        parts = line.split("\t")
        if len(parts) < 2:
            continue
        session, pid = parts[0], parts[1]
        command = parts[2] if len(parts) > 2 else ""
        if not session.startswith(SESSION_PREFIX) or not pid.isdigit():
            continue
        panes.setdefault(session, (pid, command))
    return panes


def parse_ps_args(output: str) -> dict[str, str]:
    """Map pid -> full command line from `ps -o pid= -o args=` output."""
    args: dict[str, str] = {}
    for line in output.splitlines():
        match = _PS_LINE.match(line)
        if match:
            args[match.group(1)] = match.group(2)
    return args


class TmuxMultiplexer:
    """Thin async wrapper over tmux and ps."""

    def __init__(self, timeout: float = SHORT_COMMAND_TIMEOUT_S) -> None:
        self._timeout = timeout

    def session_name(self, project: str, feature: str) -> str:
        return session_name(project, feature)

    async def list_sessions(self) -> set[str]:
        output = await run_quiet("tmux", "list-sessions", "-F", "#S", timeout=self._timeout)
        return {line.strip() for line in output.splitlines() if line.strip()}

    async def capture_pane(self, target: str) -> str:
        """Return the last lines of the session's active pane."""
        return await run_quiet(
            "tmux", "capture-pane", "-p", "-t", target, "-S", f"-{CAPTURE_PANE_LINES}", timeout=self._timeout
        )

    async def detect_session_tools(self) -> dict[str, AITool]:
        """Identify the AI tool of every dev session with one tmux and one ps call."""
        listing = await run_quiet(
            "tmux",
            "list-panes",
            "-a",
            "-F",
            "#{session_name}\t#{pane_pid}\t#{pane_current_command}",
            timeout=self._timeout,
        )
        panes = parse_pane_listing(listing)
        if not panes:
            return {}

        pids = ",".join(pid for pid, _ in panes.values())
        ps_output = await run_quiet("ps", "-p", pids, "-o", "pid=", "-o", "args=", timeout=self._timeout)
        args_by_pid = parse_ps_args(ps_output)

        tools: dict[str, AITool] = {}
        for session, (pid, command) in panes.items():
            tools[session] = detect_tool(f"{args_by_pid.get(pid, '')} {command}")
        return tools

    async def create_session(self, name: str, cwd: str) -> bool:
        try:
            result = await run_command("tmux", "new-session", "-d", "-s", name, "-c", cwd, timeout=self._timeout)
        except CommandError as e:
            logger.warning("Failed to create session %s: %s", name, e)
            return False
        return result.ok

    async def kill_session(self, name: str) -> bool:
        """Kill a session; a missing session counts as failure but is not an error."""
        try:
            result = await run_command("tmux", "kill-session", "-t", name, timeout=self._timeout)
        except CommandError as e:
            logger.warning("Failed to kill session %s: %s", name, e)
            return False
        return result.ok
