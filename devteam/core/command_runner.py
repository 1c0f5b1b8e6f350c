"""Async subprocess helpers shared by the git, tmux and gh adapters."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from devteam.constants import DEFAULT_COMMAND_TIMEOUT_S
from devteam.core.errors import CommandError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommandResult:
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


async def _kill(proc: asyncio.subprocess.Process) -> None:
    try:
        proc.kill()
    except ProcessLookupError:
        return
    await proc.wait()


async def run_command(
    *args: str,
    cwd: Optional[str] = None,
    timeout: float = DEFAULT_COMMAND_TIMEOUT_S,
) -> CommandResult:
    """Run a command and capture its output.

    Args:
        *args: Program and arguments (no shell).
        cwd: Working directory.
        timeout: Seconds before the process is killed.

    Returns:
        CommandResult with decoded stdout/stderr.

    Raises:
        CommandError: The program is missing or the timeout elapsed.
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            cwd=cwd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except (FileNotFoundError, NotADirectoryError, PermissionError) as e:
        raise CommandError(args, -1, str(e)) from e

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError as e:
        await _kill(proc)
        raise CommandError(args, None) from e

    return CommandResult(
        returncode=proc.returncode if proc.returncode is not None else -1,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
    )


async def run_checked(*args: str, cwd: Optional[str] = None, timeout: float = DEFAULT_COMMAND_TIMEOUT_S) -> str:
    """Run a command and return stdout, raising CommandError on non-zero exit."""
    result = await run_command(*args, cwd=cwd, timeout=timeout)
    if not result.ok:
        raise CommandError(args, result.returncode, result.stderr)
    return result.stdout


async def run_quiet(*args: str, cwd: Optional[str] = None, timeout: float = DEFAULT_COMMAND_TIMEOUT_S) -> str:
    """Run a best-effort query; any failure yields an empty string."""
    try:
        return (await run_checked(*args, cwd=cwd, timeout=timeout)).strip()
    except CommandError as e:
        logger.debug("Command failed: %s", e)
        return ""
