"""Exception types raised across the engine."""

from __future__ import annotations

from typing import Sequence


class DevTeamError(Exception):
    """Base class for engine errors."""


class CommandError(DevTeamError):
    """A subprocess exited non-zero or timed out."""

    def __init__(self, args: Sequence[str], returncode: int | None, stderr: str = "") -> None:
        self.command = list(args)
        self.returncode = returncode
        self.stderr = stderr
        reason = "timed out" if returncode is None else f"exited {returncode}"
        detail = f": {stderr.strip()}" if stderr.strip() else ""
        super().__init__(f"{' '.join(self.command)} {reason}{detail}")


class CodeReviewError(DevTeamError):
    """A batched pull-request lookup for a repository failed."""


class InspectorError(DevTeamError):
    """The repository inspector could not enumerate projects or worktrees."""
