"""Protocols for the external collaborators the engine depends on.

The engine only talks to these interfaces; concrete adapters wrap git, tmux
and the GitHub CLI, and tests substitute in-memory fakes.
"""

from __future__ import annotations

from typing import Optional, Protocol, runtime_checkable

from devteam.core.models import AITool, DiffFacts, PRStatus, RemoteBranch, WorktreeRef


@runtime_checkable
class RepositoryInspector(Protocol):
    """Reads and mutates git repositories under the projects root."""

    @property
    def projects_dir(self) -> str: ...

    async def discover_projects(self) -> list[str]: ...

    async def list_worktrees(self, project: str) -> list[WorktreeRef]: ...

    async def get_diff_facts(self, path: str) -> DiffFacts: ...

    async def get_local_commit_hash(self, path: str) -> Optional[str]: ...

    async def get_current_branch(self, path: str) -> Optional[str]: ...

    async def get_remote_commit_hash(self, path: str, branch: str) -> Optional[str]: ...

    def project_path(self, project: str) -> str: ...

    def has_workspace(self, feature: str) -> bool: ...

    def workspace_path(self, feature: str) -> str: ...

    def worktree_path(self, project: str, feature: str) -> str: ...

    async def create_worktree(self, project: str, feature: str) -> str: ...

    async def create_worktree_from_remote(self, project: str, remote_branch: str, local_name: str) -> str: ...

    async def setup_worktree_environment(self, project: str, worktree_path: str) -> None: ...

    async def archive_worktree(self, project: str, path: str, feature: str) -> str: ...

    async def prune_worktrees(self, project: str) -> None: ...

    async def list_remote_branches(self, project: str) -> list[RemoteBranch]: ...


@runtime_checkable
class SessionMultiplexer(Protocol):
    """Reads and controls terminal sessions."""

    def session_name(self, project: str, feature: str) -> str: ...

    async def list_sessions(self) -> set[str]: ...

    async def capture_pane(self, target: str) -> str: ...

    async def detect_session_tools(self) -> dict[str, AITool]: ...

    async def create_session(self, name: str, cwd: str) -> bool: ...

    async def kill_session(self, name: str) -> bool: ...


@runtime_checkable
class CodeReviewClient(Protocol):
    """Batched pull-request lookups for one repository at a time."""

    async def list_pull_requests(self, repo_path: str, branches: Optional[list[str]] = None) -> dict[str, PRStatus]: ...
