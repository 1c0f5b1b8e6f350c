"""Pytest configuration and shared fakes for DevTeam tests."""

import logging
import os
from typing import Optional

import pytest

# Keep the developer's own config file out of test runs.
os.environ.setdefault("DEVTEAM_CONFIG_PATH", "/nonexistent/devteam.yml")

from devteam.core.errors import CodeReviewError, DevTeamError, InspectorError  # noqa: E402
from devteam.core.models import AITool, DiffFacts, PRStatus, RemoteBranch, WorktreeRef  # noqa: E402

logging.getLogger("devteam").handlers.clear()


def pytest_collection_modifyitems(config, items):
    """Set per-marker timeouts: unit=1s, integration=5s."""
    for item in items:
        if item.get_closest_marker("integration") is not None:
            item.add_marker(pytest.mark.timeout(5))
        elif "unit" in item.keywords:
            item.add_marker(pytest.mark.timeout(1))


class FakeInspector:
    """In-memory repository inspector.

    `worktrees` maps project -> refs; git facts, hashes and branches are
    looked up per path so tests can mutate them between refreshes.
    """

    def __init__(self, projects_dir: str = "/projects") -> None:
        self._projects_dir = projects_dir
        self.worktrees: dict[str, list[WorktreeRef]] = {}
        self.diff: dict[str, DiffFacts] = {}
        self.local_hash: dict[str, str] = {}
        self.branch: dict[str, str] = {}
        self.remote_hash: dict[str, str] = {}
        self.workspaces: set[str] = set()
        self.remote_branches: dict[str, list[RemoteBranch]] = {}
        self.fail_discovery = False
        self.fail_create: Optional[str] = None
        self.diff_calls: list[str] = []
        self.archived: list[str] = []
        self.pruned: list[str] = []
        self.env_setup: list[str] = []

    @property
    def projects_dir(self) -> str:
        return self._projects_dir

    def add(self, project: str, feature: str, branch: Optional[str] = None, **facts: object) -> WorktreeRef:
        path = self.worktree_path(project, feature)
        branch = f"feature/{feature}" if branch is None else branch
        ts = int(facts.get("last_commit_ts", 0))  # type: ignore[call-overload]
        ref = WorktreeRef(project=project, feature=feature, path=path, branch=branch, last_commit_ts=ts)
        self.worktrees.setdefault(project, []).append(ref)
        self.diff[path] = DiffFacts(**facts)  # type: ignore[arg-type]
        self.local_hash[path] = "A"
        self.branch[path] = ref.branch
        return ref

    async def discover_projects(self) -> list[str]:
        if self.fail_discovery:
            raise InspectorError("projects root unreadable")
        return sorted(self.worktrees)

    async def list_worktrees(self, project: str) -> list[WorktreeRef]:
        return list(self.worktrees.get(project, []))

    async def get_diff_facts(self, path: str) -> DiffFacts:
        self.diff_calls.append(path)
        return self.diff.get(path, DiffFacts())

    async def get_local_commit_hash(self, path: str) -> Optional[str]:
        return self.local_hash.get(path)

    async def get_current_branch(self, path: str) -> Optional[str]:
        return self.branch.get(path)

    async def get_remote_commit_hash(self, path: str, branch: str) -> Optional[str]:
        return self.remote_hash.get(path)

    def project_path(self, project: str) -> str:
        return f"{self._projects_dir}/{project}"

    def worktree_path(self, project: str, feature: str) -> str:
        return f"{self._projects_dir}/{project}-branches/{feature}"

    def workspace_path(self, feature: str) -> str:
        return f"{self._projects_dir}/workspaces/{feature}"

    def has_workspace(self, feature: str) -> bool:
        return feature in self.workspaces

    async def create_worktree(self, project: str, feature: str) -> str:
        if self.fail_create:
            raise DevTeamError(self.fail_create)
        return self.add(project, feature).path

    async def create_worktree_from_remote(self, project: str, remote_branch: str, local_name: str) -> str:
        if self.fail_create:
            raise DevTeamError(self.fail_create)
        branch = remote_branch.removeprefix("origin/")
        return self.add(project, local_name, branch=branch).path

    async def setup_worktree_environment(self, project: str, worktree_path: str) -> None:
        self.env_setup.append(worktree_path)

    async def archive_worktree(self, project: str, path: str, feature: str) -> str:
        refs = self.worktrees.get(project, [])
        if not any(r.path == path for r in refs):
            raise DevTeamError(f"Worktree not found: {path}")
        self.worktrees[project] = [r for r in refs if r.path != path]
        self.archived.append(path)
        return f"{self._projects_dir}/{project}-archived/archived-20240101-000000_{feature}"

    async def prune_worktrees(self, project: str) -> None:
        self.pruned.append(project)

    async def list_remote_branches(self, project: str) -> list[RemoteBranch]:
        return list(self.remote_branches.get(project, []))


class FakeMultiplexer:
    """In-memory tmux: live sessions, their tools and pane text."""

    def __init__(self) -> None:
        self.sessions: set[str] = set()
        self.tools: dict[str, AITool] = {}
        self.panes: dict[str, str] = {}
        self.killed: list[str] = []

    def session_name(self, project: str, feature: str) -> str:
        return f"dev-{project}-{feature}"

    async def list_sessions(self) -> set[str]:
        return set(self.sessions)

    async def capture_pane(self, target: str) -> str:
        return self.panes.get(target, "")

    async def detect_session_tools(self) -> dict[str, AITool]:
        return {name: self.tools.get(name, AITool.NONE) for name in self.sessions}

    async def create_session(self, name: str, cwd: str) -> bool:
        self.sessions.add(name)
        return True

    async def kill_session(self, name: str) -> bool:
        self.killed.append(name)
        if name in self.sessions:
            self.sessions.discard(name)
            return True
        return False


class FakeCodeReview:
    """PR lookups keyed by (repo_path, branch); `failing` repos raise."""

    def __init__(self) -> None:
        self.prs: dict[str, dict[str, PRStatus]] = {}
        self.failing: set[str] = set()
        self.calls: list[tuple[str, list[str]]] = []

    async def list_pull_requests(self, repo_path: str, branches: Optional[list[str]] = None) -> dict[str, PRStatus]:
        self.calls.append((repo_path, list(branches or [])))
        if repo_path in self.failing:
            raise CodeReviewError(f"gh failed in {repo_path}")
        found = self.prs.get(repo_path, {})
        return {b: pr for b, pr in found.items() if branches is None or b in branches}


@pytest.fixture
def inspector() -> FakeInspector:
    return FakeInspector()


@pytest.fixture
def multiplexer() -> FakeMultiplexer:
    return FakeMultiplexer()


@pytest.fixture
def code_review() -> FakeCodeReview:
    return FakeCodeReview()
