"""Repository inspector backed by the git CLI and GitPython.

Layout under the projects root:
    <root>/<project>/                      main checkout (has .git)
    <root>/<project>-branches/<feature>/   worktrees
    <root>/<project>-archived/archived-<ts>_<feature>/
    <root>/workspaces/<feature>/           umbrella workspaces spanning projects

Read operations never raise for a single worktree: they degrade to default
facts. Mutations go through GitPython and raise DevTeamError.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
from dataclasses import replace
from pathlib import Path
from typing import Optional

from git import Repo
from git.exc import GitCommandError, InvalidGitRepositoryError, NoSuchPathError

from devteam.constants import (
    ARCHIVED_DIR_SUFFIX,
    ARCHIVED_PREFIX,
    BASE_BRANCH_CANDIDATES,
    BRANCHES_DIR_SUFFIX,
    CLAUDE_SETTINGS_DIR,
    DEFAULT_COMMAND_TIMEOUT_S,
    DEFAULT_GIT_CONCURRENCY,
    ENV_LOCAL_FILE,
    FEATURE_BRANCH_PREFIX,
    GIT_FETCH_TIMEOUT_S,
    SHORT_COMMAND_TIMEOUT_S,
    WORKSPACES_DIR,
)
from devteam.core.command_runner import run_quiet
from devteam.core.concurrency import map_limit
from devteam.core.errors import DevTeamError, InspectorError
from devteam.core.models import DiffFacts, RemoteBranch, WorktreeRef
from devteam.utils import archive_timestamp, parse_shortstat

logger = logging.getLogger(__name__)

# Untracked files larger than this are not line-counted
_MAX_UNTRACKED_BYTES = 1024 * 1024


def parse_worktree_porcelain(output: str, project: str) -> list[WorktreeRef]:
    """Parse `git worktree list --porcelain` into refs under `<project>-branches`."""
    branches_dir = f"{project}{BRANCHES_DIR_SUFFIX}"
    refs: list[WorktreeRef] = []
    current: dict[str, str] = {}

    def _flush() -> None:
        path = current.get("path")
        if path and branches_dir in path:
            branch = current.get("branch", "")
            if branch.startswith("refs/heads/"):
                branch = branch[len("refs/heads/") :]
            refs.append(WorktreeRef(project=project, feature=os.path.basename(path), path=path, branch=branch))

    for line in output.splitlines():
        if line.startswith("worktree "):
            _flush()
            current = {"path": line[len("worktree ") :].strip()}
        elif line.startswith("branch "):
            current["branch"] = line[len("branch ") :].strip()
    _flush()
    return refs


def parse_left_right(output: str) -> tuple[int, int]:
    """Parse `rev-list --left-right --count` output into (left, right)."""
    parts = output.split()
    if len(parts) != 2:
        return (0, 0)
    try:
        return (int(parts[0]), int(parts[1]))
    except ValueError:
        return (0, 0)


def _count_untracked_lines(root: str, porcelain: str) -> int:
    total = 0
    for line in porcelain.splitlines():
        if not line.startswith("?? "):
            continue
        file_path = Path(root) / line[3:].strip().strip('"')
        try:
            if not file_path.is_file() or file_path.stat().st_size > _MAX_UNTRACKED_BYTES:
                continue
            with open(file_path, "r", encoding="utf-8", errors="replace") as f:
                total += sum(1 for _ in f)
        except OSError:
            continue
    return total


class GitInspector:
    """Reads and mutates git worktrees under a projects root."""

    def __init__(
        self,
        projects_dir: str,
        timeout: float = DEFAULT_COMMAND_TIMEOUT_S,
        short_timeout: float = SHORT_COMMAND_TIMEOUT_S,
        concurrency: int = DEFAULT_GIT_CONCURRENCY,
    ) -> None:
        self._projects_dir = str(Path(projects_dir).expanduser())
        self._timeout = timeout
        self._short_timeout = short_timeout
        self._concurrency = concurrency

    @property
    def projects_dir(self) -> str:
        return self._projects_dir

    # ==================== Paths ====================

    def project_path(self, project: str) -> str:
        return os.path.join(self._projects_dir, project)

    def worktree_path(self, project: str, feature: str) -> str:
        return os.path.join(self._projects_dir, f"{project}{BRANCHES_DIR_SUFFIX}", feature)

    def workspace_path(self, feature: str) -> str:
        return os.path.join(self._projects_dir, WORKSPACES_DIR, feature)

    def has_workspace(self, feature: str) -> bool:
        return os.path.isdir(self.workspace_path(feature))

    # ==================== Queries ====================

    async def _git(self, path: str, *args: str, quick: bool = True) -> str:
        timeout = self._short_timeout if quick else self._timeout
        return await run_quiet("git", "-C", path, *args, timeout=timeout)

    async def discover_projects(self) -> list[str]:
        """List git projects under the root, excluding -branches/-archived dirs.

        Raises:
            InspectorError: The projects root cannot be read.
        """
        try:
            entries = os.listdir(self._projects_dir)
        except OSError as e:
            raise InspectorError(f"Cannot list projects in {self._projects_dir}: {e}") from e

        projects = []
        for name in entries:
            if name.endswith(BRANCHES_DIR_SUFFIX) or name.endswith(ARCHIVED_DIR_SUFFIX):
                continue
            full = os.path.join(self._projects_dir, name)
            if os.path.isdir(full) and os.path.exists(os.path.join(full, ".git")):
                projects.append(name)
        return sorted(projects)

    async def list_worktrees(self, project: str) -> list[WorktreeRef]:
        output = await self._git(self.project_path(project), "worktree", "list", "--porcelain", quick=False)
        if not output:
            logger.debug("%s: no worktrees found", project)
            return []
        refs = parse_worktree_porcelain(output, project)
        stamps = await map_limit(refs, self._concurrency, lambda ref: self._git(ref.path, "log", "-1", "--format=%ct"))
        return [
            replace(ref, last_commit_ts=int(ts)) if ts and ts.isdigit() else ref for ref, ts in zip(refs, stamps)
        ]

    async def resolve_base_branch(self, path: str) -> Optional[str]:
        """Find the integration branch: origin/<candidate>, then local, then origin/HEAD."""
        for name in BASE_BRANCH_CANDIDATES:
            if await self._git(path, "rev-parse", "--verify", "--quiet", f"origin/{name}"):
                return f"origin/{name}"
        for name in BASE_BRANCH_CANDIDATES:
            if await self._git(path, "rev-parse", "--verify", "--quiet", name):
                return name
        head = await self._git(path, "symbolic-ref", "refs/remotes/origin/HEAD")
        if head.startswith("refs/remotes/"):
            return head[len("refs/remotes/") :]
        return None

    async def get_diff_facts(self, path: str) -> DiffFacts:
        """Collect change, ahead/behind and line facts relative to the merge base."""
        porcelain = await self._git(path, "status", "--porcelain")
        has_changes = bool(porcelain)

        working_added, working_deleted = parse_shortstat(await self._git(path, "diff", "--shortstat", "HEAD"))
        untracked = await asyncio.to_thread(_count_untracked_lines, path, porcelain) if porcelain else 0
        added = working_added + untracked
        deleted = working_deleted

        base = await self.resolve_base_branch(path)
        if base:
            merge_base = await self._git(path, "merge-base", "HEAD", base)
            if merge_base:
                committed_added, committed_deleted = parse_shortstat(
                    await self._git(path, "diff", "--shortstat", merge_base, "HEAD")
                )
                added += committed_added
                deleted += committed_deleted

        ahead, behind = 0, 0
        upstream = await self._git(path, "rev-parse", "--abbrev-ref", "--symbolic-full-name", "@{u}")
        if upstream:
            ahead, behind = parse_left_right(
                await self._git(path, "rev-list", "--left-right", "--count", "HEAD...@{u}")
            )
        elif base:
            ahead, behind = parse_left_right(
                await self._git(path, "rev-list", "--left-right", "--count", f"HEAD...{base}")
            )

        ts_raw = await self._git(path, "log", "-1", "--format=%ct")
        last_commit_ts = int(ts_raw) if ts_raw.isdigit() else 0

        return DiffFacts(
            has_changes=has_changes,
            ahead_count=ahead,
            behind_count=behind,
            added_lines=added,
            deleted_lines=deleted,
            last_commit_ts=last_commit_ts,
        )

    async def get_local_commit_hash(self, path: str) -> Optional[str]:
        return await self._git(path, "rev-parse", "HEAD") or None

    async def get_current_branch(self, path: str) -> Optional[str]:
        return await self._git(path, "branch", "--show-current") or None

    async def get_remote_commit_hash(self, path: str, branch: str) -> Optional[str]:
        return await self._git(path, "rev-parse", "--verify", "--quiet", f"origin/{branch}") or None

    # ==================== Mutations ====================

    def _open_repo(self, project: str) -> Repo:
        repo_path = self.project_path(project)
        try:
            return Repo(repo_path)
        except (InvalidGitRepositoryError, NoSuchPathError) as e:
            raise DevTeamError(f"Not a git repository: {repo_path}") from e

    @staticmethod
    def _fetch(repo: Repo) -> None:
        try:
            repo.git.fetch("origin", kill_after_timeout=GIT_FETCH_TIMEOUT_S)
        except GitCommandError as e:
            logger.warning("git fetch failed in %s: %s", repo.working_dir, e)

    def _worktree_add(self, repo: Repo, path: str, *args: str) -> None:
        try:
            repo.git.worktree("add", *args, kill_after_timeout=self._timeout)
        except GitCommandError as e:
            raise DevTeamError(f"Failed to create worktree at {path}: {e}") from e

    async def create_worktree(self, project: str, feature: str) -> str:
        """Create `<project>-branches/<feature>` on a new `feature/<feature>` branch.

        Returns:
            The new worktree path.

        Raises:
            DevTeamError: The target exists, no base branch was found, or git failed.
        """
        path = self.worktree_path(project, feature)
        if os.path.exists(path):
            raise DevTeamError(f"Worktree already exists: {path}")

        repo = self._open_repo(project)
        await asyncio.to_thread(self._fetch, repo)
        base = await self.resolve_base_branch(self.project_path(project))
        if not base:
            raise DevTeamError(f"No base branch found for {project}")

        os.makedirs(os.path.dirname(path), exist_ok=True)
        branch = f"{FEATURE_BRANCH_PREFIX}{feature}"
        await asyncio.to_thread(self._worktree_add, repo, path, path, "-b", branch, base)
        if not os.path.isdir(path):
            raise DevTeamError(f"git worktree add did not create {path}")
        logger.info("Created worktree %s from %s", path, base)
        return path

    async def create_worktree_from_remote(self, project: str, remote_branch: str, local_name: str) -> str:
        """Check out an existing remote branch into `<project>-branches/<local_name>`."""
        path = self.worktree_path(project, local_name)
        if os.path.exists(path):
            raise DevTeamError(f"Worktree already exists: {path}")

        branch = remote_branch[len("origin/") :] if remote_branch.startswith("origin/") else remote_branch
        repo = self._open_repo(project)
        await asyncio.to_thread(self._fetch, repo)

        os.makedirs(os.path.dirname(path), exist_ok=True)
        if branch in repo.heads:
            await asyncio.to_thread(self._worktree_add, repo, path, path, branch)
        else:
            await asyncio.to_thread(self._worktree_add, repo, path, "--track", "-b", branch, path, f"origin/{branch}")
        if not os.path.isdir(path):
            raise DevTeamError(f"git worktree add did not create {path}")
        logger.info("Created worktree %s tracking origin/%s", path, branch)
        return path

    async def setup_worktree_environment(self, project: str, worktree_path: str) -> None:
        """Copy `.env.local` and link `.claude` settings from the main checkout."""
        repo = Path(self.project_path(project))
        target = Path(worktree_path)

        env_src = repo / ENV_LOCAL_FILE
        env_dst = target / ENV_LOCAL_FILE
        if env_src.is_file() and not env_dst.exists():
            try:
                await asyncio.to_thread(shutil.copy2, env_src, env_dst)
            except OSError as e:
                logger.warning("Failed to copy %s into %s: %s", ENV_LOCAL_FILE, worktree_path, e)

        settings_src = repo / CLAUDE_SETTINGS_DIR
        settings_dst = target / CLAUDE_SETTINGS_DIR
        if settings_src.is_dir() and not settings_dst.exists():
            try:
                os.symlink(settings_src, settings_dst)
            except OSError as e:
                logger.warning("Failed to link %s into %s: %s", CLAUDE_SETTINGS_DIR, worktree_path, e)

    async def archive_worktree(self, project: str, path: str, feature: str) -> str:
        """Move a worktree into `<project>-archived/` and return its new location."""
        if not os.path.isdir(path):
            raise DevTeamError(f"Worktree not found: {path}")
        archive_dir = os.path.join(self._projects_dir, f"{project}{ARCHIVED_DIR_SUFFIX}")
        os.makedirs(archive_dir, exist_ok=True)
        dest = os.path.join(archive_dir, f"{ARCHIVED_PREFIX}{archive_timestamp()}_{feature}")
        try:
            await asyncio.to_thread(shutil.move, path, dest)
        except OSError as e:
            raise DevTeamError(f"Failed to move {path} to {dest}: {e}") from e
        logger.info("Archived %s to %s", path, dest)
        return dest

    async def prune_worktrees(self, project: str) -> None:
        try:
            repo = self._open_repo(project)
            await asyncio.to_thread(repo.git.worktree, "prune", kill_after_timeout=self._timeout)
        except (DevTeamError, GitCommandError) as e:
            logger.warning("git worktree prune failed for %s: %s", project, e)

    # ==================== Remote branches ====================

    async def list_remote_branches(self, project: str) -> list[RemoteBranch]:
        """Branches not yet checked out that carry work on top of the base branch, newest first."""
        repo = self.project_path(project)
        output = await self._git(repo, "branch", "-a", "--format=%(refname:short)")
        if not output:
            return []
        base = await self.resolve_base_branch(repo)
        if not base:
            return []

        existing = {ref.branch for ref in await self.list_worktrees(project)}
        candidates = parse_branch_candidates(output, existing)

        async def _info(candidate: tuple[str, str]) -> Optional[RemoteBranch]:
            name, clean = candidate
            behind, ahead = parse_left_right(
                await self._git(repo, "rev-list", "--left-right", "--count", f"{base}...{name}")
            )
            added, deleted = 0, 0
            if ahead > 0:
                added, deleted = parse_shortstat(await self._git(repo, "diff", "--shortstat", f"{base}...{name}"))
            if ahead == 0 and added == 0 and deleted == 0:
                return None
            ts_raw = await self._git(repo, "log", "-1", "--format=%at", name)
            return RemoteBranch(
                name=name,
                local_name=clean,
                is_remote=name.startswith("origin/"),
                ahead_count=ahead,
                behind_count=behind,
                added_lines=added,
                deleted_lines=deleted,
                last_commit_ts=int(ts_raw) if ts_raw.isdigit() else 0,
            )

        results = await map_limit(candidates, self._concurrency, _info)
        branches = [b for b in results if b is not None]
        branches.sort(key=lambda b: b.last_commit_ts, reverse=True)
        return branches


def parse_branch_candidates(output: str, existing: set[str]) -> list[tuple[str, str]]:
    """Turn `git branch -a` names into (ref, clean_name) pairs worth offering."""
    candidates: list[tuple[str, str]] = []
    seen: set[str] = set()
    for line in output.splitlines():
        name = line.strip()
        if not name:
            continue
        if name.startswith("remotes/origin/"):
            name = "origin/" + name[len("remotes/origin/") :]
        if "HEAD" in name or name == "origin":
            continue
        clean = name[len("origin/") :] if name.startswith("origin/") else name
        if clean in BASE_BRANCH_CANDIDATES:
            continue
        if clean in existing or f"{FEATURE_BRANCH_PREFIX}{clean}" in existing:
            continue
        if clean in seen:
            continue
        seen.add(clean)
        candidates.append((name, clean))
    return candidates
