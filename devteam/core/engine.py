"""Snapshot engine: polls git, tmux and GitHub into versioned snapshots.

A refresh collects structure (projects, worktrees, sessions, AI activity),
attaches cached git and PR facts, classifies every row and publishes a new
Snapshot only when the content hash changed. Git and PR lookups are rate
limited separately; operator commands force a git refresh so the mutation is
visible in the snapshot they return after.

Subscribers receive ("snapshot", Snapshot) on every content change and
("error", exception) when the structure could not be read; in that case the
previous snapshot stays current.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import time
from dataclasses import dataclass, field, replace
from typing import Callable, Optional

from devteam.constants import (
    DEFAULT_GIT_CONCURRENCY,
    DEFAULT_GIT_REFRESH_INTERVAL_S,
    DEFAULT_PR_REFRESH_INTERVAL_S,
    MIN_GIT_REFRESH_INTERVAL_S,
    RUN_SESSION_SUFFIX,
    SHELL_SESSION_SUFFIX,
    WORKSPACE_PROJECT,
)
from devteam.core import ai_activity
from devteam.core.concurrency import map_limit
from devteam.core.errors import CodeReviewError, DevTeamError
from devteam.core.models import (
    AIStatus,
    AITool,
    DiffFacts,
    OperationResult,
    PRLoadingStatus,
    PRStatus,
    RemoteBranch,
    SessionFacts,
    Snapshot,
    WorktreeRef,
    WorktreeSummary,
    with_git,
    with_pr,
    with_session,
)
from devteam.core.pr_cache import PRStatusCache
from devteam.core.protocols import CodeReviewClient, RepositoryInspector, SessionMultiplexer
from devteam.core.status import classify, classify_header

logger = logging.getLogger(__name__)

EngineListener = Callable[[str, object], None]


@dataclass
class _Structure:
    """Result of the structural scan of one refresh."""

    refs: list[WorktreeRef] = field(default_factory=list)
    sessions: dict[str, SessionFacts] = field(default_factory=dict)
    workspaces: dict[str, str] = field(default_factory=dict)  # feature -> workspace path


def content_hash(items: tuple[WorktreeSummary, ...]) -> str:
    """Stable digest of an ordered item list."""
    payload = json.dumps([item.to_dict() for item in items], sort_keys=True, separators=(",", ":"))
    return hashlib.sha1(payload.encode("utf-8")).hexdigest()


class SnapshotEngine:  # pylint: disable=too-many-instance-attributes  # Owns all per-engine caches
    """Builds and versions worktree snapshots for one projects root."""

    def __init__(
        self,
        inspector: RepositoryInspector,
        multiplexer: SessionMultiplexer,
        code_review: CodeReviewClient,
        pr_cache: Optional[PRStatusCache] = None,
        *,
        git_refresh_interval_s: float = DEFAULT_GIT_REFRESH_INTERVAL_S,
        pr_refresh_interval_s: float = DEFAULT_PR_REFRESH_INTERVAL_S,
        git_concurrency: int = DEFAULT_GIT_CONCURRENCY,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._inspector = inspector
        self._multiplexer = multiplexer
        self._code_review = code_review
        self._pr_cache = pr_cache if pr_cache is not None else PRStatusCache(inspector)
        self._git_interval_s = max(git_refresh_interval_s, MIN_GIT_REFRESH_INTERVAL_S)
        self._pr_interval_s = pr_refresh_interval_s
        self._git_concurrency = git_concurrency
        self._clock = clock

        self._lock = asyncio.Lock()
        self._snapshot = Snapshot()
        self._last_hash: Optional[str] = None
        self._git_facts: dict[str, DiffFacts] = {}
        self._pr_facts: dict[str, PRStatus] = {}
        self._last_git_refresh: Optional[float] = None
        self._last_pr_refresh: Optional[float] = None
        self._listeners: set[EngineListener] = set()

    # ==================== Subscription ====================

    def subscribe(self, callback: EngineListener) -> None:
        """Register a listener for future changes (past changes are not replayed)."""
        self._listeners.add(callback)

    def unsubscribe(self, callback: EngineListener) -> None:
        self._listeners.discard(callback)

    def _emit(self, event: str, data: object) -> None:
        for callback in list(self._listeners):
            try:
                callback(event, data)
            except Exception as e:  # noqa: BLE001 - a faulty listener must not break refresh
                logger.error("Engine listener failed on %s: %s", event, e, exc_info=True)

    # ==================== State ====================

    def current_snapshot(self) -> Snapshot:
        return self._snapshot

    @property
    def version(self) -> int:
        return self._snapshot.version

    @property
    def is_refreshing(self) -> bool:
        return self._lock.locked()

    @property
    def pr_cache(self) -> PRStatusCache:
        return self._pr_cache

    def pr_map(self) -> dict[str, PRStatus]:
        """Last known PR status per worktree path."""
        return dict(self._pr_facts)

    # ==================== Refresh ====================

    async def refresh(self, force_git: bool = False) -> bool:
        """Run one full refresh and publish if content changed.

        Args:
            force_git: Bypass the git refresh interval.

        Returns:
            True when a new snapshot version was published.
        """
        async with self._lock:
            started = time.monotonic()
            structure = await self._collect_structure()
            if structure is None:
                return False
            await self._refresh_git(structure.refs, force=force_git)
            await self._refresh_prs(structure.refs)
            changed = self._publish(self._build_items(structure))
            logger.debug("Refresh done in %.2fs (changed=%s)", time.monotonic() - started, changed)
            return changed

    async def refresh_progressive(self) -> bool:
        """Publish from cached facts, then after git facts, then after PR facts.

        The second pass shows worktrees awaiting their first PR lookup as loading.
        """
        async with self._lock:
            structure = await self._collect_structure()
            if structure is None:
                return False
            changed = self._publish(self._build_items(structure))
            await self._refresh_git(structure.refs, force=False)
            pending = await self._prepare_prs(structure.refs)
            changed = self._publish(self._build_items(structure)) or changed
            await self._fetch_prs(pending)
            changed = self._publish(self._build_items(structure)) or changed
            return changed

    async def _collect_structure(self) -> Optional[_Structure]:
        try:
            projects = await self._inspector.discover_projects()
        except DevTeamError as e:
            logger.error("Cannot read projects, keeping snapshot v%d: %s", self._snapshot.version, e)
            self._emit("error", e)
            return None

        structure = _Structure()
        listings = await asyncio.gather(*(self._inspector.list_worktrees(p) for p in projects))
        for refs in listings:
            structure.refs.extend(refs)

        for feature in sorted({ref.feature for ref in structure.refs}):
            if self._inspector.has_workspace(feature):
                structure.workspaces[feature] = self._inspector.workspace_path(feature)

        names = [self._multiplexer.session_name(ref.project, ref.feature) for ref in structure.refs]
        names += [self._multiplexer.session_name(WORKSPACE_PROJECT, f) for f in structure.workspaces]
        structure.sessions = await self._collect_sessions(names)
        return structure

    async def _collect_sessions(self, names: list[str]) -> dict[str, SessionFacts]:
        live = await self._multiplexer.list_sessions()
        attached = [name for name in dict.fromkeys(names) if name in live]
        tools = await self._multiplexer.detect_session_tools() if attached else {}

        async def _facts(name: str) -> SessionFacts:
            tool = tools.get(name, AITool.NONE)
            if tool == AITool.NONE:
                return SessionFacts(attached=True, ai_tool=tool, ai_status=AIStatus.NOT_RUNNING)
            text = await self._multiplexer.capture_pane(name)
            return SessionFacts(attached=True, ai_tool=tool, ai_status=ai_activity.detect(text, tool))

        results = await map_limit(attached, self._git_concurrency, _facts)
        sessions: dict[str, SessionFacts] = {}
        for name, facts in zip(attached, results):
            sessions[name] = facts if facts is not None else SessionFacts(attached=True)
        return sessions

    def _due(self, last: Optional[float], interval: float) -> bool:
        return last is None or self._clock() - last >= interval

    async def _refresh_git(self, refs: list[WorktreeRef], force: bool) -> None:
        due = force or self._due(self._last_git_refresh, self._git_interval_s)
        # New worktrees get facts right away even between scheduled refreshes.
        targets = refs if due else [ref for ref in refs if ref.path not in self._git_facts]
        current = {ref.path for ref in refs}
        for path in list(self._git_facts):
            if path not in current:
                del self._git_facts[path]
        if not targets:
            return

        results = await map_limit(targets, self._git_concurrency, lambda ref: self._inspector.get_diff_facts(ref.path))
        for ref, facts in zip(targets, results):
            self._git_facts[ref.path] = facts if facts is not None else DiffFacts()
        if due:
            self._last_git_refresh = self._clock()
        logger.debug("Git facts refreshed for %d worktrees", len(targets))

    async def _refresh_prs(self, refs: list[WorktreeRef]) -> None:
        await self._fetch_prs(await self._prepare_prs(refs))

    async def _prepare_prs(self, refs: list[WorktreeRef]) -> dict[str, list[WorktreeRef]]:
        """Serve valid cache entries and mark first lookups as loading.

        Returns the worktrees that still need a `gh` lookup, grouped by project.
        """
        current = {ref.path for ref in refs}
        for path in list(self._pr_facts):
            if path not in current:
                del self._pr_facts[path]

        due = self._due(self._last_pr_refresh, self._pr_interval_s)
        targets = refs if due else [ref for ref in refs if ref.path not in self._pr_facts]
        if not targets:
            return {}
        if due:
            self._last_pr_refresh = self._clock()
            await self._pr_cache.cleanup()

        cached = await self._pr_cache.get_many([ref.path for ref in targets])
        by_project: dict[str, list[WorktreeRef]] = {}
        for ref in targets:
            if ref.path in cached:
                self._pr_facts[ref.path] = cached[ref.path]
            elif not ref.branch:
                self._pr_facts[ref.path] = PRStatus.no_pr()
            else:
                previous = self._pr_facts.get(ref.path)
                # Rows with a known answer keep it until the lookup replaces it.
                if previous is None or previous.loading_status in (PRLoadingStatus.NOT_CHECKED, PRLoadingStatus.ERROR):
                    self._pr_facts[ref.path] = PRStatus.loading()
                by_project.setdefault(ref.project, []).append(ref)
        return by_project

    async def _fetch_prs(self, by_project: dict[str, list[WorktreeRef]]) -> None:
        for project, group in by_project.items():
            await self._fetch_project_prs(project, group)

    async def _fetch_project_prs(self, project: str, group: list[WorktreeRef]) -> None:
        branches = sorted({ref.branch for ref in group})
        try:
            found = await self._code_review.list_pull_requests(self._inspector.project_path(project), branches)
        except CodeReviewError as e:
            logger.warning("PR lookup failed for %s: %s", project, e)
            for ref in group:
                self._pr_facts[ref.path] = PRStatus.error()
            return

        fetched = {ref.path: found.get(ref.branch) or PRStatus.no_pr() for ref in group}
        self._pr_facts.update(fetched)
        await self._pr_cache.set_many(fetched)

    # ==================== Snapshot building ====================

    def _commit_ts(self, ref: WorktreeRef) -> int:
        """Listing timestamp, falling back to the last git-facts read."""
        return ref.last_commit_ts or self._git_facts.get(ref.path, DiffFacts()).last_commit_ts

    def _row(self, ref: WorktreeRef, sessions: dict[str, SessionFacts], **flags: object) -> WorktreeSummary:
        name = self._multiplexer.session_name(ref.project, ref.feature)
        session = sessions.get(name, SessionFacts())
        git = self._git_facts.get(ref.path, DiffFacts())
        pr = self._pr_facts.get(ref.path, PRStatus.not_checked())
        row = WorktreeSummary(
            project=ref.project, feature=ref.feature, path=ref.path, branch=ref.branch, session_name=name
        )
        row = with_pr(with_git(with_session(row, session), git), pr)
        label = classify(session, git, pr)
        return replace(row, last_commit_ts=self._commit_ts(ref), status_label=label, **flags)  # type: ignore[arg-type]

    def _header(
        self, feature: str, path: str, last_commit_ts: int, sessions: dict[str, SessionFacts]
    ) -> WorktreeSummary:
        name = self._multiplexer.session_name(WORKSPACE_PROJECT, feature)
        session = sessions.get(name, SessionFacts())
        row = WorktreeSummary(
            project=WORKSPACE_PROJECT,
            feature=feature,
            path=path,
            branch="",
            session_name=name,
            last_commit_ts=last_commit_ts,
            is_workspace=True,
            is_workspace_header=True,
        )
        return replace(with_session(row, session), status_label=classify_header(session))

    def _build_items(self, structure: _Structure) -> tuple[WorktreeSummary, ...]:
        groups: dict[str, list[WorktreeRef]] = {}
        for ref in structure.refs:
            groups.setdefault(ref.feature, []).append(ref)

        def _group_ts(feature: str) -> int:
            return max((self._commit_ts(r) for r in groups[feature]), default=0)

        ordered = sorted(groups, key=lambda f: (-_group_ts(f), f))
        items: list[WorktreeSummary] = []
        for feature in ordered:
            members = sorted(groups[feature], key=lambda r: (r.project, r.path))
            workspace = structure.workspaces.get(feature)
            if workspace is None:
                items.extend(self._row(ref, structure.sessions) for ref in members)
                continue
            items.append(self._header(feature, workspace, _group_ts(feature), structure.sessions))
            items.extend(
                self._row(ref, structure.sessions, is_workspace_child=True, parent_feature=feature) for ref in members
            )
        return tuple(items)

    def _publish(self, items: tuple[WorktreeSummary, ...]) -> bool:
        digest = content_hash(items)
        if digest == self._last_hash:
            return False
        self._last_hash = digest
        self._snapshot = Snapshot(version=self._snapshot.version + 1, items=items)
        logger.info("Snapshot v%d: %d items", self._snapshot.version, len(items))
        self._emit("snapshot", self._snapshot)
        return True

    # ==================== Operations ====================

    async def create_feature(self, project: str, name: str) -> OperationResult:
        """Create a worktree on a fresh feature branch and refresh."""
        feature = name.strip()
        if not feature or "/" in feature or any(c.isspace() for c in feature):
            return OperationResult(success=False, error=f"Invalid feature name: {name!r}")
        try:
            path = await self._inspector.create_worktree(project, feature)
            await self._inspector.setup_worktree_environment(project, path)
        except DevTeamError as e:
            logger.error("Failed to create %s/%s: %s", project, feature, e)
            return OperationResult(success=False, error=str(e))
        await self.refresh(force_git=True)
        return OperationResult(success=True, path=path)

    async def create_from_branch(self, project: str, remote_branch: str, local_name: str) -> OperationResult:
        """Create a worktree from an existing remote branch and refresh."""
        feature = local_name.strip()
        if not feature or "/" in feature:
            return OperationResult(success=False, error=f"Invalid worktree name: {local_name!r}")
        try:
            path = await self._inspector.create_worktree_from_remote(project, remote_branch, feature)
            await self._inspector.setup_worktree_environment(project, path)
        except DevTeamError as e:
            logger.error("Failed to create %s/%s from %s: %s", project, feature, remote_branch, e)
            return OperationResult(success=False, error=str(e))
        await self.refresh(force_git=True)
        return OperationResult(success=True, path=path)

    async def archive_feature(self, project: str, path: str, feature: str) -> OperationResult:
        """Kill the worktree's sessions, move it to the archive and refresh."""
        main = self._multiplexer.session_name(project, feature)
        for name in (main, f"{main}{SHELL_SESSION_SUFFIX}", f"{main}{RUN_SESSION_SUFFIX}"):
            await self._multiplexer.kill_session(name)
        try:
            archived = await self._inspector.archive_worktree(project, path, feature)
        except DevTeamError as e:
            logger.error("Failed to archive %s: %s", path, e)
            return OperationResult(success=False, error=str(e))
        await self._inspector.prune_worktrees(project)
        await self._pr_cache.invalidate(path)
        self._git_facts.pop(path, None)
        self._pr_facts.pop(path, None)
        await self.refresh(force_git=True)
        return OperationResult(success=True, path=archived)

    async def list_remote_branches(self, project: str) -> list[RemoteBranch]:
        return await self._inspector.list_remote_branches(project)
