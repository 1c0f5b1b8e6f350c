"""Unit tests for SnapshotEngine."""

from dataclasses import replace
from unittest.mock import patch

import pytest

from devteam.core.engine import SnapshotEngine, content_hash
from devteam.core.errors import InspectorError
from devteam.core.models import (
    AIStatus,
    AITool,
    ChecksStatus,
    DiffFacts,
    Mergeable,
    PRLoadingStatus,
    PRState,
    PRStatus,
    RemoteBranch,
    WorktreeSummary,
)
from devteam.core.pr_cache import PRCacheTTL, PRStatusCache

OPEN_PASSING = PRStatus(
    loading_status=PRLoadingStatus.EXISTS,
    number=42,
    state=PRState.OPEN,
    checks=ChecksStatus.PASSING,
    mergeable=Mergeable.MERGEABLE,
)


class Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture(autouse=True)
def worktree_dirs_exist():
    """Fake worktree paths are not on disk; keep PR cache cleanup from dropping them."""
    with patch("devteam.core.pr_cache.os.path.isdir", return_value=True):
        yield


def make_engine(inspector, multiplexer, code_review, **kwargs) -> SnapshotEngine:
    kwargs.setdefault("clock", Clock())
    return SnapshotEngine(inspector, multiplexer, code_review, **kwargs)


def rows_by_feature(snapshot):
    return {item.feature: item for item in snapshot.items if not item.is_workspace_header}


# ==================== Publishing ====================


@pytest.mark.unit
@pytest.mark.asyncio
async def test_standalone_rows_get_labels_and_commit_order(inspector, multiplexer, code_review):
    inspector.add("p1", "f1", has_changes=True, last_commit_ts=100)
    inspector.add("p1", "f2", last_commit_ts=200)
    code_review.prs["/projects/p1"] = {"feature/f2": OPEN_PASSING}
    engine = make_engine(inspector, multiplexer, code_review)

    assert await engine.refresh() is True

    snapshot = engine.current_snapshot()
    assert snapshot.version == 1
    assert [item.feature for item in snapshot.items] == ["f2", "f1"]
    rows = rows_by_feature(snapshot)
    assert rows["f1"].status_label == "uncommitted"
    assert rows["f1"].pr == PRStatus.no_pr()
    assert rows["f2"].status_label == "pr-passed"
    assert rows["f2"].pr.number == 42
    assert not any(item.is_workspace_child for item in snapshot.items)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_unchanged_refresh_keeps_version(inspector, multiplexer, code_review):
    inspector.add("p1", "f1", ahead_count=1)
    engine = make_engine(inspector, multiplexer, code_review)
    events = []
    engine.subscribe(lambda event, data: events.append((event, data)))

    assert await engine.refresh() is True
    assert await engine.refresh(force_git=True) is False

    assert engine.version == 1
    assert [e for e, _ in events] == ["snapshot"]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_versions_increase_by_one_per_change(inspector, multiplexer, code_review):
    inspector.add("p1", "f1")
    engine = make_engine(inspector, multiplexer, code_review)
    seen = []
    engine.subscribe(lambda event, data: seen.append(data.version))

    await engine.refresh()
    inspector.add("p1", "f2")
    await engine.refresh(force_git=True)
    inspector.diff["/projects/p1-branches/f2"] = DiffFacts(has_changes=True)
    await engine.refresh(force_git=True)

    assert seen == [1, 2, 3]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_late_subscriber_is_not_replayed(inspector, multiplexer, code_review):
    inspector.add("p1", "f1")
    engine = make_engine(inspector, multiplexer, code_review)
    await engine.refresh()

    events = []
    engine.subscribe(lambda event, data: events.append(event))
    await engine.refresh()

    assert events == []


@pytest.mark.unit
@pytest.mark.asyncio
async def test_unsubscribe_stops_delivery(inspector, multiplexer, code_review):
    inspector.add("p1", "f1")
    engine = make_engine(inspector, multiplexer, code_review)
    events = []

    def listener(event, data):
        events.append(event)

    engine.subscribe(listener)
    engine.unsubscribe(listener)
    await engine.refresh()

    assert events == []


@pytest.mark.unit
@pytest.mark.asyncio
async def test_failing_listener_does_not_block_others(inspector, multiplexer, code_review):
    inspector.add("p1", "f1")
    engine = make_engine(inspector, multiplexer, code_review)
    events = []

    def broken(event, data):
        raise RuntimeError("boom")

    engine.subscribe(broken)
    engine.subscribe(lambda event, data: events.append(event))
    await engine.refresh()

    assert events == ["snapshot"]


@pytest.mark.unit
def test_content_hash_is_stable_and_order_sensitive():
    a =WorktreeSummary(project="p", feature="a", path="/a", branch="a", session_name="dev-p-a")
    b = WorktreeSummary(project="p", feature="b", path="/b", branch="b", session_name="dev-p-b")
    assert content_hash((a, b)) == content_hash((a, b))
    assert content_hash((a, b)) != content_hash((b, a))


# ==================== Structure ====================


@pytest.mark.unit
@pytest.mark.asyncio
async def test_workspace_header_precedes_its_children(inspector, multiplexer, code_review):
    inspector.add("web", "auth", last_commit_ts=50)
    inspector.add("api", "auth", last_commit_ts=300)
    inspector.add("api", "solo", last_commit_ts=100)
    inspector.workspaces.add("auth")
    engine = make_engine(inspector, multiplexer, code_review)

    await engine.refresh()

    items = engine.current_snapshot().items
    assert [(i.project, i.feature) for i in items] == [
        ("workspace", "auth"),
        ("api", "auth"),
        ("web", "auth"),
        ("api", "solo"),
    ]
    header = items[0]
    assert header.is_workspace_header and header.is_workspace
    assert header.path == "/projects/workspaces/auth"
    assert header.session_name == "dev-workspace-auth"
    assert header.last_commit_ts == 300
    assert header.pr is None
    for child in items[1:3]:
        assert child.is_workspace_child
        assert child.parent_feature == "auth"
    assert not items[3].is_workspace_child
    assert items[3].parent_feature is None


@pytest.mark.unit
@pytest.mark.asyncio
async def test_equal_commit_times_order_by_feature(inspector, multiplexer, code_review):
    inspector.add("p1", "zeta", last_commit_ts=10)
    inspector.add("p1", "alpha", last_commit_ts=10)
    engine = make_engine(inspector, multiplexer, code_review)

    await engine.refresh()

    assert [i.feature for i in engine.current_snapshot().items] == ["alpha", "zeta"]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_session_activity_drives_label(inspector, multiplexer, code_review):
    inspector.add("p1", "f1", has_changes=True)
    multiplexer.sessions.add("dev-p1-f1")
    multiplexer.tools["dev-p1-f1"] = AITool.CLAUDE
    multiplexer.panes["dev-p1-f1"] = "✻ Thinking… (esc to interrupt)"
    engine = make_engine(inspector, multiplexer, code_review)

    await engine.refresh()

    row = engine.current_snapshot().items[0]
    assert row.attached is True
    assert row.ai_tool == AITool.CLAUDE
    assert row.ai_status == AIStatus.WORKING
    assert row.status_label == "working"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_plain_shell_session_is_attached_without_ai(inspector, multiplexer, code_review):
    inspector.add("p1", "f1")
    multiplexer.sessions.add("dev-p1-f1")
    engine = make_engine(inspector, multiplexer, code_review)

    await engine.refresh()

    row = engine.current_snapshot().items[0]
    assert row.attached is True
    assert row.ai_tool == AITool.NONE
    assert row.ai_status == AIStatus.NOT_RUNNING


@pytest.mark.unit
@pytest.mark.asyncio
async def test_structure_failure_emits_error_and_keeps_snapshot(inspector, multiplexer, code_review):
    inspector.add("p1", "f1")
    engine = make_engine(inspector, multiplexer, code_review)
    await engine.refresh()
    before = engine.current_snapshot()

    events = []
    engine.subscribe(lambda event, data: events.append((event, data)))
    inspector.fail_discovery = True

    assert await engine.refresh() is False
    assert engine.current_snapshot() is before
    assert len(events) == 1
    assert events[0][0] == "error"
    assert isinstance(events[0][1], InspectorError)


# ==================== Git and PR facts ====================


@pytest.mark.unit
@pytest.mark.asyncio
async def test_git_facts_are_rate_limited(inspector, multiplexer, code_review):
    clock = Clock()
    inspector.add("p1", "f1")
    engine = make_engine(inspector, multiplexer, code_review, clock=clock, git_refresh_interval_s=15)

    await engine.refresh()
    assert inspector.diff_calls == ["/projects/p1-branches/f1"]

    clock.now = 5
    await engine.refresh()
    assert len(inspector.diff_calls) == 1

    await engine.refresh(force_git=True)
    assert len(inspector.diff_calls) == 2

    clock.now = 30
    await engine.refresh()
    assert len(inspector.diff_calls) == 3


@pytest.mark.unit
@pytest.mark.asyncio
async def test_new_worktree_gets_git_facts_between_intervals(inspector, multiplexer, code_review):
    clock = Clock()
    inspector.add("p1", "f1")
    engine = make_engine(inspector, multiplexer, code_review, clock=clock)
    await engine.refresh()

    clock.now = 1
    inspector.add("p1", "f2", has_changes=True)
    await engine.refresh()

    assert inspector.diff_calls == ["/projects/p1-branches/f1", "/projects/p1-branches/f2"]
    assert rows_by_feature(engine.current_snapshot())["f2"].status_label == "uncommitted"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_gh_failure_only_affects_that_project(inspector, multiplexer, code_review):
    inspector.add("p1", "f1")
    inspector.add("p2", "f2")
    code_review.failing.add("/projects/p1")
    code_review.prs["/projects/p2"] = {"feature/f2": OPEN_PASSING}
    engine = make_engine(inspector, multiplexer, code_review)

    await engine.refresh()

    rows = rows_by_feature(engine.current_snapshot())
    assert rows["f1"].pr.loading_status == PRLoadingStatus.ERROR
    assert rows["f2"].pr == OPEN_PASSING
    assert engine.pr_map()["/projects/p2-branches/f2"] == OPEN_PASSING


@pytest.mark.unit
@pytest.mark.asyncio
async def test_pr_lookups_batch_per_project(inspector, multiplexer, code_review):
    inspector.add("p1", "a")
    inspector.add("p1", "b")
    engine = make_engine(inspector, multiplexer, code_review)

    await engine.refresh()

    assert code_review.calls == [("/projects/p1", ["feature/a", "feature/b"])]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_cached_pr_status_skips_lookup(inspector, multiplexer, code_review):
    clock = Clock()
    inspector.add("p1", "f1")
    code_review.prs["/projects/p1"] = {"feature/f1": OPEN_PASSING}
    engine = make_engine(inspector, multiplexer, code_review, clock=clock, pr_refresh_interval_s=5)

    await engine.refresh()
    clock.now = 10
    await engine.refresh()

    assert len(code_review.calls) == 1
    assert rows_by_feature(engine.current_snapshot())["f1"].pr == OPEN_PASSING


@pytest.mark.unit
@pytest.mark.asyncio
async def test_detached_head_gets_no_pr_without_lookup(inspector, multiplexer, code_review):
    inspector.add("p1", "f1", branch="")
    engine = make_engine(inspector, multiplexer, code_review)

    await engine.refresh()

    assert code_review.calls == []
    assert engine.current_snapshot().items[0].pr == PRStatus.no_pr()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_progressive_refresh_publishes_each_phase(inspector, multiplexer, code_review):
    inspector.add("p1", "f1", has_changes=True)
    code_review.prs["/projects/p1"] = {"feature/f1": OPEN_PASSING}
    engine = make_engine(inspector, multiplexer, code_review)
    snapshots = []
    engine.subscribe(lambda event, data: snapshots.append(data))

    assert await engine.refresh_progressive() is True

    assert [s.version for s in snapshots] == [1, 2, 3]
    first, second, third = (s.items[0] for s in snapshots)
    assert first.pr == PRStatus.not_checked()
    assert first.has_changes is False
    assert second.has_changes is True
    assert second.pr == PRStatus.loading()
    assert third.pr == OPEN_PASSING


@pytest.mark.unit
@pytest.mark.asyncio
async def test_first_progressive_pass_orders_by_listing_commit_time(inspector, multiplexer, code_review):
    inspector.add("p1", "aaa", last_commit_ts=100)
    inspector.add("p1", "zzz", last_commit_ts=200)
    engine = make_engine(inspector, multiplexer, code_review)
    orders = []
    engine.subscribe(lambda event, data: orders.append([i.feature for i in data.items]))

    await engine.refresh_progressive()

    assert orders[0] == ["zzz", "aaa"]
    assert all(order == ["zzz", "aaa"] for order in orders)
    assert engine.current_snapshot().items[0].last_commit_ts == 200


@pytest.mark.unit
@pytest.mark.asyncio
async def test_new_commit_reorders_before_next_git_interval(inspector, multiplexer, code_review):
    inspector.add("p1", "aaa", last_commit_ts=100)
    inspector.add("p1", "zzz", last_commit_ts=200)
    engine = make_engine(inspector, multiplexer, code_review, git_refresh_interval_s=60)
    await engine.refresh()

    inspector.worktrees["p1"][0] = replace(inspector.worktrees["p1"][0], last_commit_ts=300)
    await engine.refresh()

    assert [i.feature for i in engine.current_snapshot().items] == ["aaa", "zzz"]
    assert inspector.diff_calls.count("/projects/p1-branches/aaa") == 1


@pytest.mark.unit
@pytest.mark.asyncio
async def test_pr_merged_without_new_commit_shows_after_ttl(inspector, multiplexer, code_review):
    clock = Clock()
    inspector.add("p1", "f1")
    code_review.prs["/projects/p1"] = {"feature/f1": OPEN_PASSING}
    cache = PRStatusCache(inspector, ttl=PRCacheTTL(passing_s=30), clock=clock)
    engine = make_engine(inspector, multiplexer, code_review, pr_cache=cache, clock=clock)

    await engine.refresh()
    assert rows_by_feature(engine.current_snapshot())["f1"].status_label == "pr-passed"

    code_review.prs["/projects/p1"] = {"feature/f1": replace(OPEN_PASSING, state=PRState.MERGED)}
    clock.now = 10
    await engine.refresh()
    assert rows_by_feature(engine.current_snapshot())["f1"].status_label == "pr-passed"

    clock.now = 3600
    await engine.refresh()
    assert rows_by_feature(engine.current_snapshot())["f1"].status_label == "merged"
    assert len(code_review.calls) == 2


@pytest.mark.unit
@pytest.mark.asyncio
async def test_known_pr_is_not_reset_to_loading(inspector, multiplexer, code_review):
    clock = Clock()
    inspector.add("p1", "f1")
    code_review.prs["/projects/p1"] = {"feature/f1": OPEN_PASSING}
    engine = make_engine(inspector, multiplexer, code_review, clock=clock)
    await engine.refresh()

    await engine.pr_cache.clear()
    clock.now = 10
    pending = await engine._prepare_prs(await inspector.list_worktrees("p1"))

    assert list(pending) == ["p1"]
    assert engine.pr_map()["/projects/p1-branches/f1"] == OPEN_PASSING


# ==================== Operations ====================


@pytest.mark.unit
@pytest.mark.asyncio
async def test_create_feature_sets_up_and_publishes(inspector, multiplexer, code_review):
    engine = make_engine(inspector, multiplexer, code_review)

    result = await engine.create_feature("p1", "new-thing")

    assert result.success is True
    assert result.path == "/projects/p1-branches/new-thing"
    assert inspector.env_setup == [result.path]
    assert [i.feature for i in engine.current_snapshot().items] == ["new-thing"]


@pytest.mark.unit
@pytest.mark.asyncio
@pytest.mark.parametrize("name", ["", "   ", "a/b", "two words"])
async def test_create_feature_rejects_bad_names(inspector, multiplexer, code_review, name):
    engine = make_engine(inspector, multiplexer, code_review)

    result = await engine.create_feature("p1", name)

    assert result.success is False
    assert result.error
    assert engine.version == 0


@pytest.mark.unit
@pytest.mark.asyncio
async def test_create_feature_reports_inspector_failure(inspector, multiplexer, code_review):
    inspector.fail_create = "branch already exists"
    engine = make_engine(inspector, multiplexer, code_review)

    result = await engine.create_feature("p1", "dup")

    assert result.success is False
    assert result.error == "branch already exists"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_create_from_branch_uses_remote_branch(inspector, multiplexer, code_review):
    engine = make_engine(inspector, multiplexer, code_review)

    result = await engine.create_from_branch("p1", "origin/fix-login", "fix-login")

    assert result.success is True
    row = engine.current_snapshot().items[0]
    assert row.branch == "fix-login"
    assert row.feature == "fix-login"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_archive_kills_sessions_and_drops_row(inspector, multiplexer, code_review):
    ref = inspector.add("p1", "f1")
    inspector.add("p1", "f2")
    multiplexer.sessions.update({"dev-p1-f1", "dev-p1-f1-shell"})
    engine = make_engine(inspector, multiplexer, code_review)
    await engine.refresh()
    assert ref.path in engine.pr_cache.cached_paths()

    result = await engine.archive_feature("p1", ref.path, "f1")

    assert result.success is True
    assert "archived-" in result.path
    assert multiplexer.killed == ["dev-p1-f1", "dev-p1-f1-shell", "dev-p1-f1-run"]
    assert inspector.pruned == ["p1"]
    assert ref.path not in engine.pr_cache.cached_paths()
    assert ref.path not in engine.pr_map()
    assert [i.feature for i in engine.current_snapshot().items] == ["f2"]
    assert engine.version == 2


@pytest.mark.unit
@pytest.mark.asyncio
async def test_archive_unknown_worktree_fails(inspector, multiplexer, code_review):
    engine = make_engine(inspector, multiplexer, code_review)

    result = await engine.archive_feature("p1", "/projects/p1-branches/ghost", "ghost")

    assert result.success is False
    assert "not found" in result.error
    assert inspector.pruned == []


@pytest.mark.unit
@pytest.mark.asyncio
async def test_list_remote_branches_delegates(inspector, multiplexer, code_review):
    branch = RemoteBranch(name="origin/x", local_name="x", last_commit_ts=5)
    inspector.remote_branches["p1"] = [branch]
    engine = make_engine(inspector, multiplexer, code_review)

    assert await engine.list_remote_branches("p1") == [branch]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_engines_do_not_share_cache_state(inspector, multiplexer, code_review):
    inspector.add("p1", "f1")
    first = make_engine(inspector, multiplexer, code_review)
    second = make_engine(inspector, multiplexer, code_review)

    await first.refresh()

    assert first.pr_cache.cached_paths() == ["/projects/p1-branches/f1"]
    assert second.pr_cache.cached_paths() == []
    assert second.version == 0
