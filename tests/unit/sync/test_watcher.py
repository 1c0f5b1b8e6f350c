"""Tests for the worktree filesystem watcher."""

import asyncio
from contextlib import suppress

import pytest

from devteam.sync.watcher import WorktreeWatcher, is_relevant, watch_roots


@pytest.mark.unit
@pytest.mark.parametrize(
    "path,relevant",
    [
        ("/p/app-branches/f1/src/main.py", True),
        ("/p/app-branches/f1/.main.py.swp", False),
        ("/p/app-branches/f1/notes.txt~", False),
        ("/p/app-branches/f1/node_modules/x/index.js", False),
        ("/p/app-branches/f1/.venv/lib/site.py", False),
        ("/p/app/.git/HEAD", True),
        ("/p/app/.git/index", True),
        ("/p/app/.git/refs/heads/feature/f1", True),
        ("/p/app/.git/objects/ab/cdef", False),
        ("/p/app/.git/index.lock", False),
    ],
)
def test_is_relevant(path, relevant):
    assert is_relevant(path) is relevant


@pytest.mark.unit
def test_watch_roots_lists_branch_dirs_and_workspaces(tmp_path):
    for name in ("app", "app-branches", "api-branches", "app-archived", "workspaces"):
        (tmp_path / name).mkdir()
    (tmp_path / "stray-branches").write_text("a file, not a dir")

    assert watch_roots(str(tmp_path)) == [
        str(tmp_path / "api-branches"),
        str(tmp_path / "app-branches"),
        str(tmp_path / "workspaces"),
    ]


@pytest.mark.unit
def test_watch_roots_missing_dir(tmp_path):
    assert watch_roots(str(tmp_path / "nope")) == []


async def _wait_for(predicate, timeout=3.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            return False
        await asyncio.sleep(0.05)
    return True


async def _stop(task):
    task.cancel()
    with suppress(asyncio.CancelledError):
        await task


@pytest.mark.integration
@pytest.mark.asyncio
async def test_burst_of_changes_yields_one_refresh(tmp_path):
    worktree = tmp_path / "app-branches" / "f1"
    worktree.mkdir(parents=True)
    calls = []
    watcher = WorktreeWatcher(str(tmp_path), calls.append, debounce_s=0.3)
    task = asyncio.create_task(watcher.run())
    await asyncio.sleep(0.3)
    try:
        for i in range(5):
            (worktree / f"file{i}.py").write_text("x = 1\n")

        assert await _wait_for(lambda: calls)
        await asyncio.sleep(0.5)
        assert len(calls) == 1
        assert calls[0].startswith("fs:")
    finally:
        await _stop(task)


@pytest.mark.integration
@pytest.mark.asyncio
async def test_new_branches_dir_is_picked_up(tmp_path):
    calls = []
    watcher = WorktreeWatcher(str(tmp_path), calls.append, debounce_s=0.05)
    task = asyncio.create_task(watcher.run())
    await asyncio.sleep(0.3)
    try:
        (tmp_path / "api-branches").mkdir()
        assert await _wait_for(lambda: len(calls) >= 1)

        (tmp_path / "api-branches" / "f2").mkdir()
        assert await _wait_for(lambda: len(calls) >= 2)
    finally:
        await _stop(task)


@pytest.mark.integration
@pytest.mark.asyncio
async def test_ignored_churn_does_not_refresh(tmp_path):
    deps = tmp_path / "app-branches" / "f1" / "node_modules"
    deps.mkdir(parents=True)
    calls = []
    watcher = WorktreeWatcher(str(tmp_path), calls.append, debounce_s=0.05)
    task = asyncio.create_task(watcher.run())
    await asyncio.sleep(0.3)
    try:
        (deps / "pkg.js").write_text("module.exports = 1\n")
        await asyncio.sleep(0.5)
        assert calls == []
    finally:
        await _stop(task)


@pytest.mark.integration
@pytest.mark.asyncio
async def test_missing_projects_dir_idles(tmp_path):
    watcher = WorktreeWatcher(str(tmp_path / "missing"), lambda reason: None)
    task = asyncio.create_task(watcher.run())
    await asyncio.sleep(0.1)

    assert not task.done()
    await _stop(task)
