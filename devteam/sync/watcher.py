"""Filesystem watcher over the worktree roots.

Watches every `<project>-branches/` directory and `workspaces/` under the
projects root and requests an engine refresh once changes go quiet for the
debounce window. Editor temp files and bulky dependency trees are ignored.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from pathlib import Path
from typing import Callable

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from devteam.constants import BRANCHES_DIR_SUFFIX, DEFAULT_WATCH_DEBOUNCE_S, WORKSPACES_DIR

logger = logging.getLogger(__name__)

# Temp file suffixes to ignore
_IGNORED_SUFFIXES = {".swp", ".swx", ".tmp", ".bak", "~", ".lock"}

# Directories whose churn never changes worktree status
_IGNORED_DIRS = {"node_modules", ".venv", "venv", "__pycache__", "dist", "build", ".next", ".cache"}

# Drain timeout for the event queue (seconds)
_POLL_S = 0.1


def is_relevant(path: str) -> bool:
    """Check if a filesystem event path can change worktree status."""
    p = Path(path)
    name = p.name
    if any(name.endswith(suf) for suf in _IGNORED_SUFFIXES):
        return False
    if any(part in _IGNORED_DIRS for part in p.parts):
        return False
    # .git internals: only HEAD/index/refs moves matter.
    if ".git" in p.parts:
        return name in {"HEAD", "index", "ORIG_HEAD", "FETCH_HEAD"} or "refs" in p.parts
    return True


def watch_roots(projects_dir: str) -> list[str]:
    """Directories to watch: every `*-branches` dir plus `workspaces`."""
    try:
        entries = sorted(os.listdir(projects_dir))
    except OSError as e:
        logger.warning("Cannot list %s for watching: %s", projects_dir, e)
        return []
    roots = []
    for name in entries:
        full = os.path.join(projects_dir, name)
        if (name.endswith(BRANCHES_DIR_SUFFIX) or name == WORKSPACES_DIR) and os.path.isdir(full):
            roots.append(full)
    return roots


class _WorktreeHandler(FileSystemEventHandler):
    """Watchdog handler that forwards relevant events to the asyncio loop."""

    def __init__(self, loop: asyncio.AbstractEventLoop, queue: asyncio.Queue[str]) -> None:
        super().__init__()
        self._loop = loop
        self._queue = queue

    def _handle(self, event: FileSystemEvent) -> None:
        src = event.src_path
        if isinstance(src, bytes):
            src = os.fsdecode(src)
        if not is_relevant(src):
            return
        try:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, src)
        except RuntimeError:
            pass  # Loop closed

    def on_created(self, event: FileSystemEvent) -> None:
        self._handle(event)

    def on_modified(self, event: FileSystemEvent) -> None:
        self._handle(event)

    def on_deleted(self, event: FileSystemEvent) -> None:
        self._handle(event)

    def on_moved(self, event: FileSystemEvent) -> None:
        self._handle(event)


class WorktreeWatcher:
    """Debounces filesystem churn under the worktree roots into refresh requests."""

    def __init__(
        self,
        projects_dir: str,
        on_change: Callable[[str], None],
        debounce_s: float = DEFAULT_WATCH_DEBOUNCE_S,
    ) -> None:
        self._projects_dir = str(Path(projects_dir).expanduser())
        self._on_change = on_change
        self._debounce_s = debounce_s

    async def run(self) -> None:
        """Watch and emit debounced change notifications until cancelled."""
        if not os.path.isdir(self._projects_dir):
            logger.info("WorktreeWatcher: %s missing, watcher idle", self._projects_dir)
            await asyncio.Event().wait()
            return

        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[str] = asyncio.Queue()
        handler = _WorktreeHandler(loop, queue)

        observer = Observer()
        observer.daemon = True
        # The root itself (non-recursive) catches new -branches dirs and workspaces/.
        observer.schedule(handler, self._projects_dir, recursive=False)
        watched: set[str] = set()
        for root in watch_roots(self._projects_dir):
            observer.schedule(handler, root, recursive=True)
            watched.add(root)
            logger.debug("WorktreeWatcher: watching %s", root)
        observer.start()
        logger.info("WorktreeWatcher: started, watching %d root(s)", len(watched))

        last_event: float | None = None
        last_path = ""
        try:
            while True:
                try:
                    last_path = await asyncio.wait_for(queue.get(), timeout=_POLL_S)
                    last_event = time.monotonic()
                    continue
                except asyncio.TimeoutError:
                    pass

                if last_event is None or time.monotonic() - last_event < self._debounce_s:
                    continue
                last_event = None

                for root in watch_roots(self._projects_dir):
                    if root not in watched:
                        observer.schedule(handler, root, recursive=True)
                        watched.add(root)
                        logger.debug("WorktreeWatcher: watching new root %s", root)

                logger.debug("WorktreeWatcher: change settled (%s)", last_path)
                self._on_change(f"fs:{last_path}")
        finally:
            observer.stop()
            observer.join(timeout=2)
            logger.info("WorktreeWatcher: stopped")
