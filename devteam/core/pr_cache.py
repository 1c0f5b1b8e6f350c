"""PR status cache keyed by worktree path.

An entry stays valid only while the worktree's commit fingerprint matches the
one recorded when the entry was written:

- local HEAD hash
- remote-tracking hash of the current branch, compared only when one was
  recorded (a branch that was never pushed validates on the local hash alone)

A PR can also change on GitHub without any local commit (merged, base branch
moved, checks re-run), so every entry expires after a lifetime chosen by its
state; see `PRCacheTTL`. Transient states (not checked, loading, error) are
never stored.

Entries optionally persist to a JSON file so a restarted engine can show PR
state before the first `gh` round trip completes.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Optional

from devteam.constants import (
    DEFAULT_GIT_CONCURRENCY,
    DEFAULT_PR_CLOSED_TTL_S,
    DEFAULT_PR_FAILING_TTL_S,
    DEFAULT_PR_MERGED_TTL_S,
    DEFAULT_PR_NO_PR_TTL_S,
    DEFAULT_PR_OPEN_TTL_S,
    DEFAULT_PR_PASSING_TTL_S,
    DEFAULT_PR_PENDING_TTL_S,
    DEFAULT_PR_UNKNOWN_TTL_S,
)
from devteam.core.concurrency import map_limit
from devteam.core.models import CacheEntry, ChecksStatus, PRLoadingStatus, PRState, PRStatus
from devteam.core.protocols import RepositoryInspector

logger = logging.getLogger(__name__)

_CACHE_FILE_VERSION = 1

_UNCACHEABLE = {PRLoadingStatus.NOT_CHECKED, PRLoadingStatus.LOADING, PRLoadingStatus.ERROR}


@dataclass(frozen=True)
class PRCacheTTL:
    """Entry lifetimes in seconds, by PR state."""

    pending_s: float = DEFAULT_PR_PENDING_TTL_S
    no_pr_s: float = DEFAULT_PR_NO_PR_TTL_S
    passing_s: float = DEFAULT_PR_PASSING_TTL_S
    failing_s: float = DEFAULT_PR_FAILING_TTL_S
    open_s: float = DEFAULT_PR_OPEN_TTL_S
    closed_s: float = DEFAULT_PR_CLOSED_TTL_S
    merged_s: float = DEFAULT_PR_MERGED_TTL_S
    unknown_s: float = DEFAULT_PR_UNKNOWN_TTL_S

    def for_status(self, pr: PRStatus) -> float:
        """Lifetime for one status; first match wins."""
        if pr.loading_status == PRLoadingStatus.NO_PR:
            return self.no_pr_s
        if pr.is_merged:
            return self.merged_s
        if pr.checks_failing:
            return self.failing_s
        if pr.checks_pending:
            return self.pending_s
        if pr.is_open and pr.checks == ChecksStatus.PASSING:
            return self.passing_s
        if pr.is_open:
            return self.open_s
        if pr.state == PRState.CLOSED:
            return self.closed_s
        return self.unknown_s


class PRStatusCache:
    """Fingerprint-validated PR status cache owned by a single engine."""

    def __init__(
        self,
        inspector: RepositoryInspector,
        persist_path: Optional[Path] = None,
        ttl: Optional[PRCacheTTL] = None,
        clock: Callable[[], float] = time.time,
        concurrency: int = DEFAULT_GIT_CONCURRENCY,
    ) -> None:
        self._inspector = inspector
        self._persist_path = persist_path
        self._ttl = ttl if ttl is not None else PRCacheTTL()
        self._clock = clock
        self._concurrency = concurrency
        self._entries: dict[str, CacheEntry] = {}
        if persist_path is not None:
            self._entries = self._load(persist_path)

    # ==================== Persistence ====================

    @staticmethod
    def _load(path: Path) -> dict[str, CacheEntry]:
        if not path.exists():
            return {}
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Ignoring unreadable PR cache %s: %s", path, e)
            return {}
        if not isinstance(raw, dict) or raw.get("version") != _CACHE_FILE_VERSION:
            logger.info("Discarding PR cache %s with unknown format", path)
            return {}

        entries: dict[str, CacheEntry] = {}
        for key, value in (raw.get("entries") or {}).items():
            if not isinstance(value, dict):
                continue
            try:
                entry = CacheEntry.from_dict(value)
            except ValueError as e:
                logger.debug("Skipping cache entry %s: %s", key, e)
                continue
            if entry.pr.loading_status not in _UNCACHEABLE and entry.local_commit_hash:
                entries[key] = entry
        logger.debug("Loaded %d PR cache entries from %s", len(entries), path)
        return entries

    def _write(self, payload: str) -> None:
        if self._persist_path is None:
            return
        self._persist_path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self._persist_path.parent, prefix=".pr-cache-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
            os.replace(tmp, self._persist_path)
        except OSError:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    async def _persist(self) -> None:
        if self._persist_path is None:
            return
        payload = json.dumps(
            {"version": _CACHE_FILE_VERSION, "entries": {k: v.to_dict() for k, v in self._entries.items()}},
            indent=2,
        )
        try:
            await asyncio.to_thread(self._write, payload)
        except OSError as e:
            logger.warning("Failed to persist PR cache to %s: %s", self._persist_path, e)

    # ==================== Validation ====================

    def _is_expired(self, entry: CacheEntry) -> bool:
        return self._clock() - entry.written_at > self._ttl.for_status(entry.pr)

    async def _fingerprint(self, path: str) -> tuple[Optional[str], Optional[str]]:
        local = await self._inspector.get_local_commit_hash(path)
        branch = await self._inspector.get_current_branch(path)
        remote = await self._inspector.get_remote_commit_hash(path, branch) if branch else None
        return local, remote

    async def _matches(self, path: str, entry: CacheEntry) -> bool:
        local = await self._inspector.get_local_commit_hash(path)
        if not local or local != entry.local_commit_hash:
            return False
        if entry.remote_commit_hash is None:
            return True
        branch = await self._inspector.get_current_branch(path)
        remote = await self._inspector.get_remote_commit_hash(path, branch) if branch else None
        return remote == entry.remote_commit_hash

    async def _lookup(self, path: str) -> tuple[Optional[PRStatus], bool]:
        """Validate one entry. Returns (status, whether an entry was dropped)."""
        entry = self._entries.get(path)
        if entry is None:
            return None, False
        if not self._is_expired(entry) and await self._matches(path, entry):
            return entry.pr, False
        # Only drop the entry we validated; a concurrent set may have replaced it.
        if self._entries.get(path) is entry:
            del self._entries[path]
            return None, True
        return None, False

    async def _entry_for(self, path: str, pr: PRStatus) -> Optional[CacheEntry]:
        local, remote = await self._fingerprint(path)
        if not local:
            logger.debug("Not caching PR status for %s: HEAD unreadable", path)
            return None
        return CacheEntry(pr=pr, local_commit_hash=local, remote_commit_hash=remote, written_at=self._clock())

    # ==================== Public API ====================

    async def get(self, path: str) -> Optional[PRStatus]:
        """Return the cached status, or None when absent, expired or stale."""
        pr, dropped = await self._lookup(path)
        if dropped:
            await self._persist()
        return pr

    async def get_many(self, paths: list[str]) -> dict[str, PRStatus]:
        """Validate several entries with bounded parallelism and return the valid ones."""
        results = await map_limit(paths, self._concurrency, self._lookup)
        found: dict[str, PRStatus] = {}
        dropped = False
        for path, result in zip(paths, results):
            if result is None:
                continue
            pr, was_dropped = result
            dropped = dropped or was_dropped
            if pr is not None:
                found[path] = pr
        if dropped:
            await self._persist()
        return found

    async def set(self, path: str, pr: PRStatus) -> None:
        """Store a completed lookup bound to the worktree's current fingerprint."""
        await self.set_many({path: pr})

    async def set_many(self, statuses: dict[str, PRStatus]) -> None:
        """Store several completed lookups, writing the cache file once."""
        items = [(path, pr) for path, pr in statuses.items() if pr.loading_status not in _UNCACHEABLE]
        if not items:
            return
        entries = await map_limit(items, self._concurrency, lambda item: self._entry_for(*item))
        stored = 0
        for (path, _), entry in zip(items, entries):
            if entry is not None:
                self._entries[path] = entry
                stored += 1
        if stored:
            await self._persist()

    async def is_valid(self, path: str) -> bool:
        return await self.get(path) is not None

    async def invalidate(self, path: str) -> None:
        if self._entries.pop(path, None) is not None:
            await self._persist()

    async def invalidate_many(self, paths: Iterable[str]) -> None:
        removed = [p for p in paths if self._entries.pop(p, None) is not None]
        if removed:
            await self._persist()

    async def clear(self) -> None:
        self._entries.clear()
        await self._persist()

    def cached_paths(self) -> list[str]:
        return sorted(self._entries)

    async def cleanup(self) -> int:
        """Drop expired entries and entries whose worktree no longer exists."""
        stale = [p for p, e in self._entries.items() if self._is_expired(e) or not os.path.isdir(p)]
        for path in stale:
            del self._entries[path]
        if stale:
            await self._persist()
            logger.debug("PR cache cleanup removed %d entries", len(stale))
        return len(stale)

    def stats(self) -> dict[str, int]:
        counts: dict[str, int] = {"total": len(self._entries)}
        for entry in self._entries.values():
            key = entry.pr.loading_status.value
            counts[key] = counts.get(key, 0) + 1
        return counts
