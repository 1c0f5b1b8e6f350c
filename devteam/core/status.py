"""Status label classification.

Rules are evaluated in order and the first match wins; AI activity on a live
session always dominates PR and git state. PR-derived rules only look at a PR
whose lookup completed (`loading_status == exists`).
"""

from __future__ import annotations

from typing import Optional

from devteam.core.models import AIStatus, ChecksStatus, DiffFacts, Mergeable, PRStatus, SessionFacts

WORKING = "working"
WAITING = "waiting"
CONFLICT = "conflict"
PR_FAILED = "pr-failed"
PR_PASSED = "pr-passed"
PR_CHECKING = "pr-checking"
MERGED = "merged"
UNCOMMITTED = "uncommitted"
UNPUSHED = "un-pushed"
READY = "ready"
NONE = ""


def classify(session: SessionFacts, git: Optional[DiffFacts], pr: Optional[PRStatus]) -> str:
    """Derive the single status label for a worktree row."""
    if session.attached and session.ai_status == AIStatus.WORKING:
        return WORKING
    if session.attached and session.ai_status == AIStatus.WAITING:
        return WAITING

    if pr is not None and pr.exists:
        if pr.has_conflicts:
            return CONFLICT
        if pr.checks_failing:
            return PR_FAILED
        if pr.is_open and pr.mergeable == Mergeable.MERGEABLE and pr.checks == ChecksStatus.PASSING:
            return PR_PASSED
        if pr.is_open and pr.number is not None and (pr.checks is None or pr.checks_pending):
            return PR_CHECKING
        if pr.is_merged and pr.number is not None:
            return MERGED

    if git is not None:
        if git.has_changes:
            return UNCOMMITTED
        if git.ahead_count > 0:
            return UNPUSHED

    if session.attached and session.ai_status == AIStatus.IDLE:
        return READY
    return NONE


def classify_header(session: SessionFacts) -> str:
    """Reduced classification for workspace header rows (session facts only)."""
    return classify(session, None, None)
