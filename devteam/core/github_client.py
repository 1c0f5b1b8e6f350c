"""Code-review client backed by the GitHub CLI (`gh`)."""

from __future__ import annotations

import logging
import time
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from devteam.constants import DEFAULT_COMMAND_TIMEOUT_S, PR_LIST_LIMIT
from devteam.core.command_runner import run_command
from devteam.core.errors import CodeReviewError, CommandError
from devteam.core.models import ChecksStatus, Mergeable, PRLoadingStatus, PRState, PRStatus

logger = logging.getLogger(__name__)

_PR_FIELDS = "number,state,headRefName,mergeable,statusCheckRollup,title,url"


class GhPullRequest(BaseModel):
    """One entry of `gh pr list --json` output."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    number: int
    state: str = ""
    head_ref_name: str = Field(default="", alias="headRefName")
    mergeable: Optional[str] = None
    status_check_rollup: Optional[list[dict[str, Any]]] = Field(default=None, alias="statusCheckRollup")
    title: Optional[str] = None
    url: Optional[str] = None


_PR_LIST_ADAPTER = TypeAdapter(list[GhPullRequest])


def parse_check_status(checks: Optional[list[dict[str, Any]]]) -> Optional[ChecksStatus]:
    """Collapse a status-check rollup: any failure wins, then any pending, then passing."""
    if not checks:
        return None
    has_failure = has_pending = has_success = False
    for check in checks:
        conclusion = str(check.get("conclusion") or check.get("state") or "").upper()
        if conclusion in ("SUCCESS", "PASS"):
            has_success = True
        elif conclusion in ("FAILURE", "ERROR"):
            has_failure = True
        else:
            has_pending = True
    if has_failure:
        return ChecksStatus.FAILING
    if has_pending:
        return ChecksStatus.PENDING
    if has_success:
        return ChecksStatus.PASSING
    return None


def to_pr_status(pr: GhPullRequest) -> PRStatus:
    state = pr.state.upper()
    mergeable = (pr.mergeable or "").upper()
    return PRStatus(
        loading_status=PRLoadingStatus.EXISTS,
        number=pr.number,
        state=PRState(state) if state in PRState.__members__ else None,
        checks=parse_check_status(pr.status_check_rollup),
        mergeable=Mergeable(mergeable) if mergeable in Mergeable.__members__ else None,
        title=pr.title,
        url=pr.url,
    )


class GitHubClient:
    """Batched PR lookups, one `gh pr list` call per repository."""

    def __init__(self, timeout: float = DEFAULT_COMMAND_TIMEOUT_S) -> None:
        self._timeout = timeout

    async def list_pull_requests(self, repo_path: str, branches: Optional[list[str]] = None) -> dict[str, PRStatus]:
        """Fetch PRs for a repository, optionally restricted to some head branches.

        Args:
            repo_path: Main checkout of the repository (gh resolves the remote from it).
            branches: Head branch names to look up; None lists all recent PRs.

        Returns:
            Mapping of head branch -> PRStatus. Branches without a PR are absent.

        Raises:
            CodeReviewError: gh failed, timed out or returned unparseable output.
        """
        args = ["gh", "pr", "list"]
        if branches:
            args += ["--search", " ".join(f"head:{b}" for b in branches)]
        args += ["--state", "all", "--json", _PR_FIELDS, "--limit", str(PR_LIST_LIMIT)]

        started = time.monotonic()
        try:
            result = await run_command(*args, cwd=repo_path, timeout=self._timeout)
        except CommandError as e:
            raise CodeReviewError(f"gh pr list failed in {repo_path}: {e}") from e
        if not result.ok:
            raise CodeReviewError(f"gh pr list failed in {repo_path}: {result.stderr.strip()}")

        try:
            prs = _PR_LIST_ADAPTER.validate_json(result.stdout or "[]")
        except ValidationError as e:
            raise CodeReviewError(f"Unexpected gh output in {repo_path}: {e}") from e

        wanted = set(branches) if branches else None
        by_branch: dict[str, PRStatus] = {}
        # gh lists newest first; keep the most recent PR per branch.
        for pr in prs:
            if not pr.head_ref_name or pr.head_ref_name in by_branch:
                continue
            if wanted is not None and pr.head_ref_name not in wanted:
                continue
            by_branch[pr.head_ref_name] = to_pr_status(pr)

        logger.debug(
            "gh pr list %s: %d branches -> %d PRs in %.2fs",
            repo_path,
            len(branches) if branches else 0,
            len(by_branch),
            time.monotonic() - started,
        )
        return by_branch
