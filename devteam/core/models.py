"""Data models for worktree snapshots."""

from __future__ import annotations

from dataclasses import asdict, dataclass, replace
from enum import Enum
from typing import Optional, Union

# JSON-serializable types for the wire and the PR cache file
JsonPrimitive = Union[str, int, float, bool, None]
JsonValue = Union[JsonPrimitive, list["JsonValue"], dict[str, "JsonValue"]]
JsonDict = dict[str, JsonValue]


class AITool(str, Enum):
    """AI assistant running in a session."""

    NONE = "none"
    CLAUDE = "claude"
    CODEX = "codex"
    GEMINI = "gemini"


class AIStatus(str, Enum):
    """Activity of the AI assistant in a session."""

    NOT_RUNNING = "not_running"
    IDLE = "idle"
    WORKING = "working"
    WAITING = "waiting"


class PRLoadingStatus(str, Enum):
    """Lifecycle of a PR lookup: not_checked -> loading -> exists|no_pr|error."""

    NOT_CHECKED = "not_checked"
    LOADING = "loading"
    EXISTS = "exists"
    NO_PR = "no_pr"
    ERROR = "error"


class PRState(str, Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"
    MERGED = "MERGED"


class ChecksStatus(str, Enum):
    PASSING = "passing"
    FAILING = "failing"
    PENDING = "pending"


class Mergeable(str, Enum):
    MERGEABLE = "MERGEABLE"
    CONFLICTING = "CONFLICTING"
    UNKNOWN = "UNKNOWN"


def _enum_or_none(enum_cls: type[Enum], value: object) -> Optional[Enum]:
    if value is None or value == "":
        return None
    try:
        return enum_cls(value)
    except ValueError:
        return None


@dataclass(frozen=True)
class PRStatus:
    """Pull request facts for one branch.

    Only `loading_status == EXISTS` carries meaningful PR data; `NO_PR` and
    `ERROR` leave every other field empty.
    """

    loading_status: PRLoadingStatus = PRLoadingStatus.NOT_CHECKED
    number: Optional[int] = None
    state: Optional[PRState] = None
    checks: Optional[ChecksStatus] = None
    mergeable: Optional[Mergeable] = None
    title: Optional[str] = None
    url: Optional[str] = None

    @classmethod
    def not_checked(cls) -> PRStatus:
        return cls(loading_status=PRLoadingStatus.NOT_CHECKED)

    @classmethod
    def loading(cls) -> PRStatus:
        return cls(loading_status=PRLoadingStatus.LOADING)

    @classmethod
    def no_pr(cls) -> PRStatus:
        return cls(loading_status=PRLoadingStatus.NO_PR)

    @classmethod
    def error(cls) -> PRStatus:
        return cls(loading_status=PRLoadingStatus.ERROR)

    @property
    def exists(self) -> bool:
        return self.loading_status == PRLoadingStatus.EXISTS

    @property
    def is_open(self) -> bool:
        return self.exists and self.state == PRState.OPEN

    @property
    def is_merged(self) -> bool:
        return self.exists and self.state == PRState.MERGED

    @property
    def has_conflicts(self) -> bool:
        return self.exists and self.mergeable == Mergeable.CONFLICTING

    @property
    def checks_failing(self) -> bool:
        return self.exists and self.checks == ChecksStatus.FAILING

    @property
    def checks_pending(self) -> bool:
        return self.exists and self.checks == ChecksStatus.PENDING

    def to_dict(self) -> JsonDict:
        return {
            "loading_status": self.loading_status.value,
            "number": self.number,
            "state": self.state.value if self.state else None,
            "checks": self.checks.value if self.checks else None,
            "mergeable": self.mergeable.value if self.mergeable else None,
            "title": self.title,
            "url": self.url,
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> PRStatus:
        number = data.get("number")
        title = data.get("title")
        url = data.get("url")
        loading = _enum_or_none(PRLoadingStatus, data.get("loading_status"))
        return cls(
            loading_status=loading or PRLoadingStatus.NOT_CHECKED,  # type: ignore[arg-type]
            number=number if isinstance(number, int) else None,
            state=_enum_or_none(PRState, data.get("state")),  # type: ignore[arg-type]
            checks=_enum_or_none(ChecksStatus, data.get("checks")),  # type: ignore[arg-type]
            mergeable=_enum_or_none(Mergeable, data.get("mergeable")),  # type: ignore[arg-type]
            title=title if isinstance(title, str) else None,
            url=url if isinstance(url, str) else None,
        )


@dataclass(frozen=True)
class DiffFacts:
    """Git facts for one worktree; all zero/False when git could not be read."""

    has_changes: bool = False
    ahead_count: int = 0
    behind_count: int = 0
    added_lines: int = 0
    deleted_lines: int = 0
    last_commit_ts: int = 0


@dataclass(frozen=True)
class SessionFacts:
    """Multiplexer facts for one session."""

    attached: bool = False
    ai_tool: AITool = AITool.NONE
    ai_status: AIStatus = AIStatus.NOT_RUNNING


@dataclass(frozen=True)
class WorktreeRef:
    """A worktree as listed by the repository inspector."""

    project: str
    feature: str
    path: str
    branch: str
    last_commit_ts: int = 0


@dataclass(frozen=True)
class WorktreeSummary:  # pylint: disable=too-many-instance-attributes  # Row model for the dashboard
    """One row of a snapshot. `path` is the stable identity across refreshes."""

    project: str
    feature: str
    path: str
    branch: str
    session_name: str
    attached: bool = False
    ai_tool: AITool = AITool.NONE
    ai_status: AIStatus = AIStatus.NOT_RUNNING
    has_changes: bool = False
    ahead_count: int = 0
    behind_count: int = 0
    added_lines: int = 0
    deleted_lines: int = 0
    last_commit_ts: int = 0
    pr: Optional[PRStatus] = None
    status_label: str = ""
    is_workspace: bool = False
    is_workspace_header: bool = False
    is_workspace_child: bool = False
    parent_feature: Optional[str] = None

    @property
    def session(self) -> SessionFacts:
        return SessionFacts(attached=self.attached, ai_tool=self.ai_tool, ai_status=self.ai_status)

    @property
    def git(self) -> DiffFacts:
        return DiffFacts(
            has_changes=self.has_changes,
            ahead_count=self.ahead_count,
            behind_count=self.behind_count,
            added_lines=self.added_lines,
            deleted_lines=self.deleted_lines,
            last_commit_ts=self.last_commit_ts,
        )

    def to_dict(self) -> JsonDict:
        data: JsonDict = asdict(self)
        data["ai_tool"] = self.ai_tool.value
        data["ai_status"] = self.ai_status.value
        data["pr"] = self.pr.to_dict() if self.pr else None
        return data

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> WorktreeSummary:
        pr_raw = data.get("pr")
        parent = data.get("parent_feature")
        return cls(
            project=str(data["project"]),
            feature=str(data["feature"]),
            path=str(data["path"]),
            branch=str(data.get("branch") or ""),
            session_name=str(data.get("session_name") or ""),
            attached=bool(data.get("attached", False)),
            ai_tool=_enum_or_none(AITool, data.get("ai_tool")) or AITool.NONE,  # type: ignore[arg-type]
            ai_status=_enum_or_none(AIStatus, data.get("ai_status")) or AIStatus.NOT_RUNNING,  # type: ignore[arg-type]
            has_changes=bool(data.get("has_changes", False)),
            ahead_count=int(data.get("ahead_count") or 0),  # type: ignore[call-overload]
            behind_count=int(data.get("behind_count") or 0),  # type: ignore[call-overload]
            added_lines=int(data.get("added_lines") or 0),  # type: ignore[call-overload]
            deleted_lines=int(data.get("deleted_lines") or 0),  # type: ignore[call-overload]
            last_commit_ts=int(data.get("last_commit_ts") or 0),  # type: ignore[call-overload]
            pr=PRStatus.from_dict(pr_raw) if isinstance(pr_raw, dict) else None,
            status_label=str(data.get("status_label") or ""),
            is_workspace=bool(data.get("is_workspace", False)),
            is_workspace_header=bool(data.get("is_workspace_header", False)),
            is_workspace_child=bool(data.get("is_workspace_child", False)),
            parent_feature=parent if isinstance(parent, str) else None,
        )


def with_session(row: WorktreeSummary, session: SessionFacts) -> WorktreeSummary:
    """Return row with multiplexer facts replaced."""
    return replace(row, attached=session.attached, ai_tool=session.ai_tool, ai_status=session.ai_status)


def with_git(row: WorktreeSummary, git: DiffFacts) -> WorktreeSummary:
    """Return row with git facts replaced."""
    return replace(
        row,
        has_changes=git.has_changes,
        ahead_count=git.ahead_count,
        behind_count=git.behind_count,
        added_lines=git.added_lines,
        deleted_lines=git.deleted_lines,
        last_commit_ts=git.last_commit_ts,
    )


def with_pr(row: WorktreeSummary, pr: Optional[PRStatus]) -> WorktreeSummary:
    """Return row with PR facts replaced."""
    return replace(row, pr=pr)


@dataclass(frozen=True)
class Snapshot:
    """Versioned, ordered list of rows. Equal content never gets two versions."""

    version: int = 0
    items: tuple[WorktreeSummary, ...] = ()

    def to_items(self) -> list[JsonDict]:
        return [item.to_dict() for item in self.items]


@dataclass(frozen=True)
class CacheEntry:
    """A cached PR status bound to the commit fingerprint it was read at."""

    pr: PRStatus
    local_commit_hash: str
    remote_commit_hash: Optional[str]
    written_at: float

    def to_dict(self) -> JsonDict:
        return {
            "pr": self.pr.to_dict(),
            "local_commit_hash": self.local_commit_hash,
            "remote_commit_hash": self.remote_commit_hash,
            "written_at": self.written_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> CacheEntry:
        pr_raw = data.get("pr")
        remote = data.get("remote_commit_hash")
        written = data.get("written_at")
        if not isinstance(pr_raw, dict):
            raise ValueError("cache entry has no pr object")
        return cls(
            pr=PRStatus.from_dict(pr_raw),
            local_commit_hash=str(data.get("local_commit_hash") or ""),
            remote_commit_hash=remote if isinstance(remote, str) and remote else None,
            written_at=float(written) if isinstance(written, (int, float)) else 0.0,
        )


@dataclass(frozen=True)
class OperationResult:
    """Outcome of an operator command."""

    success: bool
    path: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class RemoteBranch:
    """A remote branch offered as a starting point for a new worktree."""

    name: str
    local_name: str
    is_remote: bool = True
    ahead_count: int = 0
    behind_count: int = 0
    added_lines: int = 0
    deleted_lines: int = 0
    last_commit_ts: int = 0
