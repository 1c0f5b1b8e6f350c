"""Shared constants for the DevTeam engine."""

# Directory layout under the projects root
BRANCHES_DIR_SUFFIX = "-branches"
ARCHIVED_DIR_SUFFIX = "-archived"
ARCHIVED_PREFIX = "archived-"
WORKSPACES_DIR = "workspaces"
WORKSPACE_PROJECT = "workspace"

# Session naming
SESSION_PREFIX = "dev-"
SHELL_SESSION_SUFFIX = "-shell"
RUN_SESSION_SUFFIX = "-run"

# Branch naming
FEATURE_BRANCH_PREFIX = "feature/"
BASE_BRANCH_CANDIDATES = ("main", "master", "develop")

# Files copied/linked into freshly created worktrees
ENV_LOCAL_FILE = ".env.local"
CLAUDE_SETTINGS_DIR = ".claude"

# Pane capture
CAPTURE_PANE_LINES = 50

# Subprocess timeouts (seconds)
DEFAULT_COMMAND_TIMEOUT_S = 30.0
SHORT_COMMAND_TIMEOUT_S = 5.0
GIT_FETCH_TIMEOUT_S = 30.0

# Refresh cadence (seconds)
DEFAULT_GIT_REFRESH_INTERVAL_S = 15.0
MIN_GIT_REFRESH_INTERVAL_S = 2.0
DEFAULT_PR_REFRESH_INTERVAL_S = 5.0
DEFAULT_GIT_CONCURRENCY = 4

# PR cache lifetimes per state (seconds); a commit change invalidates sooner
DEFAULT_PR_PENDING_TTL_S = 20.0
DEFAULT_PR_NO_PR_TTL_S = 30.0
DEFAULT_PR_PASSING_TTL_S = 30.0
DEFAULT_PR_FAILING_TTL_S = 120.0
DEFAULT_PR_OPEN_TTL_S = 300.0
DEFAULT_PR_UNKNOWN_TTL_S = 600.0
DEFAULT_PR_CLOSED_TTL_S = 3600.0
DEFAULT_PR_MERGED_TTL_S = 365 * 24 * 3600.0
PR_LIST_LIMIT = 200

# Sync distributor
DEFAULT_SYNC_HOST = "127.0.0.1"
DEFAULT_SYNC_PORT = 8787
DEFAULT_SYNC_PATH = "/sync"
DEFAULT_SYNC_REFRESH_INTERVAL_S = 5.0
DEFAULT_WATCH_DEBOUNCE_S = 0.25
WS_SEND_TIMEOUT_S = 2.0
WORKTREES_TOPIC = "worktrees"
