from pydantic import BaseModel, ConfigDict, Field, field_validator

from devteam.constants import (
    DEFAULT_COMMAND_TIMEOUT_S,
    DEFAULT_GIT_CONCURRENCY,
    DEFAULT_GIT_REFRESH_INTERVAL_S,
    DEFAULT_PR_CLOSED_TTL_S,
    DEFAULT_PR_FAILING_TTL_S,
    DEFAULT_PR_MERGED_TTL_S,
    DEFAULT_PR_NO_PR_TTL_S,
    DEFAULT_PR_OPEN_TTL_S,
    DEFAULT_PR_PASSING_TTL_S,
    DEFAULT_PR_PENDING_TTL_S,
    DEFAULT_PR_REFRESH_INTERVAL_S,
    DEFAULT_PR_UNKNOWN_TTL_S,
    DEFAULT_SYNC_HOST,
    DEFAULT_SYNC_PATH,
    DEFAULT_SYNC_PORT,
    DEFAULT_SYNC_REFRESH_INTERVAL_S,
    DEFAULT_WATCH_DEBOUNCE_S,
    MIN_GIT_REFRESH_INTERVAL_S,
    SHORT_COMMAND_TIMEOUT_S,
    WS_SEND_TIMEOUT_S,
)


class EngineConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    git_refresh_interval_s: float = DEFAULT_GIT_REFRESH_INTERVAL_S
    git_concurrency: int = Field(default=DEFAULT_GIT_CONCURRENCY, ge=1)
    pr_refresh_interval_s: float = Field(default=DEFAULT_PR_REFRESH_INTERVAL_S, ge=0)
    subprocess_timeout_s: float = Field(default=DEFAULT_COMMAND_TIMEOUT_S, gt=0)
    subprocess_short_timeout_s: float = Field(default=SHORT_COMMAND_TIMEOUT_S, gt=0)

    @field_validator("git_refresh_interval_s")
    @classmethod
    def clamp_git_interval(cls, v: float) -> float:
        """Never poll git more often than the minimum interval."""
        return max(v, MIN_GIT_REFRESH_INTERVAL_S)


class SyncConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    host: str = DEFAULT_SYNC_HOST
    port: int = Field(default=DEFAULT_SYNC_PORT, ge=0, le=65535)
    path: str = DEFAULT_SYNC_PATH
    refresh_interval_s: float = Field(default=DEFAULT_SYNC_REFRESH_INTERVAL_S, gt=0)
    debounce_s: float = Field(default=DEFAULT_WATCH_DEBOUNCE_S, ge=0)
    send_timeout_s: float = Field(default=WS_SEND_TIMEOUT_S, gt=0)
    watch: bool = True

    @field_validator("path")
    @classmethod
    def ensure_leading_slash(cls, v: str) -> str:
        """WebSocket route paths are absolute."""
        return v if v.startswith("/") else f"/{v}"


class CacheConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    pr_cache_path: str = "~/.cache/devteam/pr-cache.json"
    persist: bool = True
    pending_ttl_s: float = Field(default=DEFAULT_PR_PENDING_TTL_S, ge=0)
    no_pr_ttl_s: float = Field(default=DEFAULT_PR_NO_PR_TTL_S, ge=0)
    passing_ttl_s: float = Field(default=DEFAULT_PR_PASSING_TTL_S, ge=0)
    failing_ttl_s: float = Field(default=DEFAULT_PR_FAILING_TTL_S, ge=0)
    open_ttl_s: float = Field(default=DEFAULT_PR_OPEN_TTL_S, ge=0)
    closed_ttl_s: float = Field(default=DEFAULT_PR_CLOSED_TTL_S, ge=0)
    merged_ttl_s: float = Field(default=DEFAULT_PR_MERGED_TTL_S, ge=0)
    unknown_ttl_s: float = Field(default=DEFAULT_PR_UNKNOWN_TTL_S, ge=0)


class DevTeamConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    projects_dir: str = "~/projects"
    engine: EngineConfig = EngineConfig()
    sync: SyncConfig = SyncConfig()
    cache: CacheConfig = CacheConfig()
