"""Global configuration management.

Config is loaded at module import time and available globally via:
    from devteam.config import config

Precedence: environment variables > YAML file > defaults. The YAML file is
`~/.devteam/devteam.yml` unless `DEVTEAM_CONFIG_PATH` points elsewhere.
"""

import logging
import os
from pathlib import Path
from typing import Mapping, Optional

from dotenv import load_dotenv

from devteam.config.loader import DEFAULT_CONFIG_PATH, load_config
from devteam.config.schema import CacheConfig, DevTeamConfig, EngineConfig, SyncConfig

logger = logging.getLogger(__name__)

# Load .env (allow override for tests)
_env_path = os.getenv("DEVTEAM_ENV_PATH")
load_dotenv(Path(_env_path).expanduser() if _env_path else None)

__all__ = [
    "CacheConfig",
    "DevTeamConfig",
    "EngineConfig",
    "SyncConfig",
    "apply_env_overrides",
    "build_config",
    "config",
]


def _ms_to_s(raw: str, name: str) -> Optional[float]:
    try:
        return int(raw) / 1000.0
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r", name, raw)
        return None


def apply_env_overrides(cfg: DevTeamConfig, env: Mapping[str, str]) -> DevTeamConfig:
    """Return a copy of cfg with recognised environment variables applied."""
    engine_updates: dict[str, object] = {}
    sync_updates: dict[str, object] = {}
    root_updates: dict[str, object] = {}

    if env.get("PROJECTS_DIR"):
        root_updates["projects_dir"] = env["PROJECTS_DIR"]
    if env.get("SYNC_HOST"):
        sync_updates["host"] = env["SYNC_HOST"]
    if env.get("SYNC_PORT"):
        try:
            sync_updates["port"] = int(env["SYNC_PORT"])
        except ValueError:
            logger.warning("Ignoring non-numeric SYNC_PORT=%r", env["SYNC_PORT"])
    if env.get("SYNC_PATH"):
        sync_updates["path"] = env["SYNC_PATH"]
    if env.get("SYNC_REFRESH_MS"):
        value = _ms_to_s(env["SYNC_REFRESH_MS"], "SYNC_REFRESH_MS")
        if value:
            sync_updates["refresh_interval_s"] = value
    if env.get("GIT_REFRESH_INTERVAL_MS"):
        value = _ms_to_s(env["GIT_REFRESH_INTERVAL_MS"], "GIT_REFRESH_INTERVAL_MS")
        if value is not None:
            engine_updates["git_refresh_interval_s"] = value
    if env.get("PR_REFRESH_INTERVAL_MS"):
        value = _ms_to_s(env["PR_REFRESH_INTERVAL_MS"], "PR_REFRESH_INTERVAL_MS")
        if value is not None:
            engine_updates["pr_refresh_interval_s"] = value

    # Re-validate so clamping and path normalisation apply to overrides too.
    data = cfg.model_dump()
    data.update(root_updates)
    data["engine"].update(engine_updates)
    data["sync"].update(sync_updates)
    return DevTeamConfig.model_validate(data)


def build_config(env: Optional[Mapping[str, str]] = None) -> DevTeamConfig:
    """Load the YAML config and apply environment overrides."""
    env = os.environ if env is None else env
    path = Path(env.get("DEVTEAM_CONFIG_PATH", DEFAULT_CONFIG_PATH)).expanduser()
    return apply_env_overrides(load_config(path), env)


config: DevTeamConfig = build_config()
