"""Utility functions for DevTeam."""

import os
import re
from datetime import datetime


def expand_env_vars(config: object) -> object:
    """Recursively expand environment variables in config.

    Replaces ${VAR} patterns with environment variable values.

    Args:
        config: Configuration object (dict, list, str, or primitive)

    Returns:
        Configuration with all ${VAR} patterns replaced
    """
    if isinstance(config, dict):
        return {k: expand_env_vars(v) for k, v in config.items()}  # type: ignore[misc]
    if isinstance(config, list):
        return [expand_env_vars(item) for item in config]
    if isinstance(config, str):

        def replace_env_var(match: re.Match[str]) -> str:
            env_var = match.group(1)
            return os.getenv(env_var, match.group(0))

        return re.sub(r"\$\{([^}]+)\}", replace_env_var, config)
    return config


def archive_timestamp(now: datetime | None = None) -> str:
    """Format a timestamp for archive directory names (YYYYmmdd-HHMMSS)."""
    return (now or datetime.now()).strftime("%Y%m%d-%H%M%S")


def parse_shortstat(text: str) -> tuple[int, int]:
    """Extract (insertions, deletions) from `git diff --shortstat` output."""
    added = re.search(r"(\d+) insertion", text)
    deleted = re.search(r"(\d+) deletion", text)
    return (int(added.group(1)) if added else 0, int(deleted.group(1)) if deleted else 0)
