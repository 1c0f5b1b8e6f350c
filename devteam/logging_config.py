"""DevTeam logging configuration.

All modules log through the standard library under the `devteam` namespace
(`logging.getLogger(__name__)`). This module wires handlers once at process
start: stderr by default, or a rotating file when `DEVTEAM_LOG_FILE` is set.
Level comes from `DEVTEAM_LOG_LEVEL` (default INFO).
"""

from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

_LOGGER_NAME = "devteam"
_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
_MAX_BYTES = 5 * 1024 * 1024
_BACKUP_COUNT = 3


def setup_logging(level: Optional[str] = None) -> None:
    """Configure DevTeam logging.

    Args:
        level: Optional override for `DEVTEAM_LOG_LEVEL`.
    """
    if level:
        os.environ["DEVTEAM_LOG_LEVEL"] = level

    level_name = os.getenv("DEVTEAM_LOG_LEVEL", "INFO").upper()
    root = logging.getLogger(_LOGGER_NAME)
    root.setLevel(getattr(logging, level_name, logging.INFO))

    # Reconfiguring replaces earlier handlers instead of stacking them.
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    log_file = os.getenv("DEVTEAM_LOG_FILE")
    handler: logging.Handler
    if log_file:
        path = Path(log_file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(path, maxBytes=_MAX_BYTES, backupCount=_BACKUP_COUNT, encoding="utf-8")
    else:
        handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(_FORMAT))
    root.addHandler(handler)
    root.propagate = False
