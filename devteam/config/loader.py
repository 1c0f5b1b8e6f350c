"""YAML loading for the DevTeam config file."""

import logging
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel

from devteam.config.schema import DevTeamConfig
from devteam.utils import expand_env_vars

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "~/.devteam/devteam.yml"


def unknown_keys(model: BaseModel, prefix: str = "") -> list[str]:
    """Dotted names of keys no schema section declares."""
    found = [f"{prefix}{key}" for key in (model.model_extra or {})]
    for name, value in model:
        if isinstance(value, BaseModel):
            found.extend(unknown_keys(value, f"{prefix}{name}."))
    return found


def load_config(path: Optional[Path] = None) -> DevTeamConfig:
    """Read devteam.yml, expanding `${VAR}` placeholders.

    A missing or unparseable file yields the defaults; values that fail
    validation raise pydantic.ValidationError.
    """
    path = path or Path(DEFAULT_CONFIG_PATH).expanduser()
    if not path.is_file():
        logger.debug("No config file at %s, using defaults", path)
        return DevTeamConfig()

    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.warning("Ignoring unreadable config %s: %s", path, e)
        return DevTeamConfig()

    cfg = DevTeamConfig.model_validate(expand_env_vars(raw))
    extra = unknown_keys(cfg)
    if extra:
        logger.warning("Unknown keys in %s: %s", path, ", ".join(extra))
    return cfg
