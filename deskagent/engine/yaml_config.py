"""YAML configuration loader.

Values in the file override environment variables and defaults.

Example YAML:
    session:
      startup_timeout_seconds: 20
      interrupt_grace_seconds: 3
      db_path: ~/.deskagent/history.db

    worker:
      command: ["python", "-m", "deskagent.worker"]
      cwd: /path/to/project
      model: claude-sonnet-4-5
      max_turns: 10

    tools:
      allowed_root_dir: ~/workspace
      max_file_size_mb: 10
      directory: ~/.deskagent/tools

    agents:
      directory: ~/.deskagent/agents
"""
from __future__ import annotations

import logging
import shlex
from dataclasses import fields
from pathlib import Path
from typing import Any

import yaml

from .config import SessionConfig
from .errors import ValidationError

logger = logging.getLogger(__name__)

# section -> {yaml key: SessionConfig field}
_SECTION_KEYS: dict[str, dict[str, str]] = {
    "session": {
        "startup_timeout_seconds": "startup_timeout_seconds",
        "interrupt_grace_seconds": "interrupt_grace_seconds",
        "max_line_bytes": "max_line_bytes",
        "event_queue_size": "event_queue_size",
        "db_path": "db_path",
        "log_level": "log_level",
    },
    "worker": {
        "command": "worker_command",
        "cwd": "worker_cwd",
        "model": "model_id",
        "max_turns": "max_turns",
    },
    "tools": {
        "allowed_root_dir": "allowed_root_dir",
        "max_file_size_mb": "max_file_size_mb",
        "shell_timeout_seconds": "shell_timeout_seconds",
        "directory": "tools_dir",
    },
    "agents": {
        "directory": "agents_dir",
    },
}

_PATH_FIELDS = {"db_path", "allowed_root_dir", "tools_dir", "agents_dir", "worker_cwd"}


def _coerce(field_name: str, value: Any, current: Any) -> Any:
    if field_name == "worker_command":
        if isinstance(value, str):
            return shlex.split(value)
        if isinstance(value, list) and all(isinstance(v, str) for v in value):
            return list(value)
        raise ValidationError("config", "worker.command must be a string or list of strings")
    if value is None:
        return None
    if field_name in _PATH_FIELDS:
        return str(Path(str(value)).expanduser())
    if isinstance(current, bool):
        return bool(value)
    if isinstance(current, int):
        return int(value)
    if isinstance(current, float):
        return float(value)
    return str(value)


def apply_yaml_config(config: SessionConfig, raw: dict[str, Any]) -> SessionConfig:
    """Overlay parsed YAML sections onto *config* in place."""
    known = {f.name for f in fields(SessionConfig)}
    for section, keys in _SECTION_KEYS.items():
        values = raw.get(section)
        if values is None:
            continue
        if not isinstance(values, dict):
            raise ValidationError("config", f"section {section!r} must be a mapping")
        for key, value in values.items():
            field_name = keys.get(key)
            if field_name is None or field_name not in known:
                logger.warning("Unknown config key %s.%s ignored", section, key)
                continue
            try:
                setattr(config, field_name, _coerce(field_name, value, getattr(config, field_name)))
            except (TypeError, ValueError) as exc:
                raise ValidationError("config", f"{section}.{key}: {exc}") from exc
    for section in raw:
        if section not in _SECTION_KEYS:
            logger.warning("Unknown config section %r ignored", section)
    return config


def load_yaml_config(path: str | Path, base: SessionConfig | None = None) -> SessionConfig:
    """Load a YAML config file on top of *base* (default: ``from_env()``)."""
    path = Path(path).expanduser()
    logger.info(
        "load_yaml_config: attempting to load config from %s (exists=%s)",
        path, path.exists(),
    )
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error("load_yaml_config: config file not found at %s", path.absolute())
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise
    if not isinstance(raw, dict):
        raise ValidationError("config", f"{path} does not contain a mapping")

    logger.info(
        "Parsed YAML config %s, sections: %s",
        path.name, ", ".join(sorted(raw)) if raw else "(empty)",
    )
    config = base if base is not None else SessionConfig.from_env()
    return apply_yaml_config(config, raw)
