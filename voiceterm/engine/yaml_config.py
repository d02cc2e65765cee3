"""YAML configuration loader.

Loads an optional YAML file whose values override the environment.
When no file is given, env vars work exactly as before.

Example YAML:
    server:
      host: 127.0.0.1
      port: 3456
      static_dir: ./public

    assistant:
      command: claude
      cwd: ~/projects/demo
      model: claude-sonnet-4-5
      permission_mode: acceptEdits
      extra_args: ["--add-dir", "/tmp"]
      interrupt_supported: true
      stop_timeout_seconds: 5

    logging:
      level: DEBUG
"""
from __future__ import annotations

import logging
from dataclasses import replace
from pathlib import Path
from typing import Any

import yaml

from .config import RelayConfig

logger = logging.getLogger(__name__)

# section -> {yaml key: RelayConfig field}
_SECTION_FIELDS: dict[str, dict[str, str]] = {
    "server": {
        "host": "host",
        "port": "port",
        "static_dir": "static_dir",
    },
    "assistant": {
        "command": "command",
        "cwd": "cwd",
        "model": "model",
        "permission_mode": "permission_mode",
        "extra_args": "extra_args",
        "interrupt_supported": "interrupt_supported",
        "stop_timeout_seconds": "stop_timeout_seconds",
    },
    "logging": {
        "level": "log_level",
    },
}

_PATH_FIELDS = {"cwd", "static_dir"}


class ConfigError(ValueError):
    """The YAML config file is unreadable or has invalid values."""


def _coerce(field_name: str, value: Any, base: Path) -> Any:
    if field_name == "port":
        return int(value)
    if field_name == "stop_timeout_seconds":
        return float(value)
    if field_name == "interrupt_supported":
        return bool(value)
    if field_name == "extra_args":
        if not isinstance(value, list):
            raise ConfigError("assistant.extra_args must be a list")
        return [str(v) for v in value]
    if field_name in _PATH_FIELDS:
        path = Path(str(value)).expanduser()
        if not path.is_absolute():
            path = (base / path).resolve()
        return str(path)
    return str(value) if value is not None else None


def load_yaml_config(path: str | Path, base: RelayConfig | None = None) -> RelayConfig:
    """Load *path* and apply its values on top of *base* (env by default).

    Relative paths in the file resolve against the file's directory.
    """
    path = Path(path)
    logger.info("load_yaml_config: loading %s (exists=%s)", path, path.exists())
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except OSError as exc:
        raise ConfigError(f"Cannot read config {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"YAML parse error in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Config {path} must be a mapping at the top level")

    config = base if base is not None else RelayConfig.from_env()
    updates: dict[str, Any] = {}
    for section, fields in _SECTION_FIELDS.items():
        raw = data.get(section)
        if raw is None:
            continue
        if not isinstance(raw, dict):
            raise ConfigError(f"Section '{section}' in {path} must be a mapping")
        for key, value in raw.items():
            field_name = fields.get(key)
            if field_name is None:
                logger.warning("load_yaml_config: unknown key %s.%s ignored", section, key)
                continue
            try:
                updates[field_name] = _coerce(field_name, value, path.parent)
            except (TypeError, ValueError) as exc:
                raise ConfigError(f"Invalid value for {section}.{key}: {exc}") from exc

    unknown = sorted(set(data) - set(_SECTION_FIELDS))
    if unknown:
        logger.warning("load_yaml_config: unknown sections ignored: %s", ", ".join(unknown))

    logger.info(
        "load_yaml_config: applied %s",
        ", ".join(sorted(updates)) if updates else "nothing",
    )
    return replace(config, **updates)
