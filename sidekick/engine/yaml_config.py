"""YAML configuration loader.

Loads a single YAML file into an AssistantConfig. Only the
``assistant:`` section is read; keys that are not AssistantConfig
fields are logged and ignored.

Example YAML:
    assistant:
      cli_path: /usr/local/bin/claude
      working_directory: ~/notes
      model: sonnet
      permission_mode: normal      # yolo | normal | plan
      user_name: Sam
      system_prompt: |
        Prefer concise answers.
      enable_blocklist: true
      blocked_commands_unix:       # list or newline-delimited string
        - rm -rf /
        - /git\\s+push\\s+--force/i
      environment_variables:       # mapping or KEY=VALUE lines
        ANTHROPIC_BASE_URL: https://proxy.example.com
      inactivity_timeout_seconds: 300
"""
from __future__ import annotations

import logging
import os
from dataclasses import fields
from pathlib import Path
from typing import Any

import yaml

from .config import AssistantConfig
from .models import PermissionMode

logger = logging.getLogger(__name__)

_BOOL_FIELDS = {"enable_blocklist", "load_user_settings"}
_FLOAT_FIELDS = {
    "inactivity_timeout_seconds",
    "poll_interval_seconds",
    "drain_grace_seconds",
}
_RULE_FIELDS = {"blocked_commands_windows", "blocked_commands_unix"}


def _parse_permission_mode(value: Any) -> str:
    raw = str(value or "").strip().lower()
    if raw not in {mode.value for mode in PermissionMode}:
        logger.warning(
            "load_yaml_config: unknown permission_mode %r, using %s",
            value, PermissionMode.YOLO.value,
        )
    return PermissionMode.parse(raw).value


def _parse_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _join_rules(value: Any) -> str:
    if isinstance(value, (list, tuple)):
        return "\n".join(str(item) for item in value if item is not None)
    return str(value or "")


def _env_lines(value: Any) -> str:
    if isinstance(value, dict):
        return "\n".join(f"{key}={val}" for key, val in value.items())
    return _join_rules(value)


def _coerce(name: str, value: Any) -> Any:
    if name == "permission_mode":
        return _parse_permission_mode(value)
    if name in _BOOL_FIELDS:
        return _parse_bool(value)
    if name in _FLOAT_FIELDS:
        return float(value)
    if name in _RULE_FIELDS:
        return _join_rules(value)
    if name == "environment_variables":
        return _env_lines(value)
    if name == "working_directory":
        return os.path.expanduser(str(value or ""))
    return "" if value is None else str(value)


def load_yaml_config(
    path: str | Path,
    base: AssistantConfig | None = None,
) -> AssistantConfig:
    """Load and parse a YAML config file.

    Values from the file override *base* (defaults when omitted).
    Missing files and YAML syntax errors propagate.
    """
    path = Path(path)
    logger.info("load_yaml_config: loading %s (exists=%s)", path, path.exists())
    try:
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error(
            "load_yaml_config: config file not found at %s (absolute path: %s)",
            path, path.absolute(),
        )
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise

    if not isinstance(raw, dict):
        raise ValueError(f"{path}: top level must be a mapping")

    section = raw.get("assistant") or {}
    if not isinstance(section, dict):
        raise ValueError(f"{path}: 'assistant' must be a mapping")

    known = {f.name for f in fields(AssistantConfig)}
    values: dict[str, Any] = {}
    for key, value in section.items():
        if key not in known:
            logger.warning("load_yaml_config: ignoring unknown key %r", key)
            continue
        if value is None and key in _FLOAT_FIELDS:
            logger.debug("load_yaml_config: %s is empty, keeping current value", key)
            continue
        values[key] = _coerce(key, value)

    config = (base or AssistantConfig()).with_overrides(**values)
    logger.info(
        "load_yaml_config: %d setting(s) from %s (model=%s permission=%s)",
        len(values), path.name, config.model, config.permission_mode,
    )
    return config
