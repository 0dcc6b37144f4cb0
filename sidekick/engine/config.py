"""Resolved assistant configuration.

The engine receives a fully resolved ``AssistantConfig``; it does not
know how settings were stored. Defaults can be overridden from
SIDEKICK_* environment variables or a YAML file (see yaml_config).
"""
from __future__ import annotations

import inspect
import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, fields, replace
from typing import Any, Union

from sidekick.shared.services.command_blocklist import (
    DEFAULT_BLOCKED_COMMANDS_UNIX,
    DEFAULT_BLOCKED_COMMANDS_WINDOWS,
)

from .models import PermissionMode

logger = logging.getLogger(__name__)


# Subscription callbacks may be plain functions or coroutine functions.
Callback = Callable[..., Union[None, Awaitable[None]]]

_TRUE_VALUES = {"1", "true", "yes", "on"}


async def fire_callback(callback: Callback | None, *args: Any) -> None:
    """Invoke a subscriber if set; errors are logged, never raised."""
    if callback is None:
        return
    try:
        result = callback(*args)
        if inspect.isawaitable(result):
            await result
    except Exception:
        logger.exception("Subscriber callback %r failed", callback)


@dataclass
class AssistantConfig:
    """Assistant engine configuration."""

    # Executable path or bare name; empty means auto-discover, then "claude".
    cli_path: str = ""
    working_directory: str = ""
    # "auto" leaves model choice to the CLI.
    model: str = "auto"
    permission_mode: str = PermissionMode.YOLO.value
    thinking_budget: str = "off"
    system_prompt: str = ""
    user_name: str = ""
    # Newline-delimited rules; "/regex/flags" or literal substrings.
    blocked_commands_windows: str = DEFAULT_BLOCKED_COMMANDS_WINDOWS
    blocked_commands_unix: str = DEFAULT_BLOCKED_COMMANDS_UNIX
    enable_blocklist: bool = True
    # Pass user-level CLI settings (--setting-sources user,project).
    load_user_settings: bool = True
    # KEY=VALUE lines merged into the child environment.
    environment_variables: str = ""

    # Engine timings
    inactivity_timeout_seconds: float = 180.0
    poll_interval_seconds: float = 5.0
    drain_grace_seconds: float = 1.2

    @property
    def permission(self) -> PermissionMode:
        return PermissionMode.parse(self.permission_mode)

    def with_overrides(self, **overrides: Any) -> AssistantConfig:
        """Return a copy with non-None overrides applied."""
        known = {f.name for f in fields(self)}
        applied = {
            key: value for key, value in overrides.items()
            if value is not None and key in known
        }
        return replace(self, **applied)

    @classmethod
    def from_env(cls) -> AssistantConfig:
        """Load configuration from SIDEKICK_* environment variables."""
        overrides = {
            k: v for k, v in os.environ.items() if k.startswith("SIDEKICK_")
        }
        if overrides:
            logger.info(
                "AssistantConfig.from_env: SIDEKICK_* env overrides: %s",
                ", ".join(sorted(overrides)),
            )
        else:
            logger.debug(
                "AssistantConfig.from_env: no SIDEKICK_* env vars set, using defaults"
            )

        config = cls(
            cli_path=os.getenv("SIDEKICK_CLI_PATH", cls.cli_path),
            working_directory=os.getenv(
                "SIDEKICK_WORKING_DIRECTORY", cls.working_directory
            ),
            model=os.getenv("SIDEKICK_MODEL", cls.model),
            permission_mode=PermissionMode.parse(
                os.getenv("SIDEKICK_PERMISSION_MODE", cls.permission_mode)
            ).value,
            thinking_budget=os.getenv(
                "SIDEKICK_THINKING_BUDGET", cls.thinking_budget
            ),
            system_prompt=os.getenv("SIDEKICK_SYSTEM_PROMPT", cls.system_prompt),
            user_name=os.getenv("SIDEKICK_USER_NAME", cls.user_name),
            blocked_commands_windows=os.getenv(
                "SIDEKICK_BLOCKED_COMMANDS_WINDOWS", cls.blocked_commands_windows
            ),
            blocked_commands_unix=os.getenv(
                "SIDEKICK_BLOCKED_COMMANDS_UNIX", cls.blocked_commands_unix
            ),
            enable_blocklist=(
                os.getenv("SIDEKICK_ENABLE_BLOCKLIST", "true").lower()
                in _TRUE_VALUES
            ),
            load_user_settings=(
                os.getenv("SIDEKICK_LOAD_USER_SETTINGS", "true").lower()
                in _TRUE_VALUES
            ),
            environment_variables=os.getenv(
                "SIDEKICK_ENVIRONMENT_VARIABLES", cls.environment_variables
            ),
            inactivity_timeout_seconds=float(os.getenv(
                "SIDEKICK_INACTIVITY_TIMEOUT",
                str(cls.inactivity_timeout_seconds),
            )),
            poll_interval_seconds=float(os.getenv(
                "SIDEKICK_POLL_INTERVAL", str(cls.poll_interval_seconds)
            )),
            drain_grace_seconds=float(os.getenv(
                "SIDEKICK_DRAIN_GRACE", str(cls.drain_grace_seconds)
            )),
        )
        logger.info(
            "AssistantConfig.from_env: cli=%s model=%s permission=%s cwd=%s",
            config.cli_path or "<auto>", config.model,
            config.permission_mode, config.working_directory or "<default>",
        )
        return config
