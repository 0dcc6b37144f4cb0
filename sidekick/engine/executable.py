"""Locate the assistant CLI and, on Windows, the Git Bash it requires.

The CLI path is either configured literally, found on PATH with
platform suffixes, or auto-discovered from well-known install
directories. Shell discovery is a strategy chosen once per host:
POSIX hosts need nothing, Windows hosts probe for bash.exe and export
it as CLAUDE_CODE_GIT_BASH_PATH.
"""
from __future__ import annotations

import abc
import logging
import os
import sys
from collections.abc import Iterable, Mapping, MutableMapping

from .errors import ExecutableNotFoundError

logger = logging.getLogger(__name__)

DEFAULT_CLI_NAME = "claude"
GIT_BASH_ENV_KEY = "CLAUDE_CODE_GIT_BASH_PATH"
# Set by some host launchers to hand over a bash location.
GIT_BASH_BRIDGE_ENV_KEY = "Git_for_claudecode"

_WINDOWS_SUFFIXES: tuple[str, ...] = (".exe", ".cmd", ".bat", "")
_POSIX_SUFFIXES: tuple[str, ...] = ("",)


def is_windows(env: Mapping[str, str] | None = None) -> bool:
    """True on Windows hosts, judged by platform or environment hints."""
    if sys.platform == "win32":
        return True
    if env is None:
        return False
    os_name = (env.get("OS") or "").lower()
    comspec = env.get("COMSPEC") or env.get("ComSpec") or ""
    return "windows" in os_name or bool(comspec)


def _file_exists(path: str) -> bool:
    return bool(path) and os.path.isfile(path)


def _split_path_var(path_var: str, windows: bool) -> list[str]:
    sep = ";" if windows else os.pathsep
    dirs: list[str] = []
    for raw in path_var.split(sep):
        entry = raw.strip().strip('"')
        if entry:
            dirs.append(entry)
    return dirs


def _join(directory: str, name: str, windows: bool) -> str:
    sep = "\\" if windows else "/"
    if directory.endswith(("/", "\\")):
        return directory + name
    return directory + sep + name


def resolve_executable(
    configured: str | None,
    *,
    env: Mapping[str, str] | None = None,
    windows: bool | None = None,
) -> str:
    """Resolve the CLI to an existing file path.

    Raises ExecutableNotFoundError when nothing matches.
    """
    env = os.environ if env is None else env
    windows = is_windows(env) if windows is None else windows
    name = (configured or "").strip().strip('"') or DEFAULT_CLI_NAME

    if "/" in name or "\\" in name:
        if _file_exists(name):
            return name
        raise ExecutableNotFoundError(
            name,
            f"Claude CLI path '{name}' does not exist. "
            f"Please check the path in settings.",
        )

    suffixes = _WINDOWS_SUFFIXES if windows else _POSIX_SUFFIXES
    for directory in _split_path_var(env.get("PATH", ""), windows):
        for suffix in suffixes:
            candidate = _join(directory, name + suffix, windows)
            if _file_exists(candidate):
                return candidate
    raise ExecutableNotFoundError(name)


def discover_cli(
    env: Mapping[str, str] | None = None,
    *,
    windows: bool | None = None,
) -> str | None:
    """Probe well-known install locations, then PATH, for the CLI."""
    env = os.environ if env is None else env
    windows = is_windows(env) if windows is None else windows

    candidates: list[str] = []
    if windows:
        local_app_data = env.get("LOCALAPPDATA", "")
        app_data = env.get("APPDATA", "")
        user_profile = env.get("USERPROFILE", "")
        if local_app_data:
            candidates.append(local_app_data + "\\Claude\\claude.exe")
            candidates.append(local_app_data + "\\Programs\\Claude\\claude.exe")
        if app_data:
            candidates.append(app_data + "\\npm\\claude.cmd")
            candidates.append(app_data + "\\npm\\claude.exe")
        if user_profile:
            candidates.append(user_profile + "\\.local\\bin\\claude.exe")
            candidates.append(user_profile + "\\.local\\bin\\claude.cmd")
        for directory in _split_path_var(env.get("PATH", ""), True):
            for suffix in (".exe", ".cmd", ".bat"):
                candidates.append(_join(directory, DEFAULT_CLI_NAME + suffix, True))
    else:
        home = env.get("HOME", "")
        candidates.extend((
            "/usr/local/bin/claude",
            "/usr/bin/claude",
            "/opt/homebrew/bin/claude",
        ))
        if home:
            candidates.append(home + "/.local/bin/claude")
            candidates.append(home + "/.npm-global/bin/claude")
            candidates.append(home + "/.volta/bin/claude")
        for directory in _split_path_var(env.get("PATH", ""), False):
            candidates.append(_join(directory, DEFAULT_CLI_NAME, False))

    seen: set[str] = set()
    for candidate in candidates:
        if candidate in seen:
            continue
        seen.add(candidate)
        if _file_exists(candidate):
            logger.debug("Discovered Claude CLI at %s", candidate)
            return candidate
    return None


def normalize_git_bash_path(value: str | None) -> str | None:
    """Normalize a configured bash location to a bash.exe path."""
    raw = str(value or "").strip().strip('"')
    if not raw:
        return None
    normalized = raw.replace("/", "\\")
    if normalized.lower().endswith((".exe", ".cmd", ".bat")):
        return normalized
    if normalized.endswith("\\"):
        return normalized + "bash.exe"
    return normalized + "\\bash.exe"


class ShellLocator(abc.ABC):
    """Strategy for preparing the shell the CLI needs on this host."""

    @abc.abstractmethod
    def ensure(
        self,
        env: MutableMapping[str, str],
        overrides: Mapping[str, str] | None = None,
    ) -> str | None:
        """Find the shell, export it into *env*, and return its path."""


class PosixShellLocator(ShellLocator):
    """POSIX hosts already provide a shell; nothing to do."""

    def ensure(
        self,
        env: MutableMapping[str, str],
        overrides: Mapping[str, str] | None = None,
    ) -> str | None:
        return None


class WindowsShellLocator(ShellLocator):
    """Probe for Git Bash and export it as CLAUDE_CODE_GIT_BASH_PATH."""

    def ensure(
        self,
        env: MutableMapping[str, str],
        overrides: Mapping[str, str] | None = None,
    ) -> str | None:
        existing = normalize_git_bash_path(env.get(GIT_BASH_ENV_KEY))
        if existing and _file_exists(existing):
            return existing

        configured = normalize_git_bash_path(
            (overrides or {}).get(GIT_BASH_ENV_KEY)
            or env.get(GIT_BASH_BRIDGE_ENV_KEY)
        )
        if configured and _file_exists(configured):
            env[GIT_BASH_ENV_KEY] = configured
            return configured

        for candidate in self.candidates(env):
            if _file_exists(candidate):
                env[GIT_BASH_ENV_KEY] = candidate
                logger.info("Using Git Bash at %s", candidate)
                return candidate

        logger.debug("No Git Bash installation found")
        return None

    @staticmethod
    def candidates(env: Mapping[str, str]) -> list[str]:
        """Ordered, de-duplicated bash.exe candidates."""
        raw: list[str] = [
            "C:\\Program Files\\Git\\bin\\bash.exe",
            "C:\\Program Files\\Git\\usr\\bin\\bash.exe",
            "C:\\Program Files (x86)\\Git\\bin\\bash.exe",
            "C:\\Program Files (x86)\\Git\\usr\\bin\\bash.exe",
        ]
        for key, suffix in (
            ("ProgramFiles", "\\Git"),
            ("ProgramFiles(x86)", "\\Git"),
            ("LOCALAPPDATA", "\\Programs\\Git"),
        ):
            base = env.get(key, "")
            if base:
                raw.append(base + suffix + "\\bin\\bash.exe")
                raw.append(base + suffix + "\\usr\\bin\\bash.exe")

        for directory in _split_path_var(env.get("PATH", ""), True):
            raw.append(directory + "\\bash.exe")
            if directory.lower().endswith("\\cmd"):
                root = directory[:-4]
                raw.append(root + "\\bin\\bash.exe")
                raw.append(root + "\\usr\\bin\\bash.exe")

        return list(_dedupe(filter(None, map(normalize_git_bash_path, raw))))


def _dedupe(values: Iterable[str]) -> Iterable[str]:
    seen: set[str] = set()
    for value in values:
        if value not in seen:
            seen.add(value)
            yield value


def select_shell_locator(env: Mapping[str, str] | None = None) -> ShellLocator:
    """Pick the shell strategy for this host."""
    if is_windows(os.environ if env is None else env):
        return WindowsShellLocator()
    return PosixShellLocator()
