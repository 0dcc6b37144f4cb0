"""Command blocklist for shell-like tool invocations.

Rules are configured as multi-line text, one rule per line, split by
host OS family. A rule is either a ``/pattern/flags`` regex or a plain
substring matched case-insensitively. Blank lines and ``#`` comments
are ignored.
"""
from __future__ import annotations

import json
import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from sidekick.engine.config import AssistantConfig

logger = logging.getLogger(__name__)

DEFAULT_BLOCKED_COMMANDS_WINDOWS = "\n".join((
    "del /s /q",
    "rd /s /q",
    "rmdir /s /q",
    "format",
    "diskpart",
    "Remove-Item -Recurse -Force",
))
DEFAULT_BLOCKED_COMMANDS_UNIX = "\n".join((
    "rm -rf",
    "chmod 777",
    "chmod -R 777",
))

_SHELL_TOOL_MARKERS: tuple[str, ...] = ("bash", "shell", "terminal", "command", "cmd")
_COMMAND_KEYS: tuple[str, ...] = ("command", "cmd", "script", "input", "text")
# Only JavaScript-style flag letters end a regex rule, so a path such as
# "/etc/passwd" stays a literal.
_REGEX_RULE_RE = re.compile(r"^/(?P<pattern>.+)/(?P<flags>[dgimsuvy]*)$")
_REGEX_FLAGS = {
    "i": re.IGNORECASE,
    "m": re.MULTILINE,
    "s": re.DOTALL,
}


@dataclass(frozen=True)
class BlocklistRule:
    """A parsed rule: the configured text plus a compiled regex, if any."""

    text: str
    pattern: re.Pattern[str] | None = None

    def matches(self, command: str) -> bool:
        if self.pattern is not None:
            return self.pattern.search(command) is not None
        return self.text.lower() in command.lower()


def parse_rules(text: str | None) -> list[str]:
    """Split configured rule text into raw rules."""
    rules: list[str] = []
    for line in (text or "").splitlines():
        entry = line.strip()
        if not entry or entry.startswith("#"):
            continue
        rules.append(entry)
    return rules


def compile_rule(rule: str) -> BlocklistRule:
    """Compile one rule; an invalid regex degrades to a literal rule."""
    cleaned = rule.strip()
    match = _REGEX_RULE_RE.match(cleaned)
    if not match:
        return BlocklistRule(text=cleaned)

    flags = 0
    for flag in match.group("flags"):
        flags |= _REGEX_FLAGS.get(flag, 0)
    try:
        return BlocklistRule(
            text=cleaned,
            pattern=re.compile(match.group("pattern"), flags),
        )
    except re.error:
        logger.warning("Invalid blocklist regex treated as literal: %s", cleaned)
        return BlocklistRule(text=cleaned)


def is_shell_like_tool(tool_name: str) -> bool:
    name = (tool_name or "").lower()
    return any(marker in name for marker in _SHELL_TOOL_MARKERS)


def extract_command(tool_input: Any) -> str:
    """Best-effort command string from a tool's input payload."""
    if isinstance(tool_input, str):
        parsed = _parse_json_object(tool_input)
        if parsed is None:
            return tool_input.strip()
        tool_input = parsed

    if not isinstance(tool_input, Mapping):
        return ""

    for key in _COMMAND_KEYS:
        value = tool_input.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()

    commands = tool_input.get("commands")
    if isinstance(commands, list):
        parts = [str(entry).strip() for entry in commands if str(entry).strip()]
        return " && ".join(parts)
    return ""


def match_blocked_rule(
    tool_name: str,
    tool_input: Any,
    rules: list[str],
) -> str | None:
    """Return the first rule matching this invocation, or None.

    Only shell-like tools (by name) are checked.
    """
    if not rules or not is_shell_like_tool(tool_name):
        return None
    command = extract_command(tool_input)
    if not command:
        return None
    for rule in rules:
        if compile_rule(rule).matches(command):
            logger.info(
                "Blocked %s command %r by rule %r", tool_name, command[:200], rule,
            )
            return rule
    return None


def rules_for_platform(config: AssistantConfig, *, windows: bool) -> list[str]:
    """Active rules for the host OS family; empty when disabled."""
    if not config.enable_blocklist:
        return []
    if windows:
        return parse_rules(config.blocked_commands_windows)
    return parse_rules(config.blocked_commands_unix)


def render_blocklist(rules: list[str]) -> str:
    """Render rules as a bullet list for the system prompt."""
    if not rules:
        return "- (none)"
    return "\n".join(f"- {rule}" for rule in rules)


def _parse_json_object(text: str) -> dict | None:
    stripped = text.strip()
    if not stripped.startswith("{"):
        return None
    try:
        parsed = json.loads(stripped)
    except (json.JSONDecodeError, ValueError):
        return None
    return parsed if isinstance(parsed, dict) else None
