"""Exception hierarchy for the assistant CLI engine.

Specific exceptions for each failure mode of a turn. Every turn
resolves to exactly one of: a final message, one of these errors,
or a silent abort.
"""
from __future__ import annotations


class SidekickError(Exception):
    """Base exception for all engine errors."""


class ExecutableNotFoundError(SidekickError):
    """The assistant CLI could not be located."""
    def __init__(self, configured: str, reason: str | None = None):
        self.configured = configured
        self.reason = reason
        if reason:
            message = reason
        else:
            message = (
                f"Could not find Claude CLI '{configured}' in PATH. "
                f"Please set the full path in settings."
            )
        super().__init__(message)


class CommandBlockedError(SidekickError):
    """A shell-like tool invocation matched a blocklist rule."""
    def __init__(self, rule: str, command: str, tool_name: str):
        self.rule = rule
        self.command = command
        self.tool_name = tool_name
        super().__init__(
            f"Blocked command for tool '{tool_name}': "
            f"matched blocklist rule '{rule}'"
        )


class StdinWriteError(SidekickError):
    """The prompt could not be delivered to the CLI's standard input."""
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(
            f"Failed to write prompt to Claude CLI stdin: {reason}"
        )


class CliProtocolError(SidekickError):
    """The CLI emitted an ``error`` event on its output stream."""


class CliTimeoutError(SidekickError):
    """No output activity for longer than the inactivity threshold."""
    def __init__(self, idle_seconds: int):
        self.idle_seconds = idle_seconds
        super().__init__(
            f"Claude CLI timed out after {idle_seconds}s of inactivity."
        )


class CliExitError(SidekickError):
    """The CLI exited with a non-zero code."""
    def __init__(self, exit_code: int, stderr: str, message: str):
        self.exit_code = exit_code
        self.stderr = stderr
        super().__init__(message)


class EmptyReplyError(SidekickError):
    """The CLI exited cleanly but produced no assistant text."""
    def __init__(self, saw_structured_event: bool, stderr: str = ""):
        self.saw_structured_event = saw_structured_event
        self.stderr = stderr
        hint = (
            "Received stream events but no assistant text."
            if saw_structured_event
            else "No structured stream output was received."
        )
        details = f" Details: {stderr}" if stderr else ""
        super().__init__(
            f"Claude CLI returned an empty reply. {hint}{details} "
            f"Please verify Claude CLI login and run a quick prompt in terminal."
        )
