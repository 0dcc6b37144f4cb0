"""Assistant CLI orchestrator.

Runs one ``claude --print --output-format stream-json`` subprocess per
turn. The prompt is written to stdin in a single batch, stdout is fed
line by line through the StreamNormalizer, stderr is collected for
diagnostics, and the turn resolves to exactly one outcome: a final
assistant message, an error, or (after abort()) nothing at all.

TIMEOUT MODEL:
    Process exit races an inactivity watchdog. Every chunk read from
    stdout or stderr refreshes the activity clock; after
    ``inactivity_timeout_seconds`` without a chunk the process is killed
    and the turn fails with CliTimeoutError. After exit, the read loops
    get ``drain_grace_seconds`` to flush before they are abandoned; the
    exit code is authoritative even if the pipes are slow to close.
"""
from __future__ import annotations

import asyncio
import codecs
import contextlib
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any

from sidekick.shared.services.command_blocklist import (
    parse_rules,
    render_blocklist,
    rules_for_platform,
)
from sidekick.shared.services.session_naming import (
    TITLE_SYSTEM_PROMPT,
    build_title_prompt,
    clean_title,
)

from .config import AssistantConfig, Callback, fire_callback
from .env_vars import parse_environment_variables
from .errors import (
    CliExitError,
    CliTimeoutError,
    EmptyReplyError,
    ExecutableNotFoundError,
    StdinWriteError,
)
from .executable import (
    DEFAULT_CLI_NAME,
    GIT_BASH_ENV_KEY,
    ShellLocator,
    discover_cli,
    is_windows,
    resolve_executable,
    select_shell_locator,
)
from .models import (
    THINKING_BUDGET_TOKENS,
    ChatMessage,
    MessageRole,
    PermissionMode,
    StreamState,
    ToolResultBlock,
    ToolUseBlock,
    make_message_id,
)
from .session_map import SessionMap
from .stream_normalizer import StreamNormalizer

logger = logging.getLogger(__name__)

_READ_CHUNK_BYTES = 64 * 1024
_TITLE_CONVERSATION_ID = "__title__"

SYSTEM_PREAMBLE = (
    "You are Claude, an AI assistant embedded in the sidebar of the user's "
    "application. You help the user with their research, writing, and "
    "coding tasks. You have full agentic capabilities: file read/write, "
    "search, and bash commands."
)


def format_cli_exit_error(exit_code: int, stderr_text: str) -> str:
    """Map a failed exit to an actionable message.

    Known stderr signatures get a specific hint; anything else falls
    back to the raw exit code and stderr.
    """
    cleaned = (stderr_text or "").strip()
    lower = cleaned.lower()

    if "requires git-bash" in lower:
        return (
            "Claude CLI requires Git Bash on Windows. Install Git for Windows, "
            "then set CLAUDE_CODE_GIT_BASH_PATH "
            "(for example: C:\\Program Files\\Git\\bin\\bash.exe)."
        )
    if "unable to find claude_code_git_bash_path" in lower:
        return (
            "Claude CLI could not access CLAUDE_CODE_GIT_BASH_PATH. Verify the "
            "path points to bash.exe, then restart the application."
        )
    if "session id" in lower and "already in use" in lower:
        return (
            "Current conversation session is locked by another Claude process. "
            "Please wait a few seconds and retry, or start a new chat."
        )
    if "invalid json provided to --settings" in lower:
        return (
            "Claude CLI rejected runtime settings JSON. Check Environment "
            "Variables format (KEY=VALUE, one per line, no invalid quotes)."
        )
    if "requires --verbose" in lower and "stream-json" in lower:
        return (
            "Your Claude CLI requires --verbose when using stream-json. "
            "Update the CLI or restart the application and try again."
        )
    if "unknown option" in lower and "--thinking-budget" in lower:
        return (
            "Your Claude CLI version does not support --thinking-budget. "
            "Disable the thinking budget and try again."
        )
    if "unknown option" in lower and "--max-turns" in lower:
        return (
            "Your Claude CLI version does not support --max-turns. "
            "Update the CLI and try again."
        )
    if "not authenticated" in lower or "claude auth" in lower:
        return (
            'Claude CLI is not authenticated. Run "claude auth login" in a '
            "terminal first, then try again."
        )
    if cleaned:
        return f"Claude CLI exited with code {exit_code}: {cleaned}"
    if exit_code == -9:
        return (
            "Claude CLI process ended unexpectedly (exit -9). This can happen "
            "when the process is force-stopped or blocked by system policies."
        )
    return (
        f"Claude CLI exited with code {exit_code} without a readable error message."
    )


@dataclass
class _Turn:
    """Mutable state of one subprocess invocation."""
    state: StreamState
    message_id: str
    stream: bool = True
    aborted: bool = False
    process: asyncio.subprocess.Process | None = None
    text: str = ""
    stderr: str = ""
    buffer: str = ""
    error: BaseException | None = None
    last_activity: float = field(default_factory=time.monotonic)
    pending: list[tuple[Callback | None, tuple[Any, ...]]] = field(
        default_factory=list,
    )

    def touch(self) -> None:
        self.last_activity = time.monotonic()

    def idle_seconds(self) -> float:
        return time.monotonic() - self.last_activity


class AssistantService:
    """One assistant CLI engine: at most one turn in flight.

    Callers subscribe with the on_* setters; callbacks may be plain
    functions or coroutine functions. A second send_message() while a
    turn is running is ignored, never queued.
    """

    def __init__(
        self,
        config: AssistantConfig | None = None,
        *,
        shell_locator: ShellLocator | None = None,
        cli_discovery=discover_cli,
    ) -> None:
        self._config = config or AssistantConfig()
        self._session_map = SessionMap()
        self._shell_locator = shell_locator or select_shell_locator()
        self._windows = is_windows(os.environ)
        self._cli_discovery = cli_discovery
        self._running = False
        self._current: _Turn | None = None

        self._on_message: Callback | None = None
        self._on_stream: Callback | None = None
        self._on_tool_use: Callback | None = None
        self._on_tool_result: Callback | None = None
        self._on_error: Callback | None = None
        self._on_stream_start: Callback | None = None
        self._on_stream_end: Callback | None = None

    # ── configuration & subscriptions ──

    @property
    def config(self) -> AssistantConfig:
        return self._config

    @property
    def session_map(self) -> SessionMap:
        return self._session_map

    @property
    def busy(self) -> bool:
        return self._running

    def update_settings(self, config: AssistantConfig) -> None:
        """Swap configuration; takes effect on the next turn."""
        self._config = config

    def on_message(self, callback: Callback | None) -> None:
        self._on_message = callback

    def on_stream(self, callback: Callback | None) -> None:
        """Receives (accumulated_text, message_id) after every append."""
        self._on_stream = callback

    def on_tool_use(self, callback: Callback | None) -> None:
        self._on_tool_use = callback

    def on_tool_result(self, callback: Callback | None) -> None:
        self._on_tool_result = callback

    def on_error(self, callback: Callback | None) -> None:
        self._on_error = callback

    def on_stream_start(self, callback: Callback | None) -> None:
        self._on_stream_start = callback

    def on_stream_end(self, callback: Callback | None) -> None:
        self._on_stream_end = callback

    # ── invocation building ──

    def get_cli_path(self) -> str:
        configured = (self._config.cli_path or "").strip()
        if configured:
            return configured
        return self._cli_discovery() or DEFAULT_CLI_NAME

    def get_model_id(self) -> str:
        return (self._config.model or "").strip() or "auto"

    def get_working_directory(self) -> str | None:
        return (self._config.working_directory or "").strip() or None

    def blocklist_rules(self) -> list[str]:
        return rules_for_platform(self._config, windows=self._windows)

    def build_system_prompt(self, aux_instructions: str | None = None) -> str:
        parts: list[str] = [SYSTEM_PREAMBLE]
        if self._config.enable_blocklist:
            parts.append(
                "# Command Safety\n"
                "Never run shell commands that match these blocked patterns.\n"
                "Windows:\n"
                f"{render_blocklist(parse_rules(self._config.blocked_commands_windows))}\n"
                "Unix:\n"
                f"{render_blocklist(parse_rules(self._config.blocked_commands_unix))}"
            )
        if self._config.user_name:
            parts.append(f"The user's name is {self._config.user_name}.")
        if self._config.system_prompt:
            parts.append(self._config.system_prompt)
        if aux_instructions:
            parts.append(
                "# Skill Instructions\n"
                f"Follow these instructions precisely:\n\n{aux_instructions}"
            )
        return "\n\n".join(parts)

    def _base_args(self, *, partial_messages: bool) -> list[str]:
        args = [
            "--print",
            "--verbose",
            "--output-format", "stream-json",
            "--input-format", "text",
        ]
        if partial_messages:
            args.append("--include-partial-messages")
        model = self.get_model_id()
        if model != "auto":
            args.extend(["--model", model])
        return args

    def _setting_sources(self) -> str:
        return "user,project" if self._config.load_user_settings else "project"

    @staticmethod
    def permission_args(mode: PermissionMode) -> list[str]:
        if mode is PermissionMode.PLAN:
            return ["--permission-mode", "plan"]
        if mode is PermissionMode.NORMAL:
            return ["--permission-mode", "acceptEdits"]
        return [
            "--permission-mode", "bypassPermissions",
            "--dangerously-skip-permissions",
        ]

    def build_args(
        self,
        conversation_id: str,
        aux_instructions: str | None = None,
    ) -> list[str]:
        """CLI arguments for one chat turn."""
        args = self._base_args(partial_messages=True)
        resume = self._session_map.resume_token(conversation_id)
        if resume:
            args.extend(["--resume", resume])
        args.extend(["--setting-sources", self._setting_sources()])
        args.extend(["--system-prompt", self.build_system_prompt(aux_instructions)])
        args.extend(self.permission_args(self._config.permission))
        return args

    def build_title_args(self) -> list[str]:
        """CLI arguments for a one-shot title request (plan mode)."""
        args = self._base_args(partial_messages=False)
        args.extend(["--setting-sources", self._setting_sources()])
        args.extend(["--system-prompt", TITLE_SYSTEM_PROMPT])
        args.extend(self.permission_args(PermissionMode.PLAN))
        return args

    def build_env(self) -> tuple[dict[str, str], str | None]:
        """Child environment plus the shell path exported into it, if any."""
        env = dict(os.environ)
        overrides = parse_environment_variables(self._config.environment_variables)
        shell_path = self._shell_locator.ensure(env, overrides)
        env.update(overrides)
        if shell_path and GIT_BASH_ENV_KEY not in overrides:
            env[GIT_BASH_ENV_KEY] = shell_path
        return env, shell_path

    # ── turns ──

    async def send_message(
        self,
        text: str,
        conversation_id: str,
        aux_instructions: str | None = None,
    ) -> None:
        """Run one turn; outcomes are reported through the callbacks."""
        if self._running:
            logger.info("Already processing a message, skipping")
            return

        turn = _Turn(
            state=StreamState(conversation_id=conversation_id),
            message_id=make_message_id(),
        )
        self._running = True
        self._current = turn
        await fire_callback(self._on_stream_start)

        try:
            reply = await self._run_turn(turn, text, aux_instructions)
            if reply is None:
                logger.info("Claude request aborted by user")
                return
            await fire_callback(self._on_message, ChatMessage(
                id=turn.message_id,
                role=MessageRole.ASSISTANT,
                content=reply,
                is_streaming=False,
            ))
        except Exception as exc:
            if turn.aborted:
                logger.info("Claude request aborted during send_message")
                return
            logger.error("Turn failed: %s", exc)
            await fire_callback(self._on_error, exc)
        finally:
            if self._current is turn:
                self._running = False
                self._current = None
            await fire_callback(self._on_stream_end)

    async def _run_turn(
        self,
        turn: _Turn,
        prompt: str,
        aux_instructions: str | None,
    ) -> str | None:
        cli = resolve_executable(self.get_cli_path(), windows=self._windows)
        env, shell_path = self.build_env()
        args = self.build_args(turn.state.conversation_id, aux_instructions)
        logger.info(
            "Sending message via CLI: %s, model: %s%s",
            cli, self.get_model_id(),
            f", git-bash: {shell_path}" if shell_path else "",
        )
        logger.debug("CLI args: %s", args)

        budget = THINKING_BUDGET_TOKENS.get(self._config.thinking_budget)
        if budget is not None:
            # No portable CLI flag exists for this; keep it informational.
            logger.info(
                "Thinking budget requested (%d) but not passed to the CLI", budget,
            )

        normalizer = self._make_normalizer(turn, self._session_map)
        exit_code = await self._execute(turn, cli, args, env, prompt, normalizer)
        logger.info("CLI exited with code %s", exit_code)

        if turn.aborted:
            return None
        stderr_text = turn.stderr.strip()
        if exit_code != 0:
            raise CliExitError(
                exit_code, stderr_text, format_cli_exit_error(exit_code, stderr_text),
            )
        if not turn.text.strip():
            raise EmptyReplyError(turn.state.saw_structured_event, stderr_text)
        return turn.text

    async def generate_conversation_title(
        self,
        user_text: str,
        assistant_text: str,
    ) -> str | None:
        """Best-effort short title for a conversation; None on any failure."""
        turn = _Turn(
            state=StreamState(conversation_id=_TITLE_CONVERSATION_ID),
            message_id=make_message_id(),
            stream=False,
        )
        try:
            cli = resolve_executable(self.get_cli_path(), windows=self._windows)
            env, _ = self.build_env()
            normalizer = self._make_normalizer(turn, SessionMap())
            exit_code = await self._execute(
                turn, cli, self.build_title_args(), env,
                build_title_prompt(user_text, assistant_text), normalizer,
            )
            if exit_code != 0:
                logger.debug(
                    "Title generation exited with code %s: %s",
                    exit_code, turn.stderr.strip()[:400],
                )
                return None
            return clean_title(turn.text)
        except Exception:
            logger.debug("Title generation failed", exc_info=True)
            return None

    def abort(self) -> None:
        """Cancel the running turn; it ends with no message and no error."""
        turn = self._current
        if turn is not None:
            turn.aborted = True
            if turn.process is not None:
                self._kill(turn.process)
        self._current = None
        self._running = False

    def shutdown(self) -> None:
        self.abort()
        self._session_map.clear()
        self._on_message = None
        self._on_stream = None
        self._on_tool_use = None
        self._on_tool_result = None
        self._on_error = None
        self._on_stream_start = None
        self._on_stream_end = None

    # ── subprocess machinery ──

    def _make_normalizer(
        self,
        turn: _Turn,
        session_map: SessionMap,
    ) -> StreamNormalizer:
        def append_text(text: str) -> None:
            turn.text += text
            if turn.stream:
                turn.pending.append((self._on_stream, (turn.text, turn.message_id)))

        def tool_use(block: ToolUseBlock) -> None:
            if turn.stream:
                turn.pending.append((self._on_tool_use, (block,)))

        def tool_result(block: ToolResultBlock) -> None:
            if turn.stream:
                turn.pending.append((self._on_tool_result, (block,)))

        return StreamNormalizer(
            turn.state,
            session_map,
            on_text=append_text,
            on_tool_use=tool_use,
            on_tool_result=tool_result,
            blocklist_rules=self.blocklist_rules(),
        )

    async def _execute(
        self,
        turn: _Turn,
        cli: str,
        args: list[str],
        env: dict[str, str],
        prompt: str,
        normalizer: StreamNormalizer,
    ) -> int:
        """Spawn, feed, stream and reap one CLI process; return its exit code."""
        try:
            # Arguments go to the CLI as an array; no shell is involved.
            proc = await asyncio.create_subprocess_exec(
                cli, *args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                cwd=self.get_working_directory(),
            )
        except OSError as exc:
            raise ExecutableNotFoundError(
                cli, f"Failed to start Claude CLI '{cli}': {exc}",
            ) from exc

        turn.process = proc
        if turn.aborted:
            self._kill(proc)

        readers: list[asyncio.Task] = []
        try:
            await self._write_prompt(proc, prompt)
            turn.touch()
            logger.debug("Prompt sent via stdin (%d chars)", len(prompt))

            readers = [
                asyncio.create_task(self._read_stdout(proc, turn, normalizer)),
                asyncio.create_task(self._read_stderr(proc, turn)),
            ]
            exit_code = await self._wait_for_exit(proc, turn)
            await self._drain(readers)

            if turn.buffer.strip() and turn.error is None and not turn.aborted:
                remainder, turn.buffer = turn.buffer, ""
                try:
                    await self._process_line(turn, normalizer, remainder)
                except Exception as exc:
                    turn.error = exc

            if turn.error is not None and not turn.aborted:
                raise turn.error
            return exit_code
        finally:
            for task in readers:
                if not task.done():
                    task.cancel()
                    with contextlib.suppress(asyncio.CancelledError, Exception):
                        await task
            if proc.returncode is None:
                self._kill(proc)

    @staticmethod
    async def _write_prompt(proc: asyncio.subprocess.Process, prompt: str) -> None:
        if proc.stdin is None:
            raise StdinWriteError("Claude CLI process stdin is not available.")
        try:
            proc.stdin.write(prompt.encode("utf-8"))
            await proc.stdin.drain()
            proc.stdin.close()
        except (BrokenPipeError, ConnectionResetError, OSError) as exc:
            raise StdinWriteError(str(exc)) from exc

    async def _read_stdout(
        self,
        proc: asyncio.subprocess.Process,
        turn: _Turn,
        normalizer: StreamNormalizer,
    ) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            while True:
                chunk = await proc.stdout.read(_READ_CHUNK_BYTES)
                if not chunk:
                    turn.buffer += decoder.decode(b"", final=True)
                    break
                turn.touch()
                turn.buffer += decoder.decode(chunk)
                *lines, turn.buffer = turn.buffer.split("\n")
                for line in lines:
                    await self._process_line(turn, normalizer, line)
        except Exception as exc:
            if turn.aborted:
                return
            logger.error("Stream processing stopped: %s", exc)
            turn.error = exc
            self._kill(proc)

    async def _read_stderr(
        self,
        proc: asyncio.subprocess.Process,
        turn: _Turn,
    ) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            while True:
                chunk = await proc.stderr.read(_READ_CHUNK_BYTES)
                if not chunk:
                    turn.stderr += decoder.decode(b"", final=True)
                    break
                turn.touch()
                text = decoder.decode(chunk)
                turn.stderr += text
                if text.strip():
                    logger.debug("CLI stderr: %s", text.strip()[:400])
        except Exception as exc:
            if not turn.aborted:
                logger.warning("Stderr read error: %s", exc)

    async def _process_line(
        self,
        turn: _Turn,
        normalizer: StreamNormalizer,
        line: str,
    ) -> None:
        try:
            normalizer.feed_line(line)
        finally:
            pending, turn.pending = turn.pending, []
            for callback, args in pending:
                await fire_callback(callback, *args)

    async def _wait_for_exit(
        self,
        proc: asyncio.subprocess.Process,
        turn: _Turn,
    ) -> int:
        """Race process exit against the inactivity watchdog."""
        wait_task = asyncio.ensure_future(proc.wait())
        watchdog = asyncio.ensure_future(self._watch_inactivity(turn))
        try:
            done, _ = await asyncio.wait(
                {wait_task, watchdog}, return_when=asyncio.FIRST_COMPLETED,
            )
            if wait_task in done:
                return wait_task.result()

            idle_seconds = watchdog.result()
            self._kill(proc)
            if turn.aborted:
                return await wait_task
            raise CliTimeoutError(idle_seconds)
        finally:
            for task in (wait_task, watchdog):
                if not task.done():
                    task.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await task

    async def _watch_inactivity(self, turn: _Turn) -> int:
        limit = self._config.inactivity_timeout_seconds
        interval = self._config.poll_interval_seconds
        while True:
            await asyncio.sleep(interval)
            idle = turn.idle_seconds()
            if idle > limit:
                logger.warning("Claude CLI idle for %.1fs, killing process", idle)
                return int(idle)

    async def _drain(self, readers: list[asyncio.Task]) -> None:
        if not readers:
            return
        _, pending = await asyncio.wait(
            readers, timeout=self._config.drain_grace_seconds,
        )
        if pending:
            logger.debug(
                "%d output reader(s) still open after exit; abandoning", len(pending),
            )

    @staticmethod
    def _kill(proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is not None:
            return
        try:
            proc.kill()
        except ProcessLookupError:
            pass
