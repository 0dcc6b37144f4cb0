"""Tests for AssistantService turns against a scripted fake CLI process."""
from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from sidekick.engine.config import AssistantConfig
from sidekick.engine.errors import (
    CliExitError,
    CliProtocolError,
    CliTimeoutError,
    CommandBlockedError,
    EmptyReplyError,
    ExecutableNotFoundError,
    StdinWriteError,
)
from sidekick.engine.executable import PosixShellLocator
from sidekick.engine.models import ChatMessage, MessageRole
from sidekick.engine.service import AssistantService, format_cli_exit_error

SESSION = "3f2504e0-4f89-41d3-9a0c-0305e82c3301"


class _FakeProcess:
    """Stands in for asyncio.subprocess.Process.

    *output* items are JSON-able events (one line each), str lines, or
    raw bytes chunks written as-is.
    """

    def __init__(
        self,
        output=(),
        *,
        stderr: str = "",
        returncode: int = 0,
        delay: float = 0.0,
        hang: bool = False,
    ) -> None:
        self.stdin = MagicMock()
        self.stdin.drain = AsyncMock()
        self.stdout = asyncio.StreamReader()
        self.stderr = asyncio.StreamReader()
        self.returncode: int | None = None
        self.killed = False
        self._output = list(output)
        self._stderr_text = stderr
        self._final_code = returncode
        self._delay = delay
        self._hang = hang
        self._exited = asyncio.Event()
        self._player: asyncio.Task | None = None

    def start(self) -> None:
        self._player = asyncio.get_running_loop().create_task(self._play())

    async def _play(self) -> None:
        if self._stderr_text:
            self.stderr.feed_data(self._stderr_text.encode())
        for item in self._output:
            if self._delay:
                await asyncio.sleep(self._delay)
            if self.returncode is not None:
                return
            if isinstance(item, bytes):
                self.stdout.feed_data(item)
            elif isinstance(item, str):
                self.stdout.feed_data(item.encode() + b"\n")
            else:
                self.stdout.feed_data(json.dumps(item).encode() + b"\n")
            await asyncio.sleep(0)
        if not self._hang:
            self._finish(self._final_code)

    def _finish(self, code: int) -> None:
        if self.returncode is not None:
            return
        self.returncode = code
        self.stdout.feed_eof()
        self.stderr.feed_eof()
        self._exited.set()

    def kill(self) -> None:
        self.killed = True
        self._finish(-9)

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode


def _patch_exec(*procs: _FakeProcess):
    queue = list(procs)

    async def fake_exec(*args, **kwargs):
        proc = queue.pop(0)
        proc.start()
        return proc

    return patch("asyncio.create_subprocess_exec", side_effect=fake_exec)


class _Outcome:
    def __init__(self, service: AssistantService) -> None:
        self.messages: list[ChatMessage] = []
        self.errors: list[Exception] = []
        self.streams: list[tuple[str, str]] = []
        self.tool_uses = []
        self.tool_results = []
        self.starts = 0
        self.ends = 0
        service.on_message(self.messages.append)
        service.on_error(self.errors.append)
        service.on_stream(lambda text, mid: self.streams.append((text, mid)))
        service.on_tool_use(self.tool_uses.append)
        service.on_tool_result(self.tool_results.append)
        service.on_stream_start(self._start)
        service.on_stream_end(self._end)

    def _start(self) -> None:
        self.starts += 1

    def _end(self) -> None:
        self.ends += 1


def _make_service(tmp_path, **overrides) -> AssistantService:
    cli = tmp_path / "claude"
    cli.write_text("#!/bin/sh\n")
    settings = {
        "cli_path": str(cli),
        "inactivity_timeout_seconds": 2.0,
        "poll_interval_seconds": 0.02,
        "drain_grace_seconds": 0.2,
    }
    settings.update(overrides)
    return AssistantService(
        AssistantConfig(**settings), shell_locator=PosixShellLocator(),
    )


def _delta(text: str) -> dict:
    return {
        "type": "stream_event",
        "event": {
            "type": "content_block_delta",
            "delta": {"type": "text_delta", "text": text},
        },
    }


def _args_of(mock_exec) -> tuple:
    args, _ = mock_exec.call_args
    return args


# ── end-to-end turns ──


@pytest.mark.asyncio
async def test_streamed_reply_is_delivered_once(tmp_path) -> None:
    service = _make_service(tmp_path)
    outcome = _Outcome(service)
    proc = _FakeProcess([
        {"type": "system", "subtype": "init", "session_id": SESSION},
        _delta("Hello "),
        _delta("world"),
        {"type": "assistant",
         "message": {"content": [{"type": "text", "text": "Hello world"}]}},
        {"type": "result", "result": "Hello world", "session_id": SESSION},
    ])

    with _patch_exec(proc):
        await service.send_message("hi", "conv-1")

    assert [text for text, _ in outcome.streams] == ["Hello ", "Hello world"]
    assert len(outcome.messages) == 1
    message = outcome.messages[0]
    assert message.content == "Hello world"
    assert message.role is MessageRole.ASSISTANT
    assert message.is_streaming is False
    assert {mid for _, mid in outcome.streams} == {message.id}
    assert outcome.errors == []
    assert (outcome.starts, outcome.ends) == (1, 1)
    assert service.session_map.get("conv-1") == SESSION
    assert service.busy is False
    proc.stdin.write.assert_called_once_with(b"hi")
    proc.stdin.close.assert_called_once()


@pytest.mark.asyncio
async def test_blocked_command_fails_turn_and_kills_process(tmp_path) -> None:
    service = _make_service(tmp_path, blocked_commands_unix="rm -rf")
    outcome = _Outcome(service)
    proc = _FakeProcess([
        {"type": "tool_use", "id": "tu_1", "name": "Bash",
         "input": {"command": "rm -rf /"}},
        _delta("should never arrive"),
    ], hang=True)

    with _patch_exec(proc):
        await service.send_message("clean up", "conv-1")

    assert proc.killed is True
    assert outcome.tool_uses == []
    assert outcome.messages == []
    assert len(outcome.errors) == 1
    error = outcome.errors[0]
    assert isinstance(error, CommandBlockedError)
    assert "rm -rf" in str(error)
    assert outcome.ends == 1


@pytest.mark.asyncio
async def test_disabled_blocklist_lets_command_through(tmp_path) -> None:
    service = _make_service(tmp_path, enable_blocklist=False)
    outcome = _Outcome(service)
    proc = _FakeProcess([
        {"type": "tool_use", "id": "tu_1", "name": "Bash",
         "input": {"command": "rm -rf build"}},
        {"type": "user", "message": {"content": [
            {"type": "tool_result", "tool_use_id": "tu_1", "content": "ok"},
        ]}},
        {"type": "result", "result": "Removed."},
    ])

    with _patch_exec(proc):
        await service.send_message("clean up", "conv-1")

    assert [block.name for block in outcome.tool_uses] == ["Bash"]
    assert [block.content for block in outcome.tool_results] == ["ok"]
    assert outcome.messages[0].content == "Removed."


@pytest.mark.asyncio
async def test_unauthenticated_cli_exit_is_classified(tmp_path) -> None:
    service = _make_service(tmp_path)
    outcome = _Outcome(service)
    proc = _FakeProcess(
        [], stderr="Error: not authenticated. Run claude auth login.", returncode=1,
    )

    with _patch_exec(proc):
        await service.send_message("hi", "conv-1")

    assert outcome.messages == []
    error = outcome.errors[0]
    assert isinstance(error, CliExitError)
    assert error.exit_code == 1
    assert "claude auth login" in str(error)
    assert "not authenticated" in str(error)


@pytest.mark.asyncio
async def test_empty_output_reports_no_structured_stream(tmp_path) -> None:
    service = _make_service(tmp_path)
    outcome = _Outcome(service)

    with _patch_exec(_FakeProcess([])):
        await service.send_message("hi", "conv-1")

    error = outcome.errors[0]
    assert isinstance(error, EmptyReplyError)
    assert error.saw_structured_event is False
    assert "No structured stream output was received." in str(error)


@pytest.mark.asyncio
async def test_events_without_text_report_empty_reply(tmp_path) -> None:
    service = _make_service(tmp_path)
    outcome = _Outcome(service)
    proc = _FakeProcess(
        [{"type": "system", "subtype": "init"}], stderr="warning: slow network",
    )

    with _patch_exec(proc):
        await service.send_message("hi", "conv-1")

    error = outcome.errors[0]
    assert isinstance(error, EmptyReplyError)
    assert "Received stream events but no assistant text." in str(error)
    assert "Details: warning: slow network" in str(error)


@pytest.mark.asyncio
async def test_error_event_fails_turn(tmp_path) -> None:
    service = _make_service(tmp_path)
    outcome = _Outcome(service)
    proc = _FakeProcess([{"type": "error", "error": {"message": "overloaded"}}])

    with _patch_exec(proc):
        await service.send_message("hi", "conv-1")

    assert isinstance(outcome.errors[0], CliProtocolError)
    assert str(outcome.errors[0]) == "Claude CLI error: overloaded"
    assert outcome.messages == []


@pytest.mark.asyncio
async def test_abort_mid_stream_is_silent(tmp_path) -> None:
    service = _make_service(tmp_path)
    outcome = _Outcome(service)

    def on_stream(text: str, message_id: str) -> None:
        outcome.streams.append((text, message_id))
        service.abort()

    service.on_stream(on_stream)
    proc = _FakeProcess([_delta("partial")], hang=True)

    with _patch_exec(proc):
        await service.send_message("hi", "conv-1")

    assert proc.killed is True
    assert outcome.messages == []
    assert outcome.errors == []
    assert outcome.ends == 1
    assert service.busy is False


@pytest.mark.asyncio
async def test_second_send_while_busy_is_ignored(tmp_path) -> None:
    service = _make_service(tmp_path)
    outcome = _Outcome(service)
    proc = _FakeProcess([], hang=True)

    with _patch_exec(proc) as mock_exec:
        first = asyncio.create_task(service.send_message("one", "conv-1"))
        for _ in range(50):
            await asyncio.sleep(0.01)
            if mock_exec.call_count:
                break
        assert service.busy is True

        await service.send_message("two", "conv-1")
        assert mock_exec.call_count == 1
        assert outcome.starts == 1

        service.abort()
        await first

    assert outcome.messages == []
    assert outcome.errors == []
    assert service.busy is False


@pytest.mark.asyncio
async def test_inactivity_timeout_kills_process(tmp_path) -> None:
    service = _make_service(tmp_path, inactivity_timeout_seconds=0.2)
    outcome = _Outcome(service)
    proc = _FakeProcess([], hang=True)

    with _patch_exec(proc):
        await service.send_message("hi", "conv-1")

    assert proc.killed is True
    assert isinstance(outcome.errors[0], CliTimeoutError)
    assert "of inactivity" in str(outcome.errors[0])
    assert outcome.messages == []


@pytest.mark.asyncio
async def test_steady_output_never_times_out(tmp_path) -> None:
    service = _make_service(tmp_path, inactivity_timeout_seconds=0.3)
    outcome = _Outcome(service)
    proc = _FakeProcess([_delta("tick ") for _ in range(6)], delay=0.1)

    with _patch_exec(proc):
        await service.send_message("hi", "conv-1")

    assert outcome.errors == []
    assert outcome.messages[0].content == "tick " * 6
    assert proc.killed is False


@pytest.mark.asyncio
async def test_lines_split_across_chunks_and_trailing_line(tmp_path) -> None:
    service = _make_service(tmp_path)
    outcome = _Outcome(service)
    line = json.dumps(_delta("joined ")).encode()
    tail = json.dumps(_delta("tail")).encode()
    proc = _FakeProcess([line[:10], line[10:] + b"\n", tail])

    with _patch_exec(proc):
        await service.send_message("hi", "conv-1")

    assert outcome.messages[0].content == "joined tail"


@pytest.mark.asyncio
async def test_non_json_output_is_streamed_as_text(tmp_path) -> None:
    service = _make_service(tmp_path)
    outcome = _Outcome(service)

    with _patch_exec(_FakeProcess(["plain text reply"])):
        await service.send_message("hi", "conv-1")

    assert outcome.messages[0].content == "plain text reply\n"


@pytest.mark.asyncio
async def test_stdin_failure_is_reported(tmp_path) -> None:
    service = _make_service(tmp_path)
    outcome = _Outcome(service)
    proc = _FakeProcess([], hang=True)
    proc.stdin.drain.side_effect = BrokenPipeError("pipe closed")

    with _patch_exec(proc):
        await service.send_message("hi", "conv-1")

    assert isinstance(outcome.errors[0], StdinWriteError)
    assert "pipe closed" in str(outcome.errors[0])
    assert proc.killed is True
    assert service.busy is False


@pytest.mark.asyncio
async def test_spawn_failure_is_reported(tmp_path) -> None:
    service = _make_service(tmp_path)
    outcome = _Outcome(service)

    with patch(
        "asyncio.create_subprocess_exec",
        side_effect=PermissionError("permission denied"),
    ):
        await service.send_message("hi", "conv-1")

    assert isinstance(outcome.errors[0], ExecutableNotFoundError)
    assert "permission denied" in str(outcome.errors[0])
    assert (outcome.starts, outcome.ends) == (1, 1)


@pytest.mark.asyncio
async def test_missing_cli_path_is_reported(tmp_path) -> None:
    service = _make_service(tmp_path, cli_path=str(tmp_path / "missing" / "claude"))
    outcome = _Outcome(service)

    with patch("asyncio.create_subprocess_exec") as mock_exec:
        await service.send_message("hi", "conv-1")

    mock_exec.assert_not_called()
    assert isinstance(outcome.errors[0], ExecutableNotFoundError)
    assert "does not exist" in str(outcome.errors[0])


@pytest.mark.asyncio
async def test_async_callbacks_and_failing_subscribers(tmp_path) -> None:
    service = _make_service(tmp_path)
    received: list[str] = []

    async def on_message(message: ChatMessage) -> None:
        received.append(message.content)

    def on_stream(text: str, message_id: str) -> None:
        raise RuntimeError("subscriber bug")

    service.on_message(on_message)
    service.on_stream(on_stream)

    with _patch_exec(_FakeProcess([_delta("still delivered")])):
        await service.send_message("hi", "conv-1")

    assert received == ["still delivered"]


@pytest.mark.asyncio
async def test_second_turn_resumes_captured_session(tmp_path) -> None:
    service = _make_service(tmp_path)
    _Outcome(service)
    first = _FakeProcess([
        {"type": "system", "session_id": SESSION},
        _delta("one"),
    ])
    second = _FakeProcess([_delta("two")])

    with _patch_exec(first, second) as mock_exec:
        await service.send_message("first", "conv-1")
        assert "--resume" not in _args_of(mock_exec)
        await service.send_message("second", "conv-1")

    args = _args_of(mock_exec)
    assert args[args.index("--resume") + 1] == SESSION


@pytest.mark.asyncio
async def test_spawn_receives_env_overrides_and_cwd(tmp_path) -> None:
    workdir = tmp_path / "notes"
    workdir.mkdir()
    service = _make_service(
        tmp_path,
        working_directory=str(workdir),
        environment_variables="export SIDEKICK_TEST_VAR='on'\n# ignored",
    )
    _Outcome(service)

    with _patch_exec(_FakeProcess([_delta("ok")])) as mock_exec:
        await service.send_message("hi", "conv-1")

    _, kwargs = mock_exec.call_args
    assert kwargs["env"]["SIDEKICK_TEST_VAR"] == "on"
    assert kwargs["cwd"] == str(workdir)
    assert _args_of(mock_exec)[0] == str(tmp_path / "claude")


# ── argument and prompt building ──


def test_build_args_defaults(tmp_path) -> None:
    service = _make_service(tmp_path)
    args = service.build_args("conv-1")
    assert args[:7] == [
        "--print", "--verbose",
        "--output-format", "stream-json",
        "--input-format", "text",
        "--include-partial-messages",
    ]
    assert "--model" not in args
    assert "--resume" not in args
    assert args[args.index("--setting-sources") + 1] == "user,project"
    assert args[-3:] == [
        "--permission-mode", "bypassPermissions", "--dangerously-skip-permissions",
    ]


@pytest.mark.parametrize(
    "mode,expected",
    [
        ("plan", ["--permission-mode", "plan"]),
        ("normal", ["--permission-mode", "acceptEdits"]),
        ("yolo", ["--permission-mode", "bypassPermissions",
                  "--dangerously-skip-permissions"]),
        ("bogus", ["--permission-mode", "bypassPermissions",
                   "--dangerously-skip-permissions"]),
    ],
)
def test_permission_mode_args(tmp_path, mode: str, expected: list[str]) -> None:
    service = _make_service(tmp_path, permission_mode=mode)
    args = service.build_args("conv-1")
    assert args[-len(expected):] == expected
    if mode == "plan":
        assert "--dangerously-skip-permissions" not in args


def test_build_args_model_and_project_settings(tmp_path) -> None:
    service = _make_service(tmp_path, model="sonnet", load_user_settings=False)
    args = service.build_args("conv-1")
    assert args[args.index("--model") + 1] == "sonnet"
    assert args[args.index("--setting-sources") + 1] == "project"


def test_resume_only_for_valid_session_ids(tmp_path) -> None:
    service = _make_service(tmp_path)
    service.session_map.set("good", SESSION)
    service.session_map.set("bad", "session-123")
    good = service.build_args("good")
    assert good[good.index("--resume") + 1] == SESSION
    assert "--resume" not in service.build_args("bad")


def test_system_prompt_sections(tmp_path) -> None:
    service = _make_service(
        tmp_path,
        user_name="Sam",
        system_prompt="Prefer short answers.",
        blocked_commands_unix="rm -rf\nchmod 777",
        blocked_commands_windows="",
    )
    prompt = service.build_system_prompt("Summarize in bullets.")
    parts = prompt.split("\n\n")
    assert parts[0].startswith("You are Claude")
    assert "Windows:\n- (none)\nUnix:\n- rm -rf\n- chmod 777" in prompt
    assert "The user's name is Sam." in parts
    assert "Prefer short answers." in parts
    assert prompt.endswith(
        "# Skill Instructions\nFollow these instructions precisely:\n\n"
        "Summarize in bullets."
    )

    args = service.build_args("conv-1", "Summarize in bullets.")
    assert args[args.index("--system-prompt") + 1] == prompt


def test_system_prompt_without_optional_sections(tmp_path) -> None:
    service = _make_service(tmp_path, enable_blocklist=False)
    prompt = service.build_system_prompt()
    assert "Command Safety" not in prompt
    assert "user's name" not in prompt
    assert "Skill Instructions" not in prompt


@pytest.mark.parametrize(
    "code,stderr,expected",
    [
        (1, "Claude Code on Windows requires git-bash", "requires Git Bash"),
        (1, "Unable to find CLAUDE_CODE_GIT_BASH_PATH", "could not access"),
        (1, "Session ID abc is already in use", "locked by another Claude process"),
        (1, "Invalid JSON provided to --settings", "runtime settings JSON"),
        (1, "Error: --output-format=stream-json requires --verbose",
         "requires --verbose"),
        (1, "error: unknown option '--thinking-budget'", "--thinking-budget"),
        (1, "error: unknown option '--max-turns'", "--max-turns"),
        (1, "Not authenticated", "not authenticated"),
        (2, "something odd", "Claude CLI exited with code 2: something odd"),
        (-9, "", "exit -9"),
        (3, "  ", "Claude CLI exited with code 3 without a readable error message."),
    ],
)
def test_format_cli_exit_error(code: int, stderr: str, expected: str) -> None:
    assert expected in format_cli_exit_error(code, stderr)


# ── titles and lifecycle ──


@pytest.mark.asyncio
async def test_generate_conversation_title(tmp_path) -> None:
    service = _make_service(tmp_path)
    outcome = _Outcome(service)
    service.session_map.set("conv-1", SESSION)
    proc = _FakeProcess([
        {"type": "system", "session_id": "aaaaaaaa-bbbb-4ccc-8ddd-eeeeeeeeeeee"},
        {"type": "result", "result": "\"Title: Fix login bug\"\nextra"},
    ])

    with _patch_exec(proc) as mock_exec:
        title = await service.generate_conversation_title(
            "My login fails", "Let's check the auth flow.",
        )

    assert title == "Fix login bug"
    args = _args_of(mock_exec)
    assert "--resume" not in args
    assert "--include-partial-messages" not in args
    assert args[args.index("--permission-mode") + 1] == "plan"
    written = proc.stdin.write.call_args[0][0].decode()
    assert "My login fails" in written
    assert written.endswith("Title:")
    # Title runs never touch the chat callbacks or session map.
    assert outcome.streams == [] and outcome.starts == 0
    assert service.session_map.get("conv-1") == SESSION
    assert len(service.session_map) == 1


@pytest.mark.asyncio
async def test_generate_conversation_title_uses_assistant_text_once(tmp_path) -> None:
    service = _make_service(tmp_path)
    proc = _FakeProcess([
        {"type": "system", "session_id": "aaaaaaaa-bbbb-4ccc-8ddd-eeeeeeeeeeee"},
        {
            "type": "assistant",
            "message": {"content": [{"type": "text", "text": "Fix login bug"}]},
        },
        {"type": "result", "result": "Fix login bug"},
    ])

    with _patch_exec(proc):
        title = await service.generate_conversation_title(
            "My login fails", "Let's check the auth flow.",
        )

    assert title == "Fix login bug"


@pytest.mark.asyncio
async def test_generate_conversation_title_failure_returns_none(tmp_path) -> None:
    service = _make_service(tmp_path)

    with _patch_exec(_FakeProcess([], stderr="boom", returncode=1)):
        assert await service.generate_conversation_title("a", "b") is None

    with patch("asyncio.create_subprocess_exec", side_effect=OSError("nope")):
        assert await service.generate_conversation_title("a", "b") is None


@pytest.mark.asyncio
async def test_shutdown_clears_sessions_and_callbacks(tmp_path) -> None:
    service = _make_service(tmp_path)
    outcome = _Outcome(service)
    service.session_map.set("conv-1", SESSION)

    service.shutdown()

    assert len(service.session_map) == 0
    with _patch_exec(_FakeProcess([_delta("after shutdown")])):
        await service.send_message("hi", "conv-1")
    assert outcome.messages == []
    assert outcome.starts == 0


def test_update_settings_applies_to_next_turn(tmp_path) -> None:
    service = _make_service(tmp_path)
    service.update_settings(service.config.with_overrides(model="opus"))
    args = service.build_args("conv-1")
    assert args[args.index("--model") + 1] == "opus"


@pytest.mark.asyncio
async def test_bare_content_block_deltas(tmp_path) -> None:
    service = _make_service(tmp_path)
    outcome = _Outcome(service)
    proc = _FakeProcess([
        {"type": "content_block_delta",
         "delta": {"type": "text_delta", "text": "Hello"}},
        {"type": "content_block_delta",
         "delta": {"type": "text_delta", "text": " world"}},
    ])

    with _patch_exec(proc):
        await service.send_message("hi", "conv-1")

    assert outcome.messages[0].content == "Hello world"


@pytest.mark.asyncio
async def test_lowercase_bash_tool_is_gated(tmp_path) -> None:
    service = _make_service(tmp_path, blocked_commands_unix="rm -rf")
    outcome = _Outcome(service)
    proc = _FakeProcess([
        {"type": "tool_use", "id": "t1", "name": "bash",
         "input": {"command": "rm -rf /"}},
    ])

    with _patch_exec(proc):
        await service.send_message("hi", "conv-1")

    assert outcome.tool_uses == []
    assert isinstance(outcome.errors[0], CommandBlockedError)
    assert outcome.errors[0].rule == "rm -rf"
