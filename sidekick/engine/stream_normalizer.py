"""Normalize the CLI's ``--output-format stream-json`` output.

Each stdout line is one JSON event (optionally SSE-framed). Events are
flattened into four kinds of callbacks: text appended, tool invoked,
tool result received, and session id observed (written straight into
the session map). ``error`` events and blocked commands raise.

Event types handled:
  stream_event: wrapper; the nested ``event`` is redispatched
  assistant: full message; text only if no deltas were seen
  user: carries tool_result blocks
  system: ignored
  content_block_start: tool_use blocks only
  content_block_delta: text_delta fragments
  result: final text, only if no delta or assistant text was seen
  tool_use / tool_result / error
"""
from __future__ import annotations

import json
import logging
from collections.abc import Callable
from typing import Any

from sidekick.shared.services.command_blocklist import (
    extract_command,
    match_blocked_rule,
)

from .errors import CliProtocolError, CommandBlockedError
from .models import StreamState, ToolResultBlock, ToolUseBlock
from .session_map import SessionMap

logger = logging.getLogger(__name__)

MAX_UNWRAP_DEPTH = 5

TextSink = Callable[[str], None]
ToolUseSink = Callable[[ToolUseBlock], None]
ToolResultSink = Callable[[ToolResultBlock], None]


def normalize_output_line(line: str) -> str | None:
    """Strip SSE framing; None for lines that carry no payload."""
    trimmed = line.strip()
    if not trimmed or trimmed == "[DONE]":
        return None
    if trimmed.startswith("event:") or trimmed.startswith(":"):
        return None
    if trimmed.startswith("data:"):
        payload = trimmed[5:].strip()
        if not payload or payload == "[DONE]":
            return None
        return payload
    return trimmed


def _non_blank(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


def extract_text_value(value: Any) -> str | None:
    """Best-effort text from a string or a text-bearing object."""
    if isinstance(value, str):
        return value
    if not isinstance(value, dict):
        return None

    for key in ("text", "result", "content"):
        if _non_blank(value.get(key)):
            return value[key]

    content = value.get("content")
    if isinstance(content, list):
        parts = [
            block["text"] for block in content
            if isinstance(block, dict) and _non_blank(block.get("text"))
        ]
        if parts:
            return "\n".join(parts)
    return None


def stringify_unknown(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, indent=2, ensure_ascii=False)
    except (TypeError, ValueError):
        return str(value)


def extract_tool_result_content(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for entry in content:
            if not isinstance(entry, dict):
                continue
            if entry.get("type") == "text" and isinstance(entry.get("text"), str):
                parts.append(entry["text"])
            else:
                parts.append(stringify_unknown(entry))
        return "\n".join(parts).strip()
    return stringify_unknown(content)


def extract_error_message(event: dict[str, Any]) -> str:
    error = event.get("error")
    if _non_blank(error):
        return f"Claude CLI error: {error}"
    if isinstance(error, dict):
        message = error.get("message")
        if not isinstance(message, str):
            message = stringify_unknown(error)
        return f"Claude CLI error: {message}"
    if _non_blank(event.get("message")):
        return f"Claude CLI error: {event['message']}"
    return f"Claude CLI error: {stringify_unknown(event)}"


class StreamNormalizer:
    """Turns raw stdout lines of one turn into callbacks."""

    def __init__(
        self,
        state: StreamState,
        session_map: SessionMap,
        *,
        on_text: TextSink,
        on_tool_use: ToolUseSink | None = None,
        on_tool_result: ToolResultSink | None = None,
        blocklist_rules: list[str] | None = None,
    ) -> None:
        self._state = state
        self._session_map = session_map
        self._on_text = on_text
        self._on_tool_use = on_tool_use
        self._on_tool_result = on_tool_result
        self._rules = list(blocklist_rules or [])

    @property
    def state(self) -> StreamState:
        return self._state

    def feed_line(self, line: str) -> None:
        """Process one raw output line.

        Lines that are not JSON objects are streamed verbatim.
        """
        normalized = normalize_output_line(line)
        if normalized is None:
            return
        try:
            event = json.loads(normalized)
        except (json.JSONDecodeError, ValueError):
            event = None
        if not isinstance(event, dict):
            self._append(normalized + "\n")
            return

        self._state.saw_structured_event = True
        self.handle_event(event)

    def handle_event(self, event: dict[str, Any], depth: int = 0) -> None:
        self._capture_session_id(event)

        etype = event.get("type")
        if etype == "stream_event" and isinstance(event.get("event"), dict):
            if depth >= MAX_UNWRAP_DEPTH:
                logger.warning(
                    "Dropping stream_event nested deeper than %d levels",
                    MAX_UNWRAP_DEPTH,
                )
                return
            self.handle_event(event["event"], depth + 1)
            return

        if not etype:
            self._append_fallback(event)
            return

        if etype == "assistant":
            self._handle_assistant(event)
        elif etype == "user":
            self._handle_user(event)
        elif etype == "system":
            return
        elif etype == "content_block_start":
            # Text arrives via content_block_delta; only tool starts matter.
            block = event.get("content_block")
            if isinstance(block, dict) and block.get("type") == "tool_use":
                self._emit_tool_use(block)
        elif etype == "content_block_delta":
            delta = event.get("delta")
            if (
                isinstance(delta, dict)
                and delta.get("type") == "text_delta"
                and delta.get("text")
            ):
                self._state.saw_text_delta = True
                self._append(str(delta["text"]))
        elif etype == "result":
            self._handle_result(event)
        elif etype == "tool_use":
            self._emit_tool_use(event)
        elif etype == "tool_result":
            self._emit_tool_result(event)
        elif etype == "error":
            raise CliProtocolError(extract_error_message(event))
        else:
            self._append_fallback(event)

    # ── per-type handlers ──

    def _handle_assistant(self, event: dict[str, Any]) -> None:
        message = event.get("message")
        if not message:
            return
        skip_text = self._state.saw_text_delta
        content = message.get("content") if isinstance(message, dict) else message

        if isinstance(content, list):
            for block in content:
                if not isinstance(block, dict):
                    continue
                btype = block.get("type")
                if btype == "text":
                    if not skip_text and block.get("text"):
                        self._state.saw_assistant_text = True
                        self._append(str(block["text"]))
                elif btype == "tool_use":
                    self._emit_tool_use(block)
                elif btype == "tool_result":
                    self._emit_tool_result(block)
            return

        if not skip_text:
            fallback = extract_text_value(
                content if content is not None else message
            )
            if fallback:
                self._state.saw_assistant_text = True
                self._append(fallback)

    def _handle_user(self, event: dict[str, Any]) -> None:
        message = event.get("message")
        if not isinstance(message, dict):
            return
        content = message.get("content")
        if not isinstance(content, list):
            return
        for block in content:
            if isinstance(block, dict) and block.get("type") == "tool_result":
                self._emit_tool_result(block)

    def _handle_result(self, event: dict[str, Any]) -> None:
        if self._state.saw_text_delta or self._state.saw_assistant_text:
            return
        result = event.get("result")
        if _non_blank(result):
            self._append(result)
        elif isinstance(result, dict):
            nested = extract_text_value(result)
            if nested:
                self._append(nested)

    # ── emitters ──

    def _capture_session_id(self, event: dict[str, Any]) -> None:
        session_id = event.get("session_id")
        if isinstance(session_id, str) and session_id:
            self._session_map.update(self._state.conversation_id, session_id)

    def _append(self, text: str) -> None:
        if text:
            self._on_text(text)

    def _append_fallback(self, event: dict[str, Any]) -> None:
        fallback = extract_text_value(event)
        if fallback:
            self._append(fallback)

    def _emit_tool_use(self, payload: dict[str, Any]) -> None:
        name = str(payload.get("name") or "")
        tool_input = payload.get("input")
        rule = match_blocked_rule(name, tool_input, self._rules)
        if rule is not None:
            raise CommandBlockedError(rule, extract_command(tool_input), name)
        if self._on_tool_use is not None:
            self._on_tool_use(ToolUseBlock(
                id=str(payload.get("id") or ""),
                name=name,
                input=stringify_unknown(tool_input),
            ))

    def _emit_tool_result(self, payload: dict[str, Any]) -> None:
        if self._on_tool_result is None:
            return
        self._on_tool_result(ToolResultBlock(
            tool_use_id=str(
                payload.get("tool_use_id") or payload.get("toolUseId") or ""
            ),
            content=extract_tool_result_content(payload.get("content")),
            is_error=payload.get("is_error") is True or payload.get("isError") is True,
        ))
