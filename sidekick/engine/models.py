"""Chat message, tool block and per-turn stream models."""
from __future__ import annotations

import random
import string
import time
from dataclasses import dataclass, field
from enum import Enum


def _now_ms() -> int:
    return int(time.time() * 1000)


def make_message_id() -> str:
    """Return an id of the form ``msg_<epoch-ms>_<6 base36 chars>``."""
    suffix = "".join(
        random.choices(string.ascii_lowercase + string.digits, k=6)
    )
    return f"msg_{_now_ms()}_{suffix}"


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class PermissionMode(str, Enum):
    """Coarse tool-execution policy passed to the CLI."""
    YOLO = "yolo"
    NORMAL = "normal"
    PLAN = "plan"

    @classmethod
    def parse(cls, value: object) -> PermissionMode:
        """Parse a configured value; unknown values mean unrestricted."""
        if isinstance(value, cls):
            return value
        raw = str(value or "").strip().lower()
        for mode in cls:
            if mode.value == raw:
                return mode
        return cls.YOLO


class ThinkingBudget(str, Enum):
    OFF = "off"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    MAX = "max"


THINKING_BUDGET_TOKENS: dict[str, int | None] = {
    ThinkingBudget.OFF.value: None,
    ThinkingBudget.LOW.value: 1024,
    ThinkingBudget.MEDIUM.value: 4096,
    ThinkingBudget.HIGH.value: 10240,
    ThinkingBudget.MAX.value: 32768,
}


@dataclass(frozen=True)
class ChatMessage:
    """One turn of conversation.

    Frozen: a message handed to callers is final. While a reply is
    still streaming the engine only reports accumulated text.
    """
    role: MessageRole
    content: str
    id: str = field(default_factory=make_message_id)
    timestamp: int = field(default_factory=_now_ms)
    is_streaming: bool = False


@dataclass(frozen=True)
class ToolUseBlock:
    id: str
    name: str
    input: str
    type: str = "tool_use"


@dataclass(frozen=True)
class ToolResultBlock:
    tool_use_id: str
    content: str
    is_error: bool = False
    type: str = "tool_result"


@dataclass
class StreamState:
    """Per-turn state used to avoid replaying text already streamed."""
    conversation_id: str
    saw_text_delta: bool = False
    # Set once an assistant message contributed text; the final result
    # event repeats it when partial messages are off.
    saw_assistant_text: bool = False
    saw_structured_event: bool = False
