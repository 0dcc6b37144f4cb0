"""Assistant engine: one Claude CLI subprocess per chat turn."""
from .models import (
    ChatMessage,
    MessageRole,
    PermissionMode,
    StreamState,
    ThinkingBudget,
    ToolResultBlock,
    ToolUseBlock,
)
from .config import AssistantConfig
from .errors import (
    CliExitError,
    CliProtocolError,
    CliTimeoutError,
    CommandBlockedError,
    EmptyReplyError,
    ExecutableNotFoundError,
    SidekickError,
    StdinWriteError,
)

__all__ = [
    # Service (lazy import)
    "AssistantService",
    "StreamNormalizer",
    "SessionMap",
    # Models
    "ChatMessage",
    "MessageRole",
    "PermissionMode",
    "StreamState",
    "ThinkingBudget",
    "ToolResultBlock",
    "ToolUseBlock",
    # Config
    "AssistantConfig",
    "load_yaml_config",
    # Errors
    "CliExitError",
    "CliProtocolError",
    "CliTimeoutError",
    "CommandBlockedError",
    "EmptyReplyError",
    "ExecutableNotFoundError",
    "SidekickError",
    "StdinWriteError",
]


def __getattr__(name: str):
    if name == "AssistantService":
        from .service import AssistantService
        return AssistantService
    if name == "StreamNormalizer":
        from .stream_normalizer import StreamNormalizer
        return StreamNormalizer
    if name == "SessionMap":
        from .session_map import SessionMap
        return SessionMap
    if name == "load_yaml_config":
        from .yaml_config import load_yaml_config
        return load_yaml_config
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
