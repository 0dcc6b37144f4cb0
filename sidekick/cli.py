"""Terminal host for the assistant engine.

Usage:
    python -m sidekick "Summarize the notes in this folder"
    python -m sidekick --permission-mode plan --title "Plan a refactor"
    echo "Explain this error" | python -m sidekick --config sidekick.yaml
    python -m sidekick --list-models
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from logging.handlers import RotatingFileHandler

import yaml
from rich.console import Console
from rich.markdown import Markdown as RichMarkdown
from rich.text import Text

from sidekick.engine.config import AssistantConfig
from sidekick.engine.env_vars import (
    get_current_model_from_environment,
    get_models_from_environment,
    parse_environment_variables,
)
from sidekick.engine.models import (
    ChatMessage,
    PermissionMode,
    ToolResultBlock,
    ToolUseBlock,
)
from sidekick.engine.service import AssistantService
from sidekick.engine.yaml_config import load_yaml_config
from sidekick.shared.services.process_cleanup import cleanup_stale_runtime_processes
from sidekick.shared.services.session_naming import fallback_title

logger = logging.getLogger(__name__)

EXIT_ERROR = 1
EXIT_INTERRUPTED = 130


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sidekick",
        description="Chat with the Claude CLI from a terminal",
    )
    parser.add_argument(
        "prompt",
        nargs="?",
        default=None,
        help="Message to send (read from stdin when omitted)",
    )
    parser.add_argument(
        "--config", "-c",
        default=None,
        help="YAML settings file with an 'assistant:' section",
    )
    parser.add_argument("--model", default=None, help="Model id (default: auto)")
    parser.add_argument(
        "--permission-mode",
        choices=[mode.value for mode in PermissionMode],
        default=None,
        help="Tool permission policy (default: yolo)",
    )
    parser.add_argument(
        "--cwd",
        default=None,
        help="Working directory for the CLI (default: current dir)",
    )
    parser.add_argument("--cli-path", default=None, help="Path to the claude executable")
    parser.add_argument(
        "--conversation",
        default="terminal",
        help="Conversation id used for session bookkeeping",
    )
    parser.add_argument(
        "--title",
        action="store_true",
        help="Also print a short title for the exchange",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument("--log-file", default=None, help="Also log to this file")
    parser.add_argument(
        "--reap-stale",
        action="store_true",
        help="Kill orphaned Claude CLI processes before starting",
    )
    parser.add_argument(
        "--list-models",
        action="store_true",
        help="List models named by ANTHROPIC_*MODEL variables and exit",
    )
    return parser


def configure_logging(verbose: bool, log_file: str | None = None) -> None:
    if verbose:
        level = logging.DEBUG
    else:
        level_name = os.getenv("SIDEKICK_LOG_LEVEL", "WARNING").upper()
        level = getattr(logging, level_name, logging.WARNING)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
    )
    if log_file:
        file_handler = RotatingFileHandler(
            log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
        )
        file_handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
        ))
        logging.getLogger().addHandler(file_handler)


def _model_environment(config: AssistantConfig) -> dict[str, str]:
    return {**os.environ, **parse_environment_variables(config.environment_variables)}


def load_config(args: argparse.Namespace) -> AssistantConfig:
    """Environment, then YAML file, then command-line flags.

    With no model chosen anywhere, ANTHROPIC_*MODEL variables (process
    environment or configured overrides) pick one.
    """
    config = AssistantConfig.from_env()
    if args.config:
        config = load_yaml_config(args.config, base=config)
    config = config.with_overrides(
        model=args.model,
        permission_mode=args.permission_mode,
        working_directory=args.cwd,
        cli_path=args.cli_path,
    )
    if config.model == "auto":
        env_model = get_current_model_from_environment(_model_environment(config))
        if env_model:
            logger.info("Using model %s from the environment", env_model)
            config = config.with_overrides(model=env_model)
    return config


def print_models(config: AssistantConfig, console: Console) -> None:
    options = get_models_from_environment(_model_environment(config))
    if not options:
        console.print("No ANTHROPIC_*MODEL variables set; the CLI picks the model.")
        return
    for option in options:
        console.print(Text.assemble(
            (option.label, "bold"), f"  {option.value}  ", (option.description, "dim"),
        ))


def _read_prompt(inline: str | None) -> str | None:
    if inline:
        return inline
    if not sys.stdin.isatty():
        return sys.stdin.read().strip() or None
    return None


async def run_prompt(
    service: AssistantService,
    prompt: str,
    conversation_id: str,
    *,
    console: Console,
    status: Console,
    with_title: bool = False,
) -> int:
    """Send one message and render the outcome; return the exit code."""
    outcome: dict[str, object] = {}
    shown = 0

    def on_stream(text: str, message_id: str) -> None:
        nonlocal shown
        status.print(text[shown:], end="", markup=False, highlight=False)
        shown = len(text)

    def on_tool_use(block: ToolUseBlock) -> None:
        status.print(Text(f"\n[tool] {block.name} {block.input}", style="dim cyan"))

    def on_tool_result(block: ToolResultBlock) -> None:
        style = "red" if block.is_error else "dim"
        status.print(Text(f"[result] {block.content[:400]}", style=style))

    service.on_stream(on_stream)
    service.on_tool_use(on_tool_use)
    service.on_tool_result(on_tool_result)
    service.on_message(lambda message: outcome.setdefault("message", message))
    service.on_error(lambda exc: outcome.setdefault("error", exc))

    await service.send_message(prompt, conversation_id)
    if shown:
        status.print()

    error = outcome.get("error")
    if error is not None:
        console.print(Text(f"Error: {error}", style="bold red"))
        return EXIT_ERROR

    message = outcome.get("message")
    if not isinstance(message, ChatMessage):
        return EXIT_INTERRUPTED
    console.print(RichMarkdown(message.content))

    if with_title:
        title = await service.generate_conversation_title(prompt, message.content)
        console.print(Text(f"Title: {title or fallback_title(prompt)}", style="bold"))
    return 0


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose, args.log_file)

    try:
        config = load_config(args)
    except (OSError, TypeError, ValueError, yaml.YAMLError) as exc:
        print(f"Error: Cannot load config: {exc}")
        sys.exit(EXIT_ERROR)

    if args.list_models:
        print_models(config, Console())
        sys.exit(0)

    prompt = _read_prompt(args.prompt)
    if not prompt:
        print("Error: Provide a prompt argument or pipe one on stdin.")
        sys.exit(EXIT_ERROR)

    if args.reap_stale:
        reaped = cleanup_stale_runtime_processes()
        if reaped:
            logger.info("Reaped %d stale CLI process(es)", reaped)

    service = AssistantService(config)
    console = Console()
    status = Console(stderr=True)
    try:
        code = asyncio.run(run_prompt(
            service, prompt, args.conversation,
            console=console, status=status, with_title=args.title,
        ))
    except KeyboardInterrupt:
        service.abort()
        status.print("\nInterrupted.")
        sys.exit(EXIT_INTERRUPTED)
    finally:
        service.shutdown()
    sys.exit(code)


if __name__ == "__main__":
    main()
