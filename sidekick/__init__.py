"""Sidekick: drive the Claude CLI as a streaming chat assistant."""

__version__ = "0.1.0"
