"""Parsing for ``KEY=VALUE`` environment override text.

Also derives model choices from the ``ANTHROPIC_*MODEL`` variables that
point the CLI at custom or proxied models.
"""
from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass

_EXPORT_PREFIX_RE = re.compile(r"^export\s+")
_DEFAULT_MODEL_KEY_RE = re.compile(r"ANTHROPIC_DEFAULT_(\w+)_MODEL")
_WORD_START_RE = re.compile(r"\b\w")

CUSTOM_MODEL_ENV_KEYS: tuple[str, ...] = (
    "ANTHROPIC_MODEL",
    "ANTHROPIC_DEFAULT_OPUS_MODEL",
    "ANTHROPIC_DEFAULT_SONNET_MODEL",
    "ANTHROPIC_DEFAULT_HAIKU_MODEL",
)

# Order in which a model variable wins when several are set.
_CURRENT_MODEL_KEYS: tuple[str, ...] = (
    "ANTHROPIC_MODEL",
    "ANTHROPIC_DEFAULT_HAIKU_MODEL",
    "ANTHROPIC_DEFAULT_SONNET_MODEL",
    "ANTHROPIC_DEFAULT_OPUS_MODEL",
)

_TYPE_PRIORITY = {"model": 4, "haiku": 3, "sonnet": 2, "opus": 1}


@dataclass(frozen=True)
class EnvModelOption:
    value: str
    label: str
    description: str


def parse_environment_variables(text: str | None) -> dict[str, str]:
    """Parse environment variables from a multi-line string.

    Supports an optional ``export`` prefix, ``#`` comments and
    single- or double-quoted values. Lines without a key are skipped.
    """
    env: dict[str, str] = {}
    if not text:
        return env

    for line in text.splitlines():
        entry = line.strip()
        if not entry or entry.startswith("#"):
            continue
        entry = _EXPORT_PREFIX_RE.sub("", entry)
        key, sep, value = entry.partition("=")
        key = key.strip()
        if not sep or not key:
            continue
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
            value = value[1:-1]
        env[key] = value
    return env


def _model_type(env_key: str) -> str:
    if env_key == "ANTHROPIC_MODEL":
        return "model"
    match = _DEFAULT_MODEL_KEY_RE.fullmatch(env_key)
    return match.group(1).lower() if match else env_key


def _model_label(value: str) -> str:
    if "/" in value:
        return value.rsplit("/", 1)[-1] or value
    return _WORD_START_RE.sub(lambda m: m.group().upper(), value.replace("-", " "))


def get_models_from_environment(env: Mapping[str, str]) -> list[EnvModelOption]:
    """Model options named by the ANTHROPIC_*MODEL variables in *env*.

    Variables sharing a value collapse into one option. Options are
    ordered by their highest-priority variable (``ANTHROPIC_MODEL``
    first, then haiku, sonnet, opus).
    """
    types_by_value: dict[str, list[str]] = {}
    for env_key in CUSTOM_MODEL_ENV_KEYS:
        value = env.get(env_key)
        if value:
            types_by_value.setdefault(value, []).append(_model_type(env_key))

    def priority(model_type: str) -> int:
        return _TYPE_PRIORITY.get(model_type, 0)

    ordered = sorted(
        types_by_value.items(),
        key=lambda item: max(priority(t) for t in item[1]),
        reverse=True,
    )
    return [
        EnvModelOption(
            value=value,
            label=_model_label(value),
            description="Custom model ({})".format(
                ", ".join(sorted(types, key=priority, reverse=True))
            ),
        )
        for value, types in ordered
    ]


def get_current_model_from_environment(env: Mapping[str, str]) -> str | None:
    """The model the environment prefers, or None when none is set."""
    for env_key in _CURRENT_MODEL_KEYS:
        if env.get(env_key):
            return env[env_key]
    return None
