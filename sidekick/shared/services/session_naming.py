"""Conversation titles derived from the first exchange.

The model call itself lives in AssistantService.generate_conversation_title;
this module builds its prompt and cleans its output. A deterministic
fallback topic is available when no model title can be produced.
"""
from __future__ import annotations

import re

MAX_TITLE_CHARS = 48
_MAX_USER_CHARS = 1000
_MAX_ASSISTANT_CHARS = 2000

TITLE_SYSTEM_PROMPT = (
    "You generate short conversation titles. Read the exchange and reply "
    "with a single concise title (at most 8 words or 20 CJK characters) "
    "in the language of the user's message. Return ONLY the title: no "
    "quotes, no punctuation at the end, no explanation, no tool use."
)

_QUOTE_CHARS = "\"'`“”‘’「」『』《》"
_LABEL_RE = re.compile(r"^(?:title|标题)\s*[:：]\s*", re.IGNORECASE)
_MENTION_RE = re.compile(r"@\[[^\]]+\]")
_SENTENCE_SPLIT_RE = re.compile(r"[。！？!?\n]")
_CJK_WORD_RE = re.compile(r"[一-龥]{2,}")
_EN_WORD_RE = re.compile(r"[a-z][a-z0-9-]{2,}")
_STOPWORDS = frozenset({
    "please", "help", "about", "with", "this", "that", "what", "how",
    "why", "when", "where", "the", "and", "for", "can", "you",
})
DEFAULT_TITLE = "Chat"


def build_title_prompt(user_text: str, assistant_text: str) -> str:
    """Prompt body summarizing the first user/assistant exchange."""
    user = (user_text or "").strip()[:_MAX_USER_CHARS]
    assistant = (assistant_text or "").strip()[:_MAX_ASSISTANT_CHARS]
    return (
        "Write a title for this conversation.\n\n"
        f"User:\n{user}\n\n"
        f"Assistant:\n{assistant}\n\n"
        "Title:"
    )


def clean_title(raw_text: str | None) -> str | None:
    """Normalize model output into a plain title, or None if unusable."""
    if not raw_text:
        return None
    first_line = next(
        (line.strip() for line in raw_text.splitlines() if line.strip()),
        "",
    )
    title = first_line.strip(_QUOTE_CHARS).strip()
    title = _LABEL_RE.sub("", title)
    title = title.strip(_QUOTE_CHARS).strip()
    title = " ".join(title.split())
    if len(title) > MAX_TITLE_CHARS:
        title = title[:MAX_TITLE_CHARS].rstrip()
    return title or None


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 1].rstrip() + "…"


def fallback_title(user_text: str) -> str:
    """Deterministic topic from the first sentence of a user message."""
    cleaned = " ".join(_MENTION_RE.sub(" ", user_text or "").split())
    if not cleaned:
        return DEFAULT_TITLE

    first = next(
        (part.strip() for part in _SENTENCE_SPLIT_RE.split(cleaned) if part.strip()),
        cleaned,
    )
    cjk_words = _CJK_WORD_RE.findall(first)
    if cjk_words:
        return _truncate(" ".join(cjk_words[:3]), 20)

    words = [w for w in _EN_WORD_RE.findall(first.lower()) if w not in _STOPWORDS]
    if words:
        return _truncate(" ".join(words[:4]), 28)
    return _truncate(first, 24)


def should_auto_rename(title: str | None) -> bool:
    """True for placeholder titles a generated one may replace."""
    normalized = (title or "").strip()
    if not normalized:
        return True
    lower = normalized.lower()
    if lower == "chat" or lower.startswith("chat "):
        return True
    if normalized in {"会话", "新会话"} or re.fullmatch(r"会话\s*\d*", normalized):
        return True
    return bool(re.fullmatch(r"\d{2}/\d{2}(?:\s+\d{2}:\d{2})?", normalized))
