"""Conversation id -> CLI resume token map."""
from __future__ import annotations

import logging
import re

logger = logging.getLogger(__name__)

_UUID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)


def is_valid_uuid(value: str | None) -> bool:
    return bool(value) and _UUID_RE.match(value) is not None


class SessionMap:
    """Maps a logical conversation to the CLI's own session id.

    Entries live as long as the engine instance; pruning conversations
    is the persistence layer's job.
    """

    def __init__(self) -> None:
        self._tokens: dict[str, str] = {}

    def get(self, conversation_id: str) -> str:
        return self._tokens.get(conversation_id, "")

    def set(self, conversation_id: str, token: str) -> None:
        self._tokens[conversation_id] = token

    def update(self, conversation_id: str, token: str) -> bool:
        """Store *token* if it differs from the current one."""
        if not token or self._tokens.get(conversation_id) == token:
            return False
        self._tokens[conversation_id] = token
        logger.info("Session id for conversation %s: %s", conversation_id, token)
        return True

    def resume_token(self, conversation_id: str) -> str | None:
        """Token usable with --resume, or None if absent or malformed."""
        token = self.get(conversation_id)
        if token and is_valid_uuid(token):
            return token
        if token:
            logger.debug(
                "Ignoring malformed session id for conversation %s: %r",
                conversation_id, token,
            )
        return None

    def clear(self) -> None:
        self._tokens.clear()

    def __contains__(self, conversation_id: object) -> bool:
        return conversation_id in self._tokens

    def __len__(self) -> int:
        return len(self._tokens)
