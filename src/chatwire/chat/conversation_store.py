"""Conversation persistence contract and reference adapters."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Dict, List, Protocol, runtime_checkable

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..ai.errors import PersistenceError
from ..utils.file_io import read_json, safe_filename, write_json
from .message_model import Conversation

LOGGER = logging.getLogger(__name__)
_DEFAULT_CONVERSATIONS_DIR = Path.home() / ".chatwire" / "conversations"


@runtime_checkable
class ConversationStore(Protocol):
    """Storage boundary used by the completion controller."""

    async def get_by_id(self, conversation_id: str) -> Conversation | None:
        """Return the stored conversation or ``None`` when it does not exist."""

    async def save(self, conversation: Conversation) -> None:
        """Persist ``conversation``; raises :class:`PersistenceError` on failure."""


class InMemoryConversationStore:
    """Dictionary-backed store with optional failure injection."""

    def __init__(self, conversations: Dict[str, Conversation] | None = None) -> None:
        self._conversations: Dict[str, Conversation] = dict(conversations or {})
        self.saves: List[Conversation] = []
        self.fail_next_saves = 0

    async def get_by_id(self, conversation_id: str) -> Conversation | None:
        return self._conversations.get(conversation_id)

    async def save(self, conversation: Conversation) -> None:
        if self.fail_next_saves > 0:
            self.fail_next_saves -= 1
            raise PersistenceError(details={"conversation_id": conversation.id})
        self._conversations[conversation.id] = conversation
        self.saves.append(conversation)

    def __contains__(self, conversation_id: object) -> bool:
        return conversation_id in self._conversations


class JsonConversationStore:
    """One JSON document per conversation inside ``root``.

    Writes are atomic. Transient ``OSError`` failures are retried a few times
    before surfacing as :class:`PersistenceError`.
    """

    def __init__(
        self,
        root: Path | str | None = None,
        *,
        max_attempts: int = 3,
        retry_min_seconds: float = 0.05,
        retry_max_seconds: float = 0.5,
    ) -> None:
        self._root = Path(root or _DEFAULT_CONVERSATIONS_DIR).expanduser()
        self._max_attempts = max(1, max_attempts)
        self._retry_min_seconds = retry_min_seconds
        self._retry_max_seconds = retry_max_seconds

    @property
    def root(self) -> Path:
        return self._root

    def path_for(self, conversation_id: str) -> Path:
        return self._root / f"{safe_filename(conversation_id)}.json"

    async def get_by_id(self, conversation_id: str) -> Conversation | None:
        path = self.path_for(conversation_id)
        try:
            async for attempt in self._retrying():
                with attempt:
                    return await asyncio.to_thread(self._read, path)
        except OSError as exc:
            raise PersistenceError(
                message="Failed to load conversation",
                details={"conversation_id": conversation_id, "reason": str(exc)},
            ) from exc
        return None

    async def save(self, conversation: Conversation) -> None:
        path = self.path_for(conversation.id)
        try:
            async for attempt in self._retrying():
                with attempt:
                    await asyncio.to_thread(write_json, path, conversation.to_dict())
        except OSError as exc:
            LOGGER.warning("Unable to save conversation %s to %s: %s", conversation.id, path, exc)
            raise PersistenceError(
                details={"conversation_id": conversation.id, "reason": str(exc)},
            ) from exc
        LOGGER.debug("Saved conversation %s (%d messages)", conversation.id, len(conversation.messages))

    async def list_conversations(self) -> list[Conversation]:
        """Return every readable conversation, most recently updated first."""

        return await asyncio.to_thread(self._list)

    def _read(self, path: Path) -> Conversation | None:
        try:
            payload = read_json(path)
        except FileNotFoundError:
            return None
        except json.JSONDecodeError as exc:
            LOGGER.warning("Conversation file %s is not valid JSON: %s", path, exc)
            return None
        if not isinstance(payload, dict):
            LOGGER.warning("Conversation file %s does not hold an object", path)
            return None
        return Conversation.from_dict(payload)

    def _list(self) -> list[Conversation]:
        if not self._root.exists():
            return []
        conversations: list[Conversation] = []
        for path in self._root.glob("*.json"):
            try:
                conversation = self._read(path)
            except (OSError, KeyError, ValueError) as exc:
                LOGGER.warning("Skipping unreadable conversation file %s: %s", path, exc)
                continue
            if conversation is not None:
                conversations.append(conversation)
        conversations.sort(key=lambda item: item.updated_at, reverse=True)
        return conversations

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential(multiplier=self._retry_min_seconds, max=self._retry_max_seconds),
            retry=retry_if_exception_type(OSError),
        )


__all__ = ["ConversationStore", "InMemoryConversationStore", "JsonConversationStore"]
