"""Conversation, message, and attachment data models."""

from __future__ import annotations

import base64
import binascii
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Literal, Mapping

DEFAULT_TITLE = "New conversation"
_TITLE_WORDS = 6
_TITLE_MAX_CHARS = 50


def _utcnow() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""

    return datetime.now(timezone.utc)


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        # Epoch milliseconds, as written by older stores.
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    if isinstance(value, str) and value:
        return _parse_timestamp(datetime.fromisoformat(value))
    return _utcnow()


ChatRole = Literal["user", "assistant", "system"]
_ROLES: frozenset[str] = frozenset({"user", "assistant", "system"})


@dataclass(frozen=True, slots=True)
class Message:
    """Represents a single row of a conversation transcript."""

    id: str
    role: ChatRole
    content: str
    timestamp: datetime = field(default_factory=_utcnow)

    def __post_init__(self) -> None:
        if self.role not in _ROLES:
            raise ValueError(f"Unsupported message role: {self.role!r}")

    @classmethod
    def create(cls, role: ChatRole, content: str, *, timestamp: datetime | None = None) -> "Message":
        return cls(id=_new_id(role), role=role, content=content, timestamp=timestamp or _utcnow())

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the message for persistence."""

        return {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Message":
        return cls(
            id=str(payload.get("id") or _new_id(str(payload.get("role", "msg")))),
            role=payload["role"],
            content=str(payload.get("content") or ""),
            timestamp=_parse_timestamp(payload.get("timestamp")),
        )


@dataclass(frozen=True, slots=True)
class Conversation:
    """Immutable snapshot of a conversation.

    Mutating helpers return new snapshots so observers can keep references to
    older ones safely.
    """

    id: str
    title: str = ""
    messages: tuple[Message, ...] = ()
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def new(cls, conversation_id: str | None = None) -> "Conversation":
        now = _utcnow()
        return cls(id=conversation_id or _new_id("conv"), created_at=now, updated_at=now)

    def append(self, message: Message) -> "Conversation":
        return replace(self, messages=self.messages + (message,))

    def upsert(self, message: Message) -> "Conversation":
        """Replace the message sharing ``message.id`` or append it."""

        for index, existing in enumerate(self.messages):
            if existing.id == message.id:
                updated = self.messages[:index] + (message,) + self.messages[index + 1 :]
                return replace(self, messages=updated)
        return self.append(message)

    def without(self, message_id: str) -> "Conversation":
        remaining = tuple(message for message in self.messages if message.id != message_id)
        if len(remaining) == len(self.messages):
            return self
        return replace(self, messages=remaining)

    def history(self) -> list[Dict[str, str]]:
        """Return ``{role, content}`` pairs for prompt construction."""

        return [{"role": message.role, "content": message.content} for message in self.messages]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "messages": [message.to_dict() for message in self.messages],
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Conversation":
        messages: Iterable[Mapping[str, Any]] = payload.get("messages") or ()
        return cls(
            id=str(payload["id"]),
            title=str(payload.get("title") or ""),
            messages=tuple(Message.from_dict(item) for item in messages),
            created_at=_parse_timestamp(payload.get("created_at", payload.get("createdAt"))),
            updated_at=_parse_timestamp(payload.get("updated_at", payload.get("updatedAt"))),
        )


@dataclass(frozen=True, slots=True)
class AttachedFile:
    """Opaque binary payload handed over by a capture source or file picker.

    ``payload`` holds the base64 text exactly as providers expect to receive
    it; ``data`` decodes it back to bytes for multipart uploads.
    """

    id: str
    name: str
    mime_type: str
    payload: str
    size: int = 0

    @classmethod
    def from_bytes(cls, data: bytes, *, name: str, mime_type: str) -> "AttachedFile":
        return cls(
            id=_new_id("file"),
            name=name,
            mime_type=mime_type,
            payload=base64.b64encode(data).decode("ascii"),
            size=len(data),
        )

    @property
    def data(self) -> bytes:
        try:
            return base64.b64decode(self.payload, validate=False)
        except (binascii.Error, ValueError) as exc:
            raise ValueError(f"Attachment {self.name!r} does not carry valid base64 data") from exc

    @property
    def is_image(self) -> bool:
        return (self.mime_type or "").lower().startswith("image/")


def derive_title(text: str, *, max_words: int = _TITLE_WORDS, max_chars: int = _TITLE_MAX_CHARS) -> str:
    """Build a conversation title from the first words of ``text``."""

    words = (text or "").split()
    if not words:
        return DEFAULT_TITLE
    title = " ".join(words[:max_words])
    truncated = len(words) > max_words
    if len(title) > max_chars:
        title = title[:max_chars].rstrip()
        truncated = True
    return f"{title}…" if truncated else title


__all__ = [
    "AttachedFile",
    "ChatRole",
    "Conversation",
    "DEFAULT_TITLE",
    "Message",
    "derive_title",
]
