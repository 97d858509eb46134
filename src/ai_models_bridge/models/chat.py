"""Data models for conversation threads and their messages."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


def now_ms() -> int:
    """Return the current wall-clock time in integer milliseconds."""
    return int(time.time() * 1000)


class MessageRole(Enum):
    """Author of a chat message."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


@dataclass(frozen=True)
class ChatMessage:
    """A single message inside a conversation thread.

    Messages are immutable once appended; only the provider-owned
    ``metadata`` mapping may be amended afterwards (for example to attach
    suggested follow-ups to the last assistant reply).
    """

    id: str
    role: MessageRole
    content: str
    timestamp: int
    reasoning_content: str | None = None
    metadata: dict[str, Any] | None = None

    @classmethod
    def create(
        cls,
        role: MessageRole,
        content: str,
        reasoning_content: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> ChatMessage:
        """Build a message with a fresh id and the current timestamp."""
        return cls(
            id=str(uuid.uuid4()),
            role=role,
            content=content,
            timestamp=now_ms(),
            reasoning_content=reasoning_content,
            metadata=metadata,
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the persisted (camelCase) form."""
        data: dict[str, Any] = {
            "id": self.id,
            "role": self.role.value,
            "content": self.content,
            "timestamp": self.timestamp,
        }
        if self.reasoning_content is not None:
            data["reasoningContent"] = self.reasoning_content
        if self.metadata is not None:
            data["metadata"] = self.metadata
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChatMessage:
        """Deserialize from the persisted form.

        Raises:
            KeyError: If a required field is missing.
            ValueError: If the role is unknown.
        """
        return cls(
            id=str(data["id"]),
            role=MessageRole(data["role"]),
            content=data.get("content") or "",
            timestamp=int(data.get("timestamp") or 0),
            reasoning_content=data.get("reasoningContent"),
            metadata=data.get("metadata"),
        )


@dataclass
class ChatThread:
    """One persisted conversation tied to one backend.

    ``metadata`` is backend specific and must satisfy the owning model's
    validity predicate; threads that fail it are purged on validation.
    """

    id: str
    title: str
    model_name: str
    messages: list[ChatMessage] = field(default_factory=list)
    created_at: int = field(default_factory=now_ms)
    updated_at: int = field(default_factory=now_ms)
    metadata: dict[str, Any] | None = None

    @property
    def last_assistant_message(self) -> ChatMessage | None:
        """Return the most recent assistant message, if any."""
        for message in reversed(self.messages):
            if message.role is MessageRole.ASSISTANT:
                return message
        return None

    def touch(self) -> None:
        """Advance ``updated_at`` to now, never moving it backwards."""
        self.updated_at = max(now_ms(), self.updated_at + 1)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the persisted (camelCase) form."""
        data: dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "messages": [message.to_dict() for message in self.messages],
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "modelName": self.model_name,
        }
        if self.metadata is not None:
            data["metadata"] = self.metadata
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChatThread:
        """Deserialize from the persisted form.

        Raises:
            KeyError: If a required field is missing.
            ValueError: If a message role is unknown.
        """
        return cls(
            id=str(data["id"]),
            title=data.get("title") or "",
            model_name=str(data["modelName"]),
            messages=[ChatMessage.from_dict(m) for m in data.get("messages") or []],
            created_at=int(data.get("createdAt") or 0),
            updated_at=int(data.get("updatedAt") or 0),
            metadata=data.get("metadata"),
        )


@dataclass(frozen=True)
class ImageAttachment:
    """An image (or file) supplied with a prompt."""

    filename: str
    content: bytes
    content_type: str = "application/octet-stream"
