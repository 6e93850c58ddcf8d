"""Stored conversation records."""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field

from deskagent.shared.models.message import ContentBlock, MessageRole, now_ms

DEFAULT_TITLE = "New Chat"


def new_conversation_id() -> str:
    return str(uuid.uuid4())


@dataclass
class Conversation:
    id: str = field(default_factory=new_conversation_id)
    title: str = DEFAULT_TITLE
    created_at: int = field(default_factory=now_ms)
    updated_at: int = 0

    def __post_init__(self) -> None:
        if self.updated_at < self.created_at:
            self.updated_at = self.created_at


@dataclass
class StoredMessage:
    """A finalized message as persisted for a conversation."""
    id: str
    conversation_id: str
    role: MessageRole
    content: list[ContentBlock]
    timestamp: int


@dataclass
class StoreStats:
    conversations: int
    messages: int
    database_bytes: int
