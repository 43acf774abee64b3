"""
ConversationStore ABC and implementations.

The streaming core never assumes a storage mechanism: it reads and writes
Conversation objects and calls `save()`. Swap FileConversationStore for
MemoryConversationStore in tests.
"""

from __future__ import annotations

import logging
import uuid
from abc import ABC, abstractmethod
from pathlib import Path

from .models import Conversation

log = logging.getLogger("chatrelay.store")


class ConversationStore(ABC):
    """Persistence abstraction for Conversation objects."""

    @abstractmethod
    def save(self, conversation: Conversation) -> None: ...

    @abstractmethod
    def load(self, conversation_id: str) -> Conversation:
        """Raises KeyError when missing."""

    @abstractmethod
    def list(self) -> list[Conversation]: ...

    @abstractmethod
    def delete(self, conversation_id: str) -> None: ...

    def create(
        self,
        provider_type: str,
        model: str,
        title: str | None = None,
        working_directory: str | None = None,
        agent_id: str | None = None,
    ) -> Conversation:
        conversation = Conversation(
            id=new_conversation_id(),
            title=title or "New conversation",
            provider_type=provider_type,
            model=model,
            working_directory=working_directory,
            agent_id=agent_id,
        )
        self.save(conversation)
        log.info("Created  id=%s provider=%s model=%s", conversation.id, provider_type, model)
        return conversation


class MemoryConversationStore(ConversationStore):
    """In-memory store, no disk I/O."""

    def __init__(self) -> None:
        self._conversations: dict[str, Conversation] = {}

    def save(self, conversation: Conversation) -> None:
        self._conversations[conversation.id] = conversation

    def load(self, conversation_id: str) -> Conversation:
        if conversation_id not in self._conversations:
            raise KeyError(f"Conversation not found: {conversation_id}")
        return self._conversations[conversation_id]

    def list(self) -> list[Conversation]:
        return list(self._conversations.values())

    def delete(self, conversation_id: str) -> None:
        self._conversations.pop(conversation_id, None)


class FileConversationStore(ConversationStore):
    """One JSON file per conversation under ~/.chatrelay/conversations/."""

    def __init__(self, directory: Path) -> None:
        self._dir = directory
        self._dir.mkdir(parents=True, exist_ok=True)

    def _path(self, conversation_id: str) -> Path:
        if not conversation_id or "/" in conversation_id or conversation_id.startswith("."):
            raise KeyError(f"Invalid conversation id: {conversation_id!r}")
        return self._dir / f"{conversation_id}.json"

    def save(self, conversation: Conversation) -> None:
        path = self._path(conversation.id)
        tmp = path.with_suffix(".tmp")
        tmp.write_text(conversation.model_dump_json(indent=2))
        tmp.replace(path)

    def load(self, conversation_id: str) -> Conversation:
        path = self._path(conversation_id)
        if not path.exists():
            raise KeyError(f"Conversation not found: {conversation_id}")
        return Conversation.model_validate_json(path.read_text())

    def list(self) -> list[Conversation]:
        conversations = []
        for path in sorted(self._dir.glob("*.json")):
            try:
                conversations.append(Conversation.model_validate_json(path.read_text()))
            except ValueError as e:
                log.warning("Failed to load conversation %s: %s", path.name, e)
        return conversations

    def delete(self, conversation_id: str) -> None:
        path = self._path(conversation_id)
        if path.exists():
            path.unlink()


def new_conversation_id() -> str:
    return uuid.uuid4().hex[:12]


def auto_title(text: str, max_len: int = 60) -> str:
    """Conversation title from the first user message."""
    title = text.strip().split("\n")[0]
    if len(title) > max_len:
        title = title[: max_len - 1] + "…"
    return title or "New conversation"
