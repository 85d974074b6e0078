# src/chatcore/sync/index.py
"""Inverted search index: conversation id to truncated message entries."""

from __future__ import annotations

from ..models import Conversation, Message
from ..search import IndexedMessage


class SearchIndex:
    """
    Incrementally maintained message index used for local (cache-only) search.

    Only the first ``content_length`` characters of each message are kept.
    """

    def __init__(self, content_length: int = 200) -> None:
        self.content_length = content_length
        self._entries: dict[str, list[IndexedMessage]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, conversation_id: object) -> bool:
        return conversation_id in self._entries

    def add(self, conversation_id: str, message: Message) -> None:
        entries = self._entries.setdefault(conversation_id, [])
        if any(e.message_id == message.id for e in entries):
            return
        entries.append(IndexedMessage(message.id, message.content[: self.content_length], message.timestamp))

    def index_conversation(self, conversation: Conversation) -> None:
        """Rebuild the entries of one conversation from its current messages."""
        self._entries[conversation.id] = [
            IndexedMessage(m.id, m.content[: self.content_length], m.timestamp) for m in conversation.messages
        ]

    def get(self, conversation_id: str) -> list[IndexedMessage]:
        return list(self._entries.get(conversation_id, ()))

    def remove(self, conversation_id: str) -> None:
        self._entries.pop(conversation_id, None)

    def clear(self) -> None:
        self._entries.clear()


__all__ = ["SearchIndex"]
