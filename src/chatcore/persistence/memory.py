# src/chatcore/persistence/memory.py
"""
In-process persistence bridge.

Keeps documents, conversations and sessions in dictionaries. Used for
local-only deployments and as the default bridge in tests. Values are
copied on the way in and out so callers never share objects with the store.
"""

import copy
import logging
from typing import Any, Dict, List, Optional

from ..exceptions import ConversationNotFoundError, SessionNotFoundError
from ..models import (
    Conversation,
    ConversationPage,
    Message,
    SearchResults,
    SessionMetadata,
    generate_id,
    utc_now,
)
from ..search import rank_conversations
from .base import BasePersistenceBridge
from .common import MIN_QUERY_LENGTH, paginate, summarize, to_candidate

logger = logging.getLogger(__name__)

_SESSION_FIELDS = {"title", "last_accessed", "message_count", "is_active"}


class InMemoryPersistenceBridge(BasePersistenceBridge):
    """Dictionary-backed implementation of :class:`BasePersistenceBridge`."""

    def __init__(self) -> None:
        self._documents: Dict[str, Any] = {}
        self._conversations: Dict[str, Conversation] = {}
        self._sessions: Dict[str, SessionMetadata] = {}

    async def get(self, key: str) -> Optional[Any]:
        return copy.deepcopy(self._documents.get(key))

    async def set(self, key: str, value: Any) -> None:
        self._documents[key] = copy.deepcopy(value)

    async def list_conversations(
        self,
        limit: int = 50,
        offset: int = 0,
        sort_by: str = "updated_at",
        sort_order: str = "desc",
    ) -> ConversationPage:
        return paginate((summarize(c) for c in self._conversations.values()), limit, offset, sort_by, sort_order)

    async def load_conversation(self, conversation_id: str) -> Conversation:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(conversation_id)
        return conversation.model_copy(deep=True)

    async def save_conversation(self, conversation: Conversation) -> None:
        self._conversations[conversation.id] = conversation.model_copy(deep=True)
        logger.debug(f"Saved conversation '{conversation.id}' ({len(conversation.messages)} messages)")

    async def add_message(self, conversation_id: str, message: Message) -> None:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(conversation_id)
        if any(m.id == message.id for m in conversation.messages):
            logger.debug(f"Message '{message.id}' already stored in '{conversation_id}', ignoring")
            return
        conversation.messages.append(message)
        conversation.metadata.message_count = len(conversation.messages)
        conversation.metadata.updated_at = utc_now()

    async def delete_conversation(self, conversation_id: str) -> None:
        if self._conversations.pop(conversation_id, None) is None:
            raise ConversationNotFoundError(conversation_id)
        for session_id in [s.id for s in self._sessions.values() if s.conversation_id == conversation_id]:
            del self._sessions[session_id]

    async def search_conversations(self, query: str, search_type: str = "all", limit: int = 20) -> SearchResults:
        if len(query.strip()) < MIN_QUERY_LENGTH:
            return SearchResults(query=query)
        return rank_conversations(
            query,
            (to_candidate(c) for c in self._conversations.values()),
            limit=limit,
            search_type=search_type,  # type: ignore[arg-type]
        )

    async def list_sessions(self, active_only: bool = False, limit: int = 20) -> List[SessionMetadata]:
        sessions = [s for s in self._sessions.values() if s.is_active or not active_only]
        sessions.sort(key=lambda s: s.last_accessed, reverse=True)
        return [s.model_copy() for s in sessions[:limit]]

    async def create_session(self, data: Dict[str, Any]) -> SessionMetadata:
        conversation_id = data.get("conversation_id")
        conversation = self._conversations.get(conversation_id) if conversation_id else None
        if conversation is None:
            raise ConversationNotFoundError(str(conversation_id))
        for session in self._sessions.values():
            if session.conversation_id == conversation_id:
                session.is_active = False
        session = SessionMetadata(
            id=generate_id("sess"),
            conversation_id=conversation_id,
            title=data.get("title") or conversation.title,
            message_count=len(conversation.messages),
            is_active=True,
        )
        self._sessions[session.id] = session
        return session.model_copy()

    async def update_session(self, session_id: str, updates: Dict[str, Any]) -> SessionMetadata:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        changes = {k: v for k, v in updates.items() if k in _SESSION_FIELDS}
        changes.setdefault("last_accessed", utc_now())
        updated = SessionMetadata.model_validate({**session.model_dump(), **changes})
        self._sessions[session_id] = updated
        return updated.model_copy()


__all__ = ["InMemoryPersistenceBridge"]
