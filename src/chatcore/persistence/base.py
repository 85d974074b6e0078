# src/chatcore/persistence/base.py
"""
Abstract Base Class for persistence bridges.

A persistence bridge is the asynchronous, authoritative store behind the
in-process caches. The State Store uses the key/value half (``get``/``set``)
for its three documents; the History Sync Manager and the Conversation
Manager use the conversation and session half.

Every method may fail with a :class:`~chatcore.exceptions.TransportError`
(usually :class:`~chatcore.exceptions.PersistenceError`) when the store is
unreachable. That is distinct from an application-level NotFound, which is
raised as :class:`~chatcore.exceptions.ConversationNotFoundError` or
:class:`~chatcore.exceptions.SessionNotFoundError`.
"""

import abc
from typing import Any, Dict, List, Optional

from ..models import Conversation, ConversationPage, Message, SearchResults, SessionMetadata


class BasePersistenceBridge(abc.ABC):
    """
    Abstract Base Class for conversation, session and document storage.

    Writes must be idempotent: saving the same conversation twice, adding a
    message whose id is already stored, or deleting an absent conversation
    during a replay must leave the store in the same state as applying the
    operation once. Pending updates queued during an outage rely on this.
    """

    async def initialize(self) -> None:
        """Prepare resources (directories, connections). Default: nothing to do."""

    async def close(self) -> None:
        """Release resources. Default: nothing to do."""

    # --- Documents ---

    @abc.abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        """
        Read a JSON-compatible document.

        Args:
            key: Document key, e.g. ``"globalState"``.

        Returns:
            The stored value, or None if the key was never written.
        """
        pass

    @abc.abstractmethod
    async def set(self, key: str, value: Any) -> None:
        """
        Write a JSON-compatible document, replacing any previous value.

        Args:
            key: Document key.
            value: Value to store; must be JSON serializable.
        """
        pass

    # --- Conversations ---

    @abc.abstractmethod
    async def list_conversations(
        self,
        limit: int = 50,
        offset: int = 0,
        sort_by: str = "updated_at",
        sort_order: str = "desc",
    ) -> ConversationPage:
        """
        List conversation summaries without message bodies.

        Args:
            limit: Page size.
            offset: Number of conversations to skip.
            sort_by: ``updated_at``, ``created_at``, ``title`` or ``message_count``.
            sort_order: ``asc`` or ``desc``.

        Returns:
            A ConversationPage with summaries and pagination info.
        """
        pass

    @abc.abstractmethod
    async def load_conversation(self, conversation_id: str) -> Conversation:
        """
        Load a full conversation.

        Raises:
            ConversationNotFoundError: If the conversation is not stored.
        """
        pass

    @abc.abstractmethod
    async def save_conversation(self, conversation: Conversation) -> None:
        """Create or replace a conversation, messages included."""
        pass

    @abc.abstractmethod
    async def add_message(self, conversation_id: str, message: Message) -> None:
        """
        Append a message to a stored conversation.

        A message whose id is already stored is ignored.

        Raises:
            ConversationNotFoundError: If the conversation is not stored.
        """
        pass

    @abc.abstractmethod
    async def delete_conversation(self, conversation_id: str) -> None:
        """
        Delete a conversation and its sessions.

        Raises:
            ConversationNotFoundError: If the conversation is not stored.
        """
        pass

    @abc.abstractmethod
    async def search_conversations(
        self, query: str, search_type: str = "all", limit: int = 20
    ) -> SearchResults:
        """
        Authoritative search over stored conversations.

        Args:
            query: Search text. Queries shorter than two characters return no results.
            search_type: ``title``, ``content`` or ``all``.
            limit: Maximum conversations; up to twice as many message hits.
        """
        pass

    # --- Sessions ---

    @abc.abstractmethod
    async def list_sessions(self, active_only: bool = False, limit: int = 20) -> List[SessionMetadata]:
        """List sessions, most recently active first."""
        pass

    @abc.abstractmethod
    async def create_session(self, data: Dict[str, Any]) -> SessionMetadata:
        """
        Create a session for a conversation.

        Args:
            data: Must contain ``conversation_id``; may contain ``title``.

        Raises:
            ConversationNotFoundError: If the conversation is not stored.
        """
        pass

    @abc.abstractmethod
    async def update_session(self, session_id: str, updates: Dict[str, Any]) -> SessionMetadata:
        """
        Apply field updates to a session.

        Raises:
            SessionNotFoundError: If the session does not exist.
        """
        pass


__all__ = ["BasePersistenceBridge"]
