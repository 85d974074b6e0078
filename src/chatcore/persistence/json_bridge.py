# src/chatcore/persistence/json_bridge.py
"""
JSON file-based persistence bridge.

Stores each conversation as a separate JSON file in a ``conversations``
subdirectory, each document (state bag, projections) as a JSON file in a
``documents`` subdirectory, and the session index in ``sessions.json``.
It uses aiofiles for asynchronous file operations. File-system and decoding
failures are raised as :class:`~chatcore.exceptions.PersistenceError`.
"""

import json
import logging
import os
import pathlib
import re
from typing import Any, Dict, List, Optional

import aiofiles
import aiofiles.os as aios
from pydantic import ValidationError

from ..exceptions import ConfigError, ConversationNotFoundError, PersistenceError, SessionNotFoundError
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


class JsonPersistenceBridge(BasePersistenceBridge):
    """
    Persists documents, conversations and sessions as JSON files.

    Each conversation lives in its own file so that saving one conversation
    never rewrites the others.
    """

    _conversations_dir_name: str = "conversations"
    _documents_dir_name: str = "documents"
    _sessions_file_name: str = "sessions.json"

    def __init__(self, path: str | os.PathLike) -> None:
        if not str(path):
            raise ConfigError("JSON persistence bridge 'path' not specified.")
        self._root = pathlib.Path(os.path.expanduser(str(path)))
        self._conversations_dir = self._root / self._conversations_dir_name
        self._documents_dir = self._root / self._documents_dir_name
        self._sessions_path = self._root / self._sessions_file_name

    async def initialize(self) -> None:
        """
        Create the storage directories if they don't exist.

        Raises:
            PersistenceError: If the directories cannot be created.
        """
        try:
            await aios.makedirs(self._conversations_dir, exist_ok=True)
            await aios.makedirs(self._documents_dir, exist_ok=True)
            logger.info(f"JSON persistence bridge initialized at: {self._root.resolve()}")
        except OSError as e:
            logger.error(f"Failed to create JSON storage directories under {self._root}: {e}")
            raise PersistenceError("initialize", f"Could not create storage directories: {e}")

    # ------------------------------------------------------------------
    # File helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _safe_name(name: str) -> str:
        return re.sub(r"[^\w\-.]", "_", name)

    def _conversation_path(self, conversation_id: str) -> pathlib.Path:
        return self._conversations_dir / f"{self._safe_name(conversation_id)}.json"

    def _document_path(self, key: str) -> pathlib.Path:
        return self._documents_dir / f"{self._safe_name(key)}.json"

    async def _read_json(self, path: pathlib.Path, operation: str) -> Optional[Any]:
        try:
            if not await aios.path.exists(path):
                return None
            async with aiofiles.open(path, mode="r", encoding="utf-8") as f:
                content = await f.read()
            return json.loads(content)
        except json.JSONDecodeError as e:
            logger.error(f"Corrupted JSON file {path}: {e}")
            raise PersistenceError(operation, f"Corrupted file '{path.name}': {e}")
        except OSError as e:
            logger.error(f"Error reading {path}: {e}")
            raise PersistenceError(operation, f"Failed to read '{path.name}': {e}")

    async def _write_json(self, path: pathlib.Path, payload: str, operation: str) -> None:
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        try:
            async with aiofiles.open(tmp_path, mode="w", encoding="utf-8") as f:
                await f.write(payload)
            await aios.replace(tmp_path, path)
        except OSError as e:
            logger.error(f"Error writing {path}: {e}")
            raise PersistenceError(operation, f"Failed to write '{path.name}': {e}")

    async def _read_conversation(self, conversation_id: str, operation: str) -> Conversation:
        data = await self._read_json(self._conversation_path(conversation_id), operation)
        if data is None:
            raise ConversationNotFoundError(conversation_id)
        try:
            return Conversation.model_validate(data)
        except ValidationError as e:
            raise PersistenceError(operation, f"Invalid conversation data for '{conversation_id}': {e}")

    async def _read_all_conversations(self, operation: str) -> List[Conversation]:
        try:
            filenames = await aios.listdir(self._conversations_dir)
        except FileNotFoundError:
            return []
        except OSError as e:
            raise PersistenceError(operation, f"Could not list conversations: {e}")
        conversations: List[Conversation] = []
        for filename in filenames:
            if not filename.endswith(".json"):
                continue
            data = await self._read_json(self._conversations_dir / filename, operation)
            try:
                conversations.append(Conversation.model_validate(data))
            except ValidationError as e:
                logger.warning(f"Skipping invalid conversation file {filename}: {e.error_count()} error(s)")
        return conversations

    async def _read_sessions(self, operation: str) -> Dict[str, SessionMetadata]:
        data = await self._read_json(self._sessions_path, operation) or {}
        try:
            return {sid: SessionMetadata.model_validate(s) for sid, s in data.items()}
        except ValidationError as e:
            raise PersistenceError(operation, f"Invalid session index: {e}")

    async def _write_sessions(self, sessions: Dict[str, SessionMetadata], operation: str) -> None:
        payload = json.dumps({sid: s.model_dump(mode="json") for sid, s in sessions.items()}, indent=2)
        await self._write_json(self._sessions_path, payload, operation)

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    async def get(self, key: str) -> Optional[Any]:
        return await self._read_json(self._document_path(key), "get")

    async def set(self, key: str, value: Any) -> None:
        try:
            payload = json.dumps(value, indent=2, default=str)
        except (TypeError, ValueError) as e:
            raise PersistenceError("set", f"Value for '{key}' is not JSON serializable: {e}")
        await self._write_json(self._document_path(key), payload, "set")
        logger.debug(f"Document '{key}' written")

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    async def list_conversations(
        self,
        limit: int = 50,
        offset: int = 0,
        sort_by: str = "updated_at",
        sort_order: str = "desc",
    ) -> ConversationPage:
        conversations = await self._read_all_conversations("list_conversations")
        return paginate((summarize(c) for c in conversations), limit, offset, sort_by, sort_order)

    async def load_conversation(self, conversation_id: str) -> Conversation:
        return await self._read_conversation(conversation_id, "load_conversation")

    async def save_conversation(self, conversation: Conversation) -> None:
        await self._write_json(
            self._conversation_path(conversation.id),
            conversation.model_dump_json(indent=2),
            "save_conversation",
        )
        logger.debug(f"Conversation '{conversation.id}' saved with {len(conversation.messages)} messages")

    async def add_message(self, conversation_id: str, message: Message) -> None:
        conversation = await self._read_conversation(conversation_id, "add_message")
        if any(m.id == message.id for m in conversation.messages):
            return
        conversation.messages.append(message)
        conversation.metadata.message_count = len(conversation.messages)
        conversation.metadata.updated_at = utc_now()
        await self.save_conversation(conversation)

    async def delete_conversation(self, conversation_id: str) -> None:
        path = self._conversation_path(conversation_id)
        try:
            if not await aios.path.exists(path):
                raise ConversationNotFoundError(conversation_id)
            await aios.remove(path)
        except OSError as e:
            raise PersistenceError("delete_conversation", f"Failed to delete '{conversation_id}': {e}")

        sessions = await self._read_sessions("delete_conversation")
        remaining = {sid: s for sid, s in sessions.items() if s.conversation_id != conversation_id}
        if len(remaining) != len(sessions):
            await self._write_sessions(remaining, "delete_conversation")
        logger.info(f"Conversation '{conversation_id}' deleted")

    async def search_conversations(self, query: str, search_type: str = "all", limit: int = 20) -> SearchResults:
        if len(query.strip()) < MIN_QUERY_LENGTH:
            return SearchResults(query=query)
        conversations = await self._read_all_conversations("search_conversations")
        return rank_conversations(
            query,
            (to_candidate(c) for c in conversations),
            limit=limit,
            search_type=search_type,  # type: ignore[arg-type]
        )

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def list_sessions(self, active_only: bool = False, limit: int = 20) -> List[SessionMetadata]:
        sessions = [s for s in (await self._read_sessions("list_sessions")).values() if s.is_active or not active_only]
        sessions.sort(key=lambda s: s.last_accessed, reverse=True)
        return sessions[:limit]

    async def create_session(self, data: Dict[str, Any]) -> SessionMetadata:
        conversation_id = str(data.get("conversation_id") or "")
        conversation = await self._read_conversation(conversation_id, "create_session")
        sessions = await self._read_sessions("create_session")
        for existing in sessions.values():
            if existing.conversation_id == conversation_id:
                existing.is_active = False
        session = SessionMetadata(
            id=generate_id("sess"),
            conversation_id=conversation_id,
            title=data.get("title") or conversation.title,
            message_count=len(conversation.messages),
            is_active=True,
        )
        sessions[session.id] = session
        await self._write_sessions(sessions, "create_session")
        return session

    async def update_session(self, session_id: str, updates: Dict[str, Any]) -> SessionMetadata:
        sessions = await self._read_sessions("update_session")
        session = sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        changes = {k: v for k, v in updates.items() if k in _SESSION_FIELDS}
        changes.setdefault("last_accessed", utc_now())
        updated = SessionMetadata.model_validate({**session.model_dump(), **changes})
        sessions[session_id] = updated
        await self._write_sessions(sessions, "update_session")
        return updated


__all__ = ["JsonPersistenceBridge"]
