# src/chatcore/conversations/manager.py
"""
Conversation Manager.

Owns the live conversations and their session index. Every mutation is
synchronous: compaction, the hard history cap and session-limit eviction
complete inside the call that triggered them, so the caller's next read
already reflects them. Changes are announced on the event bus; other
components (chat-history projection, history sync, analytics) react to
those events and never reach into this manager's maps.

Example:
    manager = ConversationManager(bus, settings.conversations, bridge=bridge)
    await manager.initialize()

    conversation_id = manager.create_conversation("Rogowski Coil FAQ", activate=True)
    manager.add_message({"role": "user", "content": "How is it calibrated?", "tokens": 12})
    manager.add_message({"role": "assistant", "content": "...", "tokens": 240, "cost": 0.004, "provider": "openai"})

    print(manager.get_cost_summary().total_cost)
"""

from __future__ import annotations

import json
import logging
from typing import Any, Literal

from pydantic import ValidationError

from ..config.models import ConversationConfig
from ..events import EventBus, EventName
from ..exceptions import (
    ConversationNotFoundError,
    ImportFormatError,
    InvalidMessageError,
    NoActiveConversationError,
)
from ..models import (
    ContinuationMode,
    Conversation,
    ConversationMetadata,
    ConversationSettings,
    ConversationSummary,
    CostSummary,
    EventRecord,
    Message,
    MessageMetadata,
    ProviderSwitch,
    ProviderUsageStats,
    Role,
    SearchResults,
    SessionMetadata,
    SessionState,
    generate_id,
    utc_now,
)
from ..persistence.base import BasePersistenceBridge
from ..persistence.common import MIN_QUERY_LENGTH, to_candidate
from ..scheduling import PeriodicScheduler, PeriodicTask
from ..search import rank_conversations
from .compaction import CompactionResult, ConversationSummarizer, compact_messages

logger = logging.getLogger(__name__)

ExportFormat = Literal["json", "markdown", "plain"]

EXPORT_VERSION = "1.0"
UNKNOWN_PROVIDER = "unknown"
STORAGE_KEY = "conversations"

_MESSAGE_METADATA_KEYS = ("tokens", "provider", "model", "cost", "command")


class ConversationManager:
    """
    Manages conversations, their messages, cost ledgers and session index.

    Args:
        bus: Shared event bus.
        config: Conversation settings (history size, compaction, session limit).
        bridge: Optional persistence bridge for ``save_conversations``/``load_conversations``.
        summarizer: Optional collaborator producing compaction summaries.
        scheduler: Scheduler for the auto-save task; one is created if omitted.
    """

    def __init__(
        self,
        bus: EventBus,
        config: ConversationConfig | None = None,
        bridge: BasePersistenceBridge | None = None,
        summarizer: ConversationSummarizer | None = None,
        scheduler: PeriodicScheduler | None = None,
        owner: str = "conversation_manager",
    ) -> None:
        self.bus = bus
        self.config = config or ConversationConfig()
        self.bridge = bridge
        self.summarizer = summarizer
        self.owner = owner

        self._conversations: dict[str, Conversation] = {}
        self._sessions: dict[str, SessionMetadata] = {}
        self._current_id: str | None = None
        self._most_recent_id: str | None = None
        self.global_context: dict[str, Any] = {}
        self.current_provider: str | None = None

        self._owns_scheduler = scheduler is None
        self.scheduler = scheduler or PeriodicScheduler()
        self._initialized = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        if self._initialized:
            return
        self.bus.subscribe(EventName.ACTIVE_PROVIDER_CHANGED, self._on_active_provider_changed, owner=self.owner)
        if self.bridge is not None:
            await self.load_conversations()
            if self.config.auto_save:
                self.scheduler.register(
                    PeriodicTask(
                        name="conversation_auto_save",
                        callback=self.save_conversations,
                        interval=self.config.save_interval,
                        description="Persist conversations",
                    )
                )
                if self._owns_scheduler:
                    await self.scheduler.start()
        self._initialized = True
        logger.info(f"ConversationManager initialized with {len(self._conversations)} conversations")

    async def destroy(self) -> None:
        self.scheduler.unregister("conversation_auto_save")
        if self._owns_scheduler:
            await self.scheduler.stop()
        if self.bridge is not None:
            await self.save_conversations()
        self.bus.unsubscribe_owner(self.owner)
        self._initialized = False
        logger.info("ConversationManager destroyed")

    # ------------------------------------------------------------------
    # Lookup helpers
    # ------------------------------------------------------------------

    def _require(self, conversation_id: str) -> Conversation:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(conversation_id)
        return conversation

    def _resolve(self, conversation_id: str | None) -> Conversation:
        target = conversation_id or self._current_id
        if not target:
            raise NoActiveConversationError()
        return self._require(target)

    def _summary(self, conversation: Conversation) -> dict[str, Any]:
        return ConversationSummary.from_conversation(conversation, snippet_count=self.config.context_window).model_dump(
            mode="json"
        )

    def _touch_session(self, conversation: Conversation) -> None:
        session = self._sessions.get(conversation.id)
        if session is None:
            return
        session.last_accessed = utc_now()
        session.message_count = len(conversation.messages)
        session.title = conversation.title

    def has_conversation(self, conversation_id: str) -> bool:
        return conversation_id in self._conversations

    def get_conversation(self, conversation_id: str) -> Conversation:
        """Return a deep copy of a conversation. Raises ConversationNotFoundError."""
        return self._require(conversation_id).model_copy(deep=True)

    def get_current_conversation_id(self) -> str | None:
        return self._current_id

    def get_current_conversation(self) -> Conversation | None:
        if self._current_id is None:
            return None
        return self.get_conversation(self._current_id)

    # ------------------------------------------------------------------
    # Creation, switching, deletion
    # ------------------------------------------------------------------

    def create_conversation(
        self,
        title: str | None = None,
        type: str = "general",
        settings: dict[str, Any] | None = None,
        tags: list[str] | set[str] | None = None,
        workspace: str = "default",
        activate: bool = False,
    ) -> str:
        """
        Create a conversation and its session entry.

        The new conversation becomes the most recent one; if the session
        limit is now exceeded, the least recently accessed conversations
        other than the current one are evicted.

        Returns:
            The new conversation id.
        """
        conversation_id = generate_id("conv")
        settings_data = {
            "temperature": self.config.default_temperature,
            "max_tokens": self.config.default_max_tokens,
            **(settings or {}),
        }
        conversation = Conversation(
            id=conversation_id,
            title=title or f"Conversation {conversation_id}",
            type=type,
            metadata=ConversationMetadata(tags=set(tags or ()), workspace=workspace),
            settings=ConversationSettings(**settings_data),
            session_state=SessionState(current_provider=settings_data.get("provider") or self.current_provider),
        )
        self._add(conversation)
        logger.info(f"Created conversation: {conversation_id}")
        self.bus.publish(
            EventName.CONVERSATION_CREATED,
            {"conversation_id": conversation_id, "title": conversation.title, "summary": self._summary(conversation)},
        )
        if activate:
            self.switch_to_conversation(conversation_id)
        self._enforce_session_limit(protect=conversation_id)
        return conversation_id

    def _add(self, conversation: Conversation) -> None:
        self._conversations[conversation.id] = conversation
        self._sessions[conversation.id] = SessionMetadata(
            id=conversation.id,
            conversation_id=conversation.id,
            title=conversation.title,
            created_at=conversation.metadata.created_at,
            message_count=len(conversation.messages),
        )
        self._most_recent_id = conversation.id

    def _enforce_session_limit(self, protect: str | None = None) -> list[str]:
        overflow = len(self._conversations) - self.config.max_sessions
        if overflow <= 0:
            return []
        # stable sort over a snapshot: equal timestamps keep insertion order
        candidates = sorted(
            (s for s in list(self._sessions.values()) if s.id not in (self._current_id, protect)),
            key=lambda s: s.last_accessed,
        )
        evicted = [s.id for s in candidates[:overflow]]
        for conversation_id in evicted:
            self._remove(conversation_id, reason="evicted")
        if evicted:
            logger.info(f"Evicted {len(evicted)} conversations over the session limit: {evicted}")
        return evicted

    def adopt_conversation(self, conversation: Conversation) -> None:
        """Insert a conversation loaded from the persistence bridge, replacing any local copy."""
        conversation = conversation.model_copy(deep=True)
        conversation.metadata.message_count = len(conversation.messages)
        self._add(conversation)
        self.bus.publish(
            EventName.CONVERSATION_IMPORTED,
            {
                "conversation_id": conversation.id,
                "title": conversation.title,
                "summary": self._summary(conversation),
                "source": "remote",
            },
        )
        self._enforce_session_limit(protect=conversation.id)

    def switch_to_conversation(self, conversation_id: str) -> Conversation:
        """
        Make a conversation current.

        Raises:
            ConversationNotFoundError: If the conversation does not exist.
        """
        conversation = self._require(conversation_id)
        previous = self._current_id
        self._current_id = conversation_id
        self._most_recent_id = conversation_id
        self._touch_session(conversation)
        for session in self._sessions.values():
            session.is_active = session.id == conversation_id
        logger.info(f"Switched to conversation: {conversation_id}")
        self.bus.publish(EventName.CONVERSATION_SWITCHED, {"conversation_id": conversation_id, "previous_id": previous})
        return conversation.model_copy(deep=True)

    def continue_last_session(self) -> Conversation | None:
        """Switch to the most recent conversation in ``continue`` mode; None if there is none."""
        target = self._most_recent_id
        if target not in self._conversations:
            sessions = sorted(self._sessions.values(), key=lambda s: s.last_accessed, reverse=True)
            target = sessions[0].id if sessions else None
        if target is None:
            return None
        self._conversations[target].session_state.continuation_mode = ContinuationMode.CONTINUE.value
        return self.switch_to_conversation(target)

    def set_continuation_mode(self, conversation_id: str, mode: ContinuationMode | str) -> None:
        self._require(conversation_id).session_state.continuation_mode = ContinuationMode(mode).value

    def delete_conversation(self, conversation_id: str) -> None:
        """
        Delete a conversation.

        If it was current, the most recently accessed remaining conversation
        becomes current.

        Raises:
            ConversationNotFoundError: If the conversation does not exist.
        """
        self._require(conversation_id)
        was_current = self._current_id == conversation_id
        self._remove(conversation_id, reason="deleted")
        logger.info(f"Deleted conversation: {conversation_id}")
        if was_current and self._sessions:
            successor = max(self._sessions.values(), key=lambda s: s.last_accessed)
            self.switch_to_conversation(successor.id)

    def _remove(self, conversation_id: str, reason: str) -> None:
        conversation = self._conversations.pop(conversation_id, None)
        self._sessions.pop(conversation_id, None)
        if self._current_id == conversation_id:
            self._current_id = None
        if self._most_recent_id == conversation_id:
            self._most_recent_id = None
        payload: dict[str, Any] = {"conversation_id": conversation_id, "reason": reason}
        if reason == "evicted" and conversation is not None:
            # evicted conversations live on in storage; listeners get the final state
            payload["conversation"] = conversation.model_dump(mode="json")
        self.bus.publish(EventName.CONVERSATION_DELETED, payload)

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def add_message(self, message: dict[str, Any] | Message, conversation_id: str | None = None) -> Message:
        """
        Append a message to a conversation (the current one by default).

        Accepts a Message or a mapping with ``role``, ``content`` and any of
        ``tokens``, ``provider``, ``model``, ``cost``, ``command``,
        ``metadata``. Token usage, the cost ledger, provider statistics and
        the session entry are updated, then the conversation is compacted or
        trimmed if it grew past its limits.

        Raises:
            NoActiveConversationError: If no id is given and none is current.
            ConversationNotFoundError: If the target conversation does not exist.
            InvalidMessageError: If a mapping lacks content or has an unknown role.
        """
        conversation = self._resolve(conversation_id)
        msg = message if isinstance(message, Message) else self._build_message(message)

        conversation.messages.append(msg)
        self._account(conversation, msg)
        compaction = self._apply_size_policy(conversation)
        conversation.metadata.message_count = len(conversation.messages)
        conversation.metadata.updated_at = utc_now()
        self._touch_session(conversation)

        logger.debug(f"Added {msg.role} message to conversation {conversation.id}")
        self.bus.publish(
            EventName.MESSAGE_ADDED,
            {
                "conversation_id": conversation.id,
                "message": msg.model_dump(mode="json"),
                "message_count": conversation.metadata.message_count,
            },
        )
        if compaction is not None:
            self._publish_compacted(conversation, compaction)
        return msg

    @staticmethod
    def _build_message(data: dict[str, Any]) -> Message:
        if "content" not in data:
            raise InvalidMessageError("Message requires 'content'")
        metadata = dict(data.get("metadata") or {})
        for key in _MESSAGE_METADATA_KEYS:
            if data.get(key) is not None:
                metadata[key] = data[key]
        try:
            return Message(
                role=data.get("role") or Role.USER,
                content=str(data["content"]),
                metadata=MessageMetadata(**metadata),
            )
        except ValidationError as e:
            raise InvalidMessageError(f"Invalid message: {e}") from e

    def _account(self, conversation: Conversation, message: Message) -> None:
        meta = message.metadata
        provider = meta.provider or conversation.session_state.current_provider or self.current_provider
        tokens = meta.tokens or 0
        if tokens:
            if message.role == Role.ASSISTANT.value:
                conversation.metadata.token_usage.add(output_tokens=tokens)
            else:
                conversation.metadata.token_usage.add(input_tokens=tokens)
        if meta.cost:
            conversation.metadata.cost_tracking.add(provider or UNKNOWN_PROVIDER, meta.cost)
        if provider:
            stats = conversation.metadata.provider_stats.setdefault(provider, ProviderUsageStats())
            stats.message_count += 1
            stats.tokens += tokens
            stats.last_used = message.timestamp

    def _apply_size_policy(self, conversation: Conversation) -> CompactionResult | None:
        count = len(conversation.messages)
        if self.config.enable_compaction and count > self.config.compaction_threshold:
            return self._compact(conversation)
        if count > self.config.max_history_size:
            removed = count - self.config.max_history_size
            del conversation.messages[:removed]
            logger.debug(f"Trimmed {removed} old messages from conversation {conversation.id}")
        return None

    def _compact(self, conversation: Conversation, instructions: str | None = None) -> CompactionResult | None:
        result = compact_messages(conversation.messages, self.config.context_window, self.summarizer, instructions)
        if result is None:
            return None
        conversation.messages = result.messages
        conversation.metadata.message_count = len(result.messages)
        conversation.metadata.compaction_count += 1
        logger.info(
            f"Compacted conversation {conversation.id}: {result.removed_count} messages summarized "
            f"({result.summary_source})"
        )
        return result

    def _publish_compacted(self, conversation: Conversation, result: CompactionResult) -> None:
        self.bus.publish(
            EventName.CONVERSATION_COMPACTED,
            {
                "conversation_id": conversation.id,
                "removed_count": result.removed_count,
                "compaction_count": conversation.metadata.compaction_count,
                "summary_source": result.summary_source,
                "message_count": len(conversation.messages),
                "summary": self._summary(conversation),
            },
        )

    def compact_conversation(
        self, conversation_id: str | None = None, instructions: str | None = None
    ) -> CompactionResult | None:
        """Compact now, regardless of the threshold. Returns None if the conversation fits the window."""
        conversation = self._resolve(conversation_id)
        result = self._compact(conversation, instructions)
        if result is not None:
            conversation.metadata.updated_at = utc_now()
            self._touch_session(conversation)
            self._publish_compacted(conversation, result)
        return result

    def clear_conversation(self, conversation_id: str | None = None) -> int:
        """Remove every message; usage and cost aggregates are kept. Returns the number removed."""
        conversation = self._resolve(conversation_id)
        removed = len(conversation.messages)
        conversation.messages = []
        conversation.metadata.message_count = 0
        conversation.metadata.updated_at = utc_now()
        self._touch_session(conversation)
        self.bus.publish(
            EventName.CONVERSATION_CLEARED,
            {"conversation_id": conversation.id, "removed_count": removed, "summary": self._summary(conversation)},
        )
        return removed

    # ------------------------------------------------------------------
    # Providers and cost
    # ------------------------------------------------------------------

    def switch_provider(
        self,
        provider_id: str,
        model: str | None = None,
        conversation_id: str | None = None,
        reason: str = "manual",
    ) -> ProviderSwitch:
        """Record a provider change on the conversation's own history and publish ``provider-switched``."""
        conversation = self._resolve(conversation_id)
        entry = self._record_switch(conversation, provider_id, model, reason)
        logger.info(f"Conversation {conversation.id} switched provider {entry.from_provider} -> {provider_id}")
        self.bus.publish(
            EventName.PROVIDER_SWITCHED,
            {
                "conversation_id": conversation.id,
                "from_provider": entry.from_provider,
                "to_provider": provider_id,
                "model": model,
                "reason": reason,
                "summary": self._summary(conversation),
            },
        )
        return entry

    @staticmethod
    def _record_switch(conversation: Conversation, provider_id: str, model: str | None, reason: str) -> ProviderSwitch:
        state = conversation.session_state
        entry = ProviderSwitch(
            from_provider=state.current_provider,
            to_provider=provider_id,
            from_model=state.current_model,
            to_model=model,
            reason=reason,
        )
        state.provider_history.append(entry)
        state.current_provider = provider_id
        state.current_model = model
        conversation.settings.provider = provider_id
        if model:
            conversation.settings.model = model
        return entry

    def _on_active_provider_changed(self, record: EventRecord) -> None:
        provider_id = record.payload.get("provider_id")
        if not provider_id:
            return
        self.current_provider = provider_id
        conversation = self._conversations.get(record.payload.get("conversation_id") or self._current_id or "")
        if conversation is None or conversation.session_state.current_provider == provider_id:
            return
        self.switch_provider(
            provider_id,
            model=record.payload.get("model"),
            conversation_id=conversation.id,
            reason=record.payload.get("reason", "manual"),
        )

    def get_cost_summary(self, conversation_id: str | None = None) -> CostSummary:
        """Session and lifetime cost per provider, read from the stored aggregates."""
        conversation = self._resolve(conversation_id)
        tracking = conversation.metadata.cost_tracking
        return CostSummary(
            conversation_id=conversation.id,
            session_cost=tracking.session,
            total_cost=tracking.total,
            by_provider={pid: cost.model_copy() for pid, cost in tracking.by_provider.items()},
            token_usage=conversation.metadata.token_usage.model_copy(),
        )

    def reset_session_costs(self, conversation_id: str | None = None) -> float:
        """Zero the session cost of one conversation, or of all when no id is given. Returns the amount reset."""
        targets = [self._require(conversation_id)] if conversation_id else list(self._conversations.values())
        return sum(c.metadata.cost_tracking.reset_session() for c in targets)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def search_conversations(self, query: str, limit: int = 20, search_type: str = "all") -> SearchResults:
        """Case-insensitive search over titles, message content and tags."""
        if len(query.strip()) < MIN_QUERY_LENGTH:
            return SearchResults(query=query)
        results = rank_conversations(
            query,
            (to_candidate(c) for c in self._conversations.values()),
            limit=limit,
            search_type=search_type,  # type: ignore[arg-type]
        )
        logger.debug(f"Search for '{query}' found {results.total} conversations")
        return results

    def list_sessions(self) -> list[SessionMetadata]:
        sessions = sorted(self._sessions.values(), key=lambda s: s.last_accessed, reverse=True)
        return [s.model_copy() for s in sessions]

    def get_all_conversations(self) -> list[ConversationSummary]:
        summaries = [ConversationSummary.from_conversation(c) for c in self._conversations.values()]
        summaries.sort(key=lambda s: s.updated_at, reverse=True)
        return summaries

    def get_conversation_context(self, conversation_id: str | None = None) -> dict[str, Any]:
        """The last ``context_window`` messages plus settings and merged context values."""
        target = conversation_id or self._current_id
        conversation = self._conversations.get(target or "")
        if conversation is None:
            return {"conversation_id": None, "messages": [], "context": dict(self.global_context)}
        return {
            "conversation_id": conversation.id,
            "title": conversation.title,
            "type": conversation.type,
            "settings": conversation.settings.model_dump(),
            "context": {**self.global_context, **conversation.context},
            "messages": [m.model_copy() for m in conversation.messages[-self.config.context_window :]],
        }

    def update_context(self, key: str, value: Any, conversation_id: str | None = None) -> None:
        """Set a context value on a conversation, or globally when no conversation is targeted."""
        target = conversation_id or self._current_id
        if target is None:
            self.global_context[key] = value
            return
        conversation = self._require(target)
        conversation.context[key] = value
        conversation.metadata.updated_at = utc_now()

    def get_formatted_history(self, conversation_id: str | None = None, count: int | None = None) -> list[dict[str, str]]:
        """Recent messages as ``{"role", "content"}`` dicts, ready for a chat completion request."""
        target = conversation_id or self._current_id
        conversation = self._conversations.get(target or "")
        if conversation is None:
            return []
        count = count or self.config.context_window
        return [{"role": m.role, "content": m.content} for m in conversation.messages[-count:]]

    def get_conversation_stats(self, conversation_id: str | None = None) -> dict[str, Any] | None:
        target = conversation_id or self._current_id
        conversation = self._conversations.get(target or "")
        if conversation is None:
            return None
        messages = conversation.messages
        total_length = sum(len(m.content) for m in messages)
        return {
            "id": conversation.id,
            "title": conversation.title,
            "type": conversation.type,
            "message_count": len(messages),
            "user_messages": sum(1 for m in messages if m.role == Role.USER.value),
            "assistant_messages": sum(1 for m in messages if m.role == Role.ASSISTANT.value),
            "token_usage": conversation.metadata.token_usage.model_dump(),
            "total_cost": conversation.metadata.cost_tracking.total,
            "compaction_count": conversation.metadata.compaction_count,
            "average_message_length": round(total_length / len(messages)) if messages else 0,
            "tags": sorted(conversation.metadata.tags),
            "created_at": conversation.metadata.created_at,
            "updated_at": conversation.metadata.updated_at,
        }

    # ------------------------------------------------------------------
    # Export / import
    # ------------------------------------------------------------------

    def export_conversation(self, conversation_id: str, format: ExportFormat = "json") -> str:
        """
        Serialize a conversation.

        Raises:
            ConversationNotFoundError: If the conversation does not exist.
            ImportFormatError: For an unsupported format.
        """
        conversation = self._require(conversation_id)
        if format == "json":
            data = conversation.model_dump(mode="json")
            data["exported_at"] = utc_now().isoformat()
            data["version"] = EXPORT_VERSION
            return json.dumps(data, indent=2, ensure_ascii=False)
        if format == "markdown":
            lines = [
                f"# {conversation.title}",
                "",
                f"**Type:** {conversation.type}",
                f"**Created:** {conversation.metadata.created_at.isoformat()}",
                f"**Messages:** {len(conversation.messages)}",
                "",
            ]
            for m in conversation.messages:
                lines += [f"## {m.role.capitalize()} ({m.timestamp.isoformat()})", "", m.content, ""]
            return "\n".join(lines)
        if format == "plain":
            lines = [conversation.title, "=" * len(conversation.title), ""]
            for m in conversation.messages:
                lines += [f"[{m.timestamp.isoformat()}] {m.role.capitalize()}:", m.content, ""]
            return "\n".join(lines)
        raise ImportFormatError(f"Unsupported export format: {format}")

    def import_conversation(self, data: str | dict[str, Any], format: str = "json") -> str:
        """
        Import a conversation exported as JSON.

        A conversation whose id already exists gets a fresh id.

        Returns:
            The id of the imported conversation.

        Raises:
            ImportFormatError: For an unsupported format or invalid data.
        """
        if format != "json":
            raise ImportFormatError(f"Unsupported import format: {format}")
        try:
            payload = json.loads(data) if isinstance(data, str) else dict(data)
        except json.JSONDecodeError as e:
            raise ImportFormatError(f"Invalid JSON: {e}") from e
        if not payload.get("id") or "messages" not in payload:
            raise ImportFormatError("Invalid conversation data format: 'id' and 'messages' are required")

        payload.pop("exported_at", None)
        payload.pop("version", None)
        try:
            conversation = Conversation.model_validate(payload)
        except ValidationError as e:
            raise ImportFormatError(f"Invalid conversation data: {e.error_count()} error(s)") from e

        if conversation.id in self._conversations:
            conversation.id = generate_id("conv")
        conversation.metadata.message_count = len(conversation.messages)
        conversation.session_state.continuation_mode = ContinuationMode.IMPORTED.value
        self._add(conversation)
        logger.info(f"Imported conversation: {conversation.id}")
        self.bus.publish(
            EventName.CONVERSATION_IMPORTED,
            {
                "conversation_id": conversation.id,
                "title": conversation.title,
                "summary": self._summary(conversation),
                "source": "import",
            },
        )
        self._enforce_session_limit(protect=conversation.id)
        return conversation.id

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def save_conversations(self) -> bool:
        """Write all conversations as one document; failures are logged and reported as False."""
        if self.bridge is None:
            return False
        document = {
            "conversations": {cid: c.model_dump(mode="json") for cid, c in self._conversations.items()},
            "sessions": {sid: s.model_dump(mode="json") for sid, s in self._sessions.items()},
            "current_id": self._current_id,
            "most_recent_id": self._most_recent_id,
            "global_context": self.global_context,
            "saved_at": utc_now().isoformat(),
        }
        try:
            await self.bridge.set(STORAGE_KEY, document)
        except Exception as e:
            logger.error(f"Failed to save conversations: {e}")
            return False
        logger.debug(f"Saved {len(self._conversations)} conversations")
        return True

    async def load_conversations(self) -> int:
        """Restore conversations saved by :meth:`save_conversations`. Returns the number loaded."""
        if self.bridge is None:
            return 0
        try:
            document = await self.bridge.get(STORAGE_KEY)
        except Exception as e:
            logger.error(f"Failed to load conversations: {e}")
            return 0
        if not document:
            return 0

        for cid, data in document.get("conversations", {}).items():
            try:
                self._conversations[cid] = Conversation.model_validate(data)
            except ValidationError as e:
                logger.warning(f"Skipping invalid stored conversation {cid}: {e.error_count()} error(s)")
        stored_sessions = document.get("sessions", {})
        for cid, conversation in self._conversations.items():
            if cid in stored_sessions:
                self._sessions[cid] = SessionMetadata.model_validate(stored_sessions[cid])
            else:
                self._add(conversation)
        current = document.get("current_id")
        self._current_id = current if current in self._conversations else None
        most_recent = document.get("most_recent_id")
        self._most_recent_id = most_recent if most_recent in self._conversations else self._current_id
        self.global_context.update(document.get("global_context", {}))
        logger.info(f"Loaded {len(self._conversations)} conversations")
        return len(self._conversations)


__all__ = ["ConversationManager", "ExportFormat", "STORAGE_KEY", "UNKNOWN_PROVIDER"]
