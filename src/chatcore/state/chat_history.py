# src/chatcore/state/chat_history.py
"""
Chat-history projection of the State Store.

Holds the active conversation id, one cached :class:`ConversationSummary`
per known conversation, a memoized search cache, user preferences
(retention, maximum conversations, search switch) and the UI filter/sort
state. The projection is maintained from conversation events; it never
holds references into the conversation manager's own maps.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from ..config.models import ChatHistoryConfig
from ..events import EventBus, EventName
from ..exceptions import ConversationNotFoundError
from ..models import ConversationSummary, EventRecord, MessageSnippet, SearchResults, ensure_utc, utc_now
from ..persistence.common import MIN_QUERY_LENGTH, SORT_FIELDS
from ..search import IndexedMessage, SearchCandidate, rank_conversations

logger = logging.getLogger(__name__)

PREFERENCE_FIELDS = ("retention_days", "max_conversations", "search_enabled")


class ChatHistoryState:
    """Event-maintained cache of conversation summaries with search and retention."""

    def __init__(
        self,
        bus: EventBus,
        config: ChatHistoryConfig | None = None,
        owner: str = "chat_history_state",
    ) -> None:
        self.bus = bus
        self.config = config or ChatHistoryConfig()
        self.owner = owner

        self.active_conversation_id: str | None = None
        self._conversations: dict[str, ConversationSummary] = {}
        self._search_cache: dict[tuple, SearchResults] = {}
        self.preferences: dict[str, Any] = {name: getattr(self.config, name) for name in PREFERENCE_FIELDS}
        self.filter: dict[str, Any] = {}
        self.sort: dict[str, str] = {"sort_by": "updated_at", "sort_order": "desc"}
        self.last_cleanup: datetime | None = None
        self.dirty = False

    @property
    def total_conversations(self) -> int:
        return len(self._conversations)

    # ------------------------------------------------------------------
    # Event wiring
    # ------------------------------------------------------------------

    def attach(self) -> None:
        handlers = {
            EventName.CONVERSATION_CREATED: self._on_summary_event,
            EventName.CONVERSATION_IMPORTED: self._on_summary_event,
            EventName.CONVERSATION_COMPACTED: self._on_summary_event,
            EventName.CONVERSATION_CLEARED: self._on_summary_event,
            EventName.PROVIDER_SWITCHED: self._on_summary_event,
            EventName.MESSAGE_ADDED: self._on_message_added,
            EventName.CONVERSATION_DELETED: self._on_deleted,
            EventName.CONVERSATION_SWITCHED: self._on_switched,
        }
        for name, handler in handlers.items():
            self.bus.subscribe(name, handler, owner=self.owner)

    def detach(self) -> None:
        self.bus.unsubscribe_owner(self.owner)

    def _on_summary_event(self, record: EventRecord) -> None:
        summary = record.payload.get("summary")
        if summary is not None:
            self.upsert_cached_conversation(ConversationSummary.model_validate(summary))

    def _on_message_added(self, record: EventRecord) -> None:
        conversation_id = record.payload.get("conversation_id")
        cached = self._conversations.get(conversation_id)
        message = record.payload.get("message")
        if cached is None or not message:
            return
        snippet = MessageSnippet(
            message_id=message["id"],
            role=message.get("role", "user"),
            content=str(message.get("content", ""))[: self.config.snippet_length],
            timestamp=message.get("timestamp") or utc_now(),
        )
        message_count = record.payload.get("message_count", cached.message_count + 1)
        # trimmed messages drop off the front; snippets never outnumber live messages
        snippets = [*cached.messages, snippet][-message_count:] if message_count > 0 else []
        self.upsert_cached_conversation(
            cached.model_copy(
                update={
                    "messages": snippets,
                    "message_count": message_count,
                    "updated_at": ensure_utc(snippet.timestamp),
                }
            )
        )

    def _on_deleted(self, record: EventRecord) -> None:
        self.evict_cached_conversation(record.payload.get("conversation_id", ""))

    def _on_switched(self, record: EventRecord) -> None:
        conversation_id = record.payload.get("conversation_id")
        if conversation_id in self._conversations and conversation_id != self.active_conversation_id:
            self.set_active_conversation(conversation_id)

    # ------------------------------------------------------------------
    # Cache maintenance
    # ------------------------------------------------------------------

    def set_active_conversation(self, conversation_id: str | None) -> None:
        """
        Make a cached conversation the active one.

        Publishes ``active-conversation-changed`` and, for a non-empty id,
        ``conversation-provider-sync-required`` so the provider registry can
        follow the conversation's provider.

        Raises:
            ConversationNotFoundError: If the id is not in the cache.
        """
        if conversation_id is not None and conversation_id not in self._conversations:
            raise ConversationNotFoundError(conversation_id)
        previous = self.active_conversation_id
        self.active_conversation_id = conversation_id
        self.dirty = True
        self.bus.publish(
            EventName.ACTIVE_CONVERSATION_CHANGED,
            {"conversation_id": conversation_id, "previous_id": previous},
        )
        if conversation_id is not None:
            self.bus.publish(
                EventName.CONVERSATION_PROVIDER_SYNC_REQUIRED,
                {"conversation_id": conversation_id, "provider_id": self._conversations[conversation_id].provider},
            )

    def upsert_cached_conversation(self, summary: ConversationSummary) -> None:
        limit = self.config.max_snippets_per_conversation
        if len(summary.messages) > limit:
            summary = summary.model_copy(update={"messages": summary.messages[-limit:] if limit else []})
        is_new = summary.id not in self._conversations
        self._conversations[summary.id] = summary
        self._search_cache.clear()
        self.dirty = True
        if is_new:
            self.bus.publish(
                EventName.CONVERSATION_CACHED,
                {"conversation_id": summary.id, "total_conversations": self.total_conversations},
            )

    def evict_cached_conversation(self, conversation_id: str) -> bool:
        """Drop a summary; clears the active id if it pointed there. Returns False if absent."""
        if self._conversations.pop(conversation_id, None) is None:
            return False
        self._search_cache.clear()
        self.dirty = True
        if self.active_conversation_id == conversation_id:
            self.active_conversation_id = None
        self.bus.publish(
            EventName.CONVERSATION_UNCACHED,
            {"conversation_id": conversation_id, "total_conversations": self.total_conversations},
        )
        return True

    def get_cached_conversation(self, conversation_id: str) -> ConversationSummary | None:
        summary = self._conversations.get(conversation_id)
        return summary.model_copy(deep=True) if summary is not None else None

    def list_cached_conversations(
        self,
        sort_by: str | None = None,
        sort_order: str | None = None,
        limit: int | None = None,
        offset: int = 0,
        filters: dict[str, Any] | None = None,
    ) -> list[ConversationSummary]:
        """List cached summaries using the stored filter/sort state unless overridden."""
        sort_by = sort_by or self.sort["sort_by"]
        if sort_by not in SORT_FIELDS:
            sort_by = "updated_at"
        sort_order = sort_order or self.sort["sort_order"]
        active_filters = {**self.filter, **(filters or {})}

        summaries = [s for s in self._conversations.values() if self._matches(s, active_filters)]
        summaries.sort(key=lambda s: getattr(s, sort_by), reverse=sort_order != "asc")
        end = offset + limit if limit is not None else None
        return [s.model_copy(deep=True) for s in summaries[offset:end]]

    @staticmethod
    def _matches(summary: ConversationSummary, filters: dict[str, Any]) -> bool:
        tags = filters.get("tags")
        if tags and not set(tags) & set(summary.tags):
            return False
        provider = filters.get("provider")
        if provider and summary.provider != provider:
            return False
        date_from = filters.get("date_from")
        if date_from and summary.created_at < ensure_utc(date_from):
            return False
        date_to = filters.get("date_to")
        if date_to and summary.created_at > ensure_utc(date_to):
            return False
        return True

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def search(
        self,
        query: str,
        limit: int = 20,
        tags: list[str] | None = None,
        date_from: datetime | str | None = None,
        date_to: datetime | str | None = None,
    ) -> SearchResults:
        """
        Rank cached conversations against ``query``.

        Title matches weigh 10, each matching snippet and tag weighs 1;
        ties are broken by recency. Results are memoized until the cache
        changes.
        """
        if not self.preferences["search_enabled"] or len(query.strip()) < MIN_QUERY_LENGTH:
            return SearchResults(query=query)

        key = (query.strip().lower(), limit, tuple(sorted(tags or ())), str(date_from), str(date_to))
        cached = self._search_cache.get(key)
        if cached is not None:
            return cached.model_copy(deep=True)

        filters = {"tags": tags, "date_from": date_from, "date_to": date_to}
        candidates = [
            SearchCandidate(
                conversation_id=s.id,
                title=s.title,
                updated_at=s.updated_at,
                message_count=s.message_count,
                tags=s.tags,
                messages=[IndexedMessage(m.message_id, m.content, m.timestamp) for m in s.messages],
            )
            for s in self._conversations.values()
            if self._matches(s, filters)
        ]
        results = rank_conversations(query, candidates, limit=limit)
        self._search_cache[key] = results
        self.bus.publish(EventName.CHAT_HISTORY_SEARCHED, {"query": query, "result_count": results.total})
        return results.model_copy(deep=True)

    def clear_search_cache(self) -> None:
        self._search_cache.clear()

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    def run_retention_cleanup(self, now: datetime | None = None) -> list[str]:
        """
        Drop summaries older than ``retention_days``, then the oldest ones
        until at most ``max_conversations`` remain.

        Running it twice in a row removes nothing the second time.

        Returns:
            Ids of the removed conversations.
        """
        now = now or utc_now()
        cutoff = now - timedelta(days=self.preferences["retention_days"])
        snapshot = list(self._conversations.values())

        expired = [s.id for s in snapshot if s.updated_at < cutoff]
        remaining = sorted((s for s in snapshot if s.updated_at >= cutoff), key=lambda s: s.updated_at)
        overflow = len(remaining) - self.preferences["max_conversations"]
        if overflow > 0:
            expired.extend(s.id for s in remaining[:overflow])

        for conversation_id in expired:
            self.evict_cached_conversation(conversation_id)
        self.last_cleanup = now
        if expired:
            logger.info(f"Chat history cleanup removed {len(expired)} conversations")
        self.bus.publish(
            EventName.CHAT_HISTORY_CLEANUP_COMPLETED,
            {"cleanup_count": len(expired), "removed_ids": expired},
        )
        return expired

    # ------------------------------------------------------------------
    # Preferences and UI state
    # ------------------------------------------------------------------

    def update_preferences(self, **preferences: Any) -> dict[str, Any]:
        unknown = set(preferences) - set(PREFERENCE_FIELDS)
        if unknown:
            raise ValueError(f"Unknown chat history preferences: {sorted(unknown)}")
        # validate against the config model so bad values fail fast
        validated = ChatHistoryConfig.model_validate({**self.config.model_dump(), **self.preferences, **preferences})
        self.preferences = {name: getattr(validated, name) for name in PREFERENCE_FIELDS}
        self._search_cache.clear()
        self.dirty = True
        self.bus.publish(EventName.CHAT_HISTORY_PREFERENCES_UPDATED, {"preferences": dict(self.preferences)})
        return dict(self.preferences)

    def set_filter(self, **filters: Any) -> None:
        self.filter = {k: v for k, v in filters.items() if v is not None}
        self.dirty = True
        self.bus.publish(EventName.FILTER_UPDATED, {"filter": dict(self.filter)})

    def set_sort(self, sort_by: str = "updated_at", sort_order: str = "desc") -> None:
        if sort_by not in SORT_FIELDS:
            raise ValueError(f"Unsupported sort field: {sort_by}")
        self.sort = {"sort_by": sort_by, "sort_order": "asc" if sort_order == "asc" else "desc"}
        self.dirty = True
        self.bus.publish(EventName.SORT_UPDATED, dict(self.sort))

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def to_document(self) -> dict[str, Any]:
        return {
            "active_conversation_id": self.active_conversation_id,
            "conversations": {cid: s.model_dump(mode="json") for cid, s in self._conversations.items()},
            "preferences": dict(self.preferences),
            "filter": {k: (v.isoformat() if isinstance(v, datetime) else v) for k, v in self.filter.items()},
            "sort": dict(self.sort),
            "last_cleanup": self.last_cleanup.isoformat() if self.last_cleanup else None,
            "saved_at": utc_now().isoformat(),
        }

    def restore(self, document: dict[str, Any]) -> None:
        self._conversations = {
            cid: ConversationSummary.model_validate(s) for cid, s in document.get("conversations", {}).items()
        }
        active = document.get("active_conversation_id")
        self.active_conversation_id = active if active in self._conversations else None
        self.preferences.update({k: v for k, v in document.get("preferences", {}).items() if k in PREFERENCE_FIELDS})
        self.filter = dict(document.get("filter", {}))
        self.sort = {**self.sort, **document.get("sort", {})}
        last_cleanup = document.get("last_cleanup")
        self.last_cleanup = ensure_utc(last_cleanup) if last_cleanup else None
        self._search_cache.clear()
        self.dirty = False
        logger.info(f"Chat history restored: {self.total_conversations} cached conversations")


__all__ = ["ChatHistoryState", "PREFERENCE_FIELDS"]
