# src/chatcore/sync/manager.py
"""
History Sync Manager.

Keeps the local conversation state and the persistence bridge in step.
Writes are applied locally first (through the Conversation Manager) and then
sent to the bridge; when the bridge is unreachable the local change stays
and the write is queued per conversation for replay. Every write reports
where it ended up through a :class:`~chatcore.sync.results.SyncResult`.

The manager holds a one-way reference to the Conversation Manager and
listens to its events (deletions, evictions, compactions); the
Conversation Manager never calls back.

Example:
    sync = HistorySyncManager(bus, conversations, bridge, settings.sync)
    await sync.initialize()

    result = await sync.create_conversation("Weekly notes")
    result = await sync.add_message({"role": "user", "content": "Hello"})
    if result.queued:
        print("Saved locally, will sync when the store is back")

    await sync.destroy()
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from typing import Any, Literal

from ..config.models import SyncConfig
from ..conversations.manager import ConversationManager
from ..events import EventBus, EventName
from ..exceptions import (
    ConversationNotFoundError,
    NoActiveConversationError,
    SessionNotFoundError,
    TransportError,
)
from ..models import (
    ContinuationMode,
    Conversation,
    ConversationPage,
    ConversationSummary,
    EventRecord,
    Message,
    PendingOperation,
    PendingUpdate,
    SearchResults,
    SessionMetadata,
    utc_now,
)
from ..persistence.base import BasePersistenceBridge
from ..persistence.common import MIN_QUERY_LENGTH, paginate
from ..scheduling import PeriodicScheduler, PeriodicTask
from ..search import SearchCandidate, rank_conversations
from .index import SearchIndex
from .pending import PendingUpdateQueue
from .results import SyncResult, SyncStatus

logger = logging.getLogger(__name__)

SearchMode = Literal["local", "remote"]

SYNC_TASK_NAME = "history_sync_pending"


def sanitize_message(message: Message, preview_length: int = 100) -> dict[str, Any]:
    """Event-safe view of a message: content is reduced to a short preview."""
    return {
        "id": message.id,
        "role": message.role,
        "timestamp": message.timestamp.isoformat(),
        "content_preview": message.content[:preview_length],
    }


class HistorySyncManager:
    """Cache-first conversation access with queued writes during bridge outages."""

    def __init__(
        self,
        bus: EventBus,
        conversations: ConversationManager,
        bridge: BasePersistenceBridge,
        config: SyncConfig | None = None,
        scheduler: PeriodicScheduler | None = None,
        owner: str = "history_sync",
    ) -> None:
        self.bus = bus
        self.conversations = conversations
        self.bridge = bridge
        self.config = config or SyncConfig()
        self.owner = owner

        self._cache: OrderedDict[str, ConversationSummary] = OrderedDict()
        self._sessions: dict[str, SessionMetadata] = {}
        self._index = SearchIndex(self.config.index_content_length)
        self._pending = PendingUpdateQueue(self.config.max_pending_updates)
        self._replay_lock = asyncio.Lock()
        self._deleting: set[str] = set()

        self.is_online = True
        self.active_conversation_id: str | None = None
        self._initialized = False
        self._owns_scheduler = scheduler is None
        self.scheduler = scheduler or PeriodicScheduler()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """
        Probe the bridge, load the initial cache and start periodic syncing.

        An unreachable bridge does not fail initialization; the manager
        starts in cache-only mode and keeps probing on each sync tick.
        """
        if self._initialized:
            return
        self.bus.subscribe(EventName.CONVERSATION_DELETED, self._on_conversation_deleted, owner=self.owner)
        self.bus.subscribe(EventName.CONVERSATION_COMPACTED, self._on_conversation_compacted, owner=self.owner)
        self.bus.subscribe(EventName.NETWORK_STATUS_CHANGED, self._on_network_status, owner=self.owner)

        if await self.check_connectivity():
            await self.load_initial_data()
        else:
            logger.warning("Persistence bridge unreachable, starting in cache-only mode")

        self.scheduler.register(
            PeriodicTask(
                name=SYNC_TASK_NAME,
                callback=self._sync_tick,
                interval=self.config.sync_interval,
                description="Replay pending updates",
            )
        )
        if self._owns_scheduler:
            await self.scheduler.start()
        self._initialized = True
        logger.info(f"HistorySyncManager initialized (online={self.is_online}, cached={len(self._cache)})")

    async def destroy(self) -> None:
        """Stop syncing, try one final drain, and drop every subscription and cache."""
        self.scheduler.unregister(SYNC_TASK_NAME)
        if self._owns_scheduler:
            await self.scheduler.stop()
        if self.is_online and len(self._pending):
            try:
                await self.sync_pending_updates()
            except Exception as e:
                logger.warning(f"Final pending-update sync failed: {e}")
        self.bus.unsubscribe_owner(self.owner)
        self._cache.clear()
        self._sessions.clear()
        self._index.clear()
        self._initialized = False
        logger.info("HistorySyncManager destroyed")

    # ------------------------------------------------------------------
    # Connectivity
    # ------------------------------------------------------------------

    def _set_online(self, is_online: bool) -> None:
        if is_online == self.is_online:
            return
        self.is_online = is_online
        logger.warning(f"Persistence bridge is {'online' if is_online else 'offline'}")
        self.bus.publish(EventName.NETWORK_STATUS_CHANGED, {"is_online": is_online})

    async def check_connectivity(self) -> bool:
        """Probe the bridge with a bounded timeout; updates :attr:`is_online`."""
        try:
            await asyncio.wait_for(self.bridge.list_conversations(limit=1), self.config.connectivity_timeout)
        except TimeoutError:
            logger.warning(f"Connectivity probe timed out after {self.config.connectivity_timeout}s")
            self._set_online(False)
            return False
        except Exception as e:
            logger.warning(f"Connectivity probe failed: {e}")
            self._set_online(False)
            return False
        self._set_online(True)
        return True

    def _on_network_status(self, record: EventRecord) -> Awaitable[None] | None:
        is_online = bool(record.payload.get("is_online"))
        if is_online == self.is_online:
            return None
        return self.handle_network_status_change(is_online)

    async def handle_network_status_change(self, is_online: bool) -> None:
        """Record a connectivity change; coming back online replays the pending updates."""
        was_offline = not self.is_online
        self._set_online(is_online)
        if is_online and was_offline:
            await self.sync_pending_updates()

    async def _sync_tick(self) -> None:
        if not self.is_online:
            if not await self.check_connectivity():
                return
        if len(self._pending):
            await self.sync_pending_updates()

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    async def load_initial_data(self) -> int:
        """Cache a page of recent summaries and the active sessions. Returns the number of summaries cached."""
        try:
            page = await self.bridge.list_conversations(limit=self.config.max_cached_conversations)
            sessions = await self.bridge.list_sessions(active_only=True, limit=self.config.initial_session_limit)
        except TransportError as e:
            logger.warning(f"Failed to load initial data: {e}")
            return 0
        for summary in page.conversations:
            self._cache_summary(summary)
        for session in sessions:
            self._sessions[session.id] = session
        logger.info(f"Cached {len(page.conversations)} conversations and {len(sessions)} sessions")
        return len(page.conversations)

    def _cache_summary(self, summary: ConversationSummary) -> None:
        self._cache[summary.id] = summary
        self._cache.move_to_end(summary.id)
        while len(self._cache) > self.config.max_cached_conversations:
            dropped, _ = self._cache.popitem(last=False)
            self._index.remove(dropped)

    def _refresh_cache(self, conversation_id: str) -> None:
        if self.conversations.has_conversation(conversation_id):
            conversation = self.conversations.get_conversation(conversation_id)
            self._cache_summary(ConversationSummary.from_conversation(conversation))

    def _forget(self, conversation_id: str) -> None:
        self._cache.pop(conversation_id, None)
        self._index.remove(conversation_id)
        for session_id in [s.id for s in self._sessions.values() if s.conversation_id == conversation_id]:
            del self._sessions[session_id]
        if self.active_conversation_id == conversation_id:
            self.active_conversation_id = None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def _write(
        self,
        conversation_id: str,
        operation: PendingOperation,
        payload: dict[str, Any],
        call: Callable[[], Awaitable[None]],
        message_id: str | None = None,
    ) -> SyncResult:
        # a conversation with queued writes keeps queueing so replay order holds
        if self.is_online and not self._pending.has(conversation_id):
            try:
                await call()
                return SyncResult(SyncStatus.REMOTE, conversation_id, message_id)
            except TransportError as e:
                logger.warning(f"{operation.value} for {conversation_id} failed, queueing: {e}")
                error = str(e)
            except Exception as e:
                logger.error(f"{operation.value} for {conversation_id} rejected by the store: {e}")
                return SyncResult(SyncStatus.FAILED, conversation_id, message_id, error=str(e))
        else:
            error = None

        queued = self._pending.enqueue(conversation_id, operation, payload)
        if queued is None:
            return SyncResult(SyncStatus.FAILED, conversation_id, message_id, error="Pending update queue is full")
        event_payload: dict[str, Any] = {
            "conversation_id": conversation_id,
            "operation": operation.value,
            "pending_count": self._pending.count(conversation_id),
        }
        if "message" in payload:
            event_payload["message"] = sanitize_message(
                Message.model_validate(payload["message"]), self.config.event_preview_length
            )
        self.bus.publish(EventName.UPDATE_QUEUED, event_payload)
        return SyncResult(SyncStatus.QUEUED, conversation_id, message_id, error=error)

    async def create_conversation(self, title: str | None = None, **options: Any) -> SyncResult:
        """Create a conversation locally, make it active and store it remotely (or queue it)."""
        conversation_id = self.conversations.create_conversation(title, activate=True, **options)
        conversation = self.conversations.get_conversation(conversation_id)
        self.active_conversation_id = conversation_id
        self._cache_summary(ConversationSummary.from_conversation(conversation))
        self._index.index_conversation(conversation)
        return await self._write(
            conversation_id,
            PendingOperation.CREATE_CONVERSATION,
            {"conversation": conversation.model_dump(mode="json")},
            lambda: self.bridge.save_conversation(conversation),
        )

    async def add_message(self, message: dict[str, Any] | Message, conversation_id: str | None = None) -> SyncResult:
        """
        Append a message locally and store it remotely (or queue it).

        Raises:
            NoActiveConversationError: If no conversation is targeted or active.
            ConversationNotFoundError: If the conversation exists neither locally nor remotely.
        """
        target = conversation_id or self.active_conversation_id or self.conversations.get_current_conversation_id()
        if not target:
            raise NoActiveConversationError()
        if not self.conversations.has_conversation(target):
            await self.load_conversation(target)

        msg = self.conversations.add_message(message, target)
        conversation = self.conversations.get_conversation(target)
        if len(conversation.messages) <= len(self._index.get(target)):
            # older messages were trimmed away; their entries must go too
            self._index.index_conversation(conversation)
        else:
            self._index.add(target, msg)
        self._cache_summary(ConversationSummary.from_conversation(conversation))
        return await self._write(
            target,
            PendingOperation.ADD_MESSAGE,
            {"message": msg.model_dump(mode="json")},
            lambda: self._push_message(target, msg),
            message_id=msg.id,
        )

    async def _push_message(self, conversation_id: str, message: Message) -> None:
        try:
            await self.bridge.add_message(conversation_id, message)
        except ConversationNotFoundError:
            # never stored remotely; send the whole conversation instead
            await self.bridge.save_conversation(self.conversations.get_conversation(conversation_id))

    async def _remote_delete(self, conversation_id: str) -> None:
        try:
            await self.bridge.delete_conversation(conversation_id)
        except ConversationNotFoundError:
            logger.debug(f"Conversation {conversation_id} already absent from the store")

    async def delete_conversation(self, conversation_id: str) -> SyncResult:
        """Delete locally and remotely; a conversation missing remotely counts as deleted."""
        self._deleting.add(conversation_id)
        try:
            if self.conversations.has_conversation(conversation_id):
                self.conversations.delete_conversation(conversation_id)
        finally:
            self._deleting.discard(conversation_id)
        self._forget(conversation_id)
        dropped = self._pending.discard(conversation_id)
        if dropped:
            logger.info(f"Dropped {dropped} pending updates of deleted conversation {conversation_id}")
        return await self._write(
            conversation_id,
            PendingOperation.DELETE_CONVERSATION,
            {},
            lambda: self._remote_delete(conversation_id),
        )

    def _on_conversation_deleted(self, record: EventRecord) -> Awaitable[SyncResult] | None:
        conversation_id = record.payload.get("conversation_id", "")
        if conversation_id in self._deleting:
            return None
        if record.payload.get("reason") == "evicted":
            return self._on_conversation_evicted(conversation_id, record.payload.get("conversation"))
        self._forget(conversation_id)
        self._pending.discard(conversation_id)
        if not self._initialized:
            return None
        return self._write(
            conversation_id,
            PendingOperation.DELETE_CONVERSATION,
            {},
            lambda: self._remote_delete(conversation_id),
        )

    def _on_conversation_evicted(
        self, conversation_id: str, snapshot: dict[str, Any] | None
    ) -> Awaitable[SyncResult] | None:
        """
        Drop an evicted conversation from the cache and index, then store its
        final snapshot so the stored copy carries the usage and cost totals
        that message appends alone never update. It is not deleted remotely.
        """
        self._forget(conversation_id)
        if not self._initialized or snapshot is None:
            return None
        conversation = Conversation.model_validate(snapshot)
        return self._write(
            conversation_id,
            PendingOperation.SAVE_CONVERSATION,
            {"conversation": snapshot},
            lambda: self.bridge.save_conversation(conversation),
        )

    def _on_conversation_compacted(self, record: EventRecord) -> Awaitable[SyncResult] | None:
        conversation_id = record.payload.get("conversation_id", "")
        if not self._initialized or not self.conversations.has_conversation(conversation_id):
            return None
        conversation = self.conversations.get_conversation(conversation_id)
        self._index.index_conversation(conversation)
        self._refresh_cache(conversation_id)
        return self._write(
            conversation_id,
            PendingOperation.SAVE_CONVERSATION,
            {"conversation": conversation.model_dump(mode="json")},
            lambda: self.bridge.save_conversation(conversation),
        )

    # ------------------------------------------------------------------
    # Replay
    # ------------------------------------------------------------------

    async def _apply(self, update: PendingUpdate) -> None:
        operation = PendingOperation(update.operation)
        if operation in (PendingOperation.CREATE_CONVERSATION, PendingOperation.SAVE_CONVERSATION):
            await self.bridge.save_conversation(Conversation.model_validate(update.payload["conversation"]))
        elif operation == PendingOperation.ADD_MESSAGE:
            await self.bridge.add_message(update.conversation_id, Message.model_validate(update.payload["message"]))
        elif operation == PendingOperation.DELETE_CONVERSATION:
            await self._remote_delete(update.conversation_id)

    async def sync_pending_updates(self) -> dict[str, Any]:
        """
        Replay queued writes, conversation by conversation, in enqueue order.

        A failing write stays at the head of its conversation's queue and
        stops that conversation's replay; other conversations still replay.
        Concurrent calls (sync tick, reconnection, shutdown) run one after
        another.

        Returns:
            ``{"synced_count": int, "failed_conversations": [ids]}``
        """
        async with self._replay_lock:
            return await self._replay_pending()

    async def _replay_pending(self) -> dict[str, Any]:
        if not self.is_online or not len(self._pending):
            return {"synced_count": 0, "failed_conversations": []}

        self.bus.publish(EventName.SYNC_STARTED, {"pending_count": len(self._pending)})
        logger.info(f"Syncing {len(self._pending)} pending updates")
        synced = 0
        failed: list[str] = []
        for conversation_id in self._pending.conversation_ids():
            while (update := self._pending.peek(conversation_id)) is not None:
                try:
                    await self._apply(update)
                except Exception as e:
                    update.attempts += 1
                    failed.append(conversation_id)
                    logger.error(f"Failed to sync updates for {conversation_id}: {e}")
                    self.bus.publish(EventName.SYNC_FAILED, {"error": str(e), "conversation_id": conversation_id})
                    break
                # the queue may have been discarded while the write was in flight
                if self._pending.peek(conversation_id) is update:
                    self._pending.pop(conversation_id)
                synced += 1

        result = {"synced_count": synced, "failed_conversations": failed}
        self.bus.publish(EventName.SYNC_COMPLETED, result)
        return result

    def get_pending_count(self, conversation_id: str | None = None) -> int:
        return self._pending.count(conversation_id)

    def get_pending_updates(self, conversation_id: str) -> list[PendingUpdate]:
        return self._pending.items(conversation_id)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def load_conversation(self, conversation_id: str) -> Conversation:
        """
        Return a full conversation, from local state or else from the bridge.

        Raises:
            ConversationNotFoundError: If the bridge does not know it either.
            TransportError: If it is not held locally and the bridge is unreachable.
        """
        if self.conversations.has_conversation(conversation_id):
            conversation = self.conversations.get_conversation(conversation_id)
            source = "cache"
        else:
            conversation = await self.bridge.load_conversation(conversation_id)
            self.conversations.adopt_conversation(conversation)
            self._index.index_conversation(conversation)
            source = "remote"
        self._cache_summary(ConversationSummary.from_conversation(conversation))
        logger.debug(f"Loaded conversation {conversation_id} from {source}")
        self.bus.publish(
            EventName.CONVERSATION_LOADED,
            {"conversation_id": conversation_id, "source": source, "message_count": len(conversation.messages)},
        )
        return conversation

    async def set_active_conversation(self, conversation_id: str) -> str:
        if not self.conversations.has_conversation(conversation_id):
            await self.load_conversation(conversation_id)
        self.conversations.switch_to_conversation(conversation_id)
        self.active_conversation_id = conversation_id
        return conversation_id

    def get_active_conversation(self) -> Conversation | None:
        if self.active_conversation_id is None or not self.conversations.has_conversation(self.active_conversation_id):
            return None
        return self.conversations.get_conversation(self.active_conversation_id)

    async def list_conversations(
        self,
        limit: int = 20,
        offset: int = 0,
        sort_by: str = "updated_at",
        sort_order: str = "desc",
        use_cache: bool = True,
    ) -> ConversationPage:
        """
        List conversation summaries with pagination.

        Served from the cache when it is populated (or the bridge is offline);
        otherwise fetched from the bridge and cached.
        """
        if (use_cache and self._cache) or not self.is_online:
            return paginate(list(self._cache.values()), limit, offset, sort_by, sort_order)
        page = await self.bridge.list_conversations(limit=limit, offset=offset, sort_by=sort_by, sort_order=sort_order)
        for summary in page.conversations:
            self._cache_summary(summary)
        return page

    async def search(
        self, query: str, mode: SearchMode = "local", search_type: str = "all", limit: int = 20
    ) -> SearchResults:
        """
        Search conversations.

        ``local`` ranks the cached summaries with the message index;
        ``remote`` delegates to the bridge and falls back to local search
        when the bridge is unreachable.
        """
        if len(query.strip()) < MIN_QUERY_LENGTH:
            return SearchResults(query=query)
        if mode == "remote" and self.is_online:
            try:
                results = await self.bridge.search_conversations(query, search_type=search_type, limit=limit)
            except TransportError as e:
                logger.warning(f"Remote search failed, using local index: {e}")
            else:
                self._publish_searched(query, results, "storage")
                return results

        candidates = [
            SearchCandidate(
                conversation_id=s.id,
                title=s.title,
                updated_at=s.updated_at,
                message_count=s.message_count,
                tags=s.tags,
                messages=self._index.get(s.id),
            )
            for s in self._cache.values()
        ]
        results = rank_conversations(query, candidates, limit=limit, search_type=search_type)  # type: ignore[arg-type]
        self._publish_searched(query, results, "cache")
        return results

    def _publish_searched(self, query: str, results: SearchResults, source: str) -> None:
        self.bus.publish(
            EventName.CHAT_HISTORY_SEARCHED,
            {
                "query": query,
                "result_count": results.total,
                "message_count": len(results.messages),
                "source": source,
            },
        )

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def create_session(self, conversation_id: str | None = None) -> SessionMetadata:
        """
        Create a remote session for a conversation (the active one by default).

        Raises:
            NoActiveConversationError: If no conversation is targeted or active.
            TransportError: If the bridge is unreachable.
        """
        target = conversation_id or self.active_conversation_id
        if not target:
            raise NoActiveConversationError()
        title = self._cache[target].title if target in self._cache else None
        session = await self.bridge.create_session({"conversation_id": target, "title": title})
        self._sessions[session.id] = session
        logger.info(f"Created session: {session.id}")
        self.bus.publish(EventName.SESSION_CREATED, {"conversation_id": target, "session_id": session.id})
        return session

    async def continue_last_session(self) -> SessionMetadata | None:
        """Reactivate the most recently used active session; None if there is none."""
        sessions = [s for s in self._sessions.values() if s.is_active]
        if not sessions and self.is_online:
            try:
                sessions = await self.bridge.list_sessions(active_only=True, limit=1)
            except TransportError as e:
                logger.warning(f"Could not list sessions: {e}")
        if not sessions:
            return None
        latest = max(sessions, key=lambda s: s.last_accessed)
        session = await self._activate_session(latest, ContinuationMode.CONTINUE)
        self.bus.publish(
            EventName.SESSION_CONTINUED, {"conversation_id": session.conversation_id, "session_id": session.id}
        )
        return session

    async def resume_session(self, session_id: str) -> SessionMetadata:
        """
        Reactivate a specific session.

        Raises:
            SessionNotFoundError: If the session is unknown locally and remotely.
        """
        session = self._sessions.get(session_id)
        if session is None and self.is_online:
            for candidate in await self.bridge.list_sessions(limit=100):
                self._sessions.setdefault(candidate.id, candidate)
            session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        session = await self._activate_session(session, ContinuationMode.RESUME)
        self.bus.publish(EventName.SESSION_RESUMED, {"conversation_id": session.conversation_id, "session_id": session.id})
        return session

    async def _activate_session(self, session: SessionMetadata, mode: ContinuationMode) -> SessionMetadata:
        if session.conversation_id:
            await self.set_active_conversation(session.conversation_id)
            self.conversations.set_continuation_mode(session.conversation_id, mode)
        try:
            session = await self.bridge.update_session(session.id, {"last_accessed": utc_now(), "is_active": True})
        except TransportError as e:
            logger.warning(f"Could not update session {session.id} remotely: {e}")
            session = session.model_copy(update={"last_accessed": utc_now(), "is_active": True})
        self._sessions[session.id] = session
        return session

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get_status(self) -> dict[str, Any]:
        return {
            "initialized": self._initialized,
            "is_online": self.is_online,
            "cache_size": len(self._cache),
            "session_cache_size": len(self._sessions),
            "active_conversation_id": self.active_conversation_id,
            "pending_updates": len(self._pending),
            "pending_conversations": self._pending.conversation_ids(),
            "search_index_size": len(self._index),
        }


__all__ = ["HistorySyncManager", "SearchMode", "sanitize_message"]
