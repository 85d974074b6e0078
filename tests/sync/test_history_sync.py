# tests/sync/test_history_sync.py
"""
Test suite for the HistorySyncManager.

Tests cover:
    - Remote writes when the bridge is reachable
    - Queued writes during outages and their ordered replay
    - Replay isolation between conversations
    - Connectivity probing and network status changes
    - Deletion, eviction and compaction coming from the Conversation Manager
    - Cache-first reads, local and remote search, sessions
"""

import asyncio

import pytest

from chatcore.config.models import ConversationConfig, SyncConfig
from chatcore.conversations import ConversationManager
from chatcore.events import EventName
from chatcore.exceptions import (
    ConversationNotFoundError,
    NoActiveConversationError,
    SessionNotFoundError,
    TransportError,
)
from chatcore.models import Conversation, Message, PendingOperation
from chatcore.persistence import InMemoryPersistenceBridge
from chatcore.scheduling import PeriodicScheduler
from chatcore.sync import HistorySyncManager, SyncStatus, sanitize_message
from chatcore.sync.manager import SYNC_TASK_NAME


async def start_sync(bus, bridge, sync_config=None, conversation_config=None):
    """An initialized sync manager on an unstarted scheduler."""
    conversations = ConversationManager(bus, conversation_config, scheduler=PeriodicScheduler())
    sync = HistorySyncManager(bus, conversations, bridge, sync_config, scheduler=PeriodicScheduler())
    await sync.initialize()
    return sync


class SlowMessageBridge(InMemoryPersistenceBridge):
    """Yields to the event loop on every message append; chosen messages fail."""

    def __init__(self) -> None:
        super().__init__()
        self.online = True
        self.failing_messages: set[str] = set()

    async def add_message(self, conversation_id: str, message: Message) -> None:
        await asyncio.sleep(0)
        if not self.online or message.id in self.failing_messages:
            raise TransportError("add_message", "Simulated outage.")
        await super().add_message(conversation_id, message)


# =============================================================================
# Helpers
# =============================================================================


class TestSanitizeMessage:
    def test_preview_only(self):
        """Event payloads carry a bounded preview, never the full content."""
        message = Message(role="user", content="x" * 300)
        sanitized = sanitize_message(message, preview_length=100)
        assert sanitized["id"] == message.id
        assert sanitized["role"] == "user"
        assert len(sanitized["content_preview"]) == 100
        assert "content" not in sanitized


# =============================================================================
# Online writes
# =============================================================================


class TestOnlineWrites:
    """Writes reach the bridge immediately when it is reachable."""

    @pytest.mark.asyncio
    async def test_create_conversation(self, bus, flaky_bridge):
        """A created conversation is active locally and stored remotely."""
        sync = await start_sync(bus, flaky_bridge)
        result = await sync.create_conversation("Weekly notes")

        assert result.status == SyncStatus.REMOTE
        assert result.succeeded_remotely
        assert sync.active_conversation_id == result.conversation_id
        assert sync.conversations.get_current_conversation_id() == result.conversation_id
        assert result.conversation_id in flaky_bridge.stored_ids()

    @pytest.mark.asyncio
    async def test_add_message_to_active(self, bus, flaky_bridge):
        """Messages go to the active conversation and are pushed to the bridge."""
        sync = await start_sync(bus, flaky_bridge)
        conversation_id = (await sync.create_conversation("Chat")).conversation_id

        result = await sync.add_message({"role": "user", "content": "Hello"})

        assert result.status == SyncStatus.REMOTE
        assert flaky_bridge.stored_message_ids(conversation_id) == [result.message_id]

    @pytest.mark.asyncio
    async def test_add_message_without_target(self, bus, flaky_bridge):
        """Without an active conversation adding fails."""
        sync = await start_sync(bus, flaky_bridge)
        with pytest.raises(NoActiveConversationError):
            await sync.add_message({"content": "Hello"})

    @pytest.mark.asyncio
    async def test_add_message_to_remote_only_conversation(self, bus, flaky_bridge):
        """A conversation held only by the bridge is loaded before appending."""
        stored = Conversation(title="Remote")
        await flaky_bridge.save_conversation(stored)
        sync = await start_sync(bus, flaky_bridge)

        result = await sync.add_message({"content": "appended"}, stored.id)

        assert result.status == SyncStatus.REMOTE
        assert sync.conversations.has_conversation(stored.id)
        assert flaky_bridge.stored_message_ids(stored.id) == [result.message_id]

    @pytest.mark.asyncio
    async def test_rejected_write_fails(self, bus, memory_bridge):
        """A non-transport failure is reported as failed and not queued."""
        sync = await start_sync(bus, memory_bridge)
        conversation_id = (await sync.create_conversation("Chat")).conversation_id

        async def reject(*args):
            raise ValueError("schema mismatch")

        memory_bridge.add_message = reject
        result = await sync.add_message({"content": "x"})

        assert result.failed
        assert result.error == "schema mismatch"
        assert sync.get_pending_count(conversation_id) == 0


# =============================================================================
# Outages and replay
# =============================================================================


class TestQueuedWrites:
    """Writes during outages are queued and replayed in order."""

    @pytest.mark.asyncio
    async def test_outage_queues_then_replays_in_order(self, bus, flaky_bridge, recorder):
        """Queued messages replay FIFO once the bridge is back."""
        sync = await start_sync(bus, flaky_bridge)
        conversation_id = (await sync.create_conversation("Chat")).conversation_id
        flaky_bridge.online = False

        first = await sync.add_message({"role": "user", "content": "one " * 50})
        second = await sync.add_message({"role": "user", "content": "two"})

        assert first.queued and second.queued
        assert sync.get_pending_count(conversation_id) == 2
        assert [u.operation for u in sync.get_pending_updates(conversation_id)] == [
            PendingOperation.ADD_MESSAGE.value,
            PendingOperation.ADD_MESSAGE.value,
        ]
        assert len(sync.conversations.get_conversation(conversation_id).messages) == 2

        queued = recorder.payloads(EventName.UPDATE_QUEUED)
        assert [q["pending_count"] for q in queued] == [1, 2]
        assert len(queued[0]["message"]["content_preview"]) == 100

        flaky_bridge.online = True
        result = await sync.sync_pending_updates()

        assert result == {"synced_count": 2, "failed_conversations": []}
        assert flaky_bridge.stored_message_ids(conversation_id) == [first.message_id, second.message_id]
        assert sync.get_pending_count() == 0
        assert recorder.payloads(EventName.SYNC_STARTED) == [{"pending_count": 2}]
        assert recorder.payloads(EventName.SYNC_COMPLETED) == [result]

    @pytest.mark.asyncio
    async def test_failure_of_one_conversation_does_not_block_another(self, bus, flaky_bridge, recorder):
        """A failing conversation keeps its queue while others replay."""
        sync = await start_sync(bus, flaky_bridge)
        blocked = (await sync.create_conversation("A")).conversation_id
        healthy = (await sync.create_conversation("B")).conversation_id
        flaky_bridge.online = False
        await sync.add_message({"content": "a1"}, blocked)
        await sync.add_message({"content": "a2"}, blocked)
        await sync.add_message({"content": "b1"}, healthy)

        flaky_bridge.online = True
        flaky_bridge.failing.add(blocked)
        result = await sync.sync_pending_updates()

        assert result == {"synced_count": 1, "failed_conversations": [blocked]}
        assert len(flaky_bridge.stored_message_ids(healthy)) == 1
        assert flaky_bridge.stored_message_ids(blocked) == []
        pending = sync.get_pending_updates(blocked)
        assert len(pending) == 2
        assert pending[0].attempts == 1
        assert recorder.payloads(EventName.SYNC_FAILED)[0]["conversation_id"] == blocked

    @pytest.mark.asyncio
    async def test_concurrent_replays_keep_failed_write(self, bus):
        """Overlapping replays run one after another; a failed write stays queued."""
        bridge = SlowMessageBridge()
        sync = await start_sync(bus, bridge)
        conversation_id = (await sync.create_conversation("Chat")).conversation_id
        bridge.online = False
        first = await sync.add_message({"content": "m1"})
        second = await sync.add_message({"content": "m2"})

        bridge.online = True
        bridge.failing_messages.add(second.message_id)
        results = await asyncio.gather(sync.sync_pending_updates(), sync.sync_pending_updates())

        assert sorted(r["synced_count"] for r in results) == [0, 1]
        stored = await bridge.load_conversation(conversation_id)
        assert [m.id for m in stored.messages] == [first.message_id]
        pending = sync.get_pending_updates(conversation_id)
        assert [u.payload["message"]["id"] for u in pending] == [second.message_id]
        assert pending[0].attempts == 2

        bridge.failing_messages.clear()
        assert (await sync.sync_pending_updates())["synced_count"] == 1
        stored = await bridge.load_conversation(conversation_id)
        assert [m.id for m in stored.messages] == [first.message_id, second.message_id]

    @pytest.mark.asyncio
    async def test_pending_conversation_keeps_queueing(self, bus, flaky_bridge):
        """While a conversation has queued writes, new ones queue behind them."""
        sync = await start_sync(bus, flaky_bridge)
        conversation_id = (await sync.create_conversation("Chat")).conversation_id
        flaky_bridge.online = False
        await sync.add_message({"content": "queued"})
        flaky_bridge.online = True

        result = await sync.add_message({"content": "also queued"})

        assert result.queued
        assert flaky_bridge.stored_message_ids(conversation_id) == []

    @pytest.mark.asyncio
    async def test_full_queue_fails_write(self, bus, flaky_bridge):
        """When the queue is full the write is applied locally but reported failed."""
        sync = await start_sync(bus, flaky_bridge, SyncConfig(max_pending_updates=1))
        conversation_id = (await sync.create_conversation("Chat")).conversation_id
        flaky_bridge.online = False
        await sync.add_message({"content": "fits"})

        result = await sync.add_message({"content": "overflows"})

        assert result.failed
        assert len(sync.conversations.get_conversation(conversation_id).messages) == 2
        assert sync.get_pending_count() == 1

    @pytest.mark.asyncio
    async def test_sync_noop_when_nothing_pending(self, bus, flaky_bridge, recorder):
        """Without pending updates no sync events are published."""
        sync = await start_sync(bus, flaky_bridge)
        assert await sync.sync_pending_updates() == {"synced_count": 0, "failed_conversations": []}
        assert recorder.payloads(EventName.SYNC_STARTED) == []


# =============================================================================
# Connectivity
# =============================================================================


class TestConnectivity:
    """Connectivity probing and network status events."""

    @pytest.mark.asyncio
    async def test_starts_offline_and_recovers_on_tick(self, bus, flaky_bridge, recorder):
        """An unreachable bridge at startup queues writes until a tick finds it again."""
        flaky_bridge.online = False
        sync = await start_sync(bus, flaky_bridge)
        assert sync.is_online is False
        assert recorder.payloads(EventName.NETWORK_STATUS_CHANGED) == [{"is_online": False}]

        created = await sync.create_conversation("Offline")
        await sync.add_message({"content": "while offline"})
        assert created.queued
        assert sync.get_pending_count(created.conversation_id) == 2

        flaky_bridge.online = True
        await sync.scheduler.run_task_now(SYNC_TASK_NAME)

        assert sync.is_online is True
        assert created.conversation_id in flaky_bridge.stored_ids()
        assert len(flaky_bridge.stored_message_ids(created.conversation_id)) == 1
        assert sync.get_pending_count() == 0

    @pytest.mark.asyncio
    async def test_network_event_triggers_sync(self, bus, flaky_bridge):
        """A network-status-changed event reporting online replays the queue."""
        flaky_bridge.online = False
        sync = await start_sync(bus, flaky_bridge)
        created = await sync.create_conversation("Offline")
        flaky_bridge.online = True

        bus.publish(EventName.NETWORK_STATUS_CHANGED, {"is_online": True})
        await bus.drain()

        assert sync.is_online is True
        assert created.conversation_id in flaky_bridge.stored_ids()

    @pytest.mark.asyncio
    async def test_offline_tick_without_bridge_does_nothing(self, bus, flaky_bridge):
        """A tick while the bridge is still down keeps everything queued."""
        flaky_bridge.online = False
        sync = await start_sync(bus, flaky_bridge)
        await sync.create_conversation("Offline")
        await sync.scheduler.run_task_now(SYNC_TASK_NAME)
        assert sync.is_online is False
        assert sync.get_pending_count() == 1


# =============================================================================
# Deletion, eviction, compaction
# =============================================================================


class TestManagerEvents:
    """Reactions to Conversation Manager events."""

    @pytest.mark.asyncio
    async def test_delete_removes_everywhere(self, bus, flaky_bridge):
        """Deleting through the sync manager removes local and remote copies."""
        sync = await start_sync(bus, flaky_bridge)
        conversation_id = (await sync.create_conversation("Gone")).conversation_id

        result = await sync.delete_conversation(conversation_id)

        assert result.status == SyncStatus.REMOTE
        assert not sync.conversations.has_conversation(conversation_id)
        assert conversation_id not in flaky_bridge.stored_ids()
        assert sync.active_conversation_id is None

    @pytest.mark.asyncio
    async def test_delete_discards_pending_updates(self, bus, flaky_bridge):
        """Queued writes of a deleted conversation are dropped; only the delete is queued."""
        sync = await start_sync(bus, flaky_bridge)
        conversation_id = (await sync.create_conversation("Gone")).conversation_id
        flaky_bridge.online = False
        await sync.add_message({"content": "never synced"})

        result = await sync.delete_conversation(conversation_id)

        assert result.queued
        assert [u.operation for u in sync.get_pending_updates(conversation_id)] == [
            PendingOperation.DELETE_CONVERSATION.value
        ]

    @pytest.mark.asyncio
    async def test_delete_missing_remotely_counts_as_deleted(self, bus, flaky_bridge):
        """A conversation the bridge never stored is still deleted successfully."""
        sync = await start_sync(bus, flaky_bridge)
        conversation_id = sync.conversations.create_conversation("Local only")
        result = await sync.delete_conversation(conversation_id)
        assert result.status == SyncStatus.REMOTE

    @pytest.mark.asyncio
    async def test_manager_delete_propagates(self, bus, flaky_bridge):
        """A deletion made directly on the Conversation Manager reaches the bridge."""
        sync = await start_sync(bus, flaky_bridge)
        conversation_id = (await sync.create_conversation("Gone")).conversation_id

        sync.conversations.delete_conversation(conversation_id)
        await bus.drain()

        assert conversation_id not in flaky_bridge.stored_ids()

    @pytest.mark.asyncio
    async def test_eviction_keeps_stored_copy(self, bus, flaky_bridge):
        """Conversations evicted over the session limit stay stored and can be reloaded."""
        sync = await start_sync(bus, flaky_bridge, conversation_config=ConversationConfig(max_sessions=1))
        evicted = (await sync.create_conversation("Old")).conversation_id
        await sync.create_conversation("New")
        await bus.drain()

        assert not sync.conversations.has_conversation(evicted)
        assert evicted in flaky_bridge.stored_ids()

        conversation = await sync.load_conversation(evicted)
        assert conversation.title == "Old"

    @pytest.mark.asyncio
    async def test_eviction_stores_final_usage(self, bus, flaky_bridge):
        """Token and cost totals of an evicted conversation survive a reload."""
        sync = await start_sync(bus, flaky_bridge, conversation_config=ConversationConfig(max_sessions=1))
        evicted = (await sync.create_conversation("Old")).conversation_id
        await sync.add_message({"role": "user", "content": "calibration notes", "tokens": 100, "cost": 0.5})
        await sync.create_conversation("New")
        await bus.drain()

        assert (await sync.search("calibration")).total == 0
        assert sync.get_status()["cache_size"] == 1

        conversation = await sync.load_conversation(evicted)
        assert conversation.metadata.token_usage.total == 100
        assert conversation.metadata.cost_tracking.total == pytest.approx(0.5)
        assert [m.content for m in conversation.messages] == ["calibration notes"]

    @pytest.mark.asyncio
    async def test_eviction_snapshot_queued_during_outage(self, bus, flaky_bridge):
        """An eviction while the bridge is down queues the snapshot behind earlier writes."""
        sync = await start_sync(bus, flaky_bridge, conversation_config=ConversationConfig(max_sessions=1))
        evicted = (await sync.create_conversation("Old")).conversation_id
        flaky_bridge.online = False
        await sync.add_message({"content": "offline", "tokens": 7})
        await sync.create_conversation("New")
        await bus.drain()

        assert [u.operation for u in sync.get_pending_updates(evicted)] == [
            PendingOperation.ADD_MESSAGE.value,
            PendingOperation.SAVE_CONVERSATION.value,
        ]
        flaky_bridge.online = True
        await sync.sync_pending_updates()
        stored = await flaky_bridge.load_conversation(evicted)
        assert stored.metadata.token_usage.total == 7

    @pytest.mark.asyncio
    async def test_trimmed_messages_leave_the_index(self, bus, flaky_bridge):
        """Messages dropped by the history cap are no longer found by local search."""
        sync = await start_sync(
            bus, flaky_bridge, conversation_config=ConversationConfig(enable_compaction=False, max_history_size=2)
        )
        conversation_id = (await sync.create_conversation("Chat")).conversation_id
        for content in ["needle here", "hay", "hay again"]:
            await sync.add_message({"content": content})

        assert len(sync.conversations.get_conversation(conversation_id).messages) == 2
        assert (await sync.search("needle")).total == 0
        assert [h.content for h in (await sync.search("again")).messages] == ["hay again"]

    @pytest.mark.asyncio
    async def test_compaction_resaves_conversation(self, bus, flaky_bridge):
        """After compaction the stored copy is replaced with the compacted conversation."""
        sync = await start_sync(
            bus, flaky_bridge, conversation_config=ConversationConfig(compaction_threshold=4, context_window=2)
        )
        conversation_id = (await sync.create_conversation("Long")).conversation_id
        for i in range(5):
            await sync.add_message({"content": f"message {i}"})
        await bus.drain()

        stored = await flaky_bridge.load_conversation(conversation_id)
        assert len(stored.messages) == 3
        assert stored.messages[0].role == "system"
        assert stored.metadata.compaction_count == 1


# =============================================================================
# Reads and search
# =============================================================================


class TestReads:
    """Loading, listing and searching."""

    @pytest.mark.asyncio
    async def test_load_from_cache_and_remote(self, bus, flaky_bridge, recorder):
        """Local conversations load from cache; others come from the bridge."""
        remote = Conversation(title="Stored", messages=[Message(content="hi")])
        await flaky_bridge.save_conversation(remote)
        sync = await start_sync(bus, flaky_bridge)
        local = (await sync.create_conversation("Local")).conversation_id

        await sync.load_conversation(local)
        loaded = await sync.load_conversation(remote.id)

        assert loaded.title == "Stored"
        assert sync.conversations.has_conversation(remote.id)
        assert [(p["source"], p["message_count"]) for p in recorder.payloads(EventName.CONVERSATION_LOADED)] == [
            ("cache", 0),
            ("remote", 1),
        ]

    @pytest.mark.asyncio
    async def test_load_unknown(self, bus, flaky_bridge):
        """Unknown conversations raise ConversationNotFoundError."""
        sync = await start_sync(bus, flaky_bridge)
        with pytest.raises(ConversationNotFoundError):
            await sync.load_conversation("conv_missing")

    @pytest.mark.asyncio
    async def test_initial_data_cached(self, bus, flaky_bridge):
        """Initialization caches stored summaries for listing."""
        await flaky_bridge.save_conversation(Conversation(title="Stored"))
        sync = await start_sync(bus, flaky_bridge)
        page = await sync.list_conversations()
        assert [s.title for s in page.conversations] == ["Stored"]
        assert sync.get_status()["cache_size"] == 1

    @pytest.mark.asyncio
    async def test_local_search(self, bus, flaky_bridge, recorder):
        """Local search ranks cached titles above indexed message hits."""
        sync = await start_sync(bus, flaky_bridge)
        faq = (await sync.create_conversation("Rogowski Coil FAQ")).conversation_id
        misc = (await sync.create_conversation("Misc")).conversation_id
        await sync.add_message({"content": "a rogowski coil question"}, misc)

        results = await sync.search("rogowski")

        assert [h.conversation_id for h in results.conversations] == [faq, misc]
        assert recorder.payloads(EventName.CHAT_HISTORY_SEARCHED)[-1]["source"] == "cache"
        assert (await sync.search("r")).total == 0

    @pytest.mark.asyncio
    async def test_remote_search_falls_back_to_local(self, bus, flaky_bridge, recorder):
        """Remote search uses the bridge, or the local index when it is unreachable."""
        sync = await start_sync(bus, flaky_bridge)
        await sync.create_conversation("Rogowski Coil FAQ")

        assert (await sync.search("rogowski", mode="remote")).total == 1
        assert recorder.payloads(EventName.CHAT_HISTORY_SEARCHED)[-1]["source"] == "storage"

        flaky_bridge.online = False
        assert (await sync.search("rogowski", mode="remote")).total == 1
        assert recorder.payloads(EventName.CHAT_HISTORY_SEARCHED)[-1]["source"] == "cache"


# =============================================================================
# Sessions
# =============================================================================


class TestSessions:
    """Session creation, continuation and resumption."""

    @pytest.mark.asyncio
    async def test_create_and_continue(self, bus, flaky_bridge, recorder):
        """The latest active session is continued and its conversation activated."""
        sync = await start_sync(bus, flaky_bridge)
        conversation_id = (await sync.create_conversation("Chat")).conversation_id
        session = await sync.create_session()
        await sync.create_conversation("Other")

        continued = await sync.continue_last_session()

        assert continued.id == session.id
        assert sync.active_conversation_id == conversation_id
        assert sync.conversations.get_conversation(conversation_id).session_state.continuation_mode == "continue"
        assert recorder.payloads(EventName.SESSION_CONTINUED) == [
            {"conversation_id": conversation_id, "session_id": session.id}
        ]

    @pytest.mark.asyncio
    async def test_continue_without_sessions(self, bus, flaky_bridge):
        """With no sessions anywhere there is nothing to continue."""
        sync = await start_sync(bus, flaky_bridge)
        assert await sync.continue_last_session() is None

    @pytest.mark.asyncio
    async def test_resume_session(self, bus, flaky_bridge):
        """A session known only to the bridge can be resumed by id."""
        stored = Conversation(title="Stored")
        await flaky_bridge.save_conversation(stored)
        session = await flaky_bridge.create_session({"conversation_id": stored.id})
        await flaky_bridge.update_session(session.id, {"is_active": False})
        sync = await start_sync(bus, flaky_bridge)

        resumed = await sync.resume_session(session.id)

        assert resumed.is_active is True
        assert sync.active_conversation_id == stored.id
        assert sync.conversations.get_conversation(stored.id).session_state.continuation_mode == "resume"

    @pytest.mark.asyncio
    async def test_resume_unknown_session(self, bus, flaky_bridge):
        """Unknown session ids raise SessionNotFoundError."""
        sync = await start_sync(bus, flaky_bridge)
        with pytest.raises(SessionNotFoundError):
            await sync.resume_session("sess_missing")


# =============================================================================
# Lifecycle
# =============================================================================


class TestLifecycle:
    """initialize/destroy."""

    @pytest.mark.asyncio
    async def test_destroy_runs_final_sync(self, bus, flaky_bridge):
        """destroy replays what it can and drops its subscriptions."""
        sync = await start_sync(bus, flaky_bridge)
        conversation_id = (await sync.create_conversation("Chat")).conversation_id
        flaky_bridge.online = False
        await sync.add_message({"content": "late"})
        flaky_bridge.online = True

        await sync.destroy()

        assert len(flaky_bridge.stored_message_ids(conversation_id)) == 1
        assert sync.scheduler.list_tasks() == []
        assert sync.get_status()["initialized"] is False
        assert bus.get_subscription_stats()["modules"].get("history_sync") is None
