# tests/state/test_chat_history_state.py
"""
Tests for the chat-history projection: event maintenance, active
conversation handling, search ranking and memoization, retention cleanup,
preferences and document round trips.
"""

from datetime import timedelta

import pytest
from pydantic import ValidationError

from chatcore.config.models import ChatHistoryConfig
from chatcore.events import EventName
from chatcore.exceptions import ConversationNotFoundError
from chatcore.models import ConversationSummary, MessageSnippet, utc_now
from chatcore.state import ChatHistoryState


@pytest.fixture
def history(bus):
    state = ChatHistoryState(bus)
    state.attach()
    yield state
    state.detach()


def summary(conversation_id: str, title: str = "", age_days: float = 0, **fields) -> ConversationSummary:
    updated = utc_now() - timedelta(days=age_days)
    return ConversationSummary(id=conversation_id, title=title, created_at=updated, updated_at=updated, **fields)


# =============================================================================
# Event maintenance
# =============================================================================


class TestEventMaintenance:
    """The projection follows conversation events."""

    def test_created_event_caches_summary(self, bus, history, recorder):
        """conversation-created with a summary adds it to the cache."""
        bus.publish(
            EventName.CONVERSATION_CREATED,
            {"conversation_id": "conv_1", "title": "New", "summary": {"id": "conv_1", "title": "New"}},
        )
        assert history.get_cached_conversation("conv_1").title == "New"
        assert recorder.payloads(EventName.CONVERSATION_CACHED) == [
            {"conversation_id": "conv_1", "total_conversations": 1}
        ]

    def test_message_added_appends_snippet(self, bus, history):
        """message-added appends a truncated snippet and bumps the count."""
        history.upsert_cached_conversation(summary("conv_1", "Chat"))
        bus.publish(
            EventName.MESSAGE_ADDED,
            {
                "conversation_id": "conv_1",
                "message": {"id": "msg_1", "role": "user", "content": "x" * 500},
                "message_count": 1,
            },
        )
        cached = history.get_cached_conversation("conv_1")
        assert cached.message_count == 1
        assert [m.message_id for m in cached.messages] == ["msg_1"]
        assert len(cached.messages[0].content) == 200

    def test_trimmed_messages_drop_their_snippets(self, bus, history):
        """When the live count stops growing, the oldest snippets go and stop matching searches."""
        snippets = [MessageSnippet(message_id="m0", content="needle"), MessageSnippet(message_id="m1", content="hay")]
        history.upsert_cached_conversation(summary("conv_1", "Chat", messages=snippets, message_count=2))
        assert history.search("needle").total == 1

        bus.publish(
            EventName.MESSAGE_ADDED,
            {"conversation_id": "conv_1", "message": {"id": "m2", "content": "more hay"}, "message_count": 2},
        )

        cached = history.get_cached_conversation("conv_1")
        assert [m.message_id for m in cached.messages] == ["m1", "m2"]
        assert cached.message_count == 2
        assert history.search("needle").total == 0

    def test_message_for_unknown_conversation_ignored(self, bus, history):
        """Messages of uncached conversations are ignored."""
        bus.publish(EventName.MESSAGE_ADDED, {"conversation_id": "conv_x", "message": {"id": "m", "content": "hi"}})
        assert history.total_conversations == 0

    def test_deleted_event_evicts_and_clears_active(self, bus, history):
        """Deleting the active conversation clears the active id."""
        history.upsert_cached_conversation(summary("conv_1"))
        history.set_active_conversation("conv_1")
        bus.publish(EventName.CONVERSATION_DELETED, {"conversation_id": "conv_1"})
        assert history.total_conversations == 0
        assert history.active_conversation_id is None

    def test_switched_event_sets_active(self, bus, history, recorder):
        """conversation-switched activates a cached conversation and requests a provider sync."""
        history.upsert_cached_conversation(summary("conv_1", provider="anthropic"))
        bus.publish(EventName.CONVERSATION_SWITCHED, {"conversation_id": "conv_1"})

        assert history.active_conversation_id == "conv_1"
        assert recorder.payloads(EventName.CONVERSATION_PROVIDER_SYNC_REQUIRED) == [
            {"conversation_id": "conv_1", "provider_id": "anthropic"}
        ]

    def test_snippets_bounded(self, bus):
        """Summaries keep at most max_snippets_per_conversation snippets."""
        state = ChatHistoryState(bus, ChatHistoryConfig(max_snippets_per_conversation=2))
        snippets = [MessageSnippet(message_id=f"m{i}", content=str(i)) for i in range(5)]
        state.upsert_cached_conversation(summary("conv_1", messages=snippets))
        assert [m.message_id for m in state.get_cached_conversation("conv_1").messages] == ["m3", "m4"]


# =============================================================================
# Active conversation and listing
# =============================================================================


class TestActiveAndListing:
    """Active conversation and list ordering/filtering."""

    def test_set_unknown_active_raises(self, history):
        """Only cached conversations can become active."""
        with pytest.raises(ConversationNotFoundError):
            history.set_active_conversation("conv_missing")

    def test_clear_active(self, history, recorder):
        """None clears the active conversation without a provider sync."""
        history.upsert_cached_conversation(summary("conv_1"))
        history.set_active_conversation("conv_1")
        recorder.clear()
        history.set_active_conversation(None)
        assert history.active_conversation_id is None
        assert recorder.payloads(EventName.ACTIVE_CONVERSATION_CHANGED) == [
            {"conversation_id": None, "previous_id": "conv_1"}
        ]
        assert recorder.payloads(EventName.CONVERSATION_PROVIDER_SYNC_REQUIRED) == []

    def test_list_sorted_and_filtered(self, history):
        """Listing honours sort overrides and tag/provider filters."""
        history.upsert_cached_conversation(summary("old", "B", age_days=2, tags=["work"]))
        history.upsert_cached_conversation(summary("new", "A", age_days=0, provider="openai"))

        assert [s.id for s in history.list_cached_conversations()] == ["new", "old"]
        assert [s.id for s in history.list_cached_conversations(sort_by="title", sort_order="asc")] == ["new", "old"]
        assert [s.id for s in history.list_cached_conversations(filters={"tags": ["work"]})] == ["old"]
        assert [s.id for s in history.list_cached_conversations(filters={"provider": "openai"})] == ["new"]

    def test_stored_filter_applies(self, history, recorder):
        """set_filter narrows subsequent listings."""
        history.upsert_cached_conversation(summary("a", tags=["x"]))
        history.upsert_cached_conversation(summary("b"))
        history.set_filter(tags=["x"], provider=None)
        assert [s.id for s in history.list_cached_conversations()] == ["a"]
        assert recorder.payloads(EventName.FILTER_UPDATED) == [{"filter": {"tags": ["x"]}}]

    def test_invalid_sort_field(self, history):
        """Unknown sort fields are rejected."""
        with pytest.raises(ValueError):
            history.set_sort("colour")


# =============================================================================
# Search
# =============================================================================


class TestCacheSearch:
    """Ranking and memoization of cached search."""

    def test_title_match_ranks_first(self, history):
        """A title hit (10) outranks a snippet hit (1)."""
        history.upsert_cached_conversation(summary("faq", "Rogowski Coil FAQ"))
        history.upsert_cached_conversation(
            summary("misc", "Misc", messages=[MessageSnippet(message_id="m1", content="about rogowski coils")])
        )
        results = history.search("rogowski")
        assert [(h.conversation_id, h.score) for h in results.conversations] == [("faq", 10), ("misc", 1)]
        assert [h.message_id for h in results.messages] == ["m1"]

    def test_tag_matches_count(self, history):
        """Each matching tag adds one point."""
        history.upsert_cached_conversation(summary("t", "Untitled", tags=["physics", "physics-lab"]))
        assert history.search("physics").conversations[0].score == 2

    def test_results_memoized_until_cache_changes(self, history, recorder):
        """Repeated queries are served from the memo; an upsert invalidates it."""
        history.upsert_cached_conversation(summary("a", "alpha"))
        history.search("alpha")
        history.search("alpha")
        assert len(recorder.payloads(EventName.CHAT_HISTORY_SEARCHED)) == 1

        history.upsert_cached_conversation(summary("b", "alpha two"))
        assert history.search("alpha").total == 2
        assert len(recorder.payloads(EventName.CHAT_HISTORY_SEARCHED)) == 2

    def test_short_query_and_disabled_search(self, history):
        """Short queries and disabled search return empty results."""
        history.upsert_cached_conversation(summary("a", "alpha"))
        assert history.search("a").total == 0
        history.update_preferences(search_enabled=False)
        assert history.search("alpha").total == 0


# =============================================================================
# Retention
# =============================================================================


class TestRetention:
    """Retention cleanup by age and by count."""

    def test_expired_summaries_removed(self, history, recorder):
        """Summaries older than retention_days are evicted."""
        history.upsert_cached_conversation(summary("stale", age_days=40))
        history.upsert_cached_conversation(summary("fresh", age_days=1))

        assert history.run_retention_cleanup() == ["stale"]
        assert history.get_cached_conversation("fresh") is not None
        assert recorder.payloads(EventName.CHAT_HISTORY_CLEANUP_COMPLETED)[-1] == {
            "cleanup_count": 1,
            "removed_ids": ["stale"],
        }

    def test_overflow_removes_oldest(self, bus):
        """Beyond max_conversations the oldest summaries go first."""
        state = ChatHistoryState(bus, ChatHistoryConfig(max_conversations=2))
        for i, cid in enumerate(["c0", "c1", "c2"]):
            state.upsert_cached_conversation(summary(cid, age_days=3 - i))
        assert state.run_retention_cleanup() == ["c0"]

    def test_cleanup_is_idempotent(self, history):
        """A second run right after the first removes nothing."""
        history.upsert_cached_conversation(summary("stale", age_days=40))
        now = utc_now()
        history.run_retention_cleanup(now)
        assert history.run_retention_cleanup(now) == []


# =============================================================================
# Preferences and persistence
# =============================================================================


class TestPreferencesAndDocument:
    """Preference validation and document round trips."""

    def test_update_preferences(self, history):
        """Known preferences are validated and stored."""
        assert history.update_preferences(retention_days=7)["retention_days"] == 7

    def test_unknown_preference(self, history):
        """Unknown preference names are rejected."""
        with pytest.raises(ValueError):
            history.update_preferences(colour="blue")

    def test_invalid_preference_value(self, history):
        """Values outside the allowed range fail validation."""
        with pytest.raises(ValidationError):
            history.update_preferences(retention_days=0)

    def test_document_round_trip(self, bus, history):
        """to_document/restore preserve summaries, active id, preferences and sort."""
        history.upsert_cached_conversation(summary("conv_1", "Kept", tags=["t"]))
        history.set_active_conversation("conv_1")
        history.update_preferences(max_conversations=10)
        history.set_sort("title", "asc")

        restored = ChatHistoryState(bus)
        restored.restore(history.to_document())

        assert restored.active_conversation_id == "conv_1"
        assert restored.get_cached_conversation("conv_1").tags == ["t"]
        assert restored.preferences["max_conversations"] == 10
        assert restored.sort == {"sort_by": "title", "sort_order": "asc"}
        assert restored.dirty is False
