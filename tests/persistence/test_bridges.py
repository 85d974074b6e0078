# tests/persistence/test_bridges.py
"""
Contract tests shared by the bundled persistence bridges.

Every test runs against the in-memory bridge and the JSON file bridge, so
both honour the same semantics: documents, idempotent conversation writes,
NotFound versus transport failures, search and sessions.
"""

from datetime import timedelta

import pytest
import pytest_asyncio

from chatcore.exceptions import ConversationNotFoundError, PersistenceError, SessionNotFoundError
from chatcore.models import Conversation, Message, utc_now
from chatcore.persistence import InMemoryPersistenceBridge, JsonPersistenceBridge


@pytest_asyncio.fixture(params=["memory", "json"])
async def bridge(request, tmp_path):
    """An initialized bridge of each bundled kind."""
    if request.param == "memory":
        instance = InMemoryPersistenceBridge()
    else:
        instance = JsonPersistenceBridge(tmp_path / "store")
    await instance.initialize()
    yield instance
    await instance.close()


def make_conversation(title: str = "Conversation", contents=(), **kwargs) -> Conversation:
    conversation = Conversation(title=title, messages=[Message(content=c) for c in contents], **kwargs)
    conversation.metadata.message_count = len(conversation.messages)
    return conversation


# =============================================================================
# Documents
# =============================================================================


class TestDocuments:
    """Key/value document storage."""

    @pytest.mark.asyncio
    async def test_get_missing_returns_none(self, bridge):
        """Unknown keys read as None."""
        assert await bridge.get("globalState") is None

    @pytest.mark.asyncio
    async def test_set_then_get(self, bridge):
        """Documents are stored and returned as plain JSON data."""
        await bridge.set("globalState", {"theme": "dark", "counts": [1, 2]})
        assert await bridge.get("globalState") == {"theme": "dark", "counts": [1, 2]}

    @pytest.mark.asyncio
    async def test_stored_document_is_a_copy(self, bridge):
        """Mutating the caller's value after set does not change the store."""
        value = {"items": [1]}
        await bridge.set("doc", value)
        value["items"].append(2)
        assert await bridge.get("doc") == {"items": [1]}


# =============================================================================
# Conversations
# =============================================================================


class TestConversations:
    """Conversation storage, listing and deletion."""

    @pytest.mark.asyncio
    async def test_save_and_load(self, bridge):
        """A saved conversation loads back with its messages in order."""
        conversation = make_conversation("Notes", ["one", "two"])
        await bridge.save_conversation(conversation)
        loaded = await bridge.load_conversation(conversation.id)
        assert loaded.title == "Notes"
        assert [m.content for m in loaded.messages] == ["one", "two"]

    @pytest.mark.asyncio
    async def test_load_missing_raises_not_found(self, bridge):
        """Loading an unknown conversation is a NotFound, not a transport error."""
        with pytest.raises(ConversationNotFoundError):
            await bridge.load_conversation("conv_missing")

    @pytest.mark.asyncio
    async def test_add_message_is_idempotent(self, bridge):
        """Adding a message whose id is already stored has no effect."""
        conversation = make_conversation("Notes")
        await bridge.save_conversation(conversation)
        message = Message(content="hello")

        await bridge.add_message(conversation.id, message)
        await bridge.add_message(conversation.id, message)

        loaded = await bridge.load_conversation(conversation.id)
        assert [m.id for m in loaded.messages] == [message.id]
        assert loaded.metadata.message_count == 1

    @pytest.mark.asyncio
    async def test_add_message_to_missing_conversation(self, bridge):
        """Adding to an unknown conversation raises NotFound."""
        with pytest.raises(ConversationNotFoundError):
            await bridge.add_message("conv_missing", Message(content="x"))

    @pytest.mark.asyncio
    async def test_save_replaces(self, bridge):
        """Saving again replaces the stored conversation."""
        conversation = make_conversation("Before")
        await bridge.save_conversation(conversation)
        conversation.title = "After"
        await bridge.save_conversation(conversation)
        assert (await bridge.load_conversation(conversation.id)).title == "After"

    @pytest.mark.asyncio
    async def test_list_sorted_and_paginated(self, bridge):
        """Listing sorts summaries and reports pagination."""
        now = utc_now()
        for i, title in enumerate(["a", "b", "c"]):
            conversation = make_conversation(title)
            conversation.metadata.updated_at = now + timedelta(minutes=i)
            await bridge.save_conversation(conversation)

        page = await bridge.list_conversations(limit=2)
        assert [s.title for s in page.conversations] == ["c", "b"]
        assert page.pagination.total == 3
        assert page.pagination.has_more is True

        page = await bridge.list_conversations(limit=2, offset=2)
        assert [s.title for s in page.conversations] == ["a"]
        assert page.pagination.has_more is False

        page = await bridge.list_conversations(sort_by="title", sort_order="asc")
        assert [s.title for s in page.conversations] == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_summaries_carry_no_messages(self, bridge):
        """Listed summaries hold counts, not message bodies."""
        await bridge.save_conversation(make_conversation("Notes", ["x", "y"]))
        summary = (await bridge.list_conversations()).conversations[0]
        assert summary.message_count == 2
        assert summary.messages == []

    @pytest.mark.asyncio
    async def test_delete(self, bridge):
        """Deleted conversations are gone; deleting again raises NotFound."""
        conversation = make_conversation("Notes")
        await bridge.save_conversation(conversation)
        await bridge.delete_conversation(conversation.id)
        with pytest.raises(ConversationNotFoundError):
            await bridge.load_conversation(conversation.id)
        with pytest.raises(ConversationNotFoundError):
            await bridge.delete_conversation(conversation.id)


# =============================================================================
# Search
# =============================================================================


class TestSearch:
    """Authoritative search."""

    @pytest.mark.asyncio
    async def test_title_outranks_content(self, bridge):
        """A title match scores above a single content match."""
        titled = make_conversation("Rogowski Coil FAQ", ["general notes"])
        mentioned = make_conversation("Misc", ["what is a rogowski coil?"])
        await bridge.save_conversation(titled)
        await bridge.save_conversation(mentioned)

        results = await bridge.search_conversations("rogowski")

        assert [hit.conversation_id for hit in results.conversations] == [titled.id, mentioned.id]
        assert results.conversations[0].score == 10
        assert results.conversations[1].score == 1
        assert [hit.conversation_id for hit in results.messages] == [mentioned.id]

    @pytest.mark.asyncio
    async def test_short_query_returns_nothing(self, bridge):
        """Queries shorter than two characters match nothing."""
        await bridge.save_conversation(make_conversation("a", ["a"]))
        results = await bridge.search_conversations("a")
        assert results.conversations == []
        assert results.total == 0


# =============================================================================
# Sessions
# =============================================================================


class TestSessions:
    """Session index."""

    @pytest.mark.asyncio
    async def test_create_session(self, bridge):
        """A session starts active and takes the conversation title."""
        conversation = make_conversation("Notes", ["x"])
        await bridge.save_conversation(conversation)
        session = await bridge.create_session({"conversation_id": conversation.id})
        assert session.id.startswith("sess_")
        assert session.is_active is True
        assert session.title == "Notes"
        assert session.message_count == 1

    @pytest.mark.asyncio
    async def test_new_session_deactivates_previous(self, bridge):
        """Only the newest session of a conversation stays active."""
        conversation = make_conversation("Notes")
        await bridge.save_conversation(conversation)
        first = await bridge.create_session({"conversation_id": conversation.id})
        second = await bridge.create_session({"conversation_id": conversation.id})

        active = await bridge.list_sessions(active_only=True)
        assert [s.id for s in active] == [second.id]
        assert {s.id for s in await bridge.list_sessions()} == {first.id, second.id}

    @pytest.mark.asyncio
    async def test_create_session_requires_conversation(self, bridge):
        """Creating a session for an unknown conversation raises NotFound."""
        with pytest.raises(ConversationNotFoundError):
            await bridge.create_session({"conversation_id": "conv_missing"})

    @pytest.mark.asyncio
    async def test_update_session(self, bridge):
        """Allowed fields are updated; last_accessed is refreshed."""
        conversation = make_conversation("Notes")
        await bridge.save_conversation(conversation)
        session = await bridge.create_session({"conversation_id": conversation.id})

        updated = await bridge.update_session(session.id, {"title": "Renamed", "id": "ignored"})

        assert updated.id == session.id
        assert updated.title == "Renamed"
        assert updated.last_accessed >= session.last_accessed

    @pytest.mark.asyncio
    async def test_update_missing_session(self, bridge):
        """Updating an unknown session raises SessionNotFoundError."""
        with pytest.raises(SessionNotFoundError):
            await bridge.update_session("sess_missing", {"title": "x"})

    @pytest.mark.asyncio
    async def test_delete_conversation_removes_sessions(self, bridge):
        """Deleting a conversation drops its sessions."""
        conversation = make_conversation("Notes")
        await bridge.save_conversation(conversation)
        await bridge.create_session({"conversation_id": conversation.id})
        await bridge.delete_conversation(conversation.id)
        assert await bridge.list_sessions() == []


# =============================================================================
# JSON bridge specifics
# =============================================================================


class TestJsonBridgeFiles:
    """File layout and failure handling of the JSON bridge."""

    @pytest.mark.asyncio
    async def test_layout(self, tmp_path):
        """Conversations and documents live in their own subdirectories."""
        bridge = JsonPersistenceBridge(tmp_path)
        await bridge.initialize()
        conversation = make_conversation("Notes")
        await bridge.save_conversation(conversation)
        await bridge.set("globalState", {"a": 1})

        assert (tmp_path / "conversations" / f"{conversation.id}.json").is_file()
        assert (tmp_path / "documents" / "globalState.json").is_file()
        assert not list(tmp_path.rglob("*.tmp"))

    @pytest.mark.asyncio
    async def test_corrupted_document_raises_persistence_error(self, tmp_path):
        """A corrupted file surfaces as a PersistenceError."""
        bridge = JsonPersistenceBridge(tmp_path)
        await bridge.initialize()
        (tmp_path / "documents" / "broken.json").write_text("{not json", encoding="utf-8")
        with pytest.raises(PersistenceError):
            await bridge.get("broken")

    @pytest.mark.asyncio
    async def test_invalid_conversation_file_skipped_in_listing(self, tmp_path):
        """Files that do not validate as conversations are skipped when listing."""
        bridge = JsonPersistenceBridge(tmp_path)
        await bridge.initialize()
        await bridge.save_conversation(make_conversation("Valid"))
        (tmp_path / "conversations" / "bogus.json").write_text('{"messages": "nope"}', encoding="utf-8")

        page = await bridge.list_conversations()
        assert [s.title for s in page.conversations] == ["Valid"]
