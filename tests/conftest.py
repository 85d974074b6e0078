# tests/conftest.py
"""
Shared fixtures for the ChatCore test suite.

Provides an initialized event bus, in-memory and flaky persistence bridges,
and an event recorder that captures what components publish.
"""

from __future__ import annotations

from collections import defaultdict
from typing import Any

import pytest

from chatcore.events import EventBus, EventName
from chatcore.exceptions import TransportError
from chatcore.models import Conversation, EventRecord, Message
from chatcore.persistence import InMemoryPersistenceBridge


class EventRecorder:
    """Captures every record published on a bus, grouped by event name."""

    def __init__(self, bus: EventBus) -> None:
        self.records: list[EventRecord] = []
        self.by_name: dict[str, list[EventRecord]] = defaultdict(list)
        bus.subscribe(EventName.EVENT_PUBLISHED, self._capture, owner="test_recorder")

    def _capture(self, record: EventRecord) -> None:
        self.records.append(record)
        self.by_name[record.name].append(record)

    def names(self) -> list[str]:
        return [r.name for r in self.records]

    def payloads(self, name: str | EventName) -> list[dict[str, Any]]:
        key = name.value if isinstance(name, EventName) else name
        return [r.payload for r in self.by_name.get(key, [])]

    def clear(self) -> None:
        self.records.clear()
        self.by_name.clear()


class FlakyPersistenceBridge(InMemoryPersistenceBridge):
    """
    In-memory bridge whose conversation calls can be made to fail with a
    transport error, globally (``online = False``) or for chosen conversations.
    """

    def __init__(self) -> None:
        super().__init__()
        self.online = True
        self.failing: set[str] = set()
        self.calls: list[tuple[str, str | None]] = []

    def _check(self, operation: str, conversation_id: str | None = None) -> None:
        self.calls.append((operation, conversation_id))
        if not self.online or (conversation_id is not None and conversation_id in self.failing):
            raise TransportError(operation, "Simulated outage.")

    async def list_conversations(self, *args: Any, **kwargs: Any):
        self._check("list_conversations")
        return await super().list_conversations(*args, **kwargs)

    async def load_conversation(self, conversation_id: str) -> Conversation:
        self._check("load_conversation", conversation_id)
        return await super().load_conversation(conversation_id)

    async def save_conversation(self, conversation: Conversation) -> None:
        self._check("save_conversation", conversation.id)
        await super().save_conversation(conversation)

    async def add_message(self, conversation_id: str, message: Message) -> None:
        self._check("add_message", conversation_id)
        await super().add_message(conversation_id, message)

    async def delete_conversation(self, conversation_id: str) -> None:
        self._check("delete_conversation", conversation_id)
        await super().delete_conversation(conversation_id)

    async def search_conversations(self, *args: Any, **kwargs: Any):
        self._check("search_conversations")
        return await super().search_conversations(*args, **kwargs)

    async def list_sessions(self, *args: Any, **kwargs: Any):
        self._check("list_sessions")
        return await super().list_sessions(*args, **kwargs)

    def stored_ids(self) -> set[str]:
        return set(self._conversations)

    def stored_message_ids(self, conversation_id: str) -> list[str]:
        return [m.id for m in self._conversations[conversation_id].messages]


@pytest.fixture
def bus() -> EventBus:
    """An initialized event bus."""
    event_bus = EventBus()
    event_bus.initialize()
    yield event_bus
    event_bus.destroy()


@pytest.fixture
def recorder(bus: EventBus) -> EventRecorder:
    return EventRecorder(bus)


@pytest.fixture
def memory_bridge() -> InMemoryPersistenceBridge:
    return InMemoryPersistenceBridge()


@pytest.fixture
def flaky_bridge() -> FlakyPersistenceBridge:
    return FlakyPersistenceBridge()
