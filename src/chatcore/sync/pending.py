# src/chatcore/sync/pending.py
"""
Pending-update queue.

Writes that could not reach the persistence bridge are kept here, one FIFO
queue per conversation, and replayed in enqueue order once the bridge is
reachable again. The total number of queued writes is bounded.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Any

from ..models import PendingOperation, PendingUpdate

logger = logging.getLogger(__name__)


class PendingUpdateQueue:
    """Per-conversation FIFO queues with a global size bound."""

    def __init__(self, max_pending: int = 500) -> None:
        self.max_pending = max_pending
        self._queues: dict[str, deque[PendingUpdate]] = {}

    def __len__(self) -> int:
        return sum(len(q) for q in self._queues.values())

    @property
    def is_full(self) -> bool:
        return len(self) >= self.max_pending

    def enqueue(
        self, conversation_id: str, operation: PendingOperation | str, payload: dict[str, Any] | None = None
    ) -> PendingUpdate | None:
        """Append a write for a conversation. Returns None when the queue is full."""
        if self.is_full:
            logger.error(f"Pending update queue full ({self.max_pending}); dropping {operation} for {conversation_id}")
            return None
        update = PendingUpdate(conversation_id=conversation_id, operation=operation, payload=payload or {})
        self._queues.setdefault(conversation_id, deque()).append(update)
        logger.debug(f"Queued pending update: {update.operation} for {conversation_id}")
        return update

    def has(self, conversation_id: str) -> bool:
        return bool(self._queues.get(conversation_id))

    def peek(self, conversation_id: str) -> PendingUpdate | None:
        queue = self._queues.get(conversation_id)
        return queue[0] if queue else None

    def pop(self, conversation_id: str) -> PendingUpdate | None:
        queue = self._queues.get(conversation_id)
        if not queue:
            return None
        update = queue.popleft()
        if not queue:
            del self._queues[conversation_id]
        return update

    def discard(self, conversation_id: str) -> int:
        """Drop every queued write of a conversation. Returns how many were dropped."""
        return len(self._queues.pop(conversation_id, ()))

    def conversation_ids(self) -> list[str]:
        """Conversations with queued writes, in the order their first write was queued."""
        return list(self._queues.keys())

    def count(self, conversation_id: str | None = None) -> int:
        if conversation_id is None:
            return len(self)
        return len(self._queues.get(conversation_id, ()))

    def items(self, conversation_id: str) -> list[PendingUpdate]:
        return list(self._queues.get(conversation_id, ()))

    def clear(self) -> None:
        self._queues.clear()


__all__ = ["PendingUpdateQueue"]
