# src/chatcore/sync/results.py
"""Result shapes of History Sync Manager writes."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class SyncStatus(str, Enum):
    """Where a write ended up."""

    REMOTE = "remote"  # stored by the persistence bridge
    QUEUED = "queued"  # applied locally, waiting in the pending-update queue
    FAILED = "failed"  # applied locally, but neither stored nor queued


@dataclass
class SyncResult:
    status: SyncStatus
    conversation_id: str
    message_id: str | None = None
    error: str | None = None

    @property
    def succeeded_remotely(self) -> bool:
        return self.status == SyncStatus.REMOTE

    @property
    def queued(self) -> bool:
        return self.status == SyncStatus.QUEUED

    @property
    def failed(self) -> bool:
        return self.status == SyncStatus.FAILED

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "conversation_id": self.conversation_id,
            "message_id": self.message_id,
            "error": self.error,
        }


__all__ = ["SyncResult", "SyncStatus"]
