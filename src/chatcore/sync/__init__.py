# src/chatcore/sync/__init__.py
"""
History synchronization for ChatCore.

Exports the HistorySyncManager, its result shapes, the pending-update queue
and the local search index.
"""

from .index import SearchIndex
from .manager import HistorySyncManager, SearchMode, sanitize_message
from .pending import PendingUpdateQueue
from .results import SyncResult, SyncStatus

__all__ = [
    "HistorySyncManager",
    "PendingUpdateQueue",
    "SearchIndex",
    "SearchMode",
    "SyncResult",
    "SyncStatus",
    "sanitize_message",
]
