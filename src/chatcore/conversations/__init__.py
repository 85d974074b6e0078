# src/chatcore/conversations/__init__.py
"""
Conversation management for ChatCore.

Exports the ConversationManager and the compaction helpers with the
summarizer protocol they accept.
"""

from .compaction import (
    CompactionResult,
    ConversationSummarizer,
    compact_messages,
    fallback_summary,
    summarize_messages,
)
from .manager import STORAGE_KEY, ConversationManager, ExportFormat

__all__ = [
    "CompactionResult",
    "ConversationManager",
    "ConversationSummarizer",
    "ExportFormat",
    "STORAGE_KEY",
    "compact_messages",
    "fallback_summary",
    "summarize_messages",
]
