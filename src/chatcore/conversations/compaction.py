# src/chatcore/conversations/compaction.py
"""
Conversation compaction.

Compaction bounds the context size of a long conversation: the most recent
``context_window`` messages are kept exactly as they are, and everything
older is replaced by a single system message holding a summary. The summary
text comes from an optional summarizer collaborator; when none is attached,
or it fails or returns nothing, a short count-based summary is used instead.
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Literal, Protocol

from ..models import Message, MessageMetadata, Role

logger = logging.getLogger(__name__)

SummarySource = Literal["summarizer", "fallback"]


class ConversationSummarizer(Protocol):
    """Turns an ordered list of older messages into a summary string."""

    def summarize(self, messages: Sequence[Message], instructions: str | None = None) -> str: ...


@dataclass
class CompactionResult:
    messages: list[Message]
    removed_count: int
    summary_source: SummarySource


def fallback_summary(messages: Sequence[Message]) -> str:
    counts = Counter(m.role for m in messages)
    parts = [f"{counts[role.value]} {role.value}" for role in Role if counts[role.value]]
    return f"Summary of {len(messages)} earlier messages ({', '.join(parts)})."


def summarize_messages(
    messages: Sequence[Message],
    summarizer: ConversationSummarizer | None = None,
    instructions: str | None = None,
) -> tuple[str, SummarySource]:
    """Return the summary text and where it came from."""
    if summarizer is not None:
        try:
            text = summarizer.summarize(messages, instructions)
        except Exception as e:
            logger.warning(f"Summarizer failed, using count-based summary: {e}")
        else:
            if text and text.strip():
                return text.strip(), "summarizer"
            logger.warning("Summarizer returned an empty summary, using count-based summary")
    return fallback_summary(messages), "fallback"


def compact_messages(
    messages: Sequence[Message],
    context_window: int,
    summarizer: ConversationSummarizer | None = None,
    instructions: str | None = None,
) -> CompactionResult | None:
    """
    Replace all but the last ``context_window`` messages with one summary message.

    Returns None when there is nothing older than the window to compact.
    """
    if len(messages) <= context_window:
        return None
    older = list(messages[:-context_window]) if context_window > 0 else list(messages)
    recent = list(messages[-context_window:]) if context_window > 0 else []

    text, source = summarize_messages(older, summarizer, instructions)
    summary = Message(
        role=Role.SYSTEM,
        content=text,
        timestamp=older[-1].timestamp,
        metadata=MessageMetadata(summary_source=source, compacted_count=len(older)),
    )
    return CompactionResult(messages=[summary, *recent], removed_count=len(older), summary_source=source)


__all__ = [
    "CompactionResult",
    "ConversationSummarizer",
    "SummarySource",
    "compact_messages",
    "fallback_summary",
    "summarize_messages",
]
