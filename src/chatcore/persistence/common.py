# src/chatcore/persistence/common.py
"""Helpers shared by the bundled persistence bridges."""

from __future__ import annotations

from collections.abc import Iterable

from ..models import Conversation, ConversationPage, ConversationSummary, Pagination
from ..search import IndexedMessage, SearchCandidate

MIN_QUERY_LENGTH = 2

SORT_FIELDS = ("updated_at", "created_at", "title", "message_count")


def summarize(conversation: Conversation) -> ConversationSummary:
    return ConversationSummary.from_conversation(conversation)


def paginate(
    summaries: Iterable[ConversationSummary],
    limit: int,
    offset: int,
    sort_by: str = "updated_at",
    sort_order: str = "desc",
) -> ConversationPage:
    if sort_by not in SORT_FIELDS:
        sort_by = "updated_at"
    ordered = sorted(summaries, key=lambda s: getattr(s, sort_by), reverse=sort_order != "asc")
    page = ordered[offset : offset + limit]
    return ConversationPage(
        conversations=page,
        pagination=Pagination(
            total=len(ordered),
            limit=limit,
            offset=offset,
            has_more=offset + len(page) < len(ordered),
        ),
    )


def to_candidate(conversation: Conversation) -> SearchCandidate:
    return SearchCandidate(
        conversation_id=conversation.id,
        title=conversation.title,
        updated_at=conversation.metadata.updated_at,
        message_count=len(conversation.messages),
        tags=sorted(conversation.metadata.tags),
        messages=[IndexedMessage(m.id, m.content, m.timestamp) for m in conversation.messages],
    )
