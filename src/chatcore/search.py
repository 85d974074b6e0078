# src/chatcore/search.py
"""
Additive relevance scoring shared by every conversation search.

A conversation scores ``TITLE_WEIGHT`` when its title contains the query,
plus ``MATCH_WEIGHT`` per matching message and per matching tag. Matching is
a case-insensitive substring test. Results are ordered by score, ties broken
by recency.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal

from .models import ConversationSearchHit, MessageSearchHit, SearchResults

TITLE_WEIGHT = 10
MATCH_WEIGHT = 1

SearchType = Literal["title", "content", "all"]


@dataclass
class IndexedMessage:
    message_id: str
    content: str
    timestamp: datetime


@dataclass
class SearchCandidate:
    """What a search needs to know about one conversation."""

    conversation_id: str
    title: str
    updated_at: datetime
    message_count: int = 0
    tags: Sequence[str] = ()
    messages: Sequence[IndexedMessage] = field(default_factory=list)


def rank_conversations(
    query: str,
    candidates: Iterable[SearchCandidate],
    limit: int = 20,
    search_type: SearchType = "all",
) -> SearchResults:
    """
    Score candidates against ``query``.

    Args:
        query: Search text; blank queries match nothing.
        candidates: Conversations to score.
        limit: Maximum conversations returned; up to ``2 * limit`` message hits are returned.
        search_type: Restrict matching to titles, message content, or both plus tags.

    Returns:
        SearchResults with conversations and message hits sorted by score, then recency.
    """
    term = query.strip().lower()
    if not term:
        return SearchResults(query=query)

    scored: list[tuple[int, SearchCandidate]] = []
    message_hits: list[MessageSearchHit] = []
    for candidate in candidates:
        score = 0
        if search_type in ("title", "all") and term in candidate.title.lower():
            score += TITLE_WEIGHT

        matching: list[IndexedMessage] = []
        if search_type in ("content", "all"):
            matching = [m for m in candidate.messages if term in m.content.lower()]
            score += MATCH_WEIGHT * len(matching)

        if search_type == "all":
            score += MATCH_WEIGHT * sum(1 for tag in candidate.tags if term in tag.lower())

        if score <= 0:
            continue
        scored.append((score, candidate))
        message_hits.extend(
            MessageSearchHit(
                conversation_id=candidate.conversation_id,
                message_id=m.message_id,
                content=m.content,
                timestamp=m.timestamp,
                score=score,
            )
            for m in matching
        )

    scored.sort(key=lambda item: (item[0], item[1].updated_at), reverse=True)
    message_hits.sort(key=lambda hit: (hit.score, hit.timestamp), reverse=True)

    conversations = [
        ConversationSearchHit(
            conversation_id=c.conversation_id,
            title=c.title,
            score=score,
            message_count=c.message_count,
            updated_at=c.updated_at,
            tags=sorted(c.tags),
        )
        for score, c in scored[:limit]
    ]
    return SearchResults(
        query=query,
        conversations=conversations,
        messages=message_hits[: limit * 2],
        total=len(scored),
    )


__all__ = [
    "IndexedMessage",
    "MATCH_WEIGHT",
    "SearchCandidate",
    "SearchType",
    "TITLE_WEIGHT",
    "rank_conversations",
]
