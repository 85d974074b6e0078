# src/chatcore/models.py
"""
Core data models for the ChatCore library.

This module defines the Pydantic models used to represent conversations,
their immutable messages, the lightweight session index entries used for
listing and eviction, provider records with their cost ledgers, bus event
records, and the pending updates queued while the persistence bridge is
unreachable. Aggregates such as token usage keep their invariants inside the
model (``TokenUsage.total`` is always ``input + output``).
"""

from __future__ import annotations

import time
import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(UTC)


def generate_id(prefix: str) -> str:
    """Build an identifier of the form ``<prefix>_<epoch-ms>_<8 hex chars>``."""
    return f"{prefix}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"


def ensure_utc(value: Any) -> Any:
    """Coerce naive datetimes and ISO strings (``Z`` suffix allowed) to aware UTC datetimes."""
    if isinstance(value, str):
        if value.endswith("Z"):
            value = value[:-1] + "+00:00"
        value = datetime.fromisoformat(value)
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)
    return value


# =============================================================================
# MESSAGES
# =============================================================================


class Role(str, Enum):
    """
    Enumeration of possible roles in a conversation.
    These roles define the origin or type of a message.
    """

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"

    @classmethod
    def _missing_(cls, value: object):  # type: ignore[misc]
        """Case-insensitive matching; ``agent`` and ``ai`` map to ASSISTANT."""
        if isinstance(value, str):
            lower_value = value.lower()
            if lower_value in ("agent", "ai"):
                return cls.ASSISTANT
            for member in cls:
                if member.value == lower_value:
                    return member
        return None


class MessageMetadata(BaseModel):
    """Per-message accounting data. Unknown keys are kept as extra fields."""

    model_config = ConfigDict(frozen=True, extra="allow")

    tokens: int | None = Field(default=None, ge=0, description="Token count attributed to this message.")
    provider: str | None = Field(default=None, description="Provider that produced or received the message.")
    model: str | None = Field(default=None, description="Model used for the message.")
    cost: float | None = Field(default=None, ge=0, description="Cost of the request that produced the message.")
    command: str | None = Field(default=None, description="Command string the message invoked, if any.")


class Message(BaseModel):
    """
    A single message within a conversation.

    Messages are immutable once created; compaction only includes or
    excludes them wholesale.
    """

    model_config = ConfigDict(frozen=True, use_enum_values=True)

    id: str = Field(default_factory=lambda: generate_id("msg"), description="Unique message identifier.")
    role: Role = Field(default=Role.USER, description="The role of the message sender.")
    content: str = Field(description="The textual content of the message.")
    timestamp: datetime = Field(default_factory=utc_now, description="Creation time (UTC).")
    metadata: MessageMetadata = Field(default_factory=MessageMetadata)

    @field_validator("timestamp", mode="before")
    @classmethod
    def _utc_timestamp(cls, v: Any) -> Any:
        return ensure_utc(v)


# =============================================================================
# CONVERSATION AGGREGATES
# =============================================================================


class TokenUsage(BaseModel):
    """Input/output token counters; ``total`` is derived so it can never drift."""

    input: int = Field(default=0, ge=0)
    output: int = Field(default=0, ge=0)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def total(self) -> int:
        return self.input + self.output

    def add(self, input_tokens: int = 0, output_tokens: int = 0) -> None:
        self.input += input_tokens
        self.output += output_tokens


class ProviderCost(BaseModel):
    """Session and lifetime cost for one provider."""

    session: float = 0.0
    total: float = 0.0


class CostTracking(BaseModel):
    """
    Cost ledger of a conversation.

    ``by_provider`` entries always sum to ``total``; use :meth:`add` rather
    than mutating the fields directly.
    """

    session: float = 0.0
    total: float = 0.0
    by_provider: dict[str, ProviderCost] = Field(default_factory=dict)

    def add(self, provider_id: str, cost: float) -> None:
        entry = self.by_provider.setdefault(provider_id, ProviderCost())
        entry.session += cost
        entry.total += cost
        self.session += cost
        self.total += cost

    def reset_session(self) -> float:
        """Zero the session counters and return the previous session cost."""
        previous = self.session
        self.session = 0.0
        for entry in self.by_provider.values():
            entry.session = 0.0
        return previous


class ProviderUsageStats(BaseModel):
    """How much a conversation used one provider."""

    message_count: int = 0
    tokens: int = 0
    last_used: datetime | None = None


class ConversationMetadata(BaseModel):
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    message_count: int = 0
    token_usage: TokenUsage = Field(default_factory=TokenUsage)
    cost_tracking: CostTracking = Field(default_factory=CostTracking)
    provider_stats: dict[str, ProviderUsageStats] = Field(default_factory=dict)
    tags: set[str] = Field(default_factory=set)
    compaction_count: int = 0
    workspace: str = "default"

    @field_validator("created_at", "updated_at", mode="before")
    @classmethod
    def _utc_timestamps(cls, v: Any) -> Any:
        return ensure_utc(v)


class ConversationSettings(BaseModel):
    """Generation settings attached to a conversation."""

    model_config = ConfigDict(extra="allow")

    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(default=4000, gt=0)
    model: str | None = None
    provider: str | None = None
    system_prompt: str | None = None


class ContinuationMode(str, Enum):
    """How the current run of a conversation started."""

    NEW = "new"
    CONTINUE = "continue"
    RESUME = "resume"
    IMPORTED = "imported"


class ProviderSwitch(BaseModel):
    """One entry of a conversation's own provider history."""

    model_config = ConfigDict(frozen=True)

    from_provider: str | None = None
    to_provider: str
    from_model: str | None = None
    to_model: str | None = None
    reason: str = "manual"
    timestamp: datetime = Field(default_factory=utc_now)


class SessionState(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    current_provider: str | None = None
    current_model: str | None = None
    provider_history: list[ProviderSwitch] = Field(default_factory=list)
    continuation_mode: ContinuationMode = ContinuationMode.NEW


class Conversation(BaseModel):
    """
    A titled, ordered sequence of messages with aggregate usage and cost metadata.

    Attributes:
        id: Unique identifier (``conv_...``).
        title: Human-readable title.
        type: Free-form conversation category.
        messages: Messages in chronological order; order is significant.
        metadata: Timestamps, counters, token usage, cost ledger, tags.
        settings: Generation settings (temperature, max tokens, model, provider).
        session_state: Provider currently in use and the switch history.
        context: Arbitrary per-conversation context values.
    """

    id: str = Field(default_factory=lambda: generate_id("conv"))
    title: str = ""
    type: str = "general"
    messages: list[Message] = Field(default_factory=list)
    metadata: ConversationMetadata = Field(default_factory=ConversationMetadata)
    settings: ConversationSettings = Field(default_factory=ConversationSettings)
    session_state: SessionState = Field(default_factory=SessionState)
    context: dict[str, Any] = Field(default_factory=dict)


class SessionMetadata(BaseModel):
    """
    Index entry for a conversation; enables listing and eviction without loading messages.

    The conversation manager keys these by conversation id. Sessions created
    through the persistence bridge get their own ``sess_`` id and point to
    their conversation through ``conversation_id``.
    """

    id: str
    conversation_id: str | None = None
    title: str = ""
    created_at: datetime = Field(default_factory=utc_now)
    last_accessed: datetime = Field(default_factory=utc_now)
    message_count: int = 0
    is_active: bool = False

    @field_validator("created_at", "last_accessed", mode="before")
    @classmethod
    def _utc_timestamps(cls, v: Any) -> Any:
        return ensure_utc(v)


class CostSummary(BaseModel):
    """Session versus lifetime cost of a conversation, per provider."""

    conversation_id: str
    session_cost: float
    total_cost: float
    by_provider: dict[str, ProviderCost]
    token_usage: TokenUsage


# =============================================================================
# SUMMARIES AND SEARCH
# =============================================================================


class MessageSnippet(BaseModel):
    """Truncated view of a message kept in caches and search indexes."""

    message_id: str
    role: str = Role.USER.value
    content: str
    timestamp: datetime = Field(default_factory=utc_now)


class ConversationSummary(BaseModel):
    """Cached projection of a conversation used by listings and local search."""

    id: str
    title: str = ""
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    message_count: int = 0
    tags: list[str] = Field(default_factory=list)
    provider: str | None = None
    messages: list[MessageSnippet] = Field(default_factory=list)

    @field_validator("created_at", "updated_at", mode="before")
    @classmethod
    def _utc_timestamps(cls, v: Any) -> Any:
        return ensure_utc(v)

    @classmethod
    def from_conversation(
        cls, conversation: Conversation, snippet_count: int = 0, snippet_length: int = 200
    ) -> ConversationSummary:
        """Build a summary; the ``snippet_count`` most recent messages are attached truncated."""
        recent = conversation.messages[-snippet_count:] if snippet_count > 0 else []
        return cls(
            id=conversation.id,
            title=conversation.title,
            created_at=conversation.metadata.created_at,
            updated_at=conversation.metadata.updated_at,
            message_count=len(conversation.messages),
            tags=sorted(conversation.metadata.tags),
            provider=conversation.session_state.current_provider,
            messages=[
                MessageSnippet(message_id=m.id, role=m.role, content=m.content[:snippet_length], timestamp=m.timestamp)
                for m in recent
            ],
        )


class Pagination(BaseModel):
    total: int
    limit: int
    offset: int
    has_more: bool


class ConversationPage(BaseModel):
    """One page of conversation summaries from a listing."""

    conversations: list[ConversationSummary] = Field(default_factory=list)
    pagination: Pagination


class ConversationSearchHit(BaseModel):
    conversation_id: str
    title: str
    score: int
    message_count: int = 0
    updated_at: datetime
    tags: list[str] = Field(default_factory=list)


class MessageSearchHit(BaseModel):
    conversation_id: str
    message_id: str
    content: str
    timestamp: datetime
    score: int = 1


class SearchResults(BaseModel):
    query: str
    conversations: list[ConversationSearchHit] = Field(default_factory=list)
    messages: list[MessageSearchHit] = Field(default_factory=list)
    total: int = 0


# =============================================================================
# PROVIDERS
# =============================================================================


class ProviderStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    DEGRADED = "degraded"
    ERROR = "error"


class ProviderRecord(BaseModel):
    """
    A configured AI backend with its status and cost ledger.

    ``consecutive_failures`` is reset by a successful probe; ``configured``
    is False for providers known by name but lacking credentials.
    """

    model_config = ConfigDict(use_enum_values=True)

    id: str
    name: str = ""
    status: ProviderStatus = ProviderStatus.DISCONNECTED
    configured: bool = True
    model: str | None = None
    available_models: set[str] = Field(default_factory=set)
    cost_tracking: ProviderCost = Field(default_factory=ProviderCost)
    total_tokens: int = 0
    session_tokens: int = 0
    request_count: int = 0
    consecutive_failures: int = 0
    last_error: str | None = None
    last_failure_at: datetime | None = None
    last_used: datetime | None = None


class SwitchRecord(BaseModel):
    """Immutable entry of the registry-wide provider switch history."""

    model_config = ConfigDict(frozen=True)

    from_provider: str | None = None
    to_provider: str
    reason: str
    timestamp: datetime = Field(default_factory=utc_now)
    conversation_id: str | None = None


class HealthSnapshot(BaseModel):
    """Result of the most recent health probe of one provider."""

    provider_id: str
    healthy: bool
    checked_at: datetime = Field(default_factory=utc_now)
    latency_ms: float | None = None
    error: str | None = None


# =============================================================================
# EVENTS AND PENDING UPDATES
# =============================================================================


class EventRecord(BaseModel):
    """A published event. History of these is for replay/debugging only, never authoritative."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: generate_id("evt"))
    name: str
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utc_now)


class PendingOperation(str, Enum):
    CREATE_CONVERSATION = "create-conversation"
    ADD_MESSAGE = "add-message"
    SAVE_CONVERSATION = "save-conversation"
    DELETE_CONVERSATION = "delete-conversation"


class PendingUpdate(BaseModel):
    """A write queued while the persistence bridge was unreachable."""

    model_config = ConfigDict(use_enum_values=True)

    conversation_id: str
    operation: PendingOperation
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utc_now)
    attempts: int = 0


__all__ = [
    "utc_now",
    "generate_id",
    "ensure_utc",
    "Role",
    "MessageMetadata",
    "Message",
    "TokenUsage",
    "ProviderCost",
    "CostTracking",
    "ProviderUsageStats",
    "ConversationMetadata",
    "ConversationSettings",
    "ContinuationMode",
    "ProviderSwitch",
    "SessionState",
    "Conversation",
    "SessionMetadata",
    "CostSummary",
    "MessageSnippet",
    "ConversationSummary",
    "Pagination",
    "ConversationPage",
    "ConversationSearchHit",
    "MessageSearchHit",
    "SearchResults",
    "ProviderStatus",
    "ProviderRecord",
    "SwitchRecord",
    "HealthSnapshot",
    "EventRecord",
    "PendingOperation",
    "PendingUpdate",
]
