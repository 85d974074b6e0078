# src/chatcore/events/catalog.py
"""
Closed catalogue of the events ChatCore publishes.

Every event kind has a fixed payload shape described by a Pydantic model.
Payloads travel on the bus as plain dictionaries; when the bus runs with
``validate_payloads=True`` each known kind is checked against its schema at
publish time. Event names outside the catalogue (namespaced events,
request/response pairs) are never validated.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, ValidationError

from ..exceptions import EventPayloadError


class EventName(str, Enum):
    """Names of the events published by ChatCore components."""

    # Bus
    EVENT_PUBLISHED = "event-published"

    # Generic state bag
    STATE_CHANGED = "state-changed"
    STATE_REMOVED = "state-removed"
    STATE_CLEARED = "state-cleared"
    STATE_LOADED = "state-loaded"
    STATE_SAVED = "state-saved"

    # Conversation manager
    CONVERSATION_CREATED = "conversation-created"
    CONVERSATION_SWITCHED = "conversation-switched"
    CONVERSATION_DELETED = "conversation-deleted"
    CONVERSATION_CLEARED = "conversation-cleared"
    CONVERSATION_COMPACTED = "conversation-compacted"
    CONVERSATION_IMPORTED = "conversation-imported"
    MESSAGE_ADDED = "message-added"
    PROVIDER_SWITCHED = "provider-switched"

    # Chat-history projection
    ACTIVE_CONVERSATION_CHANGED = "active-conversation-changed"
    CONVERSATION_CACHED = "state-conversation-cached"
    CONVERSATION_UNCACHED = "state-conversation-removed"
    CONVERSATION_PROVIDER_SYNC_REQUIRED = "conversation-provider-sync-required"
    CHAT_HISTORY_SEARCHED = "chat-history-searched"
    CHAT_HISTORY_CLEANUP_COMPLETED = "chat-history-cleanup-completed"
    CHAT_HISTORY_PREFERENCES_UPDATED = "chat-history-preferences-updated"
    FILTER_UPDATED = "state-filter-updated"
    SORT_UPDATED = "state-sort-updated"

    # Provider registry
    PROVIDER_REGISTERED = "provider-registered"
    PROVIDER_STATUS_CHANGED = "provider-status-changed"
    ACTIVE_PROVIDER_CHANGED = "active-provider-changed"
    PROVIDER_USAGE_TRACKED = "provider-usage-tracked"
    COST_LIMIT_WARNING = "cost-limit-warning"
    SESSION_COST_RESET = "session-cost-reset"
    PROVIDER_HEALTH_CHECK_COMPLETED = "provider-health-check-completed"
    PROVIDER_AUTO_SWITCHED = "provider-auto-switched"
    PROVIDER_AUTO_SWITCH_FAILED = "provider-auto-switch-failed"

    # History sync manager
    CONVERSATION_LOADED = "conversation-loaded"
    SESSION_CREATED = "session-created"
    SESSION_CONTINUED = "session-continued"
    SESSION_RESUMED = "session-resumed"
    SYNC_STARTED = "chat-history-sync-started"
    SYNC_COMPLETED = "chat-history-sync-completed"
    SYNC_FAILED = "chat-history-sync-failed"
    NETWORK_STATUS_CHANGED = "network-status-changed"
    UPDATE_QUEUED = "chat-history-update-queued"

    # Session analytics
    SESSION_ENDED = "session-end-tracked"


def event_name(name: str | EventName) -> str:
    """Normalize an EventName member or a raw string to the wire name."""
    return name.value if isinstance(name, EventName) else str(name)


# =============================================================================
# PAYLOAD SCHEMAS
# =============================================================================


class _Payload(BaseModel):
    model_config = ConfigDict(extra="allow")


class StateChangedPayload(_Payload):
    key: str
    value: Any = None
    previous_value: Any = None


class StateRemovedPayload(_Payload):
    key: str
    previous_value: Any = None


class ConversationCreatedPayload(_Payload):
    conversation_id: str
    title: str


class ConversationSwitchedPayload(_Payload):
    conversation_id: str
    previous_id: str | None = None


class ConversationDeletedPayload(_Payload):
    conversation_id: str
    reason: Literal["deleted", "evicted"] = "deleted"
    conversation: dict[str, Any] | None = None


class ConversationClearedPayload(_Payload):
    conversation_id: str
    removed_count: int


class ConversationCompactedPayload(_Payload):
    conversation_id: str
    removed_count: int
    compaction_count: int
    summary_source: Literal["summarizer", "fallback"]


class MessageAddedPayload(_Payload):
    conversation_id: str
    message: dict[str, Any]


class ProviderSwitchedPayload(_Payload):
    conversation_id: str
    from_provider: str | None = None
    to_provider: str
    model: str | None = None
    reason: str = "manual"


class ActiveConversationChangedPayload(_Payload):
    conversation_id: str | None = None
    previous_id: str | None = None


class ConversationProviderSyncPayload(_Payload):
    conversation_id: str
    provider_id: str | None = None


class CleanupCompletedPayload(_Payload):
    cleanup_count: int
    removed_ids: list[str]


class HistorySearchedPayload(_Payload):
    query: str
    result_count: int


class ActiveProviderChangedPayload(_Payload):
    provider_id: str
    previous_provider: str | None = None
    reason: str
    conversation_id: str | None = None


class ProviderStatusChangedPayload(_Payload):
    provider_id: str
    status: str
    previous_status: str | None = None
    error: str | None = None


class ProviderUsageTrackedPayload(_Payload):
    provider_id: str
    tokens: int
    cost: float
    session_cost: float
    session_tokens: int


class CostLimitWarningPayload(_Payload):
    type: Literal["cost", "tokens"]
    percentage: float
    severity: Literal["warning", "critical"]
    recommendation: str
    current: float
    limit: float


class SessionCostResetPayload(_Payload):
    previous_session_cost: float
    previous_session_tokens: int


class HealthCheckCompletedPayload(_Payload):
    results: dict[str, Any]
    healthy_providers: int
    total_providers: int


class ProviderAutoSwitchedPayload(_Payload):
    from_provider: str | None = None
    to_provider: str
    reason: str


class ProviderAutoSwitchFailedPayload(_Payload):
    provider_id: str | None = None
    reason: str


class ConversationLoadedPayload(_Payload):
    conversation_id: str
    source: Literal["cache", "remote"]


class SessionPayload(_Payload):
    conversation_id: str
    session_id: str | None = None


class SyncStartedPayload(_Payload):
    pending_count: int


class SyncCompletedPayload(_Payload):
    synced_count: int
    failed_conversations: list[str]


class SyncFailedPayload(_Payload):
    error: str
    conversation_id: str | None = None


class NetworkStatusChangedPayload(_Payload):
    is_online: bool


class UpdateQueuedPayload(_Payload):
    conversation_id: str
    operation: str
    pending_count: int


class SessionEndedPayload(_Payload):
    session_id: str
    quality: dict[str, float]


PAYLOAD_SCHEMAS: dict[EventName, type[BaseModel]] = {
    EventName.STATE_CHANGED: StateChangedPayload,
    EventName.STATE_REMOVED: StateRemovedPayload,
    EventName.CONVERSATION_CREATED: ConversationCreatedPayload,
    EventName.CONVERSATION_SWITCHED: ConversationSwitchedPayload,
    EventName.CONVERSATION_DELETED: ConversationDeletedPayload,
    EventName.CONVERSATION_CLEARED: ConversationClearedPayload,
    EventName.CONVERSATION_COMPACTED: ConversationCompactedPayload,
    EventName.CONVERSATION_IMPORTED: ConversationCreatedPayload,
    EventName.MESSAGE_ADDED: MessageAddedPayload,
    EventName.PROVIDER_SWITCHED: ProviderSwitchedPayload,
    EventName.ACTIVE_CONVERSATION_CHANGED: ActiveConversationChangedPayload,
    EventName.CONVERSATION_PROVIDER_SYNC_REQUIRED: ConversationProviderSyncPayload,
    EventName.CHAT_HISTORY_CLEANUP_COMPLETED: CleanupCompletedPayload,
    EventName.CHAT_HISTORY_SEARCHED: HistorySearchedPayload,
    EventName.ACTIVE_PROVIDER_CHANGED: ActiveProviderChangedPayload,
    EventName.PROVIDER_STATUS_CHANGED: ProviderStatusChangedPayload,
    EventName.PROVIDER_USAGE_TRACKED: ProviderUsageTrackedPayload,
    EventName.COST_LIMIT_WARNING: CostLimitWarningPayload,
    EventName.SESSION_COST_RESET: SessionCostResetPayload,
    EventName.PROVIDER_HEALTH_CHECK_COMPLETED: HealthCheckCompletedPayload,
    EventName.PROVIDER_AUTO_SWITCHED: ProviderAutoSwitchedPayload,
    EventName.PROVIDER_AUTO_SWITCH_FAILED: ProviderAutoSwitchFailedPayload,
    EventName.CONVERSATION_LOADED: ConversationLoadedPayload,
    EventName.SESSION_CREATED: SessionPayload,
    EventName.SESSION_CONTINUED: SessionPayload,
    EventName.SESSION_RESUMED: SessionPayload,
    EventName.SYNC_STARTED: SyncStartedPayload,
    EventName.SYNC_COMPLETED: SyncCompletedPayload,
    EventName.SYNC_FAILED: SyncFailedPayload,
    EventName.NETWORK_STATUS_CHANGED: NetworkStatusChangedPayload,
    EventName.UPDATE_QUEUED: UpdateQueuedPayload,
    EventName.SESSION_ENDED: SessionEndedPayload,
}

_KNOWN_NAMES = {member.value: member for member in EventName}


def is_known_event(name: str) -> bool:
    return name in _KNOWN_NAMES


def validate_payload(name: str, payload: dict[str, Any]) -> None:
    """
    Check a payload against the schema of its event kind.

    Names without a schema pass unchecked.

    Raises:
        EventPayloadError: If the payload does not fit the schema.
    """
    member = _KNOWN_NAMES.get(name)
    schema = PAYLOAD_SCHEMAS.get(member) if member is not None else None
    if schema is None:
        return
    try:
        schema.model_validate(payload)
    except ValidationError as e:
        raise EventPayloadError(name, f"Payload does not match {schema.__name__}: {e.error_count()} error(s).") from e


__all__ = [
    "EventName",
    "PAYLOAD_SCHEMAS",
    "event_name",
    "is_known_event",
    "validate_payload",
]
