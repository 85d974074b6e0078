# src/chatcore/config/models.py
"""
Configuration section models.

Each component receives its own section model so it can be constructed and
tested in isolation; :class:`~chatcore.config.settings.ChatCoreSettings`
composes them into the process-wide configuration.

The configuration hierarchy:
    ChatCoreSettings (root)
    ├── EventBusConfig         - history bound, listener limit, payload validation
    ├── StateStoreConfig       - auto-save cadence and persisted document keys
    ├── ChatHistoryConfig      - retention and cache preferences of the chat-history projection
    ├── ProviderRegistryConfig - cost/token ceilings, health checks, auto-switch
    ├── ConversationConfig     - history size, context window, compaction, session limit
    ├── SyncConfig             - cache size, connectivity probe, pending-update queue
    ├── AnalyticsConfig        - tracking switches, retention, aggregation
    └── LoggingConfig          - console/file handlers

Usage:
    >>> from chatcore.config.models import ConversationConfig
    >>> config = ConversationConfig(context_window=15)
    >>> config.compaction_threshold
    20
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field, model_validator

# =============================================================================
# EVENT BUS
# =============================================================================


class EventBusConfig(BaseModel):
    """
    Configuration for the event bus.

    Examples:
        >>> EventBusConfig().max_history
        1000
    """

    max_history: int = Field(default=1000, ge=1, description="Number of event records kept for replay/debugging")
    max_listeners: int = Field(
        default=100,
        ge=1,
        description="Listener count per event name above which a warning is logged",
    )
    validate_payloads: bool = Field(
        default=False,
        description="Validate payloads of known event kinds against their schema at publish time",
    )
    default_timeout: float = Field(default=5.0, gt=0, description="Default wait_for timeout in seconds")


# =============================================================================
# STATE STORE
# =============================================================================


class StateStoreConfig(BaseModel):
    """Configuration for the generic state bag and its persistence loop."""

    auto_save: bool = Field(default=True, description="Persist dirty documents periodically")
    save_interval: float = Field(default=10.0, gt=0, description="Seconds between auto-save ticks")
    persist_state: bool = Field(default=True, description="Write documents to the persistence bridge at all")
    state_key: str = Field(default="globalState", description="Bridge key of the generic state bag")
    chat_history_key: str = Field(default="chatHistoryState", description="Bridge key of the chat-history projection")
    provider_key: str = Field(default="providerState", description="Bridge key of the provider registry")


class ChatHistoryConfig(BaseModel):
    """
    Preferences of the chat-history projection.

    ``retention_days``, ``max_conversations`` and ``search_enabled`` are the
    user-facing preferences and can be changed at runtime.
    """

    retention_days: int = Field(default=30, ge=1)
    max_conversations: int = Field(default=1000, ge=1)
    search_enabled: bool = True
    cleanup_interval: float = Field(default=3600.0, gt=0, description="Seconds between retention cleanup runs")
    max_snippets_per_conversation: int = Field(default=50, ge=0)
    snippet_length: int = Field(default=200, ge=1)


class ProviderRegistryConfig(BaseModel):
    """
    Cost ceilings, health checking and failover policy of the provider registry.

    Examples:
        >>> config = ProviderRegistryConfig(auto_switch=True, failure_threshold=2)
        >>> config.warning_threshold
        0.8
    """

    session_cost_limit: float = Field(default=5.0, gt=0, description="Session cost ceiling (USD)")
    session_token_limit: int = Field(default=100_000, gt=0, description="Session token ceiling")
    warning_threshold: float = Field(default=0.8, gt=0, le=1.0)
    critical_threshold: float = Field(default=0.95, gt=0, le=1.0)
    auto_switch: bool = Field(default=False, description="Fail over to a healthy provider automatically")
    failure_threshold: int = Field(
        default=3,
        ge=1,
        description="Consecutive failures after which a provider is marked error and may be switched away from",
    )
    health_check_timeout: float = Field(default=5.0, gt=0, description="Bound on a single health probe, seconds")
    health_check_interval: float = Field(default=60.0, gt=0)
    max_switch_history: int = Field(default=100, ge=1)

    @model_validator(mode="after")
    def _thresholds_ordered(self) -> ProviderRegistryConfig:
        if self.critical_threshold < self.warning_threshold:
            raise ValueError("critical_threshold must not be lower than warning_threshold")
        return self


# =============================================================================
# CONVERSATIONS
# =============================================================================


class ConversationConfig(BaseModel):
    """
    Configuration for the conversation manager.

    Compaction keeps ``context_window`` recent messages and replaces the rest
    with one summary message once a conversation holds more than
    ``compaction_threshold`` messages. When compaction is disabled the
    conversation is hard-capped at ``max_history_size`` messages.
    """

    max_history_size: int = Field(default=50, ge=1)
    context_window: int = Field(default=10, ge=1)
    enable_compaction: bool = True
    compaction_threshold: int = Field(default=20, ge=1)
    max_sessions: int = Field(default=200, ge=1)
    auto_save: bool = True
    save_interval: float = Field(default=30.0, gt=0)
    default_temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    default_max_tokens: int = Field(default=4000, gt=0)

    @model_validator(mode="after")
    def _window_below_threshold(self) -> ConversationConfig:
        if self.enable_compaction and self.context_window >= self.compaction_threshold:
            raise ValueError("context_window must be smaller than compaction_threshold")
        return self


# =============================================================================
# HISTORY SYNC
# =============================================================================


class SyncConfig(BaseModel):
    """Configuration for the history sync manager."""

    max_cached_conversations: int = Field(default=50, ge=1)
    initial_session_limit: int = Field(default=20, ge=0)
    sync_interval: float = Field(default=5.0, gt=0, description="Seconds between pending-update drains")
    connectivity_timeout: float = Field(default=2.0, gt=0, description="Bound on the connectivity probe")
    max_pending_updates: int = Field(default=500, ge=1, description="Queued writes allowed across all conversations")
    index_content_length: int = Field(default=200, ge=1)
    event_preview_length: int = Field(default=100, ge=1)


# =============================================================================
# ANALYTICS
# =============================================================================


class AnalyticsConfig(BaseModel):
    enabled: bool = True
    track_user_behavior: bool = True
    track_performance: bool = True
    retention_days: int = Field(default=90, ge=1)
    aggregation_interval: float = Field(default=3600.0, gt=0)
    ideal_session_duration: float = Field(default=600.0, gt=0, description="Seconds for a 100% completion score")
    max_response_time: float = Field(default=10.0, gt=0, description="Seconds at which responsiveness reaches 0")
    state_key: str = "sessionAnalytics"


# =============================================================================
# LOGGING
# =============================================================================


class LoggingConfig(BaseModel):
    console_enabled: bool = True
    console_level: str = "WARNING"
    display_min_level: str = "INFO"
    file_enabled: bool = True
    file_level: str = "DEBUG"
    file_directory: str = "~/.local/share/chatcore/logs"
    file_mode: Literal["per_run", "single"] = "per_run"
    components: dict[str, str] = Field(default_factory=dict)


__all__ = [
    "EventBusConfig",
    "StateStoreConfig",
    "ChatHistoryConfig",
    "ProviderRegistryConfig",
    "ConversationConfig",
    "SyncConfig",
    "AnalyticsConfig",
    "LoggingConfig",
]
